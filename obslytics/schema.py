"""Column schema management and row unification."""
from typing import Dict, Iterable, List, Sequence, Tuple
import threading

from obslytics.errors import DecodeError
from obslytics.series import AGGREGATE_COLUMNS, EMPTY_LABEL, Bucket, Row


class ColumnSchema:
    """
    Append-only set of label columns in first-seen order.

    Columns are never removed or reordered. Safe to share between threads
    unifying different series.
    """

    def __init__(self, columns: Iterable[str] = ()):
        self._columns: List[str] = []
        self._known = set()
        self._lock = threading.Lock()
        self.observe(columns)

    def observe(self, names: Iterable[str]) -> List[str]:
        """Append unseen names; return the ones that were new."""
        added = []
        with self._lock:
            for name in names:
                if name in self._known:
                    continue
                if name in AGGREGATE_COLUMNS:
                    raise DecodeError(f"Label name '{name}' collides with an aggregate column")
                self._known.add(name)
                self._columns.append(name)
                added.append(name)
        return added

    @property
    def label_columns(self) -> List[str]:
        with self._lock:
            return list(self._columns)

    @property
    def columns(self) -> List[str]:
        """Label columns followed by the fixed aggregate suffix."""
        return self.label_columns + AGGREGATE_COLUMNS

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._known

    def __len__(self) -> int:
        with self._lock:
            return len(self._columns)


class RowUnifier:
    """Turns (bucket, labels) into rows that are total over the schema."""

    def __init__(self, schema: ColumnSchema = None):
        self.schema = schema if schema is not None else ColumnSchema()

    def unify(self, bucket: Bucket, labels: Sequence[Tuple[str, str]]) -> Row:
        """Extend the schema with unseen labels and pad the absent ones."""
        self.schema.observe(name for name, _ in labels)
        present = dict(labels)
        row_labels: Dict[str, str] = {
            name: present.get(name, EMPTY_LABEL)
            for name in self.schema.label_columns
        }
        return Row(labels=row_labels, bucket=bucket)

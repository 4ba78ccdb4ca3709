"""Output sinks for unified rows."""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import csv
import json
import logging
import math

import pyarrow as pa
import pyarrow.parquet as pq

from obslytics.config import OutputConfig
from obslytics.errors import SinkError
from obslytics.series import AGGREGATE_COLUMNS, Row

logger = logging.getLogger(__name__)


class Sink(ABC):
    """
    Base class for row sinks.

    finalize() must be called exactly once whether or not the export
    succeeded; further calls are no-ops.
    """

    # Sinks that cannot change their columns after the first row.
    requires_fixed_schema = False

    def __init__(self, path: str):
        self.path = path
        self.rows_written = 0
        self._finalized = False

    @abstractmethod
    def write_row(self, row: Row):
        """Persist or buffer one row."""
        pass

    @abstractmethod
    def _finalize(self):
        """Flush buffered state and release resources."""
        pass

    def finalize(self):
        if self._finalized:
            return
        self._finalized = True
        try:
            self._finalize()
        except SinkError:
            raise
        except Exception as e:
            raise SinkError(f"Failed to finalize {self.path}: {e}") from e
        logger.info(f"Wrote {self.rows_written} rows to {self.path}")


def _label_columns(row: Row) -> List[str]:
    return list(row.labels.keys())


class CSVSink(Sink):
    """Streams rows into a CSV file. The header is fixed by the first row."""

    requires_fixed_schema = True

    def __init__(self, path: str):
        super().__init__(path)
        self._file = None
        self._writer = None
        self._columns: Optional[List[str]] = None

    def write_row(self, row: Row):
        columns = _label_columns(row)
        try:
            if self._writer is None:
                self._file = open(self.path, "w", newline="")
                self._writer = csv.writer(self._file)
                self._columns = columns
                self._writer.writerow(columns + AGGREGATE_COLUMNS)
            elif columns != self._columns:
                raise SinkError(
                    f"CSV header of {self.path} is already written with columns {self._columns}, "
                    f"row has {columns}; export with two_pass schema mode"
                )
            self._writer.writerow(row.values(self._columns))
        except SinkError:
            raise
        except (OSError, csv.Error) as e:
            raise SinkError(f"Failed to write row to {self.path}: {e}") from e
        self.rows_written += 1

    def _finalize(self):
        if self._file is None:
            # No rows: still leave a valid, empty file behind.
            open(self.path, "w").close()
            return
        self._file.close()


class NDJSONSink(Sink):
    """Streams rows as newline-delimited JSON objects; tolerates new columns."""

    def __init__(self, path: str):
        super().__init__(path)
        self._file = None

    def write_row(self, row: Row):
        obj: Dict[str, object] = dict(row.labels)
        for name, value in zip(AGGREGATE_COLUMNS, row.values([])):
            # JSON has no NaN or infinity; encode them as null
            if isinstance(value, float) and not math.isfinite(value):
                value = None
            obj[name] = value
        try:
            if self._file is None:
                self._file = open(self.path, "w")
            self._file.write(json.dumps(obj, allow_nan=False) + "\n")
        except (OSError, ValueError) as e:
            raise SinkError(f"Failed to write row to {self.path}: {e}") from e
        self.rows_written += 1

    def _finalize(self):
        if self._file is None:
            open(self.path, "w").close()
            return
        self._file.close()


class ParquetSink(Sink):
    """
    Buffers rows and writes one dense Parquet table on finalize.

    Rows unified before a column was discovered are padded with the empty
    label, so the file always has a single rectangular schema.
    """

    def __init__(self, path: str, compression: str = "snappy"):
        super().__init__(path)
        self.compression = compression
        self._rows: List[Row] = []
        self._columns: List[str] = []
        self._known = set()

    def write_row(self, row: Row):
        for name in row.labels:
            if name not in self._known:
                self._known.add(name)
                self._columns.append(name)
        self._rows.append(row)
        self.rows_written += 1

    def table(self) -> pa.Table:
        """Build the table from everything buffered so far."""
        columns = self._columns
        arrays: Dict[str, list] = {name: [] for name in columns + AGGREGATE_COLUMNS}
        for row in self._rows:
            for name, value in zip(columns + AGGREGATE_COLUMNS, row.values(columns)):
                arrays[name].append(value)

        fields = [pa.field(name, pa.string()) for name in columns]
        fields += [
            pa.field("_bucket_start", pa.timestamp("ms", tz="UTC")),
            pa.field("_count", pa.uint64()),
            pa.field("_sum", pa.float64()),
            pa.field("_min", pa.float64()),
            pa.field("_max", pa.float64()),
            pa.field("_avg", pa.float64()),
        ]
        return pa.Table.from_pydict(arrays, schema=pa.schema(fields))

    def _finalize(self):
        pq.write_table(self.table(), self.path, compression=self.compression)
        self._rows = []


def create_sink(config: OutputConfig, path: Optional[str] = None) -> Sink:
    """Factory function to create the configured sink."""
    path = path or config.path
    if config.type == "CSV":
        return CSVSink(path)
    elif config.type == "NDJSON":
        return NDJSONSink(path)
    elif config.type == "PARQUET":
        return ParquetSink(path, compression=config.compression)
    else:
        raise ValueError(f"Unknown output type: {config.type}")

"""Data structures for series, samples, buckets and rows."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import math


class MatchType(Enum):
    """Label matcher operators, numbered as on the wire."""
    EQ = 0
    NEQ = 1
    RE = 2
    NRE = 3

    @property
    def symbol(self) -> str:
        return {
            MatchType.EQ: "=",
            MatchType.NEQ: "!=",
            MatchType.RE: "=~",
            MatchType.NRE: "!~",
        }[self]


@dataclass(frozen=True)
class TimeRange:
    """Inclusive [min_t, max_t] range in milliseconds."""
    min_t: int
    max_t: int

    def __post_init__(self):
        if self.min_t > self.max_t:
            raise ValueError(f"Invalid time range: min {self.min_t} > max {self.max_t}")

    def contains(self, t: int) -> bool:
        return self.min_t <= t <= self.max_t


@dataclass(frozen=True)
class Matcher:
    """A single label predicate; all matchers of a query must hold."""
    name: str
    type: MatchType
    value: str

    def __str__(self) -> str:
        return f'{self.name}{self.type.symbol}"{self.value}"'


@dataclass
class RawSeries:
    """A label set plus its still-encoded chunks, as received from the store."""
    labels: List[Tuple[str, str]]
    chunks: List["EncodedChunk"] = field(default_factory=list)

    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)

    def label_key(self) -> str:
        """Generate a stable key from sorted labels."""
        items = sorted(self.labels)
        return ",".join(f"{k}={v}" for k, v in items)


@dataclass(frozen=True)
class EncodedChunk:
    """One opaque chunk covering [min_t, max_t]."""
    min_t: int
    max_t: int
    encoding: int
    data: bytes


@dataclass(frozen=True)
class Sample:
    """A single (timestamp, value) pair."""
    t: int
    v: float


@dataclass
class Bucket:
    """Summary of the samples falling in one resolution-aligned window."""
    start: int
    count: int = 0
    sum: float = 0.0
    min: float = math.nan
    max: float = math.nan

    @property
    def avg(self) -> float:
        return self.sum / self.count if self.count else math.nan

    def add(self, v: float):
        """Fold one value into the bucket."""
        self.count += 1
        self.sum += v
        # NaN never wins a comparison; it is counted and summed only
        if math.isnan(v):
            return
        if math.isnan(self.min) or v < self.min:
            self.min = v
        if math.isnan(self.max) or v > self.max:
            self.max = v


@dataclass
class Row:
    """One output row: labels total over the schema, plus the bucket."""
    labels: Dict[str, str]
    bucket: Bucket

    def values(self, columns: List[str]) -> List[object]:
        """Return values in column order; aggregate columns come last."""
        out: List[object] = [self.labels.get(c, EMPTY_LABEL) for c in columns]
        out.extend([
            self.bucket.start,
            self.bucket.count,
            self.bucket.sum,
            self.bucket.min,
            self.bucket.max,
            self.bucket.avg,
        ])
        return out


EMPTY_LABEL = ""

AGGREGATE_COLUMNS = ["_bucket_start", "_count", "_sum", "_min", "_max", "_avg"]


def format_matchers(matchers: List[Matcher], name: Optional[str] = None) -> str:
    """Render matchers back into selector syntax for logging."""
    inner = ", ".join(str(m) for m in matchers)
    return f"{name or ''}{{{inner}}}"

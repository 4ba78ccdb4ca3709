"""Streaming resampling of samples into fixed-width buckets."""
from typing import Iterable, Iterator, Optional

from obslytics.errors import DecodeError
from obslytics.series import Bucket, Sample, TimeRange


def bucket_start(t: int, resolution: int, time_range: TimeRange) -> int:
    """Start of the resolution window containing t, aligned to the range start."""
    return time_range.min_t + ((t - time_range.min_t) // resolution) * resolution


def aggregate(
    samples: Iterable[Sample],
    resolution: int,
    time_range: TimeRange,
) -> Iterator[Bucket]:
    """
    Fold an ordered sample sequence into sparse buckets.

    Only the bucket currently being filled is held in memory; it is emitted
    as soon as a sample crosses into a later window. Windows without samples
    produce nothing. Samples outside the range are ignored.

    Args:
        samples: Samples with non-decreasing timestamps
        resolution: Bucket width in milliseconds, > 0
        time_range: Inclusive range the buckets are aligned to

    Returns:
        Buckets in strictly increasing start order
    """
    if resolution <= 0:
        raise ValueError(f"Resolution must be positive, got {resolution}")

    current: Optional[Bucket] = None
    last_t: Optional[int] = None

    for sample in samples:
        if last_t is not None and sample.t < last_t:
            raise DecodeError(f"Out of order sample: {sample.t} after {last_t}")
        last_t = sample.t

        if not time_range.contains(sample.t):
            continue

        start = bucket_start(sample.t, resolution, time_range)
        if current is None or start != current.start:
            if current is not None:
                yield current
            current = Bucket(start=start)
        current.add(sample.v)

    if current is not None:
        yield current

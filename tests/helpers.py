"""Chunk and series builders shared by the tests."""
from typing import Dict, List, Tuple

from obslytics.chunkenc import XORChunk
from obslytics.series import EncodedChunk, RawSeries


def make_chunk(samples: List[Tuple[int, float]]) -> EncodedChunk:
    """Encode (t, v) pairs into a single XOR chunk."""
    chunk = XORChunk()
    for t, v in samples:
        chunk.append(t, v)
    return chunk.to_encoded()


def make_series(labels: Dict[str, str], *chunks: List[Tuple[int, float]]) -> RawSeries:
    return RawSeries(labels=list(labels.items()), chunks=[make_chunk(c) for c in chunks])

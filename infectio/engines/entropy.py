"""Shannon entropy over whole artifacts and fixed-size chunks."""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import List

DEFAULT_CHUNK_SIZE = 256


@dataclass(frozen=True)
class ChunkEntropy:
    index: int
    offset: int
    entropy: float


def calculate_entropy(data: bytes) -> float:
    """Return the Shannon entropy of ``data`` in bits per byte (0.0 to 8.0)."""
    if not data:
        return 0.0
    total = len(data)
    entropy = 0.0
    for count in Counter(data).values():
        probability = count / total
        entropy -= probability * math.log2(probability)
    return entropy


def calculate_entropy_by_chunks(
    data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> List[ChunkEntropy]:
    """Split ``data`` into ``chunk_size`` slices and score each one.

    The final chunk may be shorter. A non-positive chunk size or empty input
    yields an empty list.
    """
    if chunk_size <= 0 or not data:
        return []
    return [
        ChunkEntropy(
            index=index,
            offset=offset,
            entropy=calculate_entropy(data[offset : offset + chunk_size]),
        )
        for index, offset in enumerate(range(0, len(data), chunk_size))
    ]


__all__ = ["ChunkEntropy", "DEFAULT_CHUNK_SIZE", "calculate_entropy", "calculate_entropy_by_chunks"]

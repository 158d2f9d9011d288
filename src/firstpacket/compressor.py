# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""gzip / brotli encodings of byte buffers.

Pure functions, no state.  Output is deterministic for a given
algorithm + level + input (gzip is written with a fixed mtime).
"""

from __future__ import annotations

import gzip
from dataclasses import dataclass
from enum import StrEnum

import brotli

from .errors import CompressionError


class Algorithm(StrEnum):
    GZIP = "gzip"
    BROTLI = "brotli"


# Inclusive level ranges accepted by each encoder.
LEVEL_RANGES: dict[Algorithm, tuple[int, int]] = {
    Algorithm.GZIP: (0, 9),
    Algorithm.BROTLI: (0, 11),
}

DEFAULT_LEVEL = 6


def compress(data: bytes, algorithm: str = Algorithm.GZIP, level: int = DEFAULT_LEVEL) -> bytes:
    """Encode *data* with *algorithm* at *level*.

    Empty input yields the algorithm's empty-stream encoding.

    Raises:
        CompressionError: unknown algorithm or level outside its range.
    """
    try:
        algo = Algorithm(algorithm)
    except ValueError:
        raise CompressionError(f"Unknown compression algorithm: {algorithm!r}") from None

    low, high = LEVEL_RANGES[algo]
    if isinstance(level, bool) or not isinstance(level, int) or not low <= level <= high:
        raise CompressionError(f"Invalid {algo.value} level {level!r} (expected {low}-{high})")

    if algo is Algorithm.GZIP:
        return gzip.compress(data, compresslevel=level, mtime=0)
    return brotli.compress(data, quality=level)


@dataclass(frozen=True, slots=True)
class EncodedSizes:
    """Sizes of one buffer under both encodings."""

    original: int
    gzip: int
    brotli: int

    @property
    def best_algorithm(self) -> Algorithm:
        return Algorithm.BROTLI if self.brotli < self.gzip else Algorithm.GZIP

    @property
    def best(self) -> int:
        return min(self.gzip, self.brotli)

    @property
    def ratio(self) -> float:
        """Best compressed size over original (1.0 for empty input)."""
        return self.best / self.original if self.original else 1.0


def encoded_sizes(data: bytes, level: int = DEFAULT_LEVEL) -> EncodedSizes:
    """Compress *data* with both algorithms and report the sizes."""
    return EncodedSizes(
        original=len(data),
        gzip=len(compress(data, Algorithm.GZIP, level)),
        brotli=len(compress(data, Algorithm.BROTLI, level)),
    )


class Compressor:
    """Compressor bound to a default algorithm and level.

    The bundle builder takes one of these so tests can substitute a stub
    with a predictable compression ratio.
    """

    def __init__(self, algorithm: str = Algorithm.BROTLI, level: int = DEFAULT_LEVEL) -> None:
        # Validate eagerly so a bad config fails at construction.
        compress(b"", algorithm, level)
        self.algorithm = Algorithm(algorithm)
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return compress(data, self.algorithm, self.level)

    def compressed_size(self, data: bytes) -> int:
        return len(self.compress(data))

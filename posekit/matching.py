"""Descriptor distances, rotation consistency voting and epipolar checks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Hashable, Iterable, Sequence

import numpy as np

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30

DESCRIPTOR_BYTES = 32


@dataclass(frozen=True)
class KeyPoint:
    """An undistorted image feature: position, orientation and pyramid level."""

    x: float
    y: float
    angle: float = 0.0
    octave: int = 0


def _as_descriptor(value) -> np.ndarray:
    if isinstance(value, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(bytes(value), dtype=np.uint8)
    else:
        arr = np.ascontiguousarray(value)
        if arr.dtype != np.uint8:
            arr = arr.view(np.uint8) if arr.dtype.itemsize > 1 else arr.astype(np.uint8)
        arr = arr.reshape(-1)
    if arr.size < DESCRIPTOR_BYTES:
        raise ValueError(
            f"descriptor must hold at least {DESCRIPTOR_BYTES} bytes, got {arr.size}"
        )
    return arr[:DESCRIPTOR_BYTES]


def descriptor_distance(a, b) -> int:
    """Hamming distance between two 256-bit binary descriptors."""
    xa = _as_descriptor(a)
    xb = _as_descriptor(b)
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


def compute_three_maxima(histogram: Sequence[int]) -> tuple[int, int, int]:
    """Indices of the three most populated bins, -1 where a bin is missing or too weak.

    A second or third bin is dropped when it holds less than a tenth of the first.
    """
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for i, size in enumerate(histogram):
        if size > max1:
            max3, max2, max1 = max2, max1, size
            ind3, ind2, ind1 = ind2, ind1, i
        elif size > max2:
            max3, max2 = max2, size
            ind3, ind2 = ind2, i
        elif size > max3:
            max3 = size
            ind3 = i

    if max2 < 0.1 * max1:
        ind2 = ind3 = -1
    elif max3 < 0.1 * max1:
        ind3 = -1
    return ind1, ind2, ind3


def radius_by_viewing_cos(view_cos: float) -> float:
    """Search radius factor: small when viewing almost along the mean direction."""
    return 2.5 if view_cos > 0.998 else 4.0


def check_dist_epipolar_line(
    point1: KeyPoint,
    point2: KeyPoint,
    f12,
    level_sigma2: Sequence[float],
) -> bool:
    """Whether point2 lies close enough to the epipolar line of point1 under F12."""
    f = np.asarray(f12, dtype=float)
    a = point1.x * f[0, 0] + point1.y * f[1, 0] + f[2, 0]
    b = point1.x * f[0, 1] + point1.y * f[1, 1] + f[2, 1]
    c = point1.x * f[0, 2] + point1.y * f[1, 2] + f[2, 2]

    num = a * point2.x + b * point2.y + c
    den = a * a + b * b
    if den == 0:
        return False
    return num * num / den < 3.84 * level_sigma2[point2.octave]


def rotation_bin(angle1: float, angle2: float, length: int = HISTO_LENGTH) -> int:
    """Histogram bin of the orientation change between two keypoints."""
    rot = angle1 - angle2
    if rot < 0.0:
        rot += 360.0
    index = math.floor(rot * (1.0 / length) + 0.5)
    if index == length:
        index = 0
    if not 0 <= index < length:
        raise ValueError(f"rotation {rot} falls outside a histogram of {length} bins")
    return index


class RotationHistogram:
    """Votes on orientation changes and reports matches that disagree with the majority."""

    def __init__(self, length: int = HISTO_LENGTH):
        if length <= 0:
            raise ValueError("histogram length must be positive")
        self.length = length
        self._bins: list[list[Hashable]] = [[] for _ in range(length)]

    def add(self, angle1: float, angle2: float, item: Hashable) -> int:
        """Record an item under the bin of its rotation; return that bin."""
        index = rotation_bin(angle1, angle2, self.length)
        self._bins[index].append(item)
        return index

    @property
    def counts(self) -> list[int]:
        return [len(b) for b in self._bins]

    def rejected(self) -> list[Hashable]:
        """Items whose bin is not among the three dominant ones, in bin order."""
        kept = set(compute_three_maxima(self.counts))
        return [
            item
            for index, items in enumerate(self._bins)
            if index not in kept
            for item in items
        ]

    def __iter__(self) -> Iterable[list[Hashable]]:
        return iter(self._bins)
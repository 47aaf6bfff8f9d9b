"""Feature matching restricted to features that share a vocabulary node."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Mapping, Optional, Sequence

import numpy as np

from posekit.matching import (
    DESCRIPTOR_BYTES,
    TH_LOW,
    KeyPoint,
    RotationHistogram,
    check_dist_epipolar_line,
    descriptor_distance,
)

_NO_DISTANCE = 256


@dataclass
class View:
    """Features of one image: keypoints, descriptors and their vocabulary nodes.

    ``features`` maps a vocabulary node id to the indices of the features that
    fall in that node. ``u_right`` holds the right-image coordinate of each
    feature, negative where the feature has no stereo match. ``mapped`` tells
    which features are already associated with a map point.
    """

    keypoints: Sequence[KeyPoint]
    descriptors: np.ndarray
    features: Mapping[int, Sequence[int]]
    u_right: Optional[Sequence[float]] = None
    mapped: Optional[Sequence[bool]] = None
    _count: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.keypoints = list(self.keypoints)
        self._count = len(self.keypoints)
        descriptors = np.asarray(self.descriptors, dtype=np.uint8)
        if descriptors.ndim != 2 or descriptors.shape[0] != self._count:
            raise ValueError(
                f"expected one descriptor row per keypoint ({self._count}), "
                f"got array of shape {descriptors.shape}"
            )
        if descriptors.shape[1] < DESCRIPTOR_BYTES:
            raise ValueError(
                f"descriptor rows must hold at least {DESCRIPTOR_BYTES} bytes"
            )
        self.descriptors = descriptors

        if self.u_right is None:
            self.u_right = [-1.0] * self._count
        else:
            self.u_right = [float(u) for u in self.u_right]
            if len(self.u_right) != self._count:
                raise ValueError("u_right must have one entry per keypoint")

        if self.mapped is None:
            self.mapped = [False] * self._count
        else:
            self.mapped = [bool(m) for m in self.mapped]
            if len(self.mapped) != self._count:
                raise ValueError("mapped must have one entry per keypoint")

        self.features = {
            int(node): [int(i) for i in indices]
            for node, indices in self.features.items()
        }
        for indices in self.features.values():
            for index in indices:
                if not 0 <= index < self._count:
                    raise ValueError(f"feature index {index} out of range")

    def __len__(self) -> int:
        return self._count

    def is_stereo(self, index: int) -> bool:
        return self.u_right[index] >= 0


def _flags(values: Sequence[bool], count: int, name: str) -> list[bool]:
    flags = [bool(v) for v in values]
    if len(flags) != count:
        raise ValueError(f"{name} must have {count} entries, got {len(flags)}")
    return flags


def shared_nodes(
    features1: Mapping[int, Sequence[int]],
    features2: Mapping[int, Sequence[int]],
) -> Iterator[tuple[int, list[int], list[int]]]:
    """Yield (node, indices1, indices2) for every node in both, by ascending node id."""
    for node in sorted(features1.keys() & features2.keys()):
        yield node, list(features1[node]), list(features2[node])


def search_by_bow(
    view1: View,
    view2: View,
    usable1: Sequence[bool],
    usable2: Optional[Sequence[bool]] = None,
    nn_ratio: float = 0.6,
    check_orientation: bool = True,
    threshold: int = TH_LOW,
) -> dict[int, int]:
    """Match features of view1 to view2 within shared vocabulary nodes.

    Only features flagged in ``usable1`` (and ``usable2``, all when None) take
    part. A match is kept when its distance is at most ``threshold`` and passes
    the nearest-neighbour ratio test; each feature of view2 is used once.
    Returns a mapping from view1 index to view2 index.
    """
    flags1 = _flags(usable1, len(view1), "usable1")
    flags2 = (
        [True] * len(view2)
        if usable2 is None
        else _flags(usable2, len(view2), "usable2")
    )

    matches: dict[int, int] = {}
    taken: set[int] = set()
    histogram = RotationHistogram()

    for _, indices1, indices2 in shared_nodes(view1.features, view2.features):
        for i1 in indices1:
            if not flags1[i1]:
                continue
            d1 = view1.descriptors[i1]

            best1 = best2 = _NO_DISTANCE
            best_index = -1
            for i2 in indices2:
                if i2 in taken or not flags2[i2]:
                    continue
                dist = descriptor_distance(d1, view2.descriptors[i2])
                if dist < best1:
                    best2 = best1
                    best1 = dist
                    best_index = i2
                elif dist < best2:
                    best2 = dist

            if best_index < 0 or best1 > threshold:
                continue
            if not float(best1) < nn_ratio * float(best2):
                continue

            matches[i1] = best_index
            taken.add(best_index)
            if check_orientation:
                histogram.add(
                    view1.keypoints[i1].angle,
                    view2.keypoints[best_index].angle,
                    i1,
                )

    if check_orientation:
        for i1 in histogram.rejected():
            matches.pop(i1, None)

    return dict(sorted(matches.items()))


def search_for_triangulation(
    view1: View,
    view2: View,
    f12,
    epipole: tuple[float, float],
    level_sigma2: Sequence[float],
    scale_factors: Sequence[float],
    only_stereo: bool = False,
    check_orientation: bool = True,
) -> list[tuple[int, int]]:
    """Pair unmapped features of two views that satisfy the epipolar constraint.

    ``epipole`` is the projection of the first camera centre into the second
    image; ``level_sigma2`` and ``scale_factors`` belong to the second view.
    Returns (index1, index2) pairs ordered by index1.
    """
    ex, ey = float(epipole[0]), float(epipole[1])
    f12 = np.asarray(f12, dtype=float)
    if f12.shape != (3, 3):
        raise ValueError("fundamental matrix must be 3x3")

    matches12: dict[int, int] = {}
    histogram = RotationHistogram()

    for _, indices1, indices2 in shared_nodes(view1.features, view2.features):
        for i1 in indices1:
            if view1.mapped[i1]:
                continue
            stereo1 = view1.is_stereo(i1)
            if only_stereo and not stereo1:
                continue

            kp1 = view1.keypoints[i1]
            d1 = view1.descriptors[i1]

            best_dist = TH_LOW
            best_index = -1
            for i2 in indices2:
                if view2.mapped[i2]:
                    continue
                stereo2 = view2.is_stereo(i2)
                if only_stereo and not stereo2:
                    continue

                dist = descriptor_distance(d1, view2.descriptors[i2])
                if dist > TH_LOW or dist > best_dist:
                    continue

                kp2 = view2.keypoints[i2]
                if not stereo1 and not stereo2:
                    dx = ex - kp2.x
                    dy = ey - kp2.y
                    if dx * dx + dy * dy < 100 * scale_factors[kp2.octave]:
                        continue

                if check_dist_epipolar_line(kp1, kp2, f12, level_sigma2):
                    best_index = i2
                    best_dist = dist

            if best_index >= 0:
                matches12[i1] = best_index
                if check_orientation:
                    histogram.add(
                        kp1.angle, view2.keypoints[best_index].angle, i1
                    )

    if check_orientation:
        for i1 in histogram.rejected():
            matches12.pop(i1, None)

    return sorted(matches12.items())
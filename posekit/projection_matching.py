"""Window searches around predicted positions and mutual-agreement checks."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from posekit.matching import (
    DESCRIPTOR_BYTES,
    TH_LOW,
    KeyPoint,
    RotationHistogram,
    descriptor_distance,
)

_NO_DISTANCE = 256
_UNBOUNDED = 2**31 - 1


def _descriptor_rows(descriptors, count: int, name: str) -> np.ndarray:
    rows = np.asarray(descriptors, dtype=np.uint8)
    if rows.ndim != 2 or rows.shape[0] != count:
        raise ValueError(
            f"{name} must have one row per keypoint ({count}), got shape {rows.shape}"
        )
    if rows.shape[1] < DESCRIPTOR_BYTES:
        raise ValueError(f"{name} rows must hold at least {DESCRIPTOR_BYTES} bytes")
    return rows


def features_in_area(
    keypoints: Sequence[KeyPoint],
    x: float,
    y: float,
    radius: float,
    min_level: int = -1,
    max_level: int = -1,
) -> list[int]:
    """Indices of keypoints inside the square window of half-size ``radius``.

    Levels are filtered when ``min_level`` is positive or ``max_level`` is
    non-negative; a negative ``max_level`` leaves the upper end open.
    """
    check_levels = min_level > 0 or max_level >= 0
    found = []
    for index, kp in enumerate(keypoints):
        if check_levels:
            if kp.octave < min_level:
                continue
            if max_level >= 0 and kp.octave > max_level:
                continue
        if abs(kp.x - x) < radius and abs(kp.y - y) < radius:
            found.append(index)
    return found


def best_match(
    descriptor,
    candidates: Sequence[int],
    descriptors,
    threshold: int = TH_LOW,
) -> Optional[tuple[int, int]]:
    """The candidate closest to ``descriptor`` as (index, distance), or None.

    None is returned when no candidate is within ``threshold``.
    """
    rows = np.asarray(descriptors, dtype=np.uint8)
    best_dist = _NO_DISTANCE
    best_index = -1
    for index in candidates:
        dist = descriptor_distance(descriptor, rows[index])
        if dist < best_dist:
            best_dist = dist
            best_index = index
    if best_index < 0 or best_dist > threshold:
        return None
    return best_index, best_dist


def search_for_initialization(
    keypoints1: Sequence[KeyPoint],
    keypoints2: Sequence[KeyPoint],
    descriptors1,
    descriptors2,
    prev_matched: Sequence[tuple[float, float]],
    window_size: float = 100,
    nn_ratio: float = 0.9,
    check_orientation: bool = True,
) -> tuple[list[int], list[tuple[float, float]]]:
    """Match finest-level features of frame 1 to frame 2 around prior positions.

    ``prev_matched`` gives, for each keypoint of frame 1, where to look in
    frame 2. Returns the match of every frame-1 keypoint (-1 where none) and
    the prior positions updated to the matched frame-2 keypoints.
    """
    keypoints1 = list(keypoints1)
    keypoints2 = list(keypoints2)
    rows1 = _descriptor_rows(descriptors1, len(keypoints1), "descriptors1")
    rows2 = _descriptor_rows(descriptors2, len(keypoints2), "descriptors2")
    if len(prev_matched) != len(keypoints1):
        raise ValueError("prev_matched must have one position per keypoint of frame 1")

    matches12 = [-1] * len(keypoints1)
    matches21 = [-1] * len(keypoints2)
    matched_distance = [_UNBOUNDED] * len(keypoints2)
    histogram = RotationHistogram()

    for i1, kp1 in enumerate(keypoints1):
        level = kp1.octave
        if level > 0:
            continue
        px, py = prev_matched[i1]
        candidates = features_in_area(keypoints2, px, py, window_size, level, level)
        if not candidates:
            continue

        d1 = rows1[i1]
        best_dist = best_dist2 = _UNBOUNDED
        best_index = -1
        for i2 in candidates:
            dist = descriptor_distance(d1, rows2[i2])
            if matched_distance[i2] <= dist:
                continue
            if dist < best_dist:
                best_dist2 = best_dist
                best_dist = dist
                best_index = i2
            elif dist < best_dist2:
                best_dist2 = dist

        if best_dist > TH_LOW or not best_dist < float(best_dist2) * nn_ratio:
            continue

        previous = matches21[best_index]
        if previous >= 0:
            matches12[previous] = -1
        matches12[i1] = best_index
        matches21[best_index] = i1
        matched_distance[best_index] = best_dist

        if check_orientation:
            histogram.add(kp1.angle, keypoints2[best_index].angle, i1)

    if check_orientation:
        for i1 in histogram.rejected():
            matches12[i1] = -1

    updated = [
        (keypoints2[m].x, keypoints2[m].y) if m >= 0 else tuple(prev)
        for m, prev in zip(matches12, prev_matched)
    ]
    return matches12, updated


def check_agreement(
    matches12: Sequence[int], matches21: Sequence[int]
) -> dict[int, int]:
    """Matches found in both directions, as a mapping from index1 to index2."""
    agreed = {}
    for i1, i2 in enumerate(matches12):
        if i2 >= 0 and matches21[i2] == i1:
            agreed[i1] = i2
    return agreed
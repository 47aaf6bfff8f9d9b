import numpy as np
import pytest

from posekit.matching import (
    HISTO_LENGTH,
    KeyPoint,
    RotationHistogram,
    check_dist_epipolar_line,
    compute_three_maxima,
    descriptor_distance,
    radius_by_viewing_cos,
    rotation_bin,
)


def _random_descriptor(rng):
    return rng.integers(0, 256, size=32, dtype=np.uint8)


def test_distance_identical_is_zero():
    rng = np.random.default_rng(1)
    d = _random_descriptor(rng)
    assert descriptor_distance(d, d.copy()) == 0


def test_distance_all_bits_differ():
    zeros = np.zeros(32, dtype=np.uint8)
    ones = np.full(32, 255, dtype=np.uint8)
    assert descriptor_distance(zeros, ones) == 256


def test_distance_single_bit_and_bytes_input():
    a = bytes(32)
    b = bytearray(32)
    b[7] = 0b00010000
    assert descriptor_distance(a, bytes(b)) == 1


def test_distance_symmetric_and_triangle():
    rng = np.random.default_rng(7)
    for _ in range(20):
        a, b, c = (_random_descriptor(rng) for _ in range(3))
        ab = descriptor_distance(a, b)
        assert ab == descriptor_distance(b, a)
        assert ab <= descriptor_distance(a, c) + descriptor_distance(c, b)
        assert 0 <= ab <= 256


def test_distance_accepts_int32_rows():
    rng = np.random.default_rng(3)
    a = _random_descriptor(rng)
    b = _random_descriptor(rng)
    assert descriptor_distance(a.view(np.int32), b.view(np.int32)) == descriptor_distance(a, b)


def test_distance_short_descriptor_raises():
    with pytest.raises(ValueError):
        descriptor_distance(bytes(16), bytes(32))


def test_three_maxima_all_kept():
    counts = [0] * HISTO_LENGTH
    counts[4], counts[9], counts[2] = 10, 5, 3
    assert compute_three_maxima(counts) == (4, 9, 2)


def test_three_maxima_weak_second_dropped():
    counts = [0] * HISTO_LENGTH
    counts[0] = 100
    counts[5] = 1
    assert compute_three_maxima(counts) == (0, -1, -1)


def test_three_maxima_empty():
    assert compute_three_maxima([0] * HISTO_LENGTH) == (-1, -1, -1)


def test_radius_by_viewing_cos():
    assert radius_by_viewing_cos(0.999) == 2.5
    assert radius_by_viewing_cos(0.5) == 4.0


F_HORIZONTAL = [[0, 0, 0], [0, 0, -1], [0, 1, 0]]


def test_epipolar_point_on_line():
    p1 = KeyPoint(100.0, 50.0)
    p2 = KeyPoint(30.0, 50.0, octave=0)
    assert check_dist_epipolar_line(p1, p2, F_HORIZONTAL, [1.0])


def test_epipolar_point_far_from_line():
    p1 = KeyPoint(100.0, 50.0)
    p2 = KeyPoint(30.0, 60.0, octave=0)
    assert not check_dist_epipolar_line(p1, p2, F_HORIZONTAL, [1.0])


def test_epipolar_degenerate_line():
    p1 = KeyPoint(1.0, 2.0)
    p2 = KeyPoint(1.0, 2.0)
    assert not check_dist_epipolar_line(p1, p2, np.zeros((3, 3)), [1.0])


def test_rotation_bin_same_angle_is_zero():
    assert rotation_bin(45.0, 45.0) == 0


def test_rotation_bin_in_range():
    for a1 in range(0, 360, 7):
        for a2 in range(0, 360, 11):
            assert 0 <= rotation_bin(float(a1), float(a2)) < HISTO_LENGTH


def test_rotation_bin_out_of_range_raises():
    with pytest.raises(ValueError):
        rotation_bin(0.0, 200.0, 4)


def test_histogram_rejects_minority():
    hist = RotationHistogram()
    for i in range(20):
        hist.add(30.0, 30.0, i)
    hist.add(180.0, 0.0, "outlier")
    assert hist.rejected() == ["outlier"]


def test_histogram_keeps_three_strong_bins():
    hist = RotationHistogram()
    for i in range(10):
        hist.add(0.0, 0.0, ("a", i))
        hist.add(180.0, 0.0, ("b", i))
        hist.add(300.0, 0.0, ("c", i))
    assert hist.rejected() == []
    assert sum(hist.counts) == 30


def test_histogram_empty():
    assert RotationHistogram().rejected() == []


def test_histogram_invalid_length():
    with pytest.raises(ValueError):
        RotationHistogram(0)
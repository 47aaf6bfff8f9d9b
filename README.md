# posekit

Building blocks for visual localisation: matching of 256-bit binary
descriptors, EPnP camera pose estimation inside RANSAC, and similarity (Sim3)
alignment between two sets of matched 3D points. The only runtime dependency
is numpy.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Modules

### `posekit.matching`

- `KeyPoint(x, y, angle=0.0, octave=0)`: a frozen dataclass for an
  undistorted feature.
- `descriptor_distance(a, b)`: Hamming distance between two descriptors of at
  least 32 bytes (bytes or numpy arrays); raises `ValueError` on shorter input.
- `compute_three_maxima(histogram)`: indices of the three fullest bins, with
  -1 for a bin that is missing or holds less than a tenth of the fullest.
- `radius_by_viewing_cos(view_cos)`: 2.5 when the cosine exceeds 0.998,
  otherwise 4.0.
- `check_dist_epipolar_line(point1, point2, f12, level_sigma2)`: whether
  `point2` lies within the chi-square bound (3.84 times its level's sigma²) of
  the epipolar line of `point1` under the fundamental matrix `f12`.
- `rotation_bin(angle1, angle2, length=30)` and `RotationHistogram`: vote on
  orientation changes with `add(angle1, angle2, item)`; `rejected()` lists the
  items outside the three dominant bins.

### `posekit.bow_matching`

- `View`: keypoints, a descriptor array with one row per keypoint, a mapping
  from vocabulary node id to feature indices, and optional `u_right` (stereo
  right coordinate, negative for none) and `mapped` flags.
- `shared_nodes(features1, features2)`: yields `(node, indices1, indices2)`
  for nodes present in both, by ascending node id.
- `search_by_bow(view1, view2, usable1, usable2=None, nn_ratio=0.6,
  check_orientation=True, threshold=50)`: returns a dict from view1 index to
  view2 index, using each view2 feature once and applying the ratio test and
  rotation consistency.
- `search_for_triangulation(view1, view2, f12, epipole, level_sigma2,
  scale_factors, only_stereo=False, check_orientation=True)`: pairs unmapped
  features that satisfy the epipolar constraint and are not too close to the
  epipole; returns `(index1, index2)` pairs sorted by `index1`.

### `posekit.projection_matching`

- `features_in_area(keypoints, x, y, radius, min_level=-1, max_level=-1)`:
  indices inside a square window, optionally filtered by pyramid level.
- `best_match(descriptor, candidates, descriptors, threshold=50)`:
  `(index, distance)` of the closest candidate, or `None`.
- `search_for_initialization(keypoints1, keypoints2, descriptors1,
  descriptors2, prev_matched, window_size=100, nn_ratio=0.9,
  check_orientation=True)`: matches level-0 features of frame 1 around prior
  positions in frame 2; returns the match list (-1 for none) and the updated
  prior positions.
- `check_agreement(matches12, matches21)`: matches found in both directions.

### `posekit.epnp`

- `EPnP(fu, fv, uc, vc)`: add pairs with `add_correspondence(point3d,
  point2d)`, clear them with `reset()`, and call `compute_pose()` for
  `(rotation, translation, mean_reprojection_error)`.
  `reprojection_error(rotation, translation)` measures any pose against the
  stored correspondences.
- `qr_solve(a, b)`: least-squares solution by Householder QR.
- `mat_to_quat(rotation)`: unit quaternion, scalar part last.
- `relative_error(rotation_true, translation_true, rotation_est,
  translation_est)`: relative rotation and translation errors.
- `EPnPError` (a `ValueError`) is raised when no pose or solution exists.

### `posekit.pnp_ransac`

`PnPSolver(points_3d, points_2d, sigma2, fx, fy, cx, cy,
keypoint_indices=None, n_matches=None, seed=None)` runs RANSAC over EPnP.
`set_ransac_parameters(probability=0.99, min_inliers=8, max_iterations=300,
min_set=4, epsilon=0.4, th2=5.991)` adjusts the budget to the number of
correspondences. `find()` and `iterate(n_iterations)` return a `PnPResult`
with `pose` (4×4 float32 world-to-camera, or `None`), `inliers` (one flag
per original match), `n_inliers`, `no_more` and the `found` property.

### `posekit.sim3`

- `compute_sim3(points1, points2, fix_scale=False)`: closed-form similarity
  mapping `points2` onto `points1`, returned as a `Sim3Estimate` with
  `rotation`, `translation`, `scale`, `t12` and `t21`.
- `camera_to_image(points, k)` and `project(points, transform, k)`: pinhole
  projection helpers.
- `Sim3Solver(points1, points2, sigma2_1, sigma2_2, k1, k2,
  match_indices=None, n_matches=None, fix_scale=True, seed=None)`: RANSAC
  over three-point samples. `set_ransac_parameters(probability=0.99,
  min_inliers=6, max_iterations=300)` restarts the count; `find()` and
  `iterate(n_iterations)` return a `Sim3Result` with `transform`, `inliers`,
  `n_inliers`, `no_more`, `estimate` and `found`. The best sample so far is
  kept in `Sim3Solver.best`.

## Example: pose from 2D–3D correspondences

```python
import numpy as np
from posekit.pnp_ransac import PnPSolver

points_3d = np.random.default_rng(0).uniform(-1, 1, size=(50, 3)) + [0, 0, 5]
fx = fy = 500.0
cx, cy = 320.0, 240.0
points_2d = np.column_stack([
    fx * points_3d[:, 0] / points_3d[:, 2] + cx,
    fy * points_3d[:, 1] / points_3d[:, 2] + cy,
])

solver = PnPSolver(points_3d, points_2d, np.ones(50), fx, fy, cx, cy, seed=1)
result = solver.find()
if result.found:
    print(result.pose, result.n_inliers)
```

## Example: EPnP directly

```python
from posekit.epnp import EPnP

epnp = EPnP(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
for p3, p2 in zip(points_3d, points_2d):
    epnp.add_correspondence(p3, p2)
rotation, translation, error = epnp.compute_pose()
```

## What posekit does not do

posekit works on data the caller supplies. It does not detect keypoints or
compute descriptors, build or query a vocabulary tree (node assignments are
passed in through `View.features`), keep keyframes or map points, or refine
poses and maps with bundle adjustment or graph optimisation. It has no
command-line program.
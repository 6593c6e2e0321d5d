# vslamkit

Geometry building blocks for visual SLAM pipelines, built on NumPy.

- `vslamkit.epnp`: `EPnP`, camera pose from 3D–2D correspondences, with the
  helpers `qr_solve` (Householder least squares), `mat_to_quat` and
  `relative_error`.
- `vslamkit.pnp_ransac`: `PnPSolver`, a RANSAC loop around EPnP with a
  refinement step. It takes `Correspondence` records and returns a `PnPResult`.
- `vslamkit.sim3`: `compute_sim3` (Horn's closed-form similarity transform),
  the projection helpers `project` and `camera_to_image`, and `Sim3Solver`, a
  RANSAC loop over `Sim3Match` records that returns a `Sim3Result`.
- `vslamkit.regionprops`: contour measurements (`contour_area`, `arc_length`,
  `contour_moments`, `bounding_rect`, `convex_hull`, `fit_ellipse`,
  `approx_poly_dp`, `fill_polygon`) and `region_props`, which gathers them,
  together with pixel statistics and extrema, into a `Region`.
- `vslamkit.trajectory`: writing camera and keyframe trajectories in TUM and
  KITTI text formats (`write_tum`, `write_kitti`, `write_keyframe_tum`) from
  `FramePose` and `KeyFramePose` records.

## Install

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Pose from correspondences

```python
from vslamkit.epnp import EPnP

solver = EPnP(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
rotation, translation, error = solver.compute_pose(points3d, points2d)
```

`points3d` is an `(n, 3)` array of world points and `points2d` the matching
`(n, 2)` pixel observations. `error` is the mean reprojection error in pixels.

## RANSAC pose

```python
import random
from vslamkit.pnp_ransac import Correspondence, PnPSolver

correspondences = [Correspondence(index=i, point3d=p, point2d=uv) for i, (p, uv) in ...]
solver = PnPSolver(correspondences, n_matches, fx, fy, cx, cy, rng=random.Random(0))
solver.set_ransac_parameters(0.99, 10, 300, 4, 0.5, 5.991)
result = solver.find()
if result.found:
    print(result.pose, result.n_inliers)
```

`rng` is any object with a `randint(a, b)` method, such as `random.Random`.
`result.pose` is a 4×4 float32 world-to-camera transform or `None`;
`result.inliers` has one flag per match (indexed by `Correspondence.index`);
`result.no_more` is true once the iteration budget is spent. `iterate(n)` runs
a limited number of iterations and can be called repeatedly.

## Sim3 between two views

```python
from vslamkit.sim3 import Sim3Match, Sim3Solver, compute_sim3

estimate = compute_sim3(p1, p2, fix_scale=False)   # p1 ≈ s * R @ p2 + t
solver = Sim3Solver(matches, n_matches, k1, k2, fix_scale=False)
result = solver.find()
```

`k1` and `k2` are 3×3 camera matrices. After a run, `estimated_rotation()`,
`estimated_translation()` and `estimated_scale()` give the best hypothesis;
they raise `RuntimeError` if none has been estimated.

## Region properties

```python
from vslamkit.regionprops import region_props

region = region_props(contour, image)
print(region.area, region.centroid, region.eccentricity, region.mean_val)
```

`contour` is a sequence of `(x, y)` pixel points (at least five, for the
ellipse fit) and `image` a single-channel array. `Region` also offers the
derived properties `equivalent_diameter` and `extent`.

## Trajectory export

```python
from vslamkit.trajectory import Sensor, write_keyframe_tum, write_tum

write_keyframe_tum("KeyFrameTrajectory.txt", keyframes)
write_tum("CameraTrajectory.txt", frames, keyframes, Sensor.RGBD)
```

Each writer returns the number of lines written. Full-frame poses are
expressed relative to the keyframe with the lowest id; culled keyframes are
resolved through their parents. `write_tum` and `write_kitti` raise
`TrajectoryError` for a monocular sensor or when there are no keyframes.

## What this package does not do

vslamkit holds the geometric pieces only. It has no feature extraction or
matching, no tracking, local mapping or loop-closing loop, no bundle
adjustment, no map viewer and no command-line program. The trajectory writers
take poses you supply; they do not estimate them from images.
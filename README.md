# covislam

Map management for feature-based visual SLAM: frames and keyframes, map
points, the covisibility graph with its spanning tree and loop edges, a
bag-of-words keyframe database for loop and relocalization candidates,
two-view triangulation, local mapping steps, and the similarity transforms
and corrections applied when a loop closes.

Poses are 4x4 `numpy` arrays in the camera-from-world convention (`Tcw`);
points are 3-vectors in world coordinates.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Modules

- `covislam.frame`: `FrameData`, the keypoints, undistorted keypoints,
  octaves, stereo coordinates, depths, descriptors, calibration matrix, scale
  pyramid, feature grid and pose of one frame. `set_pose`, `camera_center`
  and `rotation_inverse` work on its pose; `FRAME_GRID_COLS` and
  `FRAME_GRID_ROWS` give the grid size (64 x 48).
- `covislam.geometry`: `skew_symmetric`, `fundamental_matrix`,
  `pose_inverse`, `camera_center` and `descriptor_distance` (Hamming
  distance between binary descriptors stored as bytes).
- `covislam.map`: `Map`, a thread-safe set of keyframes and map points in
  insertion order, with reference map points, the largest keyframe id, the
  big-change counter and `keyframe_origins`.
- `covislam.mappoint`: `MapPoint`, a landmark with its observations
  (stereo observations count twice), found/visible counters, representative
  descriptor (least median Hamming distance), mean viewing direction,
  scale-invariance distances and `predict_scale`. `MapPoint.from_frame`
  creates a point from a frame keypoint before any keyframe exists.
- `covislam.keyframe`: `KeyFrame`, built from a `FrameData`. It keeps its
  pose and stereo centre, map-point associations, weighted covisibility
  links (`update_connections` links keyframes sharing at least 15 points,
  or the single best one), spanning-tree parent and children, loop edges,
  deferred erasure (`set_not_erase`, `set_erase`, `set_bad_flag`),
  grid-based `features_in_area`, `unproject_stereo` and
  `compute_scene_median_depth`.
- `covislam.triangulation`: `triangulate_linear` (DLT on two normalised
  points) and `triangulate_pair`, which checks parallax, depth in front of
  both cameras, reprojection error and scale consistency before adding new
  map points to both keyframes and the map.
- `covislam.keyframe_database`: `KeyFrameDatabase`, an inverted file from
  vocabulary words to keyframes, with `detect_loop_candidates` and
  `detect_relocalization_candidates`. The vocabulary is any object with
  `len()` and `score(bow_a, bow_b)`; bags of words are dicts from word id to
  weight.
- `covislam.local_mapping`: `LocalMapping`, the keyframe queue and the
  mapping steps `process_new_keyframe`, `map_point_culling`,
  `create_new_map_points(match_fn)` and `keyframe_culling`, plus the stop,
  release, reset, finish and accept-keyframes requests used to coordinate
  threads.
- `covislam.loop_correction`: `Sim3` (compose with `*`, `inverse`, `map`,
  `from_pose`, `to_se3`), `correct_map_points`, which moves points and
  keyframes onto the corrected side of a loop, and `propagate_global_ba`,
  which spreads a global bundle adjustment result through the spanning tree.
- `covislam.drawer`: `DrawerSettings` (readable from a mapping keyed
  `Viewer.KeyFrameSize` and so on via `from_mapping`), `frustum_segments`
  and `MapDrawer`, which returns point sets, keyframe frustum segments,
  graph edges, the current camera frustum and the current camera pose as 16
  column-major values. It draws nothing itself.

## Example

```python
import numpy as np

from covislam.frame import FrameData
from covislam.geometry import camera_center
from covislam.keyframe import KeyFrame
from covislam.map import Map

tcw = np.eye(4)
tcw[:3, 3] = [0.0, 0.0, 1.0]
print(camera_center(tcw))   # [ 0.  0. -1.]

world = Map()
frame = FrameData(keys=[[100.0, 120.0], [300.0, 200.0]], tcw=tcw)
keyframe = KeyFrame(frame, world)
world.add_keyframe(keyframe)

print(world.num_keyframes())        # 1
print(keyframe.camera_center())     # [ 0.  0. -1.]
```

## What it does not do

- It extracts no features and holds no vocabulary: keypoints, descriptors
  and bags of words come in through `FrameData`, and the vocabulary object
  handed to `KeyFrameDatabase` is supplied by the caller.
- It does no descriptor matching: `LocalMapping.create_new_map_points`
  takes a `match_fn(current, neighbour, f12)` that returns matched index
  pairs.
- It has no tracking, no bundle adjustment or pose-graph optimisation, and
  no Sim3 estimation between keyframes. `propagate_global_ba` expects the
  optimised poses and positions (`tcw_gba`, `pos_gba`) to be already set.
- `LocalMapping` has no processing loop of its own; the caller runs its
  steps. There is no loop-detection or loop-closing driver either.
- There is no command-line program and no viewer window; `MapDrawer` only
  produces geometry for a renderer to draw.
"""Map points: triangulated 3D landmarks and the keyframes that observe them."""

from __future__ import annotations

import math
import threading
from typing import Any

import numpy as np

from covislam.geometry import descriptor_distance


def _as_point(position) -> np.ndarray:
    point = np.array(position, dtype=float).reshape(-1)
    if point.shape != (3,):
        raise ValueError(f"position must have 3 coordinates, got {point.size}")
    return point


class MapPoint:
    """A 3D point of the map with its observations and viewing statistics.

    Observers are keyframe objects exposing ``id``, ``frame_id``,
    ``u_right``, ``octaves``, ``scale_factors``, ``scale_levels``,
    ``log_scale_factor``, ``descriptors``, ``camera_center()``,
    ``is_bad()``, ``erase_map_point_match(index)`` and
    ``replace_map_point_match(index, point)``.
    """

    _next_id = 0
    global_lock = threading.Lock()

    def __init__(self, position, ref_keyframe, map_) -> None:
        self._setup(position, map_, ref_keyframe, ref_keyframe.id, ref_keyframe.frame_id)

    def _setup(self, position, map_, ref_keyframe, first_kf_id: int, first_frame: int) -> None:
        self.first_kf_id = first_kf_id
        self.first_frame = first_frame

        # Bookkeeping used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

        self._world_pos = _as_point(position)
        self._normal = np.zeros(3)
        self._descriptor: np.ndarray | None = None
        self._observations: dict[Any, int] = {}
        self._nobs = 0
        self._ref_keyframe = ref_keyframe
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._map = map_

        self._features_lock = threading.RLock()
        self._pos_lock = threading.RLock()

        with map_.point_creation_lock:
            self.id = MapPoint._next_id
            MapPoint._next_id += 1

    @classmethod
    def from_frame(cls, position, map_, frame, index) -> MapPoint:
        """Create a point seen by keypoint ``index`` of a frame (no keyframe yet)."""
        point = cls.__new__(cls)
        point._setup(position, map_, None, -1, frame.frame_id)

        ow = np.asarray(frame.camera_center(), dtype=float).reshape(3)
        offset = point._world_pos - ow
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist

        level = int(frame.octaves[index])
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[index], dtype=np.uint8)
        return point

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, pos={self._world_pos.tolist()})"

    def set_world_pos(self, position) -> None:
        with MapPoint.global_lock, self._pos_lock:
            self._world_pos = _as_point(position)

    def world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        """Mean viewing direction of the observing keyframes."""
        with self._pos_lock:
            return self._normal.copy()

    def reference_keyframe(self):
        with self._features_lock:
            return self._ref_keyframe

    def add_observation(self, keyframe, index) -> None:
        """Record that keypoint ``index`` of ``keyframe`` sees this point."""
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = int(index)
            self._nobs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Forget an observation; a point left with two or fewer becomes bad."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._nobs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._ref_keyframe is keyframe:
                    self._ref_keyframe = next(iter(self._observations), None)
                bad = self._nobs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict:
        with self._features_lock:
            return dict(self._observations)

    def num_observations(self) -> int:
        """Observation count, where a stereo observation counts twice."""
        with self._features_lock:
            return self._nobs

    def set_bad_flag(self) -> None:
        """Mark the point bad, detach it from its keyframes and from the map."""
        with self._features_lock, self._pos_lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replaced(self):
        with self._features_lock, self._pos_lock:
            return self._replaced

    def replace(self, other) -> None:
        """Merge this point into ``other`` and retire this one."""
        if other.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._features_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n=1) -> None:
        with self._features_lock:
            self._visible += n

    def increase_found(self, n=1) -> None:
        with self._features_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Pick the observed descriptor with least median distance to the others."""
        with self._features_lock:
            if self._bad:
                return
            observations = dict(self._observations)

        descriptors = [
            np.asarray(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observations.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = [[0] * n for _ in range(n)]
        for i, first in enumerate(descriptors):
            for j in range(i + 1, n):
                d = descriptor_distance(first, descriptors[j])
                distances[i][j] = d
                distances[j][i] = d

        best_median = math.inf
        best_idx = 0
        for i, row in enumerate(distances):
            median = sorted(row)[int(0.5 * (n - 1))]
            if median < best_median:
                best_median = median
                best_idx = i

        with self._features_lock:
            self._descriptor = descriptors[best_idx].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._features_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe) -> int:
        """Keypoint index of this point in ``keyframe``, or -1."""
        with self._features_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._features_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and scale-invariance distances."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref_keyframe = self._ref_keyframe
            position = self._world_pos.copy()

        if not observations:
            return
        if ref_keyframe is None:
            raise ValueError("map point has no reference keyframe")

        normal = np.zeros(3)
        for keyframe in observations:
            offset = position - np.asarray(keyframe.camera_center(), dtype=float).reshape(3)
            normal += offset / np.linalg.norm(offset)

        ref_center = np.asarray(ref_keyframe.camera_center(), dtype=float).reshape(3)
        dist = float(np.linalg.norm(position - ref_center))
        level = int(ref_keyframe.octaves[observations.get(ref_keyframe, 0)])
        level_scale_factor = ref_keyframe.scale_factors[level]
        n_levels = ref_keyframe.scale_levels

        with self._pos_lock:
            self._max_distance = dist * level_scale_factor
            self._min_distance = self._max_distance / ref_keyframe.scale_factors[n_levels - 1]
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist, frame) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        if current_dist <= 0:
            raise ValueError("current distance must be positive")
        with self._pos_lock:
            ratio = self._max_distance / current_dist

        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))
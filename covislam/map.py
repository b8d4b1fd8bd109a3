"""The map: the set of keyframes and map points built so far."""

from __future__ import annotations

import threading
from typing import Any


class Map:
    """Thread-safe container of keyframes and map points.

    Keyframes must expose an integer ``id`` attribute. Elements keep the
    order in which they were added.
    """

    def __init__(self) -> None:
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_kf_id = 0
        self._big_change_idx = 0
        self._lock = threading.Lock()

        self.keyframe_origins: list[Any] = []
        self.update_lock = threading.RLock()
        # Keeps map points created in separate threads from sharing an id.
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_kf_id:
                self._max_kf_id = keyframe.id

    def add_map_point(self, point) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record a large change such as a loop closure or global BA."""
        with self._lock:
            self._big_change_idx += 1

    def last_big_change_idx(self) -> int:
        with self._lock:
            return self._big_change_idx

    def keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_map_points)

    def num_map_points(self) -> int:
        with self._lock:
            return len(self._map_points)

    def num_keyframes(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_kf_id

    def clear(self) -> None:
        """Drop every keyframe, map point and origin."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_kf_id = 0
            self._reference_map_points.clear()
            self.keyframe_origins.clear()
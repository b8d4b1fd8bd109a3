"""Keyframes: frames kept in the map, linked in the covisibility graph."""

from __future__ import annotations

import copy
import math
import threading
from typing import Any

import numpy as np

from covislam.frame import FRAME_GRID_COLS, FRAME_GRID_ROWS

_CONNECTION_THRESHOLD = 15


class KeyFrame:
    """A frame promoted to the map.

    A keyframe keeps the keypoints, calibration and scale pyramid of the
    frame it was built from. It tracks the map points it observes, its
    weighted links in the covisibility graph, its place in the spanning
    tree and its loop edges.
    """

    _next_id = 0
    _id_lock = threading.Lock()

    def __init__(self, frame, map_, database=None) -> None:
        if frame.tcw is None:
            raise ValueError("frame pose has not been set")

        with KeyFrame._id_lock:
            self.id = KeyFrame._next_id
            KeyFrame._next_id += 1

        self.frame_id = frame.frame_id
        self.timestamp = frame.timestamp
        self.grid_cols = FRAME_GRID_COLS
        self.grid_rows = FRAME_GRID_ROWS
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        # Bookkeeping used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self.fx = frame.fx
        self.fy = frame.fy
        self.cx = frame.cx
        self.cy = frame.cy
        self.invfx = frame.invfx
        self.invfy = frame.invfy
        self.bf = frame.bf
        self.b = frame.b
        self.th_depth = frame.th_depth
        self.k = np.array(frame.k, dtype=float)

        self.keys = np.array(frame.keys, dtype=float)
        self.keys_un = np.array(frame.keys_un, dtype=float)
        self.octaves = np.array(frame.octaves, dtype=int)
        self.u_right = np.array(frame.u_right, dtype=float)
        self.depth = np.array(frame.depth, dtype=float)
        self.descriptors = np.array(frame.descriptors, dtype=np.uint8)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = {node: list(ids) for node, ids in frame.feat_vec.items()}

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x = frame.min_x
        self.min_y = frame.min_y
        self.max_x = frame.max_x
        self.max_y = frame.max_y

        self.grid = copy.deepcopy(frame.grid)

        self._map_points: list[Any] = list(frame.map_points)
        self._map = map_
        self._database = database

        self._connected_weights: dict[KeyFrame, int] = {}
        self._ordered_connected: list[KeyFrame] = []
        self._ordered_weights: list[int] = []

        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict[KeyFrame, None] = {}
        self._loop_edges: dict[KeyFrame, None] = {}

        self._not_erase = False
        self._to_be_erased = False
        self._bad = False
        self._half_baseline = self.b / 2

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self.set_pose(frame.tcw)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id}, frame_id={self.frame_id})"

    @property
    def n(self) -> int:
        """Number of keypoints."""
        return len(self.keys)

    # Pose

    def set_pose(self, tcw) -> None:
        """Set the world-to-camera pose and update the derived quantities."""
        pose = np.array(tcw, dtype=float)
        if pose.shape != (4, 4):
            raise ValueError(f"pose must be 4x4, got shape {pose.shape}")
        with self._pose_lock:
            self._tcw = pose
            rcw = pose[:3, :3]
            rwc = rcw.T
            self._ow = -rwc @ pose[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            self._cw = (twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0]))[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe, weight) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    @staticmethod
    def _order(weights: dict) -> tuple[list, list]:
        pairs = sorted(weights.items(), key=lambda item: (item[1], item[0].id), reverse=True)
        return [kf for kf, _ in pairs], [w for _, w in pairs]

    def update_best_covisibles(self) -> None:
        """Reorder the connected keyframes by decreasing weight."""
        with self._connections_lock:
            self._ordered_connected, self._ordered_weights = self._order(self._connected_weights)

    def connected_keyframes(self) -> set:
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list:
        """Connected keyframes, most covisible first."""
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n) -> list:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w) -> list:
        """Connected keyframes ahead of the first one weighing less than ``w``.

        When no connection weighs less than ``w`` the result is empty.
        """
        with self._connections_lock:
            for position, weight in enumerate(self._ordered_weights):
                if weight < w:
                    return list(self._ordered_connected[:position])
            return []

    def weight(self, keyframe) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map point associations

    def add_map_point(self, point, index) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index) -> None:
        with self._features_lock:
            self._map_points[index] = None

    def erase_map_point(self, point) -> None:
        index = point.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index, point) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def map_points(self) -> set:
        """Associated map points that are not bad."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs) -> int:
        """Good map points, counting only those with ``min_obs`` observations if positive."""
        with self._features_lock:
            count = 0
            for point in self._map_points:
                if point is None or point.is_bad():
                    continue
                if min_obs > 0 and point.num_observations() < min_obs:
                    continue
                count += 1
            return count

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index):
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes sharing map points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        n_max = 0
        kf_max = None
        selected: dict[KeyFrame, int] = {}
        for keyframe, count in counter.items():
            if count > n_max:
                n_max = count
                kf_max = keyframe
            if count >= _CONNECTION_THRESHOLD:
                selected[keyframe] = count
                keyframe.add_connection(self, count)

        if not selected:
            selected[kf_max] = n_max
            kf_max.add_connection(self, n_max)

        ordered, weights = self._order(selected)

        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree and loop edges

    def add_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe) -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set:
        with self._connections_lock:
            return set(self._children)

    def parent(self):
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set:
        with self._connections_lock:
            return set(self._loop_edges)

    # Erasure

    def set_not_erase(self) -> None:
        """Protect the keyframe from erasure while another task uses it."""
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Lift the protection unless loop edges hold it; erase if one was deferred."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, the spanning tree, the map and the database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        for point in list(self._map_points):
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights = {}
            self._ordered_connected = []
            self._ordered_weights = []

            # Hand each child the candidate parent it is most covisible with,
            # then make it a candidate for the remaining children.
            candidates: list[KeyFrame] = [] if self._parent is None else [self._parent]
            while self._children:
                best_weight = -1
                best_child = best_parent = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        for candidate in candidates:
                            if neighbour.id == candidate.id:
                                w = child.weight(neighbour)
                                if w > best_weight:
                                    best_child, best_parent, best_weight = child, neighbour, w
                if best_child is None:
                    break
                best_child.change_parent(best_parent)
                candidates.append(best_child)
                del self._children[best_child]

            if self._parent is not None:
                for child in list(self._children):
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                self.tcp = self._tcw @ self._parent.pose_inverse()
            self._bad = True

        self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    # Image queries

    def features_in_area(self, x, y, r) -> list[int]:
        """Indices of undistorted keypoints within ``r`` of ``(x, y)`` on each axis."""
        indices: list[int] = []

        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return indices
        max_cell_x = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cell_x < 0:
            return indices
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return indices
        max_cell_y = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cell_y < 0:
            return indices

        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for index in self.grid[ix][iy]:
                    kx, ky = self.keys_un[index]
                    if abs(kx - x) < r and abs(ky - y) < r:
                        indices.append(index)
        return indices

    def is_in_image(self, x, y) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i) -> np.ndarray | None:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = float(self.depth[i])
        if z <= 0:
            return None
        u, v = self.keys[i]
        x3dc = np.array([(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ x3dc + self._twc[:3, 3]

    def compute_scene_median_depth(self, q=2) -> float:
        """Depth of the ``1/q`` quantile of the associated map points."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()

        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ np.asarray(p.world_pos(), dtype=float).reshape(3) + zcw)
            for p in points
            if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]
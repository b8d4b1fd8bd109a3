"""Geometry for visualising the map: points, keyframe frustums and graph edges."""

from __future__ import annotations

import threading
from dataclasses import dataclass, fields

import numpy as np

_SETTING_KEYS = {
    "keyframe_size": "Viewer.KeyFrameSize",
    "keyframe_line_width": "Viewer.KeyFrameLineWidth",
    "graph_line_width": "Viewer.GraphLineWidth",
    "point_size": "Viewer.PointSize",
    "camera_size": "Viewer.CameraSize",
    "camera_line_width": "Viewer.CameraLineWidth",
}

_COVISIBILITY_MIN_WEIGHT = 100


@dataclass(frozen=True)
class DrawerSettings:
    """Sizes and line widths used when drawing the map."""

    keyframe_size: float
    keyframe_line_width: float
    graph_line_width: float
    point_size: float
    camera_size: float
    camera_line_width: float

    @classmethod
    def from_mapping(cls, values) -> DrawerSettings:
        """Read settings keyed as ``Viewer.KeyFrameSize`` and so on; missing keys are 0."""
        return cls(**{f.name: float(values.get(_SETTING_KEYS[f.name], 0.0)) for f in fields(cls)})


def _as_pose(twc) -> np.ndarray:
    pose = np.asarray(twc, dtype=float)
    if pose.shape == (16,):
        return pose.reshape(4, 4, order="F")
    if pose.shape != (4, 4):
        raise ValueError(f"pose must be 4x4 or 16 column-major values, got shape {pose.shape}")
    return pose


def frustum_segments(twc, size) -> np.ndarray:
    """The eight line segments of a camera frustum placed at camera-to-world pose ``twc``.

    ``twc`` is a 4x4 matrix or 16 values in column-major order. The result
    has shape ``(8, 2, 3)``.
    """
    pose = _as_pose(twc)
    w = float(size)
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    local = np.array(
        [
            [origin, (w, h, z)],
            [origin, (w, -h, z)],
            [origin, (-w, -h, z)],
            [origin, (-w, h, z)],
            [(w, h, z), (w, -h, z)],
            [(-w, h, z), (-w, -h, z)],
            [(-w, h, z), (w, h, z)],
            [(-w, -h, z), (w, -h, z)],
        ],
        dtype=float,
    )
    return local @ pose[:3, :3].T + pose[:3, 3]


def _segments(pairs: list) -> np.ndarray:
    if not pairs:
        return np.zeros((0, 2, 3))
    return np.array(pairs, dtype=float).reshape(-1, 2, 3)


class MapDrawer:
    """Produces drawable geometry from a map and the current camera pose."""

    def __init__(self, map_, settings) -> None:
        self.map = map_
        self.settings = settings
        self._camera_pose: np.ndarray | None = None
        self._camera_lock = threading.Lock()

    def map_point_positions(self) -> tuple[np.ndarray, np.ndarray]:
        """World positions of good map points: ``(others, reference points)``."""
        points = self.map.map_points()
        reference = [p for p in dict.fromkeys(self.map.reference_map_points()) if p is not None]
        reference_set = set(reference)

        others = [p.world_pos() for p in points if not p.is_bad() and p not in reference_set]
        refs = [p.world_pos() for p in reference if not p.is_bad()]
        as_array = lambda rows: np.array(rows, dtype=float).reshape(-1, 3)  # noqa: E731
        return as_array(others), as_array(refs)

    def keyframe_frustum_lines(self) -> np.ndarray:
        """Frustum segments of every keyframe, shape ``(8 * n, 2, 3)``."""
        size = self.settings.keyframe_size
        blocks = [frustum_segments(kf.pose_inverse(), size) for kf in self.map.keyframes()]
        if not blocks:
            return np.zeros((0, 2, 3))
        return np.concatenate(blocks)

    def graph_edges(self) -> np.ndarray:
        """Covisibility, spanning-tree and loop edges between keyframe centres."""
        pairs: list = []
        for keyframe in self.map.keyframes():
            center = keyframe.camera_center()
            for other in keyframe.covisibles_by_weight(_COVISIBILITY_MIN_WEIGHT):
                if other.id < keyframe.id:
                    continue
                pairs.append((center, other.camera_center()))

            parent = keyframe.parent()
            if parent is not None:
                pairs.append((center, parent.camera_center()))

            for other in keyframe.loop_edges():
                if other.id < keyframe.id:
                    continue
                pairs.append((center, other.camera_center()))
        return _segments(pairs)

    def current_camera_lines(self, twc) -> np.ndarray:
        """Frustum segments of the current camera at camera-to-world pose ``twc``."""
        return frustum_segments(twc, self.settings.camera_size)

    def set_current_camera_pose(self, tcw) -> None:
        pose = np.array(tcw, dtype=float)
        if pose.shape != (4, 4):
            raise ValueError(f"pose must be 4x4, got shape {pose.shape}")
        with self._camera_lock:
            self._camera_pose = pose

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world pose as 16 column-major values; identity before any pose is set."""
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).ravel(order="F")
        rwc = pose[:3, :3].T
        twc = np.eye(4)
        twc[:3, :3] = rwc
        twc[:3, 3] = -rwc @ pose[:3, 3]
        return twc.ravel(order="F")
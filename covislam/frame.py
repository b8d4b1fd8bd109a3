"""Per-frame observation data shared by keyframes and map points."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

import numpy as np

FRAME_GRID_ROWS = 48
FRAME_GRID_COLS = 64


def _empty_grid() -> list[list[list[int]]]:
    return [[[] for _ in range(FRAME_GRID_ROWS)] for _ in range(FRAME_GRID_COLS)]


@dataclass(eq=False)
class FrameData:
    """Keypoints, calibration, scale pyramid and pose of one image frame.

    Keypoints are stored as ``(N, 2)`` arrays of pixel coordinates with a
    matching array of pyramid octaves. Stereo coordinates and depths are
    negative for keypoints without depth.
    """

    keys: np.ndarray | None = None
    keys_un: np.ndarray | None = None
    octaves: np.ndarray | None = None
    u_right: np.ndarray | None = None
    depth: np.ndarray | None = None
    descriptors: np.ndarray | None = None
    frame_id: int = 0
    timestamp: float = 0.0
    k: np.ndarray = field(default_factory=lambda: np.eye(3))
    dist_coef: np.ndarray = field(default_factory=lambda: np.zeros(4))
    bf: float = 0.0
    th_depth: float = 0.0
    bow_vec: dict[int, float] = field(default_factory=dict)
    feat_vec: dict[int, list[int]] = field(default_factory=dict)
    map_points: list[Any] | None = None
    outliers: list[bool] | None = None
    grid: list[list[list[int]]] = field(default_factory=_empty_grid)
    min_x: float = 0.0
    max_x: float = 640.0
    min_y: float = 0.0
    max_y: float = 480.0
    grid_element_width_inv: float | None = None
    grid_element_height_inv: float | None = None
    scale_levels: int = 8
    scale_factor: float = 1.2
    scale_factors: list[float] | None = None
    inv_scale_factors: list[float] | None = None
    level_sigma2: list[float] | None = None
    inv_level_sigma2: list[float] | None = None
    reference_keyframe: Any = None
    tcw: np.ndarray | None = None

    _rcw: np.ndarray | None = field(default=None, init=False, repr=False)
    _tcw_vec: np.ndarray | None = field(default=None, init=False, repr=False)
    _rwc: np.ndarray | None = field(default=None, init=False, repr=False)
    _ow: np.ndarray | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.keys = (
            np.zeros((0, 2)) if self.keys is None else np.asarray(self.keys, dtype=float).reshape(-1, 2)
        )
        n = len(self.keys)
        self.keys_un = (
            self.keys.copy()
            if self.keys_un is None
            else np.asarray(self.keys_un, dtype=float).reshape(-1, 2)
        )
        self.octaves = (
            np.zeros(n, dtype=int) if self.octaves is None else np.asarray(self.octaves, dtype=int)
        )
        self.u_right = (
            np.full(n, -1.0) if self.u_right is None else np.asarray(self.u_right, dtype=float)
        )
        self.depth = np.full(n, -1.0) if self.depth is None else np.asarray(self.depth, dtype=float)
        self.descriptors = (
            np.zeros((n, 32), dtype=np.uint8)
            if self.descriptors is None
            else np.asarray(self.descriptors, dtype=np.uint8)
        )
        if self.map_points is None:
            self.map_points = [None] * n
        if self.outliers is None:
            self.outliers = [False] * n
        self.k = np.asarray(self.k, dtype=float)

        sizes = {
            "keys_un": len(self.keys_un),
            "octaves": len(self.octaves),
            "u_right": len(self.u_right),
            "depth": len(self.depth),
            "descriptors": len(self.descriptors),
            "map_points": len(self.map_points),
            "outliers": len(self.outliers),
        }
        for name, size in sizes.items():
            if size != n:
                raise ValueError(f"{name} has {size} entries, expected {n}")

        if self.grid_element_width_inv is None:
            self.grid_element_width_inv = FRAME_GRID_COLS / (self.max_x - self.min_x)
        if self.grid_element_height_inv is None:
            self.grid_element_height_inv = FRAME_GRID_ROWS / (self.max_y - self.min_y)

        if self.scale_factors is None:
            self.scale_factors = [self.scale_factor**i for i in range(self.scale_levels)]
        if self.inv_scale_factors is None:
            self.inv_scale_factors = [1.0 / s for s in self.scale_factors]
        if self.level_sigma2 is None:
            self.level_sigma2 = [s * s for s in self.scale_factors]
        if self.inv_level_sigma2 is None:
            self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        if self.tcw is not None:
            self.set_pose(self.tcw)

    @property
    def n(self) -> int:
        """Number of keypoints."""
        return len(self.keys)

    @property
    def log_scale_factor(self) -> float:
        return math.log(self.scale_factor)

    @property
    def fx(self) -> float:
        return float(self.k[0, 0])

    @property
    def fy(self) -> float:
        return float(self.k[1, 1])

    @property
    def cx(self) -> float:
        return float(self.k[0, 2])

    @property
    def cy(self) -> float:
        return float(self.k[1, 2])

    @property
    def invfx(self) -> float:
        return 1.0 / self.fx

    @property
    def invfy(self) -> float:
        return 1.0 / self.fy

    @property
    def b(self) -> float:
        """Stereo baseline in metres."""
        return self.bf / self.fx

    def set_pose(self, tcw: np.ndarray) -> None:
        """Set the world-to-camera pose and update the derived matrices."""
        pose = np.array(tcw, dtype=float)
        if pose.shape != (4, 4):
            raise ValueError(f"pose must be 4x4, got shape {pose.shape}")
        self.tcw = pose
        self._rcw = pose[:3, :3].copy()
        self._tcw_vec = pose[:3, 3].copy()
        self._rwc = self._rcw.T.copy()
        self._ow = -self._rwc @ self._tcw_vec

    def _require_pose(self) -> None:
        if self._ow is None:
            raise ValueError("frame pose has not been set")

    def camera_center(self) -> np.ndarray:
        """Camera centre in world coordinates."""
        self._require_pose()
        return self._ow.copy()

    def rotation_inverse(self) -> np.ndarray:
        """Camera-to-world rotation."""
        self._require_pose()
        return self._rwc.copy()
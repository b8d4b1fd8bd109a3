"""Small geometric helpers for poses, epipolar geometry and descriptors."""

from __future__ import annotations

import numpy as np


def skew_symmetric(v) -> np.ndarray:
    """Matrix ``S`` such that ``S @ w == cross(v, w)``."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def fundamental_matrix(r1w, t1w, k1, r2w, t2w, k2) -> np.ndarray:
    """Fundamental matrix F12 between two calibrated views.

    For corresponding homogeneous pixels ``x1`` and ``x2`` it satisfies
    ``x1 @ F12 @ x2 == 0``.
    """
    r1w = np.asarray(r1w, dtype=float)
    r2w = np.asarray(r2w, dtype=float)
    t1w = np.asarray(t1w, dtype=float).reshape(3)
    t2w = np.asarray(t2w, dtype=float).reshape(3)
    k1 = np.asarray(k1, dtype=float)
    k2 = np.asarray(k2, dtype=float)

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


def pose_inverse(tcw) -> np.ndarray:
    """Invert a 4x4 rigid transform."""
    tcw = np.asarray(tcw, dtype=float)
    if tcw.shape != (4, 4):
        raise ValueError(f"pose must be 4x4, got shape {tcw.shape}")
    rwc = tcw[:3, :3].T
    twc = np.eye(4)
    twc[:3, :3] = rwc
    twc[:3, 3] = -rwc @ tcw[:3, 3]
    return twc


def camera_center(tcw) -> np.ndarray:
    """Camera centre in world coordinates for a world-to-camera pose."""
    tcw = np.asarray(tcw, dtype=float)
    return -tcw[:3, :3].T @ tcw[:3, 3]


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors stored as bytes."""
    a = np.asarray(a, dtype=np.uint8).ravel()
    b = np.asarray(b, dtype=np.uint8).ravel()
    if a.shape != b.shape:
        raise ValueError(f"descriptor sizes differ: {a.size} and {b.size}")
    return int(np.unpackbits(np.bitwise_xor(a, b)).sum())
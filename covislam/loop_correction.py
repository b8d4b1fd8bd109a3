"""Similarity transforms and the pose and point corrections applied when a loop closes."""

from __future__ import annotations

from collections import deque

import numpy as np


class Sim3:
    """A similarity transform ``x -> scale * rotation @ x + translation``."""

    def __init__(self, rotation, translation, scale=1.0) -> None:
        rotation = np.array(rotation, dtype=float)
        if rotation.shape != (3, 3):
            raise ValueError(f"rotation must be 3x3, got shape {rotation.shape}")
        translation = np.array(translation, dtype=float).reshape(-1)
        if translation.shape != (3,):
            raise ValueError(f"translation must have 3 components, got {translation.size}")
        scale = float(scale)
        if scale <= 0:
            raise ValueError("scale must be positive")
        self.rotation = rotation
        self.translation = translation
        self.scale = scale

    @classmethod
    def from_pose(cls, tcw) -> Sim3:
        """The rigid transform of a 3x4 or 4x4 pose, with unit scale."""
        pose = np.asarray(tcw, dtype=float)
        if pose.shape not in ((3, 4), (4, 4)):
            raise ValueError(f"pose must be 3x4 or 4x4, got shape {pose.shape}")
        return cls(pose[:3, :3], pose[:3, 3], 1.0)

    def __repr__(self) -> str:
        return f"Sim3(translation={self.translation.tolist()}, scale={self.scale})"

    def inverse(self) -> Sim3:
        rinv = self.rotation.T
        sinv = 1.0 / self.scale
        return Sim3(rinv, -sinv * (rinv @ self.translation), sinv)

    def map(self, point) -> np.ndarray:
        """Apply the transform to a 3D point."""
        p = np.asarray(point, dtype=float).reshape(3)
        return self.scale * (self.rotation @ p) + self.translation

    def __mul__(self, other):
        if not isinstance(other, Sim3):
            return NotImplemented
        return Sim3(
            self.rotation @ other.rotation,
            self.scale * (self.rotation @ other.translation) + self.translation,
            self.scale * other.scale,
        )

    def to_se3(self) -> np.ndarray:
        """The 4x4 rigid pose ``[R t/s; 0 1]``."""
        pose = np.eye(4)
        pose[:3, :3] = self.rotation
        pose[:3, 3] = self.translation / self.scale
        return pose


def correct_map_points(corrected, non_corrected, current_kf_id) -> int:
    """Move keyframes and their points onto the corrected side of a loop.

    ``corrected`` and ``non_corrected`` map keyframes to their world-to-camera
    Sim3 after and before the loop correction. Each point seen by a corrected
    keyframe is projected with the old pose and back with the new one, once
    per loop; then the keyframe takes its corrected pose. Returns the number
    of points moved.
    """
    moved = 0
    for keyframe, corrected_siw in corrected.items():
        if keyframe not in non_corrected:
            raise KeyError(f"no uncorrected pose for {keyframe!r}")
        siw = non_corrected[keyframe]
        corrected_swi = corrected_siw.inverse()

        for point in keyframe.map_point_matches():
            if point is None or point.is_bad():
                continue
            if point.corrected_by_kf == current_kf_id:
                continue
            point.set_world_pos(corrected_swi.map(siw.map(point.world_pos())))
            point.corrected_by_kf = current_kf_id
            point.corrected_reference = keyframe.id
            point.update_normal_and_depth()
            moved += 1

        keyframe.set_pose(corrected_siw.to_se3())
        keyframe.update_connections()
    return moved


def propagate_global_ba(map_, loop_kf_id) -> None:
    """Spread a global bundle adjustment result to keyframes and points it missed.

    Starting at the roots of the spanning tree, each child not optimised for
    ``loop_kf_id`` keeps its pose relative to its parent. Points optimised by
    the adjustment take their optimised position; the others follow their
    reference keyframe's correction.
    """
    roots = sorted(
        (kf for kf in map_.keyframes() if kf.parent() is None), key=lambda kf: kf.id
    )
    pending = deque(roots)
    while pending:
        keyframe = pending.popleft()
        if keyframe.tcw_gba is None:
            raise ValueError(f"{keyframe!r} has no globally optimised pose")
        twc = keyframe.pose_inverse()
        for child in sorted(keyframe.children(), key=lambda kf: kf.id):
            if child.ba_global_for_kf != loop_kf_id:
                tchildc = child.pose() @ twc
                child.tcw_gba = tchildc @ keyframe.tcw_gba
                child.ba_global_for_kf = loop_kf_id
            pending.append(child)
        keyframe.tcw_bef_gba = keyframe.pose()
        keyframe.set_pose(keyframe.tcw_gba)

    for point in map_.map_points():
        if point.is_bad():
            continue
        if point.ba_global_for_kf == loop_kf_id:
            point.set_world_pos(point.pos_gba)
            continue
        ref = point.reference_keyframe()
        if ref is None or ref.ba_global_for_kf != loop_kf_id:
            continue
        before = np.asarray(ref.tcw_bef_gba, dtype=float)
        xc = before[:3, :3] @ np.asarray(point.world_pos(), dtype=float).reshape(3) + before[:3, 3]
        twc = ref.pose_inverse()
        point.set_world_pos(twc[:3, :3] @ xc + twc[:3, 3])

    map_.inform_new_big_change()
"""Two-view triangulation of matched keypoints into new map points."""

from __future__ import annotations

import math

import numpy as np

from covislam.mappoint import MapPoint

_CHI2_MONO = 5.991
_CHI2_STEREO = 7.8


def triangulate_linear(xn1, xn2, tcw1, tcw2) -> np.ndarray | None:
    """Linear (DLT) triangulation of two normalised image points.

    Poses may be 3x4 or 4x4 world-to-camera matrices. Returns the
    Euclidean point, or None when it lies at infinity.
    """
    xn1 = np.asarray(xn1, dtype=float).reshape(-1)
    xn2 = np.asarray(xn2, dtype=float).reshape(-1)
    p1 = np.asarray(tcw1, dtype=float)[:3, :4]
    p2 = np.asarray(tcw2, dtype=float)[:3, :4]

    a = np.vstack(
        [
            xn1[0] * p1[2] - p1[0],
            xn1[1] * p1[2] - p1[1],
            xn2[0] * p2[2] - p2[0],
            xn2[1] * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    x3d = vt[3]
    if x3d[3] == 0:
        return None
    return x3d[:3] / x3d[3]


def _reprojection_ok(kf, rcw, tcw, x3d, index, z, stereo_bf) -> bool:
    x = float(rcw[0] @ x3d + tcw[0])
    y = float(rcw[1] @ x3d + tcw[1])
    invz = 1.0 / z
    sigma2 = kf.level_sigma2[int(kf.octaves[index])]
    kp = kf.keys_un[index]
    u = kf.fx * x * invz + kf.cx
    v = kf.fy * y * invz + kf.cy
    err_x = u - kp[0]
    err_y = v - kp[1]
    ur = kf.u_right[index]
    if ur < 0:
        return err_x * err_x + err_y * err_y <= _CHI2_MONO * sigma2
    err_xr = u - stereo_bf * invz - ur
    return err_x * err_x + err_y * err_y + err_xr * err_xr <= _CHI2_STEREO * sigma2


def triangulate_pair(kf1, kf2, matches, map_) -> list[MapPoint]:
    """Triangulate matched keypoint pairs ``(idx1, idx2)`` between two keyframes.

    Each accepted point is in front of both cameras, reprojects within the
    chi-square bounds and has a consistent scale. It is registered with
    both keyframes and the map; the new points are returned.
    """
    rcw1 = np.asarray(kf1.rotation(), dtype=float)
    tcw1 = np.asarray(kf1.translation(), dtype=float).reshape(3)
    rwc1 = rcw1.T
    pose1 = np.hstack([rcw1, tcw1[:, None]])
    ow1 = np.asarray(kf1.camera_center(), dtype=float).reshape(3)

    rcw2 = np.asarray(kf2.rotation(), dtype=float)
    tcw2 = np.asarray(kf2.translation(), dtype=float).reshape(3)
    rwc2 = rcw2.T
    pose2 = np.hstack([rcw2, tcw2[:, None]])
    ow2 = np.asarray(kf2.camera_center(), dtype=float).reshape(3)

    ratio_factor = 1.5 * kf1.scale_factor
    created: list[MapPoint] = []

    for idx1, idx2 in matches:
        kp1 = kf1.keys_un[idx1]
        kp2 = kf2.keys_un[idx2]
        stereo1 = kf1.u_right[idx1] >= 0
        stereo2 = kf2.u_right[idx2] >= 0

        xn1 = np.array([(kp1[0] - kf1.cx) * kf1.invfx, (kp1[1] - kf1.cy) * kf1.invfy, 1.0])
        xn2 = np.array([(kp2[0] - kf2.cx) * kf2.invfx, (kp2[1] - kf2.cy) * kf2.invfy, 1.0])

        ray1 = rwc1 @ xn1
        ray2 = rwc2 @ xn2
        cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

        cos_stereo1 = cos_stereo2 = cos_rays + 1
        if stereo1:
            cos_stereo1 = math.cos(2 * math.atan2(kf1.b / 2, kf1.depth[idx1]))
        elif stereo2:
            cos_stereo2 = math.cos(2 * math.atan2(kf2.b / 2, kf2.depth[idx2]))
        cos_stereo = min(cos_stereo1, cos_stereo2)

        if cos_stereo > cos_rays > 0 and (stereo1 or stereo2 or cos_rays < 0.9998):
            x3d = triangulate_linear(xn1, xn2, pose1, pose2)
        elif stereo1 and cos_stereo1 < cos_stereo2:
            x3d = kf1.unproject_stereo(idx1)
        elif stereo2 and cos_stereo2 < cos_stereo1:
            x3d = kf2.unproject_stereo(idx2)
        else:
            continue  # no stereo and very low parallax
        if x3d is None:
            continue
        x3d = np.asarray(x3d, dtype=float).reshape(3)

        z1 = float(rcw1[2] @ x3d + tcw1[2])
        if z1 <= 0:
            continue
        z2 = float(rcw2[2] @ x3d + tcw2[2])
        if z2 <= 0:
            continue

        if not _reprojection_ok(kf1, rcw1, tcw1, x3d, idx1, z1, kf1.bf):
            continue
        # The right-image check of the second view uses the first keyframe's bf.
        if not _reprojection_ok(kf2, rcw2, tcw2, x3d, idx2, z2, kf1.bf):
            continue

        dist1 = float(np.linalg.norm(x3d - ow1))
        dist2 = float(np.linalg.norm(x3d - ow2))
        if dist1 == 0 or dist2 == 0:
            continue
        ratio_dist = dist2 / dist1
        ratio_octave = (
            kf1.scale_factors[int(kf1.octaves[idx1])] / kf2.scale_factors[int(kf2.octaves[idx2])]
        )
        if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
            continue

        point = MapPoint(x3d, kf1, map_)
        point.add_observation(kf1, idx1)
        point.add_observation(kf2, idx2)
        kf1.add_map_point(point, idx1)
        kf2.add_map_point(point, idx2)
        point.compute_distinctive_descriptors()
        point.update_normal_and_depth()
        map_.add_map_point(point)
        created.append(point)

    return created
from dataclasses import dataclass

import numpy as np
import pytest

from covislam.frame import FrameData
from covislam.map import Map
from covislam.triangulation import triangulate_linear, triangulate_pair

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
POINT = np.array([0.5, 0.2, 5.0])


@dataclass(eq=False)
class FakeKeyFrame(FrameData):
    id: int = 0

    def rotation(self):
        return self.tcw[:3, :3].copy()

    def translation(self):
        return self.tcw[:3, 3].copy()

    def is_bad(self):
        return False

    def add_map_point(self, point, index):
        self.map_points[index] = point

    def erase_map_point_match(self, index):
        self.map_points[index] = None

    def replace_map_point_match(self, index, point):
        self.map_points[index] = point


def pose_at(center):
    tcw = np.eye(4)
    tcw[:3, 3] = -np.asarray(center, dtype=float)
    return tcw


def project(tcw, x):
    xc = tcw[:3, :3] @ x + tcw[:3, 3]
    return [K[0, 0] * xc[0] / xc[2] + K[0, 2], K[1, 1] * xc[1] / xc[2] + K[1, 2]]


def make_kf(kf_id, center, shift=(0.0, 0.0), octave=0):
    tcw = pose_at(center)
    key = np.array(project(tcw, POINT)) + np.asarray(shift)
    return FakeKeyFrame(
        id=kf_id, frame_id=kf_id, keys=[key], octaves=[octave], k=K, tcw=tcw
    )


def normalised(tcw, x):
    xc = tcw[:3, :3] @ x + tcw[:3, 3]
    return xc / xc[2]


def test_triangulate_linear_recovers_point():
    t1, t2 = pose_at([0, 0, 0]), pose_at([1, 0, 0])
    x = triangulate_linear(normalised(t1, POINT), normalised(t2, POINT), t1, t2)
    np.testing.assert_allclose(x, POINT, atol=1e-9)


def test_triangulate_linear_accepts_3x4():
    t1, t2 = pose_at([0, 0, 0]), pose_at([1, 0, 0])
    full = triangulate_linear(normalised(t1, POINT), normalised(t2, POINT), t1, t2)
    short = triangulate_linear(normalised(t1, POINT), normalised(t2, POINT), t1[:3], t2[:3])
    np.testing.assert_allclose(full, short)


def test_pair_creates_registered_point():
    world = Map()
    kf1 = make_kf(1, [0, 0, 0])
    kf2 = make_kf(2, [1, 0, 0])
    points = triangulate_pair(kf1, kf2, [(0, 0)], world)
    assert len(points) == 1
    p = points[0]
    np.testing.assert_allclose(p.world_pos(), POINT, atol=1e-6)
    assert p.observations() == {kf1: 0, kf2: 0}
    assert kf1.map_points[0] is p
    assert kf2.map_points[0] is p
    assert world.map_points() == [p]
    assert p.reference_keyframe() is kf1
    assert p.num_observations() == 2


def test_pair_rejects_large_reprojection_error():
    world = Map()
    kf1 = make_kf(1, [0, 0, 0])
    kf2 = make_kf(2, [1, 0, 0], shift=(0.0, 30.0))
    assert triangulate_pair(kf1, kf2, [(0, 0)], world) == []
    assert world.num_map_points() == 0
    assert kf1.map_points[0] is None


def test_pair_rejects_low_parallax():
    world = Map()
    kf1 = make_kf(1, [0, 0, 0])
    kf2 = make_kf(2, [0.0001, 0, 0])
    assert triangulate_pair(kf1, kf2, [(0, 0)], world) == []


def test_pair_rejects_inconsistent_scale():
    world = Map()
    kf1 = make_kf(1, [0, 0, 0], octave=0)
    kf2 = make_kf(2, [1, 0, 0], octave=5)
    assert triangulate_pair(kf1, kf2, [(0, 0)], world) == []


def test_pair_with_no_matches():
    world = Map()
    kf1 = make_kf(1, [0, 0, 0])
    kf2 = make_kf(2, [1, 0, 0])
    assert triangulate_pair(kf1, kf2, [], world) == []
    assert world.num_map_points() == 0
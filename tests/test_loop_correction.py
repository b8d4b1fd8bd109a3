import math

import numpy as np
import pytest

from covislam.geometry import pose_inverse
from covislam.loop_correction import Sim3, correct_map_points, propagate_global_ba


def rot_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def rot_x(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def make_pose(rotation, translation):
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


class FakePoint:
    def __init__(self, pos, ref=None, bad=False):
        self._pos = np.array(pos, dtype=float)
        self.ref = ref
        self.bad = bad
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba = None
        self.normal_updates = 0

    def world_pos(self):
        return self._pos.copy()

    def set_world_pos(self, pos):
        self._pos = np.asarray(pos, dtype=float).reshape(3)

    def is_bad(self):
        return self.bad

    def reference_keyframe(self):
        return self.ref

    def update_normal_and_depth(self):
        self.normal_updates += 1


class FakeKeyFrame:
    def __init__(self, kf_id, tcw, points=()):
        self.id = kf_id
        self._tcw = np.array(tcw, dtype=float)
        self.points = list(points)
        self.connection_updates = 0
        self.kids = set()
        self.dad = None
        self.tcw_gba = None
        self.tcw_bef_gba = None
        self.ba_global_for_kf = 0

    def pose(self):
        return self._tcw.copy()

    def pose_inverse(self):
        return pose_inverse(self._tcw)

    def set_pose(self, tcw):
        self._tcw = np.array(tcw, dtype=float)

    def map_point_matches(self):
        return list(self.points)

    def update_connections(self):
        self.connection_updates += 1

    def children(self):
        return set(self.kids)

    def parent(self):
        return self.dad


class FakeMap:
    def __init__(self, keyframes, points):
        self._keyframes = keyframes
        self._points = points
        self.big_changes = 0

    def keyframes(self):
        return list(self._keyframes)

    def map_points(self):
        return list(self._points)

    def inform_new_big_change(self):
        self.big_changes += 1


def test_from_pose_round_trips_through_se3():
    pose = make_pose(rot_z(0.3) @ rot_x(0.2), [1.0, -2.0, 0.5])
    assert np.allclose(Sim3.from_pose(pose).to_se3(), pose)


def test_inverse_undoes_map():
    s = Sim3(rot_z(0.7), [1.0, 2.0, 3.0], 2.5)
    p = np.array([0.3, -1.2, 4.0])
    assert np.allclose(s.inverse().map(s.map(p)), p)
    assert np.allclose(s.map(s.inverse().map(p)), p)


def test_composition_matches_sequential_mapping():
    a = Sim3(rot_z(0.4), [1.0, 0.0, -1.0], 1.5)
    b = Sim3(rot_x(-0.9), [0.2, 0.3, 0.4], 0.7)
    p = np.array([2.0, -1.0, 0.5])
    composed = a * b
    assert np.allclose(composed.map(p), a.map(b.map(p)))
    assert composed.scale == pytest.approx(a.scale * b.scale)


def test_scale_applies_to_points():
    s = Sim3(np.eye(3), np.zeros(3), 2.0)
    assert np.allclose(s.map([1.0, 2.0, 3.0]), [2.0, 4.0, 6.0])


def test_to_se3_divides_translation_by_scale():
    s = Sim3(np.eye(3), [2.0, 4.0, 6.0], 2.0)
    assert np.allclose(s.to_se3()[:3, 3], [1.0, 2.0, 3.0])


@pytest.mark.parametrize(
    "rotation, translation, scale",
    [
        (np.eye(2), [0, 0, 0], 1.0),
        (np.eye(3), [0, 0], 1.0),
        (np.eye(3), [0, 0, 0], 0.0),
        (np.eye(3), [0, 0, 0], -1.0),
    ],
)
def test_invalid_sim3_raises(rotation, translation, scale):
    with pytest.raises(ValueError):
        Sim3(rotation, translation, scale)


def test_from_pose_rejects_bad_shape():
    with pytest.raises(ValueError):
        Sim3.from_pose(np.eye(3))


def test_multiplication_with_other_types_is_unsupported():
    with pytest.raises(TypeError):
        Sim3(np.eye(3), [0, 0, 0]) * 3


def test_correct_map_points_keeps_camera_coordinates():
    old_pose = make_pose(rot_z(0.1), [0.0, 0.0, 1.0])
    good = FakePoint([1.0, 2.0, 5.0])
    bad = FakePoint([3.0, 3.0, 3.0], bad=True)
    done = FakePoint([4.0, 4.0, 4.0])
    done.corrected_by_kf = 42
    kf = FakeKeyFrame(7, old_pose, [good, None, bad, done])

    non_corrected = {kf: Sim3.from_pose(old_pose)}
    corrected = {kf: Sim3(rot_z(0.5), [1.0, -1.0, 2.0], 1.3)}
    before_cam = non_corrected[kf].map(good.world_pos())

    moved = correct_map_points(corrected, non_corrected, 42)

    assert moved == 1
    assert np.allclose(corrected[kf].map(good.world_pos()), before_cam)
    assert good.corrected_by_kf == 42
    assert good.corrected_reference == 7
    assert good.normal_updates == 1
    assert np.allclose(bad.world_pos(), [3.0, 3.0, 3.0])
    assert np.allclose(done.world_pos(), [4.0, 4.0, 4.0])
    assert np.allclose(kf.pose(), corrected[kf].to_se3())
    assert kf.connection_updates == 1


def test_shared_point_is_corrected_once():
    pose_a = make_pose(np.eye(3), [0.0, 0.0, 0.0])
    pose_b = make_pose(rot_z(0.2), [1.0, 0.0, 0.0])
    shared = FakePoint([0.5, 0.5, 3.0])
    kf_a = FakeKeyFrame(1, pose_a, [shared])
    kf_b = FakeKeyFrame(2, pose_b, [shared])
    non_corrected = {kf_a: Sim3.from_pose(pose_a), kf_b: Sim3.from_pose(pose_b)}
    corrected = {
        kf_a: Sim3(rot_z(0.3), [0.1, 0.2, 0.3], 1.0),
        kf_b: Sim3(rot_z(0.6), [0.4, 0.5, 0.6], 1.0),
    }
    assert correct_map_points(corrected, non_corrected, 9) == 1
    assert shared.corrected_reference == 1


def test_correct_map_points_requires_uncorrected_pose():
    kf = FakeKeyFrame(1, np.eye(4))
    with pytest.raises(KeyError):
        correct_map_points({kf: Sim3(np.eye(3), [0, 0, 0])}, {}, 1)


def build_tree():
    root = FakeKeyFrame(0, np.eye(4))
    root.tcw_gba = make_pose(rot_z(0.2), [0.5, -0.5, 0.1])
    root.ba_global_for_kf = 5
    child = FakeKeyFrame(3, make_pose(rot_x(0.4), [1.0, 2.0, 0.0]))
    child.dad = root
    root.kids = {child}
    return root, child


def test_propagate_preserves_relative_poses_and_updates_points():
    root, child = build_tree()
    old_child_pose = child.pose()
    relative_before = child.pose() @ root.pose_inverse()

    optimised = FakePoint([1.0, 1.0, 1.0])
    optimised.ba_global_for_kf = 5
    optimised.pos_gba = np.array([9.0, 8.0, 7.0])
    follower = FakePoint([0.3, 0.4, 6.0], ref=child)
    outsider_ref = FakeKeyFrame(11, np.eye(4))
    untouched = FakePoint([2.0, 2.0, 2.0], ref=outsider_ref)
    retired = FakePoint([5.0, 5.0, 5.0], bad=True)
    retired.ba_global_for_kf = 5
    retired.pos_gba = np.zeros(3)

    cam_before = old_child_pose[:3, :3] @ follower.world_pos() + old_child_pose[:3, 3]
    map_ = FakeMap([child, root], [optimised, follower, untouched, retired])

    propagate_global_ba(map_, 5)

    assert np.allclose(root.pose(), root.tcw_gba)
    assert np.allclose(child.pose() @ root.pose_inverse(), relative_before)
    assert np.allclose(child.tcw_bef_gba, old_child_pose)
    assert child.ba_global_for_kf == 5
    assert np.allclose(optimised.world_pos(), [9.0, 8.0, 7.0])
    new_pose = child.pose()
    cam_after = new_pose[:3, :3] @ follower.world_pos() + new_pose[:3, 3]
    assert np.allclose(cam_after, cam_before)
    assert np.allclose(untouched.world_pos(), [2.0, 2.0, 2.0])
    assert np.allclose(retired.world_pos(), [5.0, 5.0, 5.0])
    assert map_.big_changes == 1


def test_propagate_without_optimised_root_pose_raises():
    root, child = build_tree()
    root.tcw_gba = None
    with pytest.raises(ValueError):
        propagate_global_ba(FakeMap([root, child], []), 5)
"""Local mapping: turns queued keyframes into map structure and keeps it lean."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Iterable

import numpy as np

from covislam.geometry import fundamental_matrix
from covislam.triangulation import triangulate_pair

logger = logging.getLogger(__name__)

_MIN_FOUND_RATIO = 0.25
_MONO_BASELINE_DEPTH_RATIO = 0.01
_REDUNDANT_OBSERVATIONS = 3
_REDUNDANT_FRACTION = 0.9

MatchFunction = Callable[[object, object, np.ndarray], Iterable[tuple[int, int]]]


class LocalMapping:
    """Processes new keyframes: associates points, culls, triangulates and prunes.

    The stop, reset and finish requests let other threads coordinate with
    the mapping work in the same way the tracking and loop closing do.
    """

    def __init__(self, map_, monocular) -> None:
        self.map = map_
        self.monocular = bool(monocular)
        self.loop_closer = None
        self.tracker = None
        self.current_keyframe = None

        self._new_keyframes: deque = deque()
        self._recent_points: list = []
        self._new_kfs_lock = threading.Lock()
        self._abort_ba = False

        self._reset_cond = threading.Condition()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept_keyframes = True

    def set_loop_closer(self, loop_closer) -> None:
        self.loop_closer = loop_closer

    def set_tracker(self, tracker) -> None:
        self.tracker = tracker

    @property
    def abort_ba(self) -> bool:
        """Whether a running local bundle adjustment has been asked to abort."""
        return self._abort_ba

    @property
    def recent_map_points(self) -> list:
        """Recently created map points still under probation."""
        return list(self._recent_points)

    # Keyframe queue

    def insert_keyframe(self, keyframe) -> None:
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._new_kfs_lock:
            return len(self._new_keyframes)

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def _require_current(self):
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self.current_keyframe

    def process_new_keyframe(self):
        """Take the oldest queued keyframe, link its points and add it to the map."""
        with self._new_kfs_lock:
            if not self._new_keyframes:
                raise IndexError("no keyframes queued")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self._recent_points.append(point)

        keyframe.update_connections()
        self.map.add_keyframe(keyframe)
        return keyframe

    # Map maintenance

    def map_point_culling(self) -> None:
        """Discard recent points that are rarely found or seen from too few keyframes."""
        current_id = self._require_current().id
        threshold = 2 if self.monocular else 3

        kept = []
        for point in self._recent_points:
            if point.is_bad():
                continue
            age = current_id - point.first_kf_id
            if point.found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
            elif age >= 2 and point.num_observations() <= threshold:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self._recent_points = kept

    def create_new_map_points(self, match_fn: MatchFunction) -> list:
        """Triangulate new points against the best covisible keyframes.

        ``match_fn(current, neighbour, f12)`` returns index pairs of
        keypoints matched under the fundamental matrix ``f12``. The new
        points are returned and kept under probation.
        """
        current = self._require_current()
        nn = 20 if self.monocular else 10
        neighbours = current.best_covisibility_keyframes(nn)
        ow1 = np.asarray(current.camera_center(), dtype=float)
        r1w = current.rotation()
        t1w = current.translation()

        created: list = []
        for position, neighbour in enumerate(neighbours):
            if position > 0 and self.check_new_keyframes():
                break

            baseline = float(np.linalg.norm(np.asarray(neighbour.camera_center()) - ow1))
            if not self.monocular:
                if baseline < neighbour.b:
                    continue
            else:
                median_depth = neighbour.compute_scene_median_depth(2)
                if baseline / median_depth < _MONO_BASELINE_DEPTH_RATIO:
                    continue

            f12 = fundamental_matrix(
                r1w, t1w, current.k, neighbour.rotation(), neighbour.translation(), neighbour.k
            )
            matches = list(match_fn(current, neighbour, f12))
            points = triangulate_pair(current, neighbour, matches, self.map)
            self._recent_points.extend(points)
            created.extend(points)
        return created

    def keyframe_culling(self) -> None:
        """Erase local keyframes whose points are nearly all seen elsewhere at similar scale."""
        current = self._require_current()
        for keyframe in current.covisible_keyframes():
            if keyframe.id == 0:
                continue
            redundant = 0
            n_points = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                n_points += 1
                if point.num_observations() <= _REDUNDANT_OBSERVATIONS:
                    continue
                scale_level = int(keyframe.octaves[index])
                seen = 0
                for other, other_index in point.observations().items():
                    if other is keyframe:
                        continue
                    if int(other.octaves[other_index]) <= scale_level + 1:
                        seen += 1
                        if seen >= _REDUNDANT_OBSERVATIONS:
                            break
                if seen >= _REDUNDANT_OBSERVATIONS:
                    redundant += 1

            if redundant > _REDUNDANT_FRACTION * n_points:
                keyframe.set_bad_flag()

    # Thread coordination

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_kfs_lock:
            self._abort_ba = True

    def request_reset(self) -> None:
        """Ask for a reset and block until the mapping work has performed it."""
        with self._reset_cond:
            self._reset_requested = True
            while self._reset_requested:
                self._reset_cond.wait()

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if self._reset_requested:
                with self._new_kfs_lock:
                    self._new_keyframes.clear()
                self._recent_points = []
                self._reset_requested = False
                self._reset_cond.notify_all()

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def release(self) -> None:
        """Resume after a stop, dropping queued keyframes; no effect once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
        logger.info("Local Mapping RELEASE")

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag) -> bool:
        """Forbid or allow stopping; forbidding fails once already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
        with self._stop_lock:
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished
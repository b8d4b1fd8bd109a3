import numpy as np
import pytest

from covislam.frame import FrameData
from covislam.keyframe import KeyFrame
from covislam.keyframe_database import KeyFrameDatabase
from covislam.map import Map


class WordVocabulary:
    def __init__(self, size):
        self.size = size

    def __len__(self):
        return self.size

    def score(self, a, b):
        return sum(min(a[w], b[w]) for w in a if w in b)


def make_keyframe(bow):
    return KeyFrame(FrameData(tcw=np.eye(4), bow_vec=bow), Map())


@pytest.fixture
def database():
    return KeyFrameDatabase(WordVocabulary(10))


def test_relocalization_finds_keyframe_sharing_words(database):
    kf_a = make_keyframe({1: 0.5, 2: 0.5})
    kf_b = make_keyframe({3: 1.0})
    database.add(kf_a)
    database.add(kf_b)
    frame = FrameData(bow_vec={1: 0.5, 2: 0.5}, frame_id=101)
    assert database.detect_relocalization_candidates(frame) == [kf_a]
    assert kf_a.reloc_words == 2
    assert kf_a.reloc_query == 101


def test_erase_removes_keyframe(database):
    kf_a = make_keyframe({1: 0.5, 2: 0.5})
    database.add(kf_a)
    database.erase(kf_a)
    frame = FrameData(bow_vec={1: 0.5, 2: 0.5}, frame_id=102)
    assert database.detect_relocalization_candidates(frame) == []


def test_clear_empties_index(database):
    database.add(make_keyframe({4: 1.0}))
    database.clear()
    frame = FrameData(bow_vec={4: 1.0}, frame_id=103)
    assert database.detect_relocalization_candidates(frame) == []


def test_relocalization_prefers_best_covisible_neighbour(database):
    kf_a = make_keyframe({1: 0.2, 2: 0.2})
    kf_b = make_keyframe({1: 1.0, 2: 1.0})
    kf_a.add_connection(kf_b, 30)
    kf_b.add_connection(kf_a, 30)
    database.add(kf_a)
    database.add(kf_b)
    frame = FrameData(bow_vec={1: 1.0, 2: 1.0}, frame_id=104)
    assert database.detect_relocalization_candidates(frame) == [kf_b]
    assert kf_b.reloc_score > kf_a.reloc_score


def test_loop_candidates_exclude_connected(database):
    kf_a = make_keyframe({1: 1.0, 2: 1.0})
    kf_b = make_keyframe({1: 1.0, 2: 1.0})
    query = make_keyframe({1: 1.0, 2: 1.0})
    query.add_connection(kf_a, 20)
    database.add(kf_a)
    database.add(kf_b)
    assert database.detect_loop_candidates(query, 0.0) == [kf_b]
    assert kf_b.loop_query == query.id
    assert kf_b.loop_words == 2


def test_loop_candidates_respect_min_score(database):
    kf_a = make_keyframe({1: 1.0, 2: 1.0})
    query = make_keyframe({1: 1.0, 2: 1.0})
    database.add(kf_a)
    assert database.detect_loop_candidates(query, 5.0) == []


def test_loop_candidates_empty_when_nothing_shared(database):
    database.add(make_keyframe({5: 1.0}))
    query = make_keyframe({6: 1.0})
    assert database.detect_loop_candidates(query, 0.0) == []


def test_word_outside_vocabulary_raises():
    database = KeyFrameDatabase(WordVocabulary(2))
    with pytest.raises(IndexError):
        database.add(make_keyframe({7: 1.0}))
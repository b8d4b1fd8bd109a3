"""Inverted-file index of keyframes for loop and relocalisation queries."""

from __future__ import annotations

import threading
from typing import Any, Callable

_COMMON_WORDS_RATIO = 0.8
_RETAIN_RATIO = 0.75
_NEIGHBOURS = 10


class KeyFrameDatabase:
    """Index from vocabulary words to the keyframes whose bag of words holds them.

    The vocabulary must support ``len()`` (its number of words) and
    ``score(bow_a, bow_b)``. Keyframes expose ``bow_vec`` (a mapping from
    word id to weight), ``id``, ``connected_keyframes()``,
    ``best_covisibility_keyframes(n)`` and the query bookkeeping
    attributes ``loop_query``, ``loop_words``, ``loop_score``,
    ``reloc_query``, ``reloc_words`` and ``reloc_score``.
    """

    def __init__(self, vocabulary) -> None:
        self._vocabulary = vocabulary
        self._inverted: list[list[Any]] = [[] for _ in range(len(vocabulary))]
        self._lock = threading.Lock()

    def _word_entries(self, word) -> list:
        word = int(word)
        if not 0 <= word < len(self._inverted):
            raise IndexError(f"word {word} is outside a vocabulary of {len(self._inverted)} words")
        return self._inverted[word]

    def add(self, keyframe) -> None:
        """Index ``keyframe`` under every word of its bag of words."""
        with self._lock:
            for word in keyframe.bow_vec:
                self._word_entries(word).append(keyframe)

    def erase(self, keyframe) -> None:
        """Remove ``keyframe`` from the lists of its words."""
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._word_entries(word)
                for position, candidate in enumerate(entries):
                    if candidate is keyframe:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted = [[] for _ in range(len(self._vocabulary))]

    @staticmethod
    def _accumulate(
        scored: list[tuple[float, Any]],
        initial_best: float,
        is_neighbour: Callable[[Any], bool],
        score_of: Callable[[Any], float],
    ) -> list:
        accumulated: list[tuple[float, Any]] = []
        best_acc = initial_best
        for score, keyframe in scored:
            best_score = score
            acc = score
            best_kf = keyframe
            for neighbour in keyframe.best_covisibility_keyframes(_NEIGHBOURS):
                if not is_neighbour(neighbour):
                    continue
                neighbour_score = score_of(neighbour)
                acc += neighbour_score
                if neighbour_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour_score
            accumulated.append((acc, best_kf))
            best_acc = max(best_acc, acc)

        threshold = _RETAIN_RATIO * best_acc
        candidates: list = []
        seen: set = set()
        for acc, keyframe in accumulated:
            if acc > threshold and keyframe not in seen:
                candidates.append(keyframe)
                seen.add(keyframe)
        return candidates

    def detect_loop_candidates(self, keyframe, min_score) -> list:
        """Keyframes not connected to ``keyframe`` that may close a loop with it."""
        connected = keyframe.connected_keyframes()
        sharing: list = []

        with self._lock:
            for word in keyframe.bow_vec:
                for candidate in self._word_entries(word):
                    if candidate.loop_query != keyframe.id:
                        candidate.loop_words = 0
                        if candidate not in connected:
                            candidate.loop_query = keyframe.id
                            sharing.append(candidate)
                    candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(candidate.loop_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, candidate.bow_vec)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))

        if not scored:
            return []

        return self._accumulate(
            scored,
            min_score,
            lambda k: k.loop_query == keyframe.id and k.loop_words > min_common,
            lambda k: k.loop_score,
        )

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes similar enough to ``frame`` to try relocalising against."""
        query = frame.frame_id
        sharing: list = []

        with self._lock:
            for word in frame.bow_vec:
                for candidate in self._word_entries(word):
                    if candidate.reloc_query != query:
                        candidate.reloc_words = 0
                        candidate.reloc_query = query
                        sharing.append(candidate)
                    candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(candidate.reloc_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))

        if not scored:
            return []

        return self._accumulate(
            scored,
            0.0,
            lambda k: k.reloc_query == query,
            lambda k: k.reloc_score,
        )
"""Keyframe database for loop candidate retrieval.

Keyframes are indexed by the visual words present in their BoW vector.
A loop query only scores keyframes that share words with the query, then
groups candidates by covisibility so a single distinctive keyframe cannot
win against a consistently similar neighbourhood.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import TYPE_CHECKING

import numpy as np

from .vocabulary import VisualVocabulary

if TYPE_CHECKING:
    from ..mapping import Keyframe, Map

# Keep keyframes sharing more than this fraction of the best common-word count
COMMON_WORDS_RATIO = 0.8
# Keep groups whose accumulated score exceeds this fraction of the best group
ACCUMULATED_SCORE_RATIO = 0.75
# Covisible neighbours accumulated per candidate
GROUP_SIZE = 10


class KeyframeDatabase:
    """Inverted index of keyframes by visual word."""

    def __init__(self, slam_map: Map) -> None:
        """Initialize empty database.

        Args:
            slam_map: Map used to resolve keyframe ids
        """
        self._map = slam_map
        self._inverted_index: dict[int, set[int]] = defaultdict(set)
        self._lock = threading.Lock()

    @staticmethod
    def _words(keyframe: Keyframe) -> np.ndarray:
        if keyframe.bow_vector is None:
            return np.empty(0, dtype=np.int64)
        return np.flatnonzero(keyframe.bow_vector > 0)

    def add(self, keyframe: Keyframe) -> None:
        """Index a keyframe under every word of its BoW vector."""
        with self._lock:
            for word in self._words(keyframe):
                self._inverted_index[int(word)].add(keyframe.id)

    def erase(self, keyframe: Keyframe) -> None:
        """Remove a keyframe from the index."""
        with self._lock:
            for word in self._words(keyframe):
                self._inverted_index[int(word)].discard(keyframe.id)

    def clear(self) -> None:
        with self._lock:
            self._inverted_index.clear()

    @property
    def num_keyframes(self) -> int:
        with self._lock:
            return len(set().union(*self._inverted_index.values())) if self._inverted_index else 0

    def score(self, bow1: np.ndarray, bow2: np.ndarray) -> float:
        """Similarity of two BoW vectors in [0, 1]."""
        return VisualVocabulary.score(bow1, bow2)

    def query_candidates(self, keyframe: Keyframe, min_score: float) -> list[Keyframe]:
        """Find loop candidates for ``keyframe``.

        Keyframes connected to the query in the covisibility graph are never
        returned.

        Args:
            keyframe: Query keyframe
            min_score: Minimum BoW similarity a candidate must reach

        Returns:
            Best keyframe of every retained covisibility group
        """
        if keyframe.bow_vector is None:
            return []

        connected = keyframe.get_connected_ids()

        # Keyframes sharing words with the query
        common_words: dict[int, int] = defaultdict(int)
        with self._lock:
            for word in self._words(keyframe):
                for kf_id in self._inverted_index.get(int(word), ()):
                    if kf_id != keyframe.id and kf_id not in connected:
                        common_words[kf_id] += 1

        if not common_words:
            return []

        min_common = COMMON_WORDS_RATIO * max(common_words.values())

        scores: dict[int, float] = {}
        for kf_id, count in common_words.items():
            if count <= min_common:
                continue
            candidate = self._map.get_keyframe(kf_id)
            if candidate is None or candidate.bad or candidate.bow_vector is None:
                continue
            score = self.score(keyframe.bow_vector, candidate.bow_vector)
            if score >= min_score:
                scores[kf_id] = score

        if not scores:
            return []

        # Accumulate score by covisibility
        accumulated: list[tuple[float, int]] = []
        best_accumulated = 0.0
        for kf_id, score in scores.items():
            candidate = self._map.get_keyframe(kf_id)
            if candidate is None:
                continue
            best_score = score
            best_id = kf_id
            total = score
            for neighbour_id in candidate.get_best_covisibles(GROUP_SIZE):
                neighbour_score = scores.get(neighbour_id)
                if neighbour_score is None:
                    continue
                total += neighbour_score
                if neighbour_score > best_score:
                    best_score = neighbour_score
                    best_id = neighbour_id
            accumulated.append((total, best_id))
            best_accumulated = max(best_accumulated, total)

        min_accumulated = ACCUMULATED_SCORE_RATIO * best_accumulated

        candidates: list[Keyframe] = []
        seen: set[int] = set()
        for total, best_id in sorted(accumulated, key=lambda item: -item[0]):
            if total <= min_accumulated or best_id in seen:
                continue
            best = self._map.get_keyframe(best_id)
            if best is not None and not best.bad:
                candidates.append(best)
                seen.add(best_id)

        return candidates

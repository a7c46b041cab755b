"""Flat visual vocabulary.

Descriptors are quantized to their nearest cluster center. A keyframe is
summarized by the TF-IDF weighted, L2 normalized histogram of its words, and
two keyframes are compared by the dot product of their histograms. The
per-keypoint words are also exposed so descriptor matching can be limited to
keypoints that fall in the same word.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np


@dataclass
class VisualVocabulary:
    """Cluster centers of 32-byte binary descriptors plus IDF weights.

    Attributes:
        words: (n_words, 32) float32 centers
        n_words: Vocabulary size
        idf: (n_words,) float32 weights
    """

    words: np.ndarray
    n_words: int
    idf: np.ndarray

    def assign_words(self, descriptors: np.ndarray) -> np.ndarray:
        """Index of the nearest center for each (N, 32) uint8 descriptor."""
        if descriptors is None or len(descriptors) == 0:
            return np.empty(0, dtype=np.int64)

        # centers come from k-means, so distances are Euclidean on the bytes
        values = np.asarray(descriptors, dtype=np.float32)
        sq_dist = ((values[:, None, :] - self.words[None, :, :]) ** 2).sum(axis=2)
        return sq_dist.argmin(axis=1)

    def describe(self, descriptors: np.ndarray) -> np.ndarray:
        """Bag of words vector of one keyframe, shape (n_words,)."""
        counts = np.bincount(self.assign_words(descriptors), minlength=self.n_words)
        weighted = counts.astype(np.float32) * self.idf
        length = np.linalg.norm(weighted)
        return weighted / length if length > 0 else weighted

    @staticmethod
    def score(bow1: np.ndarray, bow2: np.ndarray) -> float:
        """Similarity of two normalized vectors, clipped to [0, 1]."""
        return float(np.clip(np.dot(bow1, bow2), 0.0, 1.0))

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Read a vocabulary saved with ``np.savez`` (words, n_words, idf).

        Raises:
            FileNotFoundError: If ``path`` does not exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Vocabulary file not found: {path}")

        with np.load(path) as archive:
            return cls(
                words=archive["words"].astype(np.float32),
                n_words=int(archive["n_words"]),
                idf=archive["idf"].astype(np.float32),
            )

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Vocabulary over the given centers, every word weighted 1."""
        centers = np.asarray(words, dtype=np.float32)
        return cls(words=centers, n_words=len(centers), idf=np.ones(len(centers), dtype=np.float32))

    def update_idf(self, document_frequencies: np.ndarray, n_documents: int) -> None:
        """Reweight words as log(n_documents / df); unseen words count as df = 1."""
        df = np.maximum(np.asarray(document_frequencies), 1)
        self.idf = np.log(n_documents / df).astype(np.float32)

"""Descriptor matching between keyframes and landmarks.

Four searches are used by loop closing:

- match_by_index: descriptor matching between the landmarks of two
  keyframes, restricted to keypoints sharing a visual word
- match_by_transform: guided matching after a similarity estimate,
  projecting each keyframe's landmarks into the other
- match_by_projection: project loop landmarks into the current keyframe
- fuse: project landmarks into a keyframe and report duplicates

All searches compare ORB descriptors with the Hamming distance through
OpenCV's brute force matcher.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

import cv2
import numpy as np

if TYPE_CHECKING:
    from ..geometry import PinholeCamera, Sim3
    from ..mapping import Keyframe, Landmark, Map

TH_LOW = 50
TH_HIGH = 100


class FeatureMatcher:
    """ORB matcher for loop detection and correction."""

    def __init__(
        self,
        slam_map: Map,
        camera: PinholeCamera,
        ratio_threshold: float = 0.75,
    ) -> None:
        """Initialize matcher.

        Args:
            slam_map: Map used to resolve landmark ids
            camera: Pinhole intrinsics for projection searches
            ratio_threshold: Lowe's ratio test threshold for index matching
        """
        self._map = slam_map
        self._camera = camera
        self._ratio_threshold = ratio_threshold
        self._matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

    def _valid_landmarks(self, keyframe: Keyframe) -> dict[int, Landmark]:
        """Slot -> landmark for every live landmark of a keyframe."""
        result = {}
        for slot, lm_id in keyframe.get_slot_landmarks().items():
            landmark = self._map.get_landmark(lm_id)
            if landmark is not None and not landmark.bad:
                result[slot] = landmark
        return result

    def _best_match(
        self, descriptor: np.ndarray, keyframe: Keyframe, slots: np.ndarray
    ) -> tuple[int, float]:
        """Closest keypoint among ``slots`` to ``descriptor``.

        Returns:
            (slot, Hamming distance), or (-1, inf) if ``slots`` is empty
        """
        if len(slots) == 0:
            return -1, float("inf")
        found = self._matcher.match(
            descriptor.reshape(1, -1), keyframe.descriptors[slots]
        )
        if not found:
            return -1, float("inf")
        return int(slots[found[0].trainIdx]), float(found[0].distance)

    @staticmethod
    def _slots_in_radius(
        keyframe: Keyframe, pixel: np.ndarray, radius: float
    ) -> np.ndarray:
        d2 = np.sum((keyframe.keypoints - pixel) ** 2, axis=1)
        return np.flatnonzero(d2 <= radius * radius)

    def _project(self, points_camera: np.ndarray) -> np.ndarray | None:
        """Project one camera-frame point; None when behind or outside the image."""
        if points_camera[2] <= 0.0:
            return None
        pixel = self._camera.project(points_camera)
        if not self._camera.is_in_image(pixel)[0]:
            return None
        return pixel

    def match_by_index(self, keyframe1: Keyframe, keyframe2: Keyframe) -> dict[int, int]:
        """Match landmarks of two keyframes by descriptor.

        When both keyframes carry per-keypoint visual words only keypoints
        with the same word are compared.

        Returns:
            Slot in keyframe1 -> landmark id of keyframe2
        """
        landmarks1 = self._valid_landmarks(keyframe1)
        landmarks2 = self._valid_landmarks(keyframe2)
        if not landmarks1 or not landmarks2:
            return {}

        buckets1: dict[int, list[int]] = defaultdict(list)
        buckets2: dict[int, list[int]] = defaultdict(list)
        use_words = keyframe1.feature_words is not None and keyframe2.feature_words is not None
        for slot in landmarks1:
            word = int(keyframe1.feature_words[slot]) if use_words else 0
            buckets1[word].append(slot)
        for slot in landmarks2:
            word = int(keyframe2.feature_words[slot]) if use_words else 0
            buckets2[word].append(slot)

        matches: dict[int, int] = {}
        matched2: set[int] = set()
        for word, slots1 in buckets1.items():
            slots2 = buckets2.get(word)
            if not slots2:
                continue

            knn = self._matcher.knnMatch(
                keyframe1.descriptors[slots1], keyframe2.descriptors[slots2], k=2
            )
            for candidates in knn:
                if not candidates:
                    continue
                best = candidates[0]
                if best.distance > TH_LOW:
                    continue
                if (
                    len(candidates) > 1
                    and best.distance >= self._ratio_threshold * candidates[1].distance
                ):
                    continue

                slot2 = slots2[best.trainIdx]
                if slot2 in matched2:
                    continue
                matched2.add(slot2)
                matches[slots1[best.queryIdx]] = landmarks2[slot2].id

        return matches

    def match_by_transform(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        S12: Sim3,
        radius: float,
    ) -> int:
        """Find more landmark matches guided by a similarity estimate.

        A pair is accepted only if the landmark of each keyframe, projected
        into the other, lands on the keypoint of its partner.

        Args:
            keyframe1: Keyframe whose slots key ``matches``
            keyframe2: Other keyframe
            matches: Existing matches, extended in place
            S12: Similarity camera 2 -> camera 1
            radius: Search radius in pixels

        Returns:
            Number of new matches
        """
        S21 = S12.inverse()
        T1 = keyframe1.get_pose()
        T2 = keyframe2.get_pose()

        landmarks1 = self._valid_landmarks(keyframe1)
        landmarks2 = self._valid_landmarks(keyframe2)
        already_matched = set(matches.values())

        # keyframe2 landmarks projected into keyframe1
        match_2to1: dict[int, int] = {}
        for slot2, landmark in landmarks2.items():
            if landmark.id in already_matched:
                continue
            pixel = self._project(S12.map(T2.transform_points(landmark.get_position())))
            if pixel is None:
                continue
            slot1, distance = self._best_match(
                landmark.descriptor, keyframe1, self._slots_in_radius(keyframe1, pixel, radius)
            )
            if slot1 >= 0 and distance <= TH_HIGH:
                match_2to1[slot2] = slot1

        # keyframe1 landmarks projected into keyframe2
        match_1to2: dict[int, int] = {}
        for slot1, landmark in landmarks1.items():
            if slot1 in matches:
                continue
            pixel = self._project(S21.map(T1.transform_points(landmark.get_position())))
            if pixel is None:
                continue
            slot2, distance = self._best_match(
                landmark.descriptor, keyframe2, self._slots_in_radius(keyframe2, pixel, radius)
            )
            if slot2 >= 0 and distance <= TH_HIGH:
                match_1to2[slot1] = slot2

        found = 0
        for slot1, slot2 in match_1to2.items():
            if match_2to1.get(slot2) == slot1 and slot2 in landmarks2:
                matches[slot1] = landmarks2[slot2].id
                found += 1
        return found

    def match_by_projection(
        self,
        keyframe: Keyframe,
        Scw: Sim3,
        landmark_ids: list[int],
        matches: dict[int, int],
        radius: float,
    ) -> int:
        """Project landmarks with ``Scw`` and match them to free keypoints.

        Args:
            keyframe: Keyframe searched
            Scw: Similarity world -> camera of the keyframe
            landmark_ids: Landmarks to project
            matches: Slot -> landmark id, extended in place
            radius: Search radius in pixels

        Returns:
            Number of new matches
        """
        already_found = set(matches.values())
        found = 0

        for lm_id in landmark_ids:
            landmark = self._map.get_landmark(lm_id)
            if landmark is None or landmark.bad or lm_id in already_found:
                continue
            pixel = self._project(Scw.map(landmark.get_position()))
            if pixel is None:
                continue

            free = np.array(
                [s for s in self._slots_in_radius(keyframe, pixel, radius) if int(s) not in matches],
                dtype=np.int64,
            )
            slot, distance = self._best_match(landmark.descriptor, keyframe, free)
            if slot >= 0 and distance <= TH_LOW:
                matches[slot] = lm_id
                already_found.add(lm_id)
                found += 1

        return found

    def fuse(
        self,
        keyframe: Keyframe,
        Scw: Sim3,
        landmark_ids: list[int],
        radius: float,
    ) -> dict[int, int]:
        """Project landmarks into a keyframe and merge with what is there.

        A landmark landing on a free keypoint is attached to it directly.
        A landmark landing on a keypoint that already holds another landmark
        is reported so the caller can replace the existing one.

        Args:
            keyframe: Keyframe to fuse into
            Scw: Corrected similarity world -> camera of the keyframe
            landmark_ids: Landmarks to fuse
            radius: Search radius in pixels

        Returns:
            Fused landmark id -> id of the landmark it should replace
        """
        replacements: dict[int, int] = {}

        for lm_id in landmark_ids:
            landmark = self._map.get_landmark(lm_id)
            if landmark is None or landmark.bad or landmark.is_in_keyframe(keyframe.id):
                continue
            pixel = self._project(Scw.map(landmark.get_position()))
            if pixel is None:
                continue

            slot, distance = self._best_match(
                landmark.descriptor, keyframe, self._slots_in_radius(keyframe, pixel, radius)
            )
            if slot < 0 or distance > TH_LOW:
                continue

            existing_id = keyframe.landmark_at(slot)
            if existing_id is None:
                self._map.add_observation(landmark, keyframe, slot)
                continue
            existing = self._map.get_landmark(existing_id)
            if existing is not None and not existing.bad and existing.id != landmark.id:
                replacements[landmark.id] = existing.id

        return replacements

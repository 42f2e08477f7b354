"""
Tests for the Haar cascade face detector and box utilities.
"""

from unittest.mock import MagicMock

import cv2
import numpy as np

from engines.vision.detector import (
    BoundingBox, HaarFaceDetector, iou, non_max_suppression,
)
from engines.vision.settings import DetectionSettings


def _make_detector(primary=None, fallback=None, settings=None):
    detector = HaarFaceDetector.__new__(HaarFaceDetector)
    detector.settings = settings or DetectionSettings(min_face=24)
    detector._clahe = cv2.createCLAHE()
    detector._primary = primary
    detector._fallback = fallback
    return detector


def _classifier(rects):
    classifier = MagicMock()
    classifier.detectMultiScale.return_value = rects
    return classifier


class TestBoundingBox:
    def test_properties(self):
        box = BoundingBox(x=10, y=20, width=100, height=50)
        assert box.area == 5000
        assert box.right == 110
        assert box.bottom == 70

    def test_to_dict(self):
        assert BoundingBox(1, 2, 3, 4).to_dict() == {'x': 1, 'y': 2, 'width': 3, 'height': 4}


class TestIoU:
    def test_identical_boxes(self):
        box = BoundingBox(0, 0, 10, 10)
        assert iou(box, box) == 1.0

    def test_disjoint_boxes(self):
        assert iou(BoundingBox(0, 0, 10, 10), BoundingBox(20, 20, 10, 10)) == 0.0

    def test_touching_edges_do_not_overlap(self):
        assert iou(BoundingBox(0, 0, 10, 10), BoundingBox(10, 0, 10, 10)) == 0.0

    def test_partial_overlap(self):
        # intersection 50, union 150
        result = iou(BoundingBox(0, 0, 10, 10), BoundingBox(5, 0, 10, 10))
        assert abs(result - 50 / 150) < 1e-9


class TestNonMaxSuppression:
    def test_overlapping_keeps_larger(self):
        large = BoundingBox(0, 0, 100, 100)
        small = BoundingBox(10, 10, 80, 80)  # IoU 0.64
        assert non_max_suppression([small, large]) == [large]

    def test_low_overlap_keeps_both(self):
        a = BoundingBox(0, 0, 100, 100)
        b = BoundingBox(70, 0, 100, 100)  # IoU 30/170
        assert iou(a, b) <= 0.35
        kept = non_max_suppression([a, b])
        assert len(kept) == 2

    def test_sorted_by_area(self):
        small = BoundingBox(500, 500, 20, 20)
        large = BoundingBox(0, 0, 100, 100)
        assert non_max_suppression([small, large]) == [large, small]

    def test_empty(self):
        assert non_max_suppression([]) == []


class TestHaarFaceDetector:
    def test_no_classifiers_returns_empty(self):
        detector = _make_detector()
        assert detector.is_available is False
        assert detector.detect(np.zeros((100, 100, 3), dtype=np.uint8)) == []

    def test_empty_image_returns_empty(self):
        detector = _make_detector(primary=_classifier([(0, 0, 10, 10)]))
        assert detector.detect(np.zeros((0, 0, 3), dtype=np.uint8)) == []

    def test_primary_hit_skips_fallback(self):
        primary = _classifier([(10, 10, 50, 50)])
        fallback = _classifier([(0, 0, 30, 30)])
        detector = _make_detector(primary, fallback)

        faces = detector.detect(np.zeros((200, 200, 3), dtype=np.uint8))

        assert faces == [BoundingBox(10, 10, 50, 50)]
        fallback.detectMultiScale.assert_not_called()

    def test_fallback_uses_relaxed_neighbors(self):
        primary = _classifier([])
        fallback = _classifier([(5, 5, 40, 40)])
        settings = DetectionSettings(min_face=24, cascade_min_neighbors=8)
        detector = _make_detector(primary, fallback, settings)

        faces = detector.detect(np.zeros((200, 200), dtype=np.uint8))

        assert faces == [BoundingBox(5, 5, 40, 40)]
        assert fallback.detectMultiScale.call_args.kwargs['minNeighbors'] == 6

    def test_relaxed_neighbors_floor(self):
        fallback = _classifier([])
        detector = _make_detector(None, fallback, DetectionSettings(min_face=24, cascade_min_neighbors=3))
        detector.detect(np.zeros((100, 100), dtype=np.uint8))
        assert fallback.detectMultiScale.call_args.kwargs['minNeighbors'] == 2

    def test_primary_error_is_not_fatal(self):
        primary = MagicMock()
        primary.detectMultiScale.side_effect = cv2.error("boom")
        fallback = _classifier([(0, 0, 60, 60)])
        detector = _make_detector(primary, fallback)

        assert detector.detect(np.zeros((120, 120, 3), dtype=np.uint8)) == [BoundingBox(0, 0, 60, 60)]

    def test_total_failure_returns_empty(self):
        primary = MagicMock()
        primary.detectMultiScale.side_effect = cv2.error("boom")
        fallback = MagicMock()
        fallback.detectMultiScale.side_effect = cv2.error("boom")
        detector = _make_detector(primary, fallback)

        assert detector.detect(np.zeros((120, 120, 3), dtype=np.uint8)) == []

    def test_boxes_rescaled_after_downscale(self):
        primary = _classifier([(10, 20, 30, 40)])
        detector = _make_detector(primary, settings=DetectionSettings(downscale=0.5, min_face=24))

        faces = detector.detect(np.zeros((400, 400, 3), dtype=np.uint8))

        assert faces == [BoundingBox(20, 40, 60, 80)]
        gray = primary.detectMultiScale.call_args.args[0]
        assert gray.shape == (200, 200)

    def test_min_size_clamped_to_eighth_of_short_side(self):
        primary = _classifier([])
        detector = _make_detector(primary, settings=DetectionSettings(min_face=10))
        detector.detect(np.zeros((480, 640, 3), dtype=np.uint8))
        assert primary.detectMultiScale.call_args.kwargs['minSize'] == (60, 60)

    def test_duplicates_suppressed(self):
        primary = _classifier([(0, 0, 100, 100), (5, 5, 95, 95)])
        detector = _make_detector(primary)
        faces = detector.detect(np.zeros((300, 300, 3), dtype=np.uint8))
        assert faces == [BoundingBox(0, 0, 100, 100)]

    def test_detect_largest(self):
        primary = _classifier([(0, 0, 20, 20), (100, 100, 80, 80)])
        detector = _make_detector(primary)
        assert detector.detect_largest(np.zeros((300, 300), dtype=np.uint8)) == BoundingBox(100, 100, 80, 80)

"""
Vision Engine
Face detection, preprocessing, augmentation and LBPH recognition on OpenCV.

Usage:
    from engines.vision import HaarFaceDetector, FaceImageProcessor, LBPHRecognizer

    detector   = HaarFaceDetector()
    processor  = FaceImageProcessor(detector=detector)
    recognizer = LBPHRecognizer(processor)
    recognizer.train("data/faces")
"""

from engines.vision.augmenter import augment
from engines.vision.detector import BoundingBox, HaarFaceDetector, iou, non_max_suppression
from engines.vision.preprocess import CropOptions, FaceImageProcessor
from engines.vision.quality import is_sharp_enough, laplacian_variance
from engines.vision.recognizer import (
    IncrementalUpdateNotSupported,
    LBPHRecognizer,
    ModelLoadError,
    Prediction,
    Recognizer,
    RecognizerError,
)
from engines.vision.settings import VisionSettings

__all__ = [
    'augment',
    'BoundingBox',
    'CropOptions',
    'FaceImageProcessor',
    'HaarFaceDetector',
    'IncrementalUpdateNotSupported',
    'iou',
    'is_sharp_enough',
    'laplacian_variance',
    'LBPHRecognizer',
    'ModelLoadError',
    'non_max_suppression',
    'Prediction',
    'Recognizer',
    'RecognizerError',
    'VisionSettings',
]

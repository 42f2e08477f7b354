"""
Training Augmenter — flipped and rotated variants of enrollment images,
each filtered through the sharpness gate.
"""

from typing import List

import cv2
import numpy as np

from engines.vision.quality import is_sharp_enough

ROTATION_ANGLES = (-10.0, 10.0)


def rotate_keep_size(image: np.ndarray, angle: float) -> np.ndarray:
    """Rotate about the center without changing the canvas; borders are reflected."""
    height, width = image.shape[:2]
    matrix = cv2.getRotationMatrix2D((width / 2.0, height / 2.0), angle, 1.0)
    return cv2.warpAffine(image, matrix, (width, height),
                          flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REFLECT)


def augment(image: np.ndarray, blur_threshold: float = 0.0) -> List[np.ndarray]:
    """
    Produce training variants of one image.

    Args:
        image: source image (not modified)
        blur_threshold: minimum Laplacian variance for a variant to be kept

    Returns:
        Sharp variants in order: original, horizontal flip, -10°, +10°.
    """
    variants = [image.copy(), cv2.flip(image, 1)]
    variants.extend(rotate_keep_size(image, angle) for angle in ROTATION_ANGLES)
    return [v for v in variants if is_sharp_enough(v, blur_threshold)]

"""
Image Quality — Laplacian-variance sharpness metric used to gate blurry
captures out of training.
"""

import cv2
import numpy as np


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Return a single-channel copy of ``image``."""
    if image.ndim == 2:
        return image.copy()
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def laplacian_variance(image: np.ndarray) -> float:
    """
    Variance of the Laplacian of the grayscale image.

    Higher values mean more high-frequency detail (a sharper image).
    """
    gray = to_grayscale(image)
    laplacian = cv2.Laplacian(gray, cv2.CV_64F)
    return float(laplacian.std() ** 2)


def is_sharp_enough(image: np.ndarray, threshold: float) -> bool:
    """
    Check an image against a sharpness threshold.

    Args:
        image: BGR or grayscale image
        threshold: minimum Laplacian variance; ``<= 0`` accepts everything

    Returns:
        True when the image passes the gate.
    """
    if threshold <= 0:
        return True
    return laplacian_variance(image) >= threshold

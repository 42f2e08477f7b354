"""
Vision Settings — immutable tuning knobs for detection, preprocessing,
capture quality gates and the LBPH recognizer.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DetectionSettings:
    """Cascade classifier parameters."""
    downscale: float = 1.0
    min_face: int = 160
    cascade_scale_factor: float = 1.2
    cascade_min_neighbors: int = 8


@dataclass(frozen=True)
class PreprocessingSettings:
    """Canonical face size produced by the preprocessing pipeline."""
    width: int = 256
    height: int = 256


@dataclass(frozen=True)
class CaptureSettings:
    """Sharpness thresholds (Laplacian variance) for captured images."""
    blur_variance_threshold: float = 70.0
    post_capture_blur_variance_threshold: float = 100.0

    def training_blur_threshold(self) -> float:
        if self.post_capture_blur_variance_threshold > 0:
            return self.post_capture_blur_variance_threshold
        if self.blur_variance_threshold > 0:
            return self.blur_variance_threshold
        return 0.0


@dataclass(frozen=True)
class LbphSettings:
    radius: int = 3
    neighbors: int = 8
    grid_x: int = 12
    grid_y: int = 12


@dataclass(frozen=True)
class VisionSettings:
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    preprocessing: PreprocessingSettings = field(default_factory=PreprocessingSettings)
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    lbph: LbphSettings = field(default_factory=LbphSettings)

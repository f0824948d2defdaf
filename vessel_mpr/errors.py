"""Exception types and soft-validation reports for the geometry and resampling pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List


class VesselMPRError(Exception):
    """Base class for all pipeline errors."""


class InsufficientControlPointsError(VesselMPRError, ValueError):
    """Raised when a B-spline cannot be fitted through the given control points."""

    def __init__(self, degree: int, min_required: int, received: int) -> None:
        self.degree = degree
        self.min_required = min_required
        self.received = received
        super().__init__(
            f"B-spline of degree {degree} requires at least {min_required} control points, got {received}"
        )


class InsufficientCenterlinePointsError(VesselMPRError, ValueError):
    """Raised when resampling is requested along fewer than two centerline points."""

    def __init__(self, received: int) -> None:
        self.received = received
        super().__init__(f"centerline must have at least 2 points, got {received}")


class DimensionMismatchError(VesselMPRError, ValueError):
    """Raised when an image and its segmentation do not share the same grid."""

    def __init__(self, image_shape: tuple, segmentation_shape: tuple) -> None:
        self.image_shape = tuple(image_shape)
        self.segmentation_shape = tuple(segmentation_shape)
        super().__init__(
            f"Image and segmentation dimensions must match: {self.image_shape} vs {self.segmentation_shape}"
        )


class MissingDistanceTransformError(VesselMPRError, ValueError):
    """Raised when a refinement step needs a distance transform the mask does not carry."""


class ResampleCancelledError(VesselMPRError):
    """Raised when a resample is interrupted through its cancellation token."""

    def __init__(self, completed_slices: int, total_slices: int) -> None:
        self.completed_slices = completed_slices
        self.total_slices = total_slices
        super().__init__(f"resample cancelled after {completed_slices}/{total_slices} slices")


@dataclass
class ValidationReport:
    """Outcome of a soft plausibility check: ``valid`` plus human-readable ``errors``."""

    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, object]:
        return {"valid": self.valid, "errors": list(self.errors)}

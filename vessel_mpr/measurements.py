"""Quantitative measurements on a single curved-MPR cross-section.

All functions are pure: they take a 2D image (HU samples) and a co-registered
binary segmentation of identical shape and return plain value records. Images
are (H, W) arrays with pixel spacing ``(sx, sy)`` in mm; contour points are
``(x, y)`` pixel coordinates.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy import ndimage

from .errors import DimensionMismatchError, ValidationReport

logger = logging.getLogger(__name__)

MIN_DIRECTION_LENGTH_PX = 0.1
EIGHT_CONNECTED = np.ones((3, 3), dtype=bool)

Point2D = Tuple[float, float]


@dataclass
class CrossSectionImage:
    """Single resampled slice of HU values."""

    data: np.ndarray
    spacing: Tuple[float, float] = (1.0, 1.0)

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        if self.data.ndim != 2:
            raise ValueError("cross-section image must be 2D (H, W)")

    @property
    def dimensions(self) -> Tuple[int, int]:
        """(width, height) in pixels."""
        return self.data.shape[1], self.data.shape[0]


@dataclass
class CrossSectionSegmentation:
    """Lumen mask plus optional vessel wall mask for one cross-section."""

    lumen_mask: np.ndarray
    spacing: Tuple[float, float] = (1.0, 1.0)
    vessel_wall_mask: Optional[np.ndarray] = None
    lumen_contour: Optional[np.ndarray] = None  # (K, 2) x/y pixel coordinates

    def __post_init__(self) -> None:
        self.lumen_mask = np.asarray(self.lumen_mask)
        if self.lumen_mask.ndim != 2:
            raise ValueError("lumen_mask must be 2D (H, W)")
        if self.vessel_wall_mask is not None:
            self.vessel_wall_mask = np.asarray(self.vessel_wall_mask)
            if self.vessel_wall_mask.shape != self.lumen_mask.shape:
                raise DimensionMismatchError(self.lumen_mask.shape, self.vessel_wall_mask.shape)
        if self.lumen_contour is not None:
            self.lumen_contour = np.asarray(self.lumen_contour, dtype=np.float64).reshape(-1, 2)

    @property
    def dimensions(self) -> Tuple[int, int]:
        return self.lumen_mask.shape[1], self.lumen_mask.shape[0]


@dataclass
class MeasurementConfig:
    calcium_threshold: float = 130.0  # HU; strictly above is calcified
    min_valid_area: float = 0.1  # mm²
    diameter_angles: int = 360


@dataclass(frozen=True)
class AreaMeasurement:
    value: float
    pixel_count: int
    unit: str = "mm²"


@dataclass(frozen=True)
class DiameterMeasurement:
    min: float
    max: float
    mean: float
    min_endpoints: Optional[Tuple[Point2D, Point2D]] = None
    max_endpoints: Optional[Tuple[Point2D, Point2D]] = None
    unit: str = "mm"


@dataclass(frozen=True)
class HUStatistics:
    mean: float
    std: float
    min: float
    max: float
    median: float
    pixel_count: int
    unit: str = "HU"


@dataclass(frozen=True)
class PlaqueQuantification:
    total_area: float
    calcified_area: float
    non_calcified_area: float
    calcified_percentage: float
    non_calcified_percentage: float
    calcified_mean_hu: float
    non_calcified_mean_hu: float
    calcified_pixel_count: int
    non_calcified_pixel_count: int
    unit: str = "mm²"


@dataclass(frozen=True)
class CrossSectionMeasurements:
    """Everything measured on one slice, ready for persistence."""

    lumen_area: AreaMeasurement
    lumen_diameter: DiameterMeasurement
    lumen_hu_stats: HUStatistics
    position: float  # arc length along the centerline (mm)
    timestamp: float
    vessel_wall_area: Optional[AreaMeasurement] = None
    total_vessel_area: Optional[AreaMeasurement] = None
    vessel_wall_hu_stats: Optional[HUStatistics] = None
    plaque_quantification: Optional[PlaqueQuantification] = None

    @property
    def plaque_burden(self) -> Optional[float]:
        """Wall area as a percentage of total vessel area, if a wall mask was measured."""
        if self.vessel_wall_area is None or self.total_vessel_area is None:
            return None
        if self.total_vessel_area.value <= 0:
            return 0.0
        return self.vessel_wall_area.value / self.total_vessel_area.value * 100.0

    def is_valid(self, config: Optional[MeasurementConfig] = None) -> bool:
        config = config or MeasurementConfig()
        return self.lumen_area.value >= config.min_valid_area

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["plaque_burden"] = self.plaque_burden
        return payload

    def to_row(self) -> Dict[str, Any]:
        """Flat single-level mapping for CSV export."""
        row: Dict[str, Any] = {
            "position_mm": self.position,
            "lumen_area_mm2": self.lumen_area.value,
            "lumen_pixels": self.lumen_area.pixel_count,
            "lumen_min_diameter_mm": self.lumen_diameter.min,
            "lumen_max_diameter_mm": self.lumen_diameter.max,
            "lumen_mean_diameter_mm": self.lumen_diameter.mean,
            "lumen_mean_hu": self.lumen_hu_stats.mean,
            "lumen_std_hu": self.lumen_hu_stats.std,
        }
        if self.vessel_wall_area is not None:
            row["wall_area_mm2"] = self.vessel_wall_area.value
            row["plaque_burden_pct"] = self.plaque_burden
        if self.plaque_quantification is not None:
            row["calcified_area_mm2"] = self.plaque_quantification.calcified_area
            row["non_calcified_area_mm2"] = self.plaque_quantification.non_calcified_area
            row["calcified_pct"] = self.plaque_quantification.calcified_percentage
        return row


def _binary(mask: np.ndarray) -> np.ndarray:
    return np.asarray(mask) > 0


def _check_shapes(image: CrossSectionImage, mask: np.ndarray) -> None:
    if image.data.shape != np.shape(mask):
        raise DimensionMismatchError(image.data.shape, np.shape(mask))


# ---------------------------------------------------------------------------
# Areas
# ---------------------------------------------------------------------------


def calculate_area(mask: np.ndarray, spacing: Tuple[float, float]) -> AreaMeasurement:
    """Area of a binary mask: pixel count times pixel area."""
    pixel_count = int(np.count_nonzero(_binary(mask)))
    pixel_area = float(spacing[0]) * float(spacing[1])
    return AreaMeasurement(value=pixel_count * pixel_area, pixel_count=pixel_count)


def calculate_lumen_area(segmentation: CrossSectionSegmentation) -> AreaMeasurement:
    return calculate_area(segmentation.lumen_mask, segmentation.spacing)


def calculate_vessel_wall_area(segmentation: CrossSectionSegmentation) -> Optional[AreaMeasurement]:
    if segmentation.vessel_wall_mask is None:
        return None
    return calculate_area(segmentation.vessel_wall_mask, segmentation.spacing)


# ---------------------------------------------------------------------------
# Contours and diameters
# ---------------------------------------------------------------------------


def extract_contour(mask: np.ndarray) -> np.ndarray:
    """Boundary pixels of a mask as (K, 2) ``(x, y)`` coordinates in row-major order.

    A mask pixel is on the boundary when any of its 8 neighbours lies outside the
    mask. Pixels in the outermost rows and columns are never reported.
    """
    binary = _binary(mask)
    if binary.ndim != 2:
        raise ValueError("mask must be 2D")
    interior = ndimage.binary_erosion(binary, structure=EIGHT_CONNECTED, border_value=0)
    boundary = binary & ~interior
    boundary[[0, -1], :] = False
    boundary[:, [0, -1]] = False
    rows_cols = np.argwhere(boundary)
    return rows_cols[:, ::-1].astype(np.float64)


def calculate_centroid(contour: np.ndarray) -> Point2D:
    contour = np.asarray(contour, dtype=np.float64).reshape(-1, 2)
    if contour.shape[0] == 0:
        return 0.0, 0.0
    cx, cy = contour.mean(axis=0)
    return float(cx), float(cy)


def _nearest_in_direction(directions: np.ndarray, angles: np.ndarray) -> np.ndarray:
    """Index of the contour direction closest in angle to each target angle."""
    targets = np.stack([np.cos(angles), np.sin(angles)], axis=1)
    cosines = np.clip(targets @ directions.T, -1.0, 1.0)
    return np.argmax(cosines, axis=1)


def calculate_diameters(
    segmentation: CrossSectionSegmentation,
    config: Optional[MeasurementConfig] = None,
) -> DiameterMeasurement:
    """Min/max/mean lumen diameter from opposite contour points around the centroid.

    For each of ``diameter_angles`` directions the contour point closest in angle
    to the direction and the one closest to its opposite are paired; the
    spacing-corrected distance between them is one diameter sample. Empty or
    degenerate contours give an all-zero result.
    """
    config = config or MeasurementConfig()
    num_angles = int(config.diameter_angles)
    spacing = np.asarray(segmentation.spacing, dtype=np.float64)

    contour = segmentation.lumen_contour
    if contour is None:
        contour = extract_contour(segmentation.lumen_mask)
    if contour.shape[0] < 2 or num_angles < 1:
        return DiameterMeasurement(min=0.0, max=0.0, mean=0.0)

    centroid = np.asarray(calculate_centroid(contour))
    offsets = contour - centroid
    lengths = np.linalg.norm(offsets, axis=1)
    usable = lengths >= MIN_DIRECTION_LENGTH_PX
    if not np.any(usable):
        return DiameterMeasurement(min=0.0, max=0.0, mean=0.0)
    points = contour[usable]
    directions = offsets[usable] / lengths[usable, None]

    angles = 2.0 * np.pi * np.arange(num_angles) / num_angles
    first = points[_nearest_in_direction(directions, angles)]
    second = points[_nearest_in_direction(directions, angles + np.pi)]
    diameters = np.sqrt((((second - first) * spacing) ** 2).sum(axis=1))

    i_min = int(np.argmin(diameters))
    i_max = int(np.argmax(diameters))

    def endpoints(i: int) -> Tuple[Point2D, Point2D]:
        return (float(first[i, 0]), float(first[i, 1])), (float(second[i, 0]), float(second[i, 1]))

    return DiameterMeasurement(
        min=float(diameters[i_min]),
        max=float(diameters[i_max]),
        mean=float(diameters.sum() / num_angles),
        min_endpoints=endpoints(i_min),
        max_endpoints=endpoints(i_max) if diameters[i_max] > 0 else None,
    )


# ---------------------------------------------------------------------------
# Density statistics
# ---------------------------------------------------------------------------


def calculate_hu_statistics(image: CrossSectionImage, mask: np.ndarray) -> HUStatistics:
    _check_shapes(image, mask)
    values = image.data[_binary(mask)].astype(np.float64)
    if values.size == 0:
        return HUStatistics(mean=0.0, std=0.0, min=0.0, max=0.0, median=0.0, pixel_count=0)

    ordered = np.sort(values)
    return HUStatistics(
        mean=float(values.mean()),
        std=float(values.std()),
        min=float(ordered[0]),
        max=float(ordered[-1]),
        median=float(ordered[ordered.size // 2]),
        pixel_count=int(values.size),
    )


def calculate_lumen_hu_statistics(image: CrossSectionImage, segmentation: CrossSectionSegmentation) -> HUStatistics:
    return calculate_hu_statistics(image, segmentation.lumen_mask)


def calculate_vessel_wall_hu_statistics(
    image: CrossSectionImage, segmentation: CrossSectionSegmentation
) -> Optional[HUStatistics]:
    if segmentation.vessel_wall_mask is None:
        return None
    return calculate_hu_statistics(image, segmentation.vessel_wall_mask)


# ---------------------------------------------------------------------------
# Plaque
# ---------------------------------------------------------------------------


def quantify_plaque(
    image: CrossSectionImage,
    segmentation: CrossSectionSegmentation,
    config: Optional[MeasurementConfig] = None,
) -> Optional[PlaqueQuantification]:
    """Split wall pixels into calcified (> threshold) and non-calcified plaque."""
    if segmentation.vessel_wall_mask is None:
        return None
    config = config or MeasurementConfig()
    _check_shapes(image, segmentation.vessel_wall_mask)

    values = image.data[_binary(segmentation.vessel_wall_mask)].astype(np.float64)
    calcified = values > config.calcium_threshold
    calcified_values = values[calcified]
    soft_values = values[~calcified]

    pixel_area = float(segmentation.spacing[0]) * float(segmentation.spacing[1])
    calcified_area = calcified_values.size * pixel_area
    soft_area = soft_values.size * pixel_area
    total_area = calcified_area + soft_area

    return PlaqueQuantification(
        total_area=total_area,
        calcified_area=calcified_area,
        non_calcified_area=soft_area,
        calcified_percentage=calcified_area / total_area * 100.0 if total_area > 0 else 0.0,
        non_calcified_percentage=soft_area / total_area * 100.0 if total_area > 0 else 0.0,
        calcified_mean_hu=float(calcified_values.mean()) if calcified_values.size else 0.0,
        non_calcified_mean_hu=float(soft_values.mean()) if soft_values.size else 0.0,
        calcified_pixel_count=int(calcified_values.size),
        non_calcified_pixel_count=int(soft_values.size),
    )


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


def compute_all_measurements(
    image: CrossSectionImage,
    segmentation: CrossSectionSegmentation,
    position: float,
    config: Optional[MeasurementConfig] = None,
) -> CrossSectionMeasurements:
    """Lumen measurements plus wall/plaque measurements when a wall mask exists."""
    if image.data.shape != segmentation.lumen_mask.shape:
        raise DimensionMismatchError(image.data.shape, segmentation.lumen_mask.shape)
    config = config or MeasurementConfig()

    lumen_area = calculate_lumen_area(segmentation)
    wall_area = calculate_vessel_wall_area(segmentation)
    total_area = None
    if wall_area is not None:
        total_area = AreaMeasurement(
            value=lumen_area.value + wall_area.value,
            pixel_count=lumen_area.pixel_count + wall_area.pixel_count,
        )

    measurements = CrossSectionMeasurements(
        lumen_area=lumen_area,
        lumen_diameter=calculate_diameters(segmentation, config),
        lumen_hu_stats=calculate_lumen_hu_statistics(image, segmentation),
        position=float(position),
        timestamp=time.time(),
        vessel_wall_area=wall_area,
        total_vessel_area=total_area,
        vessel_wall_hu_stats=calculate_vessel_wall_hu_statistics(image, segmentation),
        plaque_quantification=quantify_plaque(image, segmentation, config),
    )
    if not measurements.is_valid(config):
        logger.debug("Lumen area %.3f mm² at %.2f mm is below the valid minimum", lumen_area.value, position)
    return measurements


def validate_measurement_config(config: MeasurementConfig) -> ValidationReport:
    errors = []
    if config.calcium_threshold < 0 or config.calcium_threshold > 1000:
        errors.append("Calcium threshold must be between 0 and 1000 HU")
    if config.min_valid_area < 0 or config.min_valid_area > 100:
        errors.append("Minimum valid area must be between 0 and 100 mm²")
    if config.diameter_angles < 8 or config.diameter_angles > 1000:
        errors.append("Diameter angles must be between 8 and 1000")
    return ValidationReport(errors=errors)

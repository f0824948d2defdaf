"""B-spline centerline fitting through user-placed control points.

A smooth curve is fitted through ``[start, *intermediate, end]`` and sampled at
roughly uniform arc-length steps. When a lumen mask is supplied every sample is
classified as inside/outside the vessel and, if the mask carries a distance
transform, tagged with the local vessel radius.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage
from scipy.interpolate import BSpline

from .errors import (
    InsufficientControlPointsError,
    MissingDistanceTransformError,
    ValidationReport,
)

logger = logging.getLogger(__name__)

MIN_CENTERLINE_LENGTH_MM = 5.0
MAX_CENTERLINE_LENGTH_MM = 250.0
MAX_TURN_ANGLE_DEG = 90.0
MAX_DEVIATION_PERCENT = 10.0


@dataclass(frozen=True)
class Point3D:
    """Location in patient/world millimetre space."""

    x: float
    y: float
    z: float

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "Point3D":
        x, y, z = (float(v) for v in values[:3])
        return cls(x, y, z)


@dataclass(frozen=True)
class ControlPoint(Point3D):
    """Curve input placed by the user; ``weight`` pulls the curve towards the point."""

    weight: float = 1.0

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z, "weight": self.weight}


@dataclass(frozen=True)
class CenterlinePoint(Point3D):
    """Sampled curve point with cumulative arc length ``distance`` (mm)."""

    distance: float = 0.0
    radius: Optional[float] = None
    inside_lumen: Optional[bool] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "distance": self.distance,
            "radius": self.radius,
            "inside_lumen": self.inside_lumen,
        }


@dataclass
class CenterlineConfig:
    """Parameters for :func:`compute_centerline`."""

    sampling_interval: float = 0.5  # mm between samples
    degree: int = 3
    uniform_knots: bool = True


@dataclass
class SegmentationMask:
    """Binary 3D lumen mask aligned with the CT volume.

    ``data`` is stored (Z, Y, X); ``spacing`` and ``origin`` are (x, y, z) in mm.
    ``distance_transform`` (same shape, mm) holds the distance to the lumen boundary.
    """

    data: np.ndarray
    spacing: Tuple[float, float, float]
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    distance_transform: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        if self.data.ndim != 3:
            raise ValueError("mask data must have shape (Z, Y, X)")
        if self.distance_transform is not None:
            self.distance_transform = np.asarray(self.distance_transform, dtype=np.float32)
            if self.distance_transform.shape != self.data.shape:
                raise ValueError("distance_transform shape must match mask shape")

    @property
    def dimensions(self) -> Tuple[int, int, int]:
        """Grid size as (nx, ny, nz)."""
        nz, ny, nx = self.data.shape
        return nx, ny, nz

    @classmethod
    def from_flat(
        cls,
        dimensions: Sequence[int],
        spacing: Sequence[float],
        origin: Sequence[float],
        data: Sequence[int],
        distance_transform: Optional[Sequence[float]] = None,
    ) -> "SegmentationMask":
        """Build a mask from an x-fastest flat buffer and ``(nx, ny, nz)`` dimensions."""
        nx, ny, nz = (int(d) for d in dimensions)
        arr = np.asarray(data, dtype=np.uint8).reshape(nz, ny, nx)
        dt = None
        if distance_transform is not None:
            dt = np.asarray(distance_transform, dtype=np.float32).reshape(nz, ny, nx)
        return cls(
            data=arr,
            spacing=tuple(float(s) for s in spacing),
            origin=tuple(float(o) for o in origin),
            distance_transform=dt,
        )

    def with_distance_transform(self) -> "SegmentationMask":
        """Return a copy carrying the Euclidean distance transform of the lumen."""
        sx, sy, sz = self.spacing
        dt = ndimage.distance_transform_edt(self.data > 0, sampling=(sz, sy, sx))
        return SegmentationMask(
            data=self.data,
            spacing=self.spacing,
            origin=self.origin,
            distance_transform=dt.astype(np.float32),
        )


@dataclass(frozen=True)
class CenterlineResult:
    """Immutable output of a centerline solve."""

    points: Tuple[CenterlinePoint, ...]
    total_length: float
    control_points: Tuple[ControlPoint, ...]
    has_deviations: bool = False

    def num_points(self) -> int:
        return len(self.points)

    def as_array(self) -> np.ndarray:
        """Sample positions as an (N, 3) array."""
        return np.array([[p.x, p.y, p.z] for p in self.points], dtype=np.float64)

    def distances(self) -> np.ndarray:
        return np.array([p.distance for p in self.points], dtype=np.float64)

    def to_dict(self) -> Dict[str, object]:
        return {
            "points": [p.to_dict() for p in self.points],
            "total_length": self.total_length,
            "control_points": [cp.to_dict() for cp in self.control_points],
            "has_deviations": self.has_deviations,
        }


PointLike = Union[Point3D, Sequence[float]]


def _as_control_point(point: PointLike, weight: Optional[float] = None) -> ControlPoint:
    if isinstance(point, ControlPoint):
        return point if weight is None else ControlPoint(point.x, point.y, point.z, weight)
    if isinstance(point, Point3D):
        return ControlPoint(point.x, point.y, point.z, 1.0 if weight is None else weight)
    values = [float(v) for v in point]
    if len(values) not in (3, 4):
        raise ValueError("control point must be (x, y, z) or (x, y, z, weight)")
    w = values[3] if len(values) == 4 else 1.0
    return ControlPoint(values[0], values[1], values[2], w if weight is None else weight)


def generate_uniform_knots(num_control_points: int, degree: int) -> np.ndarray:
    """Clamped knot vector with equally spaced interior knots on [0, 1]."""
    num_interior = num_control_points - degree - 1
    interior = np.arange(1, num_interior + 1, dtype=np.float64) / (num_interior + 1)
    return np.concatenate([np.zeros(degree + 1), interior, np.ones(degree + 1)])


def generate_chord_length_knots(control_points: np.ndarray, degree: int) -> np.ndarray:
    """Clamped knot vector whose interior knots follow accumulated chord length.

    Each interior knot is the average of ``degree`` consecutive normalised chord
    parameters, which behaves better than uniform knots when control points are
    unevenly spaced.
    """
    control_points = np.asarray(control_points, dtype=np.float64)
    n = control_points.shape[0]
    chords = np.linalg.norm(np.diff(control_points, axis=0), axis=1)
    cumulative = np.concatenate(([0.0], np.cumsum(chords)))
    total = cumulative[-1]
    normalised = cumulative / total if total > 0 else np.zeros_like(cumulative)

    interior = [float(np.mean(normalised[i : i + degree])) for i in range(1, n - degree)]
    return np.concatenate([np.zeros(degree + 1), np.asarray(interior, dtype=np.float64), np.ones(degree + 1)])


def estimate_curve_length(control_points: np.ndarray) -> float:
    """Sum of control-point chord lengths; only used to size the sampling budget."""
    control_points = np.asarray(control_points, dtype=np.float64)
    if control_points.shape[0] < 2:
        return 0.0
    return float(np.linalg.norm(np.diff(control_points, axis=0), axis=1).sum())


def _evaluate_spline(
    coords: np.ndarray,
    weights: np.ndarray,
    knots: np.ndarray,
    degree: int,
    params: np.ndarray,
) -> np.ndarray:
    numerator = BSpline(knots, coords * weights[:, None], degree)(params)
    if np.allclose(weights, 1.0):
        return np.asarray(numerator, dtype=np.float64)
    denominator = BSpline(knots, weights, degree)(params)
    return np.asarray(numerator / denominator[:, None], dtype=np.float64)


def _voxel_indices(points: np.ndarray, segmentation: SegmentationMask) -> Tuple[np.ndarray, np.ndarray]:
    origin = np.asarray(segmentation.origin, dtype=np.float64)
    spacing = np.asarray(segmentation.spacing, dtype=np.float64)
    idx = np.floor((points - origin) / spacing + 0.5).astype(np.int64)
    dims = np.asarray(segmentation.dimensions, dtype=np.int64)
    in_bounds = np.all((idx >= 0) & (idx < dims), axis=1)
    return idx, in_bounds


def _check_points_in_lumen(
    points: np.ndarray, segmentation: SegmentationMask
) -> Tuple[np.ndarray, List[Optional[float]]]:
    idx, in_bounds = _voxel_indices(points, segmentation)
    inside = np.zeros(points.shape[0], dtype=bool)
    radii: List[Optional[float]] = [None] * points.shape[0]
    for n in np.flatnonzero(in_bounds):
        i, j, k = idx[n]
        inside[n] = bool(segmentation.data[k, j, i] > 0)
        if inside[n] and segmentation.distance_transform is not None:
            radii[n] = float(segmentation.distance_transform[k, j, i])
    return inside, radii


def check_point_in_lumen(point: PointLike, segmentation: SegmentationMask) -> Tuple[bool, Optional[float]]:
    """Return ``(inside, radius)`` for a world point; out-of-grid points are outside."""
    if isinstance(point, Point3D):
        arr = point.as_array()
    else:
        arr = np.asarray(point, dtype=np.float64)[:3]
    inside, radii = _check_points_in_lumen(arr[None, :], segmentation)
    return bool(inside[0]), radii[0]


def compute_centerline(
    start: PointLike,
    end: PointLike,
    intermediate_points: Sequence[PointLike] = (),
    config: Optional[CenterlineConfig] = None,
    segmentation: Optional[SegmentationMask] = None,
) -> CenterlineResult:
    """Fit a B-spline through the control points and sample it along arc length.

    Parameters
    ----------
    start, end : Point3D or sequence
        First and last control points (weight forced to 1.0).
    intermediate_points : sequence
        Ordered control points between ``start`` and ``end``.
    config : CenterlineConfig, optional
        Sampling interval, spline degree and knot scheme.
    segmentation : SegmentationMask, optional
        Lumen mask used to flag samples leaving the vessel.

    Returns
    -------
    CenterlineResult
        ``ceil(chord_length / sampling_interval) + 1`` samples (at least 3) with
        true cumulative arc length in ``distance``.
    """
    config = config or CenterlineConfig()
    if config.sampling_interval <= 0:
        raise ValueError("sampling_interval must be > 0")
    degree = int(config.degree)
    if degree < 1:
        raise ValueError("degree must be >= 1")

    control_points = (
        [_as_control_point(start, weight=1.0)]
        + [_as_control_point(p) for p in intermediate_points]
        + [_as_control_point(end, weight=1.0)]
    )
    min_points = degree + 1
    if len(control_points) < min_points:
        raise InsufficientControlPointsError(degree, min_points, len(control_points))

    coords = np.array([[cp.x, cp.y, cp.z] for cp in control_points], dtype=np.float64)
    weights = np.array([cp.weight for cp in control_points], dtype=np.float64)
    if np.any(weights <= 0):
        raise ValueError("control point weights must be > 0")

    n = coords.shape[0]
    knots = generate_uniform_knots(n, degree) if config.uniform_knots else generate_chord_length_knots(coords, degree)
    t_min = knots[degree]
    t_max = knots[n]

    # The chord estimate only sizes the sample budget; reported distances use true arc length.
    estimated_length = estimate_curve_length(coords)
    num_samples = max(2, int(math.ceil(estimated_length / config.sampling_interval)))
    params = t_min + (t_max - t_min) * np.arange(num_samples + 1, dtype=np.float64) / num_samples
    params = np.clip(params, t_min, t_max)

    samples = _evaluate_spline(coords, weights, knots, degree, params)
    segment_lengths = np.linalg.norm(np.diff(samples, axis=0), axis=1)
    cumulative = np.concatenate(([0.0], np.cumsum(segment_lengths)))

    inside: Optional[np.ndarray] = None
    radii: List[Optional[float]] = [None] * samples.shape[0]
    has_deviations = False
    if segmentation is not None:
        inside, radii = _check_points_in_lumen(samples, segmentation)
        has_deviations = bool(not np.all(inside))

    points = tuple(
        CenterlinePoint(
            x=float(samples[i, 0]),
            y=float(samples[i, 1]),
            z=float(samples[i, 2]),
            distance=float(cumulative[i]),
            radius=radii[i],
            inside_lumen=None if inside is None else bool(inside[i]),
        )
        for i in range(samples.shape[0])
    )
    result = CenterlineResult(
        points=points,
        total_length=float(cumulative[-1]),
        control_points=tuple(control_points),
        has_deviations=has_deviations,
    )
    logger.debug(
        "Centerline solved: %d control points, %d samples, %.2f mm (chord estimate %.2f mm)",
        n,
        len(points),
        result.total_length,
        estimated_length,
    )
    return result


def refine_centerline_with_distance_transform(
    centerline: CenterlineResult,
    segmentation: SegmentationMask,
    iterations: int = 3,
    search_radius_mm: float = 2.0,
    num_search_points: int = 8,
    config: Optional[CenterlineConfig] = None,
) -> CenterlineResult:
    """Pull interior control points towards the lumen medial axis and re-solve.

    Each iteration probes a ring of ``num_search_points`` candidates in the axial
    plane around every interior control point and moves the point to the
    in-lumen candidate with the largest distance-transform value. A point already
    deeper in the lumen than every candidate stays put. Start and end points stay
    fixed.
    """
    if segmentation.distance_transform is None:
        raise MissingDistanceTransformError("Distance transform is required for centerline refinement")

    refined = list(centerline.control_points)
    angles = 2.0 * np.pi * np.arange(num_search_points) / num_search_points
    for _ in range(iterations):
        for index in range(1, len(refined) - 1):
            cp = refined[index]
            candidates = np.stack(
                [
                    cp.x + search_radius_mm * np.cos(angles),
                    cp.y + search_radius_mm * np.sin(angles),
                    np.full(num_search_points, cp.z),
                ],
                axis=1,
            )
            inside, radii = _check_points_in_lumen(candidates, segmentation)
            here_inside, here_radius = check_point_in_lumen(cp, segmentation)
            best_radius = here_radius if here_inside and here_radius is not None else 0.0
            best = cp
            for c in range(num_search_points):
                radius = radii[c]
                if inside[c] and radius is not None and radius > best_radius:
                    best_radius = radius
                    best = ControlPoint(*(float(v) for v in candidates[c]), weight=cp.weight)
            refined[index] = best

    return compute_centerline(refined[0], refined[-1], refined[1:-1], config, segmentation)


def validate_centerline(centerline: CenterlineResult) -> ValidationReport:
    """Check that a centerline is anatomically plausible.

    Reports (never raises) on length outside 5-250 mm, turns sharper than 90
    degrees between consecutive segments, and more than 10% of samples outside
    the lumen.
    """
    errors: List[str] = []

    if centerline.total_length < MIN_CENTERLINE_LENGTH_MM:
        errors.append(f"Centerline is too short (< {MIN_CENTERLINE_LENGTH_MM:g}mm)")
    if centerline.total_length > MAX_CENTERLINE_LENGTH_MM:
        errors.append(f"Centerline is unrealistically long (> {MAX_CENTERLINE_LENGTH_MM:g}mm)")

    pts = centerline.as_array()
    if pts.shape[0] >= 3:
        v1 = pts[1:-1] - pts[:-2]
        v2 = pts[2:] - pts[1:-1]
        len1 = np.linalg.norm(v1, axis=1)
        len2 = np.linalg.norm(v2, axis=1)
        valid = (len1 > 0) & (len2 > 0)
        cos_angle = np.zeros_like(len1)
        cos_angle[valid] = np.sum(v1[valid] * v2[valid], axis=1) / (len1[valid] * len2[valid])
        angles = np.degrees(np.arccos(np.clip(cos_angle, -1.0, 1.0)))
        for offset in np.flatnonzero(valid & (angles > MAX_TURN_ANGLE_DEG)):
            errors.append(f"Sharp angle detected at point {offset + 1} ({angles[offset]:.1f}°)")

    if centerline.has_deviations and centerline.points:
        outside = sum(1 for p in centerline.points if p.inside_lumen is False)
        percent = outside / len(centerline.points) * 100.0
        if percent > MAX_DEVIATION_PERCENT:
            errors.append(f"Centerline deviates outside vessel lumen ({percent:.1f}% of points)")

    return ValidationReport(errors=errors)


def interpolate_point_at_distance(centerline: CenterlineResult, distance: float) -> Optional[CenterlinePoint]:
    """Linearly interpolate the centerline at arc length ``distance`` (mm).

    Returns ``None`` outside ``[0, total_length]``. Radius and lumen flag are only
    carried when both bracketing samples define them.
    """
    if distance < 0 or distance > centerline.total_length or not centerline.points:
        return None
    points = centerline.points
    if len(points) == 1:
        return points[0]

    distances = centerline.distances()
    i = int(np.searchsorted(distances, distance, side="left")) - 1
    i = min(max(i, 0), len(points) - 2)
    a, b = points[i], points[i + 1]
    span = b.distance - a.distance
    t = (distance - a.distance) / span if span > 0 else 0.0

    radius = None
    if a.radius is not None and b.radius is not None:
        radius = a.radius + t * (b.radius - a.radius)
    inside_lumen = None
    if a.inside_lumen is not None and b.inside_lumen is not None:
        inside_lumen = a.inside_lumen and b.inside_lumen

    return CenterlinePoint(
        x=a.x + t * (b.x - a.x),
        y=a.y + t * (b.y - a.y),
        z=a.z + t * (b.z - a.z),
        distance=float(distance),
        radius=radius,
        inside_lumen=inside_lumen,
    )

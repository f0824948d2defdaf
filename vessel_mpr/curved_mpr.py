"""Curved MPR generation from a CCTA volume and a sampled centerline.

One cross-sectional plane is built per centerline sample. Plane orientation is
carried from sample to sample by parallel transport (the previous plane's up
vector seeds the next right vector), which keeps the stacked slices free of
twisting. Frame construction is therefore sequential; once all frames exist,
every slice is sampled independently and may be spread over worker threads.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .centerline import CenterlinePoint, CenterlineResult
from .errors import InsufficientCenterlinePointsError, ResampleCancelledError, ValidationReport
from .io import VolumeData
from .measurements import CrossSectionImage
from .vector_math import cross, length, normalize, normalize_rows

logger = logging.getLogger(__name__)

AIR_HU = -1024
INTERPOLATION_MODES = ("trilinear", "nearest")
PARALLEL_EPS = 1e-3

_INT16 = np.iinfo(np.int16)


@dataclass
class CurvedMPRConfig:
    """Plane geometry and sampling options for :func:`generate_curved_mpr`."""

    sampling_interval: float = 0.5  # mm between slices, recorded as z spacing
    plane_width: float = 20.0  # mm
    plane_height: float = 20.0  # mm
    plane_resolution: float = 0.5  # mm per pixel
    initial_up_vector: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    interpolation: str = "trilinear"

    def plane_shape(self) -> Tuple[int, int]:
        """(width_px, height_px) of every output slice."""
        return _pixels(self.plane_width, self.plane_resolution), _pixels(self.plane_height, self.plane_resolution)


@dataclass
class ProgressiveMPRConfig(CurvedMPRConfig):
    generate_preview: bool = True
    preview_downsample: float = 4.0


@dataclass(frozen=True)
class PlaneFrame:
    """Orthonormal frame of one cross-section: ``normal`` follows the centerline tangent."""

    point: np.ndarray
    normal: np.ndarray
    right: np.ndarray
    up: np.ndarray


@dataclass
class CurvedMPRVolume:
    """Stack of resampled cross-sections, one per centerline sample.

    ``data`` is (slices, height, width) int16, i.e. an x-fastest flat buffer;
    ``spacing`` is (plane_resolution, plane_resolution, sampling_interval).
    """

    data: np.ndarray
    spacing: Tuple[float, float, float]
    centerline_points: Tuple[CenterlinePoint, ...]
    total_length: float

    @property
    def dimensions(self) -> Tuple[int, int, int]:
        """(width_px, height_px, num_slices)."""
        num_slices, height, width = self.data.shape
        return width, height, num_slices

    @property
    def num_slices(self) -> int:
        return int(self.data.shape[0])

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes)

    def flat(self) -> np.ndarray:
        return self.data.ravel()


def _pixels(extent_mm: float, resolution_mm: float) -> int:
    # Round away float noise (e.g. 1.1 / 0.1) before taking the ceiling.
    return max(1, int(math.ceil(round(extent_mm / resolution_mm, 9))))


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def _centerline_array(points: Sequence[CenterlinePoint]) -> np.ndarray:
    return np.array([[p.x, p.y, p.z] for p in points], dtype=np.float64)


def compute_tangent_vectors(points: np.ndarray) -> np.ndarray:
    """Unit tangents by forward (first), backward (last) and central differences."""
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError("points must have shape (N, 3)")
    if points.shape[0] < 2:
        raise InsufficientCenterlinePointsError(points.shape[0])

    tangents = np.empty_like(points)
    tangents[0] = points[1] - points[0]
    tangents[-1] = points[-1] - points[-2]
    tangents[1:-1] = points[2:] - points[:-2]
    return normalize_rows(tangents)


def generate_orthogonal_planes(
    points: np.ndarray,
    tangents: np.ndarray,
    initial_up_vector: Sequence[float] = (0.0, 0.0, 1.0),
) -> List[PlaneFrame]:
    """Build parallel-transported frames along the centerline.

    The right vector of plane ``i`` is ``cross(up_{i-1}, tangent_i)`` (with the
    configured initial up vector for the first plane) and its up vector is
    ``cross(tangent_i, right_i)``. Must run in centerline order.
    """
    frames: List[PlaneFrame] = []
    prev_up = normalize(initial_up_vector)
    for point, normal in zip(np.asarray(points, dtype=np.float64), np.asarray(tangents, dtype=np.float64)):
        right = cross(prev_up, normal)
        if length(right) < PARALLEL_EPS:
            axis = (1.0, 0.0, 0.0) if abs(normal[0]) < 0.9 else (0.0, 1.0, 0.0)
            right = cross(axis, normal)
        right = normalize(right)
        up = normalize(cross(normal, right))
        frames.append(PlaneFrame(point=point.copy(), normal=normal.copy(), right=right, up=up))
        prev_up = up
    return frames


def plane_sample_positions(frame: PlaneFrame, width_px: int, height_px: int, resolution: float) -> np.ndarray:
    """World positions (H, W, 3) of a plane grid centred on the frame point."""
    offsets_x = (np.arange(width_px, dtype=np.float64) - width_px / 2.0) * resolution
    offsets_y = (np.arange(height_px, dtype=np.float64) - height_px / 2.0) * resolution
    return (
        frame.point[None, None, :]
        + offsets_x[None, :, None] * frame.right[None, None, :]
        + offsets_y[:, None, None] * frame.up[None, None, :]
    )


def _continuous_index(volume: VolumeData, coords_xyz_mm: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    coords = np.asarray(coords_xyz_mm, dtype=np.float64)
    if coords.shape[-1] != 3:
        raise ValueError("coords_xyz_mm must have shape (..., 3)")
    sx, sy, sz = volume.spacing
    ox, oy, oz = volume.origin
    return (coords[..., 0] - ox) / sx, (coords[..., 1] - oy) / sy, (coords[..., 2] - oz) / sz


def sample_volume_trilinear(
    volume: VolumeData,
    coords_xyz_mm: np.ndarray,
    fill_value: float = AIR_HU,
) -> np.ndarray:
    """Trilinear sampling of the volume at physical coordinates.

    Samples whose 8-voxel neighbourhood is not fully inside the grid get
    ``fill_value``. Returns float64 values of shape ``coords.shape[:-1]``.
    """
    ix, iy, iz = _continuous_index(volume, coords_xyz_mm)
    nx, ny, nz = volume.dimensions
    data = volume.data

    x0 = np.floor(ix).astype(np.int64)
    y0 = np.floor(iy).astype(np.int64)
    z0 = np.floor(iz).astype(np.int64)
    valid = (
        (x0 >= 0) & (x0 + 1 < nx)
        & (y0 >= 0) & (y0 + 1 < ny)
        & (z0 >= 0) & (z0 + 1 < nz)
    )
    out = np.full(ix.shape, float(fill_value), dtype=np.float64)
    if not np.any(valid):
        return out

    x0v, y0v, z0v = x0[valid], y0[valid], z0[valid]
    dx = ix[valid] - x0v
    dy = iy[valid] - y0v
    dz = iz[valid] - z0v

    def voxel(z: np.ndarray, y: np.ndarray, x: np.ndarray) -> np.ndarray:
        return data[z, y, x].astype(np.float64)

    c00 = voxel(z0v, y0v, x0v) * (1 - dx) + voxel(z0v, y0v, x0v + 1) * dx
    c10 = voxel(z0v, y0v + 1, x0v) * (1 - dx) + voxel(z0v, y0v + 1, x0v + 1) * dx
    c01 = voxel(z0v + 1, y0v, x0v) * (1 - dx) + voxel(z0v + 1, y0v, x0v + 1) * dx
    c11 = voxel(z0v + 1, y0v + 1, x0v) * (1 - dx) + voxel(z0v + 1, y0v + 1, x0v + 1) * dx
    c0 = c00 * (1 - dy) + c10 * dy
    c1 = c01 * (1 - dy) + c11 * dy
    out[valid] = c0 * (1 - dz) + c1 * dz
    return out


def sample_volume_nearest(
    volume: VolumeData,
    coords_xyz_mm: np.ndarray,
    fill_value: float = AIR_HU,
) -> np.ndarray:
    """Nearest-voxel sampling; rounded indices outside the grid get ``fill_value``."""
    ix, iy, iz = _continuous_index(volume, coords_xyz_mm)
    nx, ny, nz = volume.dimensions
    x = _round_half_up(ix).astype(np.int64)
    y = _round_half_up(iy).astype(np.int64)
    z = _round_half_up(iz).astype(np.int64)
    valid = (x >= 0) & (x < nx) & (y >= 0) & (y < ny) & (z >= 0) & (z < nz)
    out = np.full(ix.shape, float(fill_value), dtype=np.float64)
    out[valid] = volume.data[z[valid], y[valid], x[valid]]
    return out


def _resample_plane(
    volume: VolumeData,
    frame: PlaneFrame,
    width_px: int,
    height_px: int,
    resolution: float,
    interpolation: str,
) -> np.ndarray:
    positions = plane_sample_positions(frame, width_px, height_px, resolution)
    if interpolation == "trilinear":
        values = _round_half_up(sample_volume_trilinear(volume, positions))
    else:
        values = sample_volume_nearest(volume, positions)
    return np.clip(values, _INT16.min, _INT16.max).astype(np.int16)


def generate_curved_mpr(
    volume: VolumeData,
    centerline_points: Union[CenterlineResult, Sequence[CenterlinePoint]],
    config: Optional[CurvedMPRConfig] = None,
    workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> CurvedMPRVolume:
    """Resample ``volume`` onto planes perpendicular to the centerline.

    Parameters
    ----------
    volume : VolumeData
        Source CT volume.
    centerline_points : CenterlineResult or sequence of CenterlinePoint
        At least two ordered samples.
    config : CurvedMPRConfig, optional
        Plane size, resolution, initial up vector and interpolation mode.
    workers : int
        Number of threads used to sample slices once frames are built.
    cancel_event : threading.Event, optional
        Checked before each slice; when set the resample aborts with
        :class:`ResampleCancelledError`.

    Returns
    -------
    CurvedMPRVolume
        Output of shape ``(len(points), ceil(h/res), ceil(w/res))``.
    """
    config = config or CurvedMPRConfig()
    if isinstance(centerline_points, CenterlineResult):
        centerline_points = centerline_points.points
    points = tuple(centerline_points)
    if len(points) < 2:
        raise InsufficientCenterlinePointsError(len(points))
    if config.interpolation not in INTERPOLATION_MODES:
        raise ValueError(f"interpolation must be one of {INTERPOLATION_MODES}, got {config.interpolation!r}")
    if config.plane_resolution <= 0:
        raise ValueError("plane_resolution must be > 0")

    start = time.perf_counter()
    width_px, height_px = config.plane_shape()
    num_slices = len(points)

    positions = _centerline_array(points)
    tangents = compute_tangent_vectors(positions)
    frames = generate_orthogonal_planes(positions, tangents, config.initial_up_vector)

    data = np.full((num_slices, height_px, width_px), AIR_HU, dtype=np.int16)

    def fill_slice(index: int) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return False
        data[index] = _resample_plane(
            volume, frames[index], width_px, height_px, config.plane_resolution, config.interpolation
        )
        return True

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            completed = sum(executor.map(fill_slice, range(num_slices)))
    else:
        completed = 0
        for index in range(num_slices):
            if not fill_slice(index):
                break
            completed += 1
    if completed < num_slices:
        raise ResampleCancelledError(completed, num_slices)

    mpr = CurvedMPRVolume(
        data=data,
        spacing=(config.plane_resolution, config.plane_resolution, config.sampling_interval),
        centerline_points=points,
        total_length=float(points[-1].distance),
    )
    logger.info(
        "Curved MPR %s (%s) generated in %.3fs",
        mpr.dimensions,
        config.interpolation,
        time.perf_counter() - start,
    )
    return mpr


def generate_curved_mpr_progressive(
    volume: VolumeData,
    centerline_points: Union[CenterlineResult, Sequence[CenterlinePoint]],
    config: Optional[ProgressiveMPRConfig] = None,
    on_preview: Optional[Callable[[CurvedMPRVolume], None]] = None,
    workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> CurvedMPRVolume:
    """Deliver a coarse nearest-neighbour preview to ``on_preview``, then return full resolution.

    The preview and the full result are independent computations.
    """
    config = config or ProgressiveMPRConfig()
    if config.generate_preview and on_preview is not None:
        preview_config = replace(
            config,
            plane_resolution=config.plane_resolution * config.preview_downsample,
            interpolation="nearest",
        )
        on_preview(generate_curved_mpr(volume, centerline_points, preview_config, workers, cancel_event))
    return generate_curved_mpr(volume, centerline_points, config, workers, cancel_event)


def validate_mpr_config(config: CurvedMPRConfig) -> ValidationReport:
    errors = []
    if config.sampling_interval <= 0 or config.sampling_interval > 2.0:
        errors.append("Sampling interval must be between 0 and 2.0 mm")
    if config.plane_width <= 0 or config.plane_width > 100.0:
        errors.append("Plane width must be between 0 and 100 mm")
    if config.plane_height <= 0 or config.plane_height > 100.0:
        errors.append("Plane height must be between 0 and 100 mm")
    if config.plane_resolution <= 0 or config.plane_resolution > 2.0:
        errors.append("Plane resolution must be between 0 and 2.0 mm")
    if config.interpolation not in INTERPOLATION_MODES:
        errors.append(f"Interpolation must be one of {', '.join(INTERPOLATION_MODES)}")
    if isinstance(config, ProgressiveMPRConfig) and config.preview_downsample < 1:
        errors.append("Preview downsample factor must be >= 1")
    return ValidationReport(errors=errors)


def extract_cross_section(mpr: CurvedMPRVolume, index: int) -> CrossSectionImage:
    """Slice ``index`` of the MPR stack as a measurable cross-section image."""
    if index < 0 or index >= mpr.num_slices:
        raise IndexError(f"slice index {index} out of range (0..{mpr.num_slices - 1})")
    return CrossSectionImage(data=mpr.data[index].copy(), spacing=(mpr.spacing[0], mpr.spacing[1]))


def slice_index_at_distance(mpr: CurvedMPRVolume, distance: float) -> Optional[int]:
    """Index of the slice nearest to arc length ``distance``, or None outside the centerline."""
    if distance < 0 or distance > mpr.total_length:
        return None
    distances = np.array([p.distance for p in mpr.centerline_points], dtype=np.float64)
    return int(np.argmin(np.abs(distances - distance)))


def straightened_view(mpr: CurvedMPRVolume, reduce_mode: str = "center", slab_px: int = 0) -> np.ndarray:
    """Longitudinal (slices, width) image through the MPR stack.

    ``center`` takes the middle row of each slice; ``mean``/``max`` reduce over a
    slab of ``2 * slab_px + 1`` rows around it.
    """
    if reduce_mode not in {"center", "mean", "max"}:
        raise ValueError("reduce_mode must be 'center', 'mean', or 'max'")
    height = mpr.data.shape[1]
    center = height // 2
    if reduce_mode == "center" or slab_px <= 0:
        return mpr.data[:, center, :].astype(np.float32)
    lo = max(0, center - slab_px)
    hi = min(height, center + slab_px + 1)
    slab = mpr.data[:, lo:hi, :].astype(np.float32)
    if reduce_mode == "max":
        return slab.max(axis=1)
    return slab.mean(axis=1)


def window_and_normalize(
    image: np.ndarray,
    window: Tuple[float, float] = (100.0, 700.0),
    gamma: Optional[float] = None,
) -> np.ndarray:
    """Window and normalize an image to [0, 1]."""
    lo, hi = window
    if hi <= lo:
        raise ValueError("window high must be > low")
    img = np.clip(np.asarray(image, dtype=np.float32), lo, hi)
    img = (img - lo) / (hi - lo)
    if gamma is not None:
        if gamma <= 0:
            raise ValueError("gamma must be > 0")
        img = np.power(img, gamma)
    return img.astype(np.float32)

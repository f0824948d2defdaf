"""End-to-end service: control points -> centerline -> curved MPR -> measurements."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy import ndimage

from .cache import VolumeCache, generate_centerline_hash, short_hash
from .centerline import (
    CenterlineResult,
    PointLike,
    SegmentationMask,
    compute_centerline,
    refine_centerline_with_distance_transform,
    validate_centerline,
)
from .config import PipelineSettings
from .curved_mpr import (
    CurvedMPRConfig,
    CurvedMPRVolume,
    extract_cross_section,
    generate_curved_mpr,
    generate_curved_mpr_progressive,
)
from .io import VolumeData
from .measurements import CrossSectionMeasurements, CrossSectionSegmentation, compute_all_measurements

logger = logging.getLogger(__name__)


@dataclass
class MPRResult:
    volume: CurvedMPRVolume
    from_cache: bool
    generation_time_s: float
    cache_key: Optional[str] = None
    is_preview: bool = False


@dataclass
class PipelineRun:
    """Everything produced by :meth:`CurvedMPRService.run`."""

    centerline: CenterlineResult
    mpr: MPRResult
    measurements: List[CrossSectionMeasurements] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def cross_sections_from_mask(
    mask: SegmentationMask,
    mpr: CurvedMPRVolume,
    wall_thickness_px: int = 0,
    initial_up_vector: Sequence[float] = (0.0, 0.0, 1.0),
) -> Dict[int, CrossSectionSegmentation]:
    """Resample a 3D lumen mask through the MPR planes into per-slice segmentations.

    The mask is sampled with nearest-neighbour interpolation along the same
    frames as ``mpr``, which must have been built with the same
    ``initial_up_vector``. With ``wall_thickness_px > 0`` a ring of that thickness
    around the lumen is reported as vessel wall.
    """
    width_px, height_px, _ = mpr.dimensions
    resolution = mpr.spacing[0]
    mask_volume = VolumeData(data=(mask.data > 0).astype(np.int16), spacing=mask.spacing, origin=mask.origin)
    config = CurvedMPRConfig(
        sampling_interval=mpr.spacing[2],
        plane_width=width_px * resolution,
        plane_height=height_px * resolution,
        plane_resolution=resolution,
        initial_up_vector=tuple(initial_up_vector),
        interpolation="nearest",
    )
    resampled = generate_curved_mpr(mask_volume, mpr.centerline_points, config)

    sections: Dict[int, CrossSectionSegmentation] = {}
    for index in range(resampled.num_slices):
        lumen = resampled.data[index] > 0
        wall = None
        if wall_thickness_px > 0:
            wall = ndimage.binary_dilation(lumen, iterations=wall_thickness_px) & ~lumen
        sections[index] = CrossSectionSegmentation(
            lumen_mask=lumen.astype(np.uint8),
            spacing=(resolution, resolution),
            vessel_wall_mask=None if wall is None else wall.astype(np.uint8),
        )
    return sections


class CurvedMPRService:
    """Owns the settings and result cache for repeated curved MPR requests.

    The cache key covers control points, vessel and study only, so one service
    should be used per MPR geometry configuration.
    """

    def __init__(self, settings: Optional[PipelineSettings] = None, cache: Optional[VolumeCache] = None) -> None:
        self.settings = settings or PipelineSettings()
        if cache is None and self.settings.cache.enabled:
            cache = VolumeCache(self.settings.cache.max_memory_bytes, self.settings.cache.max_entries)
        self.cache = cache
        for message in self.settings.validate():
            logger.warning("Settings: %s", message)

    def solve_centerline(
        self,
        start: PointLike,
        end: PointLike,
        intermediate_points: Sequence[PointLike] = (),
        segmentation: Optional[SegmentationMask] = None,
        refine: bool = False,
    ) -> CenterlineResult:
        centerline = compute_centerline(start, end, intermediate_points, self.settings.centerline, segmentation)
        if refine and segmentation is not None:
            centerline = refine_centerline_with_distance_transform(
                centerline, segmentation, config=self.settings.centerline
            )
        report = validate_centerline(centerline)
        for message in report.errors:
            logger.warning("Centerline: %s", message)
        logger.info(
            "Centerline solved: %d samples, %.2f mm, deviations=%s",
            centerline.num_points(),
            centerline.total_length,
            centerline.has_deviations,
        )
        return centerline

    def generate_mpr(
        self,
        volume: VolumeData,
        centerline: CenterlineResult,
        vessel: Optional[str] = None,
        study_id: Optional[str] = None,
        on_preview: Optional[Callable[[MPRResult], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> MPRResult:
        """Return a cached MPR for this geometry or resample one and cache it."""
        key = generate_centerline_hash(centerline.control_points, vessel, study_id)
        start = time.perf_counter()
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Curved MPR %s served from cache", short_hash(key))
                return MPRResult(cached, True, time.perf_counter() - start, key)

        config = self.settings.mpr
        if on_preview is None:
            mpr = generate_curved_mpr(volume, centerline, config, self.settings.workers, cancel_event)
        else:
            preview_start = time.perf_counter()

            def deliver(preview: CurvedMPRVolume) -> None:
                on_preview(MPRResult(preview, False, time.perf_counter() - preview_start, key, is_preview=True))

            mpr = generate_curved_mpr_progressive(
                volume, centerline, config, deliver, self.settings.workers, cancel_event
            )

        if self.cache is not None:
            self.cache.set(key, mpr)
        elapsed = time.perf_counter() - start
        logger.info("Curved MPR %s computed in %.3fs", short_hash(key), elapsed)
        return MPRResult(mpr, False, elapsed, key)

    def measure_slices(
        self,
        mpr: CurvedMPRVolume,
        segmentations: Mapping[int, CrossSectionSegmentation],
        workers: Optional[int] = None,
    ) -> List[CrossSectionMeasurements]:
        """Measure every slice that has a segmentation, ordered by slice index."""
        workers = workers or self.settings.workers
        indices = sorted(segmentations)

        def measure(index: int) -> CrossSectionMeasurements:
            image = extract_cross_section(mpr, index)
            position = mpr.centerline_points[index].distance
            return compute_all_measurements(image, segmentations[index], position, self.settings.measurement)

        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(measure, indices))
        else:
            results = [measure(i) for i in indices]

        invalid = sum(1 for m in results if not m.is_valid(self.settings.measurement))
        if invalid:
            logger.warning("%d of %d slices have a lumen area below the valid minimum", invalid, len(results))
        logger.info("Measured %d slices", len(results))
        return results

    def run(
        self,
        volume: VolumeData,
        start: PointLike,
        end: PointLike,
        intermediate_points: Sequence[PointLike] = (),
        segmentation: Optional[SegmentationMask] = None,
        cross_sections: Optional[Mapping[int, CrossSectionSegmentation]] = None,
        vessel: Optional[str] = None,
        study_id: Optional[str] = None,
        refine: bool = False,
        wall_thickness_px: int = 0,
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineRun:
        """Solve, resample and measure in one call.

        When ``cross_sections`` is not given but a 3D ``segmentation`` is, the
        mask is resampled through the MPR planes to obtain them.
        """
        centerline = self.solve_centerline(start, end, intermediate_points, segmentation, refine)
        warnings = list(validate_centerline(centerline).errors)
        mpr = self.generate_mpr(volume, centerline, vessel, study_id, cancel_event=cancel_event)

        if cross_sections is None and segmentation is not None:
            cross_sections = cross_sections_from_mask(
                segmentation, mpr.volume, wall_thickness_px, self.settings.mpr.initial_up_vector
            )
        measurements = self.measure_slices(mpr.volume, cross_sections) if cross_sections else []
        return PipelineRun(centerline=centerline, mpr=mpr, measurements=measurements, warnings=warnings)

"""Coronary centerline fitting, curved MPR resampling and cross-section measurements."""

from .cache import CacheStats, VolumeCache, generate_centerline_hash, get_cached_or_compute, short_hash
from .centerline import (
    CenterlineConfig,
    CenterlinePoint,
    CenterlineResult,
    ControlPoint,
    Point3D,
    SegmentationMask,
    check_point_in_lumen,
    compute_centerline,
    interpolate_point_at_distance,
    refine_centerline_with_distance_transform,
    validate_centerline,
)
from .config import PipelineSettings, ProjectPaths
from .curved_mpr import (
    AIR_HU,
    CurvedMPRConfig,
    CurvedMPRVolume,
    PlaneFrame,
    ProgressiveMPRConfig,
    extract_cross_section,
    generate_curved_mpr,
    generate_curved_mpr_progressive,
    slice_index_at_distance,
    validate_mpr_config,
)
from .errors import (
    DimensionMismatchError,
    InsufficientCenterlinePointsError,
    InsufficientControlPointsError,
    MissingDistanceTransformError,
    ResampleCancelledError,
    ValidationReport,
    VesselMPRError,
)
from .io import VolumeData, load_segmentation_mask, load_volume
from .measurements import (
    CrossSectionImage,
    CrossSectionMeasurements,
    CrossSectionSegmentation,
    MeasurementConfig,
    compute_all_measurements,
)
from .pipeline import CurvedMPRService, MPRResult, PipelineRun

__all__ = [
    "AIR_HU",
    "CacheStats",
    "CenterlineConfig",
    "CenterlinePoint",
    "CenterlineResult",
    "ControlPoint",
    "CrossSectionImage",
    "CrossSectionMeasurements",
    "CrossSectionSegmentation",
    "CurvedMPRConfig",
    "CurvedMPRService",
    "CurvedMPRVolume",
    "DimensionMismatchError",
    "InsufficientCenterlinePointsError",
    "InsufficientControlPointsError",
    "MPRResult",
    "MeasurementConfig",
    "MissingDistanceTransformError",
    "PipelineRun",
    "PipelineSettings",
    "PlaneFrame",
    "Point3D",
    "ProgressiveMPRConfig",
    "ProjectPaths",
    "ResampleCancelledError",
    "SegmentationMask",
    "ValidationReport",
    "VesselMPRError",
    "VolumeCache",
    "VolumeData",
    "check_point_in_lumen",
    "compute_all_measurements",
    "compute_centerline",
    "extract_cross_section",
    "generate_centerline_hash",
    "generate_curved_mpr",
    "generate_curved_mpr_progressive",
    "get_cached_or_compute",
    "interpolate_point_at_distance",
    "load_segmentation_mask",
    "load_volume",
    "refine_centerline_with_distance_transform",
    "short_hash",
    "slice_index_at_distance",
    "validate_centerline",
    "validate_mpr_config",
]

"""Command line entry point: ``vessel-mpr``."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from .centerline import CenterlineConfig, ControlPoint, SegmentationMask, compute_centerline
from .config import PipelineSettings, ProjectPaths
from .curved_mpr import extract_cross_section, straightened_view, window_and_normalize
from .io import (
    VolumeData,
    load_control_points_json,
    load_segmentation_mask,
    load_volume,
    save_json,
    save_measurements_csv,
    save_mpr_nifti,
)
from .logging_config import setup_logging
from .pipeline import CurvedMPRService, PipelineRun

logger = logging.getLogger(__name__)

DEMO_CONTROL_POINTS = (
    ControlPoint(8.0, 32.0, 32.0),
    ControlPoint(22.0, 38.0, 30.0),
    ControlPoint(40.0, 26.0, 35.0),
    ControlPoint(56.0, 32.0, 32.0),
)


def make_demo_case(
    shape: Tuple[int, int, int] = (64, 64, 64),
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0),
    lumen_radius_mm: float = 2.0,
    lumen_hu: int = 400,
    background_hu: int = 40,
    calcium_hu: int = 900,
) -> Tuple[VolumeData, SegmentationMask, List[ControlPoint]]:
    """Synthetic contrast-filled tube following a spline, with one calcified spot above it."""
    nz, ny, nx = shape
    sx, sy, sz = spacing
    centerline = compute_centerline(
        DEMO_CONTROL_POINTS[0],
        DEMO_CONTROL_POINTS[-1],
        DEMO_CONTROL_POINTS[1:-1],
        CenterlineConfig(sampling_interval=0.25),
    )
    seeds = np.zeros(shape, dtype=bool)
    idx = np.floor(centerline.as_array() / np.array(spacing) + 0.5).astype(int)
    inside = np.all((idx >= 0) & (idx < np.array([nx, ny, nz])), axis=1)
    seeds[idx[inside, 2], idx[inside, 1], idx[inside, 0]] = True
    distance = ndimage.distance_transform_edt(~seeds, sampling=(sz, sy, sx))
    lumen = distance <= lumen_radius_mm

    volume = np.full(shape, background_hu, dtype=np.int16)
    # Calcified spot just above the vessel wall at mid-length.
    mid = centerline.points[len(centerline.points) // 2]
    cx = int(round(mid.x / sx))
    cy = int(round(mid.y / sy))
    cz = int(round((mid.z + lumen_radius_mm + 2.0) / sz))
    volume[cz - 1 : cz + 2, cy - 1 : cy + 2, cx - 1 : cx + 2] = calcium_hu
    volume[lumen] = lumen_hu

    mask = SegmentationMask(data=lumen.astype(np.uint8), spacing=spacing).with_distance_transform()
    return VolumeData(data=volume, spacing=spacing), mask, list(DEMO_CONTROL_POINTS)


def _save_png(path: Path, image: np.ndarray) -> None:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    try:
        plt.imsave(path, image, cmap="gray")
    except (OSError, ValueError) as exc:
        logger.warning("Failed to save %s: %s", path, exc)


def write_outputs(run: PipelineRun, out_dir: Path, window: Tuple[float, float], gamma: Optional[float]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    mpr = run.mpr.volume
    save_mpr_nifti(mpr, out_dir / "curved_mpr.nii.gz")
    save_json(out_dir / "centerline.json", run.centerline.to_dict())
    save_json(
        out_dir / "measurements.json",
        {"warnings": run.warnings, "slices": [m.to_dict() for m in run.measurements]},
    )
    if run.measurements:
        save_measurements_csv(out_dir / "measurements.csv", [m.to_row() for m in run.measurements])

    _save_png(out_dir / "straightened.png", window_and_normalize(straightened_view(mpr), window, gamma))
    _save_png(
        out_dir / "straightened_mip.png",
        window_and_normalize(straightened_view(mpr, "max", slab_px=mpr.data.shape[1] // 4), window, gamma),
    )
    middle = extract_cross_section(mpr, mpr.num_slices // 2)
    _save_png(out_dir / "cross_section_mid.png", window_and_normalize(middle.data, window, gamma))
    logger.info("Saved outputs to %s", out_dir)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vessel-mpr",
        description="Fit a coronary centerline, generate a curved MPR and measure each cross-section.",
    )
    parser.add_argument("--demo", action="store_true", help="Run on a synthetic vessel instead of real data.")
    parser.add_argument("--volume", type=Path, default=None, help="CCTA volume (NIfTI, NRRD, MHA).")
    parser.add_argument("--points", type=Path, default=None, help="Control points JSON (start/end/intermediate).")
    parser.add_argument("--mask", type=Path, default=None, help="Optional binary lumen mask aligned to the volume.")
    parser.add_argument("--config", type=Path, default=None, help="Pipeline settings JSON.")
    parser.add_argument("--out_dir", type=Path, default=None, help="Output directory (default outputs/<case>).")
    parser.add_argument("--vessel", type=str, default=None, help="Vessel label, e.g. LAD, LCX, RCA.")
    parser.add_argument("--study_id", type=str, default=None)
    parser.add_argument("--refine", action="store_true", help="Refine control points with the mask distance map.")
    parser.add_argument("--wall_px", type=int, default=0, help="Report a wall ring of this many pixels.")
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--window_lo", type=float, default=-100.0)
    parser.add_argument("--window_hi", type=float, default=700.0)
    parser.add_argument("--gamma", type=float, default=None)
    parser.add_argument("--log_file", type=Path, default=None)
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    settings = PipelineSettings.from_json(args.config) if args.config else PipelineSettings()
    if args.workers is not None:
        settings.workers = max(1, args.workers)

    if args.demo:
        volume, mask, control_points = make_demo_case()
        case_id = "demo"
        wall_px = args.wall_px or 2
    else:
        if args.volume is None or args.points is None:
            parser.error("--volume and --points are required unless --demo is given")
        volume = load_volume(args.volume)
        mask = load_segmentation_mask(args.mask) if args.mask is not None else None
        start, end, intermediate = load_control_points_json(args.points)
        control_points = [start, *intermediate, end]
        case_id = args.volume.name.split(".")[0]
        wall_px = args.wall_px

    out_dir = args.out_dir or ProjectPaths.from_root(Path.cwd()).case_dir(case_id)
    service = CurvedMPRService(settings)
    run = service.run(
        volume,
        control_points[0],
        control_points[-1],
        control_points[1:-1],
        segmentation=mask,
        vessel=args.vessel,
        study_id=args.study_id,
        refine=args.refine,
        wall_thickness_px=wall_px,
    )
    write_outputs(run, out_dir, (args.window_lo, args.window_hi), args.gamma)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

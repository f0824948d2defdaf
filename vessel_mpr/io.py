"""I/O utilities for CT volumes, lumen masks, control points and result records."""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import nibabel as nib
import numpy as np

from .centerline import ControlPoint, SegmentationMask

logger = logging.getLogger(__name__)

DIRECTION_TOLERANCE = 1e-3


@dataclass
class VolumeData:
    """Read-only CT volume handed to the resampler.

    ``data`` is (Z, Y, X) int16 so its C-order buffer is x-fastest;
    ``spacing`` and ``origin`` are (x, y, z) in mm.
    """

    data: np.ndarray
    spacing: Tuple[float, float, float]
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    path: Optional[Path] = None

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        if self.data.ndim != 3:
            raise ValueError("volume data must have shape (Z, Y, X)")
        self.spacing = tuple(float(s) for s in self.spacing)
        self.origin = tuple(float(o) for o in self.origin)
        if any(s <= 0 for s in self.spacing):
            raise ValueError("volume spacing must be > 0")

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
        samples: Sequence[int],
    ) -> "VolumeData":
        """Build a volume from an x-fastest flat sample buffer."""
        nx, ny, nz = (int(d) for d in dimensions)
        arr = np.asarray(samples, dtype=np.int16)
        if arr.size != nx * ny * nz:
            raise ValueError(f"expected {nx * ny * nz} samples for dimensions {tuple(dimensions)}, got {arr.size}")
        return cls(data=arr.reshape(nz, ny, nx), spacing=tuple(spacing), origin=tuple(origin))

    def flat(self) -> np.ndarray:
        return self.data.ravel()


def _to_hu(array: np.ndarray) -> np.ndarray:
    info = np.iinfo(np.int16)
    return np.clip(np.rint(array), info.min, info.max).astype(np.int16)


def _axis_aligned_frame(
    data: np.ndarray,
    spacing: Sequence[float],
    origin: Sequence[float],
    direction: Sequence[float],
    path: Path,
) -> Tuple[np.ndarray, Tuple[float, ...], Tuple[float, ...]]:
    """Reorder and flip a (Z, Y, X) array so its index axes run along +x, +y, +z.

    ``direction`` is the row-major 3x3 ITK direction matrix. Only signed
    permutations are accepted; oblique acquisitions raise ``ValueError``.
    """
    matrix = np.asarray(direction, dtype=float).reshape(3, 3)
    rounded = np.round(matrix)
    if (
        not np.allclose(matrix, rounded, atol=DIRECTION_TOLERANCE)
        or not np.all(np.abs(rounded).sum(axis=0) == 1)
        or not np.all(np.abs(rounded).sum(axis=1) == 1)
    ):
        raise ValueError(
            f"{path} has an oblique direction matrix {matrix.tolist()}; only axis-aligned images are supported"
        )

    # ITK index order is (i, j, k) = (x, y, z); numpy order is the reverse.
    ijk = data.transpose(2, 1, 0)
    world_axis = np.argmax(np.abs(rounded), axis=0)
    signs = rounded[world_axis, np.arange(3)]
    order = np.argsort(world_axis)
    ijk = ijk.transpose(order)

    out_spacing = [float(spacing[j]) for j in order]
    out_origin = [float(o) for o in origin]
    for w, j in enumerate(order):
        if signs[j] < 0:
            ijk = np.flip(ijk, axis=w)
            out_origin[w] -= (data.shape[2 - j] - 1) * float(spacing[j])
    return np.ascontiguousarray(ijk.transpose(2, 1, 0)), tuple(out_spacing), tuple(out_origin)


def load_image(path: str | Path) -> Tuple[np.ndarray, dict]:
    """Load NIfTI/NRRD/MHA with SimpleITK and return a (Z, Y, X) array + meta dict.

    Every format goes through ITK so positions share one world frame (LPS).
    Flipped or permuted axes are resolved so that voxel ``[k, j, i]`` sits at
    ``origin + (i, j, k) * spacing``.
    """
    import SimpleITK as sitk

    path = Path(path)
    img = sitk.ReadImage(str(path))
    if img.GetDimension() != 3:
        raise ValueError(f"expected a 3D image, got {img.GetDimension()}D from {path}")
    data, spacing, origin = _axis_aligned_frame(
        sitk.GetArrayFromImage(img), img.GetSpacing(), img.GetOrigin(), img.GetDirection(), path
    )
    meta = {"spacing": spacing, "origin": origin, "path": path}
    return data, meta


def load_volume(path: str | Path) -> VolumeData:
    """Load a CT volume as int16 HU samples."""
    arr, meta = load_image(path)
    volume = VolumeData(data=_to_hu(arr), spacing=meta["spacing"], origin=meta["origin"], path=Path(path))
    logger.info("Loaded volume %s: dimensions=%s spacing=%s", path, volume.dimensions, volume.spacing)
    return volume


def load_segmentation_mask(
    path: str | Path,
    threshold: float = 0.5,
    with_distance_transform: bool = True,
) -> SegmentationMask:
    """Load a binary lumen mask, optionally with its distance transform."""
    arr, meta = load_image(path)
    mask = SegmentationMask(
        data=(arr > threshold).astype(np.uint8),
        spacing=meta["spacing"],
        origin=meta["origin"],
    )
    if with_distance_transform:
        mask = mask.with_distance_transform()
    return mask


def save_mpr_nifti(mpr, path: str | Path) -> None:
    """Write a curved MPR stack as NIfTI with (x, y, slice) axes and MPR spacing."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    affine = np.diag([mpr.spacing[0], mpr.spacing[1], mpr.spacing[2], 1.0])
    nib.save(nib.Nifti1Image(mpr.data.transpose(2, 1, 0).astype(np.int16), affine), str(path))


def load_control_points_json(path: str | Path) -> Tuple[ControlPoint, ControlPoint, List[ControlPoint]]:
    """Read ``{"start": [...], "end": [...], "intermediate": [[...], ...]}``.

    Entries may be ``[x, y, z]``, ``[x, y, z, weight]`` or ``{"x":..,"y":..,"z":..,"weight":..}``.
    """
    payload = json.loads(Path(path).read_text(encoding="utf-8"))

    def parse(entry: Any) -> ControlPoint:
        if isinstance(entry, dict):
            return ControlPoint(
                float(entry["x"]), float(entry["y"]), float(entry["z"]), float(entry.get("weight", 1.0))
            )
        values = [float(v) for v in entry]
        if len(values) not in (3, 4):
            raise ValueError(f"invalid control point entry: {entry!r}")
        return ControlPoint(*values)

    if "start" not in payload or "end" not in payload:
        raise ValueError(f"{path} must define 'start' and 'end'")
    return parse(payload["start"]), parse(payload["end"]), [parse(p) for p in payload.get("intermediate", [])]


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def save_json(path: Path, payload: Dict[str, Any]) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def save_measurements_csv(path: Path, rows: Sequence[Dict[str, Any]]) -> None:
    """Write flat measurement rows; the header is the union of keys in first-seen order."""
    ensure_parent(path)
    fieldnames: List[str] = []
    for row in rows:
        for key in row:
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)

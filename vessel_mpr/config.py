"""Pipeline configuration and default output paths."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List

from .cache import DEFAULT_MAX_ENTRIES, DEFAULT_MAX_MEMORY_BYTES
from .centerline import CenterlineConfig
from .curved_mpr import ProgressiveMPRConfig, validate_mpr_config
from .measurements import MeasurementConfig, validate_measurement_config


@dataclass
class ProjectPaths:
    """Container for frequently used input/output locations."""

    root: Path
    data_dir: Path
    outputs_dir: Path
    logs_dir: Path

    @classmethod
    def from_root(cls, root: str | Path) -> "ProjectPaths":
        """Instantiate paths relative to a working root."""
        root_path = Path(root).expanduser().resolve()
        return cls(
            root=root_path,
            data_dir=root_path / "data",
            outputs_dir=root_path / "outputs",
            logs_dir=root_path / "logs",
        )

    def case_dir(self, case_id: str) -> Path:
        return self.outputs_dir / case_id


@dataclass
class CacheSettings:
    max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES
    max_entries: int = DEFAULT_MAX_ENTRIES
    enabled: bool = True


def _build(cls, payload: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(payload) - known
    if unknown:
        raise ValueError(f"unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}")
    kwargs = dict(payload)
    if "initial_up_vector" in kwargs:
        kwargs["initial_up_vector"] = tuple(float(v) for v in kwargs["initial_up_vector"])
    return cls(**kwargs)


@dataclass
class PipelineSettings:
    """All tunables of a centerline -> MPR -> measurement run.

    Stored on disk as JSON with one object per section, e.g.
    ``{"centerline": {...}, "mpr": {...}, "measurement": {...}, "cache": {...}, "workers": 4}``.
    """

    centerline: CenterlineConfig = field(default_factory=CenterlineConfig)
    mpr: ProgressiveMPRConfig = field(default_factory=ProgressiveMPRConfig)
    measurement: MeasurementConfig = field(default_factory=MeasurementConfig)
    cache: CacheSettings = field(default_factory=CacheSettings)
    workers: int = 1

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PipelineSettings":
        unknown = set(payload) - {"centerline", "mpr", "measurement", "cache", "workers"}
        if unknown:
            raise ValueError(f"unknown settings section(s): {', '.join(sorted(unknown))}")
        workers = int(payload.get("workers", 1))
        if workers < 1:
            raise ValueError("workers must be >= 1")
        return cls(
            centerline=_build(CenterlineConfig, payload.get("centerline", {})),
            mpr=_build(ProgressiveMPRConfig, payload.get("mpr", {})),
            measurement=_build(MeasurementConfig, payload.get("measurement", {})),
            cache=_build(CacheSettings, payload.get("cache", {})),
            workers=workers,
        )

    @classmethod
    def from_json(cls, path: str | Path) -> "PipelineSettings":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["mpr"]["initial_up_vector"] = list(self.mpr.initial_up_vector)
        return payload

    def to_json(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    def validate(self) -> List[str]:
        """Soft range checks across all sections; empty when everything is in range."""
        errors = list(validate_mpr_config(self.mpr).errors)
        errors.extend(validate_measurement_config(self.measurement).errors)
        if self.centerline.sampling_interval <= 0:
            errors.append("Centerline sampling interval must be > 0")
        if self.centerline.degree < 1:
            errors.append("Spline degree must be >= 1")
        return errors

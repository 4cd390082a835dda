from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

log = logging.getLogger(__name__)

_UP_AXES = ("Y", "Z")


@dataclass
class RealizeConfig:
    """Knobs for a realization pass (safety caps, units, textures, playback)."""

    time: Optional[float] = None
    meters_per_unit: Optional[float] = None
    apply_stage_units: bool = True
    up_axis: str = "Y"
    max_vertices: int = 500_000
    max_triangles: int = 1_000_000
    enable_subdivision: bool = True
    max_subdivision_level: int = 2
    texture_workers: int = 4
    guess_texture_colors: bool = True
    skeleton_helpers: bool = True
    frames_per_second: Optional[float] = None

    def __post_init__(self) -> None:
        self.up_axis = str(self.up_axis or "Y").strip().upper()
        if self.up_axis not in _UP_AXES:
            raise ValueError(f"up_axis must be one of {_UP_AXES}, got {self.up_axis!r}")
        if self.max_vertices <= 0 or self.max_triangles <= 0:
            raise ValueError("max_vertices and max_triangles must be positive")
        if self.max_subdivision_level < 0:
            raise ValueError("max_subdivision_level must be >= 0")
        if self.texture_workers < 0:
            raise ValueError("texture_workers must be >= 0")

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]], fallback: Optional["RealizeConfig"] = None) -> "RealizeConfig":
        base = fallback or cls()
        if not data:
            return replace(base)
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            name = str(key).strip().replace("-", "_")
            if name not in known:
                log.warning("Ignoring unknown config key '%s'", key)
                continue
            values[name] = raw
        try:
            for name in ("time", "meters_per_unit", "frames_per_second"):
                if values.get(name) is not None:
                    values[name] = float(values[name])
            for name in ("max_vertices", "max_triangles", "max_subdivision_level", "texture_workers"):
                if name in values:
                    values[name] = int(values[name])
            for name in ("apply_stage_units", "enable_subdivision", "guess_texture_colors", "skeleton_helpers"):
                if name in values:
                    values[name] = _as_bool(values[name])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid config values: {data}") from exc
        return replace(base, **values)

    @classmethod
    def from_file(cls, path: Path) -> "RealizeConfig":
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        return cls.from_text(text, suffix=path.suffix)

    @classmethod
    def from_text(cls, text: str, *, suffix: str) -> "RealizeConfig":
        data = cls._load_data_from_text(text, suffix=suffix)
        return cls.from_mapping(data)

    @staticmethod
    def _load_data_from_text(text: str, *, suffix: str) -> Dict[str, Any]:
        suffix = suffix.lower()
        if suffix == ".json":
            data = json.loads(text)
        elif suffix in (".yaml", ".yml", ""):
            data = yaml.safe_load(text)
        else:
            raise ValueError(f"Unsupported config format: {suffix}")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError("Config root must be a mapping")
        section = data.get("realize")
        return section if isinstance(section, dict) else data


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("1", "true", "yes", "on"):
            return True
        if normalized in ("0", "false", "no", "off", ""):
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    return bool(value)

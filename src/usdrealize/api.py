from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Union

from .config.realize_config import RealizeConfig
from .prims import Prim
from .realize import RealizedScene, SceneRealizer, realize_scene
from .stage_reader import read_stage
from .textures import AssetResolver, default_asset_resolver

PathLike = Union[str, Path]

__all__ = [
    "RealizeDefaults",
    "RealizeSettings",
    "REALIZE_DEFAULTS",
    "load_config",
    "realize",
    "realize_tree",
    "make_realizer",
]


@dataclass(frozen=True)
class RealizeDefaults:
    texture_workers: int = 4
    up_axis: str = "Y"
    apply_stage_units: bool = True
    skeleton_helpers: bool = True
    wait_for_textures: bool = False
    texture_timeout: Optional[float] = 30.0

    def config(self) -> RealizeConfig:
        return RealizeConfig(
            texture_workers=self.texture_workers,
            up_axis=self.up_axis,
            apply_stage_units=self.apply_stage_units,
            skeleton_helpers=self.skeleton_helpers,
        )


REALIZE_DEFAULTS = RealizeDefaults()


@dataclass(slots=True)
class RealizeSettings:
    """Inputs that drive a realization run via :func:`realize`."""

    input_path: PathLike
    config: Optional[RealizeConfig] = None
    config_path: Optional[PathLike] = None
    time: Optional[float] = None
    texture_workers: Optional[int] = None
    resolve_asset_url: Optional[AssetResolver] = None
    wait_for_textures: bool = REALIZE_DEFAULTS.wait_for_textures
    texture_timeout: Optional[float] = REALIZE_DEFAULTS.texture_timeout
    logger: Optional[logging.Logger] = None


def load_config(
    config: Optional[RealizeConfig] = None,
    config_path: Optional[PathLike] = None,
    *,
    time: Optional[float] = None,
    texture_workers: Optional[int] = None,
) -> RealizeConfig:
    """Merge an explicit config, a config file and per-call overrides."""
    if config is not None:
        effective = replace(config)
    elif config_path is not None:
        effective = RealizeConfig.from_file(Path(config_path))
    else:
        effective = REALIZE_DEFAULTS.config()
    if time is not None:
        effective = replace(effective, time=float(time))
    if texture_workers is not None:
        effective = replace(effective, texture_workers=int(texture_workers))
    return effective


def _resolver_for(settings: RealizeSettings) -> AssetResolver:
    if settings.resolve_asset_url is not None:
        return settings.resolve_asset_url
    return default_asset_resolver(Path(settings.input_path).resolve().parent)


def realize(settings: RealizeSettings) -> RealizedScene:
    """Open the stage in ``settings`` and realize it."""
    log = settings.logger or logging.getLogger(__name__)
    config = load_config(
        settings.config,
        settings.config_path,
        time=settings.time,
        texture_workers=settings.texture_workers,
    )
    root = read_stage(settings.input_path, logger=log)
    result = realize_scene(root, config=config, resolve_asset_url=_resolver_for(settings), logger=log)
    if settings.wait_for_textures and result.textures is not None:
        if not result.textures.wait(settings.texture_timeout):
            log.warning("Timed out waiting for %d texture(s)", result.textures.pending_count)
    return result


def realize_tree(
    root: Prim,
    *,
    config: Optional[RealizeConfig] = None,
    resolve_asset_url: Optional[AssetResolver] = None,
    logger: Optional[logging.Logger] = None,
) -> RealizedScene:
    """Realize an already-built prim tree."""
    return realize_scene(root, config=config or REALIZE_DEFAULTS.config(), resolve_asset_url=resolve_asset_url, logger=logger)


def make_realizer(settings: RealizeSettings) -> SceneRealizer:
    """A coalescing realizer that re-reads the stage on every pass."""
    config = load_config(settings.config, settings.config_path, time=settings.time, texture_workers=settings.texture_workers)
    return SceneRealizer(
        lambda: read_stage(settings.input_path, logger=settings.logger),
        config=config,
        resolve_asset_url=_resolver_for(settings),
        logger=settings.logger,
    )

"""UsdLux lights mapped onto renderer light nodes.

USD intensities are luminance (nits) scaled by ``2 ** exposure``.  Renderer
intensities use a fixed viewer calibration so typical sample scenes land in a
sensible exposure range.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from .prims import Prim
from .scene import Color, Light
from .time_eval import as_bool, as_float, as_token, as_vec, get_prop_at_time

LOG = logging.getLogger(__name__)

LIGHT_TYPES = ("DistantLight", "SphereLight", "RectLight", "DiskLight", "CylinderLight", "DomeLight")

DISTANT_SCALE = 1000.0
NITS_SCALE = 8000.0
SPHERE_SCALE = 8000.0 * math.pi
DOME_SCALE = 1000.0
SPOT_CONE_LIMIT = 179.9
MAX_SPOT_ANGLE = math.pi / 2 - 1e-4


def _number(prim: Prim, name: str, default: float, time: Optional[float]) -> float:
    for candidate in (f"inputs:{name}", name):
        value = as_float(get_prop_at_time(prim, candidate, time))
        if value is not None:
            return value
    return default


def _flag(prim: Prim, name: str, default: bool, time: Optional[float]) -> bool:
    for candidate in (f"inputs:{name}", name):
        value = get_prop_at_time(prim, candidate, time)
        if value is not None:
            return as_bool(value, default)
    return default


def _color(prim: Prim, time: Optional[float]) -> Color:
    for candidate in ("inputs:color", "color"):
        vec = as_vec(get_prop_at_time(prim, candidate, time), 3)
        if vec is not None:
            return (vec[0], vec[1], vec[2])
    return (1.0, 1.0, 1.0)


def _asset(prim: Prim, name: str) -> Optional[str]:
    for candidate in (f"inputs:{name}", name):
        value = get_prop_at_time(prim, candidate, None)
        if isinstance(value, str) and value:
            return value
    return None


def light_intensity(prim: Prim, time: Optional[float] = None) -> float:
    """``intensity * 2 ** exposure`` with both ``inputs:`` and bare attribute names."""
    return _number(prim, "intensity", 1.0, time) * math.pow(2.0, _number(prim, "exposure", 0.0, time))


def _sphere_light(prim: Prim, base: float, color: Color, time: Optional[float]) -> Light:
    radius = max(0.0, _number(prim, "radius", 0.0, time))
    normalize = _flag(prim, "normalize", False, time)
    surface = 4.0 * math.pi * radius * radius
    luminance = base / surface if normalize and surface > 0.0 else base
    intensity = luminance * math.pi * radius * radius / SPHERE_SCALE

    cone_angle = _number(prim, "shaping:cone:angle", 180.0, time)
    softness = _number(prim, "shaping:cone:softness", 0.0, time)
    if cone_angle < SPOT_CONE_LIMIT:
        light = Light("spot", color, intensity)
        light.params.update(
            angle=min(max(math.radians(cone_angle), 0.0), MAX_SPOT_ANGLE),
            penumbra=min(max(softness, 0.0), 1.0),
            target=(0.0, 0.0, -1.0),
            distance=0.0,
            decay=2.0,
        )
    else:
        light = Light("point", color, intensity)
        light.params.update(distance=0.0, decay=2.0)
    light.params["radius"] = radius
    light.cast_shadow = True
    return light


def _area_light(light_type: str, width: float, height: float, area: float, base: float, color: Color, normalize: bool) -> Light:
    luminance = base / area if normalize and area > 0.0 else base
    light = Light(light_type, color, luminance / NITS_SCALE)
    light.params.update(width=width, height=height, target=(0.0, 0.0, -1.0))
    return light


def build_light(
    prim: Prim,
    *,
    time: Optional[float] = None,
    resolve_asset_url: Optional[Callable[[str, Optional[str]], Optional[str]]] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[Light]:
    log = logger or LOG
    kind = prim.type_name
    if kind not in LIGHT_TYPES:
        return None
    base = light_intensity(prim, time)
    color = _color(prim, time)

    if kind == "DistantLight":
        light = Light("directional", color, base / DISTANT_SCALE)
        light.params.update(angle=_number(prim, "angle", 0.53, time), target=(0.0, 0.0, 1.0))
        light.cast_shadow = True
    elif kind == "SphereLight":
        light = _sphere_light(prim, base, color, time)
    elif kind == "RectLight":
        width = max(0.0, _number(prim, "width", 1.0, time))
        height = max(0.0, _number(prim, "height", 1.0, time))
        light = _area_light("rect_area", width, height, width * height, base, color, _flag(prim, "normalize", False, time))
        texture = _asset(prim, "texture:file")
        if texture:
            light.params["texture"] = texture
    elif kind == "DiskLight":
        radius = max(0.0, _number(prim, "radius", 0.5, time))
        light = _area_light("disk_area", 2.0 * radius, 2.0 * radius, math.pi * radius * radius, base, color, _flag(prim, "normalize", False, time))
        light.params["radius"] = radius
    elif kind == "CylinderLight":
        radius = max(0.0, _number(prim, "radius", 0.5, time))
        length = max(0.0, _number(prim, "length", 1.0, time))
        normalize = _flag(prim, "normalize", False, time)
        surface = 2.0 * math.pi * radius * length
        luminance = base / surface if normalize and surface > 0.0 else base
        light = Light("point", color, luminance * 2.0 * radius * length / SPHERE_SCALE)
        light.params.update(radius=radius, length=length, distance=0.0, decay=2.0)
    else:
        light = _dome_light(prim, base, color, resolve_asset_url, log)

    light.name = prim.path
    light.user_data["usd_type"] = kind
    light.params.setdefault("intensity_nits", base)
    return light


def _dome_light(
    prim: Prim,
    base: float,
    color: Color,
    resolve_asset_url: Optional[Callable[[str, Optional[str]], Optional[str]]],
    log: logging.Logger,
) -> Light:
    texture = _asset(prim, "texture:file")
    url: Optional[str] = None
    if texture and resolve_asset_url is not None:
        try:
            url = resolve_asset_url(texture, None)
        except Exception:
            log.debug("Dome texture %s could not be resolved", texture, exc_info=True)
    if url:
        light = Light("environment", color, base)
        fmt = as_token(get_prop_at_time(prim, "inputs:texture:format", None)) or as_token(
            get_prop_at_time(prim, "texture:format", None)
        )
        light.params.update(texture=texture, url=url, format=fmt or "automatic")
        return light
    if texture:
        log.debug("Dome texture %s did not resolve; using a hemisphere light", texture)
    light = Light("hemisphere", color, base / DOME_SCALE)
    light.params["ground_color"] = (0.0, 0.0, 0.0)
    return light


def is_light(type_name: str) -> bool:
    return type_name in LIGHT_TYPES

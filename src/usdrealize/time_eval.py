"""Property reads with keyframe interpolation."""

from __future__ import annotations

import numbers
from typing import Any, List, Optional, Tuple

import numpy as np

from .prims import Prim, Property

DEFAULT_FRAMES_PER_SECOND = 24.0


def _is_scalar(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_numeric_tuple(value: Any) -> bool:
    return isinstance(value, tuple) and len(value) > 0 and all(_is_scalar(v) for v in value)


def _lerp(v0: Any, v1: Any, alpha: float) -> Any:
    if _is_scalar(v0) and _is_scalar(v1):
        return float(v0) + (float(v1) - float(v0)) * alpha
    if _is_numeric_tuple(v0) and _is_numeric_tuple(v1) and len(v0) == len(v1):
        return tuple(float(a) + (float(b) - float(a)) * alpha for a, b in zip(v0, v1))
    # Anything else holds the earlier key until the next one is reached.
    return v0 if alpha < 1.0 else v1


def _sorted_samples(prop: Property) -> List[Tuple[float, Any]]:
    return sorted(((float(t), v) for t, v in (prop.time_samples or {}).items()), key=lambda kv: kv[0])


def get_prop(prim: Prim, name: str) -> Any:
    prop = prim.get(name)
    if prop is None:
        return None
    if prop.default is not None:
        return prop.default
    if prop.time_samples:
        return _sorted_samples(prop)[0][1]
    return None


def sample_property(prop: Property, time: Optional[float]) -> Any:
    if time is None or not prop.time_samples:
        if prop.default is None and prop.time_samples:
            return _sorted_samples(prop)[0][1]
        return prop.default

    samples = _sorted_samples(prop)
    t = float(time)
    first_t, first_v = samples[0]
    last_t, last_v = samples[-1]
    if t <= first_t:
        return first_v
    if t >= last_t:
        return last_v
    for (t0, v0), (t1, v1) in zip(samples, samples[1:]):
        if t == t0:
            return v0
        if t0 < t < t1:
            alpha = (t - t0) / (t1 - t0) if t1 > t0 else 0.0
            return _lerp(v0, v1, alpha)
    return last_v


def get_prop_at_time(prim: Prim, name: str, time: Optional[float]) -> Any:
    prop = prim.get(name)
    if prop is None:
        return None
    return sample_property(prop, time)


def prop_has_animation(prim: Prim, name: str) -> bool:
    prop = prim.get(name)
    return bool(prop is not None and prop.time_samples and len(prop.time_samples) > 0)


def prim_time_sample_range(prim: Prim) -> Optional[Tuple[float, float]]:
    times: List[float] = []
    for prop in prim.properties.values():
        if prop.time_samples:
            times.extend(float(t) for t in prop.time_samples)
    if not times:
        return None
    return min(times), max(times)


def stage_time_range(root: Prim) -> Optional[Tuple[float, float]]:
    start = root.metadata.get("startTimeCode")
    end = root.metadata.get("endTimeCode")
    if start is not None and end is not None and float(end) > float(start):
        return float(start), float(end)
    lo: Optional[float] = None
    hi: Optional[float] = None
    for prim in root.walk():
        rng = prim_time_sample_range(prim)
        if rng is None:
            continue
        lo = rng[0] if lo is None else min(lo, rng[0])
        hi = rng[1] if hi is None else max(hi, rng[1])
    if lo is None or hi is None:
        return None
    return lo, hi


def stage_frames_per_second(root: Prim, default: float = DEFAULT_FRAMES_PER_SECOND) -> float:
    for key in ("framesPerSecond", "timeCodesPerSecond"):
        value = root.metadata.get(key)
        if _is_scalar(value) and float(value) > 0:
            return float(value)
    return float(default)


# ---------------- Typed readers ----------------

def as_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_scalar(value):
        return float(value)
    if isinstance(value, np.generic):
        return float(value)
    return default


def as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if _is_scalar(value):
        return float(value) != 0.0
    return default


def as_token(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    return None


def as_vec(value: Any, size: int) -> Optional[Tuple[float, ...]]:
    if value is None or isinstance(value, (str, bytes)):
        return None
    try:
        arr = np.asarray(value, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return None
    if arr.size < size or not np.all(np.isfinite(arr[:size])):
        return None
    return tuple(float(v) for v in arr[:size])


def as_array(value: Any, width: int = 1, dtype=np.float64) -> Optional[np.ndarray]:
    """Return ``value`` as an ``(N, width)`` (or ``(N,)`` for width 1) array."""
    if value is None or isinstance(value, (str, bytes)):
        return None
    try:
        arr = np.asarray(value, dtype=dtype)
    except (TypeError, ValueError):
        return None
    if arr.size == 0:
        return None
    if width == 1:
        return arr.reshape(-1)
    if arr.size % width != 0:
        return None
    return arr.reshape(-1, width)


def as_token_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if isinstance(v, str)]


def as_int_list(value: Any) -> List[int]:
    arr = as_array(value, width=1, dtype=np.int64)
    return [] if arr is None else [int(v) for v in arr]

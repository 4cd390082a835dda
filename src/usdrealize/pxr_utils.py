from __future__ import annotations

from typing import Any

import numpy as np

from .usd_context import (
    get_pxr_module,
    get_pxr_package,
    initialize_usd,
    shutdown_usd_context,
)


def require_pxr_module(name: str) -> Any:
    initialize_usd()
    return get_pxr_module(name)


def require_pxr_attribute(name: str) -> Any:
    initialize_usd()
    package = get_pxr_package()
    return getattr(package, name)


class _ModuleProxy:
    def __init__(self, module_name: str):
        self._module_name = module_name

    def _module(self):
        return require_pxr_module(self._module_name)

    def __getattr__(self, item: str) -> Any:
        return getattr(self._module(), item)

    def __dir__(self):
        return dir(self._module())


Gf = _ModuleProxy("Gf")
Sdf = _ModuleProxy("Sdf")
Usd = _ModuleProxy("Usd")
UsdGeom = _ModuleProxy("UsdGeom")
UsdShade = _ModuleProxy("UsdShade")
UsdSkel = _ModuleProxy("UsdSkel")
Vt = _ModuleProxy("Vt")

__all__ = [
    "Gf",
    "Sdf",
    "Usd",
    "UsdGeom",
    "UsdShade",
    "UsdSkel",
    "Vt",
    "require_pxr_module",
    "require_pxr_attribute",
    "shutdown_usd_context",
    "initialize_usd",
    "to_python_value",
]


# ---------------- Value conversion ----------------

_STRING_ARRAYS = ("TokenArray", "StringArray", "AssetArray", "PathArray")
_QUAT_ARRAYS = ("QuathArray", "QuatfArray", "QuatdArray")
_MATRIX_ARRAYS = ("Matrix4dArray", "Matrix4fArray", "Matrix3dArray", "Matrix2dArray")


def _asset_path_text(value) -> str:
    resolved = getattr(value, "resolvedPath", "") or ""
    return resolved or value.path


def _quat_tuple(q) -> tuple:
    imaginary = q.GetImaginary()
    return (float(q.GetReal()), float(imaginary[0]), float(imaginary[1]), float(imaginary[2]))


def _matrix_rows(m) -> np.ndarray:
    size = m.dimension[0] if hasattr(m, "dimension") else 4
    return np.array([[m[i][j] for j in range(size)] for i in range(size)], dtype=np.float64)


def to_python_value(value: Any) -> Any:
    """Convert a ``pxr`` value into plain Python / numpy data.

    Vt arrays become numpy arrays (token and asset arrays become lists of
    strings), Gf vectors become tuples, quaternions become ``(w, x, y, z)``
    tuples and matrices stay row-major 4x4 arrays as USD authors them.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    type_name = type(value).__name__
    if type_name == "ValueBlock":
        return None
    if type_name == "AssetPath":
        return _asset_path_text(value)
    if type_name == "Path":
        return str(value)
    if type_name in _STRING_ARRAYS:
        return [_asset_path_text(v) if type(v).__name__ == "AssetPath" else str(v) for v in value]
    if type_name in _QUAT_ARRAYS:
        return np.array([_quat_tuple(q) for q in value], dtype=np.float64).reshape(-1, 4)
    if type_name in _MATRIX_ARRAYS:
        return np.array([_matrix_rows(m) for m in value], dtype=np.float64)
    if type_name.endswith("Array"):
        return np.array(value)
    if type_name.startswith("Quat"):
        return _quat_tuple(value)
    if type_name.startswith("Matrix"):
        return _matrix_rows(value)
    if type_name.startswith("Vec") or type_name.startswith("Range"):
        try:
            return tuple(float(v) for v in value)
        except TypeError:
            return value
    if isinstance(value, (list, tuple)):
        return [to_python_value(v) for v in value]
    return value

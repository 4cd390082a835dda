"""Evaluation of ``xformOp`` stacks into node transforms."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from .prims import Prim
from .scene import Object3D
from .time_eval import as_array, as_float, as_token_list, as_vec, get_prop, get_prop_at_time
from .utils.matrix_utils import (
    axis_rotation_matrix,
    euler_rotation_matrix,
    quat_from_axis_angle,
    quat_multiply,
    quat_normalize,
    rotation_matrix,
    scale_matrix,
    translation_matrix,
    usd_to_column_matrix,
)

LOG = logging.getLogger(__name__)

INVERT_PREFIX = "!invert!"
RESET_XFORM_STACK = "!resetXformStack!"
STAGE_ROOT_NAME = "/"

_EULER_ORDERS = ("XYZ", "XZY", "YXZ", "YZX", "ZXY", "ZYX")
# Pivot-style ops are authored as translations.
_TRANSLATE_LIKE_SUFFIXES = (":rotateOffset", ":scaleOffset")


def op_type(op_name: str) -> str:
    """``xformOp:rotateXYZ:pivot`` -> ``rotateXYZ``."""
    parts = op_name.split(":")
    return parts[1] if len(parts) > 1 else op_name


def _op_matrix(prim: Prim, op_name: str, time: Optional[float]) -> Optional[np.ndarray]:
    value = get_prop_at_time(prim, op_name, time)
    if value is None:
        return None
    kind = op_type(op_name)
    if kind == "translate" or any(op_name.endswith(s) for s in _TRANSLATE_LIKE_SUFFIXES):
        vec = as_vec(value, 3)
        return translation_matrix(vec) if vec else None
    if kind == "scale":
        vec = as_vec(value, 3)
        if vec is None:
            uniform = as_float(value)
            vec = (uniform,) * 3 if uniform is not None else None
        return scale_matrix(vec) if vec else None
    if kind in ("rotateX", "rotateY", "rotateZ"):
        angle = as_float(value)
        return axis_rotation_matrix(kind[-1], angle) if angle is not None else None
    if kind.startswith("rotate") and kind[len("rotate") :] in _EULER_ORDERS:
        vec = as_vec(value, 3)
        return euler_rotation_matrix(kind[len("rotate") :], vec) if vec else None
    if kind == "orient":
        quat = as_vec(value, 4)
        return rotation_matrix(quat) if quat else None
    if kind == "transform":
        try:
            return usd_to_column_matrix(value)
        except (TypeError, ValueError):
            return None
    LOG.debug("Unsupported xformOp %s on %s", op_name, prim.path)
    return None


def compose_op_stack(prim: Prim, op_order: Sequence[str], time: Optional[float] = None) -> np.ndarray:
    """Post-multiply ops in listed order (USD: first op is outermost)."""
    mat = np.eye(4, dtype=np.float64)
    for entry in op_order:
        if entry == RESET_XFORM_STACK:
            mat = np.eye(4, dtype=np.float64)
            continue
        invert = entry.startswith(INVERT_PREFIX)
        name = entry[len(INVERT_PREFIX) :] if invert else entry
        op_mat = _op_matrix(prim, name, time)
        if op_mat is None:
            continue
        if invert:
            try:
                op_mat = np.linalg.inv(op_mat)
            except np.linalg.LinAlgError:
                LOG.debug("Singular inverted op %s on %s", name, prim.path)
                continue
        mat = mat @ op_mat
    return mat


def _fallback_matrix(prim: Prim, time: Optional[float]) -> Optional[np.ndarray]:
    transform_ops = [n for n in prim.properties if n.startswith("xformOp:transform")]
    if transform_ops:
        value = get_prop_at_time(prim, transform_ops[0], time)
        if value is not None:
            return usd_to_column_matrix(value)

    translate = as_vec(get_prop_at_time(prim, "xformOp:translate", time), 3)
    scale = as_vec(get_prop_at_time(prim, "xformOp:scale", time), 3)
    rotation: Optional[np.ndarray] = None
    euler = as_vec(get_prop_at_time(prim, "xformOp:rotateXYZ", time), 3)
    if euler is not None:
        rotation = euler_rotation_matrix("XYZ", euler)
    else:
        quat: Optional[np.ndarray] = None
        for name in prim.properties:
            kind = op_type(name)
            if not name.startswith("xformOp:") or kind not in ("rotateX", "rotateY", "rotateZ"):
                continue
            angle = as_float(get_prop_at_time(prim, name, time))
            if angle is None:
                continue
            axis = {"X": (1.0, 0.0, 0.0), "Y": (0.0, 1.0, 0.0), "Z": (0.0, 0.0, 1.0)}[kind[-1]]
            step = quat_from_axis_angle(axis, angle)
            quat = step if quat is None else quat_multiply(quat, step)
        if quat is not None:
            rotation = rotation_matrix(quat_normalize(quat))
    if translate is None and scale is None and rotation is None:
        return None
    mat = np.eye(4, dtype=np.float64)
    if translate is not None:
        mat = mat @ translation_matrix(translate)
    if rotation is not None:
        mat = mat @ rotation
    if scale is not None:
        mat = mat @ scale_matrix(scale)
    return mat


def local_transform(prim: Prim, time: Optional[float] = None) -> Optional[np.ndarray]:
    """Local column-vector matrix of ``prim`` or ``None`` when nothing is authored."""
    op_order = as_token_list(get_prop(prim, "xformOpOrder"))
    if op_order:
        return compose_op_stack(prim, op_order, time)
    return _fallback_matrix(prim, time)


def resets_xform_stack(prim: Prim) -> bool:
    return RESET_XFORM_STACK in as_token_list(get_prop(prim, "xformOpOrder"))


def inherited_stage_matrix(obj: Object3D) -> np.ndarray:
    """Product of ancestor transforms between ``obj`` and the stage root container."""
    mat = np.eye(4, dtype=np.float64)
    node = obj.parent
    while node is not None and node.name != STAGE_ROOT_NAME:
        mat = node.local_matrix() @ mat
        node = node.parent
    return mat


def apply_xform_ops(obj: Object3D, prim: Prim, time: Optional[float] = None) -> bool:
    """Write the prim's local transform into ``obj``; returns False if none authored."""
    try:
        mat = local_transform(prim, time)
    except (TypeError, ValueError):
        LOG.debug("Unable to evaluate xformOps on %s", prim.path, exc_info=True)
        return False
    if mat is None:
        return False
    if obj.parent is not None and resets_xform_stack(prim):
        try:
            mat = np.linalg.inv(inherited_stage_matrix(obj)) @ mat
        except np.linalg.LinAlgError:
            LOG.debug("Singular parent transform above %s; ignoring !resetXformStack!", prim.path)
    obj.set_matrix(mat)
    return True


def prim_has_animated_xform(prim: Prim) -> bool:
    return any(
        name.startswith("xformOp:") and prop.time_samples
        for name, prop in prim.properties.items()
    )


def read_matrix_array(value) -> Optional[np.ndarray]:
    """``matrix4d[]`` value as ``(N, 4, 4)`` column-vector matrices."""
    arr = as_array(value, width=16)
    if arr is None:
        return None
    return np.transpose(arr.reshape(-1, 4, 4), (0, 2, 1)).copy()

from __future__ import annotations

import logging
import math
from typing import Sequence, Tuple

import numpy as np

log = logging.getLogger(__name__)

# Quaternions are stored real-first (w, x, y, z), as USD authors them.
IDENTITY_QUAT = np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float64)


# ---------------- USD matrices ----------------

def usd_to_column_matrix(mat) -> np.ndarray:
    """USD matrices act on row vectors; the scene graph uses column vectors."""
    arr = np.asarray(mat, dtype=np.float64).reshape(4, 4)
    return arr.T.copy()


# ---------------- Quaternion helpers ----------------

def quat_normalize(q: Sequence[float]) -> np.ndarray:
    arr = np.asarray(q, dtype=np.float64).reshape(4)
    norm = float(np.linalg.norm(arr))
    if norm <= 0.0 or not math.isfinite(norm):
        return IDENTITY_QUAT.copy()
    return arr / norm


def quat_multiply(a: Sequence[float], b: Sequence[float]) -> np.ndarray:
    aw, ax, ay, az = (float(v) for v in a)
    bw, bx, by, bz = (float(v) for v in b)
    return np.array(
        [
            aw * bw - ax * bx - ay * by - az * bz,
            aw * bx + ax * bw + ay * bz - az * by,
            aw * by - ax * bz + ay * bw + az * bx,
            aw * bz + ax * by - ay * bx + az * bw,
        ],
        dtype=np.float64,
    )


def quat_from_axis_angle(axis: Sequence[float], degrees: float) -> np.ndarray:
    axis_arr = np.asarray(axis, dtype=np.float64)
    norm = float(np.linalg.norm(axis_arr))
    if norm == 0.0:
        return IDENTITY_QUAT.copy()
    half = math.radians(float(degrees)) * 0.5
    s = math.sin(half) / norm
    return np.array([math.cos(half), axis_arr[0] * s, axis_arr[1] * s, axis_arr[2] * s], dtype=np.float64)


def quat_to_matrix3(q: Sequence[float]) -> np.ndarray:
    w, x, y, z = quat_normalize(q)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def matrix3_to_quat(m: np.ndarray) -> np.ndarray:
    m = np.asarray(m, dtype=np.float64)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        s = 0.5 / math.sqrt(trace + 1.0)
        q = [0.25 / s, (m[2, 1] - m[1, 2]) * s, (m[0, 2] - m[2, 0]) * s, (m[1, 0] - m[0, 1]) * s]
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = 2.0 * math.sqrt(max(1.0 + m[0, 0] - m[1, 1] - m[2, 2], 1e-12))
        q = [(m[2, 1] - m[1, 2]) / s, 0.25 * s, (m[0, 1] + m[1, 0]) / s, (m[0, 2] + m[2, 0]) / s]
    elif m[1, 1] > m[2, 2]:
        s = 2.0 * math.sqrt(max(1.0 + m[1, 1] - m[0, 0] - m[2, 2], 1e-12))
        q = [(m[0, 2] - m[2, 0]) / s, (m[0, 1] + m[1, 0]) / s, 0.25 * s, (m[1, 2] + m[2, 1]) / s]
    else:
        s = 2.0 * math.sqrt(max(1.0 + m[2, 2] - m[0, 0] - m[1, 1], 1e-12))
        q = [(m[1, 0] - m[0, 1]) / s, (m[0, 2] + m[2, 0]) / s, (m[1, 2] + m[2, 1]) / s, 0.25 * s]
    return quat_normalize(q)


# ---------------- Matrix compose / decompose ----------------

def compose(position: Sequence[float], quaternion: Sequence[float], scale: Sequence[float]) -> np.ndarray:
    """Column-vector TRS matrix (translate * rotate * scale)."""
    mat = np.eye(4, dtype=np.float64)
    mat[:3, :3] = quat_to_matrix3(quaternion) * np.asarray(scale, dtype=np.float64).reshape(1, 3)
    mat[:3, 3] = np.asarray(position, dtype=np.float64).reshape(3)
    return mat


def decompose(mat: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Split a column-vector affine matrix into position, quaternion and scale."""
    m = np.asarray(mat, dtype=np.float64).reshape(4, 4)
    position = m[:3, 3].copy()
    basis = m[:3, :3].copy()
    scale = np.linalg.norm(basis, axis=0)
    if np.linalg.det(basis) < 0.0:
        scale[0] = -scale[0]
    safe = np.where(np.abs(scale) > 1e-12, scale, 1.0)
    rotation = basis / safe.reshape(1, 3)
    return position, matrix3_to_quat(rotation), scale


def translation_matrix(offset: Sequence[float]) -> np.ndarray:
    mat = np.eye(4, dtype=np.float64)
    mat[:3, 3] = np.asarray(offset, dtype=np.float64).reshape(3)
    return mat


def scale_matrix(factors: Sequence[float]) -> np.ndarray:
    mat = np.eye(4, dtype=np.float64)
    mat[0, 0], mat[1, 1], mat[2, 2] = (float(v) for v in factors)
    return mat


def rotation_matrix(quaternion: Sequence[float]) -> np.ndarray:
    mat = np.eye(4, dtype=np.float64)
    mat[:3, :3] = quat_to_matrix3(quaternion)
    return mat


def axis_rotation_matrix(axis: str, degrees: float) -> np.ndarray:
    rad = math.radians(float(degrees))
    c, s = math.cos(rad), math.sin(rad)
    mat = np.eye(4, dtype=np.float64)
    if axis == "X":
        mat[1:3, 1:3] = [[c, -s], [s, c]]
    elif axis == "Y":
        mat[0, 0], mat[0, 2], mat[2, 0], mat[2, 2] = c, s, -s, c
    elif axis == "Z":
        mat[0:2, 0:2] = [[c, -s], [s, c]]
    else:
        raise ValueError(f"Unknown rotation axis: {axis}")
    return mat


def euler_rotation_matrix(order: str, degrees: Sequence[float]) -> np.ndarray:
    """Rotation for a USD ``rotateXYZ``-style op.

    ``rotateXYZ`` rotates about X first, then Y, then Z, so the column-vector
    matrix is ``Rz @ Ry @ Rx``.
    """
    angles = dict(zip("XYZ", (float(v) for v in degrees)))
    mat = np.eye(4, dtype=np.float64)
    for axis in order:
        mat = axis_rotation_matrix(axis, angles[axis]) @ mat
    return mat


def transform_points(mat: np.ndarray, points: np.ndarray) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return pts @ mat[:3, :3].T + mat[:3, 3]

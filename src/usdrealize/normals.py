"""Area-weighted vertex normals for indexed and de-indexed buffers."""

from __future__ import annotations

import numpy as np

_UP = np.array([0.0, 1.0, 0.0], dtype=np.float64)


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    out = np.asarray(vectors, dtype=np.float64).copy()
    lengths = np.linalg.norm(out, axis=1)
    good = lengths > 1e-20
    out[good] /= lengths[good, None]
    out[~good] = _UP
    return out


def face_normals(positions: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Unnormalised triangle normals (length = 2 * area)."""
    p = np.asarray(positions, dtype=np.float64)
    tri = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    return np.cross(p[tri[:, 1]] - p[tri[:, 0]], p[tri[:, 2]] - p[tri[:, 0]])


def compute_vertex_normals(positions: np.ndarray, index: np.ndarray) -> np.ndarray:
    """Smooth normals for a shared-vertex buffer."""
    tri = np.asarray(index, dtype=np.int64).reshape(-1, 3)
    accum = np.zeros((positions.shape[0], 3), dtype=np.float64)
    fn = face_normals(positions, tri)
    for corner in range(3):
        np.add.at(accum, tri[:, corner], fn)
    return _normalize_rows(accum).astype(np.float32)


def compute_flat_normals(positions: np.ndarray) -> np.ndarray:
    """One normal per triangle, repeated for its three unshared corners."""
    count = positions.shape[0] - positions.shape[0] % 3
    tri = np.arange(count, dtype=np.int64).reshape(-1, 3)
    fn = _normalize_rows(face_normals(positions, tri))
    return np.repeat(fn, 3, axis=0).astype(np.float32)


def compute_smooth_normals_deindexed(positions: np.ndarray, original_point_index: np.ndarray) -> np.ndarray:
    """Smooth normals for unshared corners, welded through their source points."""
    count = positions.shape[0] - positions.shape[0] % 3
    tri = np.arange(count, dtype=np.int64).reshape(-1, 3)
    fn = face_normals(positions, tri)
    orig = np.asarray(original_point_index, dtype=np.int64)[:count]
    size = int(orig.max()) + 1 if orig.size else 0
    accum = np.zeros((size, 3), dtype=np.float64)
    np.add.at(accum, orig, np.repeat(fn, 3, axis=0))
    smooth = _normalize_rows(accum)
    return smooth[orig].astype(np.float32)

"""Loop subdivision of shared-vertex triangle meshes.

Each input triangle becomes four consecutive output triangles per level, so
a contiguous triangle range per source face stays contiguous (it just grows
by 4**levels).  Extra per-vertex attributes are carried linearly: edge
vertices take the midpoint, original vertices keep their value.  Integer
attributes (such as original point ids) take the value of the edge's first
endpoint.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

LOG = logging.getLogger(__name__)


def _unique_edges(tri: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Return sorted unique edges and, per triangle, the id of edges (01, 12, 20)."""
    raw = np.stack(
        [tri[:, [0, 1]], tri[:, [1, 2]], tri[:, [2, 0]]],
        axis=1,
    ).reshape(-1, 2)
    sorted_edges = np.sort(raw, axis=1)
    edges, inverse = np.unique(sorted_edges, axis=0, return_inverse=True)
    return edges, inverse.reshape(-1, 3)


def _edge_opposites(tri: np.ndarray, edge_ids: np.ndarray, edge_count: int) -> Tuple[np.ndarray, np.ndarray]:
    """Opposite vertex per edge side; -1 where the edge has no second face."""
    opp = np.full((edge_count, 2), -1, dtype=np.int64)
    filled = np.zeros(edge_count, dtype=np.int64)
    opposite_corner = (2, 0, 1)
    for local in range(3):
        eids = edge_ids[:, local]
        verts = tri[:, opposite_corner[local]]
        for e, v in zip(eids.tolist(), verts.tolist()):
            slot = filled[e]
            if slot < 2:
                opp[e, slot] = v
            filled[e] = slot + 1
    return opp, filled


def loop_subdivide_once(
    positions: np.ndarray,
    index: np.ndarray,
    attributes: Optional[Dict[str, np.ndarray]] = None,
) -> Tuple[np.ndarray, np.ndarray, Dict[str, np.ndarray]]:
    pos = np.asarray(positions, dtype=np.float64)
    tri = np.asarray(index, dtype=np.int64).reshape(-1, 3)
    n_verts = pos.shape[0]
    edges, edge_ids = _unique_edges(tri)
    n_edges = edges.shape[0]
    opp, face_use = _edge_opposites(tri, edge_ids, n_edges)

    a = pos[edges[:, 0]]
    b = pos[edges[:, 1]]
    interior = (face_use == 2) & (opp[:, 1] >= 0)
    edge_points = 0.5 * (a + b)
    if np.any(interior):
        c = pos[opp[interior, 0]]
        d = pos[opp[interior, 1]]
        edge_points[interior] = 0.375 * (a[interior] + b[interior]) + 0.125 * (c + d)

    neighbor_sum = np.zeros_like(pos)
    valence = np.zeros(n_verts, dtype=np.int64)
    np.add.at(neighbor_sum, edges[:, 0], pos[edges[:, 1]])
    np.add.at(neighbor_sum, edges[:, 1], pos[edges[:, 0]])
    np.add.at(valence, edges[:, 0], 1)
    np.add.at(valence, edges[:, 1], 1)

    boundary_edges = edges[~interior]
    boundary_sum = np.zeros_like(pos)
    boundary_count = np.zeros(n_verts, dtype=np.int64)
    if boundary_edges.size:
        np.add.at(boundary_sum, boundary_edges[:, 0], pos[boundary_edges[:, 1]])
        np.add.at(boundary_sum, boundary_edges[:, 1], pos[boundary_edges[:, 0]])
        np.add.at(boundary_count, boundary_edges[:, 0], 1)
        np.add.at(boundary_count, boundary_edges[:, 1], 1)

    new_old = pos.copy()
    n = valence.astype(np.float64)
    beta = np.where(n > 3, 3.0 / (8.0 * np.maximum(n, 1.0)), 3.0 / 16.0)
    smooth = (valence > 0) & (boundary_count == 0)
    new_old[smooth] = (1.0 - n[smooth, None] * beta[smooth, None]) * pos[smooth] + beta[smooth, None] * neighbor_sum[smooth]
    on_boundary = boundary_count == 2
    new_old[on_boundary] = 0.75 * pos[on_boundary] + 0.125 * boundary_sum[on_boundary]

    new_positions = np.vstack([new_old, edge_points])
    e01 = n_verts + edge_ids[:, 0]
    e12 = n_verts + edge_ids[:, 1]
    e20 = n_verts + edge_ids[:, 2]
    v0, v1, v2 = tri[:, 0], tri[:, 1], tri[:, 2]
    new_tri = np.stack(
        [
            np.stack([v0, e01, e20], axis=1),
            np.stack([e01, v1, e12], axis=1),
            np.stack([e20, e12, v2], axis=1),
            np.stack([e01, e12, e20], axis=1),
        ],
        axis=1,
    ).reshape(-1, 3)

    new_attrs: Dict[str, np.ndarray] = {}
    for name, values in (attributes or {}).items():
        vals = np.asarray(values)
        if np.issubdtype(vals.dtype, np.integer):
            edge_vals = vals[edges[:, 0]]
        else:
            edge_vals = 0.5 * (vals[edges[:, 0]].astype(np.float64) + vals[edges[:, 1]].astype(np.float64))
            edge_vals = edge_vals.astype(vals.dtype)
        new_attrs[name] = np.concatenate([vals, edge_vals], axis=0)

    return new_positions, new_tri.reshape(-1), new_attrs


def loop_subdivide(
    positions: np.ndarray,
    index: np.ndarray,
    levels: int,
    attributes: Optional[Dict[str, np.ndarray]] = None,
) -> Tuple[np.ndarray, np.ndarray, Dict[str, np.ndarray]]:
    pos = np.asarray(positions, dtype=np.float64)
    idx = np.asarray(index, dtype=np.int64).reshape(-1)
    attrs = dict(attributes or {})
    for _ in range(max(0, int(levels))):
        pos, idx, attrs = loop_subdivide_once(pos, idx, attrs)
    LOG.debug("Loop subdivision x%d -> %d vertices, %d triangles", levels, pos.shape[0], idx.size // 3)
    return pos, idx, attrs

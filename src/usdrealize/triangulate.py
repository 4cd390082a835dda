"""Polygon triangulation for USD face lists.

Faces with more than three corners are projected onto the plane orthogonal
to the dominant axis of their Newell normal and ear-clipped.  Each emitted
triangle is re-oriented against the 3-D face normal, so the output winding
always follows the source face.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

LOG = logging.getLogger(__name__)

_EPS = 1e-12


@dataclass
class Triangulation:
    corners: np.ndarray  # (T, 3) indices into the flat face-corner array
    face_ids: np.ndarray  # (T,) source face of each triangle
    face_tri_start: np.ndarray  # (F,)
    face_tri_count: np.ndarray  # (F,)

    @property
    def triangle_count(self) -> int:
        return int(self.corners.shape[0])

    @property
    def face_count(self) -> int:
        return int(self.face_tri_start.size)


def newell_normal(points: np.ndarray) -> np.ndarray:
    """Summed edge cross products; stable for non-planar and concave faces."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    nxt = np.roll(pts, -1, axis=0)
    return np.array(
        [
            np.sum((pts[:, 1] - nxt[:, 1]) * (pts[:, 2] + nxt[:, 2])),
            np.sum((pts[:, 2] - nxt[:, 2]) * (pts[:, 0] + nxt[:, 0])),
            np.sum((pts[:, 0] - nxt[:, 0]) * (pts[:, 1] + nxt[:, 1])),
        ],
        dtype=np.float64,
    )


def project_to_plane(points: np.ndarray, normal: np.ndarray) -> np.ndarray:
    """Drop the dominant normal axis."""
    axis = int(np.argmax(np.abs(normal)))
    keep = [i for i in range(3) if i != axis]
    return np.asarray(points, dtype=np.float64)[:, keep]


def _signed_area_2d(poly: np.ndarray) -> float:
    x = poly[:, 0]
    y = poly[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def _cross_2d(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    return float((a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0]))


def _point_in_triangle(p: np.ndarray, a: np.ndarray, b: np.ndarray, c: np.ndarray) -> bool:
    d1 = _cross_2d(a, b, p)
    d2 = _cross_2d(b, c, p)
    d3 = _cross_2d(c, a, p)
    has_neg = d1 < -_EPS or d2 < -_EPS or d3 < -_EPS
    has_pos = d1 > _EPS or d2 > _EPS or d3 > _EPS
    return not (has_neg and has_pos)


def ear_clip(poly: np.ndarray) -> List[Tuple[int, int, int]]:
    """Ear-clip a simple 2-D polygon; returns ``[]`` when no ear can be found."""
    count = poly.shape[0]
    if count < 3:
        return []
    remaining = list(range(count))
    if _signed_area_2d(poly) < 0.0:
        remaining.reverse()

    triangles: List[Tuple[int, int, int]] = []
    guard = 0
    while len(remaining) > 3:
        clipped = False
        n = len(remaining)
        for i in range(n):
            ia, ib, ic = remaining[(i - 1) % n], remaining[i], remaining[(i + 1) % n]
            a, b, c = poly[ia], poly[ib], poly[ic]
            if _cross_2d(a, b, c) <= _EPS:
                continue
            blocked = False
            for j in remaining:
                if j in (ia, ib, ic):
                    continue
                p = poly[j]
                if (p == a).all() or (p == b).all() or (p == c).all():
                    continue
                if _point_in_triangle(p, a, b, c):
                    blocked = True
                    break
            if blocked:
                continue
            triangles.append((ia, ib, ic))
            del remaining[i]
            clipped = True
            break
        if not clipped:
            # Collinear runs leave no strictly convex ear; drop a flat vertex.
            for i in range(n):
                ia, ib, ic = remaining[(i - 1) % n], remaining[i], remaining[(i + 1) % n]
                if abs(_cross_2d(poly[ia], poly[ib], poly[ic])) <= _EPS:
                    triangles.append((ia, ib, ic))
                    del remaining[i]
                    clipped = True
                    break
        guard += 1
        if not clipped or guard > count * count:
            return []
    triangles.append((remaining[0], remaining[1], remaining[2]))
    return triangles


def fan(count: int) -> List[Tuple[int, int, int]]:
    return [(0, i, i + 1) for i in range(1, count - 1)]


def triangulate_polygon(points: np.ndarray) -> List[Tuple[int, int, int]]:
    """Local corner triples for one face, wound like the face itself."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    count = pts.shape[0]
    if count < 3:
        return []
    if count == 3:
        return [(0, 1, 2)]
    normal = newell_normal(pts)
    if float(np.linalg.norm(normal)) <= _EPS:
        return fan(count)
    tris = ear_clip(project_to_plane(pts, normal))
    if not tris:
        LOG.debug("Ear clipping produced no triangles for a %d-gon; using a fan", count)
        return fan(count)
    oriented: List[Tuple[int, int, int]] = []
    for a, b, c in tris:
        tri_normal = np.cross(pts[b] - pts[a], pts[c] - pts[a])
        if float(np.dot(tri_normal, normal)) < 0.0:
            oriented.append((a, c, b))
        else:
            oriented.append((a, b, c))
    return oriented


def triangulate_faces(
    points: np.ndarray,
    face_vertex_counts: Sequence[int],
    face_vertex_indices: np.ndarray,
) -> Triangulation:
    """Triangulate every face; returns corner triples and the face→triangle map."""
    counts = np.asarray(face_vertex_counts, dtype=np.int64).reshape(-1)
    indices = np.asarray(face_vertex_indices, dtype=np.int64).reshape(-1)
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    face_count = counts.size
    offsets = np.zeros(face_count, dtype=np.int64)
    if face_count > 1:
        offsets[1:] = np.cumsum(counts)[:-1]

    if face_count and np.all(counts == 3):
        corners = np.arange(face_count * 3, dtype=np.int64).reshape(-1, 3)
        return Triangulation(
            corners=corners,
            face_ids=np.arange(face_count, dtype=np.int64),
            face_tri_start=np.arange(face_count, dtype=np.int64),
            face_tri_count=np.ones(face_count, dtype=np.int64),
        )

    tri_list: List[Tuple[int, int, int]] = []
    face_list: List[int] = []
    starts = np.zeros(face_count, dtype=np.int64)
    tri_counts = np.zeros(face_count, dtype=np.int64)
    for face, (offset, count) in enumerate(zip(offsets.tolist(), counts.tolist())):
        starts[face] = len(tri_list)
        if count < 3:
            continue
        if count == 3:
            local = [(0, 1, 2)]
        else:
            local = triangulate_polygon(pts[indices[offset : offset + count]])
        for a, b, c in local:
            tri_list.append((offset + a, offset + b, offset + c))
            face_list.append(face)
        tri_counts[face] = len(local)

    corners = np.asarray(tri_list, dtype=np.int64).reshape(-1, 3)
    return Triangulation(
        corners=corners,
        face_ids=np.asarray(face_list, dtype=np.int64),
        face_tri_start=starts,
        face_tri_count=tri_counts,
    )


def estimated_triangle_count(face_vertex_counts: Optional[Sequence[int]]) -> int:
    if face_vertex_counts is None:
        return 0
    counts = np.asarray(face_vertex_counts, dtype=np.int64).reshape(-1)
    return int(np.sum(np.maximum(counts - 2, 0)))

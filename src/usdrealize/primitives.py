"""Tessellation of the analytic gprims (Cube, Sphere, Cylinder, Cone, Capsule).

Shapes are generated around the +Y axis and rotated onto the authored
``axis`` afterwards.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .normals import compute_vertex_normals
from .prims import Prim
from .scene import BufferGeometry
from .time_eval import as_float, as_token, get_prop_at_time
from .utils.matrix_utils import axis_rotation_matrix, transform_points

LOG = logging.getLogger(__name__)

GPRIM_TYPES = ("Cube", "Sphere", "Cylinder", "Cone", "Capsule")
DEFAULT_AXIS = "Z"


# ---------------- Assembly ----------------

def _finish(
    positions: np.ndarray,
    triangles: np.ndarray,
    normals: Optional[np.ndarray] = None,
    uvs: Optional[np.ndarray] = None,
) -> BufferGeometry:
    """Orient triangles away from the origin, drop degenerate ones, pack buffers.

    Every shape here is convex and contains the origin, so the centroid
    direction is the outward direction.
    """
    tri = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    a, b, c = positions[tri[:, 0]], positions[tri[:, 1]], positions[tri[:, 2]]
    cross = np.cross(b - a, c - a)
    area2 = np.linalg.norm(cross, axis=1)
    tri = tri[area2 > 1e-12]
    cross = cross[area2 > 1e-12]
    centroid = (positions[tri[:, 0]] + positions[tri[:, 1]] + positions[tri[:, 2]]) / 3.0
    inward = np.einsum("ij,ij->i", cross, centroid) < 0.0
    tri[inward] = tri[inward][:, [0, 2, 1]]

    geometry = BufferGeometry()
    geometry.set_attribute("position", positions.astype(np.float32))
    geometry.index = tri.reshape(-1).astype(np.int32)
    if normals is None:
        normals = compute_vertex_normals(geometry.attributes["position"], geometry.index)
    geometry.set_attribute("normal", np.asarray(normals, dtype=np.float32))
    if uvs is not None:
        geometry.set_attribute("uv", np.asarray(uvs, dtype=np.float32))
    count = tri.shape[0]
    geometry.user_data["face_tri_start"] = np.arange(count, dtype=np.int32)
    geometry.user_data["face_tri_count"] = np.ones(count, dtype=np.int32)
    geometry.user_data["triangle_count"] = count
    geometry.user_data["face_count"] = count
    return geometry


def _grid_triangles(rows: int, cols: int) -> np.ndarray:
    """Two triangles per cell of a ``rows x cols`` vertex grid (row-major)."""
    r, c = np.meshgrid(np.arange(rows - 1), np.arange(cols - 1), indexing="ij")
    a = (r * cols + c).reshape(-1)
    b = ((r + 1) * cols + c).reshape(-1)
    d = (r * cols + c + 1).reshape(-1)
    e = ((r + 1) * cols + c + 1).reshape(-1)
    return np.concatenate([np.stack([a, b, d], axis=1), np.stack([b, e, d], axis=1)])


# ---------------- Generators ----------------

def box_geometry(width: float, height: Optional[float] = None, depth: Optional[float] = None) -> BufferGeometry:
    height = width if height is None else height
    depth = width if depth is None else depth
    half = np.array([width, height, depth], dtype=np.float64) / 2.0
    positions: List[np.ndarray] = []
    normals: List[np.ndarray] = []
    uvs: List[np.ndarray] = []
    triangles: List[Tuple[int, int, int]] = []
    corner_uv = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
    for axis in range(3):
        u_axis, v_axis = [i for i in range(3) if i != axis]
        for sign in (1.0, -1.0):
            base = len(positions)
            normal = np.zeros(3)
            normal[axis] = sign
            for cu, cv in ((-1, -1), (1, -1), (1, 1), (-1, 1)):
                p = np.zeros(3)
                p[axis] = sign * half[axis]
                p[u_axis] = cu * half[u_axis]
                p[v_axis] = cv * half[v_axis]
                positions.append(p)
                normals.append(normal)
            uvs.extend(corner_uv)
            triangles.extend([(base, base + 1, base + 2), (base, base + 2, base + 3)])
    return _finish(np.array(positions), np.array(triangles), np.array(normals), np.array(uvs))


def box_from_bounds(lo: Sequence[float], hi: Sequence[float]) -> BufferGeometry:
    """Axis-aligned box covering ``[lo, hi]``; used as a stand-in for unusable meshes."""
    lo_arr = np.asarray(lo, dtype=np.float64)
    hi_arr = np.asarray(hi, dtype=np.float64)
    size = np.maximum(hi_arr - lo_arr, 1e-6)
    geometry = box_geometry(float(size[0]), float(size[1]), float(size[2]))
    center = ((lo_arr + hi_arr) / 2.0).astype(np.float32)
    geometry.set_attribute("position", geometry.attributes["position"] + center)
    geometry.user_data["bounds_stand_in"] = True
    return geometry


def sphere_geometry(radius: float = 1.0, width_segments: int = 24, height_segments: int = 16) -> BufferGeometry:
    u = np.linspace(0.0, 1.0, width_segments + 1)
    v = np.linspace(0.0, 1.0, height_segments + 1)
    vv, uu = np.meshgrid(v, u, indexing="ij")
    phi = uu * 2.0 * math.pi
    theta = vv * math.pi
    unit = np.stack(
        [-np.cos(phi) * np.sin(theta), np.cos(theta), np.sin(phi) * np.sin(theta)],
        axis=-1,
    ).reshape(-1, 3)
    uvs = np.stack([uu, 1.0 - vv], axis=-1).reshape(-1, 2)
    triangles = _grid_triangles(height_segments + 1, width_segments + 1)
    return _finish(unit * radius, triangles, unit, uvs)


def cylinder_geometry(
    radius_top: float,
    radius_bottom: float,
    height: float,
    radial_segments: int = 24,
) -> BufferGeometry:
    half = height / 2.0
    theta = np.linspace(0.0, 2.0 * math.pi, radial_segments + 1)
    ring = np.stack([np.sin(theta), np.zeros_like(theta), np.cos(theta)], axis=1)
    slope = (radius_bottom - radius_top) / height if height > 0.0 else 0.0

    top = ring * radius_top + np.array([0.0, half, 0.0])
    bottom = ring * radius_bottom + np.array([0.0, -half, 0.0])
    side_normal = ring + np.array([0.0, slope, 0.0])
    side_normal /= np.linalg.norm(side_normal, axis=1, keepdims=True)

    positions = [top, bottom]
    normals = [side_normal, side_normal]
    triangles = [_grid_triangles(2, radial_segments + 1)]
    offset = 2 * (radial_segments + 1)
    for radius, y, ny in ((radius_top, half, 1.0), (radius_bottom, -half, -1.0)):
        if radius <= 0.0:
            continue
        cap = np.vstack([[0.0, y, 0.0], ring * radius + np.array([0.0, y, 0.0])])
        positions.append(cap)
        normals.append(np.tile([0.0, ny, 0.0], (cap.shape[0], 1)))
        idx = np.arange(radial_segments)
        triangles.append(np.stack([np.full_like(idx, offset), offset + 1 + idx, offset + 2 + idx], axis=1))
        offset += cap.shape[0]
    return _finish(np.vstack(positions), np.vstack(triangles), np.vstack(normals))


def cone_geometry(radius: float, height: float, radial_segments: int = 24) -> BufferGeometry:
    return cylinder_geometry(0.0, radius, height, radial_segments)


def capsule_geometry(radius: float, length: float, cap_segments: int = 8, radial_segments: int = 16) -> BufferGeometry:
    """Cylinder of ``length`` closed by two hemispheres of ``radius``."""
    half = length / 2.0
    arc = np.linspace(0.0, math.pi / 2.0, cap_segments + 1)
    bottom = [(radius * math.sin(a), -half - radius * math.cos(a)) for a in arc]
    top = [(radius * math.cos(a), half + radius * math.sin(a)) for a in arc]
    profile = np.array(bottom + top)
    theta = np.linspace(0.0, 2.0 * math.pi, radial_segments + 1)
    rho = profile[:, 0][:, None]
    y = profile[:, 1][:, None]
    positions = np.stack(
        [rho * np.sin(theta)[None, :], np.broadcast_to(y, (profile.shape[0], theta.size)), rho * np.cos(theta)[None, :]],
        axis=-1,
    ).reshape(-1, 3)
    triangles = _grid_triangles(profile.shape[0], theta.size)
    return _finish(positions, triangles)


# ---------------- Gprim prims ----------------

def axis_matrix(axis: Optional[str]) -> np.ndarray:
    """Rotation taking the generators' +Y axis onto ``axis``."""
    if axis == "X":
        return axis_rotation_matrix("Z", -90.0)
    if axis == "Z":
        return axis_rotation_matrix("X", 90.0)
    return np.eye(4, dtype=np.float64)


def _apply_axis(geometry: BufferGeometry, axis: Optional[str]) -> None:
    if axis not in ("X", "Z"):
        return
    mat = axis_matrix(axis)
    geometry.set_attribute("position", transform_points(mat, geometry.attributes["position"]).astype(np.float32))
    normals = geometry.get_attribute("normal")
    if normals is not None:
        geometry.set_attribute("normal", (normals.astype(np.float64) @ mat[:3, :3].T).astype(np.float32))


def _size(prim: Prim, name: str, default: float, time: Optional[float]) -> float:
    value = as_float(get_prop_at_time(prim, name, time))
    return default if value is None else value


def build_gprim_geometry(prim: Prim, *, time: Optional[float] = None, logger: Optional[logging.Logger] = None) -> Optional[BufferGeometry]:
    log = logger or LOG
    kind = prim.type_name
    if kind == "Sphere":
        geometry = sphere_geometry(_size(prim, "radius", 1.0, time), 24, 16)
    elif kind == "Cube":
        geometry = box_geometry(_size(prim, "size", 1.0, time))
    elif kind == "Cylinder":
        radius = _size(prim, "radius", 1.0, time)
        geometry = cylinder_geometry(radius, radius, _size(prim, "height", 2.0, time), 24)
    elif kind == "Cone":
        geometry = cone_geometry(_size(prim, "radius", 1.0, time), _size(prim, "height", 2.0, time), 24)
    elif kind == "Capsule":
        geometry = capsule_geometry(_size(prim, "radius", 0.5, time), _size(prim, "height", 1.0, time), 8, 16)
    else:
        return None
    if geometry.triangle_count == 0:
        log.debug("%s %s has zero size; skipping.", kind, prim.path)
        return None
    if kind in ("Cylinder", "Cone", "Capsule"):
        _apply_axis(geometry, as_token(get_prop_at_time(prim, "axis", time)) or DEFAULT_AXIS)
    return geometry

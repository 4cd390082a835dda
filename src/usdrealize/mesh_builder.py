"""Turn ``UsdGeom.Mesh`` data into render buffers.

Two output layouts are produced:

* indexed: shared vertices plus a triangle index buffer.  Used whenever all
  primvars are ``constant`` or ``vertex`` so smooth shading and subdivision
  are possible.
* de-indexed: one vertex per triangle corner.  Required for ``uniform`` and
  ``faceVarying`` primvars and for flat normals.

Both layouts record the same face→triangle-range map in ``user_data``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config.realize_config import RealizeConfig
from .normals import compute_flat_normals, compute_smooth_normals_deindexed, compute_vertex_normals
from .prims import Prim
from .primvars import (
    COLOR_PRIMVAR_NAMES,
    NORMAL_PRIMVAR_NAMES,
    UV_PRIMVAR_NAMES,
    MeshTopologyCounts,
    Primvar,
    element_ids,
    read_first_primvar,
)
from .scene import BufferGeometry
from .subdivision import loop_subdivide
from .time_eval import as_array, as_bool, as_float, as_token, get_prop, get_prop_at_time
from .triangulate import estimated_triangle_count, triangulate_faces

LOG = logging.getLogger(__name__)

SUBDIVISION_SCHEMES = ("catmullClark", "loop")


@dataclass
class MeshBuildResult:
    geometry: BufferGeometry
    deindexed: bool
    subdivided: bool
    normals_authored: bool
    left_handed: bool
    color_interpolation: Optional[str] = None

    @property
    def has_vertex_colors(self) -> bool:
        return self.geometry.has_attribute("color")


@dataclass
class MeshTopology:
    points: np.ndarray
    face_vertex_counts: np.ndarray
    face_vertex_indices: np.ndarray

    @property
    def counts(self) -> MeshTopologyCounts:
        return MeshTopologyCounts(
            points=int(self.points.shape[0]),
            corners=int(self.face_vertex_indices.size),
            faces=int(self.face_vertex_counts.size),
        )


# ---------------- Topology ----------------

def read_mesh_topology(prim: Prim, time: Optional[float] = None, *, logger: Optional[logging.Logger] = None) -> Optional[MeshTopology]:
    log = logger or LOG
    points = as_array(get_prop_at_time(prim, "points", time), width=3)
    counts = as_array(get_prop_at_time(prim, "faceVertexCounts", time), width=1, dtype=np.int64)
    indices = as_array(get_prop_at_time(prim, "faceVertexIndices", time), width=1, dtype=np.int64)
    if points is None or counts is None or indices is None:
        log.debug("Mesh %s is missing points/faceVertexCounts/faceVertexIndices; skipping.", prim.path)
        return None
    if np.any(counts < 0) or int(counts.sum()) != indices.size:
        log.debug("Mesh %s face counts do not match %d face-vertex indices; skipping.", prim.path, indices.size)
        return None
    if indices.min() < 0 or indices.max() >= points.shape[0]:
        log.debug("Mesh %s has face-vertex indices outside %d points; skipping.", prim.path, points.shape[0])
        return None
    return MeshTopology(points=points, face_vertex_counts=counts, face_vertex_indices=indices)


def compute_points_bounds(points) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    pts = as_array(points, width=3)
    if pts is None:
        return None
    finite = pts[np.all(np.isfinite(pts), axis=1)]
    if finite.size == 0:
        return None
    return finite.min(axis=0), finite.max(axis=0)


def extent_is_empty(prim: Prim) -> bool:
    """True when an authored ``extent`` is zero-sized or inverted."""
    extent = as_array(get_prop(prim, "extent"), width=3)
    if extent is None or extent.shape[0] < 2:
        return False
    lo, hi = extent[0], extent[1]
    if np.any(lo > hi):
        return True
    return bool(np.all(lo == 0.0) and np.all(hi == 0.0))


# ---------------- Winding ----------------

def flip_winding(geometry: BufferGeometry, recompute_normals: bool, smooth_normals: bool = True) -> None:
    """Reverse triangle orientation in place.

    Indexed buffers swap the second and third index of each triangle;
    de-indexed buffers swap the matching corner vertices of every attribute.
    """
    if geometry.index is not None:
        tri = geometry.index.reshape(-1, 3).copy()
        tri[:, [1, 2]] = tri[:, [2, 1]]
        geometry.index = tri.reshape(-1)
        if recompute_normals:
            geometry.set_attribute("normal", compute_vertex_normals(geometry.attributes["position"], geometry.index))
        return

    count = geometry.vertex_count - geometry.vertex_count % 3
    for name, values in list(geometry.attributes.items()):
        if name == "normal" and recompute_normals:
            continue
        swapped = values.copy()
        corners = swapped[:count].reshape(count // 3, 3, *values.shape[1:])
        corners[:, [1, 2]] = corners[:, [2, 1]]
        geometry.attributes[name] = swapped
    if recompute_normals:
        positions = geometry.attributes["position"]
        orig = geometry.get_attribute("original_point_index")
        if smooth_normals and orig is not None:
            geometry.set_attribute("normal", compute_smooth_normals_deindexed(positions, orig))
        else:
            geometry.set_attribute("normal", compute_flat_normals(positions))


# ---------------- Builders ----------------

def _set_face_map(geometry: BufferGeometry, starts: np.ndarray, counts: np.ndarray) -> None:
    geometry.user_data["face_tri_start"] = starts.astype(np.int32)
    geometry.user_data["face_tri_count"] = counts.astype(np.int32)
    geometry.user_data["triangle_count"] = int(geometry.triangle_count)
    geometry.user_data["face_count"] = int(starts.size)


def _build_deindexed(
    topology: MeshTopology,
    triangulation,
    uv: Optional[Primvar],
    color: Optional[Primvar],
    normals: Optional[Primvar],
    want_flat: bool,
) -> BufferGeometry:
    geometry = BufferGeometry()
    corner_ids = triangulation.corners.reshape(-1)
    point_ids = topology.face_vertex_indices[corner_ids]
    face_ids = np.repeat(triangulation.face_ids, 3)
    domain_ids = dict(point_ids=point_ids, face_ids=face_ids, corner_ids=corner_ids)

    positions = topology.points[point_ids].astype(np.float32)
    geometry.set_attribute("position", positions)
    geometry.set_attribute("original_point_index", point_ids.astype(np.int32))
    if uv is not None:
        uv_values = uv.lookup(element_ids(uv.interpolation, **domain_ids)).astype(np.float32)
        geometry.set_attribute("uv", uv_values)
        geometry.set_attribute("uv2", uv_values.copy())
    if color is not None:
        geometry.set_attribute("color", color.lookup(element_ids(color.interpolation, **domain_ids)).astype(np.float32))
    if normals is not None:
        geometry.set_attribute("normal", normals.lookup(element_ids(normals.interpolation, **domain_ids)).astype(np.float32))
    elif want_flat:
        geometry.set_attribute("normal", compute_flat_normals(positions))
    else:
        geometry.set_attribute("normal", compute_smooth_normals_deindexed(positions, point_ids))
    _set_face_map(geometry, triangulation.face_tri_start, triangulation.face_tri_count)
    return geometry


def _build_indexed(
    topology: MeshTopology,
    triangulation,
    uv: Optional[Primvar],
    color: Optional[Primvar],
    normals: Optional[Primvar],
    subdivision_levels: int,
) -> BufferGeometry:
    geometry = BufferGeometry()
    n_points = topology.points.shape[0]
    per_point = np.arange(n_points, dtype=np.int64)
    domain_ids = dict(point_ids=per_point, face_ids=per_point, corner_ids=per_point)

    attrs = {"original_point_index": per_point.astype(np.int32)}
    if uv is not None:
        uv_values = uv.lookup(element_ids(uv.interpolation, **domain_ids)).astype(np.float32)
        attrs["uv"] = uv_values
        attrs["uv2"] = uv_values.copy()
    if color is not None:
        attrs["color"] = color.lookup(element_ids(color.interpolation, **domain_ids)).astype(np.float32)

    positions = topology.points.astype(np.float64)
    index = topology.face_vertex_indices[triangulation.corners].reshape(-1)
    starts = triangulation.face_tri_start
    counts = triangulation.face_tri_count
    if subdivision_levels > 0:
        positions, index, attrs = loop_subdivide(positions, index, subdivision_levels, attrs)
        factor = 4 ** subdivision_levels
        starts = starts * factor
        counts = counts * factor

    geometry.set_attribute("position", positions.astype(np.float32))
    geometry.index = index.astype(np.int32)
    for name, values in attrs.items():
        geometry.set_attribute(name, values)
    if normals is not None and subdivision_levels == 0:
        geometry.set_attribute("normal", normals.lookup(per_point).astype(np.float32))
    else:
        geometry.set_attribute("normal", compute_vertex_normals(geometry.attributes["position"], geometry.index))
    _set_face_map(geometry, starts, counts)
    return geometry


def build_mesh_geometry(
    prim: Prim,
    *,
    time: Optional[float] = None,
    config: Optional[RealizeConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[MeshBuildResult]:
    """Build render geometry for ``prim`` or return ``None`` (logged) when unusable."""
    log = logger or LOG
    cfg = config or RealizeConfig()
    topology = read_mesh_topology(prim, time, logger=log)
    if topology is None:
        return None

    if topology.points.shape[0] > cfg.max_vertices:
        log.warning("Mesh %s has %d vertices (limit %d); skipping.", prim.path, topology.points.shape[0], cfg.max_vertices)
        return None
    est_tris = estimated_triangle_count(topology.face_vertex_counts)
    if est_tris > cfg.max_triangles:
        log.warning("Mesh %s has %d triangles (limit %d); skipping.", prim.path, est_tris, cfg.max_triangles)
        return None

    counts = topology.counts
    uv = read_first_primvar(prim, UV_PRIMVAR_NAMES, counts, width=2, time=time)
    color = read_first_primvar(prim, COLOR_PRIMVAR_NAMES, counts, width=3, time=time)
    normals = read_first_primvar(prim, NORMAL_PRIMVAR_NAMES, counts, width=3, time=time)

    scheme = as_token(get_prop(prim, "subdivisionScheme")) or "catmullClark"
    level = int(as_float(get_prop(prim, "refinementLevel"), 0.0) or 0)
    refine = as_bool(get_prop(prim, "refinementEnableOverride"), False)
    left_handed = as_token(get_prop(prim, "orientation")) == "leftHanded"

    want_flat = scheme == "none" and normals is None
    deindex = want_flat or any(pv is not None and pv.per_face_or_corner for pv in (uv, color, normals))
    subdivide = (
        cfg.enable_subdivision
        and refine
        and level > 0
        and scheme in SUBDIVISION_SCHEMES
        and not deindex
    )

    triangulation = triangulate_faces(topology.points, topology.face_vertex_counts, topology.face_vertex_indices)
    if triangulation.triangle_count == 0:
        log.debug("Mesh %s produced no triangles; skipping.", prim.path)
        return None

    if deindex:
        geometry = _build_deindexed(topology, triangulation, uv, color, normals, want_flat)
    else:
        levels = min(level, cfg.max_subdivision_level) if subdivide else 0
        if subdivide and est_tris * (4 ** levels) > cfg.max_triangles:
            log.debug("Subdivision of %s would exceed the triangle limit; rendering the cage.", prim.path)
            levels = 0
        geometry = _build_indexed(topology, triangulation, uv, color, normals, levels)
        subdivide = levels > 0

    normals_authored = normals is not None and not subdivide
    if left_handed:
        flip_winding(geometry, recompute_normals=not normals_authored, smooth_normals=not want_flat)

    geometry.user_data["deindexed"] = bool(deindex)
    geometry.user_data["subdivided"] = bool(subdivide)
    geometry.user_data["normals_authored"] = bool(normals_authored)
    geometry.user_data["flat_normals"] = bool(want_flat)
    return MeshBuildResult(
        geometry=geometry,
        deindexed=deindex,
        subdivided=subdivide,
        normals_authored=normals_authored,
        left_handed=left_handed,
        color_interpolation=color.interpolation if color is not None else None,
    )


def update_geometry_points(geometry: BufferGeometry, points) -> bool:
    """Write re-sampled ``points`` into a built geometry; False if layouts differ."""
    pts = as_array(points, width=3)
    if pts is None or geometry.user_data.get("subdivided"):
        return False
    orig = geometry.get_attribute("original_point_index")
    if geometry.index is None and orig is not None:
        if orig.size and int(orig.max()) >= pts.shape[0]:
            return False
        positions = pts[orig].astype(np.float32)
    elif pts.shape[0] == geometry.vertex_count:
        positions = pts.astype(np.float32)
    else:
        return False
    geometry.set_attribute("position", positions)
    if not geometry.user_data.get("normals_authored") and geometry.has_attribute("normal"):
        if geometry.index is not None:
            geometry.set_attribute("normal", compute_vertex_normals(positions, geometry.index))
        elif geometry.user_data.get("flat_normals") or orig is None:
            geometry.set_attribute("normal", compute_flat_normals(positions))
        else:
            geometry.set_attribute("normal", compute_smooth_normals_deindexed(positions, orig))
    return True

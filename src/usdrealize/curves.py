"""``BasisCurves`` and ``Points`` prims.

Curves are flattened into a single :class:`LineSegments` node per prim
(vertex pairs, one pair per drawn segment).  Point clouds keep one vertex per
authored point.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from .materials import constant_display_color
from .prims import Prim
from .scene import BufferGeometry, Color, LineSegments, MaterialDescriptor, Points, hex_color
from .time_eval import as_array, as_int_list, as_token, get_prop_at_time

LOG = logging.getLogger(__name__)

CURVE_COLOR = 0xFF9F4A
BEZIER_STEPS = 24
CATMULL_ROM_STEPS = 8
DEFAULT_POINT_SIZE = 2.0


# ---------------- Sampling ----------------

def sample_bezier(control: np.ndarray, steps: int = BEZIER_STEPS) -> np.ndarray:
    """Polyline through piecewise cubic Bezier segments (4 points, then 3 per segment)."""
    t = np.linspace(0.0, 1.0, steps + 1)[:, None]
    basis = np.hstack([(1 - t) ** 3, 3 * t * (1 - t) ** 2, 3 * t ** 2 * (1 - t), t ** 3])
    out: List[np.ndarray] = []
    for i in range(0, control.shape[0] - 3, 3):
        seg = basis @ control[i : i + 4]
        out.append(seg if not out else seg[1:])
    if not out:
        return control.copy()
    return np.vstack(out)


def _catmull_rom_segment(p0, p1, p2, p3, steps: int) -> np.ndarray:
    """Centripetal Catmull-Rom between ``p1`` and ``p2``."""

    def knot(ti: float, a: np.ndarray, b: np.ndarray) -> float:
        return ti + max(float(np.linalg.norm(b - a)) ** 0.5, 1e-6)

    t0 = 0.0
    t1 = knot(t0, p0, p1)
    t2 = knot(t1, p1, p2)
    t3 = knot(t2, p2, p3)
    t = np.linspace(t1, t2, steps + 1)[:, None]
    a1 = (t1 - t) / (t1 - t0) * p0 + (t - t0) / (t1 - t0) * p1
    a2 = (t2 - t) / (t2 - t1) * p1 + (t - t1) / (t2 - t1) * p2
    a3 = (t3 - t) / (t3 - t2) * p2 + (t - t2) / (t3 - t2) * p3
    b1 = (t2 - t) / (t2 - t0) * a1 + (t - t0) / (t2 - t0) * a2
    b2 = (t3 - t) / (t3 - t1) * a2 + (t - t1) / (t3 - t1) * a3
    return (t2 - t) / (t2 - t1) * b1 + (t - t1) / (t2 - t1) * b2


def sample_catmull_rom(pts: np.ndarray, closed: bool, steps: int = CATMULL_ROM_STEPS) -> np.ndarray:
    n = pts.shape[0]
    if n < 2:
        return pts.copy()
    seg_count = n if closed else n - 1
    out: List[np.ndarray] = []
    for i in range(seg_count):
        if closed:
            p0, p1, p2, p3 = pts[(i - 1) % n], pts[i], pts[(i + 1) % n], pts[(i + 2) % n]
        else:
            p1, p2 = pts[i], pts[i + 1]
            p0 = pts[i - 1] if i > 0 else 2 * p1 - p2
            p3 = pts[i + 2] if i + 2 < n else 2 * p2 - p1
        seg = _catmull_rom_segment(p0, p1, p2, p3, steps)
        out.append(seg if not out else seg[1:])
    return np.vstack(out)


def polyline_segments(polyline: np.ndarray, closed: bool = False) -> np.ndarray:
    """Vertex pairs for consecutive polyline points, ``(2 * S, 3)``."""
    if polyline.shape[0] < 2:
        return np.zeros((0, 3), dtype=np.float64)
    starts = polyline[:-1]
    ends = polyline[1:]
    if closed and polyline.shape[0] > 2 and not np.allclose(polyline[0], polyline[-1]):
        starts = np.vstack([starts, polyline[-1:]])
        ends = np.vstack([ends, polyline[:1]])
    return np.stack([starts, ends], axis=1).reshape(-1, 3)


# ---------------- BasisCurves ----------------

def curve_width(widths: Optional[np.ndarray], interpolation: Optional[str], curve_index: int) -> float:
    """One representative width per curve; varying widths use the curve's start/end pair."""
    if widths is None or widths.size == 0:
        return 0.0
    flat = widths.reshape(-1)
    if interpolation == "varying":
        a = flat[curve_index * 2] if curve_index * 2 < flat.size else flat[min(curve_index, flat.size - 1)]
        b = flat[curve_index * 2 + 1] if curve_index * 2 + 1 < flat.size else 0.0
        return float(max(a, b))
    return float(flat[0])


def _line_color(prim: Prim, material: Optional[MaterialDescriptor]) -> Color:
    if material is not None:
        return material.color
    return constant_display_color(prim) or hex_color(CURVE_COLOR)


def build_curves(
    prim: Prim,
    *,
    material: Optional[MaterialDescriptor] = None,
    time: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[LineSegments]:
    log = logger or LOG
    points = as_array(get_prop_at_time(prim, "points", time), width=3)
    counts = as_int_list(get_prop_at_time(prim, "curveVertexCounts", time))
    if points is None or points.shape[0] < 1 or not counts:
        log.warning("BasisCurves %s is missing points or curveVertexCounts; skipping.", prim.path)
        return None

    curve_type = as_token(get_prop_at_time(prim, "type", None)) or "linear"
    basis = as_token(get_prop_at_time(prim, "basis", None)) or "bezier"
    closed = as_token(get_prop_at_time(prim, "wrap", None)) == "periodic"
    widths = as_array(get_prop_at_time(prim, "widths", time))
    widths_prop = prim.get("widths")
    widths_interp = widths_prop.interpolation if widths_prop is not None else None

    chunks: List[np.ndarray] = []
    max_width = 0.0
    cursor = 0
    for curve_index, n in enumerate(counts):
        n = max(0, int(n))
        pts = points[cursor : cursor + n]
        cursor += n
        if pts.shape[0] < 2:
            continue
        max_width = max(max_width, curve_width(widths, widths_interp, curve_index))
        if curve_type == "cubic" and basis == "bezier":
            ctrl = np.vstack([pts, pts[:1]]) if closed else pts
            polyline = sample_bezier(ctrl)
            chunks.append(polyline_segments(polyline))
        elif curve_type == "cubic":
            chunks.append(polyline_segments(sample_catmull_rom(pts, closed)))
        else:
            chunks.append(polyline_segments(pts, closed))
        if cursor >= points.shape[0]:
            break
    if cursor < sum(max(0, int(c)) for c in counts):
        log.debug("BasisCurves %s: curveVertexCounts exceed %d points", prim.path, points.shape[0])

    segments = np.vstack(chunks) if chunks else np.zeros((0, 3))
    if segments.shape[0] == 0:
        log.warning("BasisCurves %s produced no segments; skipping.", prim.path)
        return None

    geometry = BufferGeometry()
    geometry.set_attribute("position", segments.astype(np.float32))
    geometry.user_data.update(curve_type=curve_type, basis=basis, closed=closed, curve_count=len(counts))
    line_material = MaterialDescriptor(
        name=f"{prim.path}/line",
        shader_family="line",
        color=_line_color(prim, material),
    )
    lines = LineSegments(geometry, line_material, prim.path)
    lines.line_width = max(1.0, max_width)
    return lines


# ---------------- Points ----------------

def build_points(
    prim: Prim,
    *,
    time: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[Points]:
    log = logger or LOG
    points = as_array(get_prop_at_time(prim, "points", time), width=3)
    if points is None or points.shape[0] == 0:
        log.warning("Points %s is missing points; skipping.", prim.path)
        return None
    count = points.shape[0]

    geometry = BufferGeometry()
    geometry.set_attribute("position", points.astype(np.float32))
    colors = as_array(get_prop_at_time(prim, "primvars:displayColor", time), width=3)
    has_colors = colors is not None and colors.shape[0] >= count
    if has_colors:
        geometry.set_attribute("color", colors[:count].astype(np.float32))

    size = DEFAULT_POINT_SIZE
    widths = as_array(get_prop_at_time(prim, "widths", time))
    if widths is not None and widths.size > 0:
        flat = widths.reshape(-1)
        if flat.size >= count and np.unique(flat[:count]).size > 1:
            # widths are diameters; renderer point sizes read as radii
            geometry.set_attribute("size", (flat[:count] * 2.0).astype(np.float32))
        size = float(flat[0]) * 2.0

    material = MaterialDescriptor(
        name=f"{prim.path}/points",
        shader_family="points",
        color=(1.0, 1.0, 1.0) if has_colors else hex_color(CURVE_COLOR),
        vertex_colors=has_colors,
        alpha_test=0.5,
        transparent=True,
    )
    return Points(geometry, material, size, prim.path)

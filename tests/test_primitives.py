import numpy as np
import pytest

from usdrealize.prims import define_prim
from usdrealize.primitives import (
    box_from_bounds,
    box_geometry,
    build_gprim_geometry,
    capsule_geometry,
    sphere_geometry,
)


def _outward(geometry):
    pos = geometry.attributes["position"].astype(np.float64)
    tri = geometry.triangles()
    a, b, c = pos[tri[:, 0]], pos[tri[:, 1]], pos[tri[:, 2]]
    normal = np.cross(b - a, c - a)
    centroid = (a + b + c) / 3.0
    return np.einsum("ij,ij->i", normal, centroid) > 0.0


def test_box_has_outward_quads():
    geometry = box_geometry(2.0)
    assert geometry.vertex_count == 24
    assert geometry.triangle_count == 12
    assert _outward(geometry).all()
    lo, hi = geometry.bounding_box()
    np.testing.assert_allclose(lo, [-1, -1, -1])
    np.testing.assert_allclose(hi, [1, 1, 1])
    assert geometry.user_data["face_count"] == 12


def test_sphere_radius():
    geometry = sphere_geometry(3.0)
    radii = np.linalg.norm(geometry.attributes["position"], axis=1)
    np.testing.assert_allclose(radii, 3.0, rtol=1e-5)
    assert _outward(geometry).all()
    assert geometry.has_attribute("uv")


def test_box_from_bounds_is_centered():
    geometry = box_from_bounds((0.0, 0.0, 0.0), (2.0, 4.0, 6.0))
    lo, hi = geometry.bounding_box()
    np.testing.assert_allclose(lo, [0, 0, 0], atol=1e-6)
    np.testing.assert_allclose(hi, [2, 4, 6], atol=1e-6)
    assert geometry.user_data["bounds_stand_in"]


def test_capsule_extent_includes_caps():
    geometry = capsule_geometry(0.5, 2.0)
    lo, hi = geometry.bounding_box()
    assert hi[1] == pytest.approx(1.5, abs=1e-5)
    assert lo[1] == pytest.approx(-1.5, abs=1e-5)


def test_cube_prim_uses_size(stage_root):
    cube = define_prim(stage_root, "/World/Box", "Cube")
    cube.set_attr("size", 2.0)
    lo, hi = build_gprim_geometry(cube).bounding_box()
    np.testing.assert_allclose(hi, [1, 1, 1])
    np.testing.assert_allclose(lo, [-1, -1, -1])


def test_cylinder_defaults_to_z_axis(stage_root):
    cylinder = define_prim(stage_root, "/World/Pipe", "Cylinder")
    cylinder.set_attr("radius", 0.25)
    cylinder.set_attr("height", 4.0)
    lo, hi = build_gprim_geometry(cylinder).bounding_box()
    assert hi[2] == pytest.approx(2.0, abs=1e-5)
    assert lo[2] == pytest.approx(-2.0, abs=1e-5)
    assert hi[1] == pytest.approx(0.25, abs=1e-5)


def test_cone_along_x(stage_root):
    cone = define_prim(stage_root, "/World/Tip", "Cone")
    cone.set_attr("axis", "X")
    cone.set_attr("height", 2.0)
    geometry = build_gprim_geometry(cone)
    lo, hi = geometry.bounding_box()
    assert hi[0] - lo[0] == pytest.approx(2.0, abs=1e-5)
    assert _outward(geometry).all()


def test_zero_size_gprim_is_skipped(stage_root):
    sphere = define_prim(stage_root, "/World/Dot", "Sphere")
    sphere.set_attr("radius", 0.0)
    assert build_gprim_geometry(sphere) is None


def test_unknown_type_is_none(stage_root):
    assert build_gprim_geometry(define_prim(stage_root, "/World/Plane", "Plane")) is None

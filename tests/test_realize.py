import json

import numpy as np
import pytest

from conftest import author_cube, author_preview_material
from usdrealize.api import realize_tree
from usdrealize.config.realize_config import RealizeConfig
from usdrealize.prims import define_prim, make_stage_root
from usdrealize.realize import SceneRealizer, iter_draw_objects, realize_scene, stage_root_matrix
from usdrealize.scene import Light, LineSegments, Mesh, hex_color
from usdrealize.utils.matrix_utils import transform_points

CONFIG = RealizeConfig(texture_workers=0)


def _mesh(result, path):
    return result.scene.find(lambda n: isinstance(n, Mesh) and n.name == path)


def _container(result, path):
    return result.scene.find(lambda n: n.name == path and n.user_data.get("usd_type") is not None)


def test_unbound_mesh_is_gray(stage_root, cube_prim):
    result = realize_scene(stage_root, config=CONFIG)
    mesh = _mesh(result, "/World/Cube")
    assert mesh.material.color == hex_color(0x888888)
    assert mesh.material.roughness == pytest.approx(0.9)
    assert result.stats.meshes == 1
    assert result.stats.materials == 1


def test_bound_mesh_and_gprim(stage_root, cube_prim):
    author_preview_material(stage_root, "/World/Looks/Steel", diffuseColor=(0.7, 0.7, 0.7), metallic=1.0)
    cube_prim.set_rel("material:binding", "/World/Looks/Steel")
    define_prim(stage_root, "/World/Ball", "Sphere")
    result = realize_scene(stage_root, config=CONFIG)

    assert _mesh(result, "/World/Cube").material.metalness == 1.0
    ball = _mesh(result, "/World/Ball")
    assert ball.material.roughness == pytest.approx(0.8)
    assert result.stats.meshes == 2
    assert _container(result, "/World/Looks/Steel") is None


def test_zup_centimeter_stage_is_corrected():
    root = make_stage_root(upAxis="Z", metersPerUnit=0.01)
    author_cube(define_prim(root, "/World/Cube", "Mesh"))
    result = realize_scene(root, config=CONFIG)

    content = result.content
    np.testing.assert_allclose(content.scale, [0.01, 0.01, 0.01])
    moved = transform_points(content.local_matrix(), np.array([[0.0, 0.0, 100.0]]))
    np.testing.assert_allclose(moved[0], [0.0, 1.0, 0.0], atol=1e-9)


def test_stage_root_matrix_options():
    root = make_stage_root(upAxis="Y", metersPerUnit=0.01)
    np.testing.assert_allclose(stage_root_matrix(root, RealizeConfig(apply_stage_units=False)), np.eye(4))
    np.testing.assert_allclose(stage_root_matrix(root, RealizeConfig(meters_per_unit=1.0)), np.eye(4))
    rotated = stage_root_matrix(make_stage_root(upAxis="Y"), RealizeConfig(up_axis="Z"))
    np.testing.assert_allclose(transform_points(rotated, np.array([[0.0, 1.0, 0.0]]))[0], [0, 0, 1], atol=1e-9)


def test_visibility_and_active(stage_root, cube_prim):
    cube_prim.set_attr("visibility", "invisible")
    ghost = author_cube(define_prim(stage_root, "/World/Ghost", "Mesh"))
    ghost.metadata["active"] = False
    result = realize_scene(stage_root, config=CONFIG)

    assert _container(result, "/World/Cube").visible is False
    assert _mesh(result, "/World/Ghost") is None
    assert result.stats.meshes == 1


def test_broken_topology_gets_bounds_stand_in(stage_root):
    broken = define_prim(stage_root, "/World/Broken", "Mesh")
    broken.set_attr("points", [(0, 0, 0), (2, 2, 2), (1, 0, 1)])
    broken.set_attr("faceVertexCounts", [3])
    broken.set_attr("faceVertexIndices", [0, 1, 7])
    result = realize_scene(stage_root, config=CONFIG)

    stand_in = _mesh(result, "/World/Broken/bounds")
    assert stand_in.user_data["stand_in"]
    lo, hi = stand_in.geometry.bounding_box()
    np.testing.assert_allclose(lo, [0, 0, 0], atol=1e-6)
    np.testing.assert_allclose(hi, [2, 2, 2], atol=1e-6)
    assert result.stats.stand_ins == 1


def test_empty_extent_is_skipped(stage_root, cube_prim):
    cube_prim.set_attr("extent", [(0, 0, 0), (0, 0, 0)])
    result = realize_scene(stage_root, config=CONFIG)
    assert _mesh(result, "/World/Cube") is None
    assert result.stats.skipped == 1


def test_vertex_colors_replace_unbound_color(stage_root, cube_prim):
    cube_prim.set_attr(
        "primvars:displayColor",
        [(1, 0, 0), (0, 1, 0), (0, 0, 1), (1, 1, 0), (1, 0, 1), (0, 1, 1), (1, 1, 1), (0, 0, 0)],
        interpolation="vertex",
    )
    mesh = _mesh(realize_scene(stage_root, config=CONFIG), "/World/Cube")
    assert mesh.material.vertex_colors
    assert mesh.material.color == (1.0, 1.0, 1.0)
    assert mesh.geometry.has_attribute("color")


def test_animated_points_follow_set_time(stage_root, cube_prim):
    base = list(cube_prim.get("points").default)
    raised = [(x, y + 4.0, z) for x, y, z in base]
    cube_prim.set_attr("points", None, time_samples={0.0: base, 8.0: raised})
    result = realize_scene(stage_root, config=CONFIG)

    assert result.registry.counts()["points"] == 1
    geometry = _mesh(result, "/World/Cube").geometry
    result.player.set_time(4.0)
    assert geometry.attributes["position"][:, 1].max() == pytest.approx(1.0)
    result.player.set_time(8.0)
    assert geometry.attributes["position"][:, 1].max() == pytest.approx(5.0)
    assert result.player.state.end_time == 8.0


def test_config_time_evaluates_samples(stage_root):
    mover = define_prim(stage_root, "/World/Mover", "Xform")
    mover.set_attr("xformOp:translate", time_samples={0.0: (0, 0, 0), 10.0: (0, 0, 10)})
    mover.set_attr("xformOpOrder", ["xformOp:translate"])
    result = realize_scene(stage_root, config=RealizeConfig(texture_workers=0, time=5.0))
    np.testing.assert_allclose(_container(result, "/World/Mover").position, [0, 0, 5])
    assert result.player.state.current_time == 5.0
    assert result.registry.counts()["xform"] == 1


def test_lights_curves_and_draw_objects(stage_root, cube_prim):
    light = define_prim(stage_root, "/World/Sun", "DistantLight")
    light.set_attr("inputs:intensity", 3000.0)
    curve = define_prim(stage_root, "/World/Wire", "BasisCurves")
    curve.set_attr("points", [(0, 0, 0), (1, 0, 0)])
    curve.set_attr("curveVertexCounts", [2])
    curve.set_attr("type", "linear")
    result = realize_scene(stage_root, config=CONFIG)

    kinds = sorted(type(node).__name__ for node in iter_draw_objects(result.scene))
    assert kinds == ["Light", "LineSegments", "Mesh"]
    assert result.stats.lights == 1
    assert result.stats.curves == 1
    sun = result.scene.find(lambda n: isinstance(n, Light))
    assert sun.intensity == pytest.approx(3.0)
    assert isinstance(result.scene.find(lambda n: isinstance(n, LineSegments)), LineSegments)


def test_summary_is_json_ready(stage_root, cube_prim):
    summary = realize_tree(stage_root, config=CONFIG).summary()
    assert set(summary) == {"stats", "animation", "animated", "skeletons", "material_remaps"}
    assert summary["stats"]["meshes"] == 1
    json.dumps(summary)


def test_realizer_coalesces_reentrant_requests(stage_root, cube_prim):
    nested = []

    def on_realized(result):
        if realizer.passes == 1:
            nested.append(realizer.request())

    realizer = SceneRealizer(lambda: stage_root, config=CONFIG, on_realized=on_realized)
    result = realizer.request()
    assert nested == [None]
    assert realizer.passes == 2
    assert result is realizer.latest
    assert not realizer.running

    assert realizer.request() is not None
    assert realizer.passes == 3


def test_reset_xform_stack_is_relative_to_stage(stage_root):
    world = define_prim(stage_root, "/World", "Xform")
    world.set_attr("xformOp:translate", time_samples={0.0: (0, 0, 0), 10.0: (10, 0, 0)})
    world.set_attr("xformOpOrder", ["xformOp:translate"])
    for name, order in (("Pinned", ["!resetXformStack!", "xformOp:translate"]), ("Follower", ["xformOp:translate"])):
        prim = define_prim(stage_root, f"/World/{name}", "Xform")
        prim.set_attr("xformOp:translate", (1.0, 2.0, 3.0))
        prim.set_attr("xformOpOrder", order)
    result = realize_scene(stage_root, config=CONFIG)

    pinned = _container(result, "/World/Pinned")
    follower = _container(result, "/World/Follower")
    assert result.registry.counts()["xform"] == 2
    result.player.set_time(5.0)
    np.testing.assert_allclose(pinned.world_matrix()[:3, 3], [1.0, 2.0, 3.0], atol=1e-9)
    np.testing.assert_allclose(follower.world_matrix()[:3, 3], [6.0, 2.0, 3.0], atol=1e-9)

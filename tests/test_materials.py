import logging

import pytest

from conftest import author_preview_material
from usdrealize.materials import (
    UNBOUND_ROUGHNESS,
    MaterialResolver,
    constant_display_color,
    sidedness,
)
from usdrealize.mesh_builder import build_mesh_geometry
from usdrealize.prims import define_prim
from usdrealize.scene import hex_color
from usdrealize.shader_families import DEFAULT_GRAY


def _subset(root, path, faces, material_path=None):
    subset = define_prim(root, path, "GeomSubset")
    subset.set_attr("elementType", "face")
    subset.set_attr("familyName", "materialBind")
    subset.set_attr("indices", list(faces))
    if material_path:
        subset.set_rel("material:binding", material_path)
    return subset


def test_unbound_mesh_gets_gray_fallback(stage_root, cube_prim):
    material, bound = MaterialResolver(stage_root).material_for(cube_prim)
    assert not bound
    assert material.color == hex_color(DEFAULT_GRAY)
    assert material.roughness == pytest.approx(UNBOUND_ROUGHNESS)


def test_constant_display_color_becomes_fallback_color(stage_root, cube_prim):
    cube_prim.set_attr("primvars:displayColor", [(0.1, 0.2, 0.3)], interpolation="constant")
    material, bound = MaterialResolver(stage_root).material_for(cube_prim)
    assert not bound
    assert material.color == pytest.approx((0.1, 0.2, 0.3))


def test_varying_display_color_is_not_constant(stage_root, cube_prim):
    cube_prim.set_attr(
        "primvars:displayColor",
        [(1.0, 0.0, 0.0), (0.0, 1.0, 0.0)] * 4,
        interpolation="vertex",
    )
    assert constant_display_color(cube_prim) is None


def test_sidedness(stage_root, cube_prim):
    assert sidedness(cube_prim) is None
    cube_prim.set_attr("doubleSided", True)
    assert sidedness(cube_prim) == "double"
    cube_prim.set_attr("doubleSided", False)
    assert sidedness(cube_prim) == "front"


def test_bound_material_is_shared_and_sided(stage_root, cube_prim):
    author_preview_material(stage_root, "/World/Looks/Red", diffuseColor=(1.0, 0.0, 0.0))
    cube_prim.set_rel("material:binding", "/World/Looks/Red")
    cube_prim.set_attr("doubleSided", False)
    other = define_prim(stage_root, "/World/Other", "Mesh")
    other.set_attr("doubleSided", False)
    other.set_rel("material:binding", "/World/Looks/Red")

    resolver = MaterialResolver(stage_root)
    first, bound = resolver.material_for(cube_prim)
    second, _ = resolver.material_for(other)
    assert bound
    assert first is second
    assert first.side == "front"
    assert first.color == (1.0, 0.0, 0.0)
    assert len(resolver) == 1


def test_subsets_split_triangles_into_groups(stage_root, cube_prim):
    author_preview_material(stage_root, "/World/Looks/Blue", diffuseColor=(0.0, 0.0, 1.0))
    _subset(stage_root, "/World/Cube/Top", [0, 1], "/World/Looks/Blue")
    _subset(stage_root, "/World/Cube/Unbound", [2])

    geometry = build_mesh_geometry(cube_prim).geometry
    resolver = MaterialResolver(stage_root)
    base, _ = resolver.material_for(cube_prim)
    slot = resolver.subset_materials(cube_prim, geometry, base)

    assert isinstance(slot, list)
    assert len(slot) == 2
    assert slot[0] is base
    assert slot[1].color == (0.0, 0.0, 1.0)
    groups = sorted((g.start, g.count, g.material_index) for g in geometry.groups)
    assert groups == [(0, 12, 1), (12, 24, 0)]
    assert sum(g.count for g in geometry.groups) == 36


def test_subsets_without_bindings_keep_single_material(stage_root, cube_prim):
    _subset(stage_root, "/World/Cube/Part", [0, 1, 2])
    geometry = build_mesh_geometry(cube_prim).geometry
    resolver = MaterialResolver(stage_root)
    base, _ = resolver.material_for(cube_prim)
    assert resolver.subset_materials(cube_prim, geometry, base) is base


def test_remapped_binding_is_recorded(stage_root, cube_prim, caplog):
    author_preview_material(stage_root, "/World/Looks/Green", diffuseColor=(0.0, 1.0, 0.0))
    cube_prim.set_rel("material:binding", "/Looks/Green")
    resolver = MaterialResolver(stage_root)
    with caplog.at_level(logging.INFO):
        material, bound = resolver.material_for(cube_prim, boundary=stage_root.children["World"])
    assert bound
    assert material.color == (0.0, 1.0, 0.0)
    assert len(resolver.remaps) == 1
    bound_on, target, how = resolver.remaps[0]
    assert (bound_on, target, how) == ("/World/Cube", "/World/Looks/Green", "append")
    assert material.user_data["binding_remap"] == how

import logging

import numpy as np
import pytest
from PIL import Image

from conftest import author_preview_material
from usdrealize.materials import MaterialResolver
from usdrealize.prims import define_prim
from usdrealize.scene import MaterialDescriptor, TextureBinding, TexturePatch, hex_color
from usdrealize.textures import (
    TextureLoader,
    alpha_to_green,
    default_asset_resolver,
    guess_solid_color_from_asset_path,
    uv_transform_matrix,
    wrap_mode,
)


def _write_png(path, color=(255, 0, 0, 128), size=(4, 2)):
    Image.new("RGBA", size, color).save(path)
    return path


def _textured_material(root, file_name, *, opacity_from_alpha=False):
    material = author_preview_material(root, "/World/Looks/Tex")
    tex = define_prim(root, "/World/Looks/Tex/Image", "Shader")
    tex.set_attr("info:id", "UsdUVTexture")
    tex.set_attr("inputs:file", file_name)
    tex.set_attr("inputs:wrapS", "mirror")
    tex.set_attr("inputs:wrapT", "clamp")
    surface = material.children["Surface"]
    surface.connect("inputs:diffuseColor", "/World/Looks/Tex/Image.outputs:rgb")
    if opacity_from_alpha:
        surface.connect("inputs:opacity", "/World/Looks/Tex/Image.outputs:a")
    return material


@pytest.fixture
def inline_loader(tmp_path):
    loader = TextureLoader(default_asset_resolver(tmp_path), max_workers=0)
    yield loader
    loader.shutdown()


def test_resolver_prefers_identifier_directory(tmp_path):
    asset_dir = tmp_path / "assets"
    asset_dir.mkdir()
    _write_png(asset_dir / "wood.png")
    resolve = default_asset_resolver(tmp_path)
    assert resolve("wood.png", str(asset_dir / "tree.usd")) == str(asset_dir / "wood.png")
    assert resolve("wood.png") == str(tmp_path / "wood.png")
    assert resolve("https://example.com/wood.png") == "https://example.com/wood.png"
    assert resolve("") is None


def test_texture_patch_lands_on_material(stage_root, cube_prim, tmp_path, inline_loader):
    _write_png(tmp_path / "albedo.png")
    _textured_material(stage_root, "albedo.png")
    cube_prim.set_rel("material:binding", "/World/Looks/Tex")
    resolver = MaterialResolver(stage_root, textures=inline_loader)
    mat = resolver.resolve(cube_prim)
    assert inline_loader.wait(timeout=5.0)
    binding = mat.maps["map"]
    assert binding.image.shape == (2, 4, 4)
    assert binding.url == str(tmp_path / "albedo.png")
    assert binding.wrap_s == "mirrored"
    assert binding.wrap_t == "clamp"
    assert mat.color == (1.0, 1.0, 1.0)
    assert mat.user_data["version"] >= 1


def test_opacity_from_alpha_is_copied_to_green(stage_root, cube_prim, tmp_path, inline_loader):
    _write_png(tmp_path / "leaf.png", color=(10, 20, 30, 200))
    _textured_material(stage_root, "leaf.png", opacity_from_alpha=True)
    cube_prim.set_rel("material:binding", "/World/Looks/Tex")
    mat = MaterialResolver(stage_root, textures=inline_loader).resolve(cube_prim)
    alpha = mat.maps["alpha_map"].image
    assert int(alpha[0, 0, 1]) == 200
    assert mat.alpha_test == pytest.approx(0.5)


def test_failed_texture_falls_back_to_name_color(stage_root, cube_prim, caplog, inline_loader):
    _textured_material(stage_root, "paint_red.png")
    cube_prim.set_rel("material:binding", "/World/Looks/Tex")
    with caplog.at_level(logging.WARNING):
        mat = MaterialResolver(stage_root, textures=inline_loader).resolve(cube_prim)
    assert "paint_red.png" in caplog.text
    assert mat.color == hex_color(0xCC2A2A)
    assert "map" not in mat.maps


def test_loader_caches_by_resolved_location(tmp_path):
    calls = []

    def decoder(url):
        calls.append(url)
        return np.zeros((1, 1, 4), dtype=np.uint8)

    loader = TextureLoader(default_asset_resolver(tmp_path), max_workers=2, decoder=decoder)
    try:
        first = loader.load("a.png")
        second = loader.load("a.png")
        assert first is second
        first.result(timeout=5.0)
    finally:
        loader.shutdown()
    assert len(calls) == 1


def test_threaded_loader_applies_patches(tmp_path):
    _write_png(tmp_path / "grid.png")
    loader = TextureLoader(default_asset_resolver(tmp_path), max_workers=2)
    mat = MaterialDescriptor(name="m")
    binding = TextureBinding(asset_path="grid.png")

    def on_loaded(image):
        binding.image = image
        return TexturePatch(slot="map", texture=binding, values={"roughness": 0.1})

    try:
        future = loader.schedule(mat, binding, on_loaded)
        assert loader.wait(timeout=5.0)
        assert future.result(timeout=5.0) is not None
    finally:
        loader.shutdown()
    assert mat.maps["map"] is binding
    assert mat.roughness == pytest.approx(0.1)
    assert loader.pending_count == 0


def test_helpers():
    assert guess_solid_color_from_asset_path("textures/Dark_Gray.jpg") == hex_color(0x808080)
    assert guess_solid_color_from_asset_path("noise.png") is None
    assert wrap_mode("repeat") == "repeat"
    assert wrap_mode("black") == "clamp"
    np.testing.assert_allclose(uv_transform_matrix((2.0, 3.0), 0.0, (0.5, 0.25)), [[2, 0, 0.5], [0, 3, 0.25], [0, 0, 1]])
    image = np.zeros((1, 1, 4), dtype=np.uint8)
    image[0, 0, 3] = 77
    assert alpha_to_green(image)[0, 0, 1] == 77

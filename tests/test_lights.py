import math

import pytest

from usdrealize.lights import DOME_SCALE, NITS_SCALE, SPHERE_SCALE, build_light, is_light, light_intensity
from usdrealize.prims import define_prim


def _light(root, type_name, path="/World/Light", **inputs):
    prim = define_prim(root, path, type_name)
    for name, value in inputs.items():
        prim.set_attr(f"inputs:{name}", value)
    return prim


def test_distant_light_calibration(stage_root):
    light = build_light(_light(stage_root, "DistantLight", intensity=1000.0, color=(1.0, 0.5, 0.25)))
    assert light.light_type == "directional"
    assert light.intensity == pytest.approx(1.0)
    assert light.color == (1.0, 0.5, 0.25)
    assert light.cast_shadow
    assert light.name == "/World/Light"


def test_exposure_doubles_intensity(stage_root):
    prim = _light(stage_root, "DistantLight", intensity=1000.0, exposure=1.0)
    assert light_intensity(prim) == pytest.approx(2000.0)
    assert build_light(prim).intensity == pytest.approx(2.0)


def test_bare_attribute_names_are_read(stage_root):
    prim = define_prim(stage_root, "/World/Old", "DistantLight")
    prim.set_attr("intensity", 500.0)
    assert build_light(prim).intensity == pytest.approx(0.5)


def test_sphere_light_becomes_point(stage_root):
    light = build_light(_light(stage_root, "SphereLight", intensity=8000.0, radius=1.0))
    assert light.light_type == "point"
    assert light.intensity == pytest.approx(8000.0 * math.pi / SPHERE_SCALE)
    assert light.params["radius"] == 1.0


def test_shaped_sphere_light_becomes_spot(stage_root):
    prim = _light(stage_root, "SphereLight", intensity=100.0, radius=0.1)
    prim.set_attr("inputs:shaping:cone:angle", 45.0)
    prim.set_attr("inputs:shaping:cone:softness", 0.25)
    light = build_light(prim)
    assert light.light_type == "spot"
    assert light.params["angle"] == pytest.approx(math.radians(45.0))
    assert light.params["penumbra"] == pytest.approx(0.25)


def test_rect_light_normalize_divides_by_area(stage_root):
    plain = build_light(_light(stage_root, "RectLight", intensity=8000.0, width=2.0, height=2.0))
    normalized = build_light(
        _light(stage_root, "RectLight", path="/World/Norm", intensity=8000.0, width=2.0, height=2.0, normalize=True)
    )
    assert plain.light_type == "rect_area"
    assert plain.intensity == pytest.approx(8000.0 / NITS_SCALE)
    assert normalized.intensity == pytest.approx(plain.intensity / 4.0)
    assert plain.params["width"] == 2.0


def test_disk_light_uses_diameter(stage_root):
    light = build_light(_light(stage_root, "DiskLight", radius=0.5))
    assert light.light_type == "disk_area"
    assert light.params["width"] == pytest.approx(1.0)
    assert light.params["height"] == pytest.approx(1.0)


def test_cylinder_light_keeps_shape(stage_root):
    light = build_light(_light(stage_root, "CylinderLight", radius=0.1, length=3.0))
    assert light.light_type == "point"
    assert light.params["length"] == 3.0


def test_dome_light_environment_when_texture_resolves(stage_root):
    prim = _light(stage_root, "DomeLight", intensity=2.0)
    prim.set_attr("inputs:texture:file", "sky.hdr")
    light = build_light(prim, resolve_asset_url=lambda path, anchor: f"/assets/{path}")
    assert light.light_type == "environment"
    assert light.params["url"] == "/assets/sky.hdr"
    assert light.intensity == pytest.approx(2.0)


def test_dome_light_without_resolver_is_hemisphere(stage_root):
    prim = _light(stage_root, "DomeLight", intensity=1000.0)
    prim.set_attr("inputs:texture:file", "sky.hdr")
    light = build_light(prim)
    assert light.light_type == "hemisphere"
    assert light.intensity == pytest.approx(1000.0 / DOME_SCALE)


def test_non_light_types(stage_root):
    assert not is_light("Mesh")
    assert build_light(define_prim(stage_root, "/World/Mesh", "Mesh")) is None

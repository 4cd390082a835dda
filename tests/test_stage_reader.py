import numpy as np
import pytest

pytest.importorskip("pxr")

from usdrealize.api import RealizeSettings, realize  # noqa: E402
from usdrealize.config.realize_config import RealizeConfig  # noqa: E402
from usdrealize.errors import StageLoadError  # noqa: E402
from usdrealize.prims import find_prim_by_path  # noqa: E402
from usdrealize.scene import InstancedMesh, Mesh  # noqa: E402
from usdrealize.stage_reader import read_stage  # noqa: E402

STAGE = """#usda 1.0
(
    upAxis = "Z"
    metersPerUnit = 0.01
    startTimeCode = 0
    endTimeCode = 10
    framesPerSecond = 24
    timeCodesPerSecond = 24
)

def Xform "World"
{
    def Xform "Mover"
    {
        double3 xformOp:translate.timeSamples = {
            0: (0, 0, 0),
            10: (10, 0, 0),
        }
        uniform token[] xformOpOrder = ["xformOp:translate"]

        def Mesh "Quad" (
            prepend apiSchemas = ["MaterialBindingAPI"]
        )
        {
            int[] faceVertexCounts = [4]
            int[] faceVertexIndices = [0, 1, 2, 3]
            point3f[] points = [(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0)]
            color3f[] primvars:displayColor = [(1, 0, 0)] (
                interpolation = "constant"
            )
            rel material:binding = </World/Looks/Red>
        }
    }

    def Mesh "Hidden" (
        active = false
    )
    {
    }

    def Scope "Looks"
    {
        def Material "Red"
        {
            token outputs:surface.connect = </World/Looks/Red/Surface.outputs:surface>

            def Shader "Surface"
            {
                uniform token info:id = "UsdPreviewSurface"
                color3f inputs:diffuseColor = (0.9, 0.1, 0.1)
                float inputs:roughness = 0.3
                token outputs:surface
            }
        }
    }
}
"""


@pytest.fixture
def stage_path(tmp_path):
    path = tmp_path / "scene.usda"
    path.write_text(STAGE, encoding="utf-8")
    return path


def test_read_stage_metadata(stage_path):
    root = read_stage(stage_path)
    assert root.metadata["upAxis"] == "Z"
    assert root.metadata["metersPerUnit"] == pytest.approx(0.01)
    assert root.metadata["startTimeCode"] == 0.0
    assert root.metadata["endTimeCode"] == 10.0
    assert root.metadata["framesPerSecond"] == 24.0


def test_read_stage_properties(stage_path):
    root = read_stage(stage_path)
    mover = find_prim_by_path(root, "/World/Mover")
    assert mover.type_name == "Xform"
    translate = mover.get("xformOp:translate")
    assert sorted(translate.time_samples) == [0.0, 10.0]
    assert translate.time_samples[10.0] == (10.0, 0.0, 0.0)
    assert mover.get("xformOpOrder").default == ["xformOp:translate"]

    quad = find_prim_by_path(root, "/World/Mover/Quad")
    assert quad.get("material:binding").targets == ["/World/Looks/Red"]
    assert quad.get("primvars:displayColor").interpolation == "constant"
    np.testing.assert_array_equal(quad.get("faceVertexIndices").default, [0, 1, 2, 3])

    material = find_prim_by_path(root, "/World/Looks/Red")
    assert material.get("outputs:surface").connections == ["/World/Looks/Red/Surface.outputs:surface"]
    assert find_prim_by_path(root, "/World/Hidden") is None


def test_realize_from_file(stage_path):
    result = realize(RealizeSettings(input_path=stage_path, config=RealizeConfig(texture_workers=0)))
    quad = result.scene.find(lambda n: isinstance(n, Mesh))
    assert quad.name == "/World/Mover/Quad"
    assert quad.material.color == pytest.approx((0.9, 0.1, 0.1))
    assert quad.material.roughness == pytest.approx(0.3)
    assert result.registry.counts()["xform"] == 1
    assert result.player.state.end_time == 10.0
    np.testing.assert_allclose(result.content.scale, [0.01, 0.01, 0.01])


def test_missing_stage_raises(tmp_path):
    with pytest.raises(StageLoadError):
        read_stage(tmp_path / "nope.usda")


INSTANCED_RIG = """#usda 1.0
(
    upAxis = "Y"
    metersPerUnit = 1
)

def Xform "World"
{
    def PointInstancer "Inst"
    {
        rel prototypes = </World/Inst/Proto>
        int[] protoIndices = [0, 0, 0]
        point3f[] positions = [(0, 0, 0), (2, 0, 0), (4, 0, 0)]
        quath[] orientations = [(1, 0, 0, 0), (0.7071, 0, 0, 0.7071), (1, 0, 0, 0)]

        def Mesh "Proto"
        {
            int[] faceVertexCounts = [3]
            int[] faceVertexIndices = [0, 1, 2]
            point3f[] points = [(0, 0, 0), (1, 0, 0), (0, 1, 0)]
        }
    }

    def SkelRoot "Rig"
    {
        def Skeleton "Skel"
        {
            uniform token[] joints = ["a", "a/b", "a/b/c", "a/b/c/d", "a/b/c/d/e"]
            uniform matrix4d[] bindTransforms = [
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 0, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 1, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 2, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 3, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 4, 0, 1))
            ]
            uniform matrix4d[] restTransforms = [
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 0, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 1, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 1, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 1, 0, 1)),
                ((1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 1, 0, 1))
            ]
        }
    }
}
"""


@pytest.fixture
def rig_path(tmp_path):
    path = tmp_path / "rig.usda"
    path.write_text(INSTANCED_RIG, encoding="utf-8")
    return path


def test_read_stage_array_values(rig_path):
    root = read_stage(rig_path)
    inst = find_prim_by_path(root, "/World/Inst")
    assert inst.get("positions").default.shape == (3, 3)
    orientations = inst.get("orientations").default
    assert orientations.shape == (3, 4)
    np.testing.assert_allclose(orientations[1], [0.7071, 0.0, 0.0, 0.7071], atol=1e-3)
    proto = find_prim_by_path(root, "/World/Inst/Proto")
    assert proto.get("points").default.shape == (3, 3)

    skel = find_prim_by_path(root, "/World/Rig/Skel")
    bind = skel.get("bindTransforms").default
    assert bind.shape == (5, 4, 4)
    np.testing.assert_allclose(bind[4][3], [0.0, 4.0, 0.0, 1.0])


def test_realize_instancer_and_skeleton_from_file(rig_path):
    result = realize(RealizeSettings(input_path=rig_path, config=RealizeConfig(texture_workers=0)))
    assert result.stats.instanced_meshes == 1
    batched = result.scene.find(lambda n: isinstance(n, InstancedMesh))
    assert batched.count == 3
    np.testing.assert_allclose(batched.get_matrix_at(1)[:3, 3], [2.0, 0.0, 0.0])
    np.testing.assert_allclose(batched.get_matrix_at(1)[:3, :3] @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-3)

    realized = result.skeletons["/World/Rig/Skel"]
    assert realized.bone_count == 5
    assert len(realized.skeleton.bone_inverses) == 5
    np.testing.assert_allclose(realized.skeleton.bone_inverses[4][:3, 3], [0.0, -4.0, 0.0])

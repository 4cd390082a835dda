import pytest

from usdrealize.prims import Prim, define_prim, make_stage_root

CUBE_POINTS = [
    (-1.0, -1.0, -1.0),
    (1.0, -1.0, -1.0),
    (1.0, 1.0, -1.0),
    (-1.0, 1.0, -1.0),
    (-1.0, -1.0, 1.0),
    (1.0, -1.0, 1.0),
    (1.0, 1.0, 1.0),
    (-1.0, 1.0, 1.0),
]
CUBE_COUNTS = [4, 4, 4, 4, 4, 4]
CUBE_INDICES = [
    0, 3, 2, 1,  # -z
    4, 5, 6, 7,  # +z
    0, 1, 5, 4,  # -y
    3, 7, 6, 2,  # +y
    0, 4, 7, 3,  # -x
    1, 2, 6, 5,  # +x
]


def author_cube(prim: Prim, *, points=None) -> Prim:
    prim.set_attr("points", list(points or CUBE_POINTS))
    prim.set_attr("faceVertexCounts", list(CUBE_COUNTS))
    prim.set_attr("faceVertexIndices", list(CUBE_INDICES))
    return prim


def author_preview_material(root: Prim, path: str, **inputs) -> Prim:
    """Material with a single UsdPreviewSurface; ``inputs`` become shader inputs."""
    material = define_prim(root, path, "Material")
    shader = define_prim(root, f"{path}/Surface", "Shader")
    shader.set_attr("info:id", "UsdPreviewSurface")
    for name, value in inputs.items():
        shader.set_attr(f"inputs:{name}", value)
    material.connect("outputs:surface", f"{path}/Surface.outputs:surface")
    return material


@pytest.fixture
def stage_root():
    return make_stage_root(upAxis="Y", metersPerUnit=1.0)


@pytest.fixture
def cube_prim(stage_root):
    return author_cube(define_prim(stage_root, "/World/Cube", "Mesh"))

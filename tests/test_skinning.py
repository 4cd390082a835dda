import numpy as np

from conftest import author_cube
from usdrealize.config.realize_config import RealizeConfig
from usdrealize.prims import define_prim
from usdrealize.realize import realize_scene
from usdrealize.scene import Bone, Group, Mesh, SkinnedMesh
from usdrealize.skinning import (
    SkinInfluences,
    build_joint_order_remap,
    build_skeleton,
    compute_skin_attributes,
    read_skin_influences,
    skeleton_path_for,
)

IDENTITY = np.eye(4).tolist()
JOINTS = ["root", "root/a", "root/a/b"]


def _author_skeleton(root, path, joints=JOINTS):
    skel = define_prim(root, path, "Skeleton")
    skel.set_attr("joints", list(joints))
    skel.set_attr("bindTransforms", [IDENTITY] * len(joints))
    rest = []
    for k in range(len(joints)):
        mat = np.eye(4)
        mat[3, 1] = 1.0 if k else 0.0  # row-major translation
        rest.append(mat.tolist())
    skel.set_attr("restTransforms", rest)
    return skel


def _author_skinned_cube(root, path, skeleton_path):
    mesh = author_cube(define_prim(root, path, "Mesh"))
    mesh.set_rel("skel:skeleton", skeleton_path)
    mesh.set_attr("primvars:skel:jointIndices", [0, 1] * 8, interpolation="vertex", element_size=2)
    mesh.set_attr("primvars:skel:jointWeights", [0.25, 0.25] * 8, interpolation="vertex", element_size=2)
    return mesh


def _realize(root):
    return realize_scene(root, config=RealizeConfig(texture_workers=0))


def test_weights_are_renormalized():
    influences = SkinInfluences(
        joint_indices=np.array([1, 2, 0, 0], dtype=np.int64),
        joint_weights=np.array([0.2, 0.2, 0.0, 0.0]),
    )
    joints, weights = compute_skin_attributes(influences, np.array([0]))
    assert joints.dtype == np.uint16
    np.testing.assert_array_equal(joints[0], [1, 2, 0, 0])
    np.testing.assert_allclose(weights[0], [0.5, 0.5, 0.0, 0.0])


def test_element_size_limits_influences_per_point():
    influences = SkinInfluences(
        joint_indices=np.array([3, 4, 5, 6], dtype=np.int64),
        joint_weights=np.array([0.5, 0.5, 1.0, 0.0]),
        element_size=2,
    )
    joints, weights = compute_skin_attributes(influences, np.array([1, 0, 1]))
    np.testing.assert_array_equal(joints[0], [5, 6, 0, 0])
    np.testing.assert_array_equal(joints[1], [3, 4, 0, 0])
    np.testing.assert_allclose(weights[2], [1.0, 0.0, 0.0, 0.0])


def test_constant_influences_apply_to_every_vertex():
    influences = SkinInfluences(
        joint_indices=np.array([2], dtype=np.int64),
        joint_weights=np.array([1.0]),
        element_size=1,
        constant=True,
    )
    joints, weights = compute_skin_attributes(influences, np.arange(5))
    assert joints.shape == (5, 4)
    assert set(joints[:, 0].tolist()) == {2}
    np.testing.assert_allclose(weights[:, 0], 1.0)


def test_joint_order_remap():
    remap = build_joint_order_remap(JOINTS, ["root/a/b", "missing", "root"])
    np.testing.assert_array_equal(remap, [2, 0, 0])
    assert build_joint_order_remap(JOINTS, []) is None
    influences = SkinInfluences(np.array([0, 2], dtype=np.int64), np.array([0.5, 0.5]), element_size=2)
    joints, _ = compute_skin_attributes(influences, np.array([0]), remap)
    np.testing.assert_array_equal(joints[0], [2, 0, 0, 0])


def test_read_skin_influences(stage_root):
    mesh = _author_skinned_cube(stage_root, "/Char/Body", "/Char/Skel")
    influences = read_skin_influences(mesh)
    assert influences.element_size == 2
    assert not influences.constant
    assert influences.joint_indices.shape == (16,)


def test_skeleton_path_is_inherited(stage_root):
    char = define_prim(stage_root, "/Char", "SkelRoot")
    char.set_rel("skel:skeleton", "/Char/Skel")
    mesh = define_prim(stage_root, "/Char/Geo/Body", "Mesh")
    assert skeleton_path_for(mesh) == "/Char/Skel"


def test_build_skeleton_hierarchy(stage_root):
    skel = _author_skeleton(stage_root, "/Char/Skel")
    container = Group("/Char/Skel")
    helpers = Group("helpers")
    realized = build_skeleton(skel, container, helpers_parent=helpers)

    assert realized.bone_count == 3
    root_bone, a, b = realized.skeleton.bones
    assert isinstance(root_bone.parent, Group)
    assert a.parent is root_bone
    assert b.parent is a
    np.testing.assert_allclose(b.world_matrix()[:3, 3], [0.0, 2.0, 0.0])
    assert len(helpers.children) == 1
    assert all(isinstance(bone, Bone) for bone in helpers.children[0].bones())
    assert realized.bone_index("root/a") == 1
    assert container.user_data["skeleton"] is realized


def test_skeleton_without_joints_is_skipped(stage_root):
    skel = define_prim(stage_root, "/Skel", "Skeleton")
    assert build_skeleton(skel, Group("x")) is None


def test_mesh_before_skeleton_is_bound_later(stage_root):
    define_prim(stage_root, "/Char", "SkelRoot")
    _author_skinned_cube(stage_root, "/Char/Body", "/Char/Skel")
    _author_skeleton(stage_root, "/Char/Skel")

    result = _realize(stage_root)
    assert result.stats.deferred_bindings == 1
    assert result.stats.skinned_meshes == 1
    assert result.stats.unresolved_bindings == 0

    skinned = result.scene.find(lambda n: isinstance(n, SkinnedMesh))
    assert skinned is not None
    assert skinned.name == "/Char/Body"
    assert skinned.skeleton is result.skeletons["/Char/Skel"].skeleton
    assert "skin_pending" not in skinned.user_data
    assert skinned.geometry.get_attribute("skin_index").shape == (8, 4)
    np.testing.assert_allclose(skinned.geometry.get_attribute("skin_weight")[:, :2], 0.5)


def test_skeleton_before_mesh_binds_immediately(stage_root):
    define_prim(stage_root, "/Char", "SkelRoot")
    _author_skeleton(stage_root, "/Char/Skel")
    _author_skinned_cube(stage_root, "/Char/Body", "/Char/Skel")

    result = _realize(stage_root)
    assert result.stats.deferred_bindings == 0
    assert result.stats.skinned_meshes == 1


def test_missing_skeleton_keeps_static_mesh(stage_root):
    define_prim(stage_root, "/Char", "SkelRoot")
    _author_skinned_cube(stage_root, "/Char/Body", "/Char/Nowhere")

    result = _realize(stage_root)
    assert result.stats.unresolved_bindings == 1
    assert result.stats.skinned_meshes == 0
    mesh = result.scene.find(lambda n: isinstance(n, Mesh) and n.name == "/Char/Body")
    assert not isinstance(mesh, SkinnedMesh)
    assert mesh.user_data["skin_pending"] == "/Char/Nowhere"


def test_animated_skeleton_is_registered(stage_root):
    define_prim(stage_root, "/Char", "SkelRoot")
    skel = _author_skeleton(stage_root, "/Char/Skel", joints=["root", "root/a"])
    skel.set_rel("skel:animationSource", "/Char/Anim")
    anim = define_prim(stage_root, "/Char/Anim", "SkelAnimation")
    anim.set_attr("joints", ["root", "root/a"])
    anim.set_attr(
        "translations",
        time_samples={0.0: [(0.0, 0.0, 0.0), (0.0, 1.0, 0.0)], 10.0: [(0.0, 0.0, 0.0), (0.0, 3.0, 0.0)]},
    )

    result = _realize(stage_root)
    assert result.registry.counts()["skeleton"] == 1
    bone = result.skeletons["/Char/Skel"].skeleton.bones[1]
    np.testing.assert_allclose(bone.position, [0.0, 1.0, 0.0])
    # array keys hold the earlier sample between keyframes
    result.player.set_time(5.0)
    np.testing.assert_allclose(bone.position, [0.0, 1.0, 0.0])
    result.player.set_time(10.0)
    np.testing.assert_allclose(bone.position, [0.0, 3.0, 0.0])

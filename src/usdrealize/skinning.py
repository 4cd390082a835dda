"""UsdSkel skeletons, skin weights and deferred skinned-mesh binding."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .prims import Prim, find_nearest_skel_root
from .scene import BufferGeometry, Bone, Group, MaterialSlot, Mesh, Object3D, Skeleton, SkeletonHelper, SkinnedMesh
from .time_eval import as_array, as_token_list, get_prop, get_prop_at_time, prop_has_animation
from .utils.matrix_utils import quat_normalize
from .xform import read_matrix_array

LOG = logging.getLogger(__name__)

MAX_INFLUENCES = 4
WEIGHT_EPSILON = 1e-4

JOINT_INDICES = "primvars:skel:jointIndices"
JOINT_WEIGHTS = "primvars:skel:jointWeights"
SKELETON_REL = "skel:skeleton"
ANIMATION_SOURCE_REL = "skel:animationSource"


@dataclass
class RealizedSkeleton:
    path: str
    skeleton: Skeleton
    joint_names: List[str]
    root: Object3D
    helper: Optional[SkeletonHelper] = None
    animation: Optional[Prim] = None

    @property
    def bone_count(self) -> int:
        return len(self.skeleton.bones)

    def bone_index(self, joint_name: str) -> Optional[int]:
        try:
            return self.joint_names.index(joint_name)
        except ValueError:
            return None


@dataclass
class SkinInfluences:
    """Raw ``skel:jointIndices`` / ``skel:jointWeights`` as authored on a mesh."""

    joint_indices: np.ndarray
    joint_weights: np.ndarray
    element_size: int = MAX_INFLUENCES
    constant: bool = False


# ---------------- Skeleton ----------------

def _relationship_target(prim: Prim, name: str) -> Optional[str]:
    prop = prim.get(name)
    if prop is None:
        return None
    if prop.targets:
        return prop.targets[0]
    return prop.default if isinstance(prop.default, str) else None


def skeleton_path_for(prim: Prim) -> Optional[str]:
    """``skel:skeleton`` target of ``prim`` or of its nearest ancestor."""
    for node in [prim, *prim.ancestors()]:
        target = _relationship_target(node, SKELETON_REL)
        if target:
            return target
    return None


def animation_source_path(prim: Prim) -> Optional[str]:
    return _relationship_target(prim, ANIMATION_SOURCE_REL)


def build_skeleton(
    prim: Prim,
    container: Object3D,
    *,
    helpers_parent: Optional[Object3D] = None,
    time: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> Optional[RealizedSkeleton]:
    """Create bones under ``container`` for a ``Skeleton`` prim.

    Joint names are slash-delimited paths; a joint's parent is the joint named
    by its path minus the last segment.  Rest transforms become local bone
    transforms, bind transforms (world space) become inverse bind matrices.
    """
    log = logger or LOG
    joint_names = as_token_list(get_prop(prim, "joints"))
    bind = read_matrix_array(get_prop(prim, "bindTransforms"))
    rest = read_matrix_array(get_prop_at_time(prim, "restTransforms", time))
    if not joint_names or (bind is None and rest is None):
        log.debug("Skeleton %s has no joints or transforms; skipping.", prim.path)
        return None

    bones = [Bone(name) for name in joint_names]
    by_name: Dict[str, Bone] = {name: bone for name, bone in zip(joint_names, bones)}
    for name, bone in zip(joint_names, bones):
        if "/" not in name:
            continue
        parent = by_name.get(name.rsplit("/", 1)[0])
        if parent is not None:
            parent.add(bone)

    if rest is not None and rest.shape[0] == len(joint_names):
        for bone, mat in zip(bones, rest):
            bone.set_matrix(mat)
    elif rest is not None:
        log.debug("Skeleton %s: %d rest transforms for %d joints; ignoring them.", prim.path, rest.shape[0], len(joint_names))

    skel_root = Group(f"{prim.path}/skeleton_root")
    for bone in bones:
        if not isinstance(bone.parent, Bone):
            skel_root.add(bone)
    container.add(skel_root)

    inverses: Optional[List[np.ndarray]] = None
    if bind is not None and bind.shape[0] == len(joint_names):
        inverses = []
        for mat in bind:
            try:
                inverses.append(np.linalg.inv(mat))
            except np.linalg.LinAlgError:
                log.debug("Singular bind transform on %s; using identity.", prim.path)
                inverses.append(np.eye(4, dtype=np.float64))
    skeleton = Skeleton(bones, inverses)

    helper: Optional[SkeletonHelper] = None
    if helpers_parent is not None:
        helper = SkeletonHelper(skel_root, name=f"{prim.path}/skeleton_helper")
        helpers_parent.add(helper)

    realized = RealizedSkeleton(path=prim.path, skeleton=skeleton, joint_names=joint_names, root=skel_root, helper=helper)
    container.user_data["skeleton"] = realized
    log.debug("Skeleton %s: %d bones", prim.path, len(bones))
    return realized


def apply_skel_animation(realized: RealizedSkeleton, anim: Prim, time: Optional[float]) -> int:
    """Pose bones from a ``SkelAnimation`` at ``time``; returns the number of bones posed."""
    anim_joints = as_token_list(get_prop(anim, "joints"))
    if anim_joints:
        targets = [realized.bone_index(name) for name in anim_joints]
    else:
        targets = list(range(realized.bone_count))
    rotations = as_array(get_prop_at_time(anim, "rotations", time), width=4)
    translations = as_array(get_prop_at_time(anim, "translations", time), width=3)
    scales = as_array(get_prop_at_time(anim, "scales", time), width=3)

    posed = 0
    bones = realized.skeleton.bones
    for k, bone_index in enumerate(targets):
        if bone_index is None or bone_index >= len(bones):
            continue
        bone = bones[bone_index]
        touched = False
        if rotations is not None and k < rotations.shape[0]:
            bone.quaternion = quat_normalize(rotations[k])
            touched = True
        if translations is not None and k < translations.shape[0]:
            bone.position = translations[k].astype(np.float64)
            touched = True
        if scales is not None and k < scales.shape[0]:
            bone.scale = scales[k].astype(np.float64)
            touched = True
        posed += int(touched)
    return posed


def skel_animation_is_animated(anim: Prim) -> bool:
    return any(prop_has_animation(anim, name) for name in ("rotations", "translations", "scales"))


# ---------------- Skin weights ----------------

def read_skin_influences(prim: Prim) -> Optional[SkinInfluences]:
    indices_prop = prim.get(JOINT_INDICES)
    weights_prop = prim.get(JOINT_WEIGHTS)
    if indices_prop is None or weights_prop is None:
        return None
    indices = as_array(get_prop(prim, JOINT_INDICES), width=1, dtype=np.int64)
    weights = as_array(get_prop(prim, JOINT_WEIGHTS), width=1, dtype=np.float64)
    if indices is None or weights is None:
        return None
    raw_size = indices_prop.metadata.get("elementSize") or weights_prop.metadata.get("elementSize")
    element_size = int(raw_size) if raw_size else MAX_INFLUENCES
    constant = (indices_prop.interpolation or weights_prop.interpolation) == "constant"
    return SkinInfluences(indices, weights, max(element_size, 1), constant)


def joint_order_for(mesh: Prim, skeleton_prim: Optional[Prim]) -> List[str]:
    """Joint order the mesh's joint indices refer to."""
    skel_root = find_nearest_skel_root(mesh)
    for candidate, attr in (
        (skel_root, "skel:jointOrder"),
        (mesh, "skel:jointOrder"),
        (mesh, "skel:joints"),
        (skeleton_prim, "skel:jointOrder"),
    ):
        if candidate is None:
            continue
        names = as_token_list(get_prop(candidate, attr))
        if names:
            return names
    return []


def build_joint_order_remap(joint_names: Sequence[str], joint_order: Optional[Sequence[str]]) -> Optional[np.ndarray]:
    """Map joint-order indices to skeleton bone indices; unknown names map to 0."""
    if not joint_order:
        return None
    lookup = {name: i for i, name in enumerate(joint_names)}
    return np.array([lookup.get(name, 0) for name in joint_order], dtype=np.int64)


def compute_skin_attributes(
    influences: SkinInfluences,
    point_ids: np.ndarray,
    remap: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-vertex ``(V, 4)`` joint indices and weights.

    ``point_ids`` are each output vertex's original point index.  Only the
    first four influences of each point are kept; weights are renormalized
    when their sum is non-zero and off by more than ``WEIGHT_EPSILON``.
    """
    point_ids = np.asarray(point_ids, dtype=np.int64).reshape(-1)
    size = influences.element_size
    base = np.zeros_like(point_ids) if influences.constant else point_ids * size
    cols = np.arange(MAX_INFLUENCES, dtype=np.int64)
    src = base[:, None] + cols[None, :]
    in_element = cols[None, :] < size

    raw_idx = influences.joint_indices
    raw_w = influences.joint_weights
    idx_valid = in_element & (src < raw_idx.size)
    w_valid = in_element & (src < raw_w.size)
    joint = np.where(idx_valid, raw_idx[np.clip(src, 0, max(raw_idx.size - 1, 0))], 0)
    weights = np.where(w_valid, raw_w[np.clip(src, 0, max(raw_w.size - 1, 0))], 0.0)

    if remap is not None and remap.size:
        in_range = idx_valid & (joint >= 0) & (joint < remap.size)
        joint = np.where(in_range, remap[np.clip(joint, 0, remap.size - 1)], 0)
    joint = np.clip(joint, 0, np.iinfo(np.uint16).max)

    total = weights.sum(axis=1)
    fix = (total > 0.0) & (np.abs(total - 1.0) > WEIGHT_EPSILON)
    weights[fix] = weights[fix] / total[fix, None]
    return joint.astype(np.uint16), weights.astype(np.float32)


def geometry_point_ids(geometry: BufferGeometry) -> np.ndarray:
    orig = geometry.get_attribute("original_point_index")
    if orig is not None:
        return orig.astype(np.int64)
    return np.arange(geometry.vertex_count, dtype=np.int64)


def bind_skinned_mesh(
    geometry: BufferGeometry,
    material: MaterialSlot,
    realized: RealizedSkeleton,
    influences: SkinInfluences,
    joint_order: Sequence[str],
    *,
    name: str = "",
) -> SkinnedMesh:
    """Attach skin attributes to ``geometry`` and wrap it in an unbound :class:`SkinnedMesh`."""
    remap = build_joint_order_remap(realized.joint_names, joint_order)
    joint, weights = compute_skin_attributes(influences, geometry_point_ids(geometry), remap)
    geometry.set_attribute("skin_index", joint)
    geometry.set_attribute("skin_weight", weights)
    mesh = SkinnedMesh(geometry, material, name)
    mesh.user_data["skeleton_path"] = realized.path
    return mesh


def attach_skinned_mesh(mesh: SkinnedMesh, parent: Object3D, realized: RealizedSkeleton) -> None:
    """Parent ``mesh`` and bind it using its world matrix as bind space."""
    if mesh.parent is not parent:
        parent.add(mesh)
    mesh.bind(realized.skeleton, mesh.world_matrix())


# ---------------- Deferred binding ----------------

@dataclass
class PendingSkinBinding:
    skeleton_path: str
    mesh_path: str
    placeholder: Mesh
    geometry: BufferGeometry
    material: MaterialSlot
    influences: SkinInfluences
    joint_order: List[str] = field(default_factory=list)
    animation: Optional[Prim] = None


class SkinBindingQueue:
    """Skinned meshes waiting for their skeleton, keyed by skeleton path."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or LOG
        self._pending: Dict[str, List[PendingSkinBinding]] = {}

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._pending.values())

    def __contains__(self, skeleton_path: str) -> bool:
        return bool(self._pending.get(skeleton_path))

    def defer(self, entry: PendingSkinBinding) -> None:
        self._log.debug("Deferring skin binding of %s until %s is realized", entry.mesh_path, entry.skeleton_path)
        self._pending.setdefault(entry.skeleton_path, []).append(entry)

    def resolve(self, realized: RealizedSkeleton) -> List[Tuple[PendingSkinBinding, SkinnedMesh]]:
        """Replace every placeholder waiting on ``realized`` with a bound skinned mesh."""
        bound: List[Tuple[PendingSkinBinding, SkinnedMesh]] = []
        for entry in self._pending.pop(realized.path, []):
            parent = entry.placeholder.parent
            if parent is None:
                self._log.debug("Placeholder for %s was detached; dropping its skin binding", entry.mesh_path)
                continue
            mesh = bind_skinned_mesh(
                entry.geometry,
                entry.material,
                realized,
                entry.influences,
                entry.joint_order,
                name=entry.placeholder.name,
            )
            mesh.copy_transform_from(entry.placeholder)
            mesh.user_data.update(entry.placeholder.user_data)
            mesh.user_data.pop("skin_pending", None)
            mesh.user_data["skeleton_path"] = realized.path
            parent.replace_child(entry.placeholder, mesh)
            mesh.bind(realized.skeleton, mesh.world_matrix())
            bound.append((entry, mesh))
        return bound

    def flush(self, skeletons: Dict[str, RealizedSkeleton]) -> Tuple[List[Tuple[PendingSkinBinding, SkinnedMesh]], List[PendingSkinBinding]]:
        """End-of-pass resolution; unresolved entries keep their static placeholder."""
        bound: List[Tuple[PendingSkinBinding, SkinnedMesh]] = []
        unresolved: List[PendingSkinBinding] = []
        for path in list(self._pending):
            realized = skeletons.get(path)
            if realized is not None:
                bound.extend(self.resolve(realized))
                continue
            for entry in self._pending.pop(path):
                self._log.warning("Skeleton %s for %s was never realized; keeping a static mesh", path, entry.mesh_path)
                unresolved.append(entry)
        return bound, unresolved

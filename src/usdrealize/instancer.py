"""``UsdGeom.PointInstancer`` expansion.

Each prototype subtree is realized once per pass into a detached container
(with the prototype root as the material-binding boundary).  The meshes found
there are then replicated: a prototype used by one instance becomes a plain
mesh, one used by several becomes an :class:`InstancedMesh`.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .prims import Prim, find_prim_by_path, join_path
from .scene import BufferGeometry, InstancedMesh, MaterialSlot, Mesh, Object3D, SkinnedMesh
from .time_eval import as_array, get_prop_at_time
from .utils.matrix_utils import IDENTITY_QUAT, compose

LOG = logging.getLogger(__name__)

PrototypeRealizer = Callable[[Prim, Object3D], None]


@dataclass
class InstanceTransform:
    position: np.ndarray
    orientation: np.ndarray = field(default_factory=lambda: IDENTITY_QUAT.copy())  # wxyz
    scale: np.ndarray = field(default_factory=lambda: np.ones(3, dtype=np.float64))

    def matrix(self) -> np.ndarray:
        return compose(self.position, self.orientation, self.scale)


@dataclass
class PrototypeMesh:
    geometry: BufferGeometry
    material: MaterialSlot
    matrix: np.ndarray  # relative to the prototype container
    name: str = ""


class PrototypeCache:
    """Prototype meshes realized during the current pass, keyed by prim path."""

    def __init__(self) -> None:
        self._meshes: Dict[str, List[PrototypeMesh]] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._meshes

    def __len__(self) -> int:
        return len(self._meshes)

    def get(self, path: str) -> Optional[List[PrototypeMesh]]:
        return self._meshes.get(path)

    def put(self, path: str, meshes: List[PrototypeMesh]) -> None:
        self._meshes[path] = meshes

    def clear(self) -> None:
        self._meshes.clear()


def resolve_prototype_paths(prim: Prim) -> List[str]:
    """``prototypes`` relationship targets, else the instancer's children."""
    rel = prim.get("prototypes")
    if rel is not None and rel.targets:
        return list(rel.targets)
    return [join_path(prim.path, name) for name in prim.children]


def read_orientations(value) -> Optional[np.ndarray]:
    """``quath[]`` orientations as ``(N, 4)`` wxyz; zero or non-finite rows become identity."""
    arr = as_array(value, width=4)
    if arr is None:
        return None
    arr = arr.astype(np.float64, copy=True)
    bad = ~np.all(np.isfinite(arr), axis=1) | np.all(arr == 0.0, axis=1)
    arr[bad] = IDENTITY_QUAT
    norms = np.linalg.norm(arr, axis=1, keepdims=True)
    return arr / np.where(norms > 0.0, norms, 1.0)


def build_instances_by_proto(
    positions: np.ndarray,
    proto_indices: np.ndarray,
    orientations: Optional[np.ndarray],
    scales: Optional[np.ndarray],
    prototype_count: int,
    *,
    logger: Optional[logging.Logger] = None,
) -> "OrderedDict[int, List[InstanceTransform]]":
    log = logger or LOG
    grouped: "OrderedDict[int, List[InstanceTransform]]" = OrderedDict()
    for i, proto in enumerate(np.asarray(proto_indices, dtype=np.int64)):
        proto = int(proto)
        if proto < 0 or proto >= prototype_count:
            log.warning("protoIndices[%d] = %d out of range [0, %d); skipping instance", i, proto, prototype_count)
            continue
        instance = InstanceTransform(position=np.asarray(positions[i], dtype=np.float64))
        if orientations is not None and i < orientations.shape[0]:
            instance.orientation = orientations[i].copy()
        if scales is not None and i < scales.shape[0]:
            instance.scale = np.asarray(scales[i], dtype=np.float64)
        grouped.setdefault(proto, []).append(instance)
    return grouped


def extract_prototype_meshes(container: Object3D, *, logger: Optional[logging.Logger] = None) -> List[PrototypeMesh]:
    log = logger or LOG
    meshes: List[PrototypeMesh] = []
    for node in container.traverse():
        if node is container or not isinstance(node, Mesh):
            continue
        if isinstance(node, (InstancedMesh, SkinnedMesh)):
            log.debug("Skipping %s %s inside a prototype", node.kind, node.name)
            continue
        meshes.append(
            PrototypeMesh(
                geometry=node.geometry,
                material=node.material,
                matrix=node.matrix_relative_to(container),
                name=node.name,
            )
        )
    return meshes


def realize_prototype(
    proto_prim: Prim,
    realize: PrototypeRealizer,
    cache: PrototypeCache,
    *,
    logger: Optional[logging.Logger] = None,
) -> List[PrototypeMesh]:
    cached = cache.get(proto_prim.path)
    if cached is not None:
        return cached
    log = logger or LOG
    staging = Object3D(f"{proto_prim.path}/prototype")
    try:
        realize(proto_prim, staging)
    except Exception:
        log.warning("Prototype %s failed to realize", proto_prim.path, exc_info=True)
        staging = Object3D(f"{proto_prim.path}/prototype")
    meshes = extract_prototype_meshes(staging, logger=log)
    cache.put(proto_prim.path, meshes)
    return meshes


def _emit(container: Object3D, proto: PrototypeMesh, instances: Sequence[InstanceTransform], name: str) -> Object3D:
    if len(instances) == 1:
        mesh = Mesh(proto.geometry, proto.material, name)
        mesh.set_matrix(instances[0].matrix() @ proto.matrix)
        container.add(mesh)
        return mesh
    batched = InstancedMesh(proto.geometry, proto.material, len(instances), name)
    for i, instance in enumerate(instances):
        batched.set_matrix_at(i, instance.matrix() @ proto.matrix)
    container.add(batched)
    return batched


def expand_point_instancer(
    prim: Prim,
    container: Object3D,
    root: Prim,
    *,
    realize: PrototypeRealizer,
    cache: PrototypeCache,
    time: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> List[Object3D]:
    """Emit the draw objects of ``prim`` under ``container``; returns them."""
    log = logger or LOG
    positions = as_array(get_prop_at_time(prim, "positions", time), width=3)
    if positions is None:
        log.warning("PointInstancer %s has no positions; skipping.", prim.path)
        return []
    proto_indices = as_array(get_prop_at_time(prim, "protoIndices", time), width=1, dtype=np.int64)
    if proto_indices is None or proto_indices.size != positions.shape[0]:
        log.warning("PointInstancer %s protoIndices do not match %d positions; skipping.", prim.path, positions.shape[0])
        return []

    proto_paths = resolve_prototype_paths(prim)
    if not proto_paths:
        log.warning("PointInstancer %s has no prototypes; skipping.", prim.path)
        return []

    prototypes: List[List[PrototypeMesh]] = []
    for path in proto_paths:
        proto_prim = find_prim_by_path(root, path)
        if proto_prim is None:
            log.warning("PointInstancer %s prototype %s not found", prim.path, path)
            prototypes.append([])
            continue
        prototypes.append(realize_prototype(proto_prim, realize, cache, logger=log))
    if all(not meshes for meshes in prototypes):
        log.warning("PointInstancer %s prototypes produced no meshes", prim.path)
        return []

    orientations = read_orientations(get_prop_at_time(prim, "orientations", time))
    scales = as_array(get_prop_at_time(prim, "scales", time), width=3)
    grouped = build_instances_by_proto(positions, proto_indices, orientations, scales, len(prototypes), logger=log)

    emitted: List[Object3D] = []
    for proto_index, instances in grouped.items():
        meshes = prototypes[proto_index]
        if not meshes:
            log.debug("PointInstancer %s prototype %d has no meshes", prim.path, proto_index)
            continue
        proto_name = proto_paths[proto_index].rsplit("/", 1)[-1]
        for k, proto in enumerate(meshes):
            name = f"{prim.path}/{proto_name}" if len(meshes) == 1 else f"{prim.path}/{proto_name}_{k}"
            node = _emit(container, proto, instances, name)
            node.user_data["prototype"] = proto_paths[proto_index]
            emitted.append(node)
    log.debug("PointInstancer %s: %d instances over %d draw objects", prim.path, positions.shape[0], len(emitted))
    return emitted

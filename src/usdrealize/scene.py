"""Renderer-agnostic scene graph produced by a realization pass.

Nodes mirror the usual real-time engine vocabulary (containers, meshes,
skinned and instanced meshes, points, lines, lights, bones) and keep their
buffers as numpy arrays.  Transforms use column vectors; quaternions are
stored real-first ``(w, x, y, z)``.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .utils.matrix_utils import IDENTITY_QUAT, compose, decompose

Color = Tuple[float, float, float]


def hex_color(value: int) -> Color:
    return (((value >> 16) & 0xFF) / 255.0, ((value >> 8) & 0xFF) / 255.0, (value & 0xFF) / 255.0)


# ---------------- Geometry ----------------

@dataclass
class GeometryGroup:
    start: int  # first index (corner) of the group
    count: int
    material_index: int


class BufferGeometry:
    """Vertex attributes plus an optional triangle index buffer."""

    def __init__(self) -> None:
        self.attributes: Dict[str, np.ndarray] = {}
        self.index: Optional[np.ndarray] = None
        self.groups: List[GeometryGroup] = []
        self.user_data: Dict[str, Any] = {}

    def set_attribute(self, name: str, values: np.ndarray) -> None:
        self.attributes[name] = values

    def get_attribute(self, name: str) -> Optional[np.ndarray]:
        return self.attributes.get(name)

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    def delete_attribute(self, name: str) -> None:
        self.attributes.pop(name, None)

    @property
    def vertex_count(self) -> int:
        pos = self.attributes.get("position")
        return 0 if pos is None else int(pos.shape[0])

    @property
    def triangle_count(self) -> int:
        if self.index is not None:
            return int(self.index.size // 3)
        return self.vertex_count // 3

    def triangles(self) -> np.ndarray:
        """Triangle corner indices as an ``(T, 3)`` array."""
        if self.index is not None:
            return self.index.reshape(-1, 3)
        return np.arange(self.vertex_count - self.vertex_count % 3, dtype=np.int64).reshape(-1, 3)

    def add_group(self, start: int, count: int, material_index: int) -> None:
        self.groups.append(GeometryGroup(int(start), int(count), int(material_index)))

    def clear_groups(self) -> None:
        self.groups = []

    def bounding_box(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        pos = self.attributes.get("position")
        if pos is None or pos.size == 0:
            return None
        return pos.min(axis=0), pos.max(axis=0)

    def clone(self) -> "BufferGeometry":
        out = BufferGeometry()
        out.attributes = {k: v.copy() for k, v in self.attributes.items()}
        out.index = None if self.index is None else self.index.copy()
        out.groups = [GeometryGroup(g.start, g.count, g.material_index) for g in self.groups]
        out.user_data = copy.deepcopy(self.user_data)
        return out


# ---------------- Materials ----------------

@dataclass
class TextureBinding:
    asset_path: str
    url: Optional[str] = None
    wrap_s: str = "repeat"
    wrap_t: str = "repeat"
    color_space: str = "auto"
    channel: Optional[str] = None
    scale: Tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    bias: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    uv_transform: Optional[np.ndarray] = None
    uv_set: str = "st"
    image: Optional[np.ndarray] = None


@dataclass
class TexturePatch:
    """Field replacements applied to a material once a texture finishes loading."""

    slot: str
    texture: Optional[TextureBinding] = None
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class MaterialDescriptor:
    name: str = ""
    shader_family: str = "default"
    color: Color = (1.0, 1.0, 1.0)
    roughness: float = 0.5
    metalness: float = 0.0
    emissive: Color = (0.0, 0.0, 0.0)
    emissive_intensity: float = 1.0
    opacity: float = 1.0
    transparent: bool = False
    alpha_test: float = 0.0
    depth_write: bool = True
    side: str = "double"
    vertex_colors: bool = False
    ior: float = 1.5
    specular_intensity: float = 1.0
    env_map_intensity: float = 1.0
    clearcoat: float = 0.0
    clearcoat_roughness: float = 0.0
    transmission: float = 0.0
    thickness: float = 0.0
    attenuation_distance: float = float("inf")
    attenuation_color: Color = (1.0, 1.0, 1.0)
    normal_scale: Tuple[float, float] = (1.0, 1.0)
    maps: Dict[str, TextureBinding] = field(default_factory=dict)
    source_path: Optional[str] = None
    user_data: Dict[str, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def apply_patch(self, patch: TexturePatch) -> None:
        """Whole-field replacement; safe against readers on other threads."""
        unknown = [key for key in patch.values if key.startswith("_") or not hasattr(self, key)]
        if unknown:
            raise AttributeError(f"Unknown material field: {unknown[0]}")
        with self._lock:
            if patch.texture is not None:
                maps = dict(self.maps)
                maps[patch.slot] = patch.texture
                self.maps = maps
            for key, value in patch.values.items():
                setattr(self, key, value)
            self.user_data = {**self.user_data, "version": int(self.user_data.get("version", 0)) + 1}

    def clone(self) -> "MaterialDescriptor":
        kwargs = {}
        for f in fields(self):
            if f.name == "_lock":
                continue
            kwargs[f.name] = copy.copy(getattr(self, f.name))
        kwargs["maps"] = dict(self.maps)
        kwargs["user_data"] = dict(self.user_data)
        return MaterialDescriptor(**kwargs)


MaterialSlot = Union[MaterialDescriptor, List[MaterialDescriptor]]


# ---------------- Scene nodes ----------------

class Object3D:
    kind = "Object3D"

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.position = np.zeros(3, dtype=np.float64)
        self.quaternion = IDENTITY_QUAT.copy()
        self.scale = np.ones(3, dtype=np.float64)
        self.children: List[Object3D] = []
        self.parent: Optional[Object3D] = None
        self.visible = True
        self.user_data: Dict[str, Any] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, children={len(self.children)})"

    def add(self, child: "Object3D") -> "Object3D":
        if child.parent is not None:
            child.parent.remove(child)
        child.parent = self
        self.children.append(child)
        return child

    def remove(self, child: "Object3D") -> None:
        if child in self.children:
            self.children.remove(child)
            child.parent = None

    def replace_child(self, old: "Object3D", new: "Object3D") -> None:
        idx = self.children.index(old)
        if new.parent is not None:
            new.parent.remove(new)
        old.parent = None
        new.parent = self
        self.children[idx] = new

    def traverse(self) -> Iterator["Object3D"]:
        yield self
        for child in list(self.children):
            yield from child.traverse()

    def find(self, predicate: Callable[["Object3D"], bool]) -> Optional["Object3D"]:
        for node in self.traverse():
            if predicate(node):
                return node
        return None

    def find_by_name(self, name: str) -> Optional["Object3D"]:
        return self.find(lambda n: n.name == name)

    def set_matrix(self, mat: np.ndarray) -> None:
        self.position, self.quaternion, self.scale = decompose(mat)

    def local_matrix(self) -> np.ndarray:
        return compose(self.position, self.quaternion, self.scale)

    def world_matrix(self) -> np.ndarray:
        mat = self.local_matrix()
        node = self.parent
        while node is not None:
            mat = node.local_matrix() @ mat
            node = node.parent
        return mat

    def matrix_relative_to(self, ancestor: Optional["Object3D"]) -> np.ndarray:
        mat = self.local_matrix()
        node = self.parent
        while node is not None and node is not ancestor:
            mat = node.local_matrix() @ mat
            node = node.parent
        return mat

    def copy_transform_from(self, other: "Object3D") -> None:
        self.position = other.position.copy()
        self.quaternion = other.quaternion.copy()
        self.scale = other.scale.copy()


class Group(Object3D):
    kind = "Group"


class Mesh(Object3D):
    kind = "Mesh"

    def __init__(self, geometry: BufferGeometry, material: MaterialSlot, name: str = "") -> None:
        super().__init__(name)
        self.geometry = geometry
        self.material = material
        self.cast_shadow = True
        self.receive_shadow = True
        self.frustum_culled = True

    @property
    def materials(self) -> List[MaterialDescriptor]:
        return list(self.material) if isinstance(self.material, list) else [self.material]


class Bone(Object3D):
    kind = "Bone"


class Skeleton:
    def __init__(self, bones: Sequence[Bone], bone_inverses: Optional[Sequence[np.ndarray]] = None) -> None:
        self.bones: List[Bone] = list(bones)
        if bone_inverses is None:
            self.bone_inverses = [np.linalg.inv(b.world_matrix()) for b in self.bones]
        else:
            self.bone_inverses = [np.asarray(m, dtype=np.float64) for m in bone_inverses]

    def bone_matrices(self) -> np.ndarray:
        out = np.empty((len(self.bones), 4, 4), dtype=np.float64)
        for i, (bone, inverse) in enumerate(zip(self.bones, self.bone_inverses)):
            out[i] = bone.world_matrix() @ inverse
        return out


class SkinnedMesh(Mesh):
    kind = "SkinnedMesh"

    def __init__(self, geometry: BufferGeometry, material: MaterialSlot, name: str = "") -> None:
        super().__init__(geometry, material, name)
        self.skeleton: Optional[Skeleton] = None
        self.bind_matrix = np.eye(4, dtype=np.float64)
        self.bind_matrix_inverse = np.eye(4, dtype=np.float64)

    def bind(self, skeleton: Skeleton, bind_matrix: Optional[np.ndarray] = None) -> None:
        self.skeleton = skeleton
        self.bind_matrix = np.eye(4) if bind_matrix is None else np.asarray(bind_matrix, dtype=np.float64)
        self.bind_matrix_inverse = np.linalg.inv(self.bind_matrix)


class InstancedMesh(Mesh):
    kind = "InstancedMesh"

    def __init__(self, geometry: BufferGeometry, material: MaterialSlot, count: int, name: str = "") -> None:
        super().__init__(geometry, material, name)
        self.count = int(count)
        self.instance_matrices = np.tile(np.eye(4, dtype=np.float64), (self.count, 1, 1))

    def set_matrix_at(self, index: int, mat: np.ndarray) -> None:
        self.instance_matrices[index] = mat

    def get_matrix_at(self, index: int) -> np.ndarray:
        return self.instance_matrices[index]


class Points(Object3D):
    kind = "Points"

    def __init__(self, geometry: BufferGeometry, material: MaterialDescriptor, size: float = 1.0, name: str = "") -> None:
        super().__init__(name)
        self.geometry = geometry
        self.material = material
        self.size = float(size)


class LineSegments(Object3D):
    kind = "LineSegments"

    def __init__(self, geometry: BufferGeometry, material: MaterialDescriptor, name: str = "") -> None:
        super().__init__(name)
        self.geometry = geometry
        self.material = material
        self.line_width = 1.0


class Light(Object3D):
    kind = "Light"

    def __init__(self, light_type: str, color: Color = (1.0, 1.0, 1.0), intensity: float = 1.0, name: str = "") -> None:
        super().__init__(name)
        self.light_type = light_type
        self.color = color
        self.intensity = float(intensity)
        self.cast_shadow = False
        self.params: Dict[str, Any] = {}


class SkeletonHelper(Object3D):
    kind = "SkeletonHelper"

    def __init__(self, root: Object3D, name: str = "") -> None:
        super().__init__(name)
        self.root = root
        self.color: Color = hex_color(0xFF6B35)
        self.depth_test = False
        self.render_order = 999

    def bones(self) -> List[Bone]:
        return [n for n in self.root.traverse() if isinstance(n, Bone)]

"""In-memory prim tree consumed by the realization pipeline.

The tree is a plain-Python mirror of a composed USD stage: each :class:`Prim`
carries its schema type, authored properties (defaults plus optional time
samples), relationship targets, attribute connections and a handful of
metadata fields.  :mod:`usdrealize.stage_reader` fills it from ``pxr``; tests
build it by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

LOG = logging.getLogger(__name__)

_PROTOTYPE_SCOPE_PREFIXES = ("/__Prototype", "/__usd_prototypes")


@dataclass
class Property:
    """A single authored attribute or relationship."""

    default: Any = None
    time_samples: Optional[Dict[float, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    connections: List[str] = field(default_factory=list)
    targets: List[str] = field(default_factory=list)

    @property
    def is_relationship(self) -> bool:
        return bool(self.targets) and self.default is None

    @property
    def interpolation(self) -> Optional[str]:
        value = self.metadata.get("interpolation")
        return str(value) if value else None

    def has_samples(self) -> bool:
        return bool(self.time_samples)


@dataclass(eq=False)
class Prim:
    path: str
    type_name: str = ""
    properties: Dict[str, Property] = field(default_factory=dict)
    children: Dict[str, "Prim"] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    parent: Optional["Prim"] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        if self.path == "/":
            return ""
        return self.path.rsplit("/", 1)[-1]

    def get(self, name: str) -> Optional[Property]:
        return self.properties.get(name)

    def has(self, name: str) -> bool:
        return name in self.properties

    # ---------------- authoring helpers ----------------

    def set_attr(
        self,
        name: str,
        value: Any = None,
        *,
        time_samples: Optional[Dict[float, Any]] = None,
        interpolation: Optional[str] = None,
        element_size: Optional[int] = None,
    ) -> Property:
        prop = self.properties.get(name) or Property()
        prop.default = value
        if time_samples is not None:
            prop.time_samples = dict(time_samples)
        if interpolation:
            prop.metadata["interpolation"] = interpolation
        if element_size is not None:
            prop.metadata["elementSize"] = int(element_size)
        self.properties[name] = prop
        return prop

    def set_rel(self, name: str, targets: Sequence[str] | str) -> Property:
        if isinstance(targets, str):
            targets = [targets]
        prop = self.properties.get(name) or Property()
        prop.targets = [str(t) for t in targets]
        self.properties[name] = prop
        return prop

    def connect(self, name: str, source: str) -> Property:
        prop = self.properties.get(name) or Property()
        prop.connections = [source]
        self.properties[name] = prop
        return prop

    def add_child(self, child: "Prim") -> "Prim":
        child.parent = self
        self.children[child.name] = child
        return child

    def define(self, name: str, type_name: str = "") -> "Prim":
        """Create (or return) the child ``name`` with ``type_name``."""
        existing = self.children.get(name)
        if existing is not None:
            if type_name:
                existing.type_name = type_name
            return existing
        child_path = f"/{name}" if self.path == "/" else f"{self.path}/{name}"
        return self.add_child(Prim(path=child_path, type_name=type_name))

    # ---------------- traversal ----------------

    def ancestors(self) -> Iterator["Prim"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def walk(self) -> Iterator["Prim"]:
        yield self
        for child in self.children.values():
            yield from child.walk()


def make_stage_root(**metadata: Any) -> Prim:
    return Prim(path="/", type_name="", metadata=dict(metadata))


def define_prim(root: Prim, path: str, type_name: str = "") -> Prim:
    """Create every missing prim along ``path`` below ``root``."""
    node = root
    parts = [p for p in path.split("/") if p]
    for index, part in enumerate(parts):
        last = index == len(parts) - 1
        node = node.define(part, type_name if last else "")
    return node


# ---------------- Path helpers ----------------

def parent_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    head = path.rsplit("/", 1)[0]
    return head or "/"


def join_path(base: str, name: str) -> str:
    return f"/{name}" if base in ("", "/") else f"{base}/{name}"


def normalize_path(path: str) -> str:
    """Collapse ``.`` / ``..`` segments of an absolute prim path."""
    parts: List[str] = []
    for segment in path.split("/"):
        if not segment or segment == ".":
            continue
        if segment == "..":
            if parts:
                parts.pop()
            continue
        parts.append(segment)
    return "/" + "/".join(parts)


def split_property_path(target: str) -> tuple[str, Optional[str]]:
    """Split ``/Mat/Shader.outputs:rgb`` into prim path and property name."""
    last_slash = target.rfind("/")
    dot = target.find(".", last_slash + 1)
    if dot < 0:
        return target, None
    return target[:dot], target[dot + 1 :]


def find_prim_by_path(root: Prim, path: str) -> Optional[Prim]:
    if not path:
        return None
    if path == "/" or path == root.path:
        return root
    node: Optional[Prim] = root
    prefix = "" if root.path == "/" else root.path
    rel = path[len(prefix) :] if prefix and path.startswith(prefix + "/") else path
    for segment in (s for s in rel.split("/") if s):
        node = node.children.get(segment) if node is not None else None
        if node is None:
            break
    if node is not None:
        return node
    # Trees assembled out of order may carry prims whose path does not match
    # their position; fall back to a full scan.
    for candidate in root.walk():
        if candidate.path == path:
            return candidate
    return None


# ---------------- Scene nodes ----------------

@dataclass(eq=False)
class SceneNode:
    path: str
    type_name: str
    prim: Prim
    children: List["SceneNode"] = field(default_factory=list)


def _is_prototype_scope(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in _PROTOTYPE_SCOPE_PREFIXES)


def build_tree(prim: Prim) -> Optional[SceneNode]:
    """Mirror ``prim`` as a :class:`SceneNode` tree, pruning inactive prims."""
    if prim.metadata.get("active") is False:
        return None
    if _is_prototype_scope(prim.path):
        return None
    node = SceneNode(path=prim.path, type_name=prim.type_name, prim=prim)
    for child in prim.children.values():
        child_node = build_tree(child)
        if child_node is not None:
            node.children.append(child_node)
    return node


def build_subtree_node(prim: Prim) -> SceneNode:
    """Like :func:`build_tree` but always returns a node for ``prim`` itself."""
    node = SceneNode(path=prim.path, type_name=prim.type_name, prim=prim)
    for child in prim.children.values():
        child_node = build_tree(child)
        if child_node is not None:
            node.children.append(child_node)
    return node


def find_nearest_skel_root(prim: Prim) -> Optional[Prim]:
    """Nearest ``SkelRoot`` ancestor, else the first ancestor authoring a joint order."""
    fallback: Optional[Prim] = None
    for node in [prim, *prim.ancestors()]:
        if node.type_name == "SkelRoot":
            return node
        if fallback is None and node.has("skel:jointOrder"):
            fallback = node
    return fallback


def find_reference_root(prim: Prim) -> Optional[Prim]:
    for node in [prim, *prim.ancestors()]:
        if node.metadata.get("references"):
            return node
    return None


def iter_children_of_type(prim: Prim, type_names: Iterable[str]) -> Iterator[Prim]:
    wanted = set(type_names)
    for child in prim.children.values():
        if child.type_name in wanted:
            yield child

"""Material binding resolution and shading-network traversal.

Binding lookup walks up the namespace from the bound prim.  A *boundary*
prim (the instancer prototype root, or the root of a referenced subtree)
stops the walk so bindings authored outside the subtree do not leak in.

Absolute targets authored inside referenced or prototype content often keep
the paths of the layer they came from (``/root/Materials/leaves``).  When such
a path does not resolve, a few prefix rewrites against the boundary are tried.
These are heuristics: every successful rewrite is logged and reported to the
caller instead of being applied silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple

from .prims import Prim, find_prim_by_path, normalize_path, parent_path, split_property_path
from .time_eval import as_token, get_prop

LOG = logging.getLogger(__name__)

BINDING_RELATIONSHIP = "material:binding"

SURFACE_OUTPUTS = (
    "outputs:mtlx:surface",
    "outputs:mdl:surface",
    "outputs:mdl:displacement",
    "outputs:mdl:volume",
    "outputs:surface",
)

MAX_NODEGRAPH_DEPTH = 8
MAX_CONNECTION_DEPTH = 16


@dataclass
class ResolvedPath:
    prim: Prim
    remap: Optional[str] = None  # name of the heuristic used, None for a direct hit


@dataclass
class MaterialBinding:
    material: Prim
    bound_on: Prim
    relationship: str
    remap: Optional[str] = None


@dataclass
class ConnectedOutput:
    prim: Prim
    output: Optional[str]


@dataclass
class InputValue:
    """An input either holding a constant ``value`` or driven by ``source``."""

    value: Any = None
    source: Optional[ConnectedOutput] = None

    @property
    def is_connected(self) -> bool:
        return self.source is not None


# ---------------- Path resolution ----------------

def resolve_prim_path(
    root: Prim,
    path: str,
    *,
    anchor: Optional[Prim] = None,
    boundary: Optional[Prim] = None,
) -> Optional[ResolvedPath]:
    if not path:
        return None
    if not path.startswith("/"):
        base = parent_path(anchor.path) if anchor is not None else "/"
        absolute = normalize_path(f"{base}/{path}")
        prim = find_prim_by_path(root, absolute)
        return ResolvedPath(prim) if prim is not None else None

    prim = find_prim_by_path(root, path)
    if prim is not None:
        return ResolvedPath(prim)
    if boundary is None or boundary.path == "/":
        return None

    base = boundary.path
    segments = [s for s in path.split("/") if s]
    candidates: List[Tuple[str, str]] = []
    if path.startswith("/root/") or path == "/root":
        candidates.append(("root-prefix", base + path[len("/root") :]))
    if len(segments) > 1:
        candidates.append(("first-segment", base + "/" + "/".join(segments[1:])))
    candidates.append(("append", base + path))
    for heuristic, candidate in candidates:
        prim = find_prim_by_path(root, candidate)
        if prim is not None:
            LOG.debug("Resolved %s as %s via %s remap under %s", path, candidate, heuristic, base)
            return ResolvedPath(prim, remap=heuristic)
    return None


# ---------------- Binding ----------------

def _binding_relationships(prim: Prim) -> Iterator[Tuple[str, List[str]]]:
    direct = prim.get(BINDING_RELATIONSHIP)
    if direct is not None and direct.targets:
        yield BINDING_RELATIONSHIP, direct.targets
    for name, prop in prim.properties.items():
        if name == BINDING_RELATIONSHIP or not name.startswith(BINDING_RELATIONSHIP):
            continue
        if prop.targets:
            yield name, prop.targets


def resolve_material_binding(
    prim: Prim,
    root: Prim,
    stop_at: Optional[Prim] = None,
) -> Optional[MaterialBinding]:
    """Nearest inherited material binding, not walking past ``stop_at``."""
    node: Optional[Prim] = prim
    while node is not None:
        for rel_name, targets in _binding_relationships(node):
            for target in targets:
                resolved = resolve_prim_path(root, target, anchor=node, boundary=stop_at)
                if resolved is None:
                    LOG.debug("Binding %s on %s targets missing prim %s", rel_name, node.path, target)
                    continue
                return MaterialBinding(
                    material=resolved.prim,
                    bound_on=node,
                    relationship=rel_name,
                    remap=resolved.remap,
                )
        if stop_at is not None and node is stop_at:
            break
        node = node.parent
    return None


# ---------------- Connections ----------------

def _split_output(target: str) -> Tuple[str, Optional[str]]:
    prim_path, prop = split_property_path(target)
    return prim_path, prop


def resolve_connection(
    prim: Prim,
    prop_name: str,
    root: Prim,
    *,
    boundary: Optional[Prim] = None,
) -> Optional[ConnectedOutput]:
    prop = prim.get(prop_name)
    if prop is None or not prop.connections:
        return None
    prim_path, output = _split_output(prop.connections[0])
    resolved = resolve_prim_path(root, prim_path, anchor=prim, boundary=boundary)
    if resolved is None:
        LOG.debug("Connection %s.%s -> %s does not resolve", prim.path, prop_name, prop.connections[0])
        return None
    return ConnectedOutput(prim=resolved.prim, output=output)


def resolve_input(
    prim: Prim,
    name: str,
    root: Prim,
    *,
    boundary: Optional[Prim] = None,
    _depth: int = 0,
) -> Optional[InputValue]:
    """Evaluate ``inputs:<name>`` following interface connections.

    Connections to another prim's ``inputs:*`` (material or node-graph
    interface inputs) are followed until a constant or a node output is found.
    """
    prop_name = name if name.startswith("inputs:") or name.startswith("outputs:") else f"inputs:{name}"
    prop = prim.get(prop_name)
    if prop is None:
        return None
    if not prop.connections:
        return InputValue(value=get_prop(prim, prop_name)) if prop.default is not None or prop.time_samples else None
    if _depth >= MAX_CONNECTION_DEPTH:
        LOG.debug("Connection chain too deep at %s.%s", prim.path, prop_name)
        return None
    connected = resolve_connection(prim, prop_name, root, boundary=boundary)
    if connected is None:
        return InputValue(value=prop.default) if prop.default is not None else None
    output = connected.output or ""
    if output.startswith("inputs:"):
        return resolve_input(connected.prim, output, root, boundary=boundary, _depth=_depth + 1)
    if output.startswith("outputs:") and connected.prim.type_name == "NodeGraph":
        upstream = resolve_input(connected.prim, output, root, boundary=boundary, _depth=_depth + 1)
        if upstream is not None:
            return upstream
    return InputValue(source=connected)


# ---------------- Shader lookup ----------------

def shader_id(prim: Prim) -> Optional[str]:
    return as_token(get_prop(prim, "info:id"))


def mdl_sub_identifier(prim: Prim) -> Optional[str]:
    return as_token(get_prop(prim, "info:mdl:sourceAsset:subIdentifier"))


def _is_shader_like(prim: Prim) -> bool:
    return prim.type_name == "Shader" or prim.has("info:id") or prim.has("info:mdl:sourceAsset")


def _follow_nodegraph(node: Prim, root: Prim, boundary: Optional[Prim], depth: int) -> Optional[Prim]:
    if node.type_name != "NodeGraph":
        return node
    if depth >= MAX_NODEGRAPH_DEPTH:
        LOG.debug("NodeGraph nesting too deep at %s", node.path)
        return None
    for name, prop in node.properties.items():
        if not name.startswith("outputs:") or not prop.connections:
            continue
        connected = resolve_connection(node, name, root, boundary=boundary)
        if connected is None:
            continue
        found = _follow_nodegraph(connected.prim, root, boundary, depth + 1)
        if found is not None:
            return found
    return None


def _scan_for_shader(prim: Prim) -> Optional[Prim]:
    for child in prim.children.values():
        if _is_shader_like(child):
            return child
        found = _scan_for_shader(child)
        if found is not None:
            return found
    return None


def resolve_surface_shader(
    material: Prim,
    root: Prim,
    *,
    boundary: Optional[Prim] = None,
) -> Optional[Prim]:
    if material.type_name == "Shader":
        return material
    for output_name in SURFACE_OUTPUTS:
        prop = material.get(output_name)
        if prop is None or not prop.connections:
            continue
        target_path, _ = _split_output(prop.connections[0])
        resolved = resolve_prim_path(root, target_path, anchor=material, boundary=boundary)
        target = resolved.prim if resolved is not None else None
        if target is None:
            # Connections copied from another layer: try a child with the same name.
            target = material.children.get(target_path.rsplit("/", 1)[-1])
        if target is None:
            continue
        shader = _follow_nodegraph(target, root, boundary, 0)
        if shader is not None:
            return shader
    shader = _scan_for_shader(material)
    if shader is not None:
        LOG.debug("Material %s has no usable surface output; using %s", material.path, shader.path)
    return shader

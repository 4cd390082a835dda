"""Recursive realization of a prim tree into a scene graph.

One pass walks the :class:`~usdrealize.prims.SceneNode` tree depth first.
Every non-shading prim gets a transform container; its schema type decides
which draw objects (if any) are emitted into that container.  Skinned meshes
whose skeleton has not been visited yet are emitted as static placeholders and
completed from the :class:`~usdrealize.skinning.SkinBindingQueue`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .animation import AnimatedNodeRegistry, AnimationPlayer, state_for_stage
from .config.realize_config import RealizeConfig
from .curves import build_curves, build_points
from .errors import RealizeError
from .instancer import PrototypeCache, expand_point_instancer
from .lights import build_light, is_light
from .materials import PRIMITIVE_ROUGHNESS, UNBOUND_ROUGHNESS, MaterialResolver
from .mesh_builder import build_mesh_geometry, compute_points_bounds, extent_is_empty
from .primitives import GPRIM_TYPES, box_from_bounds, build_gprim_geometry
from .prims import Prim, SceneNode, build_subtree_node, build_tree, find_prim_by_path
from .scene import Group, InstancedMesh, Light, LineSegments, Mesh, Object3D, Points
from .shading import resolve_material_binding
from .skinning import (
    PendingSkinBinding,
    RealizedSkeleton,
    SkinBindingQueue,
    animation_source_path,
    apply_skel_animation,
    attach_skinned_mesh,
    bind_skinned_mesh,
    build_skeleton,
    joint_order_for,
    read_skin_influences,
    skel_animation_is_animated,
    skeleton_path_for,
)
from .textures import AssetResolver, TextureLoader
from .time_eval import as_float, as_token, get_prop_at_time, prop_has_animation
from .utils.matrix_utils import axis_rotation_matrix, scale_matrix
from .xform import apply_xform_ops, prim_has_animated_xform, resets_xform_stack

LOG = logging.getLogger(__name__)

SHADING_TYPES = ("Material", "Shader", "NodeGraph", "GeomSubset")


# ---------------- Pass state ----------------

@dataclass
class RealizeStats:
    prims: int = 0
    meshes: int = 0
    skinned_meshes: int = 0
    instanced_meshes: int = 0
    points: int = 0
    curves: int = 0
    lights: int = 0
    skeletons: int = 0
    stand_ins: int = 0
    skipped: int = 0
    failed: int = 0
    deferred_bindings: int = 0
    unresolved_bindings: int = 0
    materials: int = 0
    binding_remaps: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class RealizeContext:
    root: Prim
    config: RealizeConfig
    resolver: MaterialResolver
    registry: AnimatedNodeRegistry
    helpers: Group
    textures: Optional[TextureLoader] = None
    resolve_asset_url: Optional[AssetResolver] = None
    queue: SkinBindingQueue = field(default_factory=SkinBindingQueue)
    skeletons: Dict[str, RealizedSkeleton] = field(default_factory=dict)
    prototypes: PrototypeCache = field(default_factory=PrototypeCache)
    stats: RealizeStats = field(default_factory=RealizeStats)
    logger: Optional[logging.Logger] = None

    @property
    def log(self) -> logging.Logger:
        return self.logger or LOG

    @property
    def time(self) -> Optional[float]:
        return self.config.time

    def resolve_asset(self, asset_path: str, from_identifier: Optional[str] = None) -> Optional[str]:
        if self.textures is not None:
            return self.textures.resolve(asset_path, from_identifier)
        if self.resolve_asset_url is not None:
            return self.resolve_asset_url(asset_path, from_identifier)
        return None


@dataclass
class RealizedScene:
    scene: Group
    helpers: Group
    registry: AnimatedNodeRegistry
    player: AnimationPlayer
    skeletons: Dict[str, RealizedSkeleton]
    stats: RealizeStats
    textures: Optional[TextureLoader] = None
    material_remaps: List[Tuple[str, str, str]] = field(default_factory=list)

    @property
    def content(self) -> Object3D:
        """Container for the stage root (carries the unit / up-axis correction)."""
        return self.scene.children[0] if self.scene.children else self.scene

    def summary(self) -> Dict[str, object]:
        return {
            "stats": self.stats.to_dict(),
            "animation": self.player.state.to_dict(),
            "animated": self.registry.counts(),
            "skeletons": sorted(self.skeletons),
            "material_remaps": [list(entry) for entry in self.material_remaps],
        }


# ---------------- Traversal ----------------

def realize_prim(
    ctx: RealizeContext,
    node: SceneNode,
    parent: Object3D,
    *,
    prototype_root: Optional[Prim] = None,
) -> Optional[Object3D]:
    """Realize ``node`` and its subtree under ``parent``; returns the container."""
    prim = node.prim
    if node.type_name in SHADING_TYPES:
        return None
    ctx.stats.prims += 1

    container = Group(node.path)
    container.user_data["usd_type"] = node.type_name
    parent.add(container)

    apply_xform_ops(container, prim, ctx.time)
    if prototype_root is None and _xform_is_animated(prim):
        ctx.registry.register_xform(container, prim)
    if as_token(get_prop_at_time(prim, "visibility", ctx.time)) == "invisible":
        container.visible = False

    try:
        _dispatch(ctx, node, container, prototype_root)
    except RealizeError:
        raise
    except Exception:
        ctx.stats.failed += 1
        ctx.log.warning("Failed to realize %s (%s)", node.path, node.type_name or "untyped", exc_info=True)

    if node.type_name == "PointInstancer":
        return container
    for child in node.children:
        realize_prim(ctx, child, container, prototype_root=prototype_root)
    return container


def _xform_is_animated(prim: Prim) -> bool:
    if prim_has_animated_xform(prim):
        return True
    # reset stacks track moving ancestors
    return resets_xform_stack(prim) and any(prim_has_animated_xform(a) for a in prim.ancestors())


def _dispatch(ctx: RealizeContext, node: SceneNode, container: Object3D, prototype_root: Optional[Prim]) -> None:
    prim = node.prim
    kind = node.type_name
    if kind == "Mesh":
        _realize_mesh(ctx, prim, container, prototype_root)
    elif kind == "BasisCurves":
        boundary = ctx.resolver.binding_root(prim, prototype_root)
        material = ctx.resolver.resolve(prim, boundary=boundary)
        lines = build_curves(prim, material=material, time=ctx.time, logger=ctx.log)
        if lines is not None:
            container.add(lines)
            ctx.stats.curves += 1
    elif kind == "Points":
        cloud = build_points(prim, time=ctx.time, logger=ctx.log)
        if cloud is not None:
            container.add(cloud)
            ctx.stats.points += 1
            if prototype_root is None and prop_has_animation(prim, "points"):
                ctx.registry.register_points(prim, cloud.geometry, node=cloud)
    elif kind == "PointInstancer":
        _realize_instancer(ctx, prim, container)
    elif is_light(kind):
        light = build_light(prim, time=ctx.time, resolve_asset_url=ctx.resolve_asset, logger=ctx.log)
        if light is not None:
            container.add(light)
            ctx.stats.lights += 1
    elif kind == "Skeleton":
        _realize_skeleton(ctx, prim, container, prototype_root)
    elif kind in GPRIM_TYPES:
        _realize_gprim(ctx, prim, container, prototype_root)


# ---------------- Meshes ----------------

def _has_subset_binding(ctx: RealizeContext, prim: Prim, boundary: Optional[Prim]) -> bool:
    return any(
        child.type_name == "GeomSubset" and resolve_material_binding(child, ctx.root, boundary) is not None
        for child in prim.children.values()
    )


def _realize_mesh(ctx: RealizeContext, prim: Prim, container: Object3D, prototype_root: Optional[Prim]) -> None:
    log = ctx.log
    if extent_is_empty(prim):
        log.debug("Mesh %s has an empty or inverted extent; not rendering it.", prim.path)
        ctx.stats.skipped += 1
        return

    boundary = ctx.resolver.binding_root(prim, prototype_root)
    material, bound = ctx.resolver.material_for(prim, boundary=boundary, unbound_roughness=UNBOUND_ROUGHNESS)
    result = build_mesh_geometry(prim, time=ctx.time, config=ctx.config, logger=log)
    if result is None:
        bounds = compute_points_bounds(get_prop_at_time(prim, "points", ctx.time))
        if bounds is None:
            ctx.stats.skipped += 1
            return
        stand_in = Mesh(box_from_bounds(*bounds), material, f"{prim.path}/bounds")
        stand_in.user_data["stand_in"] = True
        container.add(stand_in)
        ctx.stats.stand_ins += 1
        return

    geometry = result.geometry
    bound = bound or _has_subset_binding(ctx, prim, boundary)
    if result.has_vertex_colors and not bound:
        material.vertex_colors = True
        material.color = (1.0, 1.0, 1.0)
    slot = ctx.resolver.subset_materials(prim, geometry, material, boundary=boundary)

    skel_path = skeleton_path_for(prim)
    influences = read_skin_influences(prim) if skel_path else None
    if skel_path and influences is not None and prototype_root is None:
        mesh = _realize_skinned(ctx, prim, container, geometry, slot, skel_path, influences)
    else:
        mesh = Mesh(geometry, slot, prim.path)
        container.add(mesh)
        ctx.stats.meshes += 1

    if prototype_root is None and prop_has_animation(prim, "points"):
        if result.subdivided:
            log.debug("Mesh %s is subdivided; point animation is not tracked.", prim.path)
        else:
            ctx.registry.register_points(prim, geometry, node=mesh)


def _realize_skinned(
    ctx: RealizeContext,
    prim: Prim,
    container: Object3D,
    geometry,
    slot,
    skel_path: str,
    influences,
) -> Mesh:
    skel_prim = find_prim_by_path(ctx.root, skel_path)
    joint_order = joint_order_for(prim, skel_prim)
    anim_path = animation_source_path(prim)
    animation = find_prim_by_path(ctx.root, anim_path) if anim_path else None

    realized = ctx.skeletons.get(skel_path)
    if realized is not None:
        mesh = bind_skinned_mesh(geometry, slot, realized, influences, joint_order, name=prim.path)
        attach_skinned_mesh(mesh, container, realized)
        ctx.stats.skinned_meshes += 1
        if animation is not None:
            _attach_animation(ctx, realized, animation)
        return mesh

    placeholder = Mesh(geometry, slot, prim.path)
    placeholder.user_data["skin_pending"] = skel_path
    container.add(placeholder)
    ctx.queue.defer(
        PendingSkinBinding(
            skeleton_path=skel_path,
            mesh_path=prim.path,
            placeholder=placeholder,
            geometry=geometry,
            material=slot,
            influences=influences,
            joint_order=joint_order,
            animation=animation,
        )
    )
    ctx.stats.deferred_bindings += 1
    return placeholder


def _realize_gprim(ctx: RealizeContext, prim: Prim, container: Object3D, prototype_root: Optional[Prim]) -> None:
    geometry = build_gprim_geometry(prim, time=ctx.time, logger=ctx.log)
    if geometry is None:
        ctx.stats.skipped += 1
        return
    boundary = ctx.resolver.binding_root(prim, prototype_root)
    material, _bound = ctx.resolver.material_for(prim, boundary=boundary, unbound_roughness=PRIMITIVE_ROUGHNESS)
    container.add(Mesh(geometry, material, prim.path))
    ctx.stats.meshes += 1


# ---------------- Skeletons ----------------

def _skeleton_animation(ctx: RealizeContext, prim: Prim) -> Optional[Prim]:
    """``skel:animationSource`` on the skeleton or its enclosing prims."""
    for node in [prim, *prim.ancestors()]:
        path = animation_source_path(node)
        if path:
            return find_prim_by_path(ctx.root, path)
    return None


def _attach_animation(ctx: RealizeContext, realized: RealizedSkeleton, animation: Prim) -> None:
    if realized.animation is not None:
        return
    realized.animation = animation
    apply_skel_animation(realized, animation, ctx.time)
    if skel_animation_is_animated(animation):
        ctx.registry.register_skeleton(realized, animation)


def _realize_skeleton(ctx: RealizeContext, prim: Prim, container: Object3D, prototype_root: Optional[Prim]) -> None:
    if prototype_root is not None:
        ctx.log.debug("Skeleton %s inside prototype %s is not realized", prim.path, prototype_root.path)
        return
    realized = build_skeleton_node(ctx, prim, container)
    if realized is None:
        ctx.stats.skipped += 1
        return
    animation = _skeleton_animation(ctx, prim)
    if animation is not None:
        _attach_animation(ctx, realized, animation)
    for entry, _mesh in ctx.queue.resolve(realized):
        ctx.stats.skinned_meshes += 1
        if entry.animation is not None:
            _attach_animation(ctx, realized, entry.animation)


def build_skeleton_node(ctx: RealizeContext, prim: Prim, container: Object3D) -> Optional[RealizedSkeleton]:
    helpers_parent = ctx.helpers if ctx.config.skeleton_helpers else None
    realized = build_skeleton(prim, container, helpers_parent=helpers_parent, time=ctx.time, logger=ctx.log)
    if realized is not None:
        ctx.skeletons[prim.path] = realized
        ctx.stats.skeletons += 1
    return realized


# ---------------- Instancers ----------------

def _realize_instancer(ctx: RealizeContext, prim: Prim, container: Object3D) -> None:
    def _realize_prototype(proto: Prim, staging: Object3D) -> None:
        realize_prim(ctx, build_subtree_node(proto), staging, prototype_root=proto)

    emitted = expand_point_instancer(
        prim,
        container,
        ctx.root,
        realize=_realize_prototype,
        cache=ctx.prototypes,
        time=ctx.time,
        logger=ctx.log,
    )
    for node in emitted:
        if isinstance(node, InstancedMesh):
            ctx.stats.instanced_meshes += 1
        else:
            ctx.stats.meshes += 1


# ---------------- Stage units ----------------

def stage_root_matrix(root: Prim, config: RealizeConfig) -> np.ndarray:
    """Scale to meters and rotate a Z-up stage into the configured up axis."""
    mat = np.eye(4, dtype=np.float64)
    if config.apply_stage_units:
        meters = config.meters_per_unit
        if meters is None:
            meters = as_float(root.metadata.get("metersPerUnit"))
        if meters is not None and meters > 0.0 and meters != 1.0:
            mat = scale_matrix((meters, meters, meters)) @ mat
    stage_up = str(root.metadata.get("upAxis") or "Y").upper()
    if stage_up == "Z" and config.up_axis == "Y":
        mat = axis_rotation_matrix("X", -90.0) @ mat
    elif stage_up == "Y" and config.up_axis == "Z":
        mat = axis_rotation_matrix("X", 90.0) @ mat
    return mat


# ---------------- Entry points ----------------

def _count_nodes(scene: Object3D, stats: RealizeStats) -> None:
    stats.materials = 0
    seen = set()
    for node in scene.traverse():
        material = getattr(node, "material", None)
        if material is None:
            continue
        for item in material if isinstance(material, list) else [material]:
            if id(item) not in seen:
                seen.add(id(item))
                stats.materials += 1


def realize_scene(
    root: Prim,
    *,
    config: Optional[RealizeConfig] = None,
    resolve_asset_url: Optional[AssetResolver] = None,
    textures: Optional[TextureLoader] = None,
    logger: Optional[logging.Logger] = None,
) -> RealizedScene:
    """Realize the whole tree under ``root`` in one pass."""
    log = logger or LOG
    cfg = config or RealizeConfig()
    if textures is None:
        textures = TextureLoader(resolve_asset_url, max_workers=cfg.texture_workers, logger=log)
    registry = AnimatedNodeRegistry(logger=log)
    helpers = Group("helpers")
    ctx = RealizeContext(
        root=root,
        config=cfg,
        resolver=MaterialResolver(root, textures=textures, config=cfg, logger=log),
        registry=registry,
        helpers=helpers,
        textures=textures,
        resolve_asset_url=resolve_asset_url,
        queue=SkinBindingQueue(logger=log),
        logger=log,
    )

    scene = Group("scene")
    tree = build_tree(root)
    if tree is not None:
        content = realize_prim(ctx, tree, scene)
        if content is not None:
            content.set_matrix(stage_root_matrix(root, cfg) @ content.local_matrix())

    bound, unresolved = ctx.queue.flush(ctx.skeletons)
    for entry, _mesh in bound:
        ctx.stats.skinned_meshes += 1
        realized = ctx.skeletons.get(entry.skeleton_path)
        if realized is not None and entry.animation is not None:
            _attach_animation(ctx, realized, entry.animation)
    ctx.stats.unresolved_bindings = len(unresolved)
    ctx.stats.meshes += len(unresolved)
    ctx.stats.binding_remaps = len(ctx.resolver.remaps)
    _count_nodes(scene, ctx.stats)

    state = state_for_stage(root, cfg.frames_per_second)
    if cfg.time is not None:
        state.current_time = cfg.time
    player = AnimationPlayer(registry, state)
    log.debug(
        "Realized %d prims: %d meshes, %d skinned, %d instanced, %d lights",
        ctx.stats.prims,
        ctx.stats.meshes,
        ctx.stats.skinned_meshes,
        ctx.stats.instanced_meshes,
        ctx.stats.lights,
    )
    return RealizedScene(
        scene=scene,
        helpers=helpers,
        registry=registry,
        player=player,
        skeletons=ctx.skeletons,
        stats=ctx.stats,
        textures=textures,
        material_remaps=list(ctx.resolver.remaps),
    )


class SceneRealizer:
    """Runs realization passes, coalescing requests that arrive mid-pass.

    A request made while a pass is running (from the same thread inside a
    callback, or from another thread) only marks the realizer dirty; the
    running pass then performs exactly one follow-up pass.
    """

    def __init__(
        self,
        source: Callable[[], Prim],
        *,
        config: Optional[RealizeConfig] = None,
        resolve_asset_url: Optional[AssetResolver] = None,
        on_realized: Optional[Callable[[RealizedScene], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._source = source
        self.config = config or RealizeConfig()
        self._resolve_asset_url = resolve_asset_url
        self._on_realized = on_realized
        self._log = logger or LOG
        self._lock = threading.Lock()
        self._running = False
        self._rerun = False
        self.passes = 0
        self.latest: Optional[RealizedScene] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def request(self) -> Optional[RealizedScene]:
        """Realize now, or schedule one follow-up pass if a pass is in flight."""
        with self._lock:
            if self._running:
                self._rerun = True
                self._log.debug("Realization already running; coalescing request")
                return None
            self._running = True
        try:
            while True:
                with self._lock:
                    self._rerun = False
                result = self._run_once()
                with self._lock:
                    if not self._rerun:
                        self._running = False
                        return result
        except BaseException:
            with self._lock:
                self._running = False
                self._rerun = False
            raise

    def _run_once(self) -> RealizedScene:
        previous = self.latest
        root = self._source()
        result = realize_scene(root, config=self.config, resolve_asset_url=self._resolve_asset_url, logger=self._log)
        self.passes += 1
        self.latest = result
        if previous is not None and previous.textures is not None:
            previous.textures.shutdown(wait_for_pending=False)
        if self._on_realized is not None:
            self._on_realized(result)
        return result


def iter_draw_objects(scene: Object3D):
    """Mesh-like nodes of a realized scene (meshes, points, lines, lights)."""
    for node in scene.traverse():
        if isinstance(node, (Mesh, Points, LineSegments, Light)):
            yield node


__all__ = [
    "RealizeContext",
    "RealizeStats",
    "RealizedScene",
    "SceneRealizer",
    "iter_draw_objects",
    "realize_prim",
    "realize_scene",
    "stage_root_matrix",
]

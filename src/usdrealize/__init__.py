from . import api
from .animation import AnimatedNodeRegistry, AnimationPlayer, AnimationState
from .api import (
    REALIZE_DEFAULTS,
    RealizeDefaults,
    RealizeSettings,
    load_config,
    make_realizer,
    realize,
    realize_tree,
)
from .config.realize_config import RealizeConfig
from .errors import RealizeError, StageLoadError
from .prims import Prim, Property, SceneNode, build_tree, define_prim, make_stage_root
from .realize import RealizedScene, RealizeStats, SceneRealizer, realize_scene
from .scene import (
    BufferGeometry,
    Group,
    InstancedMesh,
    Light,
    LineSegments,
    MaterialDescriptor,
    Mesh,
    Object3D,
    Points,
    SkinnedMesh,
)
from .textures import TextureLoader

__all__ = [
    "api",
    "realize",
    "realize_tree",
    "realize_scene",
    "make_realizer",
    "load_config",
    "RealizeDefaults",
    "RealizeSettings",
    "REALIZE_DEFAULTS",
    "RealizeConfig",
    "RealizeError",
    "StageLoadError",
    "RealizedScene",
    "RealizeStats",
    "SceneRealizer",
    "AnimatedNodeRegistry",
    "AnimationPlayer",
    "AnimationState",
    "Prim",
    "Property",
    "SceneNode",
    "build_tree",
    "define_prim",
    "make_stage_root",
    "BufferGeometry",
    "Group",
    "InstancedMesh",
    "Light",
    "LineSegments",
    "MaterialDescriptor",
    "Mesh",
    "Object3D",
    "Points",
    "SkinnedMesh",
    "TextureLoader",
]

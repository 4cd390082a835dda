"""Shader families understood by the resolver.

Each family turns one terminal shader prim into a :class:`MaterialDescriptor`.
Dispatch happens once, on the shader's declared identifier, in
:func:`build_material`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from .config.realize_config import RealizeConfig
from .prims import Prim
from .scene import Color, MaterialDescriptor, TextureBinding, TexturePatch, hex_color
from .shading import ConnectedOutput, InputValue, mdl_sub_identifier, resolve_input, shader_id
from .textures import (
    TextureLoader,
    alpha_to_green,
    guess_solid_color_from_asset_path,
    uv_transform_matrix,
    wrap_mode,
)
from .time_eval import as_bool, as_float, as_token, as_vec, get_prop

LOG = logging.getLogger(__name__)

PREVIEW_SURFACE = "preview_surface"
STANDARD_SURFACE = "standard_surface"
OMNI_PBR = "omni_pbr"

DEFAULT_GRAY = 0x888888
IOR_RANGE = (1.0, 2.333)

_PREVIEW_IDS = ("UsdPreviewSurface", "ND_UsdPreviewSurface_surfaceshader")
_STANDARD_SURFACE_IDS = ("ND_standard_surface_surfaceshader",)
_UV_TEXTURE_IDS = ("UsdUVTexture",)
_MTLX_ADDRESS_MODES = {"periodic": "repeat", "mirror": "mirror", "clamp": "clamp", "constant": "clamp"}


@dataclass
class ShadingContext:
    root: Prim
    boundary: Optional[Prim] = None
    textures: Optional[TextureLoader] = None
    config: Optional[RealizeConfig] = None
    asset_identifier: Optional[str] = None
    logger: Optional[logging.Logger] = None

    @property
    def log(self) -> logging.Logger:
        return self.logger or LOG

    def input(self, prim: Prim, name: str) -> Optional[InputValue]:
        return resolve_input(prim, name, self.root, boundary=self.boundary)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, float(value)))


def default_material(name: str = "default", *, roughness: float = 0.8, color: Optional[Color] = None) -> MaterialDescriptor:
    return MaterialDescriptor(
        name=name,
        shader_family="default",
        color=color or hex_color(DEFAULT_GRAY),
        roughness=roughness,
        metalness=0.0,
    )


def classify_shader(shader: Prim) -> Optional[str]:
    sid = shader_id(shader)
    if sid in _PREVIEW_IDS:
        return PREVIEW_SURFACE
    if sid in _STANDARD_SURFACE_IDS:
        return STANDARD_SURFACE
    if mdl_sub_identifier(shader) == "OmniPBR":
        return OMNI_PBR
    asset = get_prop(shader, "info:mdl:sourceAsset")
    if isinstance(asset, str) and asset.replace("\\", "/").rsplit("/", 1)[-1] == "OmniPBR.mdl":
        return OMNI_PBR
    return None


# ---------------- Value helpers ----------------

def _const_color(value: InputValue | None) -> Optional[Color]:
    if value is None or value.is_connected:
        return None
    vec = as_vec(value.value, 3)
    return (vec[0], vec[1], vec[2]) if vec else None


def _const_float(value: InputValue | None) -> Optional[float]:
    if value is None or value.is_connected:
        return None
    return as_float(value.value)


def _output_channel(output: Optional[str]) -> Optional[str]:
    if not output:
        return None
    return output.split(":", 1)[1] if ":" in output else output


# ---------------- Texture node readers ----------------

def _read_st_chain(tex_prim: Prim, ctx: ShadingContext, binding: TextureBinding) -> None:
    st = ctx.input(tex_prim, "st")
    if st is None or st.source is None:
        return
    node = st.source.prim
    if shader_id(node) == "UsdTransform2d":
        scale = as_vec(get_prop(node, "inputs:scale"), 2) or (1.0, 1.0)
        rotation = as_float(get_prop(node, "inputs:rotation"), 0.0) or 0.0
        translation = as_vec(get_prop(node, "inputs:translation"), 2) or (0.0, 0.0)
        binding.uv_transform = uv_transform_matrix(scale, rotation, translation)
        upstream = ctx.input(node, "in")
        node = upstream.source.prim if upstream is not None and upstream.source is not None else None
    if node is not None:
        varname = as_token(get_prop(node, "inputs:varname"))
        if varname:
            binding.uv_set = varname


def read_uv_texture(source: ConnectedOutput, ctx: ShadingContext) -> Optional[TextureBinding]:
    """Texture binding for a ``UsdUVTexture`` (or MaterialX image) node output."""
    tex = source.prim
    file_value = ctx.input(tex, "file")
    asset = file_value.value if file_value is not None and not file_value.is_connected else None
    if not isinstance(asset, str) or not asset:
        return None
    sid = shader_id(tex) or ""
    binding = TextureBinding(asset_path=asset, channel=_output_channel(source.output))
    if sid in _UV_TEXTURE_IDS:
        binding.wrap_s = wrap_mode(as_token(get_prop(tex, "inputs:wrapS")) or "repeat")
        binding.wrap_t = wrap_mode(as_token(get_prop(tex, "inputs:wrapT")) or "repeat")
        binding.color_space = as_token(get_prop(tex, "inputs:sourceColorSpace")) or "auto"
        binding.scale = as_vec(get_prop(tex, "inputs:scale"), 4) or binding.scale
        binding.bias = as_vec(get_prop(tex, "inputs:bias"), 4) or binding.bias
        _read_st_chain(tex, ctx, binding)
    else:
        u_mode = as_token(get_prop(tex, "inputs:uaddressmode"))
        v_mode = as_token(get_prop(tex, "inputs:vaddressmode"))
        binding.wrap_s = wrap_mode(_MTLX_ADDRESS_MODES.get(u_mode or "periodic", "repeat"))
        binding.wrap_t = wrap_mode(_MTLX_ADDRESS_MODES.get(v_mode or "periodic", "repeat"))
        tiling = as_vec(get_prop(tex, "inputs:uvtiling"), 2)
        if tiling:
            binding.uv_transform = uv_transform_matrix(tiling, 0.0, (0.0, 0.0))
    return binding


def _asset_binding(value: Any) -> Optional[TextureBinding]:
    if isinstance(value, str) and value:
        return TextureBinding(asset_path=value)
    return None


def attach_texture(
    ctx: ShadingContext,
    material: MaterialDescriptor,
    slot: str,
    binding: TextureBinding,
    *,
    values: Optional[Dict[str, Any]] = None,
    transform_image: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    fallback_color: bool = False,
) -> None:
    """Queue ``binding`` for ``slot``; ``values`` are applied together with the image."""
    patch_values = dict(values or {})
    material.user_data.setdefault("texture_slots", []).append(slot)

    if ctx.textures is None:
        material.apply_patch(TexturePatch(slot=slot, texture=binding, values=patch_values))
        return

    def _loaded(image: np.ndarray) -> TexturePatch:
        binding.image = transform_image(image) if transform_image is not None else image
        return TexturePatch(slot=slot, texture=binding, values=patch_values)

    def _failed(_exc: BaseException) -> Optional[TexturePatch]:
        guess_enabled = ctx.config.guess_texture_colors if ctx.config is not None else True
        if not (fallback_color and guess_enabled):
            return None
        guessed = guess_solid_color_from_asset_path(binding.asset_path)
        if guessed is None:
            return None
        ctx.log.debug("Using color %s guessed from %s", guessed, binding.asset_path)
        return TexturePatch(slot=slot, values={"color": guessed})

    ctx.textures.schedule(material, binding, _loaded, on_failed=_failed, from_identifier=ctx.asset_identifier)


def _tint(binding: TextureBinding, base: Optional[Color] = None) -> Color:
    scale = binding.scale
    tint = base or (1.0, 1.0, 1.0)
    return (tint[0] * scale[0], tint[1] * scale[1], tint[2] * scale[2])


# ---------------- UsdPreviewSurface ----------------

def _texture_source(value: Optional[InputValue], ctx: ShadingContext) -> Optional[TextureBinding]:
    if value is None or value.source is None:
        return None
    return read_uv_texture(value.source, ctx)


def build_preview_surface(shader: Prim, name: str, ctx: ShadingContext) -> MaterialDescriptor:
    mat = MaterialDescriptor(name=name, shader_family=PREVIEW_SURFACE, roughness=0.5, metalness=0.0, side="double")

    diffuse = ctx.input(shader, "diffuseColor")
    color = _const_color(diffuse)
    if color is not None:
        mat.color = color
    elif diffuse is not None and diffuse.source is not None:
        source_id = shader_id(diffuse.source.prim) or ""
        if source_id.startswith("UsdPrimvarReader"):
            mat.vertex_colors = True
        else:
            binding = read_uv_texture(diffuse.source, ctx)
            if binding is not None:
                attach_texture(ctx, mat, "map", binding, values={"color": _tint(binding)}, fallback_color=True)

    roughness = ctx.input(shader, "roughness")
    value = _const_float(roughness)
    if value is not None:
        mat.roughness = _clamp(value)
    else:
        binding = _texture_source(roughness, ctx)
        if binding is not None:
            attach_texture(ctx, mat, "roughness_map", binding, values={"roughness": 1.0})

    metallic = ctx.input(shader, "metallic")
    value = _const_float(metallic)
    if value is not None:
        mat.metalness = _clamp(value)
    else:
        binding = _texture_source(metallic, ctx)
        if binding is not None:
            attach_texture(ctx, mat, "metalness_map", binding, values={"metalness": 1.0})

    emissive = ctx.input(shader, "emissiveColor")
    color = _const_color(emissive)
    if color is not None:
        mat.emissive = color
    else:
        binding = _texture_source(emissive, ctx)
        if binding is not None:
            attach_texture(ctx, mat, "emissive_map", binding, values={"emissive": (1.0, 1.0, 1.0)})

    threshold = _const_float(ctx.input(shader, "opacityThreshold")) or 0.0
    opacity = ctx.input(shader, "opacity")
    value = _const_float(opacity)
    if value is not None:
        mat.opacity = _clamp(value)
        mat.transparent = mat.opacity < 1.0
    else:
        binding = _texture_source(opacity, ctx)
        if binding is not None:
            from_alpha = binding.channel == "a"
            alpha_values: Dict[str, Any] = {"alpha_test": threshold if threshold > 0.0 else 0.5}
            attach_texture(
                ctx,
                mat,
                "alpha_map",
                binding,
                values=alpha_values,
                transform_image=alpha_to_green if from_alpha else None,
            )
    if threshold > 0.0:
        mat.alpha_test = threshold
        mat.transparent = False
        mat.depth_write = True

    ior = _const_float(ctx.input(shader, "ior"))
    if ior is not None:
        mat.ior = _clamp(ior, *IOR_RANGE)
        if ior <= 1.0:
            mat.specular_intensity = 0.0

    clearcoat = ctx.input(shader, "clearcoat")
    value = _const_float(clearcoat)
    if value is not None:
        mat.clearcoat = _clamp(value)
    else:
        binding = _texture_source(clearcoat, ctx)
        if binding is not None:
            coat_values: Dict[str, Any] = {"clearcoat": mat.clearcoat or 1.0}
            if mat.metalness <= 0.0 and mat.roughness >= 0.5:
                coat_values.update(specular_intensity=0.0, env_map_intensity=0.0)
            attach_texture(ctx, mat, "clearcoat_map", binding, values=coat_values)
    coat_roughness = _const_float(ctx.input(shader, "clearcoatRoughness"))
    if coat_roughness is not None:
        mat.clearcoat_roughness = _clamp(coat_roughness)

    normal = _texture_source(ctx.input(shader, "normal"), ctx)
    if normal is not None:
        if normal.scale == (1.0, 1.0, 1.0, 1.0) and normal.bias == (0.0, 0.0, 0.0, 0.0):
            normal.scale, normal.bias = (2.0, 2.0, 2.0, 1.0), (-1.0, -1.0, -1.0, 0.0)
        attach_texture(ctx, mat, "normal_map", normal, values={"normal_scale": (normal.scale[0] / 2.0, normal.scale[1] / 2.0)})

    occlusion = _texture_source(ctx.input(shader, "occlusion"), ctx)
    if occlusion is not None:
        attach_texture(ctx, mat, "ao_map", occlusion)
    return mat


# ---------------- MaterialX standard_surface ----------------

def _mtlx_node_value(source: ConnectedOutput, ctx: ShadingContext) -> Any:
    """Constant carried by a MaterialX ``ND_constant_*`` node, if that is the source."""
    sid = shader_id(source.prim) or ""
    if sid.startswith("ND_constant"):
        value = ctx.input(source.prim, "value")
        if value is not None and not value.is_connected:
            return value.value
    return None


def _mtlx_texture(source: Optional[ConnectedOutput], ctx: ShadingContext, depth: int = 0) -> Optional[TextureBinding]:
    if source is None or depth > 8:
        return None
    node = source.prim
    sid = shader_id(node) or ""
    if node.has("inputs:file"):
        return read_uv_texture(source, ctx)
    if sid.startswith("ND_normalmap") or "normalmap" in sid:
        upstream = ctx.input(node, "in")
        return _mtlx_texture(upstream.source if upstream else None, ctx, depth + 1)
    for input_name in ("in", "in1", "input", "bg"):
        upstream = ctx.input(node, input_name)
        if upstream is not None and upstream.source is not None:
            return _mtlx_texture(upstream.source, ctx, depth + 1)
    return None


def _mtlx_color(shader: Prim, name: str, ctx: ShadingContext) -> Tuple[Optional[Color], Optional[TextureBinding]]:
    value = ctx.input(shader, name)
    if value is None:
        return None, None
    if not value.is_connected:
        return _const_color(value), None
    constant = _mtlx_node_value(value.source, ctx)
    if constant is not None:
        vec = as_vec(constant, 3)
        return ((vec[0], vec[1], vec[2]) if vec else None), None
    return None, _mtlx_texture(value.source, ctx)


def _mtlx_float(shader: Prim, name: str, ctx: ShadingContext) -> Tuple[Optional[float], Optional[TextureBinding]]:
    value = ctx.input(shader, name)
    if value is None:
        return None, None
    if not value.is_connected:
        return as_float(value.value), None
    constant = _mtlx_node_value(value.source, ctx)
    if constant is not None:
        return as_float(constant), None
    return None, _mtlx_texture(value.source, ctx)


def build_standard_surface(shader: Prim, name: str, ctx: ShadingContext) -> MaterialDescriptor:
    mat = MaterialDescriptor(name=name, shader_family=STANDARD_SURFACE, color=(0.8, 0.8, 0.8), roughness=0.2, side="double")

    base_weight, _ = _mtlx_float(shader, "base", ctx)
    color, color_tex = _mtlx_color(shader, "base_color", ctx)
    if color is None and color_tex is None:
        color, color_tex = _mtlx_color(shader, "coat_color", ctx)
    if color is not None:
        weight = 1.0 if base_weight is None else base_weight
        mat.color = (color[0] * weight, color[1] * weight, color[2] * weight)
    if color_tex is not None:
        attach_texture(ctx, mat, "map", color_tex, values={"color": (1.0, 1.0, 1.0)}, fallback_color=True)

    metalness, metal_tex = _mtlx_float(shader, "metalness", ctx)
    if metalness is not None:
        mat.metalness = _clamp(metalness)
    if metal_tex is not None:
        attach_texture(ctx, mat, "metalness_map", metal_tex, values={"metalness": 1.0})

    roughness, rough_tex = _mtlx_float(shader, "specular_roughness", ctx)
    if roughness is None and rough_tex is None:
        roughness, rough_tex = _mtlx_float(shader, "coat_roughness", ctx)
    if roughness is not None:
        mat.roughness = _clamp(roughness)
    if rough_tex is not None:
        attach_texture(ctx, mat, "roughness_map", rough_tex, values={"roughness": 1.0})

    emission, _ = _mtlx_float(shader, "emission", ctx)
    emission_color, emission_tex = _mtlx_color(shader, "emission_color", ctx)
    if emission is not None and emission > 0.0:
        mat.emissive = emission_color or (1.0, 1.0, 1.0)
        mat.emissive_intensity = float(emission)
        if emission_tex is not None:
            attach_texture(ctx, mat, "emissive_map", emission_tex, values={"emissive": (1.0, 1.0, 1.0)})

    coat, _ = _mtlx_float(shader, "coat", ctx)
    if coat is not None:
        mat.clearcoat = _clamp(coat)
    coat_roughness, _ = _mtlx_float(shader, "coat_roughness", ctx)
    if coat_roughness is not None:
        mat.clearcoat_roughness = _clamp(coat_roughness)

    transmission, _ = _mtlx_float(shader, "transmission", ctx)
    if transmission is not None and transmission > 0.0:
        mat.transmission = _clamp(transmission)
        mat.thickness = 0.5
        mat.attenuation_distance = 0.1
        tcolor, _ = _mtlx_color(shader, "transmission_color", ctx)
        if tcolor is not None:
            mat.attenuation_color = tcolor

    opacity, _ = _mtlx_color(shader, "opacity", ctx)
    if opacity is not None:
        mat.opacity = _clamp(sum(opacity) / 3.0)
        mat.transparent = mat.opacity < 1.0

    normal_input = ctx.input(shader, "normal")
    normal_tex = _mtlx_texture(normal_input.source if normal_input else None, ctx)
    if normal_tex is not None:
        attach_texture(ctx, mat, "normal_map", normal_tex)
    return mat


# ---------------- OmniPBR ----------------

def _mdl_value(shader: Prim, name: str, ctx: ShadingContext) -> Any:
    value = ctx.input(shader, name)
    if value is None or value.is_connected:
        return None
    return value.value


def build_omni_pbr(shader: Prim, name: str, ctx: ShadingContext) -> MaterialDescriptor:
    mat = MaterialDescriptor(name=name, shader_family=OMNI_PBR, color=(0.2, 0.2, 0.2), roughness=1.0, side="double")

    color = as_vec(_mdl_value(shader, "diffuse_color_constant", ctx), 3)
    tint = as_vec(_mdl_value(shader, "diffuse_tint", ctx), 3)
    if color is not None:
        mat.color = (color[0], color[1], color[2])
    if tint is not None:
        mat.color = (mat.color[0] * tint[0], mat.color[1] * tint[1], mat.color[2] * tint[2])
    diffuse_tex = _asset_binding(_mdl_value(shader, "diffuse_texture", ctx))
    if diffuse_tex is not None:
        texture_tint = (tint[0], tint[1], tint[2]) if tint is not None else (1.0, 1.0, 1.0)
        attach_texture(ctx, mat, "map", diffuse_tex, values={"color": texture_tint}, fallback_color=True)

    roughness = as_float(_mdl_value(shader, "reflection_roughness_constant", ctx))
    if roughness is not None:
        mat.roughness = _clamp(roughness)
    rough_tex = _asset_binding(_mdl_value(shader, "reflectionroughness_texture", ctx))
    if rough_tex is not None:
        attach_texture(ctx, mat, "roughness_map", rough_tex, values={"roughness": 1.0})

    metallic = as_float(_mdl_value(shader, "metallic_constant", ctx))
    if metallic is None:
        specular_level = as_float(_mdl_value(shader, "specular_level", ctx))
        metallic = specular_level * 0.1 if specular_level is not None else None
    if metallic is not None:
        mat.metalness = _clamp(metallic)
    metal_tex = _asset_binding(_mdl_value(shader, "metallic_texture", ctx))
    if metal_tex is not None:
        attach_texture(ctx, mat, "metalness_map", metal_tex, values={"metalness": 1.0})

    if as_bool(_mdl_value(shader, "enable_emission", ctx), False):
        emissive = as_vec(_mdl_value(shader, "emissive_color", ctx), 3) or (1.0, 0.1, 0.1)
        intensity = as_float(_mdl_value(shader, "emissive_intensity", ctx), 40.0) or 0.0
        mat.emissive = (emissive[0], emissive[1], emissive[2])
        mat.emissive_intensity = intensity / 1000.0
        emissive_tex = _asset_binding(_mdl_value(shader, "emissive_color_texture", ctx))
        if emissive_tex is not None:
            attach_texture(ctx, mat, "emissive_map", emissive_tex, values={"emissive": (1.0, 1.0, 1.0)})

    if as_bool(_mdl_value(shader, "enable_opacity", ctx), False):
        opacity = as_float(_mdl_value(shader, "opacity_constant", ctx), 1.0)
        mat.opacity = _clamp(opacity if opacity is not None else 1.0)
        mat.transparent = mat.opacity < 1.0
        threshold = as_float(_mdl_value(shader, "opacity_threshold", ctx), 0.0) or 0.0
        mat.user_data["opacity_mode"] = _mdl_value(shader, "opacity_mode", ctx)
        if as_bool(_mdl_value(shader, "enable_opacity_texture", ctx), False):
            opacity_tex = _asset_binding(_mdl_value(shader, "opacity_texture", ctx))
            if opacity_tex is not None:
                attach_texture(ctx, mat, "alpha_map", opacity_tex, values={"transparent": True})
        if threshold > 0.0:
            mat.alpha_test = threshold
            mat.transparent = False

    normal_tex = _asset_binding(_mdl_value(shader, "normalmap_texture", ctx))
    if normal_tex is not None:
        attach_texture(ctx, mat, "normal_map", normal_tex)
    return mat


_FAMILY_BUILDERS: Dict[str, Callable[[Prim, str, ShadingContext], MaterialDescriptor]] = {
    PREVIEW_SURFACE: build_preview_surface,
    STANDARD_SURFACE: build_standard_surface,
    OMNI_PBR: build_omni_pbr,
}


def build_material(shader: Optional[Prim], name: str, ctx: ShadingContext) -> MaterialDescriptor:
    """Material for ``shader``; neutral gray when the family is unknown."""
    family = classify_shader(shader) if shader is not None else None
    builder = _FAMILY_BUILDERS.get(family) if family else None
    if builder is None:
        if shader is not None:
            ctx.log.debug("Unsupported shader %s (%s); using default material", shader.path, shader_id(shader))
        return default_material(name, roughness=0.8)
    material = builder(shader, name, ctx)
    material.source_path = shader.path
    return material

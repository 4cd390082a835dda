"""Per-prim material assignment: bindings, sidedness, GeomSubset groups."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config.realize_config import RealizeConfig
from .prims import Prim, find_reference_root
from .scene import BufferGeometry, Color, MaterialDescriptor, MaterialSlot, hex_color
from .shader_families import DEFAULT_GRAY, ShadingContext, build_material, default_material
from .shading import resolve_material_binding, resolve_surface_shader
from .textures import TextureLoader
from .time_eval import as_array, as_bool, as_int_list, as_token, get_prop

LOG = logging.getLogger(__name__)

UNBOUND_ROUGHNESS = 0.9
PRIMITIVE_ROUGHNESS = 0.8


def sidedness(prim: Prim) -> Optional[str]:
    """``"double"``/``"front"`` from ``doubleSided`` (or ``singleSided``); None when unauthored."""
    double = get_prop(prim, "doubleSided")
    single = get_prop(prim, "singleSided")
    if double is None and single is None:
        return None
    if double is not None and as_bool(double):
        return "double"
    if double is None and single is not None and not as_bool(single):
        return "double"
    return "front"


def constant_display_color(prim: Prim) -> Optional[Color]:
    """First ``displayColor`` value when it is constant or uniform across the prim."""
    prop = prim.get("primvars:displayColor")
    if prop is None:
        return None
    values = as_array(get_prop(prim, "primvars:displayColor"), width=3)
    if values is None:
        return None
    interp = prop.interpolation
    if values.shape[0] == 1 or interp in ("constant", "uniform") or np.allclose(values, values[0]):
        return (float(values[0, 0]), float(values[0, 1]), float(values[0, 2]))
    return None


def reference_asset_identifier(prim: Prim) -> Optional[str]:
    """Asset path of the nearest authored reference, used to resolve texture paths."""
    ref_root = find_reference_root(prim)
    if ref_root is None:
        return None
    refs = ref_root.metadata.get("references")
    if isinstance(refs, str):
        return refs
    if isinstance(refs, (list, tuple)) and refs and isinstance(refs[0], str):
        return refs[0]
    return None


class MaterialResolver:
    """Builds and caches material descriptors for a realization pass.

    Descriptors are cached per (material, boundary, sidedness) so texture
    patches land on every mesh sharing the material.
    """

    def __init__(
        self,
        root: Prim,
        *,
        textures: Optional[TextureLoader] = None,
        config: Optional[RealizeConfig] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.root = root
        self.textures = textures
        self.config = config or RealizeConfig()
        self.log = logger or LOG
        self._cache: Dict[Tuple[str, Optional[str], Optional[str]], MaterialDescriptor] = {}
        self.remaps: List[Tuple[str, str, str]] = []

    def __len__(self) -> int:
        return len(self._cache)

    def binding_root(self, prim: Prim, prototype_root: Optional[Prim] = None) -> Optional[Prim]:
        return prototype_root if prototype_root is not None else find_reference_root(prim)

    def resolve(self, prim: Prim, *, boundary: Optional[Prim] = None, side: Optional[str] = None) -> Optional[MaterialDescriptor]:
        """Material bound to ``prim``; ``None`` when nothing is bound."""
        binding = resolve_material_binding(prim, self.root, boundary)
        if binding is None:
            return None
        if binding.remap:
            self.log.info(
                "Material binding on %s resolved to %s by %s path remap",
                binding.bound_on.path,
                binding.material.path,
                binding.remap,
            )
            self.remaps.append((binding.bound_on.path, binding.material.path, binding.remap))
        key = (binding.material.path, boundary.path if boundary is not None else None, side)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        shader = resolve_surface_shader(binding.material, self.root, boundary=boundary)
        ctx = ShadingContext(
            root=self.root,
            boundary=boundary,
            textures=self.textures,
            config=self.config,
            asset_identifier=reference_asset_identifier(shader or binding.material),
            logger=self.log,
        )
        try:
            material = build_material(shader, binding.material.path, ctx)
        except Exception:
            self.log.warning("Material %s could not be built; using default", binding.material.path, exc_info=True)
            material = default_material(binding.material.path)
        if side is not None:
            material.side = side
        if binding.remap:
            material.user_data["binding_remap"] = binding.remap
        self._cache[key] = material
        return material

    def material_for(
        self,
        prim: Prim,
        *,
        boundary: Optional[Prim] = None,
        unbound_roughness: float = UNBOUND_ROUGHNESS,
    ) -> Tuple[MaterialDescriptor, bool]:
        """Material for a gprim and whether it came from a binding."""
        side = sidedness(prim)
        material = self.resolve(prim, boundary=boundary, side=side)
        if material is not None:
            return material, True
        fallback = default_material(f"{prim.path}/default", roughness=unbound_roughness, color=hex_color(DEFAULT_GRAY))
        color = constant_display_color(prim)
        if color is not None:
            fallback.color = color
        if side is not None:
            fallback.side = side
        return fallback, False

    # ---------------- GeomSubset ----------------

    def subset_materials(
        self,
        mesh_prim: Prim,
        geometry: BufferGeometry,
        base: MaterialDescriptor,
        *,
        boundary: Optional[Prim] = None,
    ) -> MaterialSlot:
        """Split ``geometry`` into groups for bound face subsets; returns the material slot."""
        starts = geometry.user_data.get("face_tri_start")
        counts = geometry.user_data.get("face_tri_count")
        tri_total = int(geometry.user_data.get("triangle_count", 0))
        face_total = int(geometry.user_data.get("face_count", 0))
        subsets = [c for c in mesh_prim.children.values() if c.type_name == "GeomSubset"]
        if not subsets or starts is None or counts is None or tri_total <= 0:
            return base

        side = sidedness(mesh_prim)
        picked: List[Tuple[np.ndarray, MaterialDescriptor]] = []
        for subset in subsets:
            element_type = as_token(get_prop(subset, "elementType"))
            if element_type and element_type != "face":
                continue
            faces = np.unique(np.asarray(as_int_list(get_prop(subset, "indices")), dtype=np.int64))
            faces = faces[(faces >= 0) & (faces < face_total)]
            if faces.size == 0:
                continue
            material = self.resolve(subset, boundary=boundary, side=side)
            if material is None:
                continue
            picked.append((faces, material))
        if not picked:
            return base

        geometry.clear_groups()
        covered = np.zeros(tri_total, dtype=bool)
        for slot, (faces, _material) in enumerate(picked, start=1):
            mask = np.zeros(tri_total, dtype=bool)
            for face in faces:
                lo = int(starts[face])
                hi = min(tri_total, lo + int(counts[face]))
                if hi > lo >= 0:
                    mask[lo:hi] = True
            mask &= ~covered
            covered |= mask
            _add_runs(geometry, mask, slot)
        _add_runs(geometry, ~covered, 0)
        geometry.groups.sort(key=lambda g: g.start)
        return [base, *(material for _faces, material in picked)]


def _add_runs(geometry: BufferGeometry, mask: np.ndarray, material_index: int) -> None:
    """Add one group per contiguous run of True triangles (start/count in index units)."""
    if not mask.any():
        return
    padded = np.concatenate(([False], mask, [False])).astype(np.int8)
    edges = np.flatnonzero(np.diff(padded))
    for run_start, run_end in zip(edges[::2], edges[1::2]):
        geometry.add_group(int(run_start) * 3, int(run_end - run_start) * 3, material_index)

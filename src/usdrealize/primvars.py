"""Primvar reading and interpolation-domain resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .prims import Prim
from .time_eval import as_array, sample_property

LOG = logging.getLogger(__name__)

CONSTANT = "constant"
UNIFORM = "uniform"
VERTEX = "vertex"
VARYING = "varying"
FACE_VARYING = "faceVarying"

UV_PRIMVAR_NAMES = ("primvars:st", "primvars:map1", "primvars:uv", "primvars:st0")
COLOR_PRIMVAR_NAMES = ("primvars:displayColor", "primvars:colors")
NORMAL_PRIMVAR_NAMES = ("normals", "primvars:normals")


@dataclass
class MeshTopologyCounts:
    points: int
    corners: int
    faces: int


@dataclass
class Primvar:
    name: str
    values: np.ndarray  # (K, width)
    interpolation: str
    indices: Optional[np.ndarray] = None

    @property
    def element_count(self) -> int:
        return int(self.indices.size if self.indices is not None else self.values.shape[0])

    @property
    def per_face_or_corner(self) -> bool:
        return self.interpolation in (UNIFORM, FACE_VARYING)

    def lookup(self, elements: np.ndarray) -> np.ndarray:
        """Values for the given element ids (after ``indices`` indirection)."""
        elements = np.asarray(elements, dtype=np.int64)
        if self.indices is not None:
            elements = self.indices[np.clip(elements, 0, self.indices.size - 1)]
        return self.values[np.clip(elements, 0, self.values.shape[0] - 1)]


def infer_interpolation(count: int, counts: MeshTopologyCounts) -> str:
    """Classify an element count against mesh topology."""
    if count <= 1:
        return CONSTANT
    if count == counts.points:
        return VERTEX
    if count == counts.corners:
        return FACE_VARYING
    if count == counts.faces:
        return UNIFORM
    return CONSTANT


def _required_count(interpolation: str, counts: MeshTopologyCounts) -> int:
    if interpolation in (VERTEX, VARYING):
        return counts.points
    if interpolation == FACE_VARYING:
        return counts.corners
    if interpolation == UNIFORM:
        return counts.faces
    return 1


def read_primvar(
    prim: Prim,
    name: str,
    counts: MeshTopologyCounts,
    *,
    width: int,
    time: Optional[float] = None,
) -> Optional[Primvar]:
    prop = prim.get(name)
    if prop is None:
        return None
    values = as_array(sample_property(prop, time), width=width)
    if values is None:
        return None

    indices: Optional[np.ndarray] = None
    index_prop = prim.get(f"{name}:indices")
    raw_indices = sample_property(index_prop, time) if index_prop is not None else prop.metadata.get("indices")
    if raw_indices is not None:
        idx = as_array(raw_indices, width=1, dtype=np.int64)
        if idx is not None and idx.size > 0:
            if idx.min() < 0 or idx.max() >= values.shape[0]:
                LOG.debug("Primvar %s on %s has out of range indices; ignoring them", name, prim.path)
            else:
                indices = idx

    element_count = int(indices.size if indices is not None else values.shape[0])
    interpolation = prop.interpolation
    if interpolation == VARYING:
        interpolation = VERTEX
    if interpolation is None:
        interpolation = infer_interpolation(element_count, counts)
    elif element_count < _required_count(interpolation, counts):
        inferred = infer_interpolation(element_count, counts)
        LOG.debug(
            "Primvar %s on %s authored as %s with %d elements; treating as %s",
            name,
            prim.path,
            interpolation,
            element_count,
            inferred,
        )
        interpolation = inferred
    return Primvar(name=name, values=values, interpolation=interpolation, indices=indices)


def read_first_primvar(
    prim: Prim,
    names: Sequence[str],
    counts: MeshTopologyCounts,
    *,
    width: int,
    time: Optional[float] = None,
) -> Optional[Primvar]:
    for name in names:
        primvar = read_primvar(prim, name, counts, width=width, time=time)
        if primvar is not None:
            return primvar
    return None


def element_ids(
    interpolation: str,
    *,
    point_ids: np.ndarray,
    face_ids: np.ndarray,
    corner_ids: np.ndarray,
) -> np.ndarray:
    """Per-output-vertex element ids for a primvar of ``interpolation``."""
    if interpolation in (VERTEX, VARYING):
        return point_ids
    if interpolation == UNIFORM:
        return face_ids
    if interpolation == FACE_VARYING:
        return corner_ids
    return np.zeros_like(point_ids)

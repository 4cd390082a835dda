"""Read a composed ``Usd.Stage`` into the in-memory prim tree.

Composition (sublayers, references, payloads, variants, native instancing)
is left to ``pxr``; this module only copies the composed result.  Instance
proxies are traversed so instanceable prims appear as ordinary subtrees.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import StageLoadError
from .prims import Prim, Property, make_stage_root
from .pxr_utils import Sdf, Usd, UsdGeom, to_python_value

LOG = logging.getLogger(__name__)

PathLike = Union[str, Path]

_PROPERTY_METADATA = ("interpolation", "elementSize")


def load_stage(path: PathLike, *, logger: Optional[logging.Logger] = None):
    """Open ``path`` as a stage; raises :class:`StageLoadError` on failure."""
    log = logger or LOG
    normalized = str(path)
    try:
        stage = Usd.Stage.Open(normalized)
    except Exception as exc:
        log.debug("Usd.Stage.Open failed for %s: %s", normalized, exc)
        raise StageLoadError(normalized, str(exc)) from exc
    if stage is None:
        raise StageLoadError(normalized, "no stage returned")
    return stage


def stage_metadata(stage) -> Dict[str, Any]:
    """Timing and unit metadata copied onto the root prim."""
    meta: Dict[str, Any] = {}
    if stage.HasAuthoredTimeCodeRange():
        meta["startTimeCode"] = float(stage.GetStartTimeCode())
        meta["endTimeCode"] = float(stage.GetEndTimeCode())
    if stage.HasAuthoredMetadata("framesPerSecond"):
        meta["framesPerSecond"] = float(stage.GetFramesPerSecond())
    if stage.HasAuthoredMetadata("timeCodesPerSecond"):
        meta["timeCodesPerSecond"] = float(stage.GetTimeCodesPerSecond())
    if UsdGeom.StageHasAuthoredMetersPerUnit(stage):
        meta["metersPerUnit"] = float(UsdGeom.GetStageMetersPerUnit(stage))
    meta["upAxis"] = str(UsdGeom.GetStageUpAxis(stage))
    root_layer = stage.GetRootLayer()
    if root_layer is not None:
        meta["identifier"] = root_layer.identifier
    return meta


def _reference_identifiers(usd_prim) -> List[str]:
    """Resolved asset paths of the references authored directly on ``usd_prim``."""
    identifiers: List[str] = []
    for spec in usd_prim.GetPrimStack():
        if not spec.hasReferences:
            continue
        for ref in spec.referenceList.GetAddedOrExplicitItems():
            if not ref.assetPath:
                continue
            try:
                identifiers.append(Sdf.ComputeAssetPathRelativeToLayer(spec.layer, ref.assetPath))
            except Exception:
                LOG.debug("Could not anchor reference %s on %s", ref.assetPath, usd_prim.GetPath(), exc_info=True)
                identifiers.append(ref.assetPath)
    return identifiers


def _read_attribute(attr) -> Optional[Property]:
    if not attr.IsAuthored():
        return None
    prop = Property()
    samples = attr.GetTimeSamples()
    if samples:
        prop.time_samples = {float(t): to_python_value(attr.Get(t)) for t in samples}
    if attr.HasAuthoredValue() or not samples:
        prop.default = to_python_value(attr.Get(Usd.TimeCode.Default()))
    for key in _PROPERTY_METADATA:
        if attr.HasAuthoredMetadata(key):
            prop.metadata[key] = attr.GetMetadata(key)
    if attr.HasAuthoredConnections():
        prop.connections = [str(p) for p in attr.GetConnections()]
    return prop


def read_prim(usd_prim, *, logger: Optional[logging.Logger] = None) -> Prim:
    """Copy one composed prim (without children); failures yield an empty stand-in."""
    log = logger or LOG
    path = str(usd_prim.GetPath())
    type_name = str(usd_prim.GetTypeName())
    prim = Prim(path=path, type_name=type_name)
    try:
        prim.metadata["active"] = bool(usd_prim.IsActive())
        if usd_prim.IsInstanceable():
            prim.metadata["instanceable"] = True
        refs = _reference_identifiers(usd_prim)
        if refs:
            prim.metadata["references"] = refs
        for attr in usd_prim.GetAttributes():
            prop = _read_attribute(attr)
            if prop is not None:
                prim.properties[attr.GetName()] = prop
        for rel in usd_prim.GetRelationships():
            targets = [str(p) for p in rel.GetTargets()]
            if targets:
                prim.properties[rel.GetName()] = Property(targets=targets)
    except Exception:
        log.warning("Failed to read prim %s; using an empty stand-in", path, exc_info=True)
        return Prim(path=path, type_name=type_name)
    return prim


def prim_tree_from_stage(stage, *, logger: Optional[logging.Logger] = None) -> Prim:
    """Mirror every active, loaded prim of ``stage`` under a ``/`` root."""
    log = logger or LOG
    root = make_stage_root(**stage_metadata(stage))
    predicate = Usd.TraverseInstanceProxies(Usd.PrimDefaultPredicate)

    stack = [(stage.GetPseudoRoot(), root)]
    count = 0
    while stack:
        usd_parent, parent = stack.pop()
        for usd_child in usd_parent.GetFilteredChildren(predicate):
            child = parent.add_child(read_prim(usd_child, logger=log))
            stack.append((usd_child, child))
            count += 1
    log.debug("Read %d prims from %s", count, root.metadata.get("identifier", "<stage>"))
    return root


def read_stage(path: PathLike, *, logger: Optional[logging.Logger] = None) -> Prim:
    """Open ``path`` and return its composed prim tree."""
    return prim_tree_from_stage(load_stage(path, logger=logger), logger=logger)

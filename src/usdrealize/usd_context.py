from __future__ import annotations

import importlib
import logging
import sys
from typing import Dict, Optional

LOG = logging.getLogger(__name__)

_INITIALIZED = False
_PXR_CACHE: Dict[str, object] = {}


def initialize_usd() -> bool:
    """Import the ``pxr`` package once; idempotent."""
    global _INITIALIZED
    if _INITIALIZED:
        return True
    importlib.import_module("pxr")
    _INITIALIZED = True
    LOG.debug("USD bindings initialised")
    return True


def _clear_pxr_modules() -> None:
    for name in list(sys.modules):
        if name == "pxr" or name.startswith("pxr."):
            sys.modules.pop(name, None)


def get_pxr_module(name: str):
    if name not in _PXR_CACHE:
        if not _INITIALIZED:
            initialize_usd()
        _PXR_CACHE[name] = importlib.import_module(f"pxr.{name}")
    return _PXR_CACHE[name]


def get_pxr_package():
    if "__pxr__" not in _PXR_CACHE:
        if not _INITIALIZED:
            initialize_usd()
        _PXR_CACHE["__pxr__"] = importlib.import_module("pxr")
    return _PXR_CACHE["__pxr__"]


def shutdown_usd_context(*, unload: Optional[bool] = False) -> None:
    global _INITIALIZED, _PXR_CACHE
    _PXR_CACHE = {}
    _INITIALIZED = False
    if unload:
        _clear_pxr_modules()

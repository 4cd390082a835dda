"""Asynchronous texture fetch/decode.

Loads run on a small thread pool and never block realization.  Completion
applies a :class:`~usdrealize.scene.TexturePatch` to the material that asked
for the texture; nothing else mutates a published material.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import unquote, urlparse

import numpy as np
from PIL import Image

from .scene import Color, MaterialDescriptor, TextureBinding, TexturePatch, hex_color

LOG = logging.getLogger(__name__)

AssetResolver = Callable[[str, Optional[str]], Optional[str]]
PatchBuilder = Callable[[np.ndarray], TexturePatch]
FailureHandler = Callable[[BaseException], Optional[TexturePatch]]

# Ordered: the first token found in the file name wins.
_NAMED_SWATCHES = (
    ("red", 0xCC2A2A),
    ("blue", 0x2A61CC),
    ("green", 0x2ECC71),
    ("white", 0xFFFFFF),
    ("black", 0x111111),
    ("grey", 0x808080),
    ("gray", 0x808080),
    ("light", 0xC7C7C7),
    ("medium", 0x7F7F7F),
    ("dark", 0x404040),
)


# ---------------- Texture parameter helpers ----------------

def guess_solid_color_from_asset_path(asset_path: Optional[str]) -> Optional[Color]:
    """Flat color hinted by a texture file name such as ``paint_red.png``."""
    if not asset_path:
        return None
    stem = Path(str(asset_path).replace("\\", "/")).stem.lower()
    for token, value in _NAMED_SWATCHES:
        if token in stem:
            return hex_color(value)
    return None


def wrap_mode(token: Optional[str]) -> str:
    if token == "repeat":
        return "repeat"
    if token == "mirror":
        return "mirrored"
    return "clamp"


def uv_transform_matrix(
    scale: Sequence[float] = (1.0, 1.0),
    rotation: float = 0.0,
    translation: Sequence[float] = (0.0, 0.0),
) -> np.ndarray:
    """3x3 UV matrix for ``UsdTransform2d`` (scale, then rotate, then translate)."""
    sx, sy = float(scale[0]), float(scale[1])
    tx, ty = float(translation[0]), float(translation[1])
    rad = math.radians(float(rotation))
    c, s = math.cos(rad), math.sin(rad)
    return np.array(
        [
            [sx * c, -sy * s, tx],
            [sx * s, sy * c, ty],
            [0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


def alpha_to_green(image: np.ndarray) -> np.ndarray:
    """Copy the alpha channel into green; alpha maps are sampled from green."""
    out = np.array(image, copy=True)
    if out.ndim == 3 and out.shape[2] >= 4:
        out[..., 1] = out[..., 3]
    return out


def _path_from_url(url: str) -> Path:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(url)


def decode_image(url: str) -> np.ndarray:
    path = _path_from_url(url)
    with Image.open(path) as img:
        return np.asarray(img.convert("RGBA"), dtype=np.uint8).copy()


def default_asset_resolver(base_dir: Optional[Path] = None) -> AssetResolver:
    """Resolve asset paths against ``from_identifier``'s directory, then ``base_dir``."""

    def _resolve(asset_path: str, from_identifier: Optional[str] = None) -> Optional[str]:
        if not asset_path:
            return None
        if "://" in asset_path and not asset_path.startswith("file://"):
            return asset_path
        raw = Path(unquote(asset_path[len("file://") :]) if asset_path.startswith("file://") else asset_path)
        if raw.is_absolute():
            return str(raw)
        search: List[Path] = []
        if from_identifier:
            search.append(Path(from_identifier).parent)
        if base_dir is not None:
            search.append(Path(base_dir))
        for folder in search:
            candidate = folder / raw
            if candidate.exists():
                return str(candidate)
        return str(search[0] / raw) if search else str(raw)

    return _resolve


# ---------------- Loader ----------------

class TextureLoader:
    """Fire-and-forget texture loads that patch materials on completion."""

    def __init__(
        self,
        resolve_asset_url: Optional[AssetResolver] = None,
        *,
        max_workers: int = 4,
        logger: Optional[logging.Logger] = None,
        decoder: Callable[[str], np.ndarray] = decode_image,
    ) -> None:
        self._resolve = resolve_asset_url or default_asset_resolver()
        self._decoder = decoder
        self._log = logger or LOG
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="usdrealize-tex") if max_workers > 0 else None
        self._cache: Dict[str, Future] = {}
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def resolve(self, asset_path: str, from_identifier: Optional[str] = None) -> Optional[str]:
        try:
            return self._resolve(asset_path, from_identifier)
        except Exception:
            self._log.debug("Asset resolver failed for %s", asset_path, exc_info=True)
            return None

    def load(self, asset_path: str, *, from_identifier: Optional[str] = None) -> Future:
        url = self.resolve(asset_path, from_identifier)
        if url is None:
            failed: Future = Future()
            failed.set_exception(FileNotFoundError(f"Unresolved texture asset: {asset_path}"))
            return failed
        with self._lock:
            cached = self._cache.get(url)
            if cached is not None:
                return cached
            if self._executor is None:
                future: Future = Future()
                try:
                    future.set_result(self._decoder(url))
                except Exception as exc:
                    future.set_exception(exc)
            else:
                future = self._executor.submit(self._decoder, url)
            self._cache[url] = future
        return future

    def schedule(
        self,
        material: MaterialDescriptor,
        binding: TextureBinding,
        on_loaded: PatchBuilder,
        *,
        on_failed: Optional[FailureHandler] = None,
        from_identifier: Optional[str] = None,
    ) -> Future:
        """Load ``binding`` and patch ``material``; returns a future of the applied patch."""
        binding.url = self.resolve(binding.asset_path, from_identifier)
        applied: Future = Future()
        with self._lock:
            self._pending.append(applied)

        def _finish(done: Future) -> None:
            patch: Optional[TexturePatch] = None
            try:
                exc = done.exception()
                if exc is not None:
                    self._log.warning("Texture %s failed to load: %s", binding.asset_path, exc)
                    patch = on_failed(exc) if on_failed is not None else None
                else:
                    patch = on_loaded(done.result())
                if patch is not None:
                    material.apply_patch(patch)
            except Exception as exc:
                self._log.warning("Applying texture %s to %s failed", binding.asset_path, material.name, exc_info=True)
                applied.set_exception(exc)
                return
            applied.set_result(patch)

        self.load(binding.asset_path, from_identifier=from_identifier).add_done_callback(_finish)
        return applied

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every scheduled patch has been applied (or failed)."""
        with self._lock:
            pending = list(self._pending)
        done, not_done = wait(pending, timeout=timeout)
        return not not_done

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for f in self._pending if not f.done())

    def shutdown(self, wait_for_pending: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_pending)

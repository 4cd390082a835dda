"""Animated node registry and the playback state machine that drives it."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .mesh_builder import update_geometry_points
from .prims import Prim
from .scene import BufferGeometry, Object3D
from .skinning import RealizedSkeleton, apply_skel_animation
from .time_eval import DEFAULT_FRAMES_PER_SECOND, get_prop_at_time, stage_frames_per_second, stage_time_range
from .xform import apply_xform_ops

LOG = logging.getLogger(__name__)

KIND_XFORM = "xform"
KIND_POINTS = "points"
KIND_SKELETON = "skeleton"


@dataclass
class AnimatedEntry:
    kind: str
    prim: Prim
    node: Optional[Object3D] = None
    geometries: List[BufferGeometry] = field(default_factory=list)
    skeleton: Optional[RealizedSkeleton] = None


class AnimatedNodeRegistry:
    """Nodes whose transform, points or skeleton pose change over time."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._entries: List[AnimatedEntry] = []
        self._points_by_prim: Dict[str, AnimatedEntry] = {}
        self._log = logger or LOG

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AnimatedEntry]:
        return iter(list(self._entries))

    def counts(self) -> Dict[str, int]:
        out = {KIND_XFORM: 0, KIND_POINTS: 0, KIND_SKELETON: 0}
        for entry in self._entries:
            out[entry.kind] = out.get(entry.kind, 0) + 1
        return out

    def register_xform(self, node: Object3D, prim: Prim) -> AnimatedEntry:
        entry = AnimatedEntry(KIND_XFORM, prim, node=node)
        self._entries.append(entry)
        return entry

    def register_points(self, prim: Prim, geometry: BufferGeometry, node: Optional[Object3D] = None) -> AnimatedEntry:
        """Track a deforming mesh; geometries built from the same prim share one entry."""
        entry = self._points_by_prim.get(prim.path)
        if entry is None:
            entry = AnimatedEntry(KIND_POINTS, prim, node=node)
            self._points_by_prim[prim.path] = entry
            self._entries.append(entry)
        if not any(g is geometry for g in entry.geometries):
            entry.geometries.append(geometry)
        return entry

    def register_skeleton(self, realized: RealizedSkeleton, animation: Prim) -> AnimatedEntry:
        entry = AnimatedEntry(KIND_SKELETON, animation, node=realized.root, skeleton=realized)
        self._entries.append(entry)
        return entry

    def clear(self) -> None:
        self._entries.clear()
        self._points_by_prim.clear()

    def apply_at_time(self, time: float) -> int:
        """Re-evaluate every entry at ``time``; returns how many were updated."""
        updated = 0
        for entry in self._entries:
            try:
                if entry.kind == KIND_XFORM and entry.node is not None:
                    updated += int(apply_xform_ops(entry.node, entry.prim, time))
                elif entry.kind == KIND_POINTS:
                    points = get_prop_at_time(entry.prim, "points", time)
                    if points is None:
                        continue
                    changed = [update_geometry_points(g, points) for g in entry.geometries]
                    updated += int(any(changed))
                elif entry.kind == KIND_SKELETON and entry.skeleton is not None:
                    updated += int(apply_skel_animation(entry.skeleton, entry.prim, time) > 0)
            except Exception:
                self._log.debug("Animated %s entry for %s failed at t=%s", entry.kind, entry.prim.path, time, exc_info=True)
        return updated


# ---------------- Playback ----------------

@dataclass
class AnimationState:
    playing: bool = False
    current_time: float = 0.0
    start_time: float = 0.0
    end_time: float = 0.0
    frames_per_second: float = DEFAULT_FRAMES_PER_SECOND

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def state_for_stage(root: Prim, frames_per_second: Optional[float] = None) -> AnimationState:
    """Initial playback state from stage metadata (or the union of sample ranges)."""
    span: Optional[Tuple[float, float]] = stage_time_range(root)
    start, end = span if span is not None else (0.0, 0.0)
    fps = frames_per_second if frames_per_second else stage_frames_per_second(root)
    return AnimationState(playing=False, current_time=start, start_time=start, end_time=end, frames_per_second=fps)


class AnimationPlayer:
    """``stopped``/``playing`` state machine; ``tick`` timestamps are in seconds."""

    def __init__(self, registry: AnimatedNodeRegistry, state: Optional[AnimationState] = None) -> None:
        self.registry = registry
        self.state = state or AnimationState()
        self._last_frame_time: Optional[float] = None

    @property
    def playing(self) -> bool:
        return self.state.playing

    def play(self) -> None:
        self.state.playing = True
        self._last_frame_time = None

    def pause(self) -> None:
        self.state.playing = False

    def stop(self) -> None:
        self.state.playing = False
        self._last_frame_time = None

    def set_playing(self, playing: bool) -> None:
        if playing:
            self.play()
        else:
            self.pause()

    def set_time(self, time: float) -> float:
        """Clamp ``time`` into the playback range and apply it immediately."""
        clamped = max(self.state.start_time, min(self.state.end_time, float(time)))
        self.state.current_time = clamped
        self.registry.apply_at_time(clamped)
        return clamped

    def tick(self, timestamp: float) -> bool:
        """Advance playback to wall-clock ``timestamp``; returns True when time moved."""
        if not self.state.playing or len(self.registry) == 0:
            self._last_frame_time = None
            return False
        if self._last_frame_time is None:
            self._last_frame_time = timestamp
        delta = timestamp - self._last_frame_time
        self._last_frame_time = timestamp

        current = self.state.current_time + delta * self.state.frames_per_second
        if current > self.state.end_time:
            current = self.state.start_time + (current - self.state.end_time)
        self.state.current_time = current
        self.registry.apply_at_time(current)
        return delta > 0.0

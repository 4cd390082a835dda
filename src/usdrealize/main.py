from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .api import RealizeSettings, realize
from .cli import parse_args
from .errors import StageLoadError
from .realize import RealizedScene
from .usd_context import shutdown_usd_context

LOG = logging.getLogger(__name__)

PLAYBACK_INTERVAL = 1.0 / 60.0


def run_playback(result: RealizedScene, seconds: float, *, interval: float = PLAYBACK_INTERVAL) -> int:
    """Drive the player from the wall clock for ``seconds``; returns the number of ticks."""
    player = result.player
    if len(result.registry) == 0:
        LOG.info("Stage has no animated nodes; nothing to play.")
        return 0
    player.play()
    ticks = 0
    deadline = time.monotonic() + max(0.0, seconds)
    while True:
        now = time.monotonic()
        player.tick(now)
        ticks += 1
        if now >= deadline:
            break
        time.sleep(interval)
    player.pause()
    LOG.info("Played %d ticks; current time %.3f", ticks, player.state.current_time)
    return ticks


def _print_summary(input_path: str, result: RealizedScene) -> None:
    stats = result.stats
    state = result.player.state
    print("\nSummary:")
    print(
        f"- {Path(input_path).name}: prims={stats.prims}, meshes={stats.meshes}, "
        f"skinned={stats.skinned_meshes}, instanced={stats.instanced_meshes}, points={stats.points}, "
        f"curves={stats.curves}, lights={stats.lights}, skeletons={stats.skeletons}, "
        f"materials={stats.materials}"
    )
    if stats.stand_ins or stats.skipped or stats.failed or stats.unresolved_bindings:
        print(
            f"  degraded: stand_ins={stats.stand_ins}, skipped={stats.skipped}, failed={stats.failed}, "
            f"unresolved_skin_bindings={stats.unresolved_bindings}"
        )
    animated = result.registry.counts()
    print(
        f"  animation: range=[{state.start_time:g}, {state.end_time:g}] @ {state.frames_per_second:g} fps, "
        f"xform={animated['xform']}, points={animated['points']}, skeleton={animated['skeleton']}"
    )


def main(argv: Sequence[str] | None = None) -> Optional[RealizedScene]:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    settings = RealizeSettings(
        input_path=args.input_path,
        config_path=args.config_path,
        time=args.time,
        texture_workers=args.texture_workers,
        wait_for_textures=bool(args.wait_textures),
    )
    try:
        result = realize(settings)
    except StageLoadError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        shutdown_usd_context()
        raise SystemExit(2) from exc
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        shutdown_usd_context()
        raise SystemExit(2) from exc

    try:
        if args.play_seconds:
            run_playback(result, args.play_seconds)
        _print_summary(args.input_path, result)
        if args.summary_json:
            out = Path(args.summary_json)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(json.dumps(result.summary(), indent=2), encoding="utf-8")
            LOG.info("Wrote summary to %s", out)
    finally:
        if result.textures is not None:
            result.textures.shutdown(wait_for_pending=False)
        shutdown_usd_context()
    return result

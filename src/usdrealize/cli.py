from __future__ import annotations

import argparse
from typing import Sequence


class _JoinPathAction(argparse.Action):
    """Join successive CLI tokens into a single path string (handles spaces gracefully)."""

    def __call__(self, parser, namespace, values, option_string=None):
        joined = " ".join(values).strip()
        setattr(namespace, self.dest, joined or None)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse the CLI arguments for the stage realizer."""

    parser = argparse.ArgumentParser(description="Realize a USD stage into a renderer-agnostic scene graph")
    parser.add_argument(
        "--input",
        dest="input_path",
        nargs="+",
        action=_JoinPathAction,
        required=True,
        help="Path to a USD stage (.usd, .usda, .usdc, .usdz)",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        nargs="+",
        action=_JoinPathAction,
        default=None,
        help="Realization config (YAML or JSON); a top-level 'realize' section is honoured",
    )
    parser.add_argument(
        "--time",
        dest="time",
        type=float,
        default=None,
        help="Time code to evaluate animated properties at (default: authored defaults)",
    )
    parser.add_argument(
        "--play",
        dest="play_seconds",
        type=float,
        default=None,
        help="Run the playback loop for this many wall-clock seconds after realization",
    )
    parser.add_argument(
        "--summary-json",
        dest="summary_json",
        nargs="+",
        action=_JoinPathAction,
        default=None,
        help="Write the realization summary as JSON to this path",
    )
    parser.add_argument(
        "--texture-workers",
        dest="texture_workers",
        type=int,
        default=None,
        help="Texture decode threads; 0 decodes synchronously (default: from config, else 4)",
    )
    parser.add_argument(
        "--wait-textures",
        dest="wait_textures",
        action="store_true",
        help="Block until every texture has loaded before printing the summary",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        dest="verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)

from __future__ import annotations


class RealizeError(Exception):
    """Base class for errors raised by usdrealize."""


class StageLoadError(RealizeError):
    """Raised when a stage cannot be opened or composed."""

    def __init__(self, path: str, reason: str = "") -> None:
        self.path = path
        self.reason = reason
        message = f"Failed to open stage {path}"
        super().__init__(f"{message}: {reason}" if reason else message)

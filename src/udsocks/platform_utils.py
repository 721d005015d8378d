"""Platform detection utilities."""

from __future__ import annotations

import platform
from typing import Literal

Platform = Literal["macos", "linux", "freebsd", "windows", "unknown"]


def get_platform() -> Platform:
    """Detect the current OS platform."""
    system = platform.system().lower()
    if system == "darwin":
        return "macos"
    if system == "linux":
        return "linux"
    if system.startswith("freebsd"):
        return "freebsd"
    if system == "windows":
        return "windows"
    return "unknown"


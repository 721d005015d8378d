"""Debug logging utilities for udsocks."""

from __future__ import annotations

import os
import sys

DEBUG_ENV_VAR = "UDSOCKS_DEBUG"


def is_debug_enabled() -> bool:
    return bool(os.environ.get(DEBUG_ENV_VAR))


def log_debug(message: str, *, level: str = "info") -> None:
    """
    Log a debug message to stderr when UDSOCKS_DEBUG is set.

    Relayed traffic never touches stdout, but keeping diagnostics on stderr
    leaves stdout free for whatever supervises the process.
    """
    if not is_debug_enabled():
        return

    prefix = "[udsocks]"
    if level in ("error", "warn"):
        text = f"{prefix} {level.upper()}: {message}"
    else:
        text = f"{prefix} {message}"

    print(text, file=sys.stderr, flush=True)

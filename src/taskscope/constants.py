"""Stable constants shared across taskscope modules."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Child durations used by the ``demo`` command, in seconds.
DEMO_SUCCESS_DELAY: Final[float] = 0.010
DEMO_FAILURE_DELAY: Final[float] = 0.005
DEMO_SLOW_DELAY: Final[float] = 1.0

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEMO_FAILURE_DELAY",
    "DEMO_SLOW_DELAY",
    "DEMO_SUCCESS_DELAY",
]

"""Kernel domain primitives -- pure, zero I/O."""

from escrow_kernel.domain.clock import Clock, DeterministicClock, SystemClock, as_utc

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "as_utc",
]

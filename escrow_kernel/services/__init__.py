"""Kernel services -- infrastructure helpers with no release-domain knowledge."""

from escrow_kernel.services.retry import RetryPolicy, call_with_retry, is_transient

__all__ = [
    "RetryPolicy",
    "call_with_retry",
    "is_transient",
]

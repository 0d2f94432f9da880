# Shared helpers for the AWS CPI
from .retry import await_state, exponential_backoff, with_retry
from .validation import deep_update, is_truthy, require_keys, size_in_gib

__all__ = [
    "await_state",
    "deep_update",
    "exponential_backoff",
    "is_truthy",
    "require_keys",
    "size_in_gib",
    "with_retry",
]

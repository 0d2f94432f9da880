#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Utilities module for the AWS CPI.
This module contains small conversion and validation helpers shared by the
managers and the command dispatcher.
"""
from typing import Any, Dict, Iterable, List

from aws_cpi.errors import ValidationError


def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge src into dst and return dst. Dicts are merged recursively; lists/scalars are replaced."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst


def size_in_gib(size: int) -> int:
    """Convert a disk size given in 1/1024 GiB units to whole GiB (ceil)."""
    try:
        size = int(size)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid disk size '{size}'") from e
    if size <= 0:
        raise ValidationError(f"Disk size must be positive, got {size}")
    return (size + 1023) // 1024


def is_truthy(value: Any) -> bool:
    """Interpret common truthy representations."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def missing_keys(obj: Dict[str, Any], required: Iterable[str]) -> List[str]:
    """Return the required keys absent from obj, in the order given."""
    return [key for key in required if (obj or {}).get(key) is None]


def require_keys(obj: Dict[str, Any], required: Iterable[str], label: str) -> None:
    """Raise ValidationError listing every missing key, quoted, in a stable order."""
    missing = missing_keys(obj, required)
    if missing:
        raise ValidationError(f"Missing {label}: " + ", ".join(f"'{k}'" for k in missing))

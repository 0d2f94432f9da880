#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error types for the AWS CPI.
Every failure that reaches the command boundary is normalized into one of the
types of the closed set (Unknown, VMNotFound, DiskNotFound, DiskNotAttached,
CloudError) by ``describe_error``.
"""
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

AUTH_ERROR_CODES = {
    "AuthFailure",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "AccessDenied",
    "OptInRequired",
}


class CloudError(Exception):
    """Generic cloud operation error."""

    error_type = "CloudError"
    ok_to_retry = False


class VMNotFound(CloudError):
    error_type = "VMNotFound"


class DiskNotFound(CloudError):
    error_type = "DiskNotFound"


class DiskNotAttached(CloudError):
    error_type = "DiskNotAttached"
    ok_to_retry = True


class VMCreationFailed(CloudError):
    """Instance creation failed; the half-built instance has been terminated."""

    def __init__(self, message: str, ok_to_retry: bool = False):
        super().__init__(message)
        self.ok_to_retry = ok_to_retry


class LoadBalancerRegistrationError(CloudError):
    """One or more load balancer / target group registrations failed."""

    def __init__(self, instance_id: str, failures: Dict[str, str]):
        details = "; ".join(f"{target}: {reason}" for target, reason in failures.items())
        super().__init__(f"Failed to register instance '{instance_id}' with load balancers: {details}")
        self.instance_id = instance_id
        self.failures = failures


class StateTimeout(CloudError):
    """A resource did not reach the awaited state in time."""


class ConfigError(Exception):
    """Invalid CPI configuration."""

    error_type = "Unknown"
    ok_to_retry = False


class ValidationError(ValueError):
    """Invalid or incomplete request properties."""

    error_type = "Unknown"
    ok_to_retry = False


def error_code(exc: BaseException) -> Optional[str]:
    """Return the AWS error code carried by a botocore ClientError, else None."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_auth_error(exc: BaseException) -> bool:
    return error_code(exc) in AUTH_ERROR_CODES


def describe_error(exc: BaseException) -> Dict[str, Any]:
    """Map any exception onto the ``{type, message, ok_to_retry}`` error shape."""
    if isinstance(exc, (CloudError, ConfigError, ValidationError)):
        return {"type": exc.error_type, "message": str(exc), "ok_to_retry": bool(exc.ok_to_retry)}
    if is_auth_error(exc):
        return {"type": "Unknown", "message": str(exc), "ok_to_retry": False}
    if isinstance(exc, (ClientError, BotoCoreError)):
        return {"type": "CloudError", "message": str(exc), "ok_to_retry": False}
    return {"type": "Unknown", "message": str(exc) or exc.__class__.__name__, "ok_to_retry": False}

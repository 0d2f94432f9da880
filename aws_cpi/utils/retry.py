#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Retry and polling helpers for the AWS CPI.
This module handles transient-failure retries around remote calls and the
blocking waits for resources to reach a target state.
"""
import logging
import time
from typing import Any, Callable, Iterable, Optional, Type, TypeVar, Union

from aws_cpi.errors import StateTimeout, error_code

logger = logging.getLogger("aws-cpi")

T = TypeVar("T")

# An error kind is either an exception class or an AWS error code string.
ErrorKind = Union[str, Type[BaseException]]

DEFAULT_MAX_ATTEMPTS = 25
DEFAULT_BACKOFF_CEILING = 30
DEFAULT_WAIT_TIMEOUT = 1200


def exponential_backoff(attempt: int, ceiling: float = DEFAULT_BACKOFF_CEILING) -> float:
    """Seconds to sleep after the given (1-based) failed attempt."""
    return min(2 ** (attempt - 1), ceiling)


def matches(exc: BaseException, kinds: Iterable[ErrorKind]) -> bool:
    """True if ``exc`` is one of ``kinds`` (by class or by AWS error code)."""
    code = error_code(exc)
    for kind in kinds or ():
        if isinstance(kind, str):
            if code == kind:
                return True
        elif isinstance(exc, kind):
            return True
    return False


def with_retry(
    operation: Callable[[], T],
    retryable: Iterable[ErrorKind] = (),
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_fn: Callable[[int], float] = exponential_backoff,
    sleep: Callable[[float], Any] = time.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` and retry it while it fails with a retryable error.
    Non-retryable errors are re-raised immediately; once ``max_attempts`` is
    exhausted the last error is re-raised.
    """
    retryable = tuple(retryable or ())
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as e:
            if not matches(e, retryable) or attempt >= max_attempts:
                raise
            delay = backoff_fn(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %ss",
                description,
                attempt,
                max_attempts,
                e,
                delay,
            )
            sleep(delay)
            attempt += 1


def await_state(
    resource_id: str,
    poll_fn: Callable[[], Any],
    target_predicate: Callable[[Any], bool],
    timeout: float = DEFAULT_WAIT_TIMEOUT,
    backoff: Callable[[int], float] = exponential_backoff,
    description: str = "target state",
    missing_ok: Iterable[ErrorKind] = (),
    retry_on: Iterable[ErrorKind] = (),
    sleep: Callable[[float], Any] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[Any]:
    """Poll ``poll_fn`` until ``target_predicate`` holds for its result.
    Semantics:
      - an error in ``missing_ok`` means the resource is gone, which counts as
        reaching the target (returns None).
      - an error in ``retry_on`` is absorbed and the resource polled again.
      - the predicate may raise to abort the wait (e.g. a 'failed' state).
      - StateTimeout is raised once ``timeout`` seconds have elapsed.
    """
    missing_ok = tuple(missing_ok or ())
    retry_on = tuple(retry_on or ())
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            resource = poll_fn()
        except Exception as e:
            if matches(e, missing_ok):
                logger.debug("%s is gone while waiting for %s", resource_id, description)
                return None
            if not matches(e, retry_on):
                raise
            logger.debug("%s not visible yet (%s)", resource_id, e)
        else:
            if target_predicate(resource):
                logger.debug("%s reached %s after %d polls", resource_id, description, attempt)
                return resource
        if clock() >= deadline:
            raise StateTimeout(f"Timed out waiting for '{resource_id}' to reach {description} after {attempt} polls")
        sleep(backoff(attempt))

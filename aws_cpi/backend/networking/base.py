# backend/networking/base.py
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List

from aws_cpi.errors import CloudError


class NetworkingError(CloudError):
    """Network or load balancer configuration error."""


class LoadBalancerBackend(ABC):
    """Common interface for load balancer registration backends."""

    kind = "load balancer"

    def __init__(self, client, name: str, sleep: Callable[[float], Any] = time.sleep):
        self.client = client
        self.name = name
        self.sleep = sleep

    @abstractmethod
    def register(self, instance_id: str) -> None:
        """Add the instance to the load balancer."""
        raise NotImplementedError

    @abstractmethod
    def deregister(self, instance_id: str) -> None:
        """Remove the instance. Must be idempotent: 'not registered' is not an error."""
        raise NotImplementedError

    @classmethod
    @abstractmethod
    def attached_to(cls, client, instance_id: str, sleep: Callable[[float], Any] = time.sleep) -> List["LoadBalancerBackend"]:
        """All load balancers of this kind the instance is currently registered with."""
        raise NotImplementedError

    def __str__(self) -> str:
        return f"{self.kind} '{self.name}'"

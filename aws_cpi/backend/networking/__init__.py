# backend/networking/__init__.py
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Type

from .base import LoadBalancerBackend, NetworkingError
from .classic_lb import ClassicLoadBalancer
from .network_configurator import NetworkConfigurator, is_security_group_id, parse_networks
from .target_group import TargetGroup

# Map of VM cloud property -> load balancer backend
_BACKENDS: Dict[str, Type[LoadBalancerBackend]] = {
    "elbs": ClassicLoadBalancer,
    "lb_target_groups": TargetGroup,
}


def get_backend_by_driver(
    driver: str, clients: Dict[str, Any], name: str, sleep: Callable[[float], Any] = time.sleep
) -> LoadBalancerBackend:
    """
    Returns a load balancer backend instance for the specified 'driver'.
    """
    key = (driver or "").strip().lower()
    cls = _BACKENDS.get(key)
    if not cls:
        raise NetworkingError(f"Unsupported load balancer driver '{driver}'")
    return cls(clients[cls.client_key], name, sleep=sleep)


def backends() -> Dict[str, Type[LoadBalancerBackend]]:
    return dict(_BACKENDS)


__all__ = [
    "ClassicLoadBalancer",
    "LoadBalancerBackend",
    "NetworkConfigurator",
    "NetworkingError",
    "TargetGroup",
    "backends",
    "get_backend_by_driver",
    "is_security_group_id",
    "parse_networks",
]

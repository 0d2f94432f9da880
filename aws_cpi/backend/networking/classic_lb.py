# backend/networking/classic_lb.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, List

from botocore.exceptions import ClientError

from aws_cpi.errors import error_code

from .base import LoadBalancerBackend, NetworkingError

logger = logging.getLogger("aws-cpi")

NOT_REGISTERED = ("InvalidInstance", "InvalidEndPoint", "LoadBalancerNotFound")


class ClassicLoadBalancer(LoadBalancerBackend):
    """Classic ELB registration by instance id."""

    kind = "classic load balancer"
    client_key = "elb"

    def register(self, instance_id: str) -> None:
        logger.info("Registering %s with %s", instance_id, self)
        try:
            self.client.register_instances_with_load_balancer(
                LoadBalancerName=self.name, Instances=[{"InstanceId": instance_id}]
            )
        except ClientError as e:
            if error_code(e) == "LoadBalancerNotFound":
                raise NetworkingError(f"Could not find classic load balancer '{self.name}'") from e
            raise

    def deregister(self, instance_id: str) -> None:
        logger.info("Deregistering %s from %s", instance_id, self)
        try:
            self.client.deregister_instances_from_load_balancer(
                LoadBalancerName=self.name, Instances=[{"InstanceId": instance_id}]
            )
        except ClientError as e:
            if error_code(e) not in NOT_REGISTERED:
                raise
            logger.info("%s was not registered with %s", instance_id, self)

    @classmethod
    def attached_to(cls, client, instance_id: str, sleep: Callable[[float], Any] = time.sleep) -> List[LoadBalancerBackend]:
        found: List[LoadBalancerBackend] = []
        for page in client.get_paginator("describe_load_balancers").paginate():
            for lb in page.get("LoadBalancerDescriptions", []):
                if any(i.get("InstanceId") == instance_id for i in lb.get("Instances") or []):
                    found.append(cls(client, lb["LoadBalancerName"], sleep=sleep))
        return found

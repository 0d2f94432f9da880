# backend/networking/target_group.py
from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional

from botocore.exceptions import ClientError

from aws_cpi.errors import error_code
from aws_cpi.utils.retry import await_state

from .base import LoadBalancerBackend, NetworkingError

logger = logging.getLogger("aws-cpi")

# states in which a target no longer receives new traffic
RELEASED_STATES = ("unused", "draining")
DEREGISTRATION_TIMEOUT = 300


class TargetGroup(LoadBalancerBackend):
    """ELBv2 target group registration by instance id."""

    kind = "target group"
    client_key = "elbv2"

    def __init__(self, client, name: str, arn: Optional[str] = None, sleep: Callable[[float], Any] = time.sleep):
        super().__init__(client, name, sleep=sleep)
        self._arn = arn

    @property
    def arn(self) -> str:
        if self._arn:
            return self._arn
        try:
            resp = self.client.describe_target_groups(Names=[self.name])
        except ClientError as e:
            if error_code(e) == "TargetGroupNotFound":
                raise NetworkingError(f"Could not find ALB target group '{self.name}'") from e
            raise
        groups = resp.get("TargetGroups") or []
        if not groups:
            raise NetworkingError(f"Could not find ALB target group '{self.name}'")
        self._arn = groups[0]["TargetGroupArn"]
        return self._arn

    def register(self, instance_id: str) -> None:
        logger.info("Registering %s with %s", instance_id, self)
        self.client.register_targets(TargetGroupArn=self.arn, Targets=[{"Id": instance_id}])

    def deregister(self, instance_id: str) -> None:
        logger.info("Deregistering %s from %s", instance_id, self)
        try:
            self.client.deregister_targets(TargetGroupArn=self.arn, Targets=[{"Id": instance_id}])
        except ClientError as e:
            if error_code(e) not in ("InvalidTarget", "TargetGroupNotFound"):
                raise
            logger.info("%s was not registered with %s", instance_id, self)
            return
        except NetworkingError:
            logger.info("%s no longer exists, nothing to deregister", self)
            return
        await_state(
            instance_id,
            lambda: self._target_state(instance_id),
            lambda state: state in RELEASED_STATES,
            timeout=DEREGISTRATION_TIMEOUT,
            description=f"deregistered from {self}",
            missing_ok=("InvalidTarget", "TargetGroupNotFound"),
            sleep=self.sleep,
        )

    def _target_state(self, instance_id: str) -> str:
        resp = self.client.describe_target_health(TargetGroupArn=self.arn, Targets=[{"Id": instance_id}])
        descriptions = resp.get("TargetHealthDescriptions") or []
        if not descriptions:
            return "unused"
        return descriptions[0].get("TargetHealth", {}).get("State", "unused")

    @classmethod
    def attached_to(cls, client, instance_id: str, sleep: Callable[[float], Any] = time.sleep) -> List[LoadBalancerBackend]:
        found: List[LoadBalancerBackend] = []
        for page in client.get_paginator("describe_target_groups").paginate():
            for group in page.get("TargetGroups", []):
                health = client.describe_target_health(TargetGroupArn=group["TargetGroupArn"])
                for desc in health.get("TargetHealthDescriptions") or []:
                    state = desc.get("TargetHealth", {}).get("State")
                    if desc.get("Target", {}).get("Id") == instance_id and state not in RELEASED_STATES:
                        found.append(cls(client, group["TargetGroupName"], arn=group["TargetGroupArn"], sleep=sleep))
                        break
        return found

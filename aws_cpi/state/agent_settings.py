"""
Agent settings document.
The document is pushed to the registry (keyed by instance id) or, when the
registry is disabled, embedded in the instance user data.
"""
import json
import uuid
from typing import Any, Dict, List, Optional

from aws_cpi.models import DeviceMapPlan, NetworkSpec


def agent_network_settings(networks: List[NetworkSpec]) -> Dict[str, Any]:
    result = {}
    for net in networks:
        settings = dict(net.settings)
        settings["use_dhcp"] = True
        result[net.name] = settings
    return result


def dns_settings(networks: List[NetworkSpec]) -> Optional[Dict[str, Any]]:
    for net in networks:
        if net.settings.get("dns"):
            return {"nameserver": net.settings["dns"]}
    return None


class AgentSettings:
    """Initial settings read by the agent on first boot."""

    def __init__(
        self,
        agent_id: str,
        networks: List[NetworkSpec],
        plan: DeviceMapPlan,
        environment: Optional[Dict[str, Any]] = None,
        agent_config: Optional[Dict[str, Any]] = None,
        registry_endpoint: Optional[str] = None,
    ):
        self.vm_name = f"vm-{uuid.uuid4()}"
        self.agent_id = agent_id
        self.networks = agent_network_settings(networks)
        self.dns = dns_settings(networks)
        self.plan = plan
        self.environment = environment
        self.agent_config = agent_config or {}
        self.registry_endpoint = registry_endpoint

    def agent_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {
            "vm": {"name": self.vm_name},
            "agent_id": self.agent_id,
            "networks": self.networks,
            "disks": self.plan.disk_settings(),
        }
        if self.environment:
            settings["env"] = self.environment
        settings.update(self.agent_config)
        return settings

    def user_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"dns": self.dns, "networks": self.networks}
        if self.registry_endpoint:
            data["registry"] = {"endpoint": self.registry_endpoint}
        return data

    def settings_for_version(self, version: int) -> Dict[str, Any]:
        """Version 1 user data only points at the registry; later versions carry the full settings."""
        if version == 1:
            return self.user_data()
        settings = self.agent_settings()
        settings.update(self.user_data())
        return settings

    def encode(self, version: int) -> str:
        """JSON user data; boto3 applies the base64 transport encoding for RunInstances."""
        return json.dumps(self.settings_for_version(version))

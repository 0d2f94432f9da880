# State module: agent settings documents and the settings registry
from .agent_settings import AgentSettings
from .registry import DisabledRegistryClient, RegistryClient, registry_from_config

__all__ = ["AgentSettings", "DisabledRegistryClient", "RegistryClient", "registry_from_config"]

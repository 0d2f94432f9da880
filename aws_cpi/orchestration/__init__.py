# Orchestration module for CPI method handling
from .instance_types import calculate_vm_cloud_properties, map_instance_type
from .lifecycle import CloudLifecycle
from .vm_manager import VMManager

__all__ = ["CloudLifecycle", "VMManager", "calculate_vm_cloud_properties", "map_instance_type"]

"""
Mapping of cloud-agnostic VM requirements (cpu, ram in MiB) to instance types.
"""
from typing import Any, Dict

from aws_cpi.errors import CloudError
from aws_cpi.utils.validation import require_keys

SUPPORTED_VM_TYPES = [
    {"name": "t2.nano", "cpu": 1, "ram": 512},
    {"name": "t2.micro", "cpu": 1, "ram": 1024},
    {"name": "t2.small", "cpu": 1, "ram": 2048},
    {"name": "c4.large", "cpu": 2, "ram": 3840},
    {"name": "m4.large", "cpu": 2, "ram": 8192},
    {"name": "r3.large", "cpu": 2, "ram": 15616},
    {"name": "c4.xlarge", "cpu": 4, "ram": 7680},
    {"name": "m4.xlarge", "cpu": 4, "ram": 16384},
    {"name": "r3.xlarge", "cpu": 4, "ram": 31232},
    {"name": "c4.2xlarge", "cpu": 8, "ram": 15360},
    {"name": "m4.2xlarge", "cpu": 8, "ram": 32768},
    {"name": "r3.2xlarge", "cpu": 8, "ram": 62464},
    {"name": "c4.4xlarge", "cpu": 16, "ram": 30720},
    {"name": "m4.4xlarge", "cpu": 16, "ram": 65536},
    {"name": "r3.4xlarge", "cpu": 16, "ram": 124928},
]

REQUIRED_VM_PROPERTIES = ("cpu", "ram", "ephemeral_disk_size")


def map_instance_type(cpu: int, ram: int) -> str:
    """Smallest supported type (by cpu, then ram) meeting the requirement."""
    candidates = [t for t in SUPPORTED_VM_TYPES if t["cpu"] >= cpu and t["ram"] >= ram]
    if not candidates:
        largest = SUPPORTED_VM_TYPES[-1]
        raise CloudError(
            f"Unable to meet requested VM requirements: {cpu} CPU, {ram} RAM. "
            f"Largest known VM type is '{largest['name']}': {largest['cpu']} CPU, {largest['ram']} RAM."
        )
    return min(candidates, key=lambda t: (t["cpu"], t["ram"]))["name"]


def calculate_vm_cloud_properties(vm_properties: Dict[str, Any]) -> Dict[str, Any]:
    require_keys(vm_properties, REQUIRED_VM_PROPERTIES, "VM cloud properties")
    return {
        "instance_type": map_instance_type(vm_properties["cpu"], vm_properties["ram"]),
        "ephemeral_disk": {"size": vm_properties["ephemeral_disk_size"]},
    }

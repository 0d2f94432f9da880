"""
Block device planning for new instances.
``plan_device_mappings`` is a pure function of the image metadata and the VM
cloud properties: it never talks to AWS.
"""
from typing import Any, List, Optional, Tuple

from aws_cpi.errors import CloudError
from aws_cpi.models import DEFAULT_DISK_TYPE, BlockDevice, DeviceMapPlan, ImageMetadata, VMCloudProps
from aws_cpi.utils.validation import size_in_gib

from .encryption import resolve

EPHEMERAL_DEVICE_NAME = "/dev/sdb"
DEFAULT_EPHEMERAL_SIZE_GIB = 10

# instance type -> (size of each instance store volume in GiB, number of volumes)
INSTANCE_STORAGE = {
    "m1.small": (160, 1),
    "m1.medium": (410, 1),
    "m1.large": (420, 2),
    "m1.xlarge": (420, 4),
    "c1.medium": (350, 1),
    "c1.xlarge": (420, 4),
    "cc2.8xlarge": (840, 4),
    "cg1.4xlarge": (840, 2),
    "m2.xlarge": (420, 1),
    "m2.2xlarge": (850, 1),
    "m2.4xlarge": (840, 2),
    "cr1.8xlarge": (120, 2),
    "hi1.4xlarge": (1024, 2),
    "hs1.8xlarge": (2000, 24),
    "m3.medium": (4, 1),
    "m3.large": (32, 1),
    "m3.xlarge": (40, 2),
    "m3.2xlarge": (80, 2),
    "c3.large": (16, 2),
    "c3.xlarge": (40, 2),
    "c3.2xlarge": (80, 2),
    "c3.4xlarge": (160, 2),
    "c3.8xlarge": (320, 2),
    "r3.large": (32, 1),
    "r3.xlarge": (80, 1),
    "r3.2xlarge": (160, 1),
    "r3.4xlarge": (320, 1),
    "r3.8xlarge": (320, 2),
    "g2.2xlarge": (60, 1),
    "g2.8xlarge": (120, 2),
    "i2.xlarge": (800, 1),
    "i2.2xlarge": (800, 2),
    "i2.4xlarge": (800, 4),
    "i2.8xlarge": (800, 8),
    "d2.xlarge": (2000, 3),
    "d2.2xlarge": (2000, 6),
    "d2.4xlarge": (2000, 12),
    "d2.8xlarge": (2000, 24),
    "i3.large": (475, 1),
    "i3.xlarge": (950, 1),
    "i3.2xlarge": (1900, 1),
    "i3.4xlarge": (1900, 2),
    "i3.8xlarge": (1900, 4),
    "i3.16xlarge": (1900, 8),
    "f1.2xlarge": (470, 1),
    "f1.16xlarge": (940, 4),
}

# families whose instance store is exposed as NVMe namespaces
NVME_INSTANCE_FAMILIES = {"i3", "f1"}


def instance_storage(instance_type: str) -> Optional[Tuple[int, int]]:
    return INSTANCE_STORAGE.get(instance_type)


def uses_nvme_instance_storage(instance_type: str) -> bool:
    return (instance_type or "").split(".", 1)[0] in NVME_INSTANCE_FAMILIES


def raw_ephemeral_device_paths(instance_type: str, count: int, virtualization_type: str = "hvm") -> List[str]:
    """Guest device paths of the instance store volumes."""
    if uses_nvme_instance_storage(instance_type):
        return [f"/dev/nvme{index}n1" for index in range(count)]
    if virtualization_type == "hvm":
        prefix, first = "/dev/xvdb", "a"
    elif virtualization_type == "paravirtual":
        prefix, first = "/dev/sd", "c"
    else:
        raise CloudError(f"unknown virtualization type {virtualization_type}")
    return [f"{prefix}{chr(ord(first) + index)}" for index in range(count)]


def _root_device(image: ImageMetadata, vm_props: VMCloudProps) -> BlockDevice:
    root = vm_props.root_disk
    size = size_in_gib(root.size) if root.size is not None else image.root_volume_size
    return BlockDevice(
        device_name=image.root_device_name,
        volume_size=size,
        volume_type=root.type or DEFAULT_DISK_TYPE,
        iops=root.iops,
    )


def _ephemeral_device(vm_props: VMCloudProps, storage: Optional[Tuple[int, int]], global_encryption: Any) -> BlockDevice:
    ephemeral = vm_props.ephemeral_disk
    if ephemeral.size is not None:
        size = size_in_gib(ephemeral.size)
    elif storage and not vm_props.raw_instance_storage:
        size = storage[0]
    else:
        size = DEFAULT_EPHEMERAL_SIZE_GIB
    policy = resolve(global_encryption, ephemeral)
    return BlockDevice(
        device_name=EPHEMERAL_DEVICE_NAME,
        volume_size=size,
        volume_type=ephemeral.type or DEFAULT_DISK_TYPE,
        iops=ephemeral.iops,
        encrypted=policy.encrypted,
        kms_key_id=policy.key_ref,
    )


def plan_device_mappings(image: ImageMetadata, vm_props: VMCloudProps, global_encryption: Any = None) -> DeviceMapPlan:
    """Compute the root, ephemeral and raw-ephemeral layout for a new VM."""
    instance_type = vm_props.instance_type
    storage = instance_storage(instance_type)
    use_instance_storage = vm_props.ephemeral_disk.use_instance_storage

    if vm_props.raw_instance_storage and use_instance_storage:
        raise CloudError("ephemeral_disk.use_instance_storage and raw_instance_storage cannot both be true")
    if vm_props.raw_instance_storage and storage is None:
        raise CloudError(
            f"raw_instance_storage requested for instance type '{instance_type}' that does not have instance storage"
        )
    if use_instance_storage and storage is None:
        raise CloudError(
            f"use_instance_storage requested for instance type '{instance_type}' that does not have instance storage"
        )

    plan = DeviceMapPlan(root=_root_device(image, vm_props))
    if not use_instance_storage:
        plan.ephemeral = _ephemeral_device(vm_props, storage, global_encryption)
    if vm_props.raw_instance_storage:
        plan.raw_ephemeral = raw_ephemeral_device_paths(instance_type, storage[1], image.virtualization_type)
    return plan

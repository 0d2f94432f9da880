"""
Describe helpers over the EC2 client.
``find_*`` return None for an absent resource; ``get_*`` raise the typed
not-found error instead.
"""
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from aws_cpi.errors import CloudError, DiskNotFound, VMNotFound, error_code

INSTANCE_NOT_FOUND = "InvalidInstanceID.NotFound"
VOLUME_NOT_FOUND = "InvalidVolume.NotFound"
SNAPSHOT_NOT_FOUND = "InvalidSnapshot.NotFound"
IMAGE_NOT_FOUND = "InvalidAMIID.NotFound"


def _first(items: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return items[0] if items else None


def find_instance(ec2, instance_id: str) -> Optional[Dict[str, Any]]:
    try:
        reservations = ec2.describe_instances(InstanceIds=[instance_id]).get("Reservations", [])
    except ClientError as e:
        if error_code(e) in (INSTANCE_NOT_FOUND, "InvalidInstanceID.Malformed"):
            return None
        raise
    return _first([i for r in reservations for i in r.get("Instances", [])])


def get_instance(ec2, instance_id: str) -> Dict[str, Any]:
    instance = find_instance(ec2, instance_id)
    if instance is None:
        raise VMNotFound(f"VM '{instance_id}' not found")
    return instance


def instance_state(instance: Optional[Dict[str, Any]]) -> str:
    if instance is None:
        return "not-found"
    return instance.get("State", {}).get("Name", "unknown")


def find_volume(ec2, volume_id: str) -> Optional[Dict[str, Any]]:
    try:
        return _first(ec2.describe_volumes(VolumeIds=[volume_id]).get("Volumes", []))
    except ClientError as e:
        if error_code(e) in (VOLUME_NOT_FOUND, "InvalidVolume.Malformed"):
            return None
        raise


def get_volume(ec2, volume_id: str) -> Dict[str, Any]:
    volume = find_volume(ec2, volume_id)
    if volume is None:
        raise DiskNotFound(f"Disk '{volume_id}' not found")
    return volume


def volume_attachment(volume: Dict[str, Any], instance_id: str) -> Optional[Dict[str, Any]]:
    for attachment in volume.get("Attachments") or []:
        if attachment.get("InstanceId") == instance_id:
            return attachment
    return None


def find_image(ec2, image_id: str) -> Optional[Dict[str, Any]]:
    try:
        return _first(ec2.describe_images(ImageIds=[image_id]).get("Images", []))
    except ClientError as e:
        if error_code(e) in (IMAGE_NOT_FOUND, "InvalidAMIID.Malformed"):
            return None
        raise


def get_image(ec2, image_id: str) -> Dict[str, Any]:
    image = find_image(ec2, image_id)
    if image is None:
        raise CloudError(f"could not find AMI '{image_id}'")
    return image


def ebs_mappings(instance: Dict[str, Any]) -> List[Dict[str, Any]]:
    """EBS block device mappings of an instance, root device first then by device name."""
    root = instance.get("RootDeviceName")
    mappings = [m for m in instance.get("BlockDeviceMappings") or [] if m.get("Ebs")]
    return sorted(mappings, key=lambda m: (m.get("DeviceName") != root, m.get("DeviceName") or ""))

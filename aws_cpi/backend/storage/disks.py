"""
EBS disk lifecycle: create, attach, detach, resize, snapshot and delete volumes.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from aws_cpi.backend.resources import (
    SNAPSHOT_NOT_FOUND,
    VOLUME_NOT_FOUND,
    find_volume,
    get_instance,
    get_volume,
    volume_attachment,
)
from aws_cpi.backend.tags import TagManager
from aws_cpi.errors import CloudError, DiskNotFound, error_code
from aws_cpi.models import DiskCloudProps
from aws_cpi.utils.retry import await_state, with_retry
from aws_cpi.utils.validation import size_in_gib

from .encryption import resolve, volume_encryption_params

logger = logging.getLogger("aws-cpi")

# /dev/sdf through /dev/sdp, as suggested by the EC2 console
PERSISTENT_DEVICE_LETTERS = "fghijklmnop"
DETACH_ATTEMPTS = 20
BUSY = ("IncorrectState", "VolumeInUse")
DIRECTOR_METADATA_KEYS = ("director_name", "director")


class DiskManager:
    """Manager for EBS volume operations."""

    def __init__(self, ec2, config, registry, sleep: Callable[[float], Any] = time.sleep):
        self.ec2 = ec2
        self.config = config
        self.registry = registry
        self.sleep = sleep
        self.tags = TagManager(ec2, sleep=sleep)

    # ---- helpers ----

    def _volume_state(self, disk_id: str) -> str:
        volume = self.ec2.describe_volumes(VolumeIds=[disk_id])["Volumes"][0]
        state = volume["State"]
        if state == "error":
            raise CloudError(f"Volume '{disk_id}' entered the error state")
        return state

    def _attachment_state(self, disk_id: str, vm_id: str) -> str:
        attachment = volume_attachment(get_volume(self.ec2, disk_id), vm_id)
        return attachment["State"] if attachment else "detached"

    def _select_availability_zone(self, vm_id: Optional[str]) -> str:
        if vm_id:
            return get_instance(self.ec2, vm_id)["Placement"]["AvailabilityZone"]
        zones = [
            z["ZoneName"]
            for z in self.ec2.describe_availability_zones().get("AvailabilityZones", [])
            if z.get("State", "available") == "available"
        ]
        if not zones:
            raise CloudError("No availability zone available for the new disk")
        return random.choice(zones)

    def _update_agent_settings(self, vm_id: str, update: Callable[[Dict[str, Any]], None]) -> None:
        if not self.registry.enabled:
            return
        settings = self.registry.read_settings(vm_id)
        update(settings)
        self.registry.update_settings(vm_id, settings)

    @staticmethod
    def _select_device_name(instance: Dict[str, Any]) -> Optional[str]:
        taken = {m.get("DeviceName") for m in instance.get("BlockDeviceMappings") or []}
        for letter in PERSISTENT_DEVICE_LETTERS:
            device = f"/dev/sd{letter}"
            if device not in taken:
                return device
            logger.debug("'%s' on '%s' is taken", device, instance.get("InstanceId"))
        return None

    # ---- operations ----

    def create_disk(self, size: int, cloud_properties: Optional[Dict[str, Any]] = None, vm_id: Optional[str] = None) -> str:
        """Create a volume of ``size`` (1/1024 GiB units) and wait until it is available."""
        props = DiskCloudProps.from_dict(cloud_properties)
        policy = resolve(self.config.aws, None, props)
        params: Dict[str, Any] = {
            "Size": size_in_gib(size),
            "AvailabilityZone": self._select_availability_zone(vm_id),
            "VolumeType": props.type,
        }
        if props.iops is not None:
            params["Iops"] = props.iops
        params.update(volume_encryption_params(policy))
        try:
            disk_id = self.ec2.create_volume(**params)["VolumeId"]
        except ClientError as e:
            raise CloudError(f"Failed to create volume: {e}") from e
        logger.info("Creating volume '%s' (%s GiB, %s)", disk_id, params["Size"], props.type)
        await_state(
            disk_id,
            lambda: self._volume_state(disk_id),
            lambda state: state == "available",
            description="available",
            retry_on=(VOLUME_NOT_FOUND,),
            sleep=self.sleep,
        )
        return disk_id

    def has_disk(self, disk_id: str) -> bool:
        logger.info("Check the presence of disk with id '%s'", disk_id)
        volume = find_volume(self.ec2, disk_id)
        return volume is not None and volume.get("State") != "deleted"

    def delete_disk(self, disk_id: str) -> None:
        logger.info("Deleting volume '%s'", disk_id)

        def _delete():
            try:
                self.ec2.delete_volume(VolumeId=disk_id)
            except ClientError as e:
                if error_code(e) == VOLUME_NOT_FOUND:
                    logger.warning("Failed to delete disk '%s' because it was not found", disk_id)
                    raise DiskNotFound(f"Disk '{disk_id}' not found") from e
                raise

        # VolumeInUse while the volume is still bound to a recently removed VM
        with_retry(_delete, retryable=("VolumeInUse",), sleep=self.sleep, description=f"delete volume {disk_id}")
        if self.config.aws.fast_path_delete:
            try:
                self.ec2.create_tags(Resources=[disk_id], Tags=[{"Key": "Name", "Value": "to be deleted"}])
                logger.info("Volume '%s' has been marked for deletion", disk_id)
            except ClientError as e:
                if error_code(e) != VOLUME_NOT_FOUND:
                    raise
            return
        await_state(
            disk_id,
            lambda: self._volume_state(disk_id),
            lambda state: state == "deleted",
            description="deleted",
            missing_ok=(VOLUME_NOT_FOUND,),
            sleep=self.sleep,
        )
        logger.info("Volume '%s' has been deleted", disk_id)

    def attach_disk(self, vm_id: str, disk_id: str) -> str:
        """Attach a volume at the next free /dev/sd[f-p] slot and return the device name."""
        instance = get_instance(self.ec2, vm_id)
        volume = get_volume(self.ec2, disk_id)
        attachment = volume_attachment(volume, vm_id)
        if attachment and attachment.get("State") in ("attaching", "attached"):
            device = attachment["Device"]
            logger.info("'%s' is already attached to '%s' as '%s'", disk_id, vm_id, device)
        else:
            device = self._select_device_name(instance)
            if not device:
                raise CloudError("Instance has too many disks attached")
            logger.debug("Attaching '%s' to '%s' as '%s'", disk_id, vm_id, device)
            with_retry(
                lambda: self.ec2.attach_volume(VolumeId=disk_id, InstanceId=vm_id, Device=device),
                retryable=BUSY,
                sleep=self.sleep,
                description=f"attach {disk_id} to {vm_id}",
            )
        await_state(
            disk_id,
            lambda: self._attachment_state(disk_id, vm_id),
            lambda state: state == "attached",
            description="attached",
            sleep=self.sleep,
        )

        def _add(settings):
            settings.setdefault("disks", {}).setdefault("persistent", {})[disk_id] = device

        self._update_agent_settings(vm_id, _add)
        logger.info("Attached '%s' to '%s' as '%s'", disk_id, vm_id, device)
        return device

    def detach_disk(self, vm_id: str, disk_id: str) -> None:
        """Detach a volume; an absent or already detached volume is a no-op."""
        volume = find_volume(self.ec2, disk_id)
        attachment = volume_attachment(volume, vm_id) if volume else None
        if volume is None:
            logger.info("Disk '%s' not found while trying to detach it from vm '%s'", disk_id, vm_id)
        elif attachment is None or attachment.get("State") == "detached":
            logger.info("Disk '%s' is not attached to vm '%s'", disk_id, vm_id)
        else:
            self._detach(vm_id, disk_id, attachment["Device"])

        def _remove(settings):
            settings.setdefault("disks", {}).setdefault("persistent", {}).pop(disk_id, None)

        self._update_agent_settings(vm_id, _remove)
        logger.info("Detached '%s' from '%s'", disk_id, vm_id)

    def _detach(self, vm_id: str, disk_id: str, device: str) -> None:
        def _call():
            try:
                self.ec2.detach_volume(VolumeId=disk_id, InstanceId=vm_id, Device=device)
            except ClientError as e:
                if error_code(e) not in ("InvalidAttachment.NotFound", VOLUME_NOT_FOUND):
                    raise
                logger.info("'%s' was detached from '%s' concurrently", disk_id, vm_id)

        # a detach right after an attach is rejected while the volume is busy
        with_retry(
            _call,
            retryable=BUSY,
            max_attempts=DETACH_ATTEMPTS,
            sleep=self.sleep,
            description=f"detach {disk_id} from {vm_id}",
        )
        await_state(
            disk_id,
            lambda: self._attachment_state(disk_id, vm_id),
            lambda state: state == "detached",
            description="detached",
            missing_ok=(VOLUME_NOT_FOUND, DiskNotFound),
            sleep=self.sleep,
        )

    def resize_disk(self, disk_id: str, new_size: int) -> None:
        volume = get_volume(self.ec2, disk_id)
        new_gib = size_in_gib(new_size)
        current = volume["Size"]
        if new_gib < current:
            raise CloudError(f"Cannot resize volume '{disk_id}' to a smaller size ({current} GiB -> {new_gib} GiB)")
        if new_gib == current:
            logger.info("Volume '%s' already has %s GiB, skipping resize", disk_id, current)
            return
        logger.info("Resizing volume '%s' from %s GiB to %s GiB", disk_id, current, new_gib)
        try:
            self.ec2.modify_volume(VolumeId=disk_id, Size=new_gib)
        except ClientError as e:
            raise CloudError(f"Failed to resize volume '{disk_id}': {e}") from e

        def _modification_done(state: str) -> bool:
            if state == "failed":
                raise CloudError(f"Modification of volume '{disk_id}' failed")
            # the new size is usable once the volume is optimizing
            return state in ("optimizing", "completed")

        await_state(
            disk_id,
            lambda: self.ec2.describe_volumes_modifications(VolumeIds=[disk_id])["VolumesModifications"][0][
                "ModificationState"
            ],
            _modification_done,
            description="modified",
            sleep=self.sleep,
        )

    def snapshot_disk(self, disk_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        metadata = {str(k): v for k, v in (metadata or {}).items()}
        volume = get_volume(self.ec2, disk_id)
        attachments = volume.get("Attachments") or []
        device = attachments[0].get("Device") if attachments else None
        parts = ["" if metadata.get(k) is None else str(metadata[k]) for k in ("deployment", "job", "index")]
        if device:
            parts.append(device.split("/")[-1])
        description = "/".join(parts)
        try:
            snapshot_id = self.ec2.create_snapshot(VolumeId=disk_id, Description=description)["SnapshotId"]
        except ClientError as e:
            raise CloudError(f"Failed to snapshot volume '{disk_id}': {e}") from e
        logger.info("snapshot '%s' of volume '%s' created", snapshot_id, disk_id)

        tags = dict(metadata)
        # either observed key lands under the configured one
        directors = [tags.pop(key) for key in DIRECTOR_METADATA_KEYS if tags.get(key) is not None]
        if directors:
            tags[self.config.snapshot.director_tag_key] = directors[0]
        if device:
            tags["device"] = device
        if attachments:
            tags["vm_id"] = attachments[0].get("InstanceId")
        tags["Name"] = description
        self.tags.tag([snapshot_id], tags)

        def _completed(state: str) -> bool:
            if state == "error":
                raise CloudError(f"Snapshot '{snapshot_id}' of volume '{disk_id}' failed")
            return state == "completed"

        await_state(
            snapshot_id,
            lambda: self.ec2.describe_snapshots(SnapshotIds=[snapshot_id])["Snapshots"][0]["State"],
            _completed,
            description="completed",
            retry_on=(SNAPSHOT_NOT_FOUND,),
            sleep=self.sleep,
        )
        return snapshot_id

    def delete_snapshot(self, snapshot_id: str) -> None:
        try:
            self.ec2.delete_snapshot(SnapshotId=snapshot_id)
        except ClientError as e:
            if error_code(e) != SNAPSHOT_NOT_FOUND:
                raise
            logger.info("snapshot '%s' not found", snapshot_id)
            return
        logger.info("snapshot '%s' deleted", snapshot_id)

    def set_disk_metadata(self, disk_id: str, metadata: Dict[str, Any]) -> None:
        try:
            self.tags.tag([disk_id], metadata)
        except ClientError as e:
            if error_code(e) != "TagLimitExceeded":
                raise
            logger.error("could not tag %s: %s", disk_id, e)

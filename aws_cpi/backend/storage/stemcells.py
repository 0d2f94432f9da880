"""
Stemcell (machine image) management.
Light stemcells reference an existing region image; when encryption resolves
to true the image is copied into an encrypted image owned by this CPI.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from aws_cpi.backend.resources import IMAGE_NOT_FOUND, SNAPSHOT_NOT_FOUND, get_image
from aws_cpi.backend.tags import TagManager
from aws_cpi.errors import CloudError, error_code
from aws_cpi.models import ImageMetadata, OwnedImage, ReferencedImage, StemcellImage, parse_stemcell_id
from aws_cpi.utils.retry import await_state

from .encryption import resolve

logger = logging.getLogger("aws-cpi")


class StemcellManager:
    """Manager for stemcell images."""

    def __init__(self, ec2, config, sleep: Callable[[float], Any] = time.sleep):
        self.ec2 = ec2
        self.config = config
        self.sleep = sleep
        self.tags = TagManager(ec2, sleep=sleep)

    def create_stemcell(self, image_locator: Optional[str], properties: Optional[Dict[str, Any]]) -> str:
        """Return the stemcell id: ``"<ami> light"`` for a reference, the copy's id when encrypted."""
        properties = dict(properties or {})
        region = self.config.aws.region
        amis = properties.get("ami") or {}
        if not amis:
            raise CloudError(
                f"Stemcell '{image_locator}' has no 'ami' property; only light stemcells (region AMI references) are supported"
            )
        source_id = amis.get(region)
        if not source_id or not self._image_available(source_id):
            raise CloudError(f"Stemcell does not contain an AMI in region {region}")

        policy = resolve(self.config.aws, self.config.aws.stemcell, properties)
        if not policy.encrypted:
            stemcell: StemcellImage = ReferencedImage(source_id)
        else:
            stemcell = OwnedImage(self._encrypted_copy(region, source_id, policy.key_ref))
        self.tags.tag([stemcell.image_id], properties.get("tags"))
        logger.info("Created stemcell '%s'", stemcell.cid)
        return stemcell.cid

    def _image_available(self, image_id: str) -> bool:
        images = self.ec2.describe_images(Filters=[{"Name": "image-id", "Values": [image_id]}]).get("Images", [])
        return bool(images)

    def _encrypted_copy(self, region: str, source_id: str, key_ref: Optional[str]) -> str:
        params: Dict[str, Any] = {
            "SourceRegion": region,
            "SourceImageId": source_id,
            "Name": f"Copied from SourceAMI {source_id}",
            "Encrypted": True,
        }
        if key_ref:
            params["KmsKeyId"] = key_ref
        try:
            image_id = self.ec2.copy_image(**params)["ImageId"]
        except ClientError as e:
            raise CloudError(f"Failed to copy image '{source_id}' with encryption: {e}") from e
        logger.info("Copying '%s' into encrypted image '%s'", source_id, image_id)

        def _available(state: str) -> bool:
            if state in ("failed", "invalid", "error"):
                raise CloudError(f"Encrypted copy '{image_id}' of '{source_id}' ended in state '{state}'")
            return state == "available"

        await_state(
            image_id,
            lambda: get_image(self.ec2, image_id)["State"],
            _available,
            description="available",
            retry_on=(IMAGE_NOT_FOUND, CloudError),
            sleep=self.sleep,
        )
        return image_id

    def delete_stemcell(self, stemcell_id: str) -> None:
        stemcell = parse_stemcell_id(stemcell_id)
        if isinstance(stemcell, ReferencedImage):
            logger.info("NoOP: deleting light stemcell '%s'", stemcell_id)
            return
        image = get_image(self.ec2, stemcell.image_id)
        snapshots = self._snapshot_ids(image)
        try:
            self.ec2.deregister_image(ImageId=stemcell.image_id)
        except ClientError as e:
            raise CloudError(f"Failed to deregister image '{stemcell.image_id}': {e}") from e

        # snapshots stay in use until the image is gone
        await_state(
            stemcell.image_id,
            lambda: self._image_state(stemcell.image_id),
            lambda state: state in ("deregistered", "not-found"),
            description="deregistered",
            missing_ok=(IMAGE_NOT_FOUND,),
            sleep=self.sleep,
        )
        for snapshot_id in snapshots:
            logger.info("cleaning up snapshot '%s'", snapshot_id)
            try:
                self.ec2.delete_snapshot(SnapshotId=snapshot_id)
            except ClientError as e:
                if error_code(e) == SNAPSHOT_NOT_FOUND:
                    continue
                raise CloudError(f"Failed to delete snapshot '{snapshot_id}' of image '{stemcell.image_id}': {e}") from e
        logger.info("deleted stemcell '%s'", stemcell_id)

    def _image_state(self, image_id: str) -> str:
        images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
        return images[0]["State"] if images else "not-found"

    @staticmethod
    def _snapshot_ids(image: Dict[str, Any]) -> List[str]:
        ids = []
        for mapping in image.get("BlockDeviceMappings") or []:
            snapshot_id = (mapping.get("Ebs") or {}).get("SnapshotId")
            if snapshot_id:
                logger.debug("queuing snapshot '%s' for deletion", snapshot_id)
                ids.append(snapshot_id)
        return ids

    def image_metadata(self, stemcell_id: str) -> ImageMetadata:
        """Root device facts of the image behind a stemcell id."""
        stemcell = parse_stemcell_id(stemcell_id)
        image = get_image(self.ec2, stemcell.image_id)
        root_name = image.get("RootDeviceName") or "/dev/xvda"
        root_ebs: Dict[str, Any] = {}
        for mapping in image.get("BlockDeviceMappings") or []:
            if mapping.get("DeviceName") == root_name and mapping.get("Ebs"):
                root_ebs = mapping["Ebs"]
                break
        return ImageMetadata(
            image_id=stemcell.image_id,
            root_device_name=root_name,
            root_volume_size=root_ebs.get("VolumeSize"),
            root_volume_type=root_ebs.get("VolumeType"),
            virtualization_type=image.get("VirtualizationType") or "hvm",
        )

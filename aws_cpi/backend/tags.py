"""
Tagging helpers shared by the VM, disk, snapshot and stemcell managers.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from aws_cpi.errors import error_code
from aws_cpi.utils.retry import with_retry

logger = logging.getLogger("aws-cpi")

MAX_TAG_KEY_LENGTH = 127
MAX_TAG_VALUE_LENGTH = 255
TAG_ATTEMPTS = 30
# freshly created resources may not be visible to create_tags yet
NOT_YET_VISIBLE = ("InvalidAMIID.NotFound", "InvalidInstanceID.NotFound", "InvalidVolume.NotFound", "InvalidSnapshot.NotFound")


def format_tags(tags: Optional[Dict[Any, Any]]) -> List[Dict[str, str]]:
    """AWS tag list with keys/values trimmed to the EC2 limits; None entries dropped."""
    formatted = []
    for key, value in (tags or {}).items():
        if key is None or value is None:
            continue
        formatted.append({"Key": str(key)[:MAX_TAG_KEY_LENGTH], "Value": str(value)[:MAX_TAG_VALUE_LENGTH]})
    return formatted


def name_from_metadata(metadata: Dict[str, Any]) -> Optional[str]:
    """Derive the Name tag: explicit name, else job/index, else compiling/<package>."""
    if metadata.get("name"):
        return str(metadata["name"])
    if metadata.get("job") and metadata.get("index") is not None:
        return f"{metadata['job']}/{metadata['index']}"
    if metadata.get("compiling"):
        return f"compiling/{metadata['compiling']}"
    return None


class TagManager:
    """Apply tags to EC2 resources."""

    def __init__(self, ec2, sleep: Callable[[float], Any] = time.sleep):
        self.ec2 = ec2
        self.sleep = sleep

    def tag(self, resource_ids: List[str], tags: Optional[Dict[Any, Any]]) -> None:
        formatted = format_tags(tags)
        if not formatted or not resource_ids:
            return
        logger.info("Tagging %s with %d tags", ", ".join(resource_ids), len(formatted))
        try:
            with_retry(
                lambda: self.ec2.create_tags(Resources=list(resource_ids), Tags=formatted),
                retryable=NOT_YET_VISIBLE,
                max_attempts=TAG_ATTEMPTS,
                sleep=self.sleep,
                description=f"tag {', '.join(resource_ids)}",
            )
        except ClientError as e:
            if error_code(e) != "InvalidParameterValue":
                raise
            logger.error("Could not tag %s: %s", ", ".join(resource_ids), e)

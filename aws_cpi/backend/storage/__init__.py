"""
Storage backends for the AWS CPI.
This package provides:
- Encryption policy resolution
- Block device planning for new instances
- EBS disk lifecycle (create/attach/detach/resize/snapshot/delete)
- Stemcell image management
"""

from .block_devices import plan_device_mappings, raw_ephemeral_device_paths
from .disks import DiskManager
from .encryption import resolve
from .stemcells import StemcellManager

__all__ = [
    "DiskManager",
    "StemcellManager",
    "plan_device_mappings",
    "raw_ephemeral_device_paths",
    "resolve",
]

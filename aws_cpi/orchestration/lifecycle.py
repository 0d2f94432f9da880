#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Cloud Lifecycle module for the AWS CPI.
This module wires the stemcell, disk and VM managers to one configuration
and exposes every CPI method with its interface-version dependent result.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from aws_cpi.backend import create_aws_clients
from aws_cpi.backend.storage import DiskManager, StemcellManager
from aws_cpi.config import CpiConfig
from aws_cpi.state import registry_from_config
from .instance_types import calculate_vm_cloud_properties
from .vm_manager import VMManager

logger = logging.getLogger("aws-cpi")

MAX_API_VERSION = 2
STEMCELL_FORMATS = ["aws-raw", "aws-light"]


class CloudLifecycle:
    """Entry point for CPI methods against a single AWS configuration."""

    def __init__(
        self,
        config: CpiConfig,
        clients: Optional[Dict[str, Any]] = None,
        registry=None,
        api_version: Optional[int] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.config = config
        self.clients = clients if clients is not None else create_aws_clients(config.aws)
        self.registry = registry if registry is not None else registry_from_config(config.registry)
        self.api_version = min(int(api_version or config.api_version), MAX_API_VERSION)
        ec2 = self.clients["ec2"]
        self.stemcells = StemcellManager(ec2, config, sleep=sleep)
        self.disks = DiskManager(ec2, config, self.registry, sleep=sleep)
        self.vms = VMManager(self.clients, config, self.registry, self.stemcells, api_version=self.api_version, sleep=sleep)

    # ---- informational ----

    def info(self) -> Dict[str, Any]:
        return {"stemcell_formats": list(STEMCELL_FORMATS), "api_version": MAX_API_VERSION}

    def ping(self) -> str:
        return "pong"

    def calculate_vm_cloud_properties(self, vm_properties: Dict[str, Any]) -> Dict[str, Any]:
        return calculate_vm_cloud_properties(vm_properties or {})

    # ---- stemcells ----

    def create_stemcell(self, image_path: Optional[str], stemcell_properties: Dict[str, Any]) -> str:
        return self.stemcells.create_stemcell(image_path, stemcell_properties)

    def delete_stemcell(self, stemcell_id: str) -> None:
        self.stemcells.delete_stemcell(stemcell_id)

    # ---- VMs ----

    def create_vm(
        self,
        agent_id: str,
        stemcell_id: str,
        cloud_properties: Dict[str, Any],
        networks: Dict[str, Dict[str, Any]],
        disk_locality: Optional[List[str]] = None,
        environment: Optional[Dict[str, Any]] = None,
    ) -> Any:
        vm_id, _ = self.vms.create_vm(agent_id, stemcell_id, cloud_properties, networks, disk_locality, environment)
        if self.api_version >= 2:
            return [vm_id, networks]
        return vm_id

    def delete_vm(self, vm_id: str) -> None:
        self.vms.delete_vm(vm_id)

    def has_vm(self, vm_id: str) -> bool:
        return self.vms.has_vm(vm_id)

    def reboot_vm(self, vm_id: str) -> None:
        self.vms.reboot_vm(vm_id)

    def set_vm_metadata(self, vm_id: str, metadata: Dict[str, Any]) -> None:
        self.vms.set_vm_metadata(vm_id, metadata)

    def get_disks(self, vm_id: str) -> List[str]:
        return self.vms.get_disks(vm_id)

    # ---- disks ----

    def create_disk(self, size: int, cloud_properties: Optional[Dict[str, Any]] = None, vm_locality: Optional[str] = None) -> str:
        return self.disks.create_disk(size, cloud_properties, vm_locality)

    def delete_disk(self, disk_id: str) -> None:
        self.disks.delete_disk(disk_id)

    def has_disk(self, disk_id: str) -> bool:
        return self.disks.has_disk(disk_id)

    def attach_disk(self, vm_id: str, disk_id: str) -> Optional[str]:
        device = self.disks.attach_disk(vm_id, disk_id)
        return device if self.api_version >= 2 else None

    def detach_disk(self, vm_id: str, disk_id: str) -> None:
        self.disks.detach_disk(vm_id, disk_id)

    def resize_disk(self, disk_id: str, new_size: int) -> None:
        self.disks.resize_disk(disk_id, new_size)

    def snapshot_disk(self, disk_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        return self.disks.snapshot_disk(disk_id, metadata)

    def delete_snapshot(self, snapshot_id: str) -> None:
        self.disks.delete_snapshot(snapshot_id)

    def set_disk_metadata(self, disk_id: str, metadata: Dict[str, Any]) -> None:
        self.disks.set_disk_metadata(disk_id, metadata)

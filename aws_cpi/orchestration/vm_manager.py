#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VM Manager module for the AWS CPI.
This module handles VM lifecycle operations (create, delete, has_vm, reboot,
metadata, disk listing) by composing the device planner, the network
configurator, the load balancer backends and the settings registry.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from aws_cpi.backend.networking import NetworkConfigurator, backends, get_backend_by_driver, parse_networks
from aws_cpi.backend.resources import INSTANCE_NOT_FOUND, ebs_mappings, find_instance, get_instance, get_volume, instance_state
from aws_cpi.backend.storage import StemcellManager, plan_device_mappings
from aws_cpi.backend.tags import TagManager, name_from_metadata
from aws_cpi.errors import (
    CloudError,
    LoadBalancerRegistrationError,
    StateTimeout,
    VMCreationFailed,
    VMNotFound,
    error_code,
)
from aws_cpi.models import NetworkSpec, VMCloudProps
from aws_cpi.state.agent_settings import AgentSettings
from aws_cpi.utils.retry import await_state, with_retry

logger = logging.getLogger("aws-cpi")

RUN_INSTANCE_ATTEMPTS = 20
RUNNING_TIMEOUT = 900
GONE_STATES = ("shutting-down", "terminated")


class VMManager:
    """Manager for EC2 instance lifecycle operations."""

    def __init__(
        self,
        clients: Dict[str, Any],
        config,
        registry,
        stemcells: StemcellManager,
        api_version: int = 1,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.clients = clients
        self.ec2 = clients["ec2"]
        self.config = config
        self.registry = registry
        self.stemcells = stemcells
        self.api_version = api_version
        self.sleep = sleep
        self.network = NetworkConfigurator(self.ec2, sleep=sleep)
        self.tags = TagManager(self.ec2, sleep=sleep)

    def create_vm(
        self,
        agent_id: str,
        stemcell_id: str,
        cloud_properties: Dict[str, Any],
        network_specs: Dict[str, Dict[str, Any]],
        disk_locality: Optional[List[str]] = None,
        environment: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, AgentSettings]:
        """Launch and configure an instance; returns its id and the agent settings it was given."""
        vm_props = VMCloudProps.from_dict(cloud_properties, self.config.aws)
        image = self.stemcells.image_metadata(stemcell_id)
        plan = plan_device_mappings(image, vm_props, self.config.aws)
        networks = parse_networks(network_specs)
        groups = self._security_groups(vm_props, networks)
        nic = self.network.network_interface(networks, groups, vm_props.auto_assign_public_ip)
        settings = AgentSettings(
            agent_id,
            networks,
            plan,
            environment=environment,
            agent_config=self.config.agent,
            registry_endpoint=self.config.registry.endpoint if self.registry.enabled else None,
        )
        # without a registry the agent reads its full settings from user data
        version = self.api_version if self.registry.enabled else max(self.api_version, 2)
        params = self._instance_params(image.image_id, vm_props, plan, nic, settings.encode(version), disk_locality)
        logger.info("Creating new instance with: %s", {k: v for k, v in params.items() if k != "UserData"})

        try:
            vm_id = with_retry(
                lambda: self.ec2.run_instances(**params)["Instances"][0]["InstanceId"],
                retryable=("InvalidIPAddress.InUse",),
                max_attempts=RUN_INSTANCE_ATTEMPTS,
                sleep=self.sleep,
                description="run_instances",
            )
        except ClientError as e:
            if error_code(e) == "InsufficientInstanceCapacity":
                raise VMCreationFailed(f"Failed to create instance: {e}", ok_to_retry=True) from e
            raise
        logger.info("Creating new instance '%s'", vm_id)
        try:
            self._wait_for_running(vm_id)
            if not vm_props.source_dest_check:
                self.network.disable_source_dest_check(vm_id)
            self.network.configure(vm_id, networks)
            if self.registry.enabled:
                self.registry.update_settings(vm_id, settings.agent_settings())
            self.network.update_routes(vm_id, vm_props.advertised_routes)
        except Exception as e:
            logger.warning("Failed to configure instance '%s': %s", vm_id, e)
            self._terminate_quietly(vm_id)
            raise

        self._register_with_load_balancers(vm_id, vm_props)
        return vm_id, settings

    def _security_groups(self, vm_props: VMCloudProps, networks: List[NetworkSpec]) -> List[str]:
        if vm_props.security_groups:
            return vm_props.security_groups
        from_networks = sorted({g for net in networks for g in net.security_groups})
        return from_networks or list(self.config.aws.default_security_groups)

    def _availability_zone(self, vm_props: VMCloudProps, subnet_id: str, disk_locality: Optional[List[str]]) -> Optional[str]:
        volume_zones = [get_volume(self.ec2, disk_id)["AvailabilityZone"] for disk_id in disk_locality or []]
        subnet_zone = self.network.subnet_availability_zone(subnet_id)
        zones: List[str] = []
        for zone in volume_zones + [vm_props.availability_zone, subnet_zone]:
            if zone and zone not in zones:
                zones.append(zone)
        if len(zones) > 1:
            volumes = f", and volume in {', '.join(volume_zones)}" if volume_zones else ""
            raise CloudError(
                f"can't use multiple availability zones: subnet in {subnet_zone}, "
                f"VM in {vm_props.availability_zone}{volumes}"
            )
        return zones[0] if zones else None

    def _instance_params(self, image_id, vm_props, plan, nic, user_data, disk_locality) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": vm_props.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": user_data,
            "BlockDeviceMappings": plan.block_device_mappings(),
            "NetworkInterfaces": [nic],
        }
        if vm_props.key_name:
            params["KeyName"] = vm_props.key_name
        if vm_props.iam_instance_profile:
            params["IamInstanceProfile"] = {"Name": vm_props.iam_instance_profile}
        placement: Dict[str, Any] = {}
        zone = self._availability_zone(vm_props, nic["SubnetId"], disk_locality)
        if zone:
            placement["AvailabilityZone"] = zone
        if vm_props.placement_group:
            placement["GroupName"] = vm_props.placement_group
        if vm_props.tenancy == "dedicated":
            placement["Tenancy"] = "dedicated"
        if placement:
            params["Placement"] = placement
        if vm_props.tags:
            params["TagSpecifications"] = [
                {"ResourceType": "instance", "Tags": [{"Key": k, "Value": v} for k, v in vm_props.tags.items()]}
            ]
        return params

    def _wait_for_running(self, vm_id: str) -> None:
        def _running(state: str) -> bool:
            if state in GONE_STATES:
                raise VMCreationFailed(f"Instance '{vm_id}' was abruptly terminated", ok_to_retry=True)
            return state == "running"

        logger.info("Waiting for instance '%s' to be ready...", vm_id)
        try:
            await_state(
                vm_id,
                lambda: instance_state(find_instance(self.ec2, vm_id)),
                _running,
                timeout=RUNNING_TIMEOUT,
                description="running",
                retry_on=(INSTANCE_NOT_FOUND,),
                sleep=self.sleep,
            )
        except StateTimeout as e:
            raise VMCreationFailed(f"Timed out waiting for instance '{vm_id}' to be running", ok_to_retry=True) from e

    def _terminate_quietly(self, vm_id: str) -> None:
        try:
            self.ec2.terminate_instances(InstanceIds=[vm_id])
        except ClientError as e:
            logger.error("Failed to terminate mis-configured instance '%s': %s", vm_id, e)

    def _register_with_load_balancers(self, vm_id: str, vm_props: VMCloudProps) -> None:
        """Register with every requested target; failures are collected and raised together."""
        failures: Dict[str, str] = {}
        for driver, names in (("lb_target_groups", vm_props.lb_target_groups), ("elbs", vm_props.elbs)):
            for name in names:
                backend = get_backend_by_driver(driver, self.clients, name, sleep=self.sleep)
                try:
                    backend.register(vm_id)
                except (CloudError, ClientError) as e:
                    logger.error("Failed to register '%s' with %s: %s", vm_id, backend, e)
                    failures[str(backend)] = str(e)
        if failures:
            raise LoadBalancerRegistrationError(vm_id, failures)

    def _deregister_from_load_balancers(self, vm_id: str) -> None:
        for driver, cls in backends().items():
            client = self.clients[cls.client_key]
            try:
                attached = cls.attached_to(client, vm_id, sleep=self.sleep)
            except ClientError as e:
                logger.warning("Unable to list %s registrations of '%s': %s", driver, vm_id, e)
                continue
            for backend in attached:
                try:
                    backend.deregister(vm_id)
                except (CloudError, ClientError) as e:
                    logger.warning("Unable to deregister '%s' from %s: %s", vm_id, backend, e)

    def delete_vm(self, vm_id: str) -> None:
        instance = find_instance(self.ec2, vm_id)
        if instance is None or instance_state(instance) == "terminated":
            raise VMNotFound(f"VM '{vm_id}' not found")
        self._deregister_from_load_balancers(vm_id)
        try:
            self.ec2.terminate_instances(InstanceIds=[vm_id])
        except ClientError as e:
            if error_code(e) == INSTANCE_NOT_FOUND:
                logger.warning("Failed to terminate instance '%s' because it was not found", vm_id)
                raise VMNotFound(f"VM '{vm_id}' not found") from e
            raise
        if self.registry.enabled:
            logger.info("Deleting instance settings for '%s'", vm_id)
            self.registry.delete_settings(vm_id)
        if self.config.aws.fast_path_delete:
            self.tags.tag([vm_id], {"Name": "to be deleted"})
            logger.info("Instance %s marked to deletion", vm_id)
            return
        logger.info("Deleting instance '%s'", vm_id)
        await_state(
            vm_id,
            lambda: instance_state(find_instance(self.ec2, vm_id)),
            lambda state: state in ("terminated", "not-found"),
            description="terminated",
            missing_ok=(INSTANCE_NOT_FOUND,),
            sleep=self.sleep,
        )

    def has_vm(self, vm_id: str) -> bool:
        return instance_state(find_instance(self.ec2, vm_id)) not in ("terminated", "not-found")

    def reboot_vm(self, vm_id: str) -> None:
        logger.info("Rebooting instance '%s'", vm_id)
        try:
            self.ec2.reboot_instances(InstanceIds=[vm_id])
        except ClientError as e:
            if error_code(e) == INSTANCE_NOT_FOUND:
                raise VMNotFound(f"VM '{vm_id}' not found") from e
            raise

    def set_vm_metadata(self, vm_id: str, metadata: Dict[str, Any]) -> None:
        """Tag the instance and every EBS volume attached to it with the same tag set."""
        tags = {str(k): v for k, v in (metadata or {}).items()}
        name = name_from_metadata(tags)
        tags.pop("name", None)
        if name:
            tags["Name"] = name
        instance = get_instance(self.ec2, vm_id)
        volume_ids = [m["Ebs"]["VolumeId"] for m in ebs_mappings(instance)]
        try:
            self.tags.tag([vm_id], tags)
            self.tags.tag(volume_ids, tags)
        except ClientError as e:
            if error_code(e) != "TagLimitExceeded":
                raise
            logger.error("could not tag %s: %s", vm_id, e)

    def get_disks(self, vm_id: str) -> List[str]:
        """EBS volume ids attached to the instance, root first then by device name."""
        return [m["Ebs"]["VolumeId"] for m in ebs_mappings(get_instance(self.ec2, vm_id))]

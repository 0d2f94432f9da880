# backend/networking/network_configurator.py
from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

from aws_cpi.models import AdvertisedRoute, NetworkSpec
from aws_cpi.utils.retry import with_retry

from .base import NetworkingError

logger = logging.getLogger("aws-cpi")

NETWORK_TYPES = ("manual", "dynamic", "vip")
SECURITY_GROUP_ID = re.compile(r"^sg-[0-9a-f]{8,17}$")
ASSOCIATE_ATTEMPTS = 10


def parse_networks(network_specs: Optional[Dict[str, Dict[str, Any]]]) -> List[NetworkSpec]:
    """Validate the network spec map into typed attachments."""
    networks = []
    vip_seen = False
    for name, spec in (network_specs or {}).items():
        spec = spec or {}
        net_type = spec.get("type") or "manual"
        if net_type not in NETWORK_TYPES:
            raise NetworkingError(
                f"Invalid network type '{net_type}' for network '{name}', "
                "can only handle 'dynamic', 'vip', or 'manual' network types"
            )
        cloud_props = spec.get("cloud_properties") or {}
        if net_type == "vip":
            if vip_seen:
                raise NetworkingError(f"More than one vip network for '{name}'")
            vip_seen = True
        elif not cloud_props.get("subnet"):
            raise NetworkingError(f"Network '{name}' requires cloud_properties.subnet")
        if net_type in ("manual", "vip") and not spec.get("ip"):
            raise NetworkingError(f"No IP provided for {net_type} network '{name}'")
        groups = cloud_props.get("security_groups") or []
        networks.append(
            NetworkSpec(
                name=name,
                type=net_type,
                ip=spec.get("ip"),
                subnet_id=cloud_props.get("subnet"),
                security_groups=[groups] if isinstance(groups, str) else list(groups),
                settings=dict(spec),
            )
        )
    return networks


def is_security_group_id(value: str) -> bool:
    return bool(SECURITY_GROUP_ID.match(value or ""))


class NetworkConfigurator:
    """Network attachment, security groups, elastic IPs and route tables for instances."""

    def __init__(self, ec2, sleep: Callable[[float], Any] = time.sleep):
        self.ec2 = ec2
        self.sleep = sleep

    @staticmethod
    def primary_subnet(networks: List[NetworkSpec]) -> Optional[str]:
        for net in networks:
            if net.type in ("manual", "dynamic") and net.subnet_id:
                return net.subnet_id
        return None

    def security_group_ids(self, groups: List[str], subnet_id: Optional[str]) -> List[str]:
        """Map security group names (resolved in the subnet's VPC) and ids to ids."""
        if not groups:
            return []
        by_id = [is_security_group_id(g) for g in groups]
        if any(by_id) and not all(by_id):
            raise NetworkingError("security group names and ids can not be used together in security groups")
        if all(by_id):
            return list(groups)
        if not subnet_id:
            raise NetworkingError("A subnet is required to resolve security group names")
        vpc_id = self.ec2.describe_subnets(SubnetIds=[subnet_id])["Subnets"][0]["VpcId"]
        existing = self.ec2.describe_security_groups(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]).get(
            "SecurityGroups", []
        )
        ids = []
        for name in groups:
            found = [g["GroupId"] for g in existing if g.get("GroupName") == name]
            if not found:
                raise NetworkingError(f"Security group not found with name '{name}'")
            if len(found) > 1:
                raise NetworkingError(
                    f"Found multiple matching security groups with name '{name}': {', '.join(found)}"
                )
            ids.append(found[0])
        return ids

    def network_interface(
        self,
        networks: List[NetworkSpec],
        security_groups: List[str],
        auto_assign_public_ip: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """The primary network interface parameters for run_instances."""
        subnet_id = self.primary_subnet(networks)
        if not subnet_id:
            raise NetworkingError("Missing properties: networks_spec.[].cloud_properties.subnet")
        nic: Dict[str, Any] = {"DeviceIndex": 0, "SubnetId": subnet_id}
        ipv4 = [n.ip for n in networks if n.type == "manual" and not n.is_ipv6]
        ipv6 = [n.ip for n in networks if n.is_ipv6]
        if ipv4:
            nic["PrivateIpAddress"] = ipv4[0]
        if ipv6:
            nic["Ipv6Addresses"] = [{"Ipv6Address": ip} for ip in ipv6]
        group_ids = self.security_group_ids(security_groups, subnet_id)
        if group_ids:
            nic["Groups"] = group_ids
        if auto_assign_public_ip is not None:
            nic["AssociatePublicIpAddress"] = auto_assign_public_ip
        return nic

    def subnet_availability_zone(self, subnet_id: str) -> Optional[str]:
        subnets = self.ec2.describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        return subnets[0].get("AvailabilityZone") if subnets else None

    def associate_elastic_ip(self, instance_id: str, public_ip: str) -> None:
        addresses = self.ec2.describe_addresses(
            PublicIps=[public_ip], Filters=[{"Name": "domain", "Values": ["vpc"]}]
        ).get("Addresses", [])
        if not addresses:
            raise NetworkingError(f"Elastic IP with VPC scope not found with address '{public_ip}'")
        allocation_id = addresses[0]["AllocationId"]
        logger.info(
            "Associating instance '%s' with elastic IP '%s' and allocation_id '%s'",
            instance_id,
            public_ip,
            allocation_id,
        )
        with_retry(
            lambda: self.ec2.associate_address(InstanceId=instance_id, AllocationId=allocation_id),
            retryable=("IncorrectInstanceState", "InvalidInstanceID", "InvalidInstanceID.NotFound"),
            max_attempts=ASSOCIATE_ATTEMPTS,
            backoff_fn=lambda attempt: 1,
            sleep=self.sleep,
            description=f"associate {public_ip} with {instance_id}",
        )

    def configure(self, instance_id: str, networks: List[NetworkSpec]) -> None:
        """Post-launch configuration: elastic IP for a vip network."""
        for net in networks:
            if net.type == "vip":
                self.associate_elastic_ip(instance_id, net.ip)

    def update_routes(self, instance_id: str, routes: List[AdvertisedRoute]) -> None:
        """Point each advertised route at the instance, replacing an existing route to the same CIDR."""
        for route in routes:
            tables = self.ec2.describe_route_tables(RouteTableIds=[route.table_id]).get("RouteTables", [])
            if not tables:
                raise NetworkingError(f"Could not find route table '{route.table_id}'")
            existing = any(r.get("DestinationCidrBlock") == route.destination for r in tables[0].get("Routes", []))
            params = {"RouteTableId": route.table_id, "DestinationCidrBlock": route.destination, "InstanceId": instance_id}
            if existing:
                logger.info("Replacing route %s in %s with target %s", route.destination, route.table_id, instance_id)
                self.ec2.replace_route(**params)
            else:
                logger.info("Creating route %s in %s with target %s", route.destination, route.table_id, instance_id)
                self.ec2.create_route(**params)

    def disable_source_dest_check(self, instance_id: str) -> None:
        logger.info("Disabling source/destination check for %s", instance_id)
        self.ec2.modify_instance_attribute(InstanceId=instance_id, SourceDestCheck={"Value": False})

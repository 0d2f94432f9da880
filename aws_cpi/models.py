#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data models for the AWS CPI.
This module contains the data classes used throughout the application: typed
resource-class properties (each with its defaulting function), stemcell image
variants, device-mapping plans and the command envelope models.
"""
import dataclasses
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

from aws_cpi.errors import ValidationError
from aws_cpi.utils.validation import is_truthy

DEFAULT_DISK_TYPE = "gp2"
DISK_TYPES = {"gp2", "gp3", "io1", "io2", "standard", "sc1", "st1"}
IOPS_DISK_TYPES = {"io1", "io2"}

LIGHT_STEMCELL_SUFFIX = " light"


def _reject_unknown(label: str, props: Dict[str, Any], known) -> None:
    unknown = sorted(set(props or {}) - set(known))
    if unknown:
        raise ValidationError(f"Unknown {label} properties: " + ", ".join(f"'{k}'" for k in unknown))


def _optional_bool(props: Dict[str, Any], key: str) -> Optional[bool]:
    """None when the key is absent, otherwise its truthiness."""
    if key not in props or props[key] is None:
        return None
    return is_truthy(props[key])


def _disk_type(value: Optional[str], label: str) -> Optional[str]:
    if value is None:
        return None
    if value not in DISK_TYPES:
        raise ValidationError(f"Invalid {label} type '{value}', must be one of: {', '.join(sorted(DISK_TYPES))}")
    return value


def _iops(disk_type: Optional[str], iops: Any, label: str) -> Optional[int]:
    if disk_type in IOPS_DISK_TYPES:
        if iops is None:
            raise ValidationError(f"Must specify an 'iops' value when the {label} type is '{disk_type}'")
        return int(iops)
    # only provisioned-iops volumes take an iops value
    return None


@dataclasses.dataclass
class DiskCloudProps:
    """Persistent disk cloud properties."""

    type: str = DEFAULT_DISK_TYPE
    iops: Optional[int] = None
    encrypted: Optional[bool] = None
    kms_key_arn: Optional[str] = None

    @classmethod
    def from_dict(cls, props: Optional[Dict[str, Any]]) -> "DiskCloudProps":
        props = props or {}
        _reject_unknown("disk", props, ("type", "iops", "encrypted", "kms_key_arn"))
        disk_type = _disk_type(props.get("type"), "disk") or DEFAULT_DISK_TYPE
        return cls(
            type=disk_type,
            iops=_iops(disk_type, props.get("iops"), "disk"),
            encrypted=_optional_bool(props, "encrypted"),
            kms_key_arn=props.get("kms_key_arn"),
        )


@dataclasses.dataclass
class EphemeralDiskProps:
    """Ephemeral disk properties; sizes are in 1/1024 GiB units."""

    size: Optional[int] = None
    type: Optional[str] = None
    iops: Optional[int] = None
    encrypted: Optional[bool] = None
    kms_key_arn: Optional[str] = None
    use_instance_storage: bool = False

    @classmethod
    def from_dict(cls, props: Optional[Dict[str, Any]]) -> "EphemeralDiskProps":
        props = props or {}
        _reject_unknown(
            "ephemeral_disk",
            props,
            ("size", "type", "iops", "encrypted", "kms_key_arn", "use_instance_storage"),
        )
        disk_type = _disk_type(props.get("type"), "ephemeral disk")
        use_instance_storage = is_truthy(props.get("use_instance_storage"))
        if use_instance_storage and len(props) > 1:
            raise ValidationError("use_instance_storage cannot be combined with additional ephemeral_disk properties")
        return cls(
            size=props.get("size"),
            type=disk_type,
            iops=_iops(disk_type, props.get("iops"), "ephemeral disk"),
            encrypted=_optional_bool(props, "encrypted"),
            kms_key_arn=props.get("kms_key_arn"),
            use_instance_storage=use_instance_storage,
        )


@dataclasses.dataclass
class RootDiskProps:
    size: Optional[int] = None
    type: Optional[str] = None
    iops: Optional[int] = None

    @classmethod
    def from_dict(cls, props: Optional[Dict[str, Any]]) -> "RootDiskProps":
        props = props or {}
        _reject_unknown("root_disk", props, ("size", "type", "iops"))
        disk_type = _disk_type(props.get("type"), "root disk")
        return cls(size=props.get("size"), type=disk_type, iops=_iops(disk_type, props.get("iops"), "root disk"))


@dataclasses.dataclass
class AdvertisedRoute:
    table_id: str
    destination: str
    target_type: str = "instance"

    @classmethod
    def from_dict(cls, props: Dict[str, Any]) -> "AdvertisedRoute":
        _reject_unknown("advertised_routes", props, ("table_id", "destination", "target_type"))
        if not props.get("table_id") or not props.get("destination"):
            raise ValidationError("advertised_routes entries require 'table_id' and 'destination'")
        target_type = props.get("target_type", "instance")
        if target_type != "instance":
            raise ValidationError(f"Unsupported advertised route target_type '{target_type}', only 'instance' is supported")
        return cls(table_id=props["table_id"], destination=props["destination"], target_type=target_type)


VM_CLOUD_PROPERTY_KEYS = (
    "instance_type",
    "availability_zone",
    "key_name",
    "iam_instance_profile",
    "security_groups",
    "elbs",
    "lb_target_groups",
    "advertised_routes",
    "placement_group",
    "tenancy",
    "source_dest_check",
    "auto_assign_public_ip",
    "raw_instance_storage",
    "ephemeral_disk",
    "root_disk",
    "tags",
)


@dataclasses.dataclass
class VMCloudProps:
    """VM (resource class) cloud properties."""

    instance_type: str
    availability_zone: Optional[str] = None
    key_name: Optional[str] = None
    iam_instance_profile: Optional[str] = None
    security_groups: List[str] = dataclasses.field(default_factory=list)
    elbs: List[str] = dataclasses.field(default_factory=list)
    lb_target_groups: List[str] = dataclasses.field(default_factory=list)
    advertised_routes: List[AdvertisedRoute] = dataclasses.field(default_factory=list)
    placement_group: Optional[str] = None
    tenancy: Optional[str] = None
    source_dest_check: bool = True
    auto_assign_public_ip: Optional[bool] = None
    raw_instance_storage: bool = False
    ephemeral_disk: EphemeralDiskProps = dataclasses.field(default_factory=EphemeralDiskProps)
    root_disk: RootDiskProps = dataclasses.field(default_factory=RootDiskProps)
    tags: Dict[str, str] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, props: Optional[Dict[str, Any]], aws_config=None) -> "VMCloudProps":
        """Build VM properties, filling key name, IAM profile and security groups from global defaults."""
        props = props or {}
        _reject_unknown("VM cloud", props, VM_CLOUD_PROPERTY_KEYS)
        if not props.get("instance_type"):
            raise ValidationError("Missing VM cloud properties: 'instance_type'")
        source_dest_check = props.get("source_dest_check")
        return cls(
            instance_type=props["instance_type"],
            availability_zone=props.get("availability_zone"),
            key_name=props.get("key_name") or getattr(aws_config, "default_key_name", None),
            iam_instance_profile=props.get("iam_instance_profile")
            or getattr(aws_config, "default_iam_instance_profile", None),
            security_groups=list(props.get("security_groups") or []),
            elbs=list(props.get("elbs") or []),
            lb_target_groups=list(props.get("lb_target_groups") or []),
            advertised_routes=[AdvertisedRoute.from_dict(r) for r in props.get("advertised_routes") or []],
            placement_group=props.get("placement_group"),
            tenancy=props.get("tenancy"),
            source_dest_check=True if source_dest_check is None else is_truthy(source_dest_check),
            auto_assign_public_ip=_optional_bool(props, "auto_assign_public_ip"),
            raw_instance_storage=is_truthy(props.get("raw_instance_storage")),
            ephemeral_disk=EphemeralDiskProps.from_dict(props.get("ephemeral_disk")),
            root_disk=RootDiskProps.from_dict(props.get("root_disk")),
            tags={str(k): str(v) for k, v in (props.get("tags") or {}).items()},
        )


@dataclasses.dataclass
class EncryptionPolicy:
    """Resolved encryption settings for one resource."""

    encrypted: bool = False
    key_ref: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ReferencedImage:
    """A light stemcell: points at an existing image it neither copies nor owns."""

    image_id: str

    @property
    def cid(self) -> str:
        return f"{self.image_id}{LIGHT_STEMCELL_SUFFIX}"

    @property
    def owned(self) -> bool:
        return False


@dataclasses.dataclass(frozen=True)
class OwnedImage:
    """A region-local image created (and later deleted) by this CPI."""

    image_id: str

    @property
    def cid(self) -> str:
        return self.image_id

    @property
    def owned(self) -> bool:
        return True


StemcellImage = Union[ReferencedImage, OwnedImage]


def parse_stemcell_id(cid: str) -> StemcellImage:
    """Turn a stemcell id from the wire into its image variant."""
    cid = (cid or "").strip()
    if not cid:
        raise ValidationError("Stemcell id must not be empty")
    if cid.endswith(LIGHT_STEMCELL_SUFFIX):
        return ReferencedImage(cid[: -len(LIGHT_STEMCELL_SUFFIX)].strip())
    return OwnedImage(cid)


@dataclasses.dataclass
class ImageMetadata:
    """The parts of a machine image the device planner needs."""

    image_id: str
    root_device_name: str
    root_volume_size: Optional[int] = None
    root_volume_type: Optional[str] = None
    virtualization_type: str = "hvm"


@dataclasses.dataclass
class BlockDevice:
    """One EBS block device mapping."""

    device_name: str
    volume_size: Optional[int] = None
    volume_type: str = DEFAULT_DISK_TYPE
    iops: Optional[int] = None
    encrypted: Optional[bool] = None
    kms_key_id: Optional[str] = None
    delete_on_termination: bool = True

    def to_mapping(self) -> Dict[str, Any]:
        ebs: Dict[str, Any] = {"VolumeType": self.volume_type, "DeleteOnTermination": self.delete_on_termination}
        if self.volume_size is not None:
            ebs["VolumeSize"] = self.volume_size
        if self.iops is not None:
            ebs["Iops"] = self.iops
        if self.encrypted is not None:
            ebs["Encrypted"] = self.encrypted
        if self.encrypted and self.kms_key_id:
            ebs["KmsKeyId"] = self.kms_key_id
        return {"DeviceName": self.device_name, "Ebs": ebs}


@dataclasses.dataclass
class DeviceMapPlan:
    """Root, ephemeral and raw-ephemeral layout for one VM."""

    root: BlockDevice
    ephemeral: Optional[BlockDevice] = None
    raw_ephemeral: List[str] = dataclasses.field(default_factory=list)

    def block_device_mappings(self) -> List[Dict[str, Any]]:
        mappings = [self.root.to_mapping()]
        if self.ephemeral is not None:
            mappings.append(self.ephemeral.to_mapping())
        for index, path in enumerate(self.raw_ephemeral):
            # NVMe instance store is attached by the hypervisor without a mapping
            if not path.startswith("/dev/nvme"):
                mappings.append({"DeviceName": path, "VirtualName": f"ephemeral{index}"})
        return mappings

    def disk_settings(self) -> Dict[str, Any]:
        """The ``disks`` section of the agent settings document."""
        disks: Dict[str, Any] = {"system": self.root.device_name, "persistent": {}}
        if self.ephemeral is not None:
            disks["ephemeral"] = self.ephemeral.device_name
        if self.raw_ephemeral:
            disks["raw_ephemeral"] = [{"path": path} for path in self.raw_ephemeral]
        return disks


@dataclasses.dataclass
class NetworkSpec:
    """One network attachment requested for a VM."""

    name: str
    type: str = "manual"
    ip: Optional[str] = None
    subnet_id: Optional[str] = None
    security_groups: List[str] = dataclasses.field(default_factory=list)
    settings: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def is_ipv6(self) -> bool:
        return self.type == "manual" and ":" in (self.ip or "")


class ErrorInfo(BaseModel):
    type: str
    message: str
    ok_to_retry: bool = False


class CommandRequest(BaseModel):
    """Command envelope read by the dispatcher."""

    method: str
    arguments: List[Any] = []
    context: Dict[str, Any] = {}
    api_version: Optional[int] = None


class CommandResponse(BaseModel):
    """Command envelope written back; field order is the wire order."""

    result: Any = None
    error: Optional[ErrorInfo] = None
    log: str = ""

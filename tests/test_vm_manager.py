import base64
import json
from unittest.mock import MagicMock, call

import boto3
import pytest
from moto import mock_aws

from aws_cpi.config import ConfigManager
from aws_cpi.errors import CloudError, LoadBalancerRegistrationError, VMCreationFailed, VMNotFound
from aws_cpi.models import ImageMetadata
from aws_cpi.orchestration import VMManager
from conftest import REGION, client_error, no_sleep, raw_config, registry_stub

NETWORKS = {"default": {"type": "manual", "ip": "10.0.0.10", "cloud_properties": {"subnet": "subnet-1"}}}


def _instance(state="running", devices=("/dev/xvda",)):
    return {
        "Reservations": [
            {
                "Instances": [
                    {
                        "InstanceId": "i-1",
                        "State": {"Name": state},
                        "RootDeviceName": "/dev/xvda",
                        "BlockDeviceMappings": [{"DeviceName": d, "Ebs": {"VolumeId": f"vol-{d[-1]}"}} for d in devices],
                    }
                ]
            }
        ]
    }


@pytest.fixture
def stemcells():
    stemcells = MagicMock()
    stemcells.image_metadata.return_value = ImageMetadata(
        image_id="ami-123", root_device_name="/dev/xvda", root_volume_size=3, virtualization_type="hvm"
    )
    return stemcells


@pytest.fixture
def ec2(mock_clients):
    ec2 = mock_clients["ec2"]
    ec2.describe_subnets.return_value = {"Subnets": [{"SubnetId": "subnet-1", "AvailabilityZone": "eu-central-1a", "VpcId": "vpc-1"}]}
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
    ec2.describe_instances.return_value = _instance()
    return ec2


def _manager(mock_clients, cpi_config, stemcells, registry=None, api_version=1):
    return VMManager(
        mock_clients, cpi_config, registry or registry_stub(), stemcells, api_version=api_version, sleep=no_sleep
    )


# ---- create_vm ----


def test_create_vm_launch_parameters(ec2, mock_clients, cpi_config, stemcells):
    manager = _manager(mock_clients, cpi_config, stemcells)

    vm_id, _ = manager.create_vm("agent-1", "ami-123 light", {"instance_type": "t2.micro", "tags": {"team": "core"}}, NETWORKS)

    assert vm_id == "i-1"
    params = ec2.run_instances.call_args.kwargs
    assert params["ImageId"] == "ami-123"
    assert params["InstanceType"] == "t2.micro"
    assert (params["MinCount"], params["MaxCount"]) == (1, 1)
    assert params["KeyName"] == "bosh"
    assert params["Placement"] == {"AvailabilityZone": "eu-central-1a"}
    assert params["NetworkInterfaces"] == [
        {"DeviceIndex": 0, "SubnetId": "subnet-1", "PrivateIpAddress": "10.0.0.10", "Groups": ["sg-0123456789abcdef0"]}
    ]
    assert params["TagSpecifications"] == [{"ResourceType": "instance", "Tags": [{"Key": "team", "Value": "core"}]}]
    ec2.terminate_instances.assert_not_called()


def test_create_vm_embeds_settings_in_user_data_without_registry(ec2, mock_clients, cpi_config, stemcells):
    _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", {"instance_type": "t2.micro"}, NETWORKS)

    user_data = json.loads(ec2.run_instances.call_args.kwargs["UserData"])
    assert user_data["agent_id"] == "agent-1"
    assert user_data["disks"] == {"system": "/dev/xvda", "persistent": {}, "ephemeral": "/dev/sdb"}
    assert user_data["networks"]["default"]["use_dhcp"] is True
    assert user_data["mbus"] == "nats://nats:4222"


def test_create_vm_user_data_reaches_instance_as_json(aws_credentials, cpi_config):
    with mock_aws():
        client = boto3.client("ec2", region_name=REGION)
        vpc_id = client.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]
        subnet_id = client.create_subnet(VpcId=vpc_id, CidrBlock="10.0.0.0/24", AvailabilityZone=f"{REGION}a")["Subnet"]["SubnetId"]
        group_id = client.create_security_group(GroupName="bosh", Description="bosh", VpcId=vpc_id)["GroupId"]
        client.create_key_pair(KeyName="bosh")
        image_id = client.describe_images()["Images"][0]["ImageId"]
        wire = {}

        def _capture(params, **kwargs):
            wire["UserData"] = params["body"]["UserData"]

        client.meta.events.register("before-call.ec2.RunInstances", _capture)
        stemcells = MagicMock()
        stemcells.image_metadata.return_value = ImageMetadata(
            image_id=image_id, root_device_name="/dev/xvda", root_volume_size=3, virtualization_type="hvm"
        )
        clients = {"ec2": client, "elb": MagicMock(), "elbv2": MagicMock()}
        networks = {"default": {"type": "dynamic", "cloud_properties": {"subnet": subnet_id}}}

        vm_id, _ = VMManager(clients, cpi_config, registry_stub(), stemcells, sleep=no_sleep).create_vm(
            "agent-1", f"{image_id} light", {"instance_type": "t2.micro", "security_groups": [group_id]}, networks
        )

        user_data = json.loads(base64.b64decode(wire["UserData"]))
        assert user_data["agent_id"] == "agent-1"
        assert user_data["disks"]["system"] == "/dev/xvda"
        assert client.describe_instances(InstanceIds=[vm_id])["Reservations"][0]["Instances"][0]["State"]["Name"] == "running"


def test_create_vm_raw_instance_storage_registry_document(ec2, mock_clients, cpi_config, stemcells):
    registry = registry_stub(enabled=True)
    props = {"instance_type": "m3.xlarge", "raw_instance_storage": True, "ephemeral_disk": {"size": 4096}}

    _manager(mock_clients, cpi_config, stemcells, registry).create_vm("agent-1", "ami-123 light", props, NETWORKS)

    registry.update_settings.assert_called_once()
    vm_id, settings = registry.update_settings.call_args.args
    assert vm_id == "i-1"
    assert settings["disks"] == {
        "system": "/dev/xvda",
        "persistent": {},
        "ephemeral": "/dev/sdb",
        "raw_ephemeral": [{"path": "/dev/xvdba"}, {"path": "/dev/xvdbb"}],
    }
    assert list(settings["disks"]) == ["system", "persistent", "ephemeral", "raw_ephemeral"]
    # version 1 user data only points at the registry
    user_data = json.loads(ec2.run_instances.call_args.kwargs["UserData"])
    assert "disks" not in user_data


def test_create_vm_uses_network_security_groups(ec2, mock_clients, cpi_config, stemcells):
    networks = {
        "a": {"type": "manual", "ip": "10.0.0.10", "cloud_properties": {"subnet": "subnet-1", "security_groups": ["sg-bbbbbbbb", "sg-aaaaaaaa"]}},
        "b": {"type": "dynamic", "cloud_properties": {"subnet": "subnet-1", "security_groups": ["sg-aaaaaaaa"]}},
    }
    _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", {"instance_type": "t2.micro"}, networks)

    nic = ec2.run_instances.call_args.kwargs["NetworkInterfaces"][0]
    assert nic["Groups"] == ["sg-aaaaaaaa", "sg-bbbbbbbb"]


def test_create_vm_replaces_advertised_routes_and_disables_source_dest_check(ec2, mock_clients, cpi_config, stemcells):
    ec2.describe_route_tables.return_value = {"RouteTables": [{"Routes": [{"DestinationCidrBlock": "10.5.0.0/16"}]}]}
    props = {
        "instance_type": "t2.micro",
        "source_dest_check": False,
        "advertised_routes": [{"table_id": "rtb-1", "destination": "10.5.0.0/16"}],
    }

    _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", props, NETWORKS)

    ec2.replace_route.assert_called_once_with(RouteTableId="rtb-1", DestinationCidrBlock="10.5.0.0/16", InstanceId="i-1")
    ec2.create_route.assert_not_called()
    ec2.modify_instance_attribute.assert_called_once_with(InstanceId="i-1", SourceDestCheck={"Value": False})


def test_create_vm_terminates_instance_when_configuration_fails(ec2, mock_clients, cpi_config, stemcells):
    ec2.describe_route_tables.return_value = {"RouteTables": []}
    props = {"instance_type": "t2.micro", "advertised_routes": [{"table_id": "rtb-404", "destination": "10.5.0.0/16"}]}

    with pytest.raises(CloudError, match="rtb-404"):
        _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", props, NETWORKS)

    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])


def test_create_vm_abruptly_terminated_instance(ec2, mock_clients, cpi_config, stemcells):
    ec2.describe_instances.return_value = _instance(state="terminated")

    with pytest.raises(VMCreationFailed) as exc:
        _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", {"instance_type": "t2.micro"}, NETWORKS)

    assert exc.value.ok_to_retry is True
    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])


def test_create_vm_insufficient_capacity_is_retryable(ec2, mock_clients, cpi_config, stemcells):
    ec2.run_instances.side_effect = client_error("InsufficientInstanceCapacity", "RunInstances")

    with pytest.raises(VMCreationFailed) as exc:
        _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", {"instance_type": "t2.micro"}, NETWORKS)

    assert exc.value.ok_to_retry is True


def test_create_vm_retries_while_ip_is_in_use(ec2, mock_clients, cpi_config, stemcells):
    ec2.run_instances.side_effect = [client_error("InvalidIPAddress.InUse"), {"Instances": [{"InstanceId": "i-1"}]}]

    vm_id, _ = _manager(mock_clients, cpi_config, stemcells).create_vm(
        "agent-1", "ami-123 light", {"instance_type": "t2.micro"}, NETWORKS
    )

    assert vm_id == "i-1"
    assert ec2.run_instances.call_count == 2


def test_create_vm_rejects_conflicting_availability_zones(ec2, mock_clients, cpi_config, stemcells):
    props = {"instance_type": "t2.micro", "availability_zone": "eu-central-1b"}

    with pytest.raises(CloudError) as exc:
        _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", props, NETWORKS)

    assert str(exc.value) == "can't use multiple availability zones: subnet in eu-central-1a, VM in eu-central-1b"
    ec2.run_instances.assert_not_called()


def test_create_vm_load_balancer_failures_keep_the_vm(ec2, mock_clients, cpi_config, stemcells):
    mock_clients["elb"].register_instances_with_load_balancer.side_effect = client_error("LoadBalancerNotFound")
    mock_clients["elbv2"].describe_target_groups.return_value = {"TargetGroups": [{"TargetGroupArn": "arn:tg-1"}]}
    props = {"instance_type": "t2.micro", "elbs": ["lb-1"], "lb_target_groups": ["tg-1"]}

    with pytest.raises(LoadBalancerRegistrationError) as exc:
        _manager(mock_clients, cpi_config, stemcells).create_vm("agent-1", "ami-123 light", props, NETWORKS)

    assert exc.value.instance_id == "i-1"
    assert list(exc.value.failures) == ["classic load balancer 'lb-1'"]
    mock_clients["elbv2"].register_targets.assert_called_once_with(TargetGroupArn="arn:tg-1", Targets=[{"Id": "i-1"}])
    ec2.terminate_instances.assert_not_called()


# ---- delete / inspect ----


def _no_load_balancers(mock_clients):
    for key in ("elb", "elbv2"):
        mock_clients[key].get_paginator.return_value.paginate.return_value = []


def test_delete_vm_waits_for_termination(ec2, mock_clients, cpi_config, stemcells):
    _no_load_balancers(mock_clients)
    ec2.describe_instances.side_effect = [_instance(), _instance("shutting-down"), _instance("terminated")]

    _manager(mock_clients, cpi_config, stemcells).delete_vm("i-1")

    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])
    assert ec2.describe_instances.call_count == 3


def test_delete_vm_deregisters_from_load_balancers(ec2, mock_clients, cpi_config, stemcells):
    mock_clients["elb"].get_paginator.return_value.paginate.return_value = [
        {"LoadBalancerDescriptions": [{"LoadBalancerName": "lb-1", "Instances": [{"InstanceId": "i-1"}]}]}
    ]
    mock_clients["elbv2"].get_paginator.return_value.paginate.return_value = []
    ec2.describe_instances.side_effect = [_instance(), _instance("terminated")]

    _manager(mock_clients, cpi_config, stemcells).delete_vm("i-1")

    mock_clients["elb"].deregister_instances_from_load_balancer.assert_called_once_with(
        LoadBalancerName="lb-1", Instances=[{"InstanceId": "i-1"}]
    )


def test_delete_vm_removes_registry_settings(ec2, mock_clients, cpi_config, stemcells):
    _no_load_balancers(mock_clients)
    registry = registry_stub(enabled=True)
    ec2.describe_instances.side_effect = [_instance(), _instance("terminated")]

    _manager(mock_clients, cpi_config, stemcells, registry).delete_vm("i-1")

    registry.delete_settings.assert_called_once_with("i-1")


def test_delete_terminated_vm_raises_not_found(ec2, mock_clients, cpi_config, stemcells):
    ec2.describe_instances.return_value = _instance("terminated")
    with pytest.raises(VMNotFound, match="VM 'i-1' not found"):
        _manager(mock_clients, cpi_config, stemcells).delete_vm("i-1")
    ec2.terminate_instances.assert_not_called()


def test_delete_vm_fast_path(ec2, mock_clients, stemcells):
    _no_load_balancers(mock_clients)
    config = ConfigManager.build(raw_config(fast_path_delete=True))

    _manager(mock_clients, config, stemcells).delete_vm("i-1")

    ec2.create_tags.assert_called_once_with(Resources=["i-1"], Tags=[{"Key": "Name", "Value": "to be deleted"}])
    assert ec2.describe_instances.call_count == 1


def test_has_vm(ec2, mock_clients, cpi_config, stemcells):
    manager = _manager(mock_clients, cpi_config, stemcells)
    assert manager.has_vm("i-1") is True
    ec2.describe_instances.return_value = _instance("terminated")
    assert manager.has_vm("i-1") is False
    ec2.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")
    assert manager.has_vm("i-1") is False


def test_reboot_missing_vm(ec2, mock_clients, cpi_config, stemcells):
    ec2.reboot_instances.side_effect = client_error("InvalidInstanceID.NotFound")
    with pytest.raises(VMNotFound):
        _manager(mock_clients, cpi_config, stemcells).reboot_vm("i-1")


def test_set_vm_metadata_tags_instance_and_volumes(ec2, mock_clients, cpi_config, stemcells):
    ec2.describe_instances.return_value = _instance(devices=("/dev/sdf", "/dev/xvda"))

    _manager(mock_clients, cpi_config, stemcells).set_vm_metadata("i-1", {"job": "router", "index": 0, "deployment": "cf"})

    tags = [
        {"Key": "job", "Value": "router"},
        {"Key": "index", "Value": "0"},
        {"Key": "deployment", "Value": "cf"},
        {"Key": "Name", "Value": "router/0"},
    ]
    assert ec2.create_tags.call_args_list == [
        call(Resources=["i-1"], Tags=tags),
        call(Resources=["vol-a", "vol-f"], Tags=tags),
    ]


def test_get_disks_lists_root_first(ec2, mock_clients, cpi_config, stemcells):
    ec2.describe_instances.return_value = _instance(devices=("/dev/sdg", "/dev/sdf", "/dev/xvda"))
    assert _manager(mock_clients, cpi_config, stemcells).get_disks("i-1") == ["vol-a", "vol-f", "vol-g"]

import pytest

from aws_cpi.backend.storage.block_devices import plan_device_mappings, raw_ephemeral_device_paths
from aws_cpi.errors import CloudError, ValidationError
from aws_cpi.models import ImageMetadata, VMCloudProps


def _image(**kwargs):
    params = {"image_id": "ami-1", "root_device_name": "/dev/xvda", "root_volume_size": 3, "virtualization_type": "hvm"}
    params.update(kwargs)
    return ImageMetadata(**params)


def _props(**kwargs):
    kwargs.setdefault("instance_type", "m3.medium")
    return VMCloudProps.from_dict(kwargs)


def test_default_plan_has_root_and_10gib_ephemeral():
    plan = plan_device_mappings(_image(), _props(instance_type="t2.micro"))
    assert plan.block_device_mappings() == [
        {"DeviceName": "/dev/xvda", "Ebs": {"VolumeType": "gp2", "DeleteOnTermination": True, "VolumeSize": 3}},
        {
            "DeviceName": "/dev/sdb",
            "Ebs": {"VolumeType": "gp2", "DeleteOnTermination": True, "VolumeSize": 10, "Encrypted": False},
        },
    ]
    assert plan.disk_settings() == {"system": "/dev/xvda", "persistent": {}, "ephemeral": "/dev/sdb"}


def test_ephemeral_size_defaults_to_instance_storage_size():
    plan = plan_device_mappings(_image(), _props(instance_type="m3.xlarge"))
    assert plan.ephemeral.volume_size == 40


def test_explicit_sizes_are_converted_to_gib():
    props = _props(ephemeral_disk={"size": 4000, "type": "gp3"}, root_disk={"size": 20480, "type": "io1", "iops": 1000})
    plan = plan_device_mappings(_image(), props)
    assert plan.ephemeral.volume_size == 4
    assert plan.ephemeral.volume_type == "gp3"
    assert (plan.root.volume_size, plan.root.volume_type, plan.root.iops) == (20, "io1", 1000)


def test_raw_instance_storage_legacy_hvm_names():
    plan = plan_device_mappings(_image(), _props(instance_type="m3.xlarge", raw_instance_storage=True))
    assert plan.raw_ephemeral == ["/dev/xvdba", "/dev/xvdbb"]
    assert plan.block_device_mappings()[-2:] == [
        {"DeviceName": "/dev/xvdba", "VirtualName": "ephemeral0"},
        {"DeviceName": "/dev/xvdbb", "VirtualName": "ephemeral1"},
    ]
    # raw storage keeps the default EBS ephemeral size
    assert plan.ephemeral.volume_size == 10


def test_raw_instance_storage_nvme_names_have_no_mapping():
    plan = plan_device_mappings(_image(), _props(instance_type="i3.4xlarge", raw_instance_storage=True))
    assert plan.raw_ephemeral == ["/dev/nvme0n1", "/dev/nvme1n1"]
    assert all("VirtualName" not in m for m in plan.block_device_mappings())


def test_paravirtual_raw_names():
    assert raw_ephemeral_device_paths("m1.xlarge", 3, "paravirtual") == ["/dev/sdc", "/dev/sdd", "/dev/sde"]


def test_unknown_virtualization_type():
    with pytest.raises(CloudError, match="unknown virtualization type"):
        raw_ephemeral_device_paths("m1.xlarge", 1, "container")


def test_raw_storage_without_instance_storage_fails():
    with pytest.raises(CloudError, match="does not have instance storage"):
        plan_device_mappings(_image(), _props(instance_type="t2.micro", raw_instance_storage=True))


def test_use_instance_storage_skips_ephemeral_mapping():
    plan = plan_device_mappings(_image(), _props(instance_type="m3.medium", ephemeral_disk={"use_instance_storage": True}))
    assert plan.ephemeral is None
    assert len(plan.block_device_mappings()) == 1
    assert "ephemeral" not in plan.disk_settings()


def test_use_instance_storage_and_raw_are_exclusive():
    props = _props(instance_type="m3.xlarge", raw_instance_storage=True, ephemeral_disk={"use_instance_storage": True})
    with pytest.raises(CloudError, match="cannot both be true"):
        plan_device_mappings(_image(), props)


def test_use_instance_storage_rejects_other_keys():
    with pytest.raises(ValidationError):
        _props(ephemeral_disk={"use_instance_storage": True, "size": 1024})


def test_global_encryption_applies_to_ephemeral():
    plan = plan_device_mappings(_image(), _props(), {"encrypted": True, "kms_key_arn": "arn:key"})
    ebs = plan.block_device_mappings()[1]["Ebs"]
    assert ebs["Encrypted"] is True
    assert ebs["KmsKeyId"] == "arn:key"


def test_unknown_vm_property_is_rejected():
    with pytest.raises(ValidationError, match="'instance_typo'"):
        VMCloudProps.from_dict({"instance_type": "t2.micro", "instance_typo": "x"})

"""AWS Cloud Provider Interface: lifecycle of VMs, disks, snapshots and stemcells on EC2."""

__version__ = "1.0.0"

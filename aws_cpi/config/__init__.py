# Configuration module for the AWS CPI
from .manager import AwsConfig, ConfigManager, CpiConfig, RegistryConfig, SnapshotTagConfig

__all__ = ["AwsConfig", "ConfigManager", "CpiConfig", "RegistryConfig", "SnapshotTagConfig"]

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration management module for the AWS CPI.
This module handles loading the YAML configuration file, merging the per-request
context and validating the result into typed settings.
"""
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ValidationError as PydanticValidationError

from aws_cpi.errors import CloudError, ConfigError
from aws_cpi.utils.validation import deep_update

logger = logging.getLogger("aws-cpi")

DEFAULT_CONFIG_PATH = "/var/vcap/jobs/aws_cpi/config/cpi.yml"
REQUIRED_AWS_KEYS = ("default_key_name", "max_retries")
# context entries that describe the caller rather than AWS settings
NON_AWS_CONTEXT_KEYS = {"director_uuid", "request_id"}


class AwsConfig(BaseModel):
    model_config = {"extra": "ignore"}

    region: Optional[str] = None
    ec2_endpoint: Optional[str] = None
    elb_endpoint: Optional[str] = None
    credentials_source: str = "static"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    role_arn: Optional[str] = None
    default_key_name: str
    max_retries: int
    default_security_groups: List[str] = []
    default_iam_instance_profile: Optional[str] = None
    encrypted: bool = False
    kms_key_arn: Optional[str] = None
    fast_path_delete: bool = False
    stemcell: Dict[str, Any] = {}
    dualstack: bool = False


class RegistryConfig(BaseModel):
    model_config = {"extra": "ignore"}

    endpoint: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)


class SnapshotTagConfig(BaseModel):
    director_tag_key: str = "director"


class CpiConfig(BaseModel):
    """Validated ``cloud.properties`` section."""

    model_config = {"extra": "ignore"}

    aws: AwsConfig
    registry: RegistryConfig = RegistryConfig()
    agent: Dict[str, Any] = {}
    snapshot: SnapshotTagConfig = SnapshotTagConfig()
    debug: Dict[str, Any] = {}
    logging: Dict[str, Any] = {}

    @property
    def api_version(self) -> int:
        return int(((self.debug or {}).get("cpi") or {}).get("api_version") or 1)


def _validate_aws_options(aws: Dict[str, Any]) -> None:
    """Check required keys and the credentials source before model validation."""
    missing = [f"aws:{key}" for key in REQUIRED_AWS_KEYS if aws.get(key) is None]
    if not aws.get("region") and not (aws.get("ec2_endpoint") and aws.get("elb_endpoint")):
        missing.append("aws:region, or aws:ec2_endpoint and aws:elb_endpoint")
    if missing:
        raise ConfigError("missing configuration parameters > " + ", ".join(missing))
    source = aws.get("credentials_source", "static")
    has_keys = bool(aws.get("access_key_id") or aws.get("secret_access_key"))
    if source == "static":
        if not (aws.get("access_key_id") and aws.get("secret_access_key")):
            raise ConfigError("Must use access_key_id and secret_access_key with static credentials_source")
    elif source == "env_or_profile":
        if has_keys:
            raise ConfigError("Can't use access_key_id and secret_access_key with env_or_profile credentials_source")
    else:
        raise ConfigError(f"Unknown credentials_source {source}")


class ConfigManager:
    """Manager for configuration operations."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path or os.environ.get("AWS_CPI_CONFIG", DEFAULT_CONFIG_PATH))

    def load_raw(self) -> Dict[str, Any]:
        """Read the YAML file. Syntax errors are fatal."""
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in '{self.config_path}': {e}") from e
        except OSError as e:
            raise ConfigError(f"Unable to read configuration '{self.config_path}': {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration '{self.config_path}' must be a mapping")
        return raw

    def load_cpi_config(self, context: Optional[Dict[str, Any]] = None) -> CpiConfig:
        return self.build(self.load_raw(), context)

    @staticmethod
    def build(raw: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> CpiConfig:
        """Validate ``cloud.properties`` with the request context merged into its aws section."""
        properties = ((raw or {}).get("cloud") or {}).get("properties")
        if not properties:
            raise CloudError("Could not find cloud properties in the configuration")
        properties = copy.deepcopy(properties)
        aws = properties.setdefault("aws", {})
        overrides = {k: v for k, v in (context or {}).items() if k not in NON_AWS_CONTEXT_KEYS}
        if overrides:
            logger.debug("Merging request context keys into aws config: %s", ", ".join(sorted(overrides)))
            deep_update(aws, overrides)
        _validate_aws_options(aws)
        try:
            return CpiConfig.model_validate(properties)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
CLI commands module for the AWS CPI.
This module turns one JSON request into one JSON response: it loads the
configuration with the request context, dispatches the method and wraps the
outcome (result or normalized error, plus the captured log) in the response
envelope.
"""
import io
import json
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from aws_cpi.config import ConfigManager, CpiConfig
from aws_cpi.errors import ValidationError, describe_error
from aws_cpi.models import CommandRequest, CommandResponse, ErrorInfo
from aws_cpi.orchestration import CloudLifecycle

logger = logging.getLogger("aws-cpi")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _default_cloud_factory(config: CpiConfig, api_version: Optional[int]) -> CloudLifecycle:
    return CloudLifecycle(config, api_version=api_version)


@contextmanager
def _captured_log():
    """Copy everything the named logger emits into a buffer for the response."""
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    try:
        yield buffer
    finally:
        logger.removeHandler(handler)


class CLICommands:
    """CLI commands handler."""

    def __init__(
        self,
        config_manager: ConfigManager,
        cloud_factory: Callable[[CpiConfig, Optional[int]], Any] = _default_cloud_factory,
    ):
        self.config_manager = config_manager
        self.cloud_factory = cloud_factory

    @staticmethod
    def _ops(cloud) -> Dict[str, Callable[..., Any]]:
        return {
            "info": cloud.info,
            "ping": cloud.ping,
            "create_stemcell": cloud.create_stemcell,
            "delete_stemcell": cloud.delete_stemcell,
            "create_vm": cloud.create_vm,
            "delete_vm": cloud.delete_vm,
            "has_vm": cloud.has_vm,
            "reboot_vm": cloud.reboot_vm,
            "set_vm_metadata": cloud.set_vm_metadata,
            "get_disks": cloud.get_disks,
            "create_disk": cloud.create_disk,
            "delete_disk": cloud.delete_disk,
            "has_disk": cloud.has_disk,
            "attach_disk": cloud.attach_disk,
            "detach_disk": cloud.detach_disk,
            "resize_disk": cloud.resize_disk,
            "snapshot_disk": cloud.snapshot_disk,
            "delete_snapshot": cloud.delete_snapshot,
            "set_disk_metadata": cloud.set_disk_metadata,
            "calculate_vm_cloud_properties": cloud.calculate_vm_cloud_properties,
        }

    def dispatch(self, request: CommandRequest) -> Any:
        config = self.config_manager.load_cpi_config(request.context)
        cloud = self.cloud_factory(config, request.api_version)
        ops = self._ops(cloud)
        if request.method not in ops:
            raise ValidationError("Method not supported")
        logger.info("Executing %s", request.method)
        return ops[request.method](*request.arguments)

    def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run one request; never raises, failures are reported in the envelope."""
        result = None
        error = None
        with _captured_log() as buffer:
            try:
                request = CommandRequest.model_validate(payload)
                result = self.dispatch(request)
            except Exception as e:
                logger.exception("Request failed: %s", e)
                error = ErrorInfo(**describe_error(e))
        return CommandResponse(result=result, error=error, log=buffer.getvalue()).model_dump()

    def handle_json(self, raw: str) -> str:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            with _captured_log() as buffer:
                logger.exception("Invalid request JSON: %s", e)
            error = ErrorInfo(type="Unknown", message=f"Invalid request JSON: {e}")
            return json.dumps(CommandResponse(error=error, log=buffer.getvalue()).model_dump())
        return json.dumps(self.handle(payload))

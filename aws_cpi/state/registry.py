#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Settings registry client for the AWS CPI.
This module handles reading, writing and deleting the per-instance agent
settings document kept by the registry service.
"""
import json
import logging
from typing import Any, Dict, Optional

import requests
from requests.auth import HTTPBasicAuth

from aws_cpi.errors import CloudError

logger = logging.getLogger("aws-cpi")

DEFAULT_TIMEOUT = 30


class RegistryClient:
    """HTTP client for ``<endpoint>/instances/<id>/settings``."""

    enabled = True

    def __init__(self, endpoint: str, user: Optional[str] = None, password: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT):
        self.endpoint = endpoint.rstrip("/")
        self.auth = HTTPBasicAuth(user, password) if user else None
        self.timeout = timeout

    def _url(self, instance_id: str) -> str:
        return f"{self.endpoint}/instances/{instance_id}/settings"

    def _req(self, method: str, instance_id: str, body: Optional[str] = None) -> requests.Response:
        """Perform an HTTP request with proper timeouts and map errors."""
        try:
            return requests.request(
                method,
                self._url(instance_id),
                data=body,
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                timeout=self.timeout,
                auth=self.auth,
            )
        except requests.exceptions.RequestException as e:
            raise CloudError(f"Error contacting registry for instance_id={instance_id}: {e}") from e

    def update_settings(self, instance_id: str, settings: Dict[str, Any]) -> None:
        logger.debug("Updating registry settings for %s", instance_id)
        resp = self._req("PUT", instance_id, json.dumps(settings))
        if resp.status_code not in (200, 201, 204):
            raise CloudError(
                f"Cannot update settings for '{instance_id}', got HTTP {resp.status_code}: {resp.text[:500]}"
            )

    def read_settings(self, instance_id: str) -> Dict[str, Any]:
        resp = self._req("GET", instance_id)
        if resp.status_code != 200:
            raise CloudError(f"Cannot read settings for '{instance_id}', got HTTP {resp.status_code}")
        try:
            body = resp.json()
            settings = body["settings"]
            return json.loads(settings) if isinstance(settings, str) else settings
        except (ValueError, KeyError, TypeError) as e:
            raise CloudError(f"Invalid settings format for '{instance_id}': {e}") from e

    def delete_settings(self, instance_id: str) -> None:
        resp = self._req("DELETE", instance_id)
        if resp.status_code not in (200, 204, 404):
            raise CloudError(f"Cannot delete settings for '{instance_id}', got HTTP {resp.status_code}")


class DisabledRegistryClient:
    """Stand-in used when no registry endpoint is configured; every call fails."""

    enabled = False

    def update_settings(self, instance_id: str, settings: Dict[str, Any]) -> None:
        raise CloudError(
            f"An attempt to update registry settings has failed for instance_id={instance_id}. The registry is disabled."
        )

    def read_settings(self, instance_id: str) -> Dict[str, Any]:
        raise CloudError(
            f"An attempt to read registry settings has failed for instance_id={instance_id}. The registry is disabled."
        )

    def delete_settings(self, instance_id: str) -> None:
        raise CloudError(
            f"An attempt to delete registry settings has failed for instance_id={instance_id}. The registry is disabled."
        )


def registry_from_config(registry_config) -> Any:
    if registry_config is not None and registry_config.enabled:
        return RegistryClient(registry_config.endpoint, registry_config.user, registry_config.password)
    return DisabledRegistryClient()

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command line entry point for the AWS CPI.

    aws-cpi CONFIG_FILE [--request FILE]

Reads one JSON request (stdin unless --request is given) and writes the JSON
response to stdout. Domain errors are reported in the response, not through
the exit code.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from aws_cpi.cli import CLICommands
from aws_cpi.config import ConfigManager
from aws_cpi.errors import ConfigError

logger = logging.getLogger("aws-cpi")
logger.setLevel(logging.INFO)
_DEF_HANDLER_SET = False

cli = typer.Typer()


def _apply_logging_from_cfg(cfg: Dict[str, Any]) -> None:
    """Apply logging configuration from the cloud properties."""
    global _DEF_HANDLER_SET
    if _DEF_HANDLER_SET:
        return
    log_cfg = cfg.get("logging", {}) or {}
    level = str(log_cfg.get("level", "INFO")).upper()
    try:
        logger.setLevel(getattr(logging, level))
    except AttributeError:
        logger.setLevel(logging.INFO)
    # stderr only; stdout carries the response
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    _DEF_HANDLER_SET = True


@cli.command()
def run(
    config_file: Path,
    request: Optional[Path] = typer.Option(None, "--request", help="Read the request from FILE instead of stdin."),
):
    """Execute one CPI request."""
    config_manager = ConfigManager(config_file)
    try:
        raw = config_manager.load_raw()
        _apply_logging_from_cfg(((raw.get("cloud") or {}).get("properties")) or {})
    except ConfigError as e:
        _apply_logging_from_cfg({})
        # reported again, in the response envelope, by the dispatcher
        logger.debug("Logging configuration not applied: %s", e)
    body = request.read_text(encoding="utf-8") if request else sys.stdin.read()
    typer.echo(CLICommands(config_manager).handle_json(body))


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Fetch a CUE module from an OCI registry into a directory.

Either pass a reference, or a KRM function config whose remoteModule
names the module (credentials are then selected from the resources file).

Usage:
    python -m scripts.fetch_module localhost:5000/sample-module:v1.0.0 --dest ./module --plain-http

    python -m scripts.fetch_module --config function.yaml --resources resources.yaml --dest ./module

Exit codes:
    0: fetched
    1: fetch failed
    2: invalid configuration
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from cuestomize.api import KRMInput
from cuestomize.logging_config import setup_logging
from cuestomize.model import OCIModelProvider, OCIProviderOptions
from cuestomize.oci import ConfigurationError, InvalidReference, OCIError, parse_reference

logger = logging.getLogger(__name__)


def load_resources(path: Path) -> list[dict[str, Any]]:
    """Load resources from a multi-document YAML file or a ResourceList.

    Raises:
        ConfigurationError: If the file is not valid YAML.
    """
    try:
        documents = [doc for doc in yaml.safe_load_all(path.read_text()) if doc]
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid resources file {path}: {e}") from e

    items: list[dict[str, Any]] = []
    for document in documents:
        if isinstance(document, dict) and document.get("kind") == "ResourceList":
            items.extend(document.get("items") or [])
        elif isinstance(document, dict):
            items.append(document)
    return items


def build_provider(args: argparse.Namespace) -> OCIModelProvider:
    """Build the provider from either a reference or a function config.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    if args.config:
        config = KRMInput.from_yaml(Path(args.config).read_text())
        items = load_resources(Path(args.resources)) if args.resources else []
        return OCIModelProvider.from_config_and_items(config, items, working_dir=args.dest)

    try:
        reference = parse_reference(args.reference)
    except InvalidReference as e:
        raise ConfigurationError(str(e)) from e
    return OCIModelProvider(
        OCIProviderOptions(reference=reference, plain_http=args.plain_http, working_dir=args.dest)
    )


async def run(args: argparse.Namespace) -> int:
    """Fetch the module."""
    try:
        provider = build_provider(args)
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    try:
        await provider.get(timeout=args.timeout)
    except (OCIError, TimeoutError) as e:
        logger.error("Fetch failed: %s", e)
        return 1

    print(provider.path())
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Fetch a CUE module from an OCI registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("reference", nargs="?", help="Module reference (registry/repository[:tag])")
    parser.add_argument("--config", type=str, default=None, help="KRM function config YAML")
    parser.add_argument(
        "--resources",
        type=str,
        default=None,
        help="Input resources YAML (credential Secrets)",
    )
    parser.add_argument("--dest", type=str, default=None, help="Destination directory (default: cwd)")
    parser.add_argument("--plain-http", action="store_true", help="Use http instead of https")
    parser.add_argument("--timeout", type=float, default=None, help="Deadline in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    args = parser.parse_args()
    if not args.reference and not args.config:
        parser.error("either a reference or --config is required")

    setup_logging(level=logging.DEBUG if args.verbose else None, json_format=args.json_logs)

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

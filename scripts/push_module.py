#!/usr/bin/env python3
"""
Push a CUE module directory to an OCI registry.

Every file under the source directory becomes one layer named by its path
relative to the directory; the layers are packed into a single OCI 1.1
artifact manifest.

Usage:
    # Anonymous push to a local registry
    python -m scripts.push_module ./module localhost:5000/sample-module:v1.0.0 --plain-http

    # With basic auth (password read from REGISTRY_PASSWORD)
    REGISTRY_PASSWORD=... python -m scripts.push_module ./module ghcr.io/org/module \\
        --tag v1.0.0 --username bot

Exit codes:
    0: pushed
    1: push failed
    2: invalid arguments or empty module directory
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from cuestomize.logging_config import setup_logging
from cuestomize.oci import (
    DEFAULT_TAG,
    MODULE_ARTIFACT_TYPE,
    AuthClient,
    Credential,
    EmptyArtifact,
    InvalidReference,
    OCIError,
    push,
)

logger = logging.getLogger(__name__)

PASSWORD_ENV = "REGISTRY_PASSWORD"
TOKEN_ENV = "REGISTRY_TOKEN"


def build_client(username: str) -> AuthClient | None:
    """Build a registry client from the username flag and environment secrets."""
    password = os.environ.get(PASSWORD_ENV, "")
    token = os.environ.get(TOKEN_ENV, "")
    if not (username or password or token):
        return None
    return AuthClient(credential=Credential(username=username, password=password, access_token=token))


async def run(args: argparse.Namespace) -> int:
    """Push the module and print the manifest digest."""
    try:
        result = await push(
            args.reference,
            Path(args.source),
            artifact_type=args.artifact_type,
            tag=args.tag,
            client=build_client(args.username),
            plain_http=args.plain_http,
            timeout=args.timeout,
        )
    except (InvalidReference, EmptyArtifact, FileNotFoundError) as e:
        logger.error("Cannot push module: %s", e)
        return 2
    except (OCIError, TimeoutError) as e:
        logger.error("Push failed: %s", e)
        return 1

    print(result.digest)
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Push a CUE module directory as an OCI artifact",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("source", help="Module directory to push")
    parser.add_argument("reference", help="Target reference (registry/repository[:tag])")
    parser.add_argument(
        "--tag",
        default=DEFAULT_TAG,
        help=f"Tag to use when the reference has none (default: {DEFAULT_TAG})",
    )
    parser.add_argument(
        "--artifact-type",
        default=MODULE_ARTIFACT_TYPE,
        help=f"Manifest artifact type (default: {MODULE_ARTIFACT_TYPE})",
    )
    parser.add_argument("--username", default="", help="Registry username")
    parser.add_argument("--plain-http", action="store_true", help="Use http instead of https")
    parser.add_argument("--timeout", type=float, default=None, help="Deadline in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    args = parser.parse_args()

    setup_logging(level=logging.DEBUG if args.verbose else None, json_format=args.json_logs)

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

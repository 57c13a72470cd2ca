"""
KRM function configuration and registry credential selection.

The function config names the module and, optionally, a selector that picks
the Secret holding registry credentials out of the input items:

    apiVersion: cuestomize.dev/v1alpha1
    kind: Cuestomization
    metadata:
      name: example
    remoteModule:
      ref: registry.example.com/modules/app:v1.2.0
      auth:
        kind: Secret
        name: registry-credentials

Supported Secret layouts (``data`` is base64, ``stringData`` is plain and
wins on conflicts):
- ``username`` + ``password``
- ``token`` (registry access token, sent as a bearer token)
- ``.dockerconfigjson`` with an ``auths`` entry for the module's registry
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from typing import Any

import orjson
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cuestomize.api.remote_module import RemoteModule
from cuestomize.oci.auth import AuthClient, Credential
from cuestomize.oci.errors import ConfigurationError, InvalidReference

logger = logging.getLogger(__name__)

DOCKER_CONFIG_KEY = ".dockerconfigjson"

# Keys docker uses for Docker Hub in config.json
_DOCKER_HUB_KEYS = ("https://index.docker.io/v1/", "index.docker.io", "registry-1.docker.io")


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


def _decode_secret_data(secret: Mapping[str, Any]) -> dict[str, str]:
    """Merge base64 ``data`` and plain ``stringData`` of a Secret.

    Raises:
        ConfigurationError: If a ``data`` value is not valid base64/UTF-8.
    """
    values: dict[str, str] = {}
    for key, encoded in (secret.get("data") or {}).items():
        try:
            values[str(key)] = base64.b64decode(str(encoded), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(f"secret data key {key!r} is not valid base64") from e
    for key, value in (secret.get("stringData") or {}).items():
        values[str(key)] = str(value)
    return values


def _docker_config_credential(raw: str, registry: str) -> Credential:
    """Extract the credential for ``registry`` from a docker config.json.

    Raises:
        ConfigurationError: If the document is malformed or has no entry for the registry.
    """
    try:
        config = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ConfigurationError(f"invalid {DOCKER_CONFIG_KEY}: {e}") from e
    auths = config.get("auths") if isinstance(config, dict) else None
    if not isinstance(auths, dict):
        raise ConfigurationError(f"{DOCKER_CONFIG_KEY} has no auths section")

    candidates = [registry, f"https://{registry}", f"http://{registry}"]
    if registry == "docker.io":
        candidates.extend(_DOCKER_HUB_KEYS)
    entry = next((auths[key] for key in candidates if key in auths), None)
    if not isinstance(entry, dict):
        raise ConfigurationError(f"{DOCKER_CONFIG_KEY} has no entry for registry {registry!r}")

    username = str(entry.get("username") or "")
    password = str(entry.get("password") or "")
    encoded = entry.get("auth")
    if encoded and not (username and password):
        try:
            decoded = base64.b64decode(str(encoded), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(f"invalid auth value for registry {registry!r}") from e
        username, _, password = decoded.partition(":")
    return Credential(
        username=username,
        password=password,
        refresh_token=str(entry.get("identitytoken") or ""),
        access_token=str(entry.get("registrytoken") or ""),
    )


def credential_from_secret(secret: Mapping[str, Any], registry: str) -> Credential:
    """
    Build a registry credential from a Kubernetes Secret.

    Args:
        secret: Secret resource as a parsed YAML mapping.
        registry: Registry the module is fetched from.

    Returns:
        Credential with the secret material.

    Raises:
        ConfigurationError: If the Secret carries no usable credential.
    """
    values = _decode_secret_data(secret)
    if values.get("username") and "password" in values:
        return Credential(username=values["username"], password=values["password"])
    if values.get("token"):
        return Credential(access_token=values["token"])
    if DOCKER_CONFIG_KEY in values:
        return _docker_config_credential(values[DOCKER_CONFIG_KEY], registry)

    name = (secret.get("metadata") or {}).get("name", "")
    raise ConfigurationError(
        f"secret {name!r} has no username/password, token or {DOCKER_CONFIG_KEY}"
    )


class KRMInput(BaseModel):
    """Function configuration passed to the KRM function."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    api_version: str = Field(default="", alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    remote_module: RemoteModule | None = Field(default=None, alias="remoteModule")

    @classmethod
    def from_yaml(cls, text: str) -> KRMInput:
        """
        Load the function configuration from YAML.

        Raises:
            ConfigurationError: If the document is not valid YAML or does not
                match the schema.
        """
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid function config YAML: {e}") from e
        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise ConfigurationError("function config must be a YAML mapping")
        try:
            return cls.model_validate(document)
        except ValidationError as e:
            raise ConfigurationError(f"invalid function config: {e}") from e

    def get_remote_client(self, items: list[Mapping[str, Any]]) -> AuthClient | None:
        """
        Build a registry client from the credential Secret the auth selector picks.

        Args:
            items: Input resources as parsed YAML mappings.

        Returns:
            A fresh AuthClient, or None when no auth selector is configured.

        Raises:
            ConfigurationError: If the selector does not match exactly one
                item, or the matched item has no usable credential.
        """
        module = self.remote_module
        if module is None or module.auth is None:
            return None

        matches = module.auth.select(items)
        if len(matches) != 1:
            raise ConfigurationError(
                f"auth selector must match exactly one item, matched {len(matches)}"
            )
        secret = matches[0]
        try:
            registry = module.get_registry()
        except InvalidReference as e:
            raise ConfigurationError(f"cannot determine registry for credentials: {e}") from e

        credential = credential_from_secret(secret, registry)
        logger.debug(
            "Selected registry credential",
            extra={
                "item": (secret.get("metadata") or {}).get("name", ""),
                "registry": registry,
            },
        )
        return AuthClient(credential=credential)

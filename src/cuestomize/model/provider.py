"""
Model providers: where the CUE model comes from.

A provider exposes the local directory the model lives in (``path``) and a
way to (re)materialize it there (``get``). ``OCIModelProvider`` pulls the
model from an OCI registry.

Usage:
    provider = OCIModelProvider.from_config_and_items(config, items)
    await provider.get(timeout=60)
    evaluate(provider.path())
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from cuestomize.oci.auth import DEFAULT_CLIENT
from cuestomize.oci.errors import (
    ConfigurationError,
    FetchError,
    InvalidReference,
    TransferError,
)
from cuestomize.oci.reference import ResolvedReference, reference_from_parts
from cuestomize.oci.transfer import pull

if TYPE_CHECKING:
    from cuestomize.api.krm_input import KRMInput
    from cuestomize.oci.auth import TransportClient
    from cuestomize.oci.metrics import TransferMetrics
    from cuestomize.oci.transfer import CopyOptions

logger = logging.getLogger(__name__)

# Directory every CUE module is expected to carry
CUE_MOD_DIR = "cue.mod"


@runtime_checkable
class Provider(Protocol):
    """Source of the CUE model consumed by the transformation pipeline."""

    def path(self) -> Path:
        """Local directory holding the model."""
        ...

    async def get(self, *, timeout: float | None = None) -> None:
        """Materialize the model under ``path()``."""
        ...


@dataclass
class OCIProviderOptions:
    """
    Configuration of an OCIModelProvider.

    Attributes:
        reference: Module reference to pull.
        plain_http: Use http instead of https.
        client: Registry client; None selects the anonymous DEFAULT_CLIENT.
        working_dir: Destination directory; None selects the current directory.
        copy_options: Copy tuning passed through to pull.
        metrics: Optional transfer metrics.
    """

    reference: ResolvedReference | None = None
    plain_http: bool = False
    client: TransportClient | None = None
    working_dir: Path | str | None = None
    copy_options: CopyOptions | None = None
    metrics: TransferMetrics | None = None

    def __post_init__(self) -> None:
        if self.working_dir is not None and not str(self.working_dir):
            raise ConfigurationError("working_dir must not be empty")


class OCIModelProvider:
    """Provider that pulls the CUE model from an OCI registry into a working directory."""

    def __init__(self, options: OCIProviderOptions) -> None:
        """
        Initialize the provider.

        Args:
            options: Provider configuration.

        Raises:
            ConfigurationError: If the options lack a reference.
        """
        if options.reference is None:
            raise ConfigurationError("OCI model provider requires a module reference")
        self._reference = options.reference
        self._plain_http = options.plain_http
        self._client: TransportClient = options.client or DEFAULT_CLIENT
        self._working_dir = Path(options.working_dir) if options.working_dir else Path.cwd()
        self._copy_options = options.copy_options
        self._metrics = options.metrics

    @classmethod
    def from_parts(
        cls,
        registry: str,
        repo: str,
        tag: str = "",
        **kwargs: Any,
    ) -> OCIModelProvider:
        """
        Create a provider from discrete registry, repository and tag.

        Args:
            registry: Registry host, optionally with port.
            repo: Repository path.
            tag: Tag or digest; empty selects ``latest``.
            **kwargs: Remaining OCIProviderOptions fields.

        Raises:
            ConfigurationError: If the parts do not form a valid reference.
        """
        try:
            reference = reference_from_parts(registry, repo, tag)
        except InvalidReference as e:
            raise ConfigurationError(f"invalid reference: {e}") from e
        return cls(OCIProviderOptions(reference=reference, **kwargs))

    @classmethod
    def from_config_and_items(
        cls,
        config: KRMInput,
        items: list[Mapping[str, Any]],
        *,
        working_dir: Path | str | None = None,
    ) -> OCIModelProvider:
        """
        Create a provider from the function config and its input items.

        Raises:
            ConfigurationError: If the remote module is missing, the
                credential cannot be selected, or the reference is invalid.
        """
        module = config.remote_module
        if module is None:
            raise ConfigurationError("remote module configuration is missing")

        try:
            client = config.get_remote_client(items)
        except ConfigurationError as e:
            raise ConfigurationError(f"failed to configure remote client: {e}") from e

        try:
            reference = module.get_reference()
        except InvalidReference as e:
            raise ConfigurationError(f"failed to get reference: {e}") from e

        return cls(
            OCIProviderOptions(
                reference=reference,
                plain_http=module.plain_http,
                client=client,
                working_dir=working_dir,
            )
        )

    @property
    def reference(self) -> ResolvedReference:
        """Module reference this provider pulls."""
        return self._reference

    @property
    def client(self) -> TransportClient:
        """Registry client used for pulls."""
        return self._client

    @property
    def plain_http(self) -> bool:
        """Whether pulls use plain http."""
        return self._plain_http

    def path(self) -> Path:
        """Local directory holding the model."""
        return self._working_dir

    async def get(self, *, timeout: float | None = None) -> None:
        """
        Pull the model into the working directory.

        Every call transfers again; nothing is cached between calls. A missing
        ``cue.mod`` directory in the result is logged, not raised.

        Args:
            timeout: Deadline in seconds for the pull.

        Raises:
            InvalidReference: If the reference has no tag or digest.
            FetchError: If the pull fails; the TransferError is the cause.
            DeadlineExceeded: If the timeout expires.
        """
        context = {
            "registry": self._reference.registry,
            "repository": self._reference.repository,
            "reference": self._reference.reference,
            "working_dir": str(self._working_dir),
        }
        logger.info("Fetching from OCI registry", extra={**context, "plain_http": self._plain_http})

        try:
            result = await pull(
                self._reference,
                self._working_dir,
                client=self._client,
                plain_http=self._plain_http,
                timeout=timeout,
                options=self._copy_options,
                metrics=self._metrics,
            )
        except TransferError as e:
            raise FetchError(
                f"failed to fetch from OCI registry: {e.message}",
                registry=self._reference.registry,
                repository=self._reference.repository,
                reference=self._reference.reference,
                path=str(self._working_dir),
                status=e.status,
            ) from e

        if not (self._working_dir / CUE_MOD_DIR).exists():
            logger.warning(
                "cue.mod not found in artifact; the module may not evaluate",
                extra=context,
            )
        logger.info("Fetched module", extra={**context, "digest": result.digest})

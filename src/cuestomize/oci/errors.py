"""
Error taxonomy for OCI module acquisition.

Parsing and configuration errors are raised before any I/O and are never
retried. Transfer errors carry enough context (registry, repository,
reference, local path) to diagnose a failure from the message alone.

Cancellation is not modelled here: a cancelled task raises
``asyncio.CancelledError`` which always propagates untouched.
"""

from __future__ import annotations


class OCIError(Exception):
    """Base exception for the acquisition layer."""


class InvalidReference(OCIError, ValueError):
    """Raised when a module reference or descriptor is malformed."""

    def __init__(self, message: str, reference: str = "") -> None:
        super().__init__(message)
        self.reference = reference


class ConfigurationError(OCIError):
    """Raised when a provider cannot be constructed."""


class EmptyArtifact(OCIError):
    """Raised when a push source contains no files."""

    def __init__(self, message: str, source_dir: str = "") -> None:
        super().__init__(message)
        self.source_dir = source_dir


class TransferError(OCIError):
    """Raised on transport, authentication or not-found failures.

    Attributes:
        registry: Registry host (with port, if any).
        repository: Repository path inside the registry.
        reference: Tag or digest being transferred.
        path: Local directory involved in the transfer.
        status: HTTP status code, when the failure came from a response.
    """

    def __init__(
        self,
        message: str,
        *,
        registry: str = "",
        repository: str = "",
        reference: str = "",
        path: str = "",
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.registry = registry
        self.repository = repository
        self.reference = reference
        self.path = path
        self.status = status

    def with_context(
        self,
        *,
        registry: str = "",
        repository: str = "",
        reference: str = "",
        path: str = "",
    ) -> TransferError:
        """Fill in context fields that are still empty. Returns self."""
        self.registry = self.registry or registry
        self.repository = self.repository or repository
        self.reference = self.reference or reference
        self.path = self.path or path
        return self

    def __str__(self) -> str:
        context = [
            f"{key}={value}"
            for key, value in (
                ("registry", self.registry),
                ("repository", self.repository),
                ("reference", self.reference),
                ("path", self.path),
                ("status", self.status),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class UnauthorizedError(TransferError):
    """Raised when the registry denies access (401/403)."""


class NotFoundError(TransferError):
    """Raised when a manifest or blob does not exist (404)."""


class DigestMismatchError(TransferError):
    """Raised when fetched content does not match its descriptor."""


class FetchError(TransferError):
    """Raised by a model provider when fetching its module fails.

    The underlying ``TransferError`` is available as ``__cause__``.
    """


class DeadlineExceeded(OCIError, TimeoutError):
    """Raised when a transfer does not finish before its deadline."""

    def __init__(self, message: str, timeout_s: float | None = None) -> None:
        super().__init__(message)
        self.timeout_s = timeout_s

"""
Client side of the OCI distribution API for one repository.

Endpoints used:
- ``HEAD/GET /v2/<name>/manifests/<reference>``
- ``PUT /v2/<name>/manifests/<reference>``
- ``HEAD/GET /v2/<name>/blobs/<digest>``
- ``POST /v2/<name>/blobs/uploads/`` then ``PUT <location>?digest=<digest>``

The repository never retries; every failure surfaces as a ``TransferError``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode, urljoin, urlsplit

from cuestomize.oci.auth import DEFAULT_CLIENT, RegistryResponse, repository_scope
from cuestomize.oci.descriptor import (
    MANIFEST_MEDIA_TYPES,
    Descriptor,
    compute_digest,
    verify_content,
)
from cuestomize.oci.errors import (
    DigestMismatchError,
    NotFoundError,
    TransferError,
    UnauthorizedError,
)

if TYPE_CHECKING:
    from types import TracebackType

    from cuestomize.oci.auth import Transport, TransportClient

logger = logging.getLogger(__name__)

# Docker Hub serves its API from a different host than its reference name
_REGISTRY_ALIASES: dict[str, str] = {"docker.io": "registry-1.docker.io"}

MANIFEST_ACCEPT = ", ".join(sorted(MANIFEST_MEDIA_TYPES))


def _summarize_errors(resp: RegistryResponse) -> str:
    """Summarize an OCI error body (``{"errors": [{"code", "message"}]}``)."""
    try:
        payload: Any = resp.json()
    except ValueError:
        return resp.body[:200].decode(errors="replace").strip()
    if not isinstance(payload, dict):
        return ""
    parts = []
    for error in payload.get("errors") or []:
        if isinstance(error, dict):
            code = error.get("code", "")
            message = error.get("message", "")
            parts.append(f"{code}: {message}" if message else str(code))
    return "; ".join(parts)


class RemoteRepository:
    """
    One repository in a remote registry.

    Use as an async context manager; the transport session lives for the
    duration of the ``async with`` block.

    Example:
        async with RemoteRepository("localhost:5000", "sample-module", plain_http=True) as repo:
            descriptor = await repo.resolve("latest")
    """

    def __init__(
        self,
        registry: str,
        repository: str,
        *,
        client: TransportClient | None = None,
        plain_http: bool = False,
    ) -> None:
        """
        Initialize the repository handle.

        Args:
            registry: Registry host, optionally with port.
            repository: Repository path.
            client: Transport client carrying credentials. Defaults to the
                anonymous DEFAULT_CLIENT.
            plain_http: Use http instead of https.
        """
        self.registry = registry
        self.repository = repository
        self.plain_http = plain_http
        self._client: TransportClient = client or DEFAULT_CLIENT
        self._transport_cm: Any = None
        self._transport: Transport | None = None

    @property
    def base_url(self) -> str:
        """Base URL of the repository API."""
        scheme = "http" if self.plain_http else "https"
        host = _REGISTRY_ALIASES.get(self.registry, self.registry)
        return f"{scheme}://{host}/v2/{self.repository}"

    async def __aenter__(self) -> RemoteRepository:
        self._transport_cm = self._client.open()
        self._transport = await self._transport_cm.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._transport_cm is not None:
            await self._transport_cm.__aexit__(exc_type, exc, tb)
        self._transport_cm = None
        self._transport = None

    def _error(self, message: str, reference: str, status: int | None = None) -> TransferError:
        return TransferError(
            message,
            registry=self.registry,
            repository=self.repository,
            reference=reference,
            status=status,
        )

    def _check(self, resp: RegistryResponse, action: str, reference: str) -> None:
        """Raise the matching TransferError for a failed response."""
        if resp.status < 400:
            return
        detail = _summarize_errors(resp)
        message = f"{action} failed: HTTP {resp.status}"
        if detail:
            message = f"{message}: {detail}"
        error_cls: type[TransferError] = TransferError
        if resp.status in (401, 403):
            error_cls = UnauthorizedError
        elif resp.status == 404:
            error_cls = NotFoundError
        raise error_cls(
            message,
            registry=self.registry,
            repository=self.repository,
            reference=reference,
            status=resp.status,
        )

    async def _request(
        self,
        method: str,
        url: str,
        reference: str,
        *,
        push: bool = False,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
    ) -> RegistryResponse:
        if self._transport is None:
            raise RuntimeError("RemoteRepository used outside of 'async with'")
        actions = ("pull", "push") if push else ("pull",)
        try:
            return await self._transport.request(
                method,
                url,
                scopes=[repository_scope(self.repository, *actions)],
                headers=headers,
                data=data,
            )
        except TransferError as e:
            raise e.with_context(
                registry=self.registry,
                repository=self.repository,
                reference=reference,
            )

    async def resolve(self, reference: str) -> Descriptor:
        """
        Resolve a tag or digest to a manifest descriptor.

        Falls back to GET when the registry omits Docker-Content-Digest on HEAD.

        Raises:
            NotFoundError: If the reference does not exist.
            UnauthorizedError: If access is denied.
            TransferError: On any other failure.
        """
        url = f"{self.base_url}/manifests/{reference}"
        headers = {"Accept": MANIFEST_ACCEPT}
        resp = await self._request("HEAD", url, reference, headers=headers)
        self._check(resp, "resolve manifest", reference)

        digest = resp.header("docker-content-digest")
        size = resp.header("content-length")
        media_type = (resp.header("content-type") or "").split(";")[0].strip()
        if digest and size and size.isdigit() and media_type:
            return Descriptor(media_type=media_type, digest=digest, size=int(size))

        descriptor, _ = await self.fetch_manifest(reference)
        return descriptor

    async def fetch_manifest(self, reference: str) -> tuple[Descriptor, bytes]:
        """GET a manifest by tag or digest, returning its descriptor and content."""
        url = f"{self.base_url}/manifests/{reference}"
        resp = await self._request("GET", url, reference, headers={"Accept": MANIFEST_ACCEPT})
        self._check(resp, "fetch manifest", reference)

        media_type = (resp.header("content-type") or "").split(";")[0].strip()
        if media_type not in MANIFEST_MEDIA_TYPES:
            raise self._error(f"unsupported manifest media type {media_type!r}", reference)
        digest = resp.header("docker-content-digest") or compute_digest(resp.body)
        if ":" in reference and reference != digest:
            raise DigestMismatchError(
                f"registry returned manifest {digest} for {reference}",
                registry=self.registry,
                repository=self.repository,
                reference=reference,
            )
        if not verify_content(resp.body, digest):
            raise DigestMismatchError(
                f"manifest content does not match digest {digest}",
                registry=self.registry,
                repository=self.repository,
                reference=reference,
            )
        descriptor = Descriptor(media_type=media_type, digest=digest, size=len(resp.body))
        return descriptor, resp.body

    async def fetch(self, descriptor: Descriptor) -> bytes:
        """
        Fetch manifest or blob content, verifying digest and size.

        Raises:
            DigestMismatchError: If content does not match the descriptor.
        """
        if descriptor.is_manifest:
            _, content = await self.fetch_manifest(descriptor.digest)
        else:
            url = f"{self.base_url}/blobs/{descriptor.digest}"
            resp = await self._request("GET", url, descriptor.digest)
            self._check(resp, "fetch blob", descriptor.digest)
            content = resp.body

        if len(content) != descriptor.size or not verify_content(content, descriptor.digest):
            raise DigestMismatchError(
                f"content of {descriptor.digest} does not match its descriptor "
                f"(size {len(content)}, expected {descriptor.size})",
                registry=self.registry,
                repository=self.repository,
                reference=descriptor.digest,
            )
        return content

    async def exists(self, descriptor: Descriptor) -> bool:
        """Check whether a manifest or blob is already present."""
        kind = "manifests" if descriptor.is_manifest else "blobs"
        url = f"{self.base_url}/{kind}/{descriptor.digest}"
        headers = {"Accept": MANIFEST_ACCEPT} if descriptor.is_manifest else None
        resp = await self._request("HEAD", url, descriptor.digest, push=True, headers=headers)
        if resp.status == 404:
            return False
        self._check(resp, f"check {kind[:-1]}", descriptor.digest)
        return True

    async def push(self, descriptor: Descriptor, content: bytes) -> None:
        """Push a blob (monolithic upload) or a manifest (by digest)."""
        if descriptor.is_manifest:
            await self._put_manifest(descriptor, content, descriptor.digest)
            return

        upload_url = f"{self.base_url}/blobs/uploads/"
        resp = await self._request("POST", upload_url, descriptor.digest, push=True)
        self._check(resp, "start blob upload", descriptor.digest)
        location = resp.header("location")
        if not location:
            raise self._error("blob upload response carries no Location", descriptor.digest)

        # Location may be relative and may already carry query parameters
        location = urljoin(self.base_url, location)
        separator = "&" if urlsplit(location).query else "?"
        put_url = f"{location}{separator}{urlencode({'digest': descriptor.digest})}"
        resp = await self._request(
            "PUT",
            put_url,
            descriptor.digest,
            push=True,
            headers={"Content-Type": "application/octet-stream"},
            data=content,
        )
        self._check(resp, "upload blob", descriptor.digest)

    async def tag(self, descriptor: Descriptor, content: bytes, reference: str) -> None:
        """Associate a manifest with a tag."""
        await self._put_manifest(descriptor, content, reference)

    async def _put_manifest(self, descriptor: Descriptor, content: bytes, reference: str) -> None:
        url = f"{self.base_url}/manifests/{reference}"
        resp = await self._request(
            "PUT",
            url,
            reference,
            push=True,
            headers={"Content-Type": descriptor.media_type},
            data=content,
        )
        self._check(resp, "push manifest", reference)
        logger.debug(
            "Pushed manifest",
            extra={"repository": self.repository, "reference": reference, "digest": descriptor.digest},
        )

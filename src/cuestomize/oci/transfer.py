"""
Artifact transfer between a remote repository and a local directory.

Pull: registry -> directory. Every named layer lands at its relative path
under the destination; manifests stay in memory.

Push: directory -> registry. Every file becomes one layer named by its path
relative to the source directory; all layers are packed into one manifest.

Both operations:
- copy children before parents, so a manifest is only written once all of
  its blobs are in place;
- accept a ``timeout`` (seconds) that surfaces as ``DeadlineExceeded``;
- let ``asyncio.CancelledError`` propagate untouched;
- never retry.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cuestomize.oci.descriptor import (
    MEDIA_TYPE_IMAGE_LAYER,
    MODULE_ARTIFACT_TYPE,
    Descriptor,
    pack_manifest,
    successors,
    verify_content,
)
from cuestomize.oci.errors import (
    DeadlineExceeded,
    EmptyArtifact,
    InvalidReference,
    TransferError,
)
from cuestomize.oci.reference import DEFAULT_TAG, ResolvedReference, parse_reference
from cuestomize.oci.remote import RemoteRepository
from cuestomize.oci.store import FileStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

    from cuestomize.oci.auth import TransportClient
    from cuestomize.oci.metrics import Direction, TransferMetrics

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    """Read side of a copy."""

    async def fetch(self, descriptor: Descriptor) -> bytes: ...


class ContentTarget(Protocol):
    """Write side of a copy."""

    async def exists(self, descriptor: Descriptor) -> bool: ...

    async def push(self, descriptor: Descriptor, content: bytes) -> None: ...

    async def tag(self, descriptor: Descriptor, content: bytes, reference: str) -> None: ...


@dataclass(frozen=True)
class TransferResult:
    """Root manifest of a completed transfer.

    Attributes:
        digest: Manifest digest (``algorithm:hex``).
        size: Manifest size in bytes.
        media_type: Manifest media type.
    """

    digest: str
    size: int
    media_type: str

    @classmethod
    def from_descriptor(cls, descriptor: Descriptor) -> TransferResult:
        """Create from a manifest descriptor."""
        return cls(digest=descriptor.digest, size=descriptor.size, media_type=descriptor.media_type)


@dataclass
class CopyOptions:
    """Copy configuration.

    Attributes:
        concurrency: Maximum number of nodes fetched/pushed at once.
        layer_media_type: Media type for layers created by push.
    """

    concurrency: int = 3
    layer_media_type: str = MEDIA_TYPE_IMAGE_LAYER

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")


async def _gather_or_cancel(aws: Iterable[Awaitable[None]]) -> None:
    """Await all; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def copy_graph(
    source: ContentSource,
    target: ContentTarget,
    root: Descriptor,
    root_content: bytes,
    reference: str,
    *,
    options: CopyOptions | None = None,
    metrics: TransferMetrics | None = None,
    direction: Direction = "pull",
) -> None:
    """
    Copy a manifest and everything it refers to, then tag the root.

    Args:
        source: Store to read from.
        target: Store to write to.
        root: Root manifest descriptor.
        root_content: Root manifest bytes.
        reference: Tag (or digest) to apply to the root in the target.
        options: Copy options.
        metrics: Optional transfer metrics.
        direction: Metrics label.
    """
    options = options or CopyOptions()
    semaphore = asyncio.Semaphore(options.concurrency)
    # One copy per (digest, name); identical bytes under two names are two files
    started: set[tuple[str, str | None]] = set()

    async def copy_node(descriptor: Descriptor) -> None:
        key = (descriptor.digest, descriptor.title)
        if key in started:
            return
        started.add(key)

        async with semaphore:
            if await target.exists(descriptor):
                logger.debug("Skipping existing content", extra={"digest": descriptor.digest})
                return
            content = descriptor.embedded_data()
            if content is None or not verify_content(content, descriptor.digest):
                content = await source.fetch(descriptor)

        await _gather_or_cancel(copy_node(child) for child in successors(descriptor, content))

        async with semaphore:
            await target.push(descriptor, content)
        if metrics is not None:
            metrics.record_blob(direction, descriptor.size)

    await _gather_or_cancel(copy_node(child) for child in successors(root, root_content))
    await target.tag(root, root_content, reference)
    if metrics is not None:
        metrics.record_blob(direction, root.size)


async def _run_with_deadline(
    operation: Awaitable[TransferResult],
    *,
    timeout: float | None,
    description: str,
    direction: Direction,
    metrics: TransferMetrics | None,
) -> TransferResult:
    """Apply the deadline and record the outcome of one transfer."""
    try:
        async with asyncio.timeout(timeout):
            result = await operation
    except TimeoutError as e:
        if metrics is not None:
            metrics.record_transfer(direction, "deadline")
        raise DeadlineExceeded(
            f"{description} exceeded its deadline of {timeout}s", timeout_s=timeout
        ) from e
    except asyncio.CancelledError:
        if metrics is not None:
            metrics.record_transfer(direction, "canceled")
        raise
    except TransferError:
        if metrics is not None:
            metrics.record_transfer(direction, "error")
        raise
    if metrics is not None:
        metrics.record_transfer(direction, "success")
    return result


async def pull(
    reference: ResolvedReference,
    destination: Path | str,
    *,
    client: TransportClient | None = None,
    plain_http: bool = False,
    timeout: float | None = None,
    options: CopyOptions | None = None,
    metrics: TransferMetrics | None = None,
) -> TransferResult:
    """
    Pull an artifact into a local directory.

    The destination may be left partially populated on failure. Files that
    were fully written are never corrupt.

    Args:
        reference: Resolved module reference.
        destination: Directory receiving the artifact's named blobs.
        client: Transport client (credentials). Defaults to anonymous.
        plain_http: Use http instead of https.
        timeout: Deadline for the whole operation, in seconds.
        options: Copy options.
        metrics: Optional transfer metrics.

    Returns:
        TransferResult describing the pulled manifest.

    Raises:
        InvalidReference: If the reference has no tag or digest.
        TransferError: On network, auth, not-found or integrity failures.
        DeadlineExceeded: If the timeout expires.
    """
    if not reference.reference:
        raise InvalidReference(
            f"cannot pull {reference}: missing tag or digest", reference=str(reference)
        )
    destination = Path(destination)

    async def run() -> TransferResult:
        store = FileStore(destination)
        logger.info(
            "Pulling artifact",
            extra={
                "registry": reference.registry,
                "repository": reference.repository,
                "reference": reference.reference,
                "destination": str(destination),
                "plain_http": plain_http,
            },
        )
        try:
            async with RemoteRepository(
                reference.registry,
                reference.repository,
                client=client,
                plain_http=plain_http,
            ) as repo:
                root, root_content = await repo.fetch_manifest(reference.reference)
                await copy_graph(
                    repo,
                    store,
                    root,
                    root_content,
                    reference.reference,
                    options=options,
                    metrics=metrics,
                    direction="pull",
                )
        except TransferError as e:
            raise e.with_context(
                registry=reference.registry,
                repository=reference.repository,
                reference=reference.reference,
                path=str(destination),
            )
        logger.info(
            "Pulled artifact",
            extra={
                "repository": reference.repository,
                "digest": root.digest,
                "media_type": root.media_type,
                "files": len(store.names),
            },
        )
        return TransferResult.from_descriptor(root)

    return await _run_with_deadline(
        run(),
        timeout=timeout,
        description=f"pull of {reference} into {destination}",
        direction="pull",
        metrics=metrics,
    )


def collect_layers(
    store: FileStore,
    source_dir: Path,
    media_type: str = MEDIA_TYPE_IMAGE_LAYER,
) -> list[Descriptor]:
    """
    Walk a directory and register every file as a named blob.

    Names are paths relative to ``source_dir`` with POSIX separators, so
    ``bin/app`` stays nested. Order is deterministic (sorted walk).

    Raises:
        FileNotFoundError: If source_dir is not a directory.
        EmptyArtifact: If the walk yields no files.
    """
    if not source_dir.is_dir():
        raise FileNotFoundError(f"push source is not a directory: {source_dir}")

    def on_error(error: OSError) -> None:
        raise error

    layers: list[Descriptor] = []
    for dirpath, dirnames, filenames in os.walk(source_dir, onerror=on_error):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if not path.is_file():
                continue
            name = path.relative_to(source_dir).as_posix()
            layers.append(store.add(name, path, media_type))

    if not layers:
        raise EmptyArtifact(
            f"no files found in directory {source_dir}", source_dir=str(source_dir)
        )
    return layers


def _has_explicit_reference(target: str) -> bool:
    return "@" in target or ":" in target.rpartition("/")[2]


async def push(
    target_reference: str | ResolvedReference,
    source_dir: Path | str,
    artifact_type: str = MODULE_ARTIFACT_TYPE,
    tag: str = DEFAULT_TAG,
    *,
    client: TransportClient | None = None,
    plain_http: bool = False,
    timeout: float | None = None,
    annotations: dict[str, str] | None = None,
    options: CopyOptions | None = None,
    metrics: TransferMetrics | None = None,
) -> TransferResult:
    """
    Push a directory as a single-manifest artifact.

    The directory is walked and packed before any network session is opened,
    so an empty directory fails without touching the registry.

    Args:
        target_reference: ``registry/repository[:tag]`` to push to.
        source_dir: Directory to pack.
        artifact_type: Artifact type recorded in the manifest.
        tag: Tag used when the target reference carries no tag of its own.
        client: Transport client (credentials). Defaults to anonymous.
        plain_http: Use http instead of https.
        timeout: Deadline for the network part, in seconds.
        annotations: Optional manifest annotations.
        options: Copy options.
        metrics: Optional transfer metrics.

    Returns:
        TransferResult describing the pushed manifest.

    Raises:
        InvalidReference: If the target reference is malformed, or resolves
            to an empty tag or a digest.
        EmptyArtifact: If source_dir contains no files.
        TransferError: On network or auth failures.
        DeadlineExceeded: If the timeout expires.
    """
    if isinstance(target_reference, str):
        target = parse_reference(target_reference)
        if not _has_explicit_reference(target_reference):
            target = target.with_reference(tag)
    else:
        target = target_reference if target_reference.reference else target_reference.with_reference(tag)
    if not target.reference or target.is_digest:
        raise InvalidReference(
            f"cannot push to {target}: a tag is required", reference=str(target)
        )
    options = options or CopyOptions()
    source = Path(source_dir)

    store = FileStore(source)
    layers = collect_layers(store, source, options.layer_media_type)
    root, root_content = pack_manifest(artifact_type, layers, annotations=annotations)
    await store.tag(root, root_content, target.reference)
    logger.info(
        "Packed artifact",
        extra={"source": str(source), "layers": len(layers), "digest": root.digest},
    )

    async def run() -> TransferResult:
        packed = await store.resolve(target.reference)
        try:
            async with RemoteRepository(
                target.registry,
                target.repository,
                client=client,
                plain_http=plain_http,
            ) as repo:
                await copy_graph(
                    store,
                    repo,
                    packed,
                    root_content,
                    target.reference,
                    options=options,
                    metrics=metrics,
                    direction="push",
                )
        except TransferError as e:
            raise e.with_context(
                registry=target.registry,
                repository=target.repository,
                reference=target.reference,
                path=str(source),
            )
        logger.info(
            "Pushed artifact",
            extra={"repository": target.repository, "reference": target.reference, "digest": packed.digest},
        )
        return TransferResult.from_descriptor(packed)

    return await _run_with_deadline(
        run(),
        timeout=timeout,
        description=f"push of {source} to {target}",
        direction="push",
        metrics=metrics,
    )

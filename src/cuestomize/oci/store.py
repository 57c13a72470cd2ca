"""
Local content store rooted at a directory.

Blobs carrying an ``org.opencontainers.image.title`` annotation are files:
they are written to ``<root>/<title>`` on push and read from their source
path on fetch. Everything else (manifests, config blobs) is kept in memory,
so the store never writes metadata files into the tree.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath

from cuestomize.oci.descriptor import (
    ANNOTATION_TITLE,
    MEDIA_TYPE_IMAGE_LAYER,
    Descriptor,
)
from cuestomize.oci.errors import NotFoundError, TransferError

logger = logging.getLogger(__name__)


def compute_file_digest(path: Path, algorithm: str = "sha256") -> tuple[str, int]:
    """Compute ``algorithm:hex`` digest and size of a file.

    Raises:
        FileNotFoundError: If file doesn't exist.
    """
    hasher = hashlib.new(algorithm)
    size = 0
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
            size += len(chunk)
    return f"{algorithm}:{hasher.hexdigest()}", size


def _write_atomic(target: Path, content: bytes) -> None:
    """Write content next to target, then rename it into place."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".partial")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.replace(tmp_name, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class FileStore:
    """
    Content store backed by a directory tree.

    Named content is addressed by (digest, name), unnamed content by digest.
    Two layers with identical bytes but different names are both written.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._memory: dict[str, bytes] = {}
        # (digest, name) -> path on disk
        self._files: dict[tuple[str, str], Path] = {}
        self._names: dict[str, str] = {}
        self._refs: dict[str, Descriptor] = {}

    def _resolve_name(self, name: str) -> Path:
        """Map an artifact-internal name to a path under root.

        Raises:
            TransferError: If the name is absolute or escapes the root.
        """
        pure = PurePosixPath(name)
        if not pure.parts or pure.is_absolute() or ".." in pure.parts:
            raise TransferError(f"unsafe blob name {name!r}", path=str(self.root))
        target = self.root.joinpath(*pure.parts)
        try:
            target.resolve().relative_to(self.root.resolve())
        except ValueError as e:
            raise TransferError(
                f"blob name {name!r} escapes the store root", path=str(self.root)
            ) from e
        return target

    def add(self, name: str, path: Path, media_type: str = MEDIA_TYPE_IMAGE_LAYER) -> Descriptor:
        """
        Register an existing file as a named blob.

        Args:
            name: Artifact-internal name (POSIX separators).
            path: File on disk.
            media_type: Layer media type.

        Returns:
            Descriptor of the blob, annotated with its name.

        Raises:
            TransferError: If the name is already taken.
        """
        if name in self._names:
            raise TransferError(f"duplicate blob name {name!r}", path=str(self.root))
        digest, size = compute_file_digest(path)
        descriptor = Descriptor(
            media_type=media_type,
            digest=digest,
            size=size,
            annotations={ANNOTATION_TITLE: name},
        )
        self._files[(digest, name)] = path
        self._names[name] = digest
        return descriptor

    async def exists(self, descriptor: Descriptor) -> bool:
        """Check whether content is already in the store."""
        name = descriptor.title
        if name is not None:
            return (descriptor.digest, name) in self._files
        return descriptor.digest in self._memory

    async def fetch(self, descriptor: Descriptor) -> bytes:
        """Read content from the store.

        Raises:
            NotFoundError: If the content is unknown.
        """
        if descriptor.digest in self._memory:
            return self._memory[descriptor.digest]
        name = descriptor.title
        path = self._files.get((descriptor.digest, name)) if name is not None else None
        if path is None:
            raise NotFoundError(
                f"{descriptor.digest} not found in file store",
                reference=descriptor.digest,
                path=str(self.root),
            )
        return await asyncio.to_thread(path.read_bytes)

    async def push(self, descriptor: Descriptor, content: bytes) -> None:
        """Store content; named blobs are written to disk atomically."""
        name = descriptor.title
        if name is None:
            self._memory[descriptor.digest] = content
            return

        known = self._names.get(name)
        if known is not None and known != descriptor.digest:
            raise TransferError(f"duplicate blob name {name!r}", path=str(self.root))
        target = self._resolve_name(name)
        try:
            await asyncio.to_thread(_write_atomic, target, content)
        except OSError as e:
            raise TransferError(f"failed to write {name}: {e}", path=str(self.root)) from e
        self._files[(descriptor.digest, name)] = target
        self._names[name] = descriptor.digest
        logger.debug("Wrote blob", extra={"name": name, "digest": descriptor.digest})

    async def tag(self, descriptor: Descriptor, content: bytes, reference: str) -> None:
        """Store a manifest and associate it with a reference."""
        self._memory[descriptor.digest] = content
        self._refs[reference] = descriptor

    async def resolve(self, reference: str) -> Descriptor:
        """Resolve a tag to the manifest descriptor tagged with it.

        Raises:
            NotFoundError: If the reference is unknown.
        """
        descriptor = self._refs.get(reference)
        if descriptor is None:
            raise NotFoundError(
                f"reference {reference!r} not found in file store",
                reference=reference,
                path=str(self.root),
            )
        return descriptor

    @property
    def names(self) -> list[str]:
        """Names of all blobs known to the store."""
        return sorted(self._names)

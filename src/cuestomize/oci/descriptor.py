"""
OCI content descriptors and image manifests.

Wire shapes follow the OCI image spec v1.1:

    {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "artifactType": "application/vnd.cuestomize.module.v1+json",
        "config": {"mediaType": "application/vnd.oci.empty.v1+json", ...},
        "layers": [
            {"mediaType": "...", "digest": "sha256:...", "size": 12,
             "annotations": {"org.opencontainers.image.title": "cue.mod/module.cue"}},
            ...
        ]
    }
"""

from __future__ import annotations

import base64
import hashlib
import re
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field

from cuestomize.oci.errors import EmptyArtifact

# Media types
MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_EMPTY_JSON = "application/vnd.oci.empty.v1+json"
MEDIA_TYPE_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_MEDIA_TYPES: frozenset[str] = frozenset(
    {
        MEDIA_TYPE_IMAGE_MANIFEST,
        MEDIA_TYPE_IMAGE_INDEX,
        MEDIA_TYPE_DOCKER_MANIFEST,
        MEDIA_TYPE_DOCKER_MANIFEST_LIST,
    }
)
INDEX_MEDIA_TYPES: frozenset[str] = frozenset(
    {MEDIA_TYPE_IMAGE_INDEX, MEDIA_TYPE_DOCKER_MANIFEST_LIST}
)

# Default artifact type for pushed modules
MODULE_ARTIFACT_TYPE = "application/vnd.cuestomize.module.v1+json"

ANNOTATION_TITLE = "org.opencontainers.image.title"

EMPTY_JSON = b"{}"

# Hex digest length per supported algorithm
DIGEST_ALGORITHMS: dict[str, int] = {
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}

_DIGEST_PATTERN = re.compile(r"^([a-z0-9]+(?:[+._-][a-z0-9]+)*):([a-zA-Z0-9=_-]+)$")


def validate_digest(digest: str) -> str:
    """Validate an ``algorithm:hex`` digest string.

    Returns:
        The digest, unchanged.

    Raises:
        ValueError: If the digest is malformed or uses an unknown algorithm.
    """
    match = _DIGEST_PATTERN.match(digest)
    if match is None:
        raise ValueError(f"invalid digest {digest!r}")
    algorithm, encoded = match.groups()
    length = DIGEST_ALGORITHMS.get(algorithm)
    if length is None:
        raise ValueError(f"unsupported digest algorithm {algorithm!r} in {digest!r}")
    if len(encoded) != length or not re.fullmatch(r"[a-f0-9]+", encoded):
        raise ValueError(f"invalid {algorithm} digest {digest!r}")
    return digest


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Compute an ``algorithm:hex`` digest of raw content."""
    if algorithm not in DIGEST_ALGORITHMS:
        raise ValueError(f"unsupported digest algorithm {algorithm!r}")
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def verify_content(data: bytes, digest: str) -> bool:
    """Check raw content against a digest, using the digest's own algorithm."""
    algorithm, _, _ = digest.partition(":")
    if algorithm not in DIGEST_ALGORITHMS:
        return False
    return compute_digest(data, algorithm) == digest


class Descriptor(BaseModel):
    """Content descriptor (media type, digest, size)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    media_type: str = Field(..., alias="mediaType", min_length=1)
    digest: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    annotations: dict[str, str] | None = None
    artifact_type: str | None = Field(default=None, alias="artifactType")
    data: str | None = None

    @property
    def title(self) -> str | None:
        """Artifact-internal name of the blob, if any."""
        if not self.annotations:
            return None
        return self.annotations.get(ANNOTATION_TITLE)

    @property
    def is_manifest(self) -> bool:
        """Check if this descriptor points at a manifest or index."""
        return self.media_type in MANIFEST_MEDIA_TYPES

    def embedded_data(self) -> bytes | None:
        """Return inline content from the ``data`` field, if present."""
        if self.data is None:
            return None
        return base64.b64decode(self.data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_content(
        cls,
        media_type: str,
        data: bytes,
        *,
        annotations: dict[str, str] | None = None,
        artifact_type: str | None = None,
    ) -> Descriptor:
        """Describe raw content."""
        return cls(
            media_type=media_type,
            digest=compute_digest(data),
            size=len(data),
            annotations=annotations,
            artifact_type=artifact_type,
        )


EMPTY_CONFIG = Descriptor(
    media_type=MEDIA_TYPE_EMPTY_JSON,
    digest=compute_digest(EMPTY_JSON),
    size=len(EMPTY_JSON),
    data=base64.b64encode(EMPTY_JSON).decode(),
)


class ImageManifest(BaseModel):
    """OCI image manifest (also accepts Docker schema 2 manifests)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_IMAGE_MANIFEST, alias="mediaType")
    artifact_type: str | None = Field(default=None, alias="artifactType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    def to_json(self) -> bytes:
        """Serialize to canonical JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def from_json(cls, data: bytes | str) -> ImageManifest:
        """Deserialize from JSON."""
        return cls.model_validate(orjson.loads(data))


class ImageIndex(BaseModel):
    """OCI image index (multi-manifest)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_IMAGE_INDEX, alias="mediaType")
    manifests: list[Descriptor] = Field(default_factory=list)

    @classmethod
    def from_json(cls, data: bytes | str) -> ImageIndex:
        """Deserialize from JSON."""
        return cls.model_validate(orjson.loads(data))


def successors(descriptor: Descriptor, content: bytes) -> list[Descriptor]:
    """List the nodes a manifest or index refers to.

    Blobs have no successors.
    """
    if descriptor.media_type in INDEX_MEDIA_TYPES:
        return list(ImageIndex.from_json(content).manifests)
    if descriptor.is_manifest:
        manifest = ImageManifest.from_json(content)
        return [manifest.config, *manifest.layers]
    return []


def pack_manifest(
    artifact_type: str,
    layers: list[Descriptor],
    *,
    annotations: dict[str, str] | None = None,
) -> tuple[Descriptor, bytes]:
    """Pack layers into an OCI 1.1 artifact manifest.

    Args:
        artifact_type: Artifact type recorded in the manifest.
        layers: Layer descriptors, in order.
        annotations: Optional manifest annotations.

    Returns:
        Tuple of (manifest descriptor, manifest bytes).

    Raises:
        EmptyArtifact: If there are no layers.
    """
    if not layers:
        raise EmptyArtifact("cannot pack a manifest without layers")

    manifest = ImageManifest(
        artifact_type=artifact_type,
        config=EMPTY_CONFIG,
        layers=layers,
        annotations=annotations,
    )
    content = manifest.to_json()
    descriptor = Descriptor.from_content(
        MEDIA_TYPE_IMAGE_MANIFEST,
        content,
        artifact_type=artifact_type,
    )
    return descriptor, content

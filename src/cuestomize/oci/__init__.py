"""OCI artifact acquisition: reference parsing, registry transport, pull and push."""

from cuestomize.oci.auth import (
    DEFAULT_CLIENT,
    EMPTY_CREDENTIAL,
    AuthClient,
    AuthSession,
    Credential,
    TransportClient,
)
from cuestomize.oci.descriptor import (
    MODULE_ARTIFACT_TYPE,
    Descriptor,
    ImageManifest,
    compute_digest,
    pack_manifest,
    validate_digest,
)
from cuestomize.oci.errors import (
    ConfigurationError,
    DeadlineExceeded,
    DigestMismatchError,
    EmptyArtifact,
    FetchError,
    InvalidReference,
    NotFoundError,
    OCIError,
    TransferError,
    UnauthorizedError,
)
from cuestomize.oci.metrics import TransferMetrics
from cuestomize.oci.reference import (
    DEFAULT_TAG,
    ResolvedReference,
    parse_reference,
    reference_from_parts,
)
from cuestomize.oci.remote import RemoteRepository
from cuestomize.oci.store import FileStore
from cuestomize.oci.transfer import CopyOptions, TransferResult, copy_graph, pull, push

__all__ = [
    "DEFAULT_CLIENT",
    "DEFAULT_TAG",
    "EMPTY_CREDENTIAL",
    "MODULE_ARTIFACT_TYPE",
    "AuthClient",
    "AuthSession",
    "ConfigurationError",
    "CopyOptions",
    "Credential",
    "DeadlineExceeded",
    "Descriptor",
    "DigestMismatchError",
    "EmptyArtifact",
    "FetchError",
    "FileStore",
    "ImageManifest",
    "InvalidReference",
    "NotFoundError",
    "OCIError",
    "RemoteRepository",
    "ResolvedReference",
    "TransferError",
    "TransferMetrics",
    "TransferResult",
    "TransportClient",
    "UnauthorizedError",
    "compute_digest",
    "copy_graph",
    "pack_manifest",
    "parse_reference",
    "pull",
    "push",
    "reference_from_parts",
    "validate_digest",
]

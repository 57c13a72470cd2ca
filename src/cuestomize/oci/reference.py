"""
OCI reference parsing.

A reference has the shape ``registry[:port]/repository[:tag]`` or
``registry[:port]/repository@algorithm:hex``. Parsing is segment-first and
registry-first:

- the registry (and its optional port) is always the first ``/`` segment;
- a colon inside the final segment separates the repository from the tag;
- a colon anywhere else is an error, never silently resolved.

Example:
    >>> parse_reference("registry:5000/org/team/module:v1.0.0")
    ResolvedReference(registry='registry:5000', repository='org/team/module', reference='v1.0.0')
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from cuestomize.oci.descriptor import validate_digest
from cuestomize.oci.errors import InvalidReference

DEFAULT_TAG = "latest"

# Repository path component per the OCI distribution spec
_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*$")
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")
_HOST_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$")


@dataclass(frozen=True)
class ResolvedReference:
    """Normalized module reference.

    Attributes:
        registry: Registry host, optionally with a ``:port`` suffix.
        repository: Repository path, may contain ``/`` separators.
        reference: Tag, ``algorithm:hex`` digest, or ``""`` when unset.
    """

    registry: str
    repository: str
    reference: str = DEFAULT_TAG

    @property
    def is_digest(self) -> bool:
        """Check if the reference part is a content digest."""
        return ":" in self.reference

    @property
    def name(self) -> str:
        """Registry and repository without the reference part."""
        return f"{self.registry}/{self.repository}"

    def with_reference(self, reference: str) -> ResolvedReference:
        """Return a copy pointing at another tag or digest."""
        return ResolvedReference(self.registry, self.repository, reference)

    def __str__(self) -> str:
        if not self.reference:
            return self.name
        if self.is_digest:
            return f"{self.name}@{self.reference}"
        return f"{self.name}:{self.reference}"


def _validate_registry(registry: str, ref: str) -> None:
    host, sep, port = registry.partition(":")
    if ":" in port:
        raise InvalidReference(
            f"invalid OCI reference format: {ref} (multiple colons in registry {registry!r})",
            reference=ref,
        )
    if sep and not port.isdigit():
        raise InvalidReference(
            f"invalid OCI reference format: {ref} (invalid port in registry {registry!r})",
            reference=ref,
        )
    if not host or not _HOST_PATTERN.match(host):
        raise InvalidReference(
            f"invalid OCI reference format: {ref} (invalid registry {registry!r})",
            reference=ref,
        )


def _validate_repository(repository: str, ref: str) -> None:
    for component in repository.split("/"):
        if not _PATH_COMPONENT.match(component):
            raise InvalidReference(
                f"invalid OCI reference format: {ref} (invalid repository {repository!r})",
                reference=ref,
            )


def _split_tag(remainder: str, ref: str) -> tuple[str, str]:
    """Split ``path/name[:tag]`` into repository and tag."""
    head, _, last = remainder.rpartition("/")
    if ":" in head:
        raise InvalidReference(
            f"invalid OCI reference format: {ref} (colon outside of registry port and tag)",
            reference=ref,
        )
    if last.count(":") > 1:
        raise InvalidReference(
            f"invalid OCI reference format: {ref} (multiple colons found)",
            reference=ref,
        )
    name, sep, tag = last.partition(":")
    if sep and not tag:
        raise InvalidReference(f"invalid OCI reference format: {ref} (empty tag)", reference=ref)
    repository = f"{head}/{name}" if head else name
    return repository, tag if sep else DEFAULT_TAG


def parse_reference(ref: str) -> ResolvedReference:
    """Parse a unified ``registry/repository[:tag|@digest]`` reference.

    Args:
        ref: Reference string.

    Returns:
        ResolvedReference; the reference part defaults to ``"latest"``.

    Raises:
        InvalidReference: If the reference is malformed.
    """
    registry, sep, remainder = ref.partition("/")
    if not sep or not registry or not remainder:
        raise InvalidReference(
            f"invalid OCI reference format: {ref} (expected format: registry/repo:tag)",
            reference=ref,
        )
    _validate_registry(registry, ref)

    if "@" in remainder:
        named, _, digest = remainder.partition("@")
        try:
            validate_digest(digest)
        except ValueError as e:
            raise InvalidReference(
                f"invalid OCI reference format: {ref} ({e})", reference=ref
            ) from e
        # A tag next to a digest is accepted; the digest wins
        repository, _ = _split_tag(named, ref)
        reference = digest
    else:
        repository, reference = _split_tag(remainder, ref)
        if not _TAG_PATTERN.match(reference):
            raise InvalidReference(
                f"invalid OCI reference format: {ref} (invalid tag {reference!r})",
                reference=ref,
            )

    _validate_repository(repository, ref)
    return ResolvedReference(registry=registry, repository=repository, reference=reference)


def reference_from_parts(registry: str, repository: str, tag: str = "") -> ResolvedReference:
    """Build and strictly validate a reference from its discrete parts.

    An empty tag resolves to ``"latest"``.

    Raises:
        InvalidReference: If the parts do not form a valid reference.
    """
    reference = f"{registry}/{repository}"
    if tag:
        separator = "@" if ":" in tag else ":"
        reference = f"{reference}{separator}{tag}"
    return parse_reference(reference)

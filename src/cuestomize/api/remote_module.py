"""
Declarative description of a remote CUE module.

    remoteModule:
      ref: ghcr.io/workday/my-module:v1.0.0
      plainHTTP: false
      auth:
        kind: Secret
        name: registry-credentials

``ref`` always takes precedence. The discrete ``registry``/``repo``/``tag``
fields are deprecated and only consulted when ``ref`` is empty.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field

from cuestomize.api.selector import Selector
from cuestomize.oci.errors import InvalidReference
from cuestomize.oci.reference import ResolvedReference, parse_reference

logger = logging.getLogger(__name__)


class RemoteModule(BaseModel):
    """Remote CUE module hosted in an OCI registry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    ref: str = ""
    # Deprecated: use ref
    registry: str = ""
    # Deprecated: use ref
    repo: str = ""
    # Deprecated: use ref
    tag: str = ""
    auth: Selector | None = None
    plain_http: bool = Field(default=False, alias="plainHTTP")

    def get_registry(self) -> str:
        """Registry host, preferring ``ref`` over the deprecated field.

        Raises:
            InvalidReference: If ``ref`` is set and malformed.
        """
        if self.ref:
            return parse_reference(self.ref).registry
        return self.registry

    def get_repo(self) -> str:
        """Repository path, preferring ``ref`` over the deprecated field."""
        if self.ref:
            return parse_reference(self.ref).repository
        return self.repo

    def get_tag(self) -> str:
        """Tag, preferring ``ref`` over the deprecated field.

        With ``ref`` a missing tag is ``"latest"``; the deprecated field is
        returned as-is and may be empty.
        """
        if self.ref:
            return parse_reference(self.ref).reference
        return self.tag

    def get_reference(self) -> ResolvedReference:
        """
        Resolve the module to (registry, repository, reference).

        Returns:
            ResolvedReference. Its reference part is ``""`` when the
            deprecated fields are used without a tag.

        Raises:
            InvalidReference: If ``ref`` is malformed, or if neither ``ref``
                nor both ``registry`` and ``repo`` are set.
        """
        if self.ref:
            return parse_reference(self.ref)

        if not self.registry or not self.repo:
            raise InvalidReference(
                "remote module needs either ref or both registry and repo "
                f"(registry={self.registry!r}, repo={self.repo!r})",
                reference=f"{self.registry}/{self.repo}",
            )
        logger.warning(
            "remoteModule registry/repo/tag are deprecated, use ref instead",
            extra={"registry": self.registry, "repository": self.repo},
        )
        return ResolvedReference(registry=self.registry, repository=self.repo, reference=self.tag)

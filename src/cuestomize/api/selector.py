"""
Kustomize-style resource selector.

A selector picks Kubernetes resources out of the function's input items:

    auth:
      kind: Secret
      name: registry-credentials
      namespace: ci
      labelSelector: "app.kubernetes.io/part-of=cuestomize,!deprecated"

``group``, ``version``, ``kind``, ``name`` and ``namespace`` are regular
expressions anchored at both ends; an empty field matches anything.
``labelSelector`` and ``annotationSelector`` accept Kubernetes selector
expressions: ``key=value``, ``key==value``, ``key!=value``, ``key``,
``!key``, ``key in (a,b)`` and ``key notin (a,b)``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SET_EXPRESSION = re.compile(r"^\s*([^\s!=()]+)\s+(in|notin)\s+\(([^)]*)\)\s*$")


@dataclass(frozen=True)
class Requirement:
    """One parsed selector expression."""

    key: str
    operator: str
    values: frozenset[str] = frozenset()

    def matches(self, fields: Mapping[str, str]) -> bool:
        """Check the requirement against a label or annotation map."""
        present = self.key in fields
        value = fields.get(self.key)
        if self.operator == "exists":
            return present
        if self.operator == "!exists":
            return not present
        if self.operator in ("=", "in"):
            return present and value in self.values
        # "!=" and "notin" also match when the key is absent
        return not present or value not in self.values


def _split_expressions(selector: str) -> list[str]:
    """Split on commas that are not inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def parse_selector(selector: str) -> list[Requirement]:
    """Parse a Kubernetes label selector string.

    Raises:
        ValueError: If an expression cannot be parsed.
    """
    requirements: list[Requirement] = []
    for expression in _split_expressions(selector):
        set_match = _SET_EXPRESSION.match(expression)
        if set_match:
            key, operator, raw_values = set_match.groups()
            values = frozenset(v.strip() for v in raw_values.split(",") if v.strip())
            requirements.append(Requirement(key, operator, values))
        elif "!=" in expression:
            key, _, value = expression.partition("!=")
            requirements.append(Requirement(key.strip(), "!=", frozenset({value.strip()})))
        elif "=" in expression:
            key, _, value = expression.partition("=")
            value = value.removeprefix("=")
            requirements.append(Requirement(key.strip(), "=", frozenset({value.strip()})))
        elif expression.startswith("!"):
            requirements.append(Requirement(expression[1:].strip(), "!exists"))
        else:
            requirements.append(Requirement(expression, "exists"))

    for requirement in requirements:
        if not requirement.key or any(c in requirement.key for c in " ()!="):
            raise ValueError(f"invalid selector expression in {selector!r}")
    return requirements


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split ``group/version`` into its parts; the core group is ``""``."""
    group, sep, version = api_version.rpartition("/")
    if not sep:
        return "", api_version
    return group, version


class Selector(BaseModel):
    """Selects resources by id fields, labels and annotations."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    group: str = ""
    version: str = ""
    kind: str = ""
    name: str = ""
    namespace: str = ""
    label_selector: str = Field(default="", alias="labelSelector")
    annotation_selector: str = Field(default="", alias="annotationSelector")

    @field_validator("group", "version", "kind", "name", "namespace")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid selector pattern {value!r}: {e}") from e
        return value

    @field_validator("label_selector", "annotation_selector")
    @classmethod
    def _validate_selector(cls, value: str) -> str:
        parse_selector(value)
        return value

    def matches(self, item: Mapping[str, Any]) -> bool:
        """Check whether a resource (parsed YAML mapping) is selected."""
        metadata = item.get("metadata") or {}
        group, version = split_api_version(str(item.get("apiVersion") or ""))
        candidates = (
            (self.group, group),
            (self.version, version),
            (self.kind, str(item.get("kind") or "")),
            (self.name, str(metadata.get("name") or "")),
            (self.namespace, str(metadata.get("namespace") or "")),
        )
        for pattern, value in candidates:
            if pattern and re.fullmatch(pattern, value) is None:
                return False

        labels = {str(k): str(v) for k, v in (metadata.get("labels") or {}).items()}
        if not all(r.matches(labels) for r in parse_selector(self.label_selector)):
            return False
        annotations = {str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()}
        return all(r.matches(annotations) for r in parse_selector(self.annotation_selector))

    def select(self, items: list[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
        """Return all selected items, in input order."""
        return [item for item in items if self.matches(item)]

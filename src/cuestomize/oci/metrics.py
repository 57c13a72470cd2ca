"""
Prometheus metrics for OCI transfers.

Labels are low-cardinality only: direction (pull/push) and outcome.
Registry hosts, repositories and tags are never used as labels.
"""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter
from prometheus_client.registry import CollectorRegistry

Direction = Literal["pull", "push"]
Outcome = Literal["success", "error", "deadline", "canceled"]

# Labels that must never be attached to transfer metrics
FORBIDDEN_LABELS = frozenset(
    {
        "registry",
        "repository",
        "reference",
        "tag",
        "digest",
        "path",
    }
)


class TransferMetrics:
    """
    Counters for pull/push operations.

    Usage:
        registry = CollectorRegistry()
        metrics = TransferMetrics(registry=registry)
        await pull(reference, destination, metrics=metrics)
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize transfer metrics.

        Args:
            registry: Prometheus CollectorRegistry. If None, a private one is created.
        """
        self._registry = registry or CollectorRegistry()

        self._transfers = Counter(
            "cuestomize_oci_transfers",
            "Completed transfer operations by direction and outcome",
            ["direction", "outcome"],
            registry=self._registry,
        )
        self._blobs = Counter(
            "cuestomize_oci_blobs",
            "Blobs and manifests copied by direction",
            ["direction"],
            registry=self._registry,
        )
        self._bytes = Counter(
            "cuestomize_oci_bytes",
            "Bytes copied by direction",
            ["direction"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus registry."""
        return self._registry

    def record_transfer(self, direction: Direction, outcome: Outcome) -> None:
        """Count one finished transfer."""
        self._transfers.labels(direction=direction, outcome=outcome).inc()

    def record_blob(self, direction: Direction, size: int) -> None:
        """Count one copied node and its size."""
        self._blobs.labels(direction=direction).inc()
        self._bytes.labels(direction=direction).inc(size)

    def transfer_count(self, direction: Direction, outcome: Outcome) -> float:
        """Read the current transfer counter value."""
        value = self._registry.get_sample_value(
            "cuestomize_oci_transfers_total",
            {"direction": direction, "outcome": outcome},
        )
        return value or 0.0

    def blob_count(self, direction: Direction) -> float:
        """Read the current blob counter value."""
        value = self._registry.get_sample_value(
            "cuestomize_oci_blobs_total", {"direction": direction}
        )
        return value or 0.0

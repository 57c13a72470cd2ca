"""
Tests for pull/push against the in-process fake registry.

Covers round trips, idempotence, nested repositories, auth, integrity
checks, deadlines and cancellation.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path

import orjson
import pytest
from prometheus_client import CollectorRegistry

from cuestomize.oci.auth import AuthClient, Credential, RegistryResponse
from cuestomize.oci.descriptor import (
    ANNOTATION_TITLE,
    MEDIA_TYPE_EMPTY_JSON,
    MODULE_ARTIFACT_TYPE,
    compute_digest,
)
from cuestomize.oci.errors import (
    DeadlineExceeded,
    DigestMismatchError,
    EmptyArtifact,
    InvalidReference,
    NotFoundError,
    TransferError,
    UnauthorizedError,
)
from cuestomize.oci.metrics import TransferMetrics
from cuestomize.oci.reference import ResolvedReference, parse_reference
from cuestomize.oci.transfer import CopyOptions, pull, push
from tests.fake_registry import PASSWORD, USERNAME, FakeRegistry


class RecordingClient:
    """Transport client that records sessions and requests without network I/O."""

    def __init__(self) -> None:
        self.sessions = 0
        self.calls: list[tuple[str, str]] = []

    @contextlib.asynccontextmanager
    async def open(self) -> AsyncIterator[RecordingClient]:
        self.sessions += 1
        yield self

    async def request(
        self,
        method: str,
        url: str,
        *,
        scopes: Sequence[str] = (),
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
    ) -> RegistryResponse:
        self.calls.append((method, url))
        return RegistryResponse(status=500, url=url)


def _files(root: Path) -> dict[str, bytes]:
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in root.rglob("*") if p.is_file()}


class TestCopyOptions:
    """Tests for CopyOptions validation."""

    def test_default_concurrency(self) -> None:
        assert CopyOptions().concurrency == 3

    def test_invalid_concurrency(self) -> None:
        with pytest.raises(ValueError, match="concurrency"):
            CopyOptions(concurrency=0)


class TestRoundTrip:
    """Push a directory, pull it back."""

    @pytest.mark.asyncio
    async def test_push_then_pull(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        """Pulled tree equals the pushed tree, with no extra files."""
        target = f"{registry.host}/sample-module:v1.0.0"

        pushed = await push(target, module_dir, plain_http=True)
        dest = tmp_path / "dest"
        pulled = await pull(parse_reference(target), dest, plain_http=True)

        assert pulled == pushed
        assert _files(dest) == _files(module_dir)
        assert set(_files(dest)) == {"a.txt", "sub/b.txt", "cue.mod/module.cue"}

    @pytest.mark.asyncio
    async def test_pushed_manifest_shape(self, registry: FakeRegistry, module_dir: Path) -> None:
        """The manifest is an OCI 1.1 artifact with one titled layer per file."""
        result = await push(f"{registry.host}/sample-module:v1", module_dir, plain_http=True)

        media_type, content = registry.manifests[("sample-module", "v1")]
        document = orjson.loads(content)

        assert media_type == result.media_type
        assert compute_digest(content) == result.digest
        assert document["artifactType"] == MODULE_ARTIFACT_TYPE
        assert document["config"]["mediaType"] == MEDIA_TYPE_EMPTY_JSON
        assert sorted(layer["annotations"][ANNOTATION_TITLE] for layer in document["layers"]) == [
            "a.txt",
            "cue.mod/module.cue",
            "sub/b.txt",
        ]

    @pytest.mark.asyncio
    async def test_custom_artifact_type(self, registry: FakeRegistry, module_dir: Path) -> None:
        await push(
            f"{registry.host}/mod:v1",
            module_dir,
            artifact_type="application/vnd.example.test+json",
            plain_http=True,
        )

        document = orjson.loads(registry.manifests[("mod", "v1")][1])

        assert document["artifactType"] == "application/vnd.example.test+json"

    @pytest.mark.asyncio
    async def test_nested_repository(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        target = f"{registry.host}/org/team/project:v2.0.0"

        await push(target, module_dir, plain_http=True)
        await pull(parse_reference(target), tmp_path / "dest", plain_http=True)

        assert ("org/team/project", "v2.0.0") in registry.manifests
        assert (tmp_path / "dest" / "sub" / "b.txt").read_text() == "nested\n"

    @pytest.mark.asyncio
    async def test_pull_by_digest(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        result = await push(f"{registry.host}/mod:v1", module_dir, plain_http=True)

        reference = ResolvedReference(registry.host, "mod", result.digest)
        pulled = await pull(reference, tmp_path / "dest", plain_http=True)

        assert pulled.digest == result.digest
        assert (tmp_path / "dest" / "a.txt").read_text() == "hello\n"

    @pytest.mark.asyncio
    async def test_duplicate_content_different_names(
        self, registry: FakeRegistry, tmp_path: Path
    ) -> None:
        """Files with identical bytes are both restored."""
        source = tmp_path / "src"
        source.mkdir()
        (source / "one.txt").write_text("same")
        (source / "two.txt").write_text("same")

        await push(f"{registry.host}/dup:v1", source, plain_http=True)
        await pull(ResolvedReference(registry.host, "dup", "v1"), tmp_path / "dest", plain_http=True)

        assert _files(tmp_path / "dest") == {"one.txt": b"same", "two.txt": b"same"}

    @pytest.mark.asyncio
    async def test_sequential_concurrency(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        """Concurrency of one still copies everything."""
        options = CopyOptions(concurrency=1)
        target = f"{registry.host}/mod:v1"

        await push(target, module_dir, plain_http=True, options=options)
        await pull(parse_reference(target), tmp_path / "dest", plain_http=True, options=options)

        assert _files(tmp_path / "dest") == _files(module_dir)


class TestPushTags:
    """Tests for push tag selection."""

    @pytest.mark.asyncio
    async def test_tag_parameter_used_without_reference_tag(
        self, registry: FakeRegistry, module_dir: Path
    ) -> None:
        await push(f"{registry.host}/mod", module_dir, tag="v2", plain_http=True)

        assert registry.tags("mod") == {"v2"}

    @pytest.mark.asyncio
    async def test_reference_tag_wins(self, registry: FakeRegistry, module_dir: Path) -> None:
        await push(f"{registry.host}/mod:v3", module_dir, tag="ignored", plain_http=True)

        assert registry.tags("mod") == {"v3"}

    @pytest.mark.asyncio
    async def test_resolved_reference_target(self, registry: FakeRegistry, module_dir: Path) -> None:
        await push(ResolvedReference(registry.host, "mod", "v4"), module_dir, plain_http=True)

        assert registry.tags("mod") == {"v4"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "target",
        [
            "r.io/mod",
            ResolvedReference("r.io", "mod", ""),
            "r.io/mod@sha256:" + "a" * 64,
            ResolvedReference("r.io", "mod", "sha256:" + "b" * 64),
        ],
    )
    async def test_untagged_target_rejected(self, target: str | ResolvedReference, module_dir: Path) -> None:
        """An empty tag or a digest target fails before packing or any I/O."""
        client = RecordingClient()

        with pytest.raises(InvalidReference, match="a tag is required"):
            await push(target, module_dir, tag="", client=client)

        assert client.sessions == 0

    @pytest.mark.asyncio
    async def test_explicit_tag_with_empty_default(self, registry: FakeRegistry, module_dir: Path) -> None:
        await push(f"{registry.host}/mod:v5", module_dir, tag="", plain_http=True)

        assert registry.tags("mod") == {"v5"}


class TestIdempotence:
    """Repeated transfers."""

    @pytest.mark.asyncio
    async def test_push_twice_uploads_once(self, registry: FakeRegistry, module_dir: Path) -> None:
        """Second push finds all blobs present and only re-tags."""
        target = f"{registry.host}/mod:v1"

        first = await push(target, module_dir, plain_http=True)
        uploads = registry.count("POST", "/blobs/uploads/")
        second = await push(target, module_dir, plain_http=True)

        assert first == second
        assert registry.count("POST", "/blobs/uploads/") == uploads

    @pytest.mark.asyncio
    async def test_pull_twice_identical(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        target = f"{registry.host}/mod:v1"
        await push(target, module_dir, plain_http=True)
        dest = tmp_path / "dest"

        await pull(parse_reference(target), dest, plain_http=True)
        before = _files(dest)
        await pull(parse_reference(target), dest, plain_http=True)

        assert _files(dest) == before

    @pytest.mark.asyncio
    async def test_concurrent_pulls(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        """Concurrent pulls into distinct directories are independent."""
        target = f"{registry.host}/mod:v1"
        await push(target, module_dir, plain_http=True)

        results = await asyncio.gather(
            pull(parse_reference(target), tmp_path / "one", plain_http=True),
            pull(parse_reference(target), tmp_path / "two", plain_http=True),
        )

        assert results[0] == results[1]
        assert _files(tmp_path / "one") == _files(tmp_path / "two") == _files(module_dir)


class TestTransferErrors:
    """Failure modes."""

    @pytest.mark.asyncio
    async def test_pull_missing_tag(self, registry: FakeRegistry, tmp_path: Path) -> None:
        """Not-found errors carry registry, repository, reference and path."""
        dest = tmp_path / "dest"

        with pytest.raises(NotFoundError) as exc_info:
            await pull(ResolvedReference(registry.host, "missing", "v9"), dest, plain_http=True)

        error = exc_info.value
        assert error.registry == registry.host
        assert error.repository == "missing"
        assert error.reference == "v9"
        assert error.path == str(dest)
        assert error.status == 404
        assert "missing" in str(error)

    @pytest.mark.asyncio
    async def test_pull_empty_reference(self, tmp_path: Path) -> None:
        """An empty tag fails before any session is opened."""
        client = RecordingClient()

        with pytest.raises(InvalidReference):
            await pull(ResolvedReference("r.io", "mod", ""), tmp_path, client=client)

        assert client.sessions == 0

    @pytest.mark.asyncio
    async def test_push_empty_directory(self, tmp_path: Path) -> None:
        """An empty source fails with zero network calls."""
        source = tmp_path / "empty"
        (source / "nested").mkdir(parents=True)
        client = RecordingClient()

        with pytest.raises(EmptyArtifact) as exc_info:
            await push("r.io/mod:v1", source, client=client)

        assert exc_info.value.source_dir == str(source)
        assert client.sessions == 0
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_push_missing_directory(self, tmp_path: Path) -> None:
        client = RecordingClient()

        with pytest.raises(FileNotFoundError):
            await push("r.io/mod:v1", tmp_path / "missing", client=client)

        assert client.sessions == 0

    @pytest.mark.asyncio
    async def test_push_invalid_reference(self, module_dir: Path) -> None:
        with pytest.raises(InvalidReference):
            await push("invalid", module_dir, client=RecordingClient())

    @pytest.mark.asyncio
    async def test_server_error_is_transfer_error(self, module_dir: Path) -> None:
        """Unexpected statuses surface as TransferError with the status."""
        client = RecordingClient()

        with pytest.raises(TransferError) as exc_info:
            await push("r.io/mod:v1", module_dir, client=client)

        assert exc_info.value.status == 500
        assert exc_info.value.path == str(module_dir)
        assert client.sessions == 1

    @pytest.mark.asyncio
    async def test_corrupted_blob(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        """Content not matching its digest is rejected."""
        target = f"{registry.host}/mod:v1"
        await push(target, module_dir, plain_http=True)
        registry.corrupt_blob(compute_digest(b"hello\n"))

        with pytest.raises(DigestMismatchError):
            await pull(parse_reference(target), tmp_path / "dest", plain_http=True)

        assert not (tmp_path / "dest" / "a.txt").exists()


class TestAuthenticatedTransfer:
    """Transfers against registries requiring credentials."""

    @pytest.mark.asyncio
    async def test_basic_round_trip(self, basic_registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        client = AuthClient(credential=Credential(username=USERNAME, password=PASSWORD))
        target = f"{basic_registry.host}/private:v1"

        await push(target, module_dir, client=client, plain_http=True)
        await pull(parse_reference(target), tmp_path / "dest", client=client, plain_http=True)

        assert _files(tmp_path / "dest") == _files(module_dir)

    @pytest.mark.asyncio
    async def test_bearer_round_trip(self, bearer_registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        client = AuthClient(credential=Credential(username=USERNAME, password=PASSWORD))
        target = f"{bearer_registry.host}/org/private:v1"

        await push(target, module_dir, client=client, plain_http=True)
        await pull(parse_reference(target), tmp_path / "dest", client=client, plain_http=True)

        assert _files(tmp_path / "dest") == _files(module_dir)
        assert bearer_registry.token_requests

    @pytest.mark.asyncio
    async def test_anonymous_pull_denied(self, basic_registry: FakeRegistry, tmp_path: Path) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            await pull(ResolvedReference(basic_registry.host, "private", "v1"), tmp_path, plain_http=True)

        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_malformed_token_response(
        self, bearer_registry: FakeRegistry, module_dir: Path, tmp_path: Path
    ) -> None:
        """A token endpoint returning a JSON list fails the pull as an auth error."""
        client = AuthClient(credential=Credential(username=USERNAME, password=PASSWORD))
        target = f"{bearer_registry.host}/org/private:v1"
        await push(target, module_dir, client=client, plain_http=True)
        bearer_registry.token_body = b'["nope"]'
        metrics = TransferMetrics(registry=CollectorRegistry())

        with pytest.raises(UnauthorizedError) as exc_info:
            await pull(parse_reference(target), tmp_path / "dest", client=client, plain_http=True, metrics=metrics)

        assert exc_info.value.repository == "org/private"
        assert metrics.transfer_count("pull", "error") == 1


class TestImageIndex:
    """Pulling an index walks into its child manifests."""

    @pytest.mark.asyncio
    async def test_pull_index(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        pushed = await push(f"{registry.host}/mod:v1", module_dir, plain_http=True)
        index_digest = registry.add_index("mod", "multi", ["v1"])

        result = await pull(ResolvedReference(registry.host, "mod", "multi"), tmp_path / "dest", plain_http=True)

        assert result.digest == index_digest
        assert result.media_type == "application/vnd.oci.image.index.v1+json"
        assert _files(tmp_path / "dest") == _files(module_dir)
        assert ("GET", f"/v2/mod/manifests/{pushed.digest}") in registry.requests

    @pytest.mark.asyncio
    async def test_pull_index_of_two_artifacts(
        self, registry: FakeRegistry, module_dir: Path, tmp_path: Path
    ) -> None:
        other = tmp_path / "other"
        other.mkdir()
        (other / "extra.cue").write_text("package extra\n")
        await push(f"{registry.host}/mod:v1", module_dir, plain_http=True)
        await push(f"{registry.host}/mod:v2", other, plain_http=True)
        registry.add_index("mod", "multi", ["v1", "v2"])
        metrics = TransferMetrics(registry=CollectorRegistry())

        await pull(
            ResolvedReference(registry.host, "mod", "multi"), tmp_path / "dest", plain_http=True, metrics=metrics
        )

        assert _files(tmp_path / "dest") == {**_files(module_dir), "extra.cue": b"package extra\n"}
        # index, two manifests, shared empty config counted once, four layers
        assert metrics.blob_count("pull") == 8


class TestDeadlinesAndCancellation:
    """Deadlines and task cancellation."""

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        """A stalled transfer fails with DeadlineExceeded, not TransferError."""
        target = f"{registry.host}/mod:v1"
        await push(target, module_dir, plain_http=True)
        registry.blob_gate = asyncio.Event()
        metrics = TransferMetrics(registry=CollectorRegistry())

        with pytest.raises(DeadlineExceeded) as exc_info:
            await pull(parse_reference(target), tmp_path / "dest", plain_http=True, timeout=0.2, metrics=metrics)

        assert isinstance(exc_info.value, TimeoutError)
        assert not isinstance(exc_info.value, TransferError)
        assert exc_info.value.timeout_s == 0.2
        assert metrics.transfer_count("pull", "deadline") == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        """Cancelling the task raises CancelledError, never TransferError."""
        target = f"{registry.host}/mod:v1"
        await push(target, module_dir, plain_http=True)
        registry.blob_gate = asyncio.Event()
        metrics = TransferMetrics(registry=CollectorRegistry())

        task = asyncio.create_task(
            pull(parse_reference(target), tmp_path / "dest", plain_http=True, metrics=metrics)
        )
        await asyncio.wait_for(registry.blob_requested.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert metrics.transfer_count("pull", "canceled") == 1


class TestTransferMetrics:
    """Metrics recorded by transfers."""

    @pytest.mark.asyncio
    async def test_success_counters(self, registry: FakeRegistry, module_dir: Path, tmp_path: Path) -> None:
        metrics = TransferMetrics(registry=CollectorRegistry())
        target = f"{registry.host}/mod:v1"

        await push(target, module_dir, plain_http=True, metrics=metrics)
        await pull(parse_reference(target), tmp_path / "dest", plain_http=True, metrics=metrics)

        assert metrics.transfer_count("push", "success") == 1
        assert metrics.transfer_count("pull", "success") == 1
        # three layers, config and manifest
        assert metrics.blob_count("push") == 5
        assert metrics.blob_count("pull") == 5

    @pytest.mark.asyncio
    async def test_error_counter(self, registry: FakeRegistry, tmp_path: Path) -> None:
        metrics = TransferMetrics(registry=CollectorRegistry())

        with pytest.raises(NotFoundError):
            await pull(ResolvedReference(registry.host, "missing", "v1"), tmp_path, plain_http=True, metrics=metrics)

        assert metrics.transfer_count("pull", "error") == 1

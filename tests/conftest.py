"""Shared fixtures: fake registry server and module directories."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from tests.fake_registry import AuthMode, FakeRegistry


async def _serve(auth: AuthMode) -> AsyncIterator[FakeRegistry]:
    fake = FakeRegistry(auth=auth)
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.host = f"{server.host}:{server.port}"
    try:
        yield fake
    finally:
        if fake.blob_gate is not None:
            fake.blob_gate.set()
        await server.close()


@pytest_asyncio.fixture
async def registry() -> AsyncIterator[FakeRegistry]:
    """Anonymous fake registry."""
    async for fake in _serve("anonymous"):
        yield fake


@pytest_asyncio.fixture
async def basic_registry() -> AsyncIterator[FakeRegistry]:
    """Fake registry requiring Basic auth."""
    async for fake in _serve("basic"):
        yield fake


@pytest_asyncio.fixture
async def bearer_registry() -> AsyncIterator[FakeRegistry]:
    """Fake registry requiring Bearer tokens."""
    async for fake in _serve("bearer"):
        yield fake


@pytest.fixture
def module_dir(tmp_path: Path) -> Path:
    """Module directory with a nested file and a cue.mod."""
    root = tmp_path / "module"
    (root / "sub").mkdir(parents=True)
    (root / "cue.mod").mkdir()
    (root / "a.txt").write_text("hello\n")
    (root / "sub" / "b.txt").write_text("nested\n")
    (root / "cue.mod" / "module.cue").write_text('module: "example.com/sample"\n')
    return root

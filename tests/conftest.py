"""Pytest configuration and fixtures for toolguard tests."""

from __future__ import annotations

import socket
import sys
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import AsyncGenerator, Generator

import httpx
import pytest
import pytest_asyncio

from toolguard import CommandPolicy, ExecSettings, GuardedFetcher, NetworkPolicy, ProcessRunner

PYTHON = sys.executable

# Addresses handed out by the fake resolver
DNS_TABLE: dict[str, list[str]] = {
    "example.com": ["93.184.216.34"],
    "public.test": ["93.184.216.34"],
    "mirror.test": ["93.184.216.35"],
    "internal.test": ["10.0.0.5"],
    "decoy.test": ["93.184.216.34", "192.168.1.10"],
    "v6.test": ["2606:2800:220:1:248:1893:25c8:1946"],
    "multi.test": ["93.184.216.40", "93.184.216.41"],
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory(prefix="toolguard_test_") as tmp:
        yield Path(tmp)


@pytest.fixture
def runner(temp_dir: Path, python_policy: CommandPolicy) -> ProcessRunner:
    """Create a ProcessRunner rooted at the temp directory that may run the interpreter."""
    return ProcessRunner(ExecSettings(cwd=str(temp_dir)), policy=python_policy)


@pytest.fixture
def python_policy() -> CommandPolicy:
    """A policy that allows the running interpreter, so process tests need no git/npm/node."""
    return CommandPolicy.paranoid(allowed={PYTHON})


@pytest.fixture
def default_policy() -> CommandPolicy:
    """Create the git/npm/node policy."""
    return CommandPolicy.default()


async def fake_resolver(hostname: str, port: int) -> Sequence[str]:
    """Resolve from DNS_TABLE; unknown names fail like getaddrinfo does."""
    try:
        return DNS_TABLE[hostname]
    except KeyError:
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known") from None


@pytest.fixture
def network_policy() -> NetworkPolicy:
    """Create a NetworkPolicy backed by the fake resolver."""
    return NetworkPolicy(resolver=fake_resolver)


class Recorder:
    """Mock transport handler that records every request it serves."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], object] = lambda request: httpx.Response(200, text="ok")

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response


@pytest.fixture
def recorder() -> Recorder:
    """Create a request recorder; tests replace ``recorder.handler``."""
    return Recorder()


@pytest_asyncio.fixture
async def fetcher(recorder: Recorder, network_policy: NetworkPolicy) -> AsyncGenerator[GuardedFetcher, None]:
    """Create a GuardedFetcher wired to the mock transport and the fake resolver."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder), follow_redirects=False)
    try:
        yield GuardedFetcher(policy=network_policy, client=client)
    finally:
        await client.aclose()

"""Shared fixtures for the proxy tests."""

import asyncio
import os
import socket
import tempfile
from pathlib import Path

import pytest

# Keep the module-level controller in core.server away from the real home directory.
os.environ.setdefault(
    "MITM_SIEVE_STATE",
    str(Path(tempfile.mkdtemp(prefix="mitm-sieve-")) / "state.json"),
)

from mitm_sieve.core.controller import ProxyController  # noqa: E402
from mitm_sieve.core.events import EventLog  # noqa: E402
from mitm_sieve.core.interceptor import FilterInterceptor  # noqa: E402
from mitm_sieve.core.policy import PolicyStore  # noqa: E402
from mitm_sieve.core.store import StateStore  # noqa: E402


class FakeOptions:
    def __init__(self):
        self.updates = []

    def update(self, **kwargs):
        self.updates.append(kwargs)


class FakeMaster:
    """Stands in for DumpMaster: runs until shutdown() is called."""

    instances = []

    def __init__(self, settings, addons, hang=False):
        self.settings = settings
        self.addons = addons
        self.options = FakeOptions()
        self.hang = hang
        self.shutdown_called = False
        self._stopped = asyncio.Event()
        FakeMaster.instances.append(self)

    async def run(self):
        await self._stopped.wait()

    def shutdown(self):
        self.shutdown_called = True
        if not self.hang:
            self._stopped.set()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state.json"


@pytest.fixture
def store(state_path: Path) -> StateStore:
    return StateStore(state_path)


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def fake_masters():
    FakeMaster.instances = []
    return FakeMaster.instances


@pytest.fixture
def controller(store: StateStore, fake_masters) -> ProxyController:
    return ProxyController(store, master_factory=FakeMaster)


@pytest.fixture
def events() -> EventLog:
    return EventLog(capacity=100)


@pytest.fixture
def policies() -> PolicyStore:
    return PolicyStore()


@pytest.fixture
def interceptor(policies: PolicyStore, events: EventLog) -> FilterInterceptor:
    return FilterInterceptor(policies, events)

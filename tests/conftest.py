"""Shared fixtures: a fake fleet manager and clients wired to it."""

import pytest
import pytest_asyncio

from slicer_fleet.client import SlicerClient
from slicer_fleet.session import TransportSession

from tests.fake_fleet import ENDPOINT, TOKEN, FakeFleet


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep SLICER_* variables of the developer's shell out of the tests."""
    for name in ("ENDPOINT", "TOKEN", "TIMEOUT", "INSECURE", "EXEC_IDLE_TIMEOUT", "USER_AGENT"):
        monkeypatch.delenv(f"SLICER_{name}", raising=False)
    monkeypatch.setattr("slicer_fleet.config._settings", None)


@pytest.fixture
def fleet():
    """Fake fleet manager with one running VM."""
    fake = FakeFleet()
    fake.add_vm("vm-1", "w1-medium", ip="10.0.0.2/24", tags=["env=dev"])
    return fake


@pytest_asyncio.fixture
async def session(fleet):
    """Transport session talking to the fake fleet manager."""
    async with TransportSession(ENDPOINT, TOKEN, transport=fleet.transport()) as s:
        yield s


@pytest_asyncio.fixture
async def client(session):
    """SlicerClient on top of the fake fleet manager."""
    yield SlicerClient(session, exec_idle_timeout=5.0)

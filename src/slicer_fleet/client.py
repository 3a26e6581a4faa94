"""SlicerClient - one session, every fleet component."""

from __future__ import annotations

from typing import Optional

import httpx

from slicer_fleet.config import Settings, get_settings
from slicer_fleet.exec import ExecStreamingEngine
from slicer_fleet.inventory import FleetInventoryClient
from slicer_fleet.secrets import SecretStoreClient
from slicer_fleet.session import TransportSession
from slicer_fleet.transfer import FileTransferEngine


class SlicerClient:
    """
    Entry point for callers.

    Usage:
        async with SlicerClient.from_settings() as client:
            vm = await client.inventory.create_vm("w1-medium", VMSpec(cpus=2, ram_gb=8))
            result = await client.exec.run(vm.hostname, ExecRequest(command="uname", args=["-a"]))
            digest = (await client.files.transfer(vm.hostname, b"hello", "/tmp/hello")).digest
    """

    def __init__(
        self,
        session: TransportSession,
        exec_idle_timeout: Optional[float] = None,
    ) -> None:
        self.session = session
        if exec_idle_timeout is None:
            self.exec = ExecStreamingEngine(session)
        else:
            self.exec = ExecStreamingEngine(session, idle_timeout=exec_idle_timeout)
        self.inventory = FleetInventoryClient(session)
        self.secrets = SecretStoreClient(session)
        self.files = FileTransferEngine(session, self.exec)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SlicerClient":
        """Build a client from Settings (the environment when omitted).

        Raises:
            ConfigurationError: If endpoint or token is missing.
        """
        settings = settings or get_settings()
        session = TransportSession.from_settings(settings, transport=transport)
        return cls(session, exec_idle_timeout=settings.exec_idle_timeout)

    async def aclose(self) -> None:
        await self.session.aclose()

    async def __aenter__(self) -> "SlicerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

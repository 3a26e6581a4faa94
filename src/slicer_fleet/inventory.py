"""Fleet Inventory Client - VMs and host groups."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional
from urllib.parse import quote

from slicer_fleet.errors import NotFoundError, SlicerAPIError, ValidationError
from slicer_fleet.models import HostGroup, VMRecord, VMSpec, gib, parse_many, parse_one
from slicer_fleet.session import TransportSession, read_json

logger = logging.getLogger(__name__)


def matches_tag(vm: VMRecord, tag: str) -> bool:
    """True if any tag equals ``tag`` or contains it."""
    return any(t == tag or tag in t for t in vm.tags)


class FleetInventoryClient:
    """Create, list and delete VMs; read host groups.

    All calls are a single request/response against the shared session.
    """

    def __init__(self, session: TransportSession) -> None:
        self._session = session

    async def create_vm(self, host_group: str, spec: Optional[VMSpec] = None) -> VMRecord:
        """Create a VM in ``host_group``.

        Raises:
            ValidationError: Unknown host group or a spec the remote rejects.
            ConflictError: No capacity left in the host group.
        """
        spec = spec or VMSpec()
        logger.debug(f"Creating VM in host group {host_group}")

        response = await self._session.request(
            "POST",
            f"/hostgroup/{quote(host_group, safe='')}/nodes",
            action=f"create VM in {host_group}",
            json=spec.to_payload(),
        )
        data = read_json(response, f"create VM in {host_group}")
        if not isinstance(data, dict) or not data.get("hostname"):
            raise SlicerAPIError(
                f"Unable to create VM in {host_group}: response has no hostname",
                status_code=response.status_code,
                response=data,
            )
        data.setdefault("hostgroup", host_group)
        vm = parse_one(VMRecord, data, f"create VM in {host_group}")

        logger.info(f"Created VM {vm.hostname} ({vm.bare_ip}) in {host_group}")
        return vm

    async def list_vms(self) -> List[VMRecord]:
        """All VMs in the order the fleet manager lists them."""
        response = await self._session.request("GET", "/nodes", action="list VMs")
        vms = parse_many(VMRecord, read_json(response, "list VMs"), "list VMs")
        logger.debug(f"Listed {len(vms)} VMs")
        return vms

    async def find_vms(
        self,
        predicate: Optional[Callable[[VMRecord], bool]] = None,
        tag: Optional[str] = None,
    ) -> List[VMRecord]:
        """List VMs and filter them locally.

        Args:
            predicate: Keep VMs for which this returns True.
            tag: Keep VMs with a tag equal to, or containing, this string.
        """
        vms = await self.list_vms()
        if tag:
            vms = [vm for vm in vms if matches_tag(vm, tag)]
        if predicate is not None:
            vms = [vm for vm in vms if predicate(vm)]
        return vms

    async def get_vm(self, hostname: str) -> VMRecord:
        """Look up a single VM by hostname.

        Raises:
            NotFoundError: If no VM has that hostname.
        """
        for vm in await self.list_vms():
            if vm.hostname == hostname:
                return vm
        raise NotFoundError(f"VM not found: {hostname}", status_code=404)

    async def delete_vm(self, host_group: str, hostname: str) -> None:
        """Delete a VM.

        A VM that is already gone raises NotFoundError; whether that counts
        as success is up to the caller.
        """
        logger.debug(f"Deleting VM {hostname} from {host_group}")
        await self._session.request(
            "DELETE",
            f"/hostgroup/{quote(host_group, safe='')}/nodes/{quote(hostname, safe='')}",
            action=f"delete VM {hostname}",
        )
        logger.info(f"Deleted VM {hostname}")

    async def get_host_groups(self) -> List[HostGroup]:
        """All host groups with their default sizing."""
        response = await self._session.request("GET", "/hostgroup", action="list host groups")
        return parse_many(HostGroup, read_json(response, "list host groups"), "list host groups")

    async def update_vm(self, host_group: str, hostname: str, spec: VMSpec) -> VMRecord:
        """Update-style entry point for a VM that only supports replacement.

        The fleet manager has no in-place update. When ``spec`` and
        ``host_group`` match the running VM this returns it unchanged;
        otherwise the caller has to delete and re-create.

        Raises:
            NotFoundError: If the VM does not exist.
            ValidationError: If a field that requires replacement differs.
        """
        current = await self.get_vm(hostname)
        changed = []

        if current.host_group and current.host_group != host_group:
            changed.append("host_group")
        if spec.cpus > 0 and spec.cpus != current.cpus:
            changed.append("cpus")
        if spec.ram_gb > 0 and gib(spec.ram_gb) != current.ram_bytes:
            changed.append("ram_gb")
        if spec.persistent != current.persistent:
            changed.append("persistent")
        if sorted(spec.tags) != sorted(current.tags):
            changed.append("tags")

        if changed:
            raise ValidationError(
                f"VM {hostname} cannot be updated in place; "
                f"changing {', '.join(changed)} requires replacement"
            )
        return current

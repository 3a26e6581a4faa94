"""File Transfer Engine - copy an in-memory payload onto a VM.

A transfer is one logical operation:

1. Hash the payload (SHA-256) before any network activity.
2. Upload the bytes to a staging file next to the destination.
3. Apply owner, group and mode to the staging file and move it over the
   destination in a single remote command.

If step 3 fails or is cancelled the staging file is removed and the transfer
fails; the destination is never left half written and a permissions failure
is never reported as success.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import posixpath
import shlex
import tarfile
import time
from typing import Optional, Union
from urllib.parse import quote

from slicer_fleet.errors import ExecutionError, PermissionApplyError, SlicerError, ValidationError
from slicer_fleet.exec import ExecStreamingEngine
from slicer_fleet.models import PERMISSIONS_PATTERN, ExecRequest, TransferMode, TransferResult
from slicer_fleet.session import TransportSession, guarded

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".slicer-"


def content_digest(content: bytes) -> str:
    """Hex SHA-256 of the exact payload bytes."""
    return hashlib.sha256(content).hexdigest()


def staging_path(destination: str, digest: str) -> str:
    """Sibling path the payload is uploaded to before it is published."""
    directory, name = posixpath.split(destination)
    return posixpath.join(directory, f"{STAGING_PREFIX}{name}.{digest[:12]}")


def build_tar(name: str, content: bytes, uid: int, gid: int, permissions: str) -> bytes:
    """Pack one file into an uncompressed tar archive."""
    info = tarfile.TarInfo(name=name)
    info.size = len(content)
    info.mode = int(permissions, 8)
    info.uid = uid
    info.gid = gid
    info.mtime = int(time.time())

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class FileTransferEngine:
    """
    Pushes payloads to VMs.

    The engine does not skip transfers whose digest matches an earlier one;
    callers that want that optimisation compare the returned digest.
    """

    def __init__(self, session: TransportSession, exec_engine: ExecStreamingEngine) -> None:
        self._session = session
        self._exec = exec_engine

    async def transfer(
        self,
        hostname: str,
        content: bytes,
        destination: str,
        *,
        uid: int = 0,
        gid: int = 0,
        permissions: str = "0644",
        mode: Union[TransferMode, str] = TransferMode.BINARY,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> TransferResult:
        """Copy ``content`` to ``destination`` on ``hostname``.

        Args:
            hostname: Target VM.
            content: Payload, already in memory.
            destination: Absolute path on the VM.
            uid: Owner of the destination file.
            gid: Group of the destination file.
            permissions: Octal mode string such as "0644".
            mode: "binary" sends raw bytes; "tar" sends a one-file archive.
            cancel_event: Set by the caller to abort.
            deadline: Absolute ``loop.time()`` at which the transfer is aborted.

        Returns:
            TransferResult carrying the hex SHA-256 digest of ``content``.

        Raises:
            ValidationError: Bad arguments (checked before any network call).
            NotFoundError: The destination's parent directory does not exist.
            PermissionApplyError: Upload succeeded but owner/mode could not be applied.
            CancellationError: The cancel signal fired or the deadline passed.
            TransportError: Connection failure.
        """
        mode = self._validate(content, destination, uid, gid, permissions, mode)

        digest = content_digest(content)
        stage = staging_path(destination, digest)

        logger.debug(
            f"[transfer] {hostname}:{destination} size={len(content)} "
            f"mode={mode.value} digest={digest[:12]}"
        )

        await guarded(
            self._upload(hostname, content, stage, uid, gid, permissions, mode),
            cancel_event=cancel_event,
            deadline=deadline,
        )

        try:
            await self._publish(hostname, stage, destination, uid, gid, permissions, cancel_event, deadline)
        except SlicerError:
            await self._discard_stage(hostname, stage)
            raise

        logger.info(f"[transfer] Copied {len(content)} bytes to {hostname}:{destination}")

        return TransferResult(
            hostname=hostname,
            destination=destination,
            digest=digest,
            size=len(content),
            mode=mode,
            uid=uid,
            gid=gid,
            permissions=permissions,
        )

    async def remove(self, hostname: str, destination: str) -> None:
        """Delete a file from the VM (no error if it is already gone)."""
        request = ExecRequest(command="rm", args=("-f", destination))
        result = await self._exec.run(hostname, request)
        if result.exit_code != 0:
            raise ExecutionError(
                f"Unable to remove {hostname}:{destination}: exit code {result.exit_code}",
                result.stdout,
                result.stderr,
                result.exit_code,
            )
        logger.info(f"[transfer] Removed {hostname}:{destination}")

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate(
        content: bytes,
        destination: str,
        uid: int,
        gid: int,
        permissions: str,
        mode: Union[TransferMode, str],
    ) -> TransferMode:
        if not isinstance(content, (bytes, bytearray, memoryview)):
            raise ValidationError(f"content must be bytes, got {type(content).__name__}")
        if not destination.startswith("/") or destination.endswith("/"):
            raise ValidationError(f"destination must be an absolute file path, got: {destination!r}")
        if uid < 0 or gid < 0:
            raise ValidationError("uid and gid must be non-negative")
        if not PERMISSIONS_PATTERN.match(permissions):
            raise ValidationError(f"permissions must be an octal mode like '0644', got: {permissions!r}")
        try:
            return TransferMode(mode)
        except ValueError:
            allowed = ", ".join(m.value for m in TransferMode)
            raise ValidationError(f"Unsupported transfer mode {mode!r} (expected one of: {allowed})") from None

    async def _upload(
        self,
        hostname: str,
        content: bytes,
        stage: str,
        uid: int,
        gid: int,
        permissions: str,
        mode: TransferMode,
    ) -> None:
        if mode is TransferMode.TAR:
            directory, name = posixpath.split(stage)
            body = build_tar(name, bytes(content), uid, gid, permissions)
            path = directory
            content_type = "application/x-tar"
        else:
            body = bytes(content)
            path = stage
            content_type = "application/octet-stream"

        await self._session.request(
            "POST",
            f"/vm/{quote(hostname, safe='')}/cp",
            action=f"copy file to {hostname}:{path}",
            params={
                "path": path,
                "mode": mode.value,
                "uid": str(uid),
                "gid": str(gid),
                "permissions": permissions,
            },
            content=body,
            headers={"Content-Type": content_type},
        )

    async def _publish(
        self,
        hostname: str,
        stage: str,
        destination: str,
        uid: int,
        gid: int,
        permissions: str,
        cancel_event: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> None:
        script = " && ".join(
            [
                f"chown {uid}:{gid} {shlex.quote(stage)}",
                f"chmod {permissions} {shlex.quote(stage)}",
                f"mv -f {shlex.quote(stage)} {shlex.quote(destination)}",
            ]
        )
        request = ExecRequest(command="sh", args=("-c", script))
        try:
            result = await self._exec.run(hostname, request, cancel_event=cancel_event, deadline=deadline)
        except ExecutionError as e:
            raise PermissionApplyError(
                f"Uploaded {destination} on {hostname} but could not apply ownership/permissions: {e.message}",
                e.stdout,
                e.stderr,
                e.exit_code,
            ) from e

        if result.exit_code != 0:
            raise PermissionApplyError(
                f"Uploaded {destination} on {hostname} but could not apply ownership/permissions "
                f"(exit code {result.exit_code}): {result.stderr.strip()}",
                result.stdout,
                result.stderr,
                result.exit_code,
            )

    async def _discard_stage(self, hostname: str, stage: str) -> None:
        """Best-effort removal of the staging file after a failed publish."""
        try:
            await self._exec.run(hostname, ExecRequest(command="rm", args=("-f", stage)))
        except SlicerError as e:
            logger.warning(f"[transfer] Could not remove staging file {hostname}:{stage}: {e}")

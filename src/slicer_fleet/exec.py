"""Exec Streaming Engine - run a command on a VM and stream its output.

The fleet manager answers an exec call with a newline-delimited JSON stream.
Each frame looks like::

    {"stdout": "...", "stderr": "...", "exit_code": 0, "error": ""}

Every frame becomes exactly one Result Chunk, handed to the caller before the
next frame is read, so memory stays bounded no matter how long the command
runs. The session moves through:

    REQUESTED -> STREAMING -> COMPLETED | FAILED

A frame with a non-empty ``error`` fails the session. The last frame that
carries an ``exit_code`` decides the exit status; frames without one leave it
alone. A stream that ends, breaks or goes silent before an exit status was
seen is a failure, never a silent exit 0.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional
from urllib.parse import quote

import httpx

from slicer_fleet.config import DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS
from slicer_fleet.errors import (
    CancellationError,
    ExecTimeoutError,
    ExecutionError,
    TransportError,
)
from slicer_fleet.models import (
    ErrorChunk,
    ExecRequest,
    ExecResult,
    ExecState,
    OutputChunk,
    ResultChunk,
    join_output,
)
from slicer_fleet.session import TransportSession, guarded

logger = logging.getLogger(__name__)

# Returned by _next_line once the body is exhausted.
_END_OF_STREAM = object()


def parse_frame(line: str) -> ResultChunk:
    """Translate one NDJSON frame into a Result Chunk.

    Raises:
        ValueError: If the line is not a JSON object with the expected fields.
    """
    frame = json.loads(line)
    if not isinstance(frame, dict):
        raise ValueError(f"expected a JSON object, got {type(frame).__name__}")

    stdout = frame.get("stdout") or ""
    stderr = frame.get("stderr") or ""
    if not isinstance(stdout, str) or not isinstance(stderr, str):
        raise ValueError("stdout/stderr must be strings")

    exit_code = frame.get("exit_code")
    if exit_code is not None and (isinstance(exit_code, bool) or not isinstance(exit_code, int)):
        raise ValueError(f"exit_code must be an integer, got {exit_code!r}")

    error = frame.get("error") or ""
    if error:
        return ErrorChunk(
            error=str(error),
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            source="remote",
        )
    return OutputChunk(stdout=stdout, stderr=stderr, exit_code=exit_code)


class ExecSession:
    """
    One command invocation on one VM.

    Iterate it inside ``async with`` to receive chunks in arrival order; the
    connection is released when the block exits, even if iteration stopped
    early. After the stream is drained, ``result()`` returns the aggregate and
    ``raise_for_status()`` surfaces a failure as an exception.

    Example:
        >>> async with engine.session("host-1", ExecRequest(command="echo", args=["hi"])) as s:
        ...     async for chunk in s:
        ...         print(chunk.stdout, end="")
        >>> s.result().exit_code
        0
    """

    def __init__(
        self,
        session: TransportSession,
        hostname: str,
        request: ExecRequest,
        *,
        idle_timeout: Optional[float] = DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> None:
        """Prepare a session; nothing is sent until iteration starts.

        Args:
            session: Shared transport session.
            hostname: Target VM.
            request: The command to run.
            idle_timeout: Seconds without a frame before the stream is failed.
                None waits forever (only the cancel signal can stop it).
            cancel_event: Set by the caller to abort the session.
            deadline: Absolute ``loop.time()`` at which the session is aborted.
        """
        self._session = session
        self.hostname = hostname
        self.request = request
        self._idle_timeout = idle_timeout
        self._cancel_event = cancel_event
        self._deadline = deadline

        self.state = ExecState.REQUESTED
        self.exit_code: Optional[int] = None
        self.error: Optional[str] = None
        self.error_source: Optional[str] = None
        self.chunk_count = 0
        self._output: List[ResultChunk] = []
        self._response: Optional[httpx.Response] = None
        self._started = False
        self._finished = False

    # -------------------------------------------------------------------------
    # Context management
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> "ExecSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release the underlying connection."""
        if self._response is not None:
            response, self._response = self._response, None
            await response.aclose()
            logger.debug(f"[exec] Closed stream for {self.hostname}")

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[ResultChunk]:
        return self.chunks()

    async def chunks(self) -> AsyncIterator[ResultChunk]:
        """Yield chunks in the order the remote produced them.

        Can only be consumed once.

        Raises:
            CancellationError: If the cancel signal or deadline fires.
            SlicerAPIError: If the exec call itself was rejected.
            TransportError: If the connection could not be opened.
            ExecTimeoutError: If the response headers did not arrive in time.
        """
        if self._started:
            raise RuntimeError("An exec session can only be consumed once")
        self._started = True

        try:
            await self._open()
            lines = self._response.aiter_lines()

            while True:
                try:
                    line = await guarded(
                        self._next_line(lines),
                        cancel_event=self._cancel_event,
                        timeout=self._idle_timeout,
                        deadline=self._deadline,
                    )
                except asyncio.TimeoutError:
                    yield self._fail(
                        ErrorChunk(
                            error=f"no output from {self.hostname} for {self._idle_timeout}s",
                            source="timeout",
                        )
                    )
                    return
                except (httpx.TransportError, httpx.DecodingError) as e:
                    yield self._fail(
                        ErrorChunk(
                            error=f"connection to {self.hostname} lost: {e.__class__.__name__}: {e}",
                            source="transport",
                        )
                    )
                    return

                if line is _END_OF_STREAM:
                    break
                if not line.strip():
                    continue

                try:
                    chunk = parse_frame(line)
                except ValueError as e:
                    yield self._fail(
                        ErrorChunk(error=f"malformed frame from {self.hostname}: {e}", source="transport")
                    )
                    return

                yield self._record(chunk)

            if self.state is ExecState.STREAMING:
                if self.exit_code is None:
                    yield self._fail(
                        ErrorChunk(
                            error=f"stream from {self.hostname} ended before an exit status",
                            source="transport",
                        )
                    )
                    return
                self.state = ExecState.COMPLETED
                logger.info(
                    f"[exec] {self.hostname}: {self.request.command} exited "
                    f"with {self.exit_code} ({self.chunk_count} chunks)"
                )
        except CancellationError as e:
            self._mark_cancelled(str(e))
            raise CancellationError(
                f"exec on {self.hostname} cancelled: {e}",
                stdout=self.stdout,
                stderr=self.stderr,
            ) from e
        finally:
            self._finished = True
            await self.aclose()

    async def _open(self) -> None:
        header_timeout = self._idle_timeout if self._idle_timeout is not None else self._session.timeout
        try:
            self._response = await self._session.open_stream(
                "POST",
                f"/vm/{quote(self.hostname, safe='')}/exec",
                action=f"exec on {self.hostname}",
                params=self.request.to_params(),
                cancel_event=self._cancel_event,
                deadline=self._deadline,
                timeout=header_timeout,
            )
        except asyncio.TimeoutError:
            self.state = ExecState.FAILED
            self.error = f"no response from {self.hostname} for {header_timeout}s"
            self.error_source = "timeout"
            logger.warning(f"[exec] {self.hostname}: {self.request.command} failed: {self.error}")
            raise ExecTimeoutError(f"exec error on {self.hostname}: {self.error}") from None
        self.state = ExecState.STREAMING
        logger.debug(f"[exec] Streaming {self.request.command!r} on {self.hostname}")

    @staticmethod
    async def _next_line(lines: AsyncIterator[str]):
        try:
            return await lines.__anext__()
        except StopAsyncIteration:
            return _END_OF_STREAM

    def _record(self, chunk: ResultChunk) -> ResultChunk:
        """Fold one chunk into the session state and hand it back."""
        self.chunk_count += 1

        if self.state is ExecState.FAILED:
            # Drained after a failure: informational only.
            return chunk

        self._output.append(chunk)
        if chunk.exit_code is not None:
            self.exit_code = chunk.exit_code

        if isinstance(chunk, ErrorChunk):
            self.state = ExecState.FAILED
            self.error = chunk.error
            self.error_source = chunk.source
            logger.warning(f"[exec] {self.hostname}: {self.request.command} failed: {chunk.error}")
        return chunk

    def _fail(self, chunk: ErrorChunk) -> ErrorChunk:
        """Terminal failure detected locally (connection, timeout, protocol)."""
        if self.state is ExecState.FAILED:
            # A remote error was already reported; keep it as the surfaced one.
            self.chunk_count += 1
            return chunk
        return self._record(chunk)

    def _mark_cancelled(self, reason: str) -> None:
        if self.state is not ExecState.COMPLETED:
            self.state = ExecState.FAILED
            if self.error is None:
                self.error = reason
                self.error_source = "cancelled"

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    @property
    def stdout(self) -> str:
        """Stdout collected so far."""
        return join_output(self._output)[0]

    @property
    def stderr(self) -> str:
        """Stderr collected so far."""
        return join_output(self._output)[1]

    def result(self) -> ExecResult:
        """Aggregate of everything received so far."""
        return ExecResult(
            hostname=self.hostname,
            command=self.request.command,
            state=self.state,
            stdout=self.stdout,
            stderr=self.stderr,
            exit_code=self.exit_code,
            error=self.error,
            error_source=self.error_source,
            chunk_count=self.chunk_count,
        )

    def raise_for_status(self) -> None:
        """Raise the exception matching a failed session.

        Raises:
            ExecutionError: The remote reported an execution problem.
            ExecTimeoutError: No frame arrived within the idle timeout.
            TransportError: The connection broke or sent garbage.
            RuntimeError: If the session was not drained yet.
        """
        if not self._finished:
            raise RuntimeError("Drain the exec session before checking its status")
        if self.state is not ExecState.FAILED:
            return

        message = f"exec error on {self.hostname}: {self.error}"
        if self.error_source == "remote":
            raise ExecutionError(message, self.stdout, self.stderr, self.exit_code)
        if self.error_source == "timeout":
            raise ExecTimeoutError(message, self.stdout, self.stderr, self.exit_code)
        if self.error_source == "cancelled":
            raise CancellationError(message, self.stdout, self.stderr)
        raise TransportError(message, self.stdout, self.stderr, self.exit_code)


class ExecStreamingEngine:
    """
    Runs commands on VMs through the shared transport session.

    Sessions are independent: nothing is serialized between them, even for
    the same hostname.
    """

    def __init__(
        self,
        session: TransportSession,
        idle_timeout: Optional[float] = DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS,
    ) -> None:
        self._session = session
        self._idle_timeout = idle_timeout

    def session(
        self,
        hostname: str,
        request: ExecRequest,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
        idle_timeout: Optional[float] = None,
    ) -> ExecSession:
        """Create an exec session; see ExecSession for the consumption contract."""
        return ExecSession(
            self._session,
            hostname,
            request,
            idle_timeout=idle_timeout if idle_timeout is not None else self._idle_timeout,
            cancel_event=cancel_event,
            deadline=deadline,
        )

    async def stream(
        self,
        hostname: str,
        request: ExecRequest,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[ResultChunk]:
        """Yield the chunks of one exec; the connection closes when iteration ends."""
        exec_session = self.session(
            hostname,
            request,
            cancel_event=cancel_event,
            deadline=deadline,
            idle_timeout=idle_timeout,
        )
        async with exec_session:
            async for chunk in exec_session:
                yield chunk

    async def run(
        self,
        hostname: str,
        request: ExecRequest,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        check: bool = True,
    ) -> ExecResult:
        """Run a command to completion and return its aggregate.

        Args:
            hostname: Target VM.
            request: The command to run.
            cancel_event: Set by the caller to abort.
            deadline: Absolute ``loop.time()`` to abort at.
            idle_timeout: Override of the engine's idle timeout.
            check: Raise when the session failed. A non-zero exit code is not
                a failure; inspect ``exit_code``.

        Returns:
            ExecResult with the full stdout/stderr and the exit code.
        """
        exec_session = self.session(
            hostname,
            request,
            cancel_event=cancel_event,
            deadline=deadline,
            idle_timeout=idle_timeout,
        )
        async with exec_session:
            async for _ in exec_session:
                pass

        if check:
            exec_session.raise_for_status()
        return exec_session.result()

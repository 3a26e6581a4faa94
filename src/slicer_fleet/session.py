"""Transport session shared by every fleet client component.

Holds the endpoint, bearer token, TLS policy and timeout, and issues every
request made against the fleet manager. Configuration is fixed at
construction; components only read it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

import httpx

from slicer_fleet.config import DEFAULT_TIMEOUT_SECONDS, DEFAULT_USER_AGENT, Settings
from slicer_fleet.errors import (
    CancellationError,
    ConfigurationError,
    SlicerAPIError,
    TransportError,
    error_from_response,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def guarded(
    awaitable: Awaitable[T],
    *,
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
    deadline: Optional[float] = None,
) -> T:
    """Await one operation while watching the caller's cancel signal.

    Args:
        awaitable: The operation to wait for.
        cancel_event: Set by the caller to abandon the wait.
        timeout: Seconds to wait for this operation alone.
        deadline: Absolute ``loop.time()`` after which the wait is abandoned.

    Returns:
        The operation's result.

    Raises:
        CancellationError: If the cancel event was set or the deadline passed.
        asyncio.TimeoutError: If ``timeout`` elapsed first.
    """
    loop = asyncio.get_running_loop()

    limit = timeout
    deadline_bound = False
    if deadline is not None:
        remaining = deadline - loop.time()
        if remaining <= 0:
            _discard(awaitable)
            raise CancellationError("Deadline exceeded")
        if limit is None or remaining < limit:
            limit = remaining
            deadline_bound = True

    if cancel_event is not None and cancel_event.is_set():
        _discard(awaitable)
        raise CancellationError("Operation cancelled")

    work = asyncio.ensure_future(awaitable)
    watchers = {work}
    cancelled = None
    if cancel_event is not None:
        cancelled = asyncio.ensure_future(cancel_event.wait())
        watchers.add(cancelled)

    try:
        done, _ = await asyncio.wait(watchers, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [w for w in watchers if not w.done()]
        for waiter in pending:
            waiter.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    if work in done:
        return work.result()
    if cancelled is not None and cancelled in done:
        raise CancellationError("Operation cancelled")
    if deadline_bound:
        raise CancellationError("Deadline exceeded")
    raise asyncio.TimeoutError()


def _discard(awaitable: Awaitable[Any]) -> None:
    """Close a coroutine that will never be awaited."""
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()


def read_json(response: httpx.Response, action: str) -> Any:
    """Decode a 2xx body, mapping a non-JSON answer to SlicerAPIError."""
    try:
        return response.json()
    except ValueError:
        raise SlicerAPIError(
            f"Unable to {action}: response is not JSON",
            status_code=response.status_code,
            response=response.text[:200],
        ) from None


class TransportSession:
    """
    Authenticated HTTP session against the fleet manager.

    Usage:
        async with TransportSession("https://slicer.example.com", token) as session:
            response = await session.request("GET", "/nodes", action="list VMs")

    Setting ``insecure=True`` turns off TLS certificate verification. This is
    an explicit caller choice for lab setups with self-signed certificates and
    is never the default.
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        insecure: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the session.

        Args:
            endpoint: Base URL of the fleet manager API.
            token: Bearer token attached to every request.
            user_agent: User-Agent header value.
            timeout: Seconds allowed for one non-streaming request.
            insecure: Skip TLS certificate verification.
            transport: Custom httpx transport (tests use httpx.MockTransport).
        """
        if not endpoint:
            raise ConfigurationError("A fleet manager endpoint is required (SLICER_ENDPOINT)")
        if not token:
            raise ConfigurationError("A bearer token is required (SLICER_TOKEN)")

        self._endpoint = endpoint.rstrip("/")
        self._token = token
        self._user_agent = user_agent
        self._timeout = timeout
        self._insecure = insecure

        if insecure:
            logger.warning(f"TLS certificate verification is disabled for {self._endpoint}")

        self._client = httpx.AsyncClient(
            base_url=self._endpoint,
            headers={
                "Authorization": f"Bearer {token}",
                "User-Agent": user_agent,
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            verify=not insecure,
            transport=transport,
        )

        logger.debug(f"Configured fleet session: endpoint={self._endpoint} timeout={timeout}s")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "TransportSession":
        """Build a session from Settings.

        Raises:
            ConfigurationError: If endpoint or token is missing.
        """
        return cls(
            settings.endpoint or "",
            settings.token or "",
            user_agent=settings.user_agent,
            timeout=settings.timeout,
            insecure=settings.insecure,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def user_agent(self) -> str:
        return self._user_agent

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def insecure(self) -> bool:
        return self._insecure

    def __repr__(self) -> str:
        return f"TransportSession(endpoint={self._endpoint!r}, insecure={self._insecure})"

    async def request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: Any = None,
        json: Any = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Issue one request/response call bounded by the session timeout.

        Args:
            method: HTTP method.
            path: Path relative to the endpoint.
            action: What the call does, used in error messages ("create VM").
            params: Query parameters.
            json: JSON body.
            content: Raw body.
            headers: Extra headers.

        Returns:
            The successful (2xx) response, fully read.

        Raises:
            TransportError: On connection failures and timeouts.
            SlicerAPIError: Subclass matching the status of a non-2xx answer.
        """
        logger.debug(f"{method} {path}")
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                content=content,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Unable to {action}: request timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise TransportError(f"Unable to {action}: {e.__class__.__name__}: {e}") from e

        if response.is_error:
            raise error_from_response(response, action)
        return response

    async def open_stream(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: Any = None,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Open a long-lived streaming request.

        No read timeout applies to the body; the caller bounds the stream with
        its own idle timeout or cancel signal. The returned response must be
        closed with ``aclose()``.

        Args:
            timeout: Seconds to wait for the response headers. None falls
                back to the session timeout.

        Raises:
            asyncio.TimeoutError: If the headers did not arrive within ``timeout``.
            CancellationError: If cancelled before the response headers arrived.
            TransportError: If the connection could not be established.
            SlicerAPIError: Subclass matching the status of a non-2xx answer.
        """
        request = self._client.build_request(
            method,
            path,
            params=params,
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        logger.debug(f"{method} {path} (stream)")

        try:
            response = await guarded(
                self._client.send(request, stream=True),
                cancel_event=cancel_event,
                timeout=timeout if timeout is not None else self._timeout,
                deadline=deadline,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Unable to {action}: connection timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise TransportError(f"Unable to {action}: {e.__class__.__name__}: {e}") from e

        if response.is_error:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise error_from_response(response, action)
        return response

    async def aclose(self) -> None:
        """Close the connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> "TransportSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

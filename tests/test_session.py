"""Unit tests for the transport session."""

import asyncio
import logging

import httpx
import pytest

from slicer_fleet.config import Settings
from slicer_fleet.errors import (
    AuthenticationError,
    CancellationError,
    ConfigurationError,
    NotFoundError,
    SlicerAPIError,
    TransportError,
)
from slicer_fleet.session import TransportSession, guarded, read_json

from tests.fake_fleet import ENDPOINT, TOKEN


def _session(handler, **kwargs) -> TransportSession:
    return TransportSession(ENDPOINT, TOKEN, transport=httpx.MockTransport(handler), **kwargs)


class TestConstruction:
    """Tests for building a session."""

    def test_missing_endpoint(self):
        """Test an empty endpoint is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            TransportSession("", TOKEN)
        assert "SLICER_ENDPOINT" in str(exc_info.value)

    def test_missing_token(self):
        """Test an empty token is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            TransportSession(ENDPOINT, "")
        assert "SLICER_TOKEN" in str(exc_info.value)

    def test_from_settings_without_token(self):
        """Test settings without a token fail before any request."""
        with pytest.raises(ConfigurationError):
            TransportSession.from_settings(Settings(_env_file=None, endpoint=ENDPOINT))

    @pytest.mark.asyncio
    async def test_from_settings(self):
        """Test settings values end up on the session."""
        settings = Settings(_env_file=None, endpoint=ENDPOINT + "/", token=TOKEN, timeout="45s")
        async with TransportSession.from_settings(settings) as session:
            assert session.endpoint == ENDPOINT
            assert session.timeout == 45.0
            assert session.insecure is False

    @pytest.mark.asyncio
    async def test_insecure_logs_warning(self, caplog):
        """Test disabling TLS verification is logged."""
        with caplog.at_level(logging.WARNING, logger="slicer_fleet.session"):
            async with TransportSession(ENDPOINT, TOKEN, insecure=True) as session:
                assert session.insecure is True
        assert "TLS certificate verification is disabled" in caplog.text

    @pytest.mark.asyncio
    async def test_repr_hides_token(self):
        """Test the token is not part of the repr."""
        async with TransportSession(ENDPOINT, TOKEN) as session:
            assert TOKEN not in repr(session)


class TestRequest:
    """Tests for request/response calls."""

    @pytest.mark.asyncio
    async def test_sends_auth_and_user_agent(self):
        """Test every request carries the bearer token and user agent."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        async with _session(handler, user_agent="slicer-fleet-tests/1") as session:
            await session.request("GET", "/nodes", action="list VMs")

        assert seen[0].headers["Authorization"] == f"Bearer {TOKEN}"
        assert seen[0].headers["User-Agent"] == "slicer-fleet-tests/1"
        assert str(seen[0].url) == f"{ENDPOINT}/nodes"

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        """Test 401 maps to AuthenticationError."""
        async with _session(lambda r: httpx.Response(401, json={"error": "bad token"})) as session:
            with pytest.raises(AuthenticationError) as exc_info:
                await session.request("GET", "/nodes", action="list VMs")

        assert exc_info.value.status_code == 401
        assert "bad token" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_not_found(self):
        """Test 404 maps to NotFoundError."""
        async with _session(lambda r: httpx.Response(404, json={"error": "gone"})) as session:
            with pytest.raises(NotFoundError):
                await session.request("DELETE", "/secrets/x", action="delete secret x")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test a refused connection is a transport error."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _session(handler) as session:
            with pytest.raises(TransportError) as exc_info:
                await session.request("GET", "/nodes", action="list VMs")

        assert "list VMs" in exc_info.value.message
        assert "ConnectError" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a request timeout is a transport error."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _session(handler, timeout=3.0) as session:
            with pytest.raises(TransportError) as exc_info:
                await session.request("GET", "/nodes", action="list VMs")

        assert "timed out after 3.0s" in exc_info.value.message


class TestOpenStream:
    """Tests for streaming requests."""

    @pytest.mark.asyncio
    async def test_error_status_is_raised(self):
        """Test a rejected stream raises the mapped error."""
        async with _session(lambda r: httpx.Response(404, json={"error": "no such VM"})) as session:
            with pytest.raises(NotFoundError) as exc_info:
                await session.open_stream("POST", "/vm/x/exec", action="exec on x")
        assert "no such VM" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_cancel_before_headers(self):
        """Test a set cancel event aborts the call."""
        event = asyncio.Event()
        event.set()
        async with _session(lambda r: httpx.Response(200)) as session:
            with pytest.raises(CancellationError):
                await session.open_stream("POST", "/vm/x/exec", action="exec on x", cancel_event=event)

    @pytest.mark.asyncio
    async def test_headers_bounded_by_timeout(self):
        """Test a server that never answers does not hold the call forever."""

        async def handler(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        async with _session(handler) as session:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(
                    session.open_stream("POST", "/vm/x/exec", action="exec on x", timeout=0.05),
                    timeout=2,
                )


class TestReadJSON:
    """Tests for decoding response bodies."""

    def test_decodes_json(self):
        """Test a JSON body is returned as data."""
        assert read_json(httpx.Response(200, json=[{"name": "a"}]), "list secrets") == [{"name": "a"}]

    def test_non_json_body(self):
        """Test an HTML error page behind a 200 is an API error."""
        response = httpx.Response(200, text="<html>bad gateway</html>")

        with pytest.raises(SlicerAPIError) as exc_info:
            read_json(response, "list VMs")

        assert exc_info.value.message == "Unable to list VMs: response is not JSON"
        assert exc_info.value.status_code == 200
        assert exc_info.value.response == "<html>bad gateway</html>"


class TestGuarded:
    """Tests for cancel-aware waiting."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        """Test the operation result is passed through."""

        async def work():
            return 42

        assert await guarded(work(), cancel_event=asyncio.Event(), timeout=1) == 42

    @pytest.mark.asyncio
    async def test_cancel_event_interrupts(self):
        """Test setting the event stops a long wait promptly."""
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, event.set)

        with pytest.raises(CancellationError) as exc_info:
            await asyncio.wait_for(guarded(asyncio.sleep(10), cancel_event=event), timeout=2)
        assert exc_info.value.message == "Operation cancelled"

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test the per-operation timeout raises asyncio.TimeoutError."""
        with pytest.raises(asyncio.TimeoutError):
            await guarded(asyncio.sleep(10), timeout=0.02)

    @pytest.mark.asyncio
    async def test_deadline(self):
        """Test a deadline is reported as cancellation, not timeout."""
        deadline = asyncio.get_running_loop().time() + 0.02
        with pytest.raises(CancellationError) as exc_info:
            await guarded(asyncio.sleep(10), deadline=deadline, timeout=5)
        assert exc_info.value.message == "Deadline exceeded"

    @pytest.mark.asyncio
    async def test_past_deadline(self):
        """Test an already expired deadline fails without waiting."""
        deadline = asyncio.get_running_loop().time() - 1
        with pytest.raises(CancellationError):
            await guarded(asyncio.sleep(10), deadline=deadline)

"""Unit tests for error mapping."""

import httpx
import pytest

from slicer_fleet.errors import (
    AuthenticationError,
    ConflictError,
    ExecTimeoutError,
    ExecutionError,
    NotFoundError,
    PermissionApplyError,
    SlicerAPIError,
    SlicerError,
    TransportError,
    ValidationError,
    error_from_response,
)


class TestErrorFromResponse:
    """Tests for mapping HTTP answers to error kinds."""

    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (400, ValidationError),
            (401, AuthenticationError),
            (403, AuthenticationError),
            (404, NotFoundError),
            (409, ConflictError),
            (422, ValidationError),
            (507, ConflictError),
            (500, SlicerAPIError),
            (502, SlicerAPIError),
        ],
    )
    def test_status_mapping(self, status, error_cls):
        """Test each status maps to its error kind."""
        response = httpx.Response(status, json={"error": "boom"})
        error = error_from_response(response, "do thing")

        assert type(error) is error_cls
        assert error.status_code == status

    def test_message_from_json_error(self):
        """Test the error field of a JSON body is used."""
        response = httpx.Response(404, json={"error": "node vm-9 not found"})
        error = error_from_response(response, "delete VM vm-9")

        assert error.message == "Unable to delete VM vm-9: node vm-9 not found (HTTP 404)"
        assert error.response == "node vm-9 not found"

    def test_message_from_detail(self):
        """Test a detail field is used when error is absent."""
        response = httpx.Response(422, json={"detail": "cpus must be positive"})
        error = error_from_response(response, "create VM")
        assert "cpus must be positive" in error.message

    def test_message_from_plain_text(self):
        """Test a non-JSON body falls back to the text."""
        response = httpx.Response(500, text="internal error\n")
        error = error_from_response(response, "list VMs")
        assert error.message == "Unable to list VMs: internal error (HTTP 500)"

    def test_message_from_empty_body(self):
        """Test an empty body still produces a message."""
        response = httpx.Response(503)
        error = error_from_response(response, "list VMs")
        assert "Service Unavailable" in error.message


class TestErrorHierarchy:
    """Tests for the error class relationships."""

    def test_api_errors_are_slicer_errors(self):
        """Test all API errors share the base class."""
        for cls in (AuthenticationError, ValidationError, ConflictError, NotFoundError):
            assert issubclass(cls, SlicerAPIError)
            assert issubclass(cls, SlicerError)

    def test_timeout_is_transport_error(self):
        """Test an idle timeout is a kind of transport failure."""
        error = ExecTimeoutError("silent", stdout="partial")
        assert isinstance(error, TransportError)
        assert error.stdout == "partial"

    def test_permission_error_is_execution_error(self):
        """Test a permission failure is an execution failure, not a transport one."""
        error = PermissionApplyError("chmod failed", stderr="denied", exit_code=1)
        assert isinstance(error, ExecutionError)
        assert not isinstance(error, TransportError)
        assert error.exit_code == 1

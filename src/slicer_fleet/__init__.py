"""slicer-fleet: client for the Slicer fleet manager."""

from slicer_fleet.client import SlicerClient
from slicer_fleet.config import VERSION, Settings, get_settings
from slicer_fleet.errors import (
    AuthenticationError,
    CancellationError,
    ConfigurationError,
    ConflictError,
    ExecTimeoutError,
    ExecutionError,
    NotFoundError,
    PermissionApplyError,
    SlicerAPIError,
    SlicerError,
    TransportError,
    ValidationError,
)
from slicer_fleet.models import (
    ErrorChunk,
    ExecRequest,
    ExecResult,
    ExecState,
    HostGroup,
    OutputChunk,
    Secret,
    SecretCreate,
    SecretPatch,
    TransferResult,
    VMRecord,
    VMSpec,
)

__version__ = VERSION

__all__ = [
    "SlicerClient",
    "Settings",
    "get_settings",
    "SlicerError",
    "SlicerAPIError",
    "ConfigurationError",
    "AuthenticationError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "TransportError",
    "ExecTimeoutError",
    "CancellationError",
    "ExecutionError",
    "PermissionApplyError",
    "VMRecord",
    "VMSpec",
    "HostGroup",
    "ExecRequest",
    "ExecResult",
    "ExecState",
    "OutputChunk",
    "ErrorChunk",
    "TransferResult",
    "Secret",
    "SecretCreate",
    "SecretPatch",
]

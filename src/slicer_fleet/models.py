"""Read and write models exchanged with the fleet manager."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from slicer_fleet.errors import SlicerAPIError, ValidationError

GIB = 1024 * 1024 * 1024

PERMISSIONS_PATTERN = re.compile(r"^0?[0-7]{3,4}$")


def gib(value: int) -> int:
    """Convert whole GiB to bytes."""
    return value * GIB


def strip_cidr(address: str) -> str:
    """Return the bare address from "10.0.0.5/24" style values."""
    return address.split("/", 1)[0]


def _describe(model_cls, exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or model_cls.__name__}: {err['msg']}"
        for err in exc.errors()
    )


class WriteModel(BaseModel):
    """Base for payloads built by callers.

    Bad input raises slicer_fleet ValidationError, not the pydantic one.
    """

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {type(self).__name__}: {_describe(type(self), exc)}") from exc


def parse_one(model_cls, data: Any, action: str):
    """Validate one record from a response body.

    Raises:
        SlicerAPIError: If the body does not match the model.
    """
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise SlicerAPIError(
            f"Unable to {action}: unexpected response ({_describe(model_cls, exc)})",
            response=data,
        ) from exc


def parse_many(model_cls, data: Any, action: str) -> list:
    """Validate a JSON array of records (null reads as empty)."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise SlicerAPIError(
            f"Unable to {action}: expected a JSON array, got {type(data).__name__}",
            response=data,
        )
    return [parse_one(model_cls, item, action) for item in data]


# =============================================================================
# Inventory
# =============================================================================


class VMRecord(BaseModel):
    """A VM as reported by the fleet manager."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    hostname: str
    host_group: str = Field(default="", alias="hostgroup")
    ip: str = ""
    cpus: int = 0
    ram_bytes: int = 0
    persistent: bool = False
    arch: str = ""
    created_at: Optional[datetime] = None
    tags: Tuple[str, ...] = ()

    @field_validator("tags", mode="before")
    @classmethod
    def _none_tags(cls, value):
        return () if value is None else value

    @property
    def bare_ip(self) -> str:
        """IP address without any CIDR suffix."""
        return strip_cidr(self.ip)

    @property
    def ram_gb(self) -> int:
        """RAM in whole GiB."""
        return self.ram_bytes // GIB


class VMSpec(WriteModel):
    """Create request for a VM.

    Zero or empty fields mean "use the host group default" and are left out
    of the request body.
    """

    model_config = ConfigDict(frozen=True)

    cpus: int = Field(default=0, ge=0)
    ram_gb: int = Field(default=0, ge=0)
    persistent: bool = False
    disk_image: Optional[str] = None
    import_user: Optional[str] = None
    ssh_keys: Tuple[str, ...] = ()
    userdata: Optional[str] = None
    tags: Tuple[str, ...] = ()
    secrets: Tuple[str, ...] = ()

    def with_tag_map(self, tags: Mapping[str, str]) -> "VMSpec":
        """Return a copy whose tags are rendered from a mapping as key=value strings."""
        rendered = tuple(f"{key}={value}" for key, value in tags.items())
        return self.model_copy(update={"tags": rendered})

    def to_payload(self) -> Dict[str, Any]:
        """Request body with only the fields that override defaults."""
        payload: Dict[str, Any] = {}
        if self.cpus > 0:
            payload["cpus"] = self.cpus
        if self.ram_gb > 0:
            payload["ram_bytes"] = gib(self.ram_gb)
        if self.persistent:
            payload["persistent"] = True
        if self.disk_image:
            payload["disk_image"] = self.disk_image
        if self.import_user:
            payload["import_user"] = self.import_user
        if self.ssh_keys:
            payload["ssh_keys"] = list(self.ssh_keys)
        if self.userdata:
            payload["userdata"] = self.userdata
        if self.tags:
            payload["tags"] = list(self.tags)
        if self.secrets:
            payload["secrets"] = list(self.secrets)
        return payload


class HostGroup(BaseModel):
    """A named pool of VM capacity with default sizing."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    count: int = 0
    cpus: int = 0
    ram_bytes: int = 0
    arch: str = ""
    gpu_count: int = 0

    @property
    def ram_gb(self) -> int:
        return self.ram_bytes // GIB


# =============================================================================
# Secrets
# =============================================================================


class Secret(BaseModel):
    """Secret metadata. The value is write-only and never part of this model."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    size: int = 0
    permissions: str = ""
    uid: int = 0
    gid: int = 0


class SecretCreate(WriteModel):
    """Payload to create a secret."""

    name: str = Field(..., min_length=1)
    data: str = Field(..., repr=False)
    permissions: str = "0600"
    uid: int = Field(default=0, ge=0)
    gid: int = Field(default=0, ge=0)

    @field_validator("permissions")
    @classmethod
    def _check_permissions(cls, value: str) -> str:
        if not PERMISSIONS_PATTERN.match(value):
            raise ValueError(f"permissions must be an octal mode like '0600', got: {value!r}")
        return value


class SecretPatch(WriteModel):
    """Partial update of a secret. Unset fields are left untouched."""

    data: Optional[str] = Field(default=None, repr=False)
    permissions: Optional[str] = None
    uid: Optional[int] = Field(default=None, ge=0)
    gid: Optional[int] = Field(default=None, ge=0)

    @field_validator("permissions")
    @classmethod
    def _check_permissions(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not PERMISSIONS_PATTERN.match(value):
            raise ValueError(f"permissions must be an octal mode like '0600', got: {value!r}")
        return value

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# =============================================================================
# Exec
# =============================================================================


class ExecRequest(WriteModel):
    """One remote command invocation.

    uid/gid are authoritative. The legacy ``user`` string is accepted only
    when it names the same identity as ``uid``.
    """

    model_config = ConfigDict(frozen=True)

    command: str = Field(..., min_length=1)
    args: Tuple[str, ...] = ()
    uid: int = Field(default=0, ge=0)
    gid: int = Field(default=0, ge=0)
    cwd: Optional[str] = None
    shell: Optional[str] = None
    stdout: bool = True
    stderr: bool = True
    user: Optional[str] = None

    @model_validator(mode="after")
    def _check_user_matches_uid(self) -> "ExecRequest":
        if self.user is None or self.user == "":
            return self
        if self.user == "root":
            expected = 0
        elif self.user.isdigit():
            expected = int(self.user)
        else:
            raise ValueError(
                f"user {self.user!r} cannot be checked against uid {self.uid}; pass uid/gid instead"
            )
        if expected != self.uid:
            raise ValueError(f"user {self.user!r} disagrees with uid {self.uid}")
        return self

    def to_params(self) -> List[Tuple[str, str]]:
        """Query parameters for the exec endpoint (args repeat in order)."""
        params: List[Tuple[str, str]] = [("cmd", self.command)]
        params.extend(("args", arg) for arg in self.args)
        params.append(("uid", str(self.uid)))
        params.append(("gid", str(self.gid)))
        if self.cwd:
            params.append(("cwd", self.cwd))
        if self.shell:
            params.append(("shell", self.shell))
        params.append(("stdout", "true" if self.stdout else "false"))
        params.append(("stderr", "true" if self.stderr else "false"))
        return params


class ExecState(str, Enum):
    """Lifecycle of one exec session."""

    REQUESTED = "requested"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class OutputChunk:
    """A frame of output. ``exit_code`` is None when the frame did not set one."""

    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    kind: Literal["output"] = "output"


@dataclass(frozen=True)
class ErrorChunk:
    """A frame that ends the session in failure.

    ``source`` is "remote" when the fleet manager reported the problem,
    "transport" when the connection broke or sent garbage, and "timeout"
    when no frame arrived within the idle timeout. Output fields carry
    whatever the same frame delivered and are valid partial output.
    """

    error: str
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    source: Literal["remote", "transport", "timeout"] = "remote"
    kind: Literal["error"] = "error"


ResultChunk = Union[OutputChunk, ErrorChunk]


@dataclass(frozen=True)
class ExecResult:
    """Aggregate of a drained exec session."""

    hostname: str
    command: str
    state: ExecState
    stdout: str
    stderr: str
    exit_code: Optional[int]
    error: Optional[str] = None
    error_source: Optional[str] = None
    chunk_count: int = 0

    @property
    def ok(self) -> bool:
        return self.state is ExecState.COMPLETED and self.exit_code == 0


def join_output(chunks: Iterable[ResultChunk]) -> Tuple[str, str]:
    """Concatenate stdout and stderr of chunks, each stream independently."""
    out: List[str] = []
    err: List[str] = []
    for chunk in chunks:
        out.append(chunk.stdout)
        err.append(chunk.stderr)
    return "".join(out), "".join(err)


# =============================================================================
# File transfer
# =============================================================================


class TransferMode(str, Enum):
    BINARY = "binary"
    TAR = "tar"


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a completed transfer."""

    hostname: str
    destination: str
    digest: str
    size: int
    mode: TransferMode
    uid: int
    gid: int
    permissions: str

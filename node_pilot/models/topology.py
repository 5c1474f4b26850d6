"""Data models for resolved cluster topology."""

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    """Role of a member in the cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @classmethod
    def from_machine_type(cls, machine_type: str) -> "Role":
        """Map a Talos machine type (``controlplane``, ``init``, ``worker``) to a role."""
        value = (machine_type or "").strip().lower()
        if value in ("controlplane", "control-plane", "init"):
            return cls.CONTROL_PLANE
        if value == "worker":
            return cls.WORKER
        raise ValueError(f"unknown machine type '{machine_type}'")


class NodeIdentity(BaseModel):
    """What a node says about itself when probed through one address."""

    model_config = ConfigDict(frozen=True)

    identity: str
    hostname: str
    role: Role
    addresses: tuple[str, ...] = ()
    shared_addresses: tuple[str, ...] = ()

    @field_validator("identity")
    @classmethod
    def validate_identity(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("identity cannot be empty")
        return v.strip()

    def owns(self, address: str) -> bool:
        """True if ``address`` is one of the node's own, non-shared addresses."""
        return address in self.addresses and address not in self.shared_addresses


class Member(BaseModel):
    """A real, individually addressable cluster participant."""

    model_config = ConfigDict(frozen=True)

    identity: str
    hostname: str
    role: Role
    address: str
    reachable_via: tuple[str, ...] = ()
    online: bool = True

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Validate hostname follows DNS naming conventions."""
        if not v:
            raise ValueError("hostname cannot be empty")
        if len(v) > 253:
            raise ValueError("hostname cannot exceed 253 characters")
        hostname_pattern = re.compile(
            r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$", re.IGNORECASE
        )
        if not hostname_pattern.match(v):
            raise ValueError(
                f"hostname '{v}' must contain only alphanumeric characters, "
                "hyphens, and dots, and cannot start or end with a hyphen"
            )
        return v

    @property
    def is_control_plane(self) -> bool:
        return self.role == Role.CONTROL_PLANE


class TopologyStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class IdentityConflict(BaseModel):
    """One identity reported with different roles through different addresses."""

    model_config = ConfigDict(frozen=True)

    identity: str
    hostname: str
    roles: dict[str, Role]  # address -> reported role


class TopologySnapshot(BaseModel):
    """Canonical member set of one context at one point in time."""

    model_config = ConfigDict(frozen=True)

    context: str
    status: TopologyStatus
    members: tuple[Member, ...] = ()
    failures: dict[str, str] = Field(default_factory=dict)
    dropped_addresses: tuple[str, ...] = ()
    conflicts: tuple[IdentityConflict, ...] = ()
    resolved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def control_plane(self) -> list[Member]:
        return [m for m in self.members if m.is_control_plane]

    @property
    def workers(self) -> list[Member]:
        return [m for m in self.members if not m.is_control_plane]

    def find(self, key: str) -> Member | None:
        """Look up a member by hostname, identity or any address it answered on."""
        for member in self.members:
            if key in (member.hostname, member.identity, member.address):
                return member
            if key in member.reachable_via:
                return member
        return None

"""Data models for configured cluster contexts."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _validate_address(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("address cannot be empty")
    if any(c.isspace() for c in v):
        raise ValueError(f"address '{v}' cannot contain whitespace")
    return v


def strip_port(address: str) -> str:
    """Return the host part of ``host[:port]`` (IPv6 literals may be bracketed)."""
    if address.startswith("["):
        return address[1:].split("]", 1)[0]
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


class Endpoint(BaseModel):
    """Address used to reach a cluster's control API.

    An endpoint may be a floating (virtual) address shared by several
    members, so it never identifies a member by itself.
    """

    model_config = ConfigDict(frozen=True)

    address: str

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_address(v)

    @property
    def host(self) -> str:
        return strip_port(self.address)


class NodeHint(BaseModel):
    """Address the operator listed as a node of the cluster."""

    model_config = ConfigDict(frozen=True)

    address: str

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_address(v)

    @property
    def host(self) -> str:
        return strip_port(self.address)


class ContextCredentials(BaseModel):
    """Credential material for a context, passed through to the adapters untouched."""

    model_config = ConfigDict(frozen=True)

    talosconfig: Path | None = None
    talos_context: str | None = None
    kubeconfig: Path | None = None
    kube_context: str | None = None


class ClusterContext(BaseModel):
    """One managed cluster as configured by the operator."""

    model_config = ConfigDict(frozen=True)

    name: str
    endpoints: tuple[Endpoint, ...]
    node_hints: tuple[NodeHint, ...] = ()
    credentials: ContextCredentials = Field(default_factory=ContextCredentials)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate context name is not empty."""
        if not v or not v.strip():
            raise ValueError("context name cannot be empty")
        return v

    @field_validator("endpoints")
    @classmethod
    def validate_endpoints(cls, v: tuple[Endpoint, ...]) -> tuple[Endpoint, ...]:
        """A context needs at least one endpoint to be reachable."""
        if not v:
            raise ValueError("a context must define at least one endpoint")
        return v

    def probe_addresses(self) -> list[str]:
        """Distinct host addresses to probe, endpoints first, in configured order."""
        seen: dict[str, None] = {}
        for item in (*self.endpoints, *self.node_hints):
            seen.setdefault(item.host, None)
        return list(seen)

    def hint_only_addresses(self) -> list[str]:
        """Hosts listed as node hints but not as endpoints."""
        endpoint_hosts = {e.host for e in self.endpoints}
        return [h.host for h in self.node_hints if h.host not in endpoint_hosts]

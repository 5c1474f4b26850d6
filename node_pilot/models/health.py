"""Data models for consensus-store (etcd) health."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EtcdPeerView(BaseModel):
    """One member as listed by a reporter's ``etcd members`` view."""

    model_config = ConfigDict(frozen=True)

    member_id: str
    hostname: str
    learner: bool = False


class EtcdReport(BaseModel):
    """Status reported by one control-plane member about itself and its peers."""

    model_config = ConfigDict(frozen=True)

    member_id: str
    hostname: str
    learner: bool = False
    errors: tuple[str, ...] = ()
    peers: tuple[EtcdPeerView, ...] = ()

    @property
    def self_healthy(self) -> bool:
        return not self.learner and not self.errors


class ConsensusHealth(BaseModel):
    """Merged health of one etcd member."""

    model_config = ConfigDict(frozen=True)

    member_id: str
    hostname: str
    self_reported: bool
    peer_confirmations: int = 0
    peer_denials: int = 0
    healthy: bool
    reason: str | None = None


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


class ClusterHealthSnapshot(BaseModel):
    """Cluster-wide quorum view merged from every reachable control-plane member."""

    model_config = ConfigDict(frozen=True)

    context: str
    state: HealthState
    member_count: int = 0
    healthy_count: int = 0
    members: tuple[ConsensusHealth, ...] = ()
    unreachable: dict[str, str] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def quorum_size(self) -> int:
        return self.member_count // 2 + 1

    @property
    def has_quorum(self) -> bool:
        return self.state != HealthState.UNKNOWN and self.healthy_count >= self.quorum_size

    @property
    def quorum_safe(self) -> bool:
        """True iff losing one more healthy member keeps a majority."""
        if self.state == HealthState.UNKNOWN:
            return False
        return self.healthy_count - 1 >= -(-self.member_count // 2)

    def member(self, hostname: str) -> ConsensusHealth | None:
        return next((m for m in self.members if m.hostname == hostname), None)

    def summary(self) -> str:
        if self.state == HealthState.UNKNOWN:
            return "etcd health unknown"
        return f"{self.healthy_count}/{self.member_count} etcd members healthy"

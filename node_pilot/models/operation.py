"""Data models for rolling operations, progress events and audit records."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from node_pilot.models.topology import Member


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    DRAIN = "drain"
    REBOOT = "reboot"


class Strictness(str, Enum):
    """What to do with a node whose workload pre-check is blocked."""

    STRICT = "strict"  # skip the node and record it as skipped
    FORCE = "force"  # ask the operator for a second confirmation


class FailurePolicy(str, Enum):
    """What to do with the rest of the plan after a node fails."""

    CONTINUE = "continue"
    ABORT = "abort"


class PlanState(str, Enum):
    PLANNED = "planned"
    CONFIRMED = "confirmed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class StepState(str, Enum):
    PENDING = "pending"
    CORDONING = "cordoning"
    DRAINING = "draining"
    REBOOTING = "rebooting"
    WAITING_READY = "waiting_ready"
    UNCORDONING = "uncordoning"
    DONE = "done"
    STEP_FAILED = "step_failed"
    SKIPPED = "skipped"


class NodeOutcome(str, Enum):
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"
    ABORTED = "aborted"


class OperationPlan(BaseModel):
    """Ordered list of target members for one operation kind.

    The first target is executed first. Plans are frozen; ``confirm``
    produces a new plan in the confirmed state.
    """

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    context: str
    targets: tuple[Member, ...]
    kind: OperationKind
    strictness: Strictness = Strictness.STRICT
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    state: PlanState = PlanState.PLANNED
    created_at: datetime = Field(default_factory=_now)

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: tuple[Member, ...]) -> tuple[Member, ...]:
        if not v:
            raise ValueError("a plan needs at least one target")
        identities = [m.identity for m in v]
        if len(set(identities)) != len(identities):
            raise ValueError("a plan cannot target the same member twice")
        return v

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: PlanState) -> PlanState:
        if v not in (PlanState.PLANNED, PlanState.CONFIRMED):
            raise ValueError("a plan is either planned or confirmed; run state lives in the report")
        return v

    @property
    def confirmed(self) -> bool:
        return self.state == PlanState.CONFIRMED

    def hostnames(self) -> list[str]:
        return [m.hostname for m in self.targets]


class NodeProgress(BaseModel):
    """Per-node progress of a running plan."""

    member: Member
    position: int
    step: StepState = StepState.PENDING
    outcome: NodeOutcome = NodeOutcome.PENDING
    reason: str | None = None
    cleanup_error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class PlanReport(BaseModel):
    """Run-level state and per-node results of a plan."""

    plan: OperationPlan
    state: PlanState = PlanState.RUNNING
    nodes: list[NodeProgress] = Field(default_factory=list)
    reason: str | None = None
    started_at: datetime = Field(default_factory=_now)
    finished_at: datetime | None = None

    def _with(self, outcome: NodeOutcome) -> list[str]:
        return [n.member.hostname for n in self.nodes if n.outcome == outcome]

    @property
    def completed(self) -> list[str]:
        return self._with(NodeOutcome.DONE)

    @property
    def skipped(self) -> list[str]:
        return self._with(NodeOutcome.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self._with(NodeOutcome.FAILED)

    @property
    def aborted(self) -> list[str]:
        return self._with(NodeOutcome.ABORTED)

    def node(self, hostname: str) -> NodeProgress:
        return next(n for n in self.nodes if n.member.hostname == hostname)


class ProgressEvent(BaseModel):
    """Outbound progress message for a display collaborator."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    context: str
    member: str | None = None
    step: str
    message: str
    timestamp: datetime = Field(default_factory=_now)


class AuditOutcome(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class AuditRecord(BaseModel):
    """Immutable record of one step or plan outcome."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_now)
    context: str
    plan_id: str
    member: str | None = None
    kind: OperationKind
    step: str
    outcome: AuditOutcome
    reason: str | None = None

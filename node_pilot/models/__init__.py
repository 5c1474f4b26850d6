"""Data models for contexts, topology, health, workloads and operations."""

from node_pilot.models.context import ClusterContext, ContextCredentials, Endpoint, NodeHint
from node_pilot.models.health import (
    ClusterHealthSnapshot,
    ConsensusHealth,
    EtcdPeerView,
    EtcdReport,
    HealthState,
)
from node_pilot.models.operation import (
    AuditOutcome,
    AuditRecord,
    FailurePolicy,
    NodeOutcome,
    NodeProgress,
    OperationKind,
    OperationPlan,
    PlanReport,
    PlanState,
    ProgressEvent,
    StepState,
    Strictness,
)
from node_pilot.models.topology import (
    IdentityConflict,
    Member,
    NodeIdentity,
    Role,
    TopologySnapshot,
    TopologyStatus,
)
from node_pilot.models.workload import (
    DisruptionBudget,
    LabelRequirement,
    DrainResult,
    PodInfo,
    PreCheckReason,
    PreCheckResult,
    Verdict,
)

__all__ = [
    "AuditOutcome",
    "AuditRecord",
    "ClusterContext",
    "ClusterHealthSnapshot",
    "ConsensusHealth",
    "ContextCredentials",
    "DisruptionBudget",
    "DrainResult",
    "Endpoint",
    "EtcdPeerView",
    "EtcdReport",
    "FailurePolicy",
    "HealthState",
    "IdentityConflict",
    "Member",
    "NodeHint",
    "NodeIdentity",
    "NodeOutcome",
    "NodeProgress",
    "OperationKind",
    "OperationPlan",
    "PlanReport",
    "PlanState",
    "PodInfo",
    "PreCheckReason",
    "PreCheckResult",
    "ProgressEvent",
    "Role",
    "StepState",
    "Strictness",
    "TopologySnapshot",
    "TopologyStatus",
    "Verdict",
]

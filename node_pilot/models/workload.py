"""Read-only views of workloads and disruption budgets."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PodInfo(BaseModel):
    """Kubernetes pod as seen by the pre-checks and the drain."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    node: str | None = None
    phase: str = "Unknown"
    labels: dict[str, str] = Field(default_factory=dict)
    waiting_reason: str | None = None
    restarts: int = 0
    owner_kind: str | None = None
    mirror: bool = False
    uses_empty_dir: bool = False
    unschedulable: bool = False

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_daemonset(self) -> bool:
        return self.owner_kind == "DaemonSet"

    @property
    def is_managed(self) -> bool:
        return self.owner_kind in ("ReplicaSet", "Deployment", "StatefulSet", "Job", "DaemonSet")


class LabelRequirement(BaseModel):
    """One ``matchExpressions`` entry of a label selector."""

    model_config = ConfigDict(frozen=True)

    key: str
    operator: str  # In, NotIn, Exists, DoesNotExist
    values: tuple[str, ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        if self.operator == "NotIn":
            return labels.get(self.key) not in self.values
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        # unknown operators match
        return True


class DisruptionBudget(BaseModel):
    """PodDisruptionBudget status relevant to eviction.

    ``has_selector`` is False for a budget without a selector, which selects
    no pods. An empty selector selects every pod in the namespace.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    has_selector: bool = True
    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: tuple[LabelRequirement, ...] = ()
    min_available: str | None = None
    max_unavailable: str | None = None
    current_healthy: int = 0
    desired_healthy: int = 0
    expected_pods: int = 0
    disruptions_allowed: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def covers(self, pod: PodInfo) -> bool:
        """True if the budget's selector matches the pod."""
        if pod.namespace != self.namespace or not self.has_selector:
            return False
        if any(pod.labels.get(k) != v for k, v in self.match_labels.items()):
            return False
        return all(r.matches(pod.labels) for r in self.match_expressions)


class Verdict(str, Enum):
    SAFE = "safe"
    WARN = "warn"
    BLOCKED = "blocked"


class PreCheckReason(BaseModel):
    """One reason a node is blocked or warned about."""

    model_config = ConfigDict(frozen=True)

    kind: str  # crash_loop, image_pull, unschedulable, budget, unmanaged, local_data, api_error
    subject: str
    message: str
    blocking: bool = True


class PreCheckResult(BaseModel):
    """Safety verdict for disrupting one node."""

    model_config = ConfigDict(frozen=True)

    node: str
    verdict: Verdict
    reasons: tuple[PreCheckReason, ...] = ()

    @property
    def blocked(self) -> bool:
        return self.verdict == Verdict.BLOCKED

    @property
    def blocking_reasons(self) -> list[PreCheckReason]:
        return [r for r in self.reasons if r.blocking]

    def summary(self) -> str:
        if not self.reasons:
            return "no workload concerns"
        return "; ".join(r.message for r in self.reasons)


class DrainResult(BaseModel):
    """Outcome of evicting every pod from a node."""

    node: str
    evicted: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    force_deleted: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

"""One view over several independently managed cluster contexts."""

import asyncio
from collections.abc import Callable

from node_pilot.api import NodeApi, WorkloadApi
from node_pilot.audit import AuditLogger
from node_pilot.config import OperationSettings
from node_pilot.exceptions import ConfigurationError, NodePilotError, PlanConflictError
from node_pilot.health import HealthAggregator
from node_pilot.logging_config import get_logger
from node_pilot.models.context import ClusterContext
from node_pilot.models.health import ClusterHealthSnapshot, HealthState
from node_pilot.models.operation import (
    FailurePolicy,
    OperationKind,
    OperationPlan,
    PlanReport,
    Strictness,
)
from node_pilot.models.topology import Member, TopologySnapshot, TopologyStatus
from node_pilot.orchestrator import OverrideCallback, RollingOrchestrator
from node_pilot.precheck import PreCheckEngine
from node_pilot.topology import TopologyCache, TopologyResolver

logger = get_logger(__name__)

NodeApiFactory = Callable[[ClusterContext, OperationSettings], NodeApi]
WorkloadApiFactory = Callable[[ClusterContext], WorkloadApi]


def talosctl_node_api(context: ClusterContext, settings: OperationSettings) -> NodeApi:
    from node_pilot.talosctl import TalosctlNodeApi

    return TalosctlNodeApi(context, timeout=settings.probe_timeout)


def kubernetes_workload_api(context: ClusterContext) -> WorkloadApi:
    from node_pilot.kube import KubernetesWorkloadApi

    return KubernetesWorkloadApi.for_context(context)


class ContextRuntime:
    """Components serving one context.

    Topology and etcd health need only the node API. The workload API, and
    with it the pre-check engine and the orchestrator, is built on first
    use so a context with an unusable kubeconfig can still be resolved.
    """

    def __init__(
        self,
        context: ClusterContext,
        node_api: NodeApi,
        workload_api_factory: WorkloadApiFactory,
        audit: AuditLogger,
        settings: OperationSettings,
    ):
        self.context = context
        self.node_api = node_api
        self.audit = audit
        self.settings = settings
        self.topology = TopologyCache(context, TopologyResolver(node_api, settings))
        self.health = HealthAggregator(node_api, settings)
        self._workload_api_factory = workload_api_factory
        self._workload_api: WorkloadApi | None = None
        self._prechecks: PreCheckEngine | None = None
        self._orchestrator: RollingOrchestrator | None = None

    @property
    def workload_api(self) -> WorkloadApi:
        if self._workload_api is None:
            self._workload_api = self._workload_api_factory(self.context)
            logger.debug(f"Initialized workload API for context '{self.context.name}'")
        return self._workload_api

    @property
    def prechecks(self) -> PreCheckEngine:
        if self._prechecks is None:
            self._prechecks = PreCheckEngine(self.workload_api, self.settings)
        return self._prechecks

    @property
    def orchestrator(self) -> RollingOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = RollingOrchestrator(
                self.context,
                self.topology,
                self.health,
                self.prechecks,
                self.node_api,
                self.workload_api,
                self.audit,
                self.settings,
            )
        return self._orchestrator


class MultiClusterAggregator:
    """Composes per-context resolvers, health aggregators and orchestrators.

    Contexts are independent clusters: they are refreshed concurrently and
    plans on different contexts may run at the same time. Within one
    context at most one plan runs; a second one is rejected.
    """

    def __init__(
        self,
        contexts: list[ClusterContext],
        audit: AuditLogger,
        settings: OperationSettings | None = None,
        node_api_factory: NodeApiFactory = talosctl_node_api,
        workload_api_factory: WorkloadApiFactory = kubernetes_workload_api,
    ):
        """Initialize the aggregator.

        Args:
            contexts: Configured contexts; names must be unique
            audit: Audit logger shared by every context
            settings: Timeouts and limits for every context
            node_api_factory: Builds the node API of a context
            workload_api_factory: Builds the workload API of a context (lazily)
        """
        names = [c.name for c in contexts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate context names: {', '.join(duplicates)}")

        self.audit = audit
        self.settings = settings or OperationSettings()
        self._contexts = {c.name: c for c in contexts}
        self._node_api_factory = node_api_factory
        self._workload_api_factory = workload_api_factory
        self._runtimes: dict[str, ContextRuntime] = {}
        self._active: set[str] = set()

    @property
    def context_names(self) -> list[str]:
        return list(self._contexts)

    def _check_names(self, names: list[str]) -> None:
        for name in names:
            if name not in self._contexts:
                raise ConfigurationError(
                    f"Context '{name}' not found",
                    f"Available contexts: {', '.join(self._contexts) or 'none'}",
                )

    def runtime(self, name: str) -> ContextRuntime:
        """Components of the named context, built on first use."""
        self._check_names([name])
        if name not in self._runtimes:
            context = self._contexts[name]
            node_api = self._node_api_factory(context, self.settings)
            self._runtimes[name] = ContextRuntime(
                context, node_api, self._workload_api_factory, self.audit, self.settings
            )
            logger.debug(f"Initialized runtime for context '{name}'")
        return self._runtimes[name]

    def _failures(self, name: str, e: NodePilotError) -> dict[str, str]:
        logger.error(f"Context '{name}' cannot be used: {e.message}")
        return {address: e.message for address in self._contexts[name].probe_addresses()}

    async def _topology(self, name: str, refresh: bool) -> TopologySnapshot:
        try:
            runtime = self.runtime(name)
        except NodePilotError as e:
            return TopologySnapshot(
                context=name, status=TopologyStatus.UNREACHABLE, failures=self._failures(name, e)
            )
        if refresh:
            return await runtime.topology.refresh()
        return await runtime.topology.latest()

    async def refresh(self, names: list[str] | None = None) -> dict[str, TopologySnapshot]:
        """Resolve the given (default: all) contexts concurrently.

        A context whose adapters cannot be built comes back UNREACHABLE;
        the other contexts are unaffected.
        """
        names = names or self.context_names
        self._check_names(names)
        snapshots = await asyncio.gather(*(self._topology(n, refresh=True) for n in names))
        return dict(zip(names, snapshots))

    async def members(self) -> list[tuple[str, Member]]:
        """Every member of every context, sorted by context name then hostname."""
        snapshots = await asyncio.gather(*(self._topology(n, refresh=False) for n in self.context_names))
        merged = [(s.context, m) for s in snapshots for m in s.members]
        merged.sort(key=lambda item: (item[0], item[1].hostname, item[1].identity))
        return merged

    async def health(self, names: list[str] | None = None) -> dict[str, ClusterHealthSnapshot]:
        """Health snapshot of the given (default: all) contexts."""
        names = names or self.context_names
        self._check_names(names)

        async def one(name: str) -> ClusterHealthSnapshot:
            try:
                runtime = self.runtime(name)
            except NodePilotError as e:
                return ClusterHealthSnapshot(
                    context=name, state=HealthState.UNKNOWN, unreachable=self._failures(name, e)
                )
            return await runtime.health.aggregate(await runtime.topology.latest())

        snapshots = await asyncio.gather(*(one(n) for n in names))
        return dict(zip(names, snapshots))

    async def plan(
        self,
        context: str,
        targets: list[str | Member],
        kind: OperationKind,
        strictness: Strictness = Strictness.STRICT,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
    ) -> OperationPlan:
        return await self.runtime(context).orchestrator.plan(targets, kind, strictness, failure_policy)

    def confirm(self, plan: OperationPlan) -> OperationPlan:
        return self.runtime(plan.context).orchestrator.confirm(plan)

    def is_busy(self, context: str) -> bool:
        return context in self._active

    async def run(self, plan: OperationPlan, override: OverrideCallback | None = None) -> PlanReport:
        """Run a confirmed plan on the context that owns it.

        Raises:
            PlanConflictError: If that context already runs a plan
        """
        runtime = self.runtime(plan.context)
        if plan.context in self._active:
            raise PlanConflictError(
                f"Context '{plan.context}' already has a running plan",
                "Wait for it to finish or abort it before starting another",
            )
        self._active.add(plan.context)
        try:
            return await runtime.orchestrator.run(plan, override)
        finally:
            self._active.discard(plan.context)

    def abort(self, context: str) -> None:
        self.runtime(context).orchestrator.abort()

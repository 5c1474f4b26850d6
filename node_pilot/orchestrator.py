"""Rolling drain and reboot of an ordered set of nodes.

Nodes are processed strictly one after another in the order the operator
chose. Before each node the etcd quorum is re-checked and the workload
pre-checks are run; each node then goes through cordon, drain, optional
reboot and readiness wait, and uncordon. The uncordon runs on every exit
path of a node's sequence, including failures and cancellation.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from node_pilot.api import NodeApi, WorkloadApi
from node_pilot.audit import AuditLogger
from node_pilot.config import OperationSettings
from node_pilot.exceptions import (
    ClusterUnreachableError,
    NodePilotError,
    PlanConflictError,
    PlanError,
    QuorumRiskError,
    StepFailureError,
)
from node_pilot.health import HealthAggregator
from node_pilot.logging_config import get_logger
from node_pilot.models.context import ClusterContext
from node_pilot.models.health import ClusterHealthSnapshot, HealthState
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
from node_pilot.models.topology import Member, TopologyStatus
from node_pilot.models.workload import PreCheckResult
from node_pilot.precheck import PreCheckEngine
from node_pilot.topology import TopologyCache

logger = get_logger(__name__)

QUORUM_REASON = "would break quorum"
ABORT_REASON = "aborted by operator"
EVENT_BACKLOG = 1000

OverrideCallback = Callable[[Member, PreCheckResult], Awaitable[bool]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def quorum_risk(member: Member, health: ClusterHealthSnapshot) -> str | None:
    """Why disrupting ``member`` now would endanger etcd quorum, or None if it would not.

    Control-plane targets need ``quorum_safe`` (one more loss keeps a
    majority); worker targets only need the current quorum to hold.
    Unknown health always counts as a risk.
    """
    if health.state == HealthState.UNKNOWN:
        return "control-plane health is unknown"
    if member.is_control_plane and not health.quorum_safe:
        return (
            f"{health.healthy_count}/{health.member_count} etcd members healthy; "
            f"taking down {member.hostname} leaves fewer than {health.quorum_size}"
        )
    if not member.is_control_plane and not health.has_quorum:
        return (
            f"etcd has no quorum ({health.healthy_count}/{health.member_count} healthy, "
            f"{health.quorum_size} needed)"
        )
    return None


class RollingOrchestrator:
    """Plans and runs rolling operations for one cluster context.

    Progress is published on ``events``, which holds the last
    ``EVENT_BACKLOG`` events; older ones are dropped when it is not drained.
    """

    def __init__(
        self,
        context: ClusterContext,
        topology: TopologyCache,
        health: HealthAggregator,
        prechecks: PreCheckEngine,
        node_api: NodeApi,
        workload_api: WorkloadApi,
        audit: AuditLogger,
        settings: OperationSettings | None = None,
    ):
        self.context = context
        self.topology = topology
        self.health = health
        self.prechecks = prechecks
        self.node_api = node_api
        self.workload_api = workload_api
        self.audit = audit
        self.settings = settings or OperationSettings()
        self.events: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=EVENT_BACKLOG)
        self._abort = asyncio.Event()
        self._report: PlanReport | None = None

    @property
    def active(self) -> PlanReport | None:
        """Report of the plan currently running, if any."""
        return self._report

    # -- planning -----------------------------------------------------------

    async def plan(
        self,
        targets: list[str | Member],
        kind: OperationKind,
        strictness: Strictness = Strictness.STRICT,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
    ) -> OperationPlan:
        """Validate targets against the latest topology and return a planned operation.

        Args:
            targets: Hostnames, identities, addresses or members; order is execution order
            kind: Drain or reboot
            strictness: Skip pre-check-blocked nodes, or ask for an override
            failure_policy: Continue or stop after a node fails

        Raises:
            PlanError: If the target list is empty, repeats a member or names unknown members
            ClusterUnreachableError: If the context could not be resolved at all
        """
        if not targets:
            raise PlanError("A plan needs at least one target node")

        snapshot = await self.topology.latest()
        if snapshot.status == TopologyStatus.UNREACHABLE:
            raise ClusterUnreachableError(
                f"Context '{self.context.name}' is unreachable",
                "; ".join(f"{a}: {r}" for a, r in snapshot.failures.items()) or None,
            )

        members: list[Member] = []
        unknown: list[str] = []
        for target in targets:
            key = target.identity if isinstance(target, Member) else str(target)
            member = snapshot.find(key)
            if member is None:
                unknown.append(key)
            else:
                members.append(member)

        if unknown:
            raise PlanError(
                f"Unknown target nodes: {', '.join(unknown)}",
                f"Resolved members of '{self.context.name}': "
                f"{', '.join(m.hostname for m in snapshot.members) or 'none'}",
            )

        seen: set[str] = set()
        repeated = []
        for member in members:
            if member.identity in seen:
                repeated.append(member.hostname)
            seen.add(member.identity)
        if repeated:
            raise PlanError(f"Nodes selected more than once: {', '.join(repeated)}")

        plan = OperationPlan(
            context=self.context.name,
            targets=tuple(members),
            kind=kind,
            strictness=strictness,
            failure_policy=failure_policy,
        )
        logger.info(
            f"Planned rolling {kind.value} {plan.plan_id} on '{self.context.name}': "
            f"{' -> '.join(plan.hostnames())}"
        )
        return plan

    def confirm(self, plan: OperationPlan) -> OperationPlan:
        """Record the operator's explicit confirmation. Nothing runs without it."""
        if plan.context != self.context.name:
            raise PlanError(f"Plan {plan.plan_id} belongs to context '{plan.context}'")
        if plan.state != PlanState.PLANNED:
            raise PlanError(f"Plan {plan.plan_id} is already {plan.state.value}")
        confirmed = plan.model_copy(update={"state": PlanState.CONFIRMED})
        self._audit(confirmed, None, "confirm", AuditOutcome.SUCCESS, "confirmed by operator")
        return confirmed

    def abort(self) -> None:
        """Request the running plan to stop at the next step boundary."""
        if self._report is not None:
            logger.warning(f"Abort requested for plan {self._report.plan.plan_id}")
            self._abort.set()

    async def check_quorum(self, member: Member) -> ClusterHealthSnapshot:
        """Re-query etcd health and make sure disrupting ``member`` keeps quorum.

        Raises:
            QuorumRiskError: If proceeding with ``member`` would endanger quorum
        """
        health = await self.health.aggregate(await self.topology.latest())
        risk = quorum_risk(member, health)
        if risk is not None:
            raise QuorumRiskError(QUORUM_REASON, risk)
        return health

    # -- events and audit ---------------------------------------------------

    def _emit(self, plan: OperationPlan, member: Member | None, step: str, message: str) -> None:
        event = ProgressEvent(
            plan_id=plan.plan_id,
            context=plan.context,
            member=member.hostname if member else None,
            step=step,
            message=message,
        )
        if self.events.full():
            # nobody is reading; keep the most recent events
            self.events.get_nowait()
        self.events.put_nowait(event)

    def _audit(
        self,
        plan: OperationPlan,
        member: Member | None,
        step: str,
        outcome: AuditOutcome,
        reason: str | None = None,
    ) -> None:
        self.audit.record(
            AuditRecord(
                context=plan.context,
                plan_id=plan.plan_id,
                member=member.hostname if member else None,
                kind=plan.kind,
                step=step,
                outcome=outcome,
                reason=reason,
            )
        )

    # -- running ------------------------------------------------------------

    async def run(self, plan: OperationPlan, override: OverrideCallback | None = None) -> PlanReport:
        """Execute a confirmed plan node by node.

        Args:
            plan: Confirmed plan for this context
            override: Asked for a second confirmation when a node's pre-checks
                block it in force mode; without it blocked nodes are skipped

        Returns:
            Report saying which nodes completed, were skipped or failed, and why

        Raises:
            PlanError: If the plan is unconfirmed or for another context
            PlanConflictError: If a plan is already running on this context
        """
        if plan.context != self.context.name:
            raise PlanError(f"Plan {plan.plan_id} belongs to context '{plan.context}'")
        if not plan.confirmed:
            raise PlanError(
                f"Plan {plan.plan_id} has not been confirmed",
                "Call confirm() with the operator's explicit approval first",
            )
        if self._report is not None:
            raise PlanConflictError(
                f"Context '{self.context.name}' already runs plan {self._report.plan.plan_id}"
            )

        report = PlanReport(
            plan=plan, nodes=[NodeProgress(member=m, position=i) for i, m in enumerate(plan.targets)]
        )
        self._report = report
        self._abort.clear()
        self._audit(plan, None, "plan", AuditOutcome.STARTED, f"{len(plan.targets)} nodes")
        self._emit(plan, None, "plan", f"Starting rolling {plan.kind.value} of {len(plan.targets)} nodes")

        try:
            await self._run_nodes(report, override)
        finally:
            self._finish(report)
            self._report = None
        return report

    async def _run_nodes(self, report: PlanReport, override: OverrideCallback | None) -> None:
        plan = report.plan
        for index, progress in enumerate(report.nodes):
            member = progress.member

            if self._abort.is_set():
                report.state = PlanState.ABORTED
                report.reason = ABORT_REASON
                self._skip_remaining(report, index, ABORT_REASON)
                return

            try:
                await self.check_quorum(member)
            except QuorumRiskError as e:
                logger.error(f"Stopping plan {plan.plan_id} before {member.hostname}: {e.details}")
                report.state = PlanState.FAILED
                report.reason = e.message
                self._skip(report, progress, f"{e.message}: {e.details}")
                self._skip_remaining(report, index + 1, f"plan stopped: {e.message}")
                return

            precheck = await self.prechecks.check(member)
            if precheck.blocked and not await self._allow_blocked(report, progress, precheck, override):
                continue

            await self._run_node(report, progress)

            if progress.outcome == NodeOutcome.FAILED and plan.failure_policy == FailurePolicy.ABORT:
                report.state = PlanState.FAILED
                report.reason = f"{member.hostname} failed: {progress.reason}"
                self._skip_remaining(report, index + 1, "plan stopped after a node failure")
                return
            if progress.outcome == NodeOutcome.ABORTED:
                report.state = PlanState.ABORTED
                report.reason = ABORT_REASON
                self._skip_remaining(report, index + 1, ABORT_REASON)
                return

    async def _allow_blocked(
        self,
        report: PlanReport,
        progress: NodeProgress,
        precheck: PreCheckResult,
        override: OverrideCallback | None,
    ) -> bool:
        plan = report.plan
        member = progress.member
        summary = "; ".join(r.message for r in precheck.blocking_reasons)
        self._emit(plan, member, "precheck", f"Pre-checks block {member.hostname}: {summary}")

        if plan.strictness == Strictness.STRICT:
            self._skip(report, progress, f"pre-check blocked: {summary}")
            return False

        approved = override is not None and await override(member, precheck)
        if not approved:
            self._skip(report, progress, f"pre-check blocked, override declined: {summary}")
            return False

        self._audit(plan, member, "precheck", AuditOutcome.SUCCESS, f"override accepted: {summary}")
        self._emit(plan, member, "precheck", f"Operator overrode pre-checks for {member.hostname}")
        return True

    def _skip(self, report: PlanReport, progress: NodeProgress, reason: str) -> None:
        progress.step = StepState.SKIPPED
        progress.outcome = NodeOutcome.SKIPPED
        progress.reason = reason
        progress.finished_at = _now()
        logger.warning(f"Skipping {progress.member.hostname}: {reason}")
        self._audit(report.plan, progress.member, StepState.SKIPPED.value, AuditOutcome.SKIPPED, reason)
        self._emit(report.plan, progress.member, StepState.SKIPPED.value, f"Skipped: {reason}")

    def _skip_remaining(self, report: PlanReport, start: int, reason: str) -> None:
        for progress in report.nodes[start:]:
            if progress.outcome == NodeOutcome.PENDING:
                self._skip(report, progress, reason)

    def _finish(self, report: PlanReport) -> None:
        if report.state == PlanState.RUNNING:
            if report.failed:
                report.state = PlanState.FAILED
                report.reason = f"{len(report.failed)} node(s) failed: {', '.join(report.failed)}"
            else:
                report.state = PlanState.COMPLETED
        # anything left pending was interrupted (e.g. cancelled)
        for progress in report.nodes:
            if progress.outcome == NodeOutcome.PENDING:
                progress.outcome = NodeOutcome.SKIPPED
                progress.reason = progress.reason or "not started"
        report.finished_at = _now()

        outcome = AuditOutcome.SUCCESS if report.state == PlanState.COMPLETED else AuditOutcome.FAILURE
        summary = (
            f"{report.state.value}: completed={report.completed} skipped={report.skipped} "
            f"failed={report.failed}"
        )
        self._audit(report.plan, None, "plan", outcome, report.reason or summary)
        self._emit(report.plan, None, "plan", summary)
        logger.info(f"Plan {report.plan.plan_id} {summary}")

    # -- per-node sequence --------------------------------------------------

    async def _run_node(self, report: PlanReport, progress: NodeProgress) -> None:
        plan = report.plan
        member = progress.member
        progress.started_at = _now()
        aborted = False
        logger.info(f"Starting {plan.kind.value} of {member.hostname} ({progress.position + 1}/{len(report.nodes)})")

        try:
            async with self._cordoned(report, progress):
                if self._abort.is_set():
                    aborted = True
                else:
                    await self._step(
                        report, progress, StepState.DRAINING, self._drain(report, member),
                        self.settings.drain_timeout,
                    )
                if plan.kind == OperationKind.REBOOT and not aborted:
                    if self._abort.is_set():
                        aborted = True
                    else:
                        await self._step(
                            report, progress, StepState.REBOOTING, self.node_api.reboot(member.address),
                            self.settings.cordon_timeout,
                        )
                        # a reboot already issued is always waited for before uncordoning
                        await self._step(
                            report, progress, StepState.WAITING_READY, self._wait_ready(report, member),
                            self.settings.reboot_timeout, timeout_reason="reboot timeout",
                        )
        except StepFailureError as e:
            progress.step = StepState.STEP_FAILED
            progress.outcome = NodeOutcome.FAILED
            progress.reason = e.message
            if progress.cleanup_error:
                progress.reason += f" (cleanup: {progress.cleanup_error})"
            logger.error(f"{member.hostname} failed during {e.step}: {e.message}")
        else:
            if progress.cleanup_error:
                progress.step = StepState.STEP_FAILED
                progress.outcome = NodeOutcome.FAILED
                progress.reason = progress.cleanup_error
            elif aborted:
                progress.step = StepState.DONE
                progress.outcome = NodeOutcome.ABORTED
                progress.reason = ABORT_REASON
            else:
                progress.step = StepState.DONE
                progress.outcome = NodeOutcome.DONE

        progress.finished_at = _now()
        outcome = AuditOutcome.SUCCESS if progress.outcome == NodeOutcome.DONE else AuditOutcome.FAILURE
        self._audit(plan, member, "node", outcome, progress.reason)
        self._emit(plan, member, progress.step.value, f"{member.hostname}: {progress.outcome.value}")

    @asynccontextmanager
    async def _cordoned(self, report: PlanReport, progress: NodeProgress):
        """Cordon for the duration of the block; uncordon on every way out."""
        try:
            await self._step(
                report, progress, StepState.CORDONING,
                self.workload_api.cordon(progress.member.hostname), self.settings.cordon_timeout,
            )
            yield
        finally:
            await self._uncordon(report, progress)

    async def _uncordon(self, report: PlanReport, progress: NodeProgress) -> None:
        member = progress.member
        progress.step = StepState.UNCORDONING
        self._emit(report.plan, member, StepState.UNCORDONING.value, f"Uncordoning {member.hostname}")
        self._audit(report.plan, member, StepState.UNCORDONING.value, AuditOutcome.STARTED)
        try:
            await asyncio.wait_for(
                self.workload_api.uncordon(member.hostname), timeout=self.settings.cordon_timeout
            )
        except asyncio.TimeoutError:
            progress.cleanup_error = "uncordon timeout"
        except Exception as e:
            progress.cleanup_error = f"uncordon failed: {e}"
        if progress.cleanup_error:
            logger.error(f"{member.hostname} may still be cordoned: {progress.cleanup_error}")
            self._audit(
                report.plan, member, StepState.UNCORDONING.value, AuditOutcome.FAILURE,
                progress.cleanup_error,
            )
        else:
            self._audit(report.plan, member, StepState.UNCORDONING.value, AuditOutcome.SUCCESS)

    async def _step(
        self,
        report: PlanReport,
        progress: NodeProgress,
        state: StepState,
        action: Awaitable,
        timeout: float,
        timeout_reason: str | None = None,
    ):
        plan = report.plan
        member = progress.member
        progress.step = state
        self._emit(plan, member, state.value, f"{state.value.replace('_', ' ').capitalize()} {member.hostname}")
        self._audit(plan, member, state.value, AuditOutcome.STARTED)

        try:
            result = await asyncio.wait_for(action, timeout=timeout)
        except asyncio.TimeoutError:
            reason = timeout_reason or f"{state.value} timeout"
            self._audit(plan, member, state.value, AuditOutcome.FAILURE, reason)
            raise StepFailureError(state.value, reason)
        except StepFailureError as e:
            self._audit(plan, member, state.value, AuditOutcome.FAILURE, e.message)
            raise
        except NodePilotError as e:
            reason = f"{state.value} failed: {e.message}"
            self._audit(plan, member, state.value, AuditOutcome.FAILURE, reason)
            raise StepFailureError(state.value, reason, e.details)
        except Exception as e:
            reason = f"{state.value} failed: {e}"
            logger.error(f"Unexpected error while {state.value} {member.hostname}: {e}", exc_info=True)
            self._audit(plan, member, state.value, AuditOutcome.FAILURE, reason)
            raise StepFailureError(state.value, reason)

        self._audit(plan, member, state.value, AuditOutcome.SUCCESS)
        return result

    async def _drain(self, report: PlanReport, member: Member) -> None:
        result = await self.workload_api.drain(member.hostname, self.settings.drain)
        self._emit(
            report.plan, member, StepState.DRAINING.value,
            f"Evicted {len(result.evicted)} pod(s) from {member.hostname}"
            + (f", force deleted {len(result.force_deleted)}" if result.force_deleted else ""),
        )
        if not result.success:
            raise StepFailureError(
                StepState.DRAINING.value, f"drain failed: could not evict {', '.join(result.failed)}"
            )

    async def _wait_ready(self, report: PlanReport, member: Member) -> None:
        """Wait for the node to go down (bounded), then to report Ready again."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.disconnect_timeout
        went_down = False
        while loop.time() < deadline:
            if await self.workload_api.node_ready(member.hostname) is not True:
                went_down = True
                break
            await asyncio.sleep(self.settings.poll_interval)

        if not went_down:
            logger.warning(f"{member.hostname} never appeared to go down, still waiting for Ready")
            self._emit(
                report.plan, member, StepState.WAITING_READY.value,
                f"{member.hostname} did not appear to disconnect, continuing to wait",
            )

        started = loop.time()
        while await self.workload_api.node_ready(member.hostname) is not True:
            await asyncio.sleep(self.settings.poll_interval)
        self._emit(
            report.plan, member, StepState.WAITING_READY.value,
            f"{member.hostname} is Ready again after {loop.time() - started:.0f}s",
        )

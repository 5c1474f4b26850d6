"""Workload pre-checks run before disrupting a node."""

import asyncio

from node_pilot.api import WorkloadApi
from node_pilot.config import OperationSettings
from node_pilot.logging_config import get_logger
from node_pilot.models.topology import Member
from node_pilot.models.workload import (
    DisruptionBudget,
    PodInfo,
    PreCheckReason,
    PreCheckResult,
    Verdict,
)

logger = get_logger(__name__)

CRASH_LOOP_REASONS = {"CrashLoopBackOff"}
IMAGE_PULL_REASONS = {"ImagePullBackOff", "ErrImagePull"}


def pod_reasons(pods: list[PodInfo]) -> list[PreCheckReason]:
    """Blocking and warning reasons that come from the pods themselves."""
    reasons = []
    for pod in pods:
        if pod.waiting_reason in CRASH_LOOP_REASONS:
            reasons.append(
                PreCheckReason(
                    kind="crash_loop",
                    subject=pod.key,
                    message=f"pod {pod.key} is crash-looping ({pod.restarts} restarts)",
                )
            )
        elif pod.waiting_reason in IMAGE_PULL_REASONS:
            reasons.append(
                PreCheckReason(
                    kind="image_pull",
                    subject=pod.key,
                    message=f"pod {pod.key} cannot pull its image ({pod.waiting_reason})",
                )
            )
        elif pod.unschedulable:
            reasons.append(
                PreCheckReason(
                    kind="unschedulable",
                    subject=pod.key,
                    message=f"pod {pod.key} is pending and cannot be scheduled",
                )
            )

        if pod.mirror or pod.is_daemonset:
            continue
        if not pod.is_managed:
            reasons.append(
                PreCheckReason(
                    kind="unmanaged",
                    subject=pod.key,
                    message=f"pod {pod.key} has no controller and will not be recreated",
                    blocking=False,
                )
            )
        if pod.uses_empty_dir:
            reasons.append(
                PreCheckReason(
                    kind="local_data",
                    subject=pod.key,
                    message=f"pod {pod.key} uses emptyDir data that is lost on eviction",
                    blocking=False,
                )
            )
    return reasons


def budget_reasons(pods: list[PodInfo], budgets: list[DisruptionBudget]) -> list[PreCheckReason]:
    """Every budget that evicting all of ``pods`` would violate."""
    evictable = [p for p in pods if not p.mirror and not p.is_daemonset]
    reasons = []
    for budget in budgets:
        covered = [p for p in evictable if budget.covers(p)]
        if not covered:
            continue
        if len(covered) > budget.disruptions_allowed:
            limit = (
                f"maxUnavailable {budget.max_unavailable}"
                if budget.max_unavailable is not None
                else f"minAvailable {budget.min_available}"
            )
            reasons.append(
                PreCheckReason(
                    kind="budget",
                    subject=budget.key,
                    message=(
                        f"disruption budget {budget.key} ({limit}) allows "
                        f"{budget.disruptions_allowed} disruption(s) but {len(covered)} pod(s) "
                        f"on this node would be evicted: {', '.join(p.key for p in covered)}"
                    ),
                )
            )
    return reasons


def verdict_for(reasons: list[PreCheckReason]) -> Verdict:
    if any(r.blocking for r in reasons):
        return Verdict.BLOCKED
    if reasons:
        return Verdict.WARN
    return Verdict.SAFE


class PreCheckEngine:
    """Decides whether disrupting a node is currently safe for its workloads.

    The verdict is advisory; the orchestrator decides whether to honour it.
    """

    def __init__(self, workload_api: WorkloadApi, settings: OperationSettings | None = None):
        self.workload_api = workload_api
        self.settings = settings or OperationSettings()

    async def check(self, member: Member) -> PreCheckResult:
        """Return the safety verdict for ``member`` listing every blocking reason."""
        logger.debug(f"Running workload pre-checks for {member.hostname}")
        try:
            pods, budgets = await asyncio.wait_for(
                asyncio.gather(
                    self.workload_api.list_pods(member.hostname),
                    self.workload_api.list_disruption_budgets(),
                ),
                timeout=self.settings.precheck_timeout,
            )
        except asyncio.TimeoutError:
            return self._unverifiable(member, f"timed out after {self.settings.precheck_timeout}s")
        except Exception as e:
            return self._unverifiable(member, str(e))

        reasons = pod_reasons(pods) + budget_reasons(pods, budgets)
        result = PreCheckResult(node=member.hostname, verdict=verdict_for(reasons), reasons=tuple(reasons))

        if result.blocked:
            logger.warning(f"Pre-checks block {member.hostname}: {result.summary()}")
        else:
            logger.info(f"Pre-checks for {member.hostname}: {result.verdict.value}")
        return result

    def _unverifiable(self, member: Member, error: str) -> PreCheckResult:
        logger.error(f"Could not run pre-checks for {member.hostname}: {error}")
        return PreCheckResult(
            node=member.hostname,
            verdict=Verdict.BLOCKED,
            reasons=(
                PreCheckReason(
                    kind="api_error",
                    subject=member.hostname,
                    message=f"workload state could not be read: {error}",
                ),
            ),
        )

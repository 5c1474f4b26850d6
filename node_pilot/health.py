"""etcd health aggregation across control-plane members."""

import asyncio

from node_pilot.api import NodeApi
from node_pilot.config import OperationSettings
from node_pilot.logging_config import get_logger
from node_pilot.models.health import ClusterHealthSnapshot, ConsensusHealth, EtcdReport, HealthState
from node_pilot.models.topology import Member, TopologySnapshot

logger = get_logger(__name__)


class HealthAggregator:
    """Queries every control-plane member and merges their etcd views."""

    def __init__(self, node_api: NodeApi, settings: OperationSettings | None = None):
        self.node_api = node_api
        self.settings = settings or OperationSettings()

    async def _query(self, semaphore: asyncio.Semaphore, member: Member) -> EtcdReport | str:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self.node_api.etcd_status(member.address), timeout=self.settings.health_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"etcd status of {member.hostname} timed out")
                return f"timed out after {self.settings.health_timeout}s"
            except Exception as e:
                logger.warning(f"etcd status of {member.hostname} failed: {e}")
                return str(e) or type(e).__name__

    async def aggregate(self, topology: TopologySnapshot) -> ClusterHealthSnapshot:
        """Build a cluster-wide health snapshot. Read-only; never raises for remote failures."""
        control_plane = topology.control_plane
        semaphore = asyncio.Semaphore(self.settings.probe_concurrency)
        results = await asyncio.gather(*(self._query(semaphore, m) for m in control_plane))
        snapshot = merge_reports(
            topology.context, {m.hostname: r for m, r in zip(control_plane, results)}
        )
        logger.info(f"Context '{topology.context}': {snapshot.summary()}")
        return snapshot


def merge_reports(context: str, results: dict[str, EtcdReport | str]) -> ClusterHealthSnapshot:
    """Merge per-member etcd reports into one snapshot.

    A member is healthy only if its own report is clean and at least one
    other reporter lists it as a voting member, and no reporter denies it.
    With a single etcd member there is no peer, so its own report decides.

    Args:
        context: Context name
        results: Control-plane hostname -> report, or failure reason
    """
    reports = [r for r in results.values() if isinstance(r, EtcdReport)]
    unreachable = {h: r for h, r in results.items() if isinstance(r, str)}

    if not reports:
        logger.error(f"No control-plane member of '{context}' reported etcd status")
        return ClusterHealthSnapshot(
            context=context,
            state=HealthState.UNKNOWN,
            member_count=len(results),
            unreachable=unreachable,
        )

    # Every member any reporter knows about, so a down member still counts
    universe: dict[str, str] = {}
    for report in reports:
        universe.setdefault(report.member_id, report.hostname)
        for peer in report.peers:
            universe.setdefault(peer.member_id, peer.hostname)

    by_id = {r.member_id: r for r in reports}
    single = len(universe) == 1

    members = []
    for member_id, hostname in sorted(universe.items(), key=lambda kv: kv[1]):
        own = by_id.get(member_id)
        confirmations = 0
        denials = 0
        for report in reports:
            if report.member_id == member_id or not report.peers:
                continue
            view = next((p for p in report.peers if p.member_id == member_id), None)
            if view is not None and not view.learner:
                confirmations += 1
            else:
                denials += 1

        if own is None:
            healthy, reason = False, "no self-report"
        elif own.learner:
            healthy, reason = False, "member is a learner"
        elif own.errors:
            healthy, reason = False, f"reports errors: {'; '.join(own.errors)}"
        elif denials:
            healthy, reason = False, f"not listed as voting member by {denials} peer(s)"
        elif not single and confirmations == 0:
            healthy, reason = False, "no peer confirmation"
        else:
            healthy, reason = True, None

        members.append(
            ConsensusHealth(
                member_id=member_id,
                hostname=hostname,
                self_reported=own is not None,
                peer_confirmations=confirmations,
                peer_denials=denials,
                healthy=healthy,
                reason=reason,
            )
        )

    healthy_count = sum(1 for m in members if m.healthy)
    state = (
        HealthState.HEALTHY
        if healthy_count == len(members) and not unreachable
        else HealthState.DEGRADED
    )
    return ClusterHealthSnapshot(
        context=context,
        state=state,
        member_count=len(members),
        healthy_count=healthy_count,
        members=tuple(members),
        unreachable=unreachable,
    )

"""Property-based tests for etcd health aggregation and quorum arithmetic."""

import asyncio
import math

from hypothesis import given
from hypothesis import strategies as st

from fakes import FAST_SETTINGS, FakeCluster
from node_pilot.health import HealthAggregator, merge_reports
from node_pilot.models.health import ClusterHealthSnapshot, EtcdPeerView, EtcdReport, HealthState
from node_pilot.topology import TopologyResolver


def reports_for(total: int, down: int) -> dict[str, EtcdReport | str]:
    """``total`` members that all list each other; the last ``down`` do not answer."""
    hostnames = [f"cp{i}" for i in range(1, total + 1)]
    peers = tuple(EtcdPeerView(member_id=f"id-{h}", hostname=h) for h in hostnames)
    results: dict[str, EtcdReport | str] = {}
    for i, hostname in enumerate(hostnames):
        if i >= total - down:
            results[hostname] = "connection refused"
        else:
            results[hostname] = EtcdReport(member_id=f"id-{hostname}", hostname=hostname, peers=peers)
    return results


@given(
    total=st.integers(min_value=1, max_value=9),
    healthy=st.integers(min_value=0, max_value=9),
)
def test_quorum_safe_matches_majority_arithmetic(total, healthy):
    """quorum_safe is false whenever healthy - 1 < ceil(total / 2)."""
    healthy = min(healthy, total)
    snapshot = ClusterHealthSnapshot(
        context="prod",
        state=HealthState.HEALTHY if healthy == total else HealthState.DEGRADED,
        member_count=total,
        healthy_count=healthy,
    )

    assert snapshot.quorum_safe == (healthy - 1 >= math.ceil(total / 2))
    assert snapshot.has_quorum == (healthy > total / 2)
    if snapshot.quorum_safe:
        assert snapshot.has_quorum


@given(total=st.integers(min_value=2, max_value=7), data=st.data())
def test_unreachable_members_still_count_toward_total(total, data):
    """A member that does not answer is still part of the cluster size."""
    down = data.draw(st.integers(min_value=0, max_value=total - 2))

    snapshot = merge_reports("prod", reports_for(total, down))

    assert snapshot.member_count == total
    assert snapshot.healthy_count == total - down
    assert snapshot.state == (HealthState.HEALTHY if down == 0 else HealthState.DEGRADED)
    for member in snapshot.members[total - down:]:
        assert not member.healthy


def test_no_reports_is_unknown_and_never_safe():
    snapshot = merge_reports("prod", {"cp1": "timed out", "cp2": "timed out"})

    assert snapshot.state == HealthState.UNKNOWN
    assert snapshot.member_count == 2
    assert not snapshot.has_quorum
    assert not snapshot.quorum_safe


def test_single_member_is_decided_by_its_own_report():
    peers = (EtcdPeerView(member_id="id-cp1", hostname="cp1"),)
    results = {"cp1": EtcdReport(member_id="id-cp1", hostname="cp1", peers=peers)}

    snapshot = merge_reports("prod", results)

    assert snapshot.state == HealthState.HEALTHY
    assert snapshot.healthy_count == 1
    assert snapshot.has_quorum
    assert not snapshot.quorum_safe


def test_self_report_alone_is_not_enough():
    """A member that reports healthy but is denied by its peers is unhealthy."""
    peers_without_cp3 = (
        EtcdPeerView(member_id="id-cp1", hostname="cp1"),
        EtcdPeerView(member_id="id-cp2", hostname="cp2"),
    )
    results = {
        "cp1": EtcdReport(member_id="id-cp1", hostname="cp1", peers=peers_without_cp3),
        "cp2": EtcdReport(member_id="id-cp2", hostname="cp2", peers=peers_without_cp3),
        "cp3": EtcdReport(member_id="id-cp3", hostname="cp3"),
    }

    snapshot = merge_reports("prod", results)

    cp3 = snapshot.member("cp3")
    assert not cp3.healthy
    assert cp3.peer_denials == 2
    assert snapshot.healthy_count == 2


def test_learner_and_errors_are_unhealthy():
    peers = (
        EtcdPeerView(member_id="id-cp1", hostname="cp1"),
        EtcdPeerView(member_id="id-cp2", hostname="cp2"),
        EtcdPeerView(member_id="id-cp3", hostname="cp3", learner=True),
    )
    results = {
        "cp1": EtcdReport(member_id="id-cp1", hostname="cp1", peers=peers),
        "cp2": EtcdReport(member_id="id-cp2", hostname="cp2", peers=peers, errors=("alarm: NOSPACE",)),
        "cp3": EtcdReport(member_id="id-cp3", hostname="cp3", learner=True, peers=peers),
    }

    snapshot = merge_reports("prod", results)

    assert snapshot.member("cp1").healthy
    assert "NOSPACE" in snapshot.member("cp2").reason
    assert snapshot.member("cp3").reason == "member is a learner"
    assert snapshot.state == HealthState.DEGRADED


def test_aggregator_with_one_control_plane_down():
    """Three control planes with one unreachable: no quorum margin left."""
    cluster = FakeCluster()
    topology = asyncio.run(TopologyResolver(cluster.node_api, FAST_SETTINGS).resolve(cluster.context))
    cluster.take_down("cp3")

    snapshot = asyncio.run(HealthAggregator(cluster.node_api, FAST_SETTINGS).aggregate(topology))

    assert snapshot.member_count == 3
    assert snapshot.healthy_count == 2
    assert snapshot.has_quorum
    assert not snapshot.quorum_safe
    assert "cp3" in snapshot.unreachable
    assert snapshot.member("cp3").reason == "no self-report"


def test_aggregator_only_queries_control_plane():
    cluster = FakeCluster(workers=("w1", "w2"))
    topology = asyncio.run(TopologyResolver(cluster.node_api, FAST_SETTINGS).resolve(cluster.context))

    snapshot = asyncio.run(HealthAggregator(cluster.node_api, FAST_SETTINGS).aggregate(topology))

    assert snapshot.state == HealthState.HEALTHY
    assert [m.hostname for m in snapshot.members] == ["cp1", "cp2", "cp3"]
    assert snapshot.unreachable == {}

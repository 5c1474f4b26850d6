"""Tests for the multi-cluster view and plan routing."""

import asyncio

import pytest

from fakes import FAST_SETTINGS, FakeCluster, aggregator_for
from node_pilot.audit import AuditLogger
from node_pilot.exceptions import ConfigurationError, KubernetesError, PlanConflictError, TalosError
from node_pilot.models.health import HealthState
from node_pilot.models.operation import OperationKind, PlanState
from node_pilot.models.topology import TopologyStatus
from node_pilot.multicluster import MultiClusterAggregator


def test_members_are_merged_and_stably_sorted():
    prod = FakeCluster("prod", workers=("w2", "w1"))
    lab = FakeCluster("lab", control_planes=("lab-cp",), workers=(), vip="10.0.0.100")
    aggregator = aggregator_for(prod, lab)

    async def go():
        snapshots = await aggregator.refresh()
        return snapshots, await aggregator.members()

    snapshots, members = asyncio.run(go())

    assert set(snapshots) == {"prod", "lab"}
    assert [(ctx, m.hostname) for ctx, m in members] == [
        ("lab", "lab-cp"),
        ("prod", "cp1"),
        ("prod", "cp2"),
        ("prod", "cp3"),
        ("prod", "w1"),
        ("prod", "w2"),
    ]


def test_one_unreachable_context_does_not_hide_others():
    prod = FakeCluster("prod")
    lab = FakeCluster("lab", control_planes=("lab-cp",), workers=())
    lab.take_down("lab-cp")
    aggregator = aggregator_for(prod, lab)

    snapshots = asyncio.run(aggregator.refresh())

    assert snapshots["lab"].status == TopologyStatus.UNREACHABLE
    assert snapshots["prod"].status == TopologyStatus.OK


def test_health_per_context():
    prod = FakeCluster("prod")
    lab = FakeCluster("lab", control_planes=("lab-cp",), workers=())
    lab.take_down("lab-cp")
    aggregator = aggregator_for(prod, lab)

    health = asyncio.run(aggregator.health())

    assert health["prod"].state == HealthState.HEALTHY
    assert health["lab"].state == HealthState.UNKNOWN


def test_plans_route_to_owning_context():
    prod = FakeCluster("prod")
    lab = FakeCluster("lab")
    aggregator = aggregator_for(prod, lab)

    async def go():
        plan = await aggregator.plan("lab", ["w1"], OperationKind.DRAIN)
        return await aggregator.run(aggregator.confirm(plan))

    report = asyncio.run(go())

    assert report.state == PlanState.COMPLETED
    assert lab.workload_api.ops("w1") == ["cordon", "drain", "uncordon"]
    assert prod.workload_api.calls == []


def test_second_plan_on_same_context_is_rejected():
    prod = FakeCluster("prod")
    prod.workload_api.drain_delay = 0.05
    aggregator = aggregator_for(prod)

    async def go():
        first = aggregator.confirm(await aggregator.plan("prod", ["w1"], OperationKind.DRAIN))
        second = aggregator.confirm(await aggregator.plan("prod", ["w2"], OperationKind.DRAIN))
        task = asyncio.create_task(aggregator.run(first))
        await asyncio.sleep(0)
        assert aggregator.is_busy("prod")
        with pytest.raises(PlanConflictError):
            await aggregator.run(second)
        return await task

    report = asyncio.run(go())

    assert report.completed == ["w1"]
    assert not aggregator.is_busy("prod")
    assert prod.workload_api.ops("w2") == []


def test_plans_on_different_contexts_run_concurrently():
    prod = FakeCluster("prod")
    lab = FakeCluster("lab")
    prod.workload_api.drain_delay = 0.05
    lab.workload_api.drain_delay = 0.05
    aggregator = aggregator_for(prod, lab)

    async def go():
        plans = [
            aggregator.confirm(await aggregator.plan(name, ["w1"], OperationKind.DRAIN))
            for name in ("prod", "lab")
        ]
        return await asyncio.gather(*(aggregator.run(p) for p in plans))

    reports = asyncio.run(go())

    assert [r.state for r in reports] == [PlanState.COMPLETED, PlanState.COMPLETED]


def test_unknown_and_duplicate_contexts():
    prod = FakeCluster("prod")
    aggregator = aggregator_for(prod)

    with pytest.raises(ConfigurationError, match="not found"):
        aggregator.runtime("staging")
    with pytest.raises(ConfigurationError, match="Duplicate"):
        MultiClusterAggregator([prod.context, prod.context], AuditLogger())


def test_shared_audit_log_records_every_context(tmp_path):
    prod = FakeCluster("prod")
    lab = FakeCluster("lab")
    audit = AuditLogger(tmp_path / "audit.log")
    aggregator = aggregator_for(prod, lab, audit=audit)

    async def go():
        for name in ("prod", "lab"):
            plan = aggregator.confirm(await aggregator.plan(name, ["w2"], OperationKind.DRAIN))
            await aggregator.run(plan)

    asyncio.run(go())

    contexts = {r.context for r in audit.read()}
    assert contexts == {"prod", "lab"}


def broken_kubeconfig_aggregator(good: FakeCluster, bad: FakeCluster) -> MultiClusterAggregator:
    def workload_api(ctx):
        if ctx.name == bad.context.name:
            raise KubernetesError(f"Failed to load kubeconfig for context '{ctx.name}'")
        return good.workload_api

    return MultiClusterAggregator(
        [good.context, bad.context],
        AuditLogger(),
        FAST_SETTINGS,
        node_api_factory=lambda ctx, settings: {"a": good, "b": bad}[ctx.name].node_api,
        workload_api_factory=workload_api,
    )


def test_unusable_kubeconfig_does_not_hide_topology_or_health():
    good = FakeCluster("a")
    bad = FakeCluster("b")
    aggregator = broken_kubeconfig_aggregator(good, bad)

    async def go():
        return await aggregator.refresh(), await aggregator.health(), await aggregator.members()

    snapshots, health, members = asyncio.run(go())

    assert snapshots["a"].status == TopologyStatus.OK
    assert snapshots["b"].status == TopologyStatus.OK
    assert health["a"].state == HealthState.HEALTHY
    assert health["b"].state == HealthState.HEALTHY
    assert {ctx for ctx, _ in members} == {"a", "b"}


def test_unusable_kubeconfig_fails_only_that_contexts_plans():
    good = FakeCluster("a")
    bad = FakeCluster("b")
    aggregator = broken_kubeconfig_aggregator(good, bad)

    async def go():
        with pytest.raises(KubernetesError, match="kubeconfig"):
            await aggregator.plan("b", ["w1"], OperationKind.DRAIN)
        plan = aggregator.confirm(await aggregator.plan("a", ["w1"], OperationKind.DRAIN))
        return await aggregator.run(plan)

    report = asyncio.run(go())

    assert report.state == PlanState.COMPLETED
    assert good.workload_api.ops("w1") == ["cordon", "drain", "uncordon"]


def test_context_whose_node_api_cannot_be_built_is_unreachable():
    good = FakeCluster("a")

    def node_api(ctx, settings):
        if ctx.name == "b":
            raise TalosError("talosctl not found", "Install talosctl")
        return good.node_api

    bad_context = FakeCluster("b").context
    aggregator = MultiClusterAggregator(
        [good.context, bad_context],
        AuditLogger(),
        FAST_SETTINGS,
        node_api_factory=node_api,
        workload_api_factory=lambda ctx: good.workload_api,
    )

    async def go():
        return await aggregator.refresh(), await aggregator.health()

    snapshots, health = asyncio.run(go())

    assert snapshots["a"].status == TopologyStatus.OK
    assert snapshots["b"].status == TopologyStatus.UNREACHABLE
    assert set(snapshots["b"].failures.values()) == {"talosctl not found"}
    assert health["a"].state == HealthState.HEALTHY
    assert health["b"].state == HealthState.UNKNOWN


def test_refresh_of_unknown_context_is_rejected():
    aggregator = aggregator_for(FakeCluster("prod"))

    with pytest.raises(ConfigurationError, match="not found"):
        asyncio.run(aggregator.refresh(["prod", "staging"]))

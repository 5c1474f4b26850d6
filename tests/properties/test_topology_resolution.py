"""Property-based tests for topology resolution.

Members are built from the identities the probes return, never from the
configured address strings.
"""

import asyncio

from hypothesis import given
from hypothesis import strategies as st

from fakes import FAST_SETTINGS, FakeCluster, FakeNodeApi, context, identity
from node_pilot.models.topology import Role, TopologyStatus
from node_pilot.topology import TopologyCache, TopologyResolver, merge_probe_results


@st.composite
def valid_hostname(draw):
    """Generate valid RFC 1123 hostnames."""
    length = draw(st.integers(min_value=1, max_value=10))
    start = draw(st.sampled_from("abcdefghijklmnopqrstuvwxyz"))
    if length == 1:
        return start
    middle = "".join(
        draw(
            st.lists(
                st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-"),
                min_size=length - 2,
                max_size=length - 2,
            )
        )
    )
    end = draw(st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"))
    return start + middle + end


@st.composite
def multi_homed_nodes(draw):
    """Nodes each answering on one to three addresses, in shuffled probe order."""
    hostnames = draw(st.lists(valid_hostname(), min_size=1, max_size=6, unique=True))
    results = {}
    for i, hostname in enumerate(hostnames):
        count = draw(st.integers(min_value=1, max_value=3))
        addresses = tuple(f"10.{i}.0.{j + 1}" for j in range(count))
        role = draw(st.sampled_from([Role.CONTROL_PLANE, Role.WORKER]))
        ident = identity(hostname, role, addresses)
        for address in addresses:
            results[address] = ident
    order = draw(st.permutations(list(results)))
    return hostnames, order, results


@given(data=multi_homed_nodes())
def test_addresses_with_one_identity_are_one_member(data):
    """Any number of addresses answering with one identity yield exactly one member."""
    hostnames, order, results = data

    snapshot = merge_probe_results("prod", order, results)

    assert snapshot.status == TopologyStatus.OK
    assert sorted(m.hostname for m in snapshot.members) == sorted(hostnames)
    assert len({m.identity for m in snapshot.members}) == len(snapshot.members)
    for member in snapshot.members:
        owned = {a for a, ident in results.items() if ident.identity == member.identity}
        assert set(member.reachable_via) == owned
        assert member.address in owned


@given(data=multi_homed_nodes())
def test_resolution_is_idempotent_and_order_independent(data):
    """Merging the same answers in any order gives the same member set."""
    _, order, results = data

    first = merge_probe_results("prod", order, results)
    again = merge_probe_results("prod", list(reversed(order)), results)

    assert [m.identity for m in first.members] == [m.identity for m in again.members]
    assert [m.hostname for m in first.members] == sorted(m.hostname for m in first.members)


@given(data=multi_homed_nodes(), failing=st.integers(min_value=1, max_value=4))
def test_unreachable_addresses_are_reported_not_dropped(data, failing):
    """Failed probes are listed as failures and the rest still resolve."""
    _, order, results = data
    dead = [f"172.16.0.{i}" for i in range(1, failing + 1)]
    merged = dict(results)
    merged.update({a: "connection refused" for a in dead})

    snapshot = merge_probe_results("prod", order + dead, merged)

    assert snapshot.status == TopologyStatus.DEGRADED
    assert set(snapshot.failures) == set(dead)
    assert len(snapshot.members) == len({i.identity for i in results.values()})


def test_floating_address_contributes_no_member():
    """A shared address answering as its current holder is dropped."""
    owner = identity("cp1", Role.CONTROL_PLANE, ("10.0.0.1",), shared=("10.0.0.100",))
    results = {"10.0.0.100": owner, "10.0.0.1": owner}

    snapshot = merge_probe_results("prod", ["10.0.0.100", "10.0.0.1"], results)

    assert snapshot.status == TopologyStatus.OK
    assert [m.hostname for m in snapshot.members] == ["cp1"]
    assert snapshot.members[0].address == "10.0.0.1"
    assert snapshot.dropped_addresses == ("10.0.0.100",)


def test_floating_only_endpoint_uses_reported_address():
    """When only the shared address is configured, the node's own address is used."""
    owner = identity("cp1", Role.CONTROL_PLANE, ("10.0.0.1",), shared=("10.0.0.100",))

    snapshot = merge_probe_results("prod", ["10.0.0.100"], {"10.0.0.100": owner})

    assert len(snapshot.members) == 1
    assert snapshot.members[0].address == "10.0.0.1"


def test_all_probes_failing_is_unreachable():
    snapshot = merge_probe_results("prod", ["10.0.0.1"], {"10.0.0.1": "timed out after 10s"})

    assert snapshot.status == TopologyStatus.UNREACHABLE
    assert snapshot.members == ()
    assert snapshot.failures == {"10.0.0.1": "timed out after 10s"}


def test_conflicting_roles_are_reported_not_guessed():
    """One identity answering with two roles is a conflict, not a member."""
    as_cp = identity("node1", Role.CONTROL_PLANE, ("10.0.0.1", "10.0.1.1"))
    as_worker = identity("node1", Role.WORKER, ("10.0.0.1", "10.0.1.1"))
    other = identity("node2", Role.WORKER, ("10.0.0.2",))
    results = {"10.0.0.1": as_cp, "10.0.1.1": as_worker, "10.0.0.2": other}

    snapshot = merge_probe_results("prod", list(results), results)

    assert snapshot.status == TopologyStatus.DEGRADED
    assert [m.hostname for m in snapshot.members] == ["node2"]
    assert len(snapshot.conflicts) == 1
    assert snapshot.conflicts[0].roles == {"10.0.0.1": Role.CONTROL_PLANE, "10.0.1.1": Role.WORKER}


def test_vip_endpoint_with_node_hints_resolves_four_members():
    """Endpoints [V, A, B, C] with V floating on A and hints [A, B, C, D]."""
    cluster = FakeCluster(control_planes=("a", "b", "c"), workers=("d",), vip="10.0.0.100")
    resolver = TopologyResolver(cluster.node_api, FAST_SETTINGS)

    snapshot = asyncio.run(resolver.resolve(cluster.context))

    assert snapshot.status == TopologyStatus.OK
    assert [m.hostname for m in snapshot.members] == ["a", "b", "c", "d"]
    assert snapshot.dropped_addresses == ("10.0.0.100",)
    assert snapshot.find("a").reachable_via == ("10.0.0.100", "10.0.0.1")
    assert [m.hostname for m in snapshot.control_plane] == ["a", "b", "c"]


def test_endpoints_that_are_members_resolve_three_members():
    """Three endpoints that are also the three members."""
    cluster = FakeCluster(control_planes=("a", "b", "c"), workers=())
    resolver = TopologyResolver(cluster.node_api, FAST_SETTINGS)

    snapshot = asyncio.run(resolver.resolve(cluster.context))

    assert len(snapshot.members) == 3
    assert cluster.context.probe_addresses() == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    # each address probed once even though it is both endpoint and hint
    assert sorted(cluster.node_api.probes) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


def test_hanging_probe_times_out_without_blocking_others():
    cluster = FakeCluster(workers=("w1",))
    cluster.node_api.hang.add(cluster.addresses["w1"])
    resolver = TopologyResolver(cluster.node_api, FAST_SETTINGS.model_copy(update={"probe_timeout": 0.05}))

    snapshot = asyncio.run(resolver.resolve(cluster.context))

    assert snapshot.status == TopologyStatus.DEGRADED
    assert [m.hostname for m in snapshot.members] == ["cp1", "cp2", "cp3"]
    assert "timed out" in snapshot.failures[cluster.addresses["w1"]]


def test_unknown_address_answer_is_a_failure():
    api = FakeNodeApi()
    api.identities["10.0.0.1"] = identity("cp1", Role.CONTROL_PLANE, ("10.0.0.1",))
    ctx = context("prod", ["10.0.0.1"], ["10.0.0.9"])

    snapshot = asyncio.run(TopologyResolver(api, FAST_SETTINGS).resolve(ctx))

    assert [m.hostname for m in snapshot.members] == ["cp1"]
    assert "10.0.0.9" in snapshot.failures


def test_cache_readers_see_previous_snapshot_during_refresh():
    cluster = FakeCluster(workers=("w1",))
    slow = FAST_SETTINGS.model_copy(update={"probe_timeout": 0.1})
    cache = TopologyCache(cluster.context, TopologyResolver(cluster.node_api, slow))

    async def scenario():
        first = await cache.latest()
        cluster.node_api.hang.add(cluster.addresses["w1"])
        refresh = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0.01)
        during = cache.current
        second = await refresh
        return first, during, second

    first, during, second = asyncio.run(scenario())

    assert during is first
    assert len(first.members) == 4
    assert cache.current is second
    assert len(second.members) == 3

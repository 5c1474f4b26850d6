"""Resolution of configured addresses into the canonical member set.

Every configured address (endpoints and node hints) is probed, and members
are built from the identities the probes return, never from the address
strings. The same identity reached through several addresses is one member;
an address that only ever answers as a shared (floating) address of some
node contributes no member of its own.
"""

import asyncio

from node_pilot.api import NodeApi
from node_pilot.config import OperationSettings
from node_pilot.logging_config import get_logger
from node_pilot.models.context import ClusterContext
from node_pilot.models.topology import (
    IdentityConflict,
    Member,
    NodeIdentity,
    TopologySnapshot,
    TopologyStatus,
)

logger = get_logger(__name__)


class TopologyResolver:
    """Probes a context's addresses and merges the answers by identity."""

    def __init__(self, node_api: NodeApi, settings: OperationSettings | None = None):
        self.node_api = node_api
        self.settings = settings or OperationSettings()

    async def _probe(self, semaphore: asyncio.Semaphore, address: str) -> NodeIdentity | str:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self.node_api.probe(address), timeout=self.settings.probe_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Probe of {address} timed out after {self.settings.probe_timeout}s")
                return f"timed out after {self.settings.probe_timeout}s"
            except Exception as e:
                logger.warning(f"Probe of {address} failed: {e}")
                return str(e) or type(e).__name__

    async def probe_all(self, addresses: list[str]) -> dict[str, NodeIdentity | str]:
        """Probe every address; failures come back as reason strings.

        Returns only after every probe has answered, failed or timed out.
        """
        semaphore = asyncio.Semaphore(self.settings.probe_concurrency)
        results = await asyncio.gather(*(self._probe(semaphore, a) for a in addresses))
        return dict(zip(addresses, results))

    async def resolve(self, context: ClusterContext) -> TopologySnapshot:
        """Resolve a context's configured addresses into a topology snapshot."""
        addresses = context.probe_addresses()
        logger.debug(f"Resolving context '{context.name}': probing {len(addresses)} addresses")

        results = await self.probe_all(addresses)
        snapshot = merge_probe_results(context.name, addresses, results)

        logger.info(
            f"Context '{context.name}' resolved to {len(snapshot.members)} members "
            f"({snapshot.status.value})"
        )
        return snapshot


def _choose_address(answers: list[tuple[str, NodeIdentity]]) -> str | None:
    # a configured address the node owns beats anything the node reports
    for address, ident in answers:
        if ident.owns(address):
            return address
    for _, ident in answers:
        own = [a for a in ident.addresses if a not in ident.shared_addresses]
        if own:
            return own[0]
    # configured names that are not floating (e.g. DNS names of the node)
    for address, ident in answers:
        if address not in ident.shared_addresses:
            return address
    return None


def merge_probe_results(
    context: str, addresses: list[str], results: dict[str, NodeIdentity | str]
) -> TopologySnapshot:
    """Deduplicate probe answers by identity.

    Args:
        context: Context name
        addresses: Probed addresses in configured order
        results: Address -> identity, or failure reason

    Returns:
        Snapshot whose members are unique by identity and sorted by hostname
    """
    failures = {a: r for a, r in results.items() if isinstance(r, str)}
    answered = [(a, results[a]) for a in addresses if not isinstance(results[a], str)]

    if not answered:
        logger.error(f"No address of context '{context}' answered")
        return TopologySnapshot(context=context, status=TopologyStatus.UNREACHABLE, failures=failures)

    groups: dict[str, list[tuple[str, NodeIdentity]]] = {}
    for address, ident in answered:
        groups.setdefault(ident.identity, []).append((address, ident))

    members: list[Member] = []
    dropped: list[str] = []
    conflicts: list[IdentityConflict] = []

    for identity, answers in groups.items():
        floating = [a for a, ident in answers if a in ident.shared_addresses]
        dropped.extend(floating)

        roles = {a: ident.role for a, ident in answers}
        if len(set(roles.values())) > 1:
            logger.warning(f"Identity {identity} reported conflicting roles: {roles}")
            conflicts.append(
                IdentityConflict(identity=identity, hostname=answers[0][1].hostname, roles=roles)
            )
            continue

        address = _choose_address(answers)
        if address is None:
            logger.info(f"Identity {identity} is only reachable through floating addresses, dropping")
            continue

        # Prefer the hostname reported through a direct address
        direct = [ident for a, ident in answers if a not in ident.shared_addresses]
        reporter = direct[0] if direct else answers[0][1]
        try:
            member = Member(
                identity=identity,
                hostname=reporter.hostname,
                role=reporter.role,
                address=address,
                reachable_via=tuple(a for a, _ in answers),
            )
        except ValueError as e:
            for a, _ in answers:
                failures[a] = f"unusable identity {identity}: {e}"
            continue
        members.append(member)

        if len(answers) > 1:
            logger.debug(
                f"Identity {identity} ({member.hostname}) answered on "
                f"{', '.join(a for a, _ in answers)}; counted once"
            )

    for address in dropped:
        logger.debug(f"Address {address} is a floating address, contributes no member")

    members.sort(key=lambda m: (m.hostname, m.identity))
    status = TopologyStatus.DEGRADED if failures or conflicts or not members else TopologyStatus.OK
    return TopologySnapshot(
        context=context,
        status=status,
        members=tuple(members),
        failures=failures,
        dropped_addresses=tuple(dropped),
        conflicts=tuple(conflicts),
    )


class TopologyCache:
    """Latest completed topology snapshot of one context.

    Readers never wait for a refresh in progress; they keep seeing the
    previous snapshot until the new one is complete. Refreshes are
    serialised.
    """

    def __init__(self, context: ClusterContext, resolver: TopologyResolver):
        self.context = context
        self.resolver = resolver
        self._snapshot: TopologySnapshot | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> TopologySnapshot | None:
        return self._snapshot

    async def refresh(self) -> TopologySnapshot:
        async with self._lock:
            snapshot = await self.resolver.resolve(self.context)
            self._snapshot = snapshot
            return snapshot

    async def latest(self) -> TopologySnapshot:
        """Current snapshot, resolving once if nothing was resolved yet."""
        if self._snapshot is None:
            return await self.refresh()
        return self._snapshot

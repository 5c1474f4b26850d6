"""Interfaces the core uses to talk to a managed cluster.

``NodeApi`` is the node-level management API (Talos, through ``talosctl``)
and ``WorkloadApi`` is the Kubernetes workload API. The core only depends on
these interfaces; ``node_pilot.talosctl`` and ``node_pilot.kube`` provide
the concrete implementations.
"""

from node_pilot.config import DrainOptions
from node_pilot.models.context import ClusterContext
from node_pilot.models.health import EtcdReport
from node_pilot.models.topology import NodeIdentity
from node_pilot.models.workload import DisruptionBudget, DrainResult, PodInfo


class NodeApi:
    """Node management API of one cluster context."""

    def __init__(self, context: ClusterContext):
        self.context = context

    async def probe(self, address: str) -> NodeIdentity:
        """Ask whichever node answers on ``address`` who it is.

        Raises:
            TalosError: If the address does not answer or the answer is unusable
        """
        raise NotImplementedError("Subclasses must implement probe()")

    async def etcd_status(self, address: str) -> EtcdReport:
        """Return the etcd self-report and member view of the node at ``address``."""
        raise NotImplementedError("Subclasses must implement etcd_status()")

    async def reboot(self, address: str) -> None:
        """Issue a reboot without waiting for it to complete."""
        raise NotImplementedError("Subclasses must implement reboot()")


class WorkloadApi:
    """Kubernetes workload API of one cluster context."""

    async def list_pods(self, node: str | None = None) -> list[PodInfo]:
        """List pods, optionally only those bound to ``node``."""
        raise NotImplementedError("Subclasses must implement list_pods()")

    async def list_disruption_budgets(self) -> list[DisruptionBudget]:
        raise NotImplementedError("Subclasses must implement list_disruption_budgets()")

    async def cordon(self, node: str) -> None:
        raise NotImplementedError("Subclasses must implement cordon()")

    async def uncordon(self, node: str) -> None:
        raise NotImplementedError("Subclasses must implement uncordon()")

    async def drain(self, node: str, options: DrainOptions) -> DrainResult:
        """Evict every evictable pod from ``node``."""
        raise NotImplementedError("Subclasses must implement drain()")

    async def node_ready(self, node: str) -> bool | None:
        """Ready condition of ``node``: True, False, or None when unknown."""
        raise NotImplementedError("Subclasses must implement node_ready()")

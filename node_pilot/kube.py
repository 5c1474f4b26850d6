"""Kubernetes workload access: pods, disruption budgets, cordon and drain."""

import asyncio

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from node_pilot.api import WorkloadApi
from node_pilot.config import DrainOptions
from node_pilot.exceptions import KubernetesError
from node_pilot.logging_config import get_logger
from node_pilot.models.context import ClusterContext
from node_pilot.models.workload import DisruptionBudget, DrainResult, LabelRequirement, PodInfo

logger = get_logger(__name__)

MIRROR_ANNOTATION = "kubernetes.io/config.mirror"


def pod_info(pod) -> PodInfo:
    """Convert a V1Pod into the read-only view used by the core."""
    metadata = pod.metadata
    status = pod.status
    spec = pod.spec

    waiting_reason = None
    restarts = 0
    for cs in (status.container_statuses if status else None) or []:
        restarts += cs.restart_count or 0
        waiting = cs.state.waiting if cs.state else None
        if waiting is not None and waiting.reason and waiting_reason is None:
            waiting_reason = waiting.reason

    phase = (status.phase if status else None) or "Unknown"
    unschedulable = phase == "Pending" and any(
        c.type == "PodScheduled" and c.status == "False" and c.reason == "Unschedulable"
        for c in (status.conditions if status else None) or []
    )

    owners = metadata.owner_references or []
    return PodInfo(
        name=metadata.name,
        namespace=metadata.namespace,
        node=spec.node_name if spec else None,
        phase=phase,
        labels=dict(metadata.labels or {}),
        waiting_reason=waiting_reason,
        restarts=restarts,
        owner_kind=owners[0].kind if owners else None,
        mirror=MIRROR_ANNOTATION in (metadata.annotations or {}),
        uses_empty_dir=any(v.empty_dir is not None for v in (spec.volumes if spec else None) or []),
        unschedulable=unschedulable,
    )


def _int_or_str(value) -> str | None:
    return None if value is None else str(value)


def budget_info(pdb) -> DisruptionBudget:
    """Convert a V1PodDisruptionBudget into the read-only view used by the core."""
    spec = pdb.spec
    status = pdb.status
    selector = spec.selector if spec else None
    expressions = tuple(
        LabelRequirement(key=e.key, operator=e.operator, values=tuple(e.values or ()))
        for e in (selector.match_expressions if selector else None) or []
    )
    return DisruptionBudget(
        name=pdb.metadata.name,
        namespace=pdb.metadata.namespace,
        has_selector=selector is not None,
        match_labels=dict((selector.match_labels if selector else None) or {}),
        match_expressions=expressions,
        min_available=_int_or_str(spec.min_available if spec else None),
        max_unavailable=_int_or_str(spec.max_unavailable if spec else None),
        current_healthy=(status.current_healthy or 0) if status else 0,
        desired_healthy=(status.desired_healthy or 0) if status else 0,
        expected_pods=(status.expected_pods or 0) if status else 0,
        disruptions_allowed=(status.disruptions_allowed or 0) if status else 0,
    )


def _is_budget_refusal(e: ApiException) -> bool:
    body = str(e.body or "")
    return e.status == 429 or "disruption budget" in body or "Cannot evict" in body


class KubernetesWorkloadApi(WorkloadApi):
    """WorkloadApi backed by the official Kubernetes Python client.

    The client is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, api_client=None):
        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.policy_v1 = client.PolicyV1Api(api_client)

    @classmethod
    def for_context(cls, context: ClusterContext) -> "KubernetesWorkloadApi":
        """Build a client from the context's kubeconfig (default kubeconfig if unset)."""
        creds = context.credentials
        try:
            api_client = config.new_client_from_config(
                config_file=str(creds.kubeconfig) if creds.kubeconfig else None,
                context=creds.kube_context,
            )
        except Exception as e:
            raise KubernetesError(
                f"Failed to load kubeconfig for context '{context.name}': {e}",
                "Set 'kubeconfigs.<context>' in the node-pilot settings file "
                "or make sure ~/.kube/config points at the cluster",
            )
        return cls(api_client)

    async def _call(self, what: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            logger.error(f"Failed to {what}: {e.status} {e.reason}")
            raise KubernetesError(f"Failed to {what}", f"{e.status} {e.reason}")

    async def list_pods(self, node: str | None = None) -> list[PodInfo]:
        if node:
            pods = await self._call(
                f"list pods on {node}",
                self.core_v1.list_pod_for_all_namespaces,
                field_selector=f"spec.nodeName={node}",
            )
        else:
            pods = await self._call("list pods", self.core_v1.list_pod_for_all_namespaces)
        return [pod_info(p) for p in pods.items]

    async def list_disruption_budgets(self) -> list[DisruptionBudget]:
        pdbs = await self._call(
            "list pod disruption budgets",
            self.policy_v1.list_pod_disruption_budget_for_all_namespaces,
        )
        return [budget_info(p) for p in pdbs.items]

    async def _set_unschedulable(self, node: str, value: bool) -> None:
        action = "cordon" if value else "uncordon"
        await self._call(
            f"{action} node {node}", self.core_v1.patch_node, node, {"spec": {"unschedulable": value}}
        )
        logger.info(f"Node {node} {action}ed")

    async def cordon(self, node: str) -> None:
        await self._set_unschedulable(node, True)

    async def uncordon(self, node: str) -> None:
        await self._set_unschedulable(node, False)

    async def node_ready(self, node: str) -> bool | None:
        try:
            v1_node = await asyncio.to_thread(self.core_v1.read_node, node)
        except ApiException as e:
            # Expected while a node is rebooting
            logger.debug(f"Could not read node {node}: {e.status} {e.reason}")
            return None
        except (HTTPError, OSError) as e:
            # API server itself unreachable, e.g. a rebooting control plane
            logger.debug(f"Could not reach the API server for node {node}: {e}")
            return None
        for condition in (v1_node.status.conditions if v1_node.status else None) or []:
            if condition.type == "Ready":
                if condition.status == "True":
                    return True
                if condition.status == "False":
                    return False
                return None
        return None

    def _evictable(self, pods: list[PodInfo], options: DrainOptions) -> list[PodInfo]:
        result = []
        for pod in pods:
            if pod.mirror:
                continue
            if pod.is_daemonset and options.ignore_daemonsets:
                continue
            if pod.uses_empty_dir and not options.delete_emptydir_data:
                logger.debug(f"Leaving {pod.key} in place: uses emptyDir data")
                continue
            result.append(pod)
        return result

    async def _evict(self, pod: PodInfo, options: DrainOptions) -> None:
        delete_options = None
        if options.grace_period is not None:
            delete_options = client.V1DeleteOptions(grace_period_seconds=options.grace_period)
        body = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=pod.name, namespace=pod.namespace),
            delete_options=delete_options,
        )
        await asyncio.to_thread(
            self.core_v1.create_namespaced_pod_eviction, pod.name, pod.namespace, body
        )

    async def _force_delete(self, pod: PodInfo, options: DrainOptions) -> bool:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_pod,
                pod.name,
                pod.namespace,
                grace_period_seconds=options.grace_period or 0,
            )
        except ApiException as e:
            logger.warning(f"Force delete failed for {pod.key}: {e.status} {e.reason}")
            return False
        logger.info(f"Force deleted unmanaged pod {pod.key}")
        return True

    async def drain(self, node: str, options: DrainOptions) -> DrainResult:
        """Evict pods one at a time, retrying while a disruption budget refuses."""
        pods = self._evictable(await self.list_pods(node), options)
        result = DrainResult(node=node)
        max_attempts = max(1, int(options.per_pod_timeout / options.retry_interval))
        logger.info(f"Draining {node}: {len(pods)} pods to evict")

        for pod in pods:
            attempts = 0
            evicted = False
            refused = True
            while attempts < max_attempts:
                try:
                    await self._evict(pod, options)
                    evicted = True
                    break
                except ApiException as e:
                    if e.status == 404:
                        evicted = True
                        break
                    if not _is_budget_refusal(e):
                        logger.warning(f"Failed to evict {pod.key}: {e.status} {e.reason}")
                        refused = False
                        break
                    attempts += 1
                    logger.debug(
                        f"Disruption budget blocks eviction of {pod.key}, "
                        f"attempt {attempts}/{max_attempts}"
                    )
                    await asyncio.sleep(options.retry_interval)

            if evicted:
                logger.info(f"Evicted {pod.key}")
                result.evicted.append(pod.key)
                continue
            if refused:
                logger.warning(f"Timed out waiting for budget to allow eviction of {pod.key}")
            if options.force_delete_unmanaged and not pod.is_managed:
                if await self._force_delete(pod, options):
                    result.force_deleted.append(pod.key)
                    continue
            result.failed.append(pod.key)

        return result

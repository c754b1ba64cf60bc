"""Node drain engine.

Draining a node happens in two phases. Every pod bound to the node is first
run through an ordered filter pipeline; if any pod is fatally blocked the
drain stops before anything is removed. The selected pods are then evicted
(one concurrent task per pod, sharing a single deadline) or, when the API
server does not serve the eviction subresource, deleted one by one. In both
cases the drain waits until the pods are gone or the deadline fires.
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from datetime import datetime, timezone

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from node_rotator.exceptions import (
    BlockingPodsError,
    EvictionTimeoutError,
    KubernetesError,
    PodRemovalError,
    RotatorError,
    WaitTimeoutError,
)
from node_rotator.logging_config import bind_logger, get_logger
from node_rotator.models.drain import DrainOptions, PodDeletionDecision
from node_rotator.nodes import NodeManager

EVICTION_KIND = "Eviction"
EVICTION_SUBRESOURCE = "pods/eviction"
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"

DAEMONSET_FATAL = "DaemonSet-managed pods (use ignore-daemonsets to ignore)"
DAEMONSET_WARNING = "Ignoring DaemonSet-managed pods"
LOCAL_STORAGE_FATAL = "Pods with local storage (use delete-local-data to override)"
LOCAL_STORAGE_WARNING = "Deleting pods with local storage"
UNMANAGED_FATAL = (
    "Pods not managed by ReplicationController, ReplicaSet, Job, DaemonSet or "
    "StatefulSet (use force to override)"
)
UNMANAGED_WARNING = (
    "Deleting pods not managed by ReplicationController, ReplicaSet, Job, DaemonSet or "
    "StatefulSet"
)

POD_POLL_INTERVAL = 1
EVICTION_RETRY_INTERVAL = 5
MAX_EVICTION_WORKERS = 32

INCLUDE = PodDeletionDecision(include=True)


def get_pod_controller(pod):
    """Return the owner reference marked as controller, if any."""
    for ref in pod.metadata.owner_references or []:
        if ref.controller:
            return ref
    return None


def has_local_storage(pod) -> bool:
    return any(v.empty_dir is not None for v in (pod.spec.volumes or []))


def global_timeout(seconds: int) -> float:
    """Convert a drain timeout to seconds; zero means no timeout."""
    return math.inf if seconds == 0 else float(seconds)


def _describe_timeout(timeout: float) -> str:
    return "none" if math.isinf(timeout) else f"{timeout:g}s"


class PodFilter:
    """A single step of the pod selection pipeline."""

    def decide(self, pod) -> PodDeletionDecision:
        raise NotImplementedError


class DaemonSetFilter(PodFilter):
    """Never removes DaemonSet pods; their presence is fatal unless ignored.

    A pod whose DaemonSet no longer exists is orphaned and is removed with a
    warning when ``force`` is set.
    """

    def __init__(self, apps_api, options: DrainOptions):
        self.apps_api = apps_api
        self.options = options

    def decide(self, pod) -> PodDeletionDecision:
        ref = get_pod_controller(pod)
        if ref is None or ref.kind != "DaemonSet":
            return INCLUDE

        try:
            self.apps_api.read_namespaced_daemon_set(ref.name, pod.metadata.namespace)
        except ApiException as e:
            message = f"daemonset {pod.metadata.namespace}/{ref.name}: {e.reason}"
            if e.status == 404 and self.options.force:
                return PodDeletionDecision(include=True, warning=message)
            return PodDeletionDecision(include=False, fatal=message)
        except HTTPError as e:
            return PodDeletionDecision(
                include=False, fatal=f"daemonset {pod.metadata.namespace}/{ref.name}: {e}"
            )

        if not self.options.ignore_daemonsets:
            return PodDeletionDecision(include=False, fatal=DAEMONSET_FATAL)
        return PodDeletionDecision(include=False, warning=DAEMONSET_WARNING)


class MirrorPodFilter(PodFilter):
    """Static pods are managed by the kubelet and are always skipped silently."""

    def decide(self, pod) -> PodDeletionDecision:
        if MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {}):
            return PodDeletionDecision(include=False)
        return INCLUDE


class LocalStorageFilter(PodFilter):
    def __init__(self, options: DrainOptions):
        self.options = options

    def decide(self, pod) -> PodDeletionDecision:
        if not has_local_storage(pod):
            return INCLUDE
        if not self.options.delete_local_data:
            return PodDeletionDecision(include=False, fatal=LOCAL_STORAGE_FATAL)
        return PodDeletionDecision(include=True, warning=LOCAL_STORAGE_WARNING)


class UnmanagedFilter(PodFilter):
    """Pods without a controller are lost for good once removed."""

    def __init__(self, options: DrainOptions):
        self.options = options

    def decide(self, pod) -> PodDeletionDecision:
        # any finished pod can be removed
        if pod.status and pod.status.phase in ("Succeeded", "Failed"):
            return INCLUDE
        if get_pod_controller(pod) is not None:
            return INCLUDE
        if self.options.force:
            return PodDeletionDecision(include=True, warning=UNMANAGED_WARNING)
        return PodDeletionDecision(include=False, fatal=UNMANAGED_FATAL)


def build_filters(apps_api, options: DrainOptions) -> list[PodFilter]:
    """Return the pod filters in evaluation order."""
    return [
        DaemonSetFilter(apps_api, options),
        MirrorPodFilter(),
        LocalStorageFilter(options),
        UnmanagedFilter(options),
    ]


def select_pods(pods, filters: list[PodFilter]):
    """Run every pod through the filters.

    Filtering stops for a pod at the first filter that excludes it.

    Returns:
        Tuple of (selected pods, warnings, fatals) where warnings and fatals
        map a reason to the names of the pods it applies to
    """
    selected = []
    warnings: dict[str, list[str]] = {}
    fatals: dict[str, list[str]] = {}
    for pod in pods:
        ok = True
        for pod_filter in filters:
            decision = pod_filter.decide(pod)
            if decision.warning:
                warnings.setdefault(decision.warning, []).append(pod.metadata.name)
            if decision.fatal:
                fatals.setdefault(decision.fatal, []).append(pod.metadata.name)
            if not decision.include:
                ok = False
                break
        if ok:
            selected.append(pod)
    return selected, warnings, fatals


class DrainEngine:
    """Cordons a node and removes its pods."""

    def __init__(
        self,
        core_api,
        apps_api,
        apis_api,
        node_manager: NodeManager | None = None,
        logger=None,
        poll_interval: float = POD_POLL_INTERVAL,
        eviction_retry_interval: float = EVICTION_RETRY_INTERVAL,
        max_workers: int = MAX_EVICTION_WORKERS,
    ):
        """Initialize the drain engine.

        Args:
            core_api: kubernetes CoreV1Api
            apps_api: kubernetes AppsV1Api, used to look up DaemonSets
            apis_api: kubernetes ApisApi, used for eviction discovery
            node_manager: Node operations used to cordon, built from core_api if omitted
            logger: Logger or bound adapter, defaults to the module logger
            poll_interval: Seconds between pod removal checks
            eviction_retry_interval: Seconds to back off after a 429 on eviction
            max_workers: Upper bound on concurrent eviction tasks
        """
        self.core_api = core_api
        self.apps_api = apps_api
        self.apis_api = apis_api
        self.logger = logger or get_logger(__name__)
        self.nodes = node_manager or NodeManager(core_api, logger=self.logger)
        self.poll_interval = poll_interval
        self.eviction_retry_interval = eviction_retry_interval
        self.max_workers = max_workers

    def drain(self, node, options: DrainOptions, wait_between_evictions: float = 0) -> None:
        """Cordon a node and evict or delete its pods.

        Args:
            node: Node object or node name
            options: Drain options
            wait_between_evictions: Seconds to wait before removing each pod

        Raises:
            BlockingPodsError: If pods on the node may not be removed
            PodRemovalError: If one or more pods failed to be removed
            WaitTimeoutError: If pods were not removed before the timeout
        """
        if isinstance(node, str):
            name = node
            node = self.nodes.get_node(name)
            if node is None:
                raise KubernetesError(f"Failed to drain node {name}: node not found")

        name = node.metadata.name
        log = bind_logger(self.logger, node=name)
        self.nodes.cordon(node)

        try:
            self.delete_or_evict_pods(name, options, wait_between_evictions)
        except RotatorError as e:
            log.error(f"Unable to drain node {name!r}: {e}")
            raise
        log.info(f"Drained node {name!r}")

    def delete_or_evict_pods(
        self, node_name: str, options: DrainOptions, wait_between_evictions: float = 0
    ) -> None:
        """Remove the node's pods and wait until they are gone."""
        pods = self.get_pods_for_deletion(node_name, options)
        try:
            self._remove_pods(node_name, pods, options, wait_between_evictions)
        except (PodRemovalError, WaitTimeoutError, KubernetesError) as e:
            try:
                pending = self.get_pods_for_deletion(node_name, options)
            except RotatorError as list_error:
                raise list_error from e
            names = ",".join(sorted(p.metadata.name for p in pending))
            bind_logger(self.logger, node=node_name).error(
                f"Failed to evict pods from node {node_name!r} (pending pods: {names}): {e}"
            )
            raise

    def list_pods(self, node_name: str, options: DrainOptions) -> list[client.V1Pod]:
        kwargs = {"field_selector": f"spec.nodeName={node_name}"}
        if options.selector:
            kwargs["label_selector"] = options.selector
        try:
            if options.namespace:
                resp = self.core_api.list_namespaced_pod(options.namespace, **kwargs)
            else:
                resp = self.core_api.list_pod_for_all_namespaces(**kwargs)
        except ApiException as e:
            raise KubernetesError(f"Failed to list pods on node {node_name}: {e.reason}")
        except HTTPError as e:
            raise KubernetesError(f"Failed to list pods on node {node_name}: {e}")
        return resp.items

    def get_pods_for_deletion(self, node_name: str, options: DrainOptions) -> list[client.V1Pod]:
        """Return the pods that will be removed from a node.

        Raises:
            BlockingPodsError: If any pod is fatally blocked; nothing is returned
                in that case so no pod is removed
        """
        pods = self.list_pods(node_name, options)
        selected, warnings, fatals = select_pods(pods, build_filters(self.apps_api, options))
        if fatals:
            raise BlockingPodsError(node_name, fatals)
        if warnings:
            message = "; ".join(f"{k}: {', '.join(v)}" for k, v in warnings.items())
            bind_logger(self.logger, node=node_name).warning(message)
        return selected

    def supports_eviction(self) -> str | None:
        """Return the policy group version if the server serves pod eviction."""
        try:
            groups = self.apis_api.get_api_versions().groups or []
            policy = next((g for g in groups if g.name == "policy"), None)
            if policy is None:
                return None
            resources = self.core_api.get_api_resources().resources or []
        except ApiException as e:
            raise KubernetesError(f"Failed to discover eviction support: {e.reason}")
        except HTTPError as e:
            raise KubernetesError(f"Failed to discover eviction support: {e}")

        for resource in resources:
            if resource.name == EVICTION_SUBRESOURCE and resource.kind == EVICTION_KIND:
                return policy.preferred_version.group_version
        return None

    def _remove_pods(
        self,
        node_name: str,
        pods: list[client.V1Pod],
        options: DrainOptions,
        wait_between_evictions: float,
    ) -> None:
        if not pods:
            return
        policy_version = self.supports_eviction()
        if policy_version:
            self.evict_pods(node_name, pods, options, wait_between_evictions, policy_version)
        else:
            self.delete_pods(node_name, pods, options, wait_between_evictions)

    def _delete_options(self, options: DrainOptions) -> client.V1DeleteOptions | None:
        if options.grace_period_seconds < 0:
            return None
        return client.V1DeleteOptions(grace_period_seconds=options.grace_period_seconds)

    def evict_pod(
        self, pod: client.V1Pod, options: DrainOptions, policy_version: str | None = None
    ) -> None:
        body = client.V1Eviction(
            api_version=policy_version,
            kind=EVICTION_KIND if policy_version else None,
            metadata=client.V1ObjectMeta(name=pod.metadata.name, namespace=pod.metadata.namespace),
            delete_options=self._delete_options(options),
        )
        self.core_api.create_namespaced_pod_eviction(
            name=pod.metadata.name, namespace=pod.metadata.namespace, body=body
        )

    def evict_pods(
        self,
        node_name: str,
        pods: list[client.V1Pod],
        options: DrainOptions,
        wait_between_evictions: float = 0,
        policy_version: str | None = None,
    ) -> None:
        """Evict pods concurrently and wait for each of them to go away.

        Raises:
            PodRemovalError: Aggregating the failure of every pod that was not removed
        """
        timeout = global_timeout(options.timeout)
        deadline = time.monotonic() + timeout

        executor = ThreadPoolExecutor(
            max_workers=min(len(pods), self.max_workers), thread_name_prefix="evict"
        )
        futures = {}
        try:
            for pod in pods:
                time.sleep(wait_between_evictions)
                future = executor.submit(
                    self._evict_and_wait,
                    node_name,
                    pod,
                    options,
                    deadline,
                    timeout,
                    policy_version,
                )
                futures[future] = pod

            join_timeout = None
            if not math.isinf(timeout):
                join_timeout = max(0.0, deadline - time.monotonic()) + self.poll_interval
            done, _ = wait_futures(futures, timeout=join_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        errors = []
        for future, pod in futures.items():
            if future not in done:
                errors.append(EvictionTimeoutError(pod.metadata.name, timeout))
            elif future.exception() is not None:
                errors.append(future.exception())
        if errors:
            raise PodRemovalError(node_name, errors)

    def _evict_and_wait(
        self,
        node_name: str,
        pod: client.V1Pod,
        options: DrainOptions,
        deadline: float,
        timeout: float,
        policy_version: str | None = None,
    ) -> None:
        name = pod.metadata.name
        log = bind_logger(self.logger, node=node_name)
        while True:
            if time.monotonic() >= deadline:
                raise EvictionTimeoutError(name, timeout)
            log.info(f"Evicting pod {pod.metadata.namespace}/{name}")
            try:
                self.evict_pod(pod, options, policy_version)
                break
            except ApiException as e:
                if e.status == 404:
                    return
                if e.status == 429:
                    log.warning(
                        f"Error when evicting pod {name!r} "
                        f"(will retry after {self.eviction_retry_interval}s): {e.reason}"
                    )
                    time.sleep(
                        min(self.eviction_retry_interval, max(0.0, deadline - time.monotonic()))
                    )
                    continue
                raise KubernetesError(f"Error when evicting pod {name!r}: {e.reason}")
            except HTTPError as e:
                raise KubernetesError(f"Error when evicting pod {name!r}: {e}")

        log.info(f"Pod {pod.metadata.namespace}/{name} evicted")
        try:
            self.wait_for_delete([pod], options, deadline, timeout)
        except WaitTimeoutError as e:
            raise WaitTimeoutError(f"Error when waiting for pod {name!r} terminating: {e}")

    def delete_pods(
        self,
        node_name: str,
        pods: list[client.V1Pod],
        options: DrainOptions,
        wait_between_evictions: float = 0,
    ) -> None:
        """Delete pods one by one, then wait for all of them to go away."""
        timeout = global_timeout(options.timeout)
        deadline = time.monotonic() + timeout
        log = bind_logger(self.logger, node=node_name)

        for pod in pods:
            time.sleep(wait_between_evictions)
            log.info(f"Deleting pod {pod.metadata.namespace}/{pod.metadata.name}")
            try:
                self.core_api.delete_namespaced_pod(
                    pod.metadata.name, pod.metadata.namespace, body=self._delete_options(options)
                )
            except ApiException as e:
                if e.status == 404:
                    continue
                raise KubernetesError(f"Error when deleting pod {pod.metadata.name!r}: {e.reason}")
            except HTTPError as e:
                raise KubernetesError(f"Error when deleting pod {pod.metadata.name!r}: {e}")

        self.wait_for_delete(pods, options, deadline, timeout)

    def wait_for_delete(
        self, pods: list[client.V1Pod], options: DrainOptions, deadline: float, timeout: float
    ) -> None:
        """Poll until every pod is gone or was recreated under a new UID.

        Raises:
            WaitTimeoutError: If pods remain when the deadline is reached
        """
        pending = list(pods)
        while True:
            remaining = []
            for pod in pending:
                try:
                    current = self.core_api.read_namespaced_pod(
                        pod.metadata.name, pod.metadata.namespace
                    )
                except ApiException as e:
                    if e.status == 404:
                        continue
                    raise KubernetesError(f"Failed to get pod {pod.metadata.name!r}: {e.reason}")
                except HTTPError as e:
                    raise KubernetesError(f"Failed to get pod {pod.metadata.name!r}: {e}")
                if current.metadata.uid != pod.metadata.uid:
                    continue
                if self._deleted_long_ago(current, options.skip_wait_for_delete_timeout):
                    continue
                remaining.append(pod)

            pending = remaining
            if not pending:
                return
            if time.monotonic() >= deadline:
                names = ", ".join(p.metadata.name for p in pending)
                raise WaitTimeoutError(
                    f"Global timeout reached: {_describe_timeout(timeout)} (pending pods: {names})"
                )
            time.sleep(self.poll_interval)

    @staticmethod
    def _deleted_long_ago(pod: client.V1Pod, threshold: int) -> bool:
        deleted_at = pod.metadata.deletion_timestamp
        if threshold <= 0 or deleted_at is None:
            return False
        if deleted_at.tzinfo is None:
            deleted_at = deleted_at.replace(tzinfo=timezone.utc)
        return (datetime.now(timezone.utc) - deleted_at).total_seconds() > threshold

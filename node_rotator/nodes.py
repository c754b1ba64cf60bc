"""Kubernetes node operations: cordon, readiness and removal."""

import time

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from node_rotator.exceptions import KubernetesError, WaitTimeoutError
from node_rotator.logging_config import bind_logger, get_logger

NODE_READY_TIMEOUT = 600
NODE_POLL_INTERVAL = 20


def is_node_ready(node) -> bool:
    """Return True if the node reports a Ready condition with status True."""
    conditions = (node.status.conditions if node.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


class NodeManager:
    """Operations on cluster node objects."""

    def __init__(
        self,
        core_api,
        logger=None,
        ready_timeout: float = NODE_READY_TIMEOUT,
        poll_interval: float = NODE_POLL_INTERVAL,
    ):
        """Initialize the node manager.

        Args:
            core_api: kubernetes CoreV1Api
            logger: Logger or bound adapter, defaults to the module logger
            ready_timeout: Seconds to wait for each node to become ready
            poll_interval: Seconds between readiness checks
        """
        self.core_api = core_api
        self.logger = logger or get_logger(__name__)
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval

    def get_node(self, name: str):
        """Return the node object, or None if it does not exist."""
        try:
            return self.core_api.read_node(name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError(f"Failed to get node {name}: {e.reason}")
        except HTTPError as e:
            raise KubernetesError(f"Failed to get node {name}: {e}")

    def cordon(self, node) -> bool:
        """Mark a node unschedulable. Returns True if a change was made."""
        return self._set_unschedulable(node, True)

    def uncordon(self, node) -> bool:
        """Mark a node schedulable. Returns True if a change was made."""
        return self._set_unschedulable(node, False)

    def _set_unschedulable(self, node, desired: bool) -> bool:
        name = node.metadata.name
        current = bool(node.spec.unschedulable) if node.spec else False
        if current == desired:
            return False

        try:
            self.core_api.patch_node(name, {"spec": {"unschedulable": desired}})
        except (ApiException, HTTPError) as e:
            verb = "cordon" if desired else "uncordon"
            reason = e.reason if isinstance(e, ApiException) else e
            raise KubernetesError(f"Failed to {verb} node {name}: {reason}")

        bind_logger(self.logger, node=name).info(
            f"{'cordoned' if desired else 'uncordoned'} node {name!r}"
        )
        return True

    def wait_for_node_ready(self, name: str):
        """Poll a node until it reports Ready.

        A node that does not exist yet is treated as still provisioning.

        Returns:
            The ready node object

        Raises:
            WaitTimeoutError: If the node is not ready within the timeout
        """
        log = bind_logger(self.logger, node=name)
        deadline = time.monotonic() + self.ready_timeout
        while True:
            try:
                node = self.core_api.read_node(name)
                if is_node_ready(node):
                    return node
                log.info(f"Node {name} found but not ready, waiting...")
            except ApiException as e:
                if e.status == 404:
                    log.info(f"Node {name} not found, waiting...")
                else:
                    log.error(f"Error while waiting for node {name} to become ready: {e.reason}")
            except HTTPError as e:
                log.error(f"Error while waiting for node {name} to become ready: {e}")

            if time.monotonic() >= deadline:
                raise WaitTimeoutError(
                    f"Node {name} failed to get ready: timed out after {self.ready_timeout}s"
                )
            time.sleep(self.poll_interval)

    def nodes_ready(self, names: list[str]) -> None:
        """Wait for every named node to become ready, one at a time."""
        self.logger.info(
            f"Waiting up to {self.ready_timeout} seconds for all nodes to become ready..."
        )
        for name in names:
            self.wait_for_node_ready(name)
        self.logger.info("All nodes in Ready state")

    def delete_nodes(self, names: list[str]) -> None:
        """Delete node objects, ignoring nodes that are already gone."""
        for name in names:
            try:
                self.core_api.delete_node(name)
            except ApiException as e:
                if e.status == 404:
                    bind_logger(self.logger, node=name).warning(
                        f"Node {name} not found, assuming already removed from cluster"
                    )
                    continue
                raise KubernetesError(f"Failed to delete node {name}: {e.reason}")
            except HTTPError as e:
                raise KubernetesError(f"Failed to delete node {name}: {e}")

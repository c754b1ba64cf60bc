"""Cluster rotation: master and worker group policies and the orchestrator.

Masters are rotated one node at a time and drained before they are
replaced, so the control plane never loses two members at once. Workers are
rotated in batches of ``max_scaling`` nodes and replaced before they are
drained, so workload capacity never dips below the desired size.
"""

import time

from urllib3.exceptions import HTTPError

from node_rotator.cloud import CloudInventory
from node_rotator.drain import DrainEngine
from node_rotator.exceptions import DrainError, RotationError, RotatorError
from node_rotator.logging_config import bind_logger, get_logger
from node_rotator.models.cluster import Cluster
from node_rotator.models.drain import DrainOptions
from node_rotator.models.group import AutoscalingGroup, RotatorMetadata
from node_rotator.nodes import NodeManager

SETTLE_SECONDS = 60
DRAIN_TIMEOUT = 600
MASTER_GROUP_MARKER = "master"


def new_nodes(all_nodes: list[str], old_nodes: list[str]) -> list[str]:
    """Return the hostnames in ``all_nodes`` that are not in ``old_nodes``."""
    old = set(old_nodes)
    return [node for node in all_nodes if node not in old]


class RotationPolicy:
    """Shared steps of the master and worker rotation policies."""

    def __init__(
        self,
        cluster: Cluster,
        cloud: CloudInventory,
        nodes: NodeManager,
        drainer: DrainEngine,
        logger=None,
        settle_seconds: float = SETTLE_SECONDS,
        drain_timeout: int = DRAIN_TIMEOUT,
    ):
        self.cluster = cluster
        self.cloud = cloud
        self.nodes = nodes
        self.drainer = drainer
        self.logger = logger or get_logger(__name__)
        self.settle_seconds = settle_seconds
        self.drain_options = DrainOptions(
            delete_local_data=True,
            ignore_daemonsets=True,
            timeout=drain_timeout,
            grace_period_seconds=cluster.evict_grace_period,
        )

    @property
    def drain_attempts(self) -> int:
        return max(1, self.cluster.max_drain_retries)

    def rotate(self, group: AutoscalingGroup) -> None:
        raise NotImplementedError

    def drain_node(self, name: str, log) -> None:
        """Drain a node, retrying the whole drain on failure.

        A node object that no longer exists is treated as already drained.

        Raises:
            DrainError: If every attempt failed
        """
        log = bind_logger(log, node=name)
        log.info(f"Draining node {name}")
        last_error = None
        for attempt in range(1, self.drain_attempts + 1):
            try:
                node = self.nodes.get_node(name)
                if node is None:
                    log.warning(f"Node {name} not found, assuming already drained")
                    return
                self.drainer.drain(
                    node, self.drain_options, self.cluster.wait_between_pod_evictions
                )
            except (RotatorError, HTTPError) as e:
                last_error = e
                if attempt < self.drain_attempts:
                    log.warning(
                        f"Failed to drain node {name!r} on attempt {attempt}, "
                        f"retrying up to {self.drain_attempts} times"
                    )
                continue
            log.info(f"Node {name} drained successfully")
            return
        raise DrainError(name, self.drain_attempts, last_error) from last_error

    def settle(self, log) -> None:
        log.info(f"Sleeping {self.settle_seconds} seconds for autoscaling group to balance...")
        time.sleep(self.settle_seconds)

    def confirm_replacements(self, group: AutoscalingGroup, log) -> list[str]:
        """Wait for the group to reach capacity and its new nodes to become ready.

        Returns:
            Hostnames of the nodes that joined the group
        """
        described = self.cloud.wait_for_group_capacity(group.name, group.desired_capacity)
        hostnames = self.cloud.group_hostnames(described)
        added = new_nodes(hostnames, group.nodes)
        log.info(f"New nodes in group: {', '.join(added) or 'none'}")
        self.nodes.nodes_ready(added)
        return added


class MasterRotationPolicy(RotationPolicy):
    """Rotates one node at a time: drain, remove, then wait for the replacement."""

    def rotate(self, group: AutoscalingGroup) -> None:
        log = bind_logger(self.logger, group=group.name)
        while group.nodes:
            log.info(f"The number of nodes in the ASG to be rotated is {len(group.nodes)}")
            node = group.nodes[0]

            self.drain_node(node, log)
            self.cloud.detach_nodes([node], group.name, decrement=False)
            self.cloud.terminate_nodes([node])
            self.nodes.delete_nodes([node])

            self.settle(log)
            self.confirm_replacements(group, log)

            log.info("Removing nodes from rotation list")
            group.pop_nodes([node])


class WorkerRotationPolicy(RotationPolicy):
    """Rotates batches of nodes: detach, wait for replacements, then drain and remove."""

    def rotate(self, group: AutoscalingGroup) -> None:
        log = bind_logger(self.logger, group=group.name)
        while group.nodes:
            log.info(f"The number of nodes in the ASG to be rotated is {len(group.nodes)}")
            batch = list(group.nodes[: self.cluster.max_scaling])

            self.cloud.detach_nodes(batch, group.name, decrement=False)
            self.settle(log)
            self.confirm_replacements(group, log)

            log.info(f"Draining {len(batch)} nodes")
            for index, node in enumerate(batch):
                self.drain_node(node, log)
                # Terminate right after each drain so old nodes do not linger unready
                self.cloud.terminate_nodes([node])
                self.nodes.delete_nodes([node])
                log.info(f"Removing node {node} from rotation list")
                group.pop_nodes([node])

                if index < len(batch) - 1:
                    log.info(
                        f"Waiting for {self.cluster.wait_between_drains} seconds before next node drain"
                    )
                    time.sleep(self.cluster.wait_between_drains)

            if group.nodes:
                log.info(
                    f"Waiting for {self.cluster.wait_between_rotations} seconds "
                    "before next node rotation"
                )
                time.sleep(self.cluster.wait_between_rotations)


class Rotator:
    """Rotates every node of a cluster, master groups first."""

    def __init__(
        self,
        cloud: CloudInventory,
        nodes: NodeManager,
        drainer: DrainEngine,
        logger=None,
        settle_seconds: float = SETTLE_SECONDS,
    ):
        self.cloud = cloud
        self.nodes = nodes
        self.drainer = drainer
        self.logger = logger or get_logger(__name__)
        self.settle_seconds = settle_seconds

    @classmethod
    def from_clients(cls, kube, aws, logger=None) -> "Rotator":
        """Build a rotator from KubeClients and AWSClients bundles."""
        logger = logger or get_logger(__name__)
        nodes = NodeManager(kube.core, logger=logger)
        return cls(
            cloud=CloudInventory(aws.autoscaling, aws.ec2, logger=logger),
            nodes=nodes,
            drainer=DrainEngine(kube.core, kube.apps, kube.apis, node_manager=nodes, logger=logger),
            logger=logger,
        )

    def discover_groups(self, cluster: Cluster, metadata: RotatorMetadata) -> None:
        """Populate metadata with the cluster's master and worker groups."""
        log = bind_logger(self.logger, cluster=cluster.cluster_id)
        groups = self.cloud.get_autoscaling_groups(cluster.cluster_id)
        log.info(f"Cluster {cluster.cluster_id} consists of {len(groups)} autoscaling groups")

        for described in groups:
            group = AutoscalingGroup(
                name=described["AutoScalingGroupName"],
                desired_capacity=described["DesiredCapacity"],
                nodes=self.cloud.group_hostnames(described),
            )
            is_master = MASTER_GROUP_MARKER in group.name
            if is_master and cluster.rotate_masters:
                metadata.master_groups.append(group)
            elif not is_master and cluster.rotate_workers:
                metadata.worker_groups.append(group)

    def final_check(self, group: AutoscalingGroup) -> None:
        """Confirm the group is at capacity and all of its nodes are ready."""
        described = self.cloud.wait_for_group_capacity(group.name, group.desired_capacity)
        self.nodes.nodes_ready(self.cloud.group_hostnames(described))

    def rotate(self, cluster: Cluster, metadata: RotatorMetadata | None = None) -> RotatorMetadata:
        """Rotate the cluster's nodes.

        Args:
            cluster: Rotation parameters
            metadata: Progress from an earlier failed attempt; groups are
                discovered when omitted or empty

        Returns:
            The metadata with every rotated group's node list emptied

        Raises:
            ValidationError: If the cluster parameters are out of range; no
                cloud call is made in that case
            RotationError: On the first failure; ``error.metadata`` holds the
                progress made so far
        """
        cluster = cluster.validated()
        log = bind_logger(self.logger, cluster=cluster.cluster_id)
        if metadata is None:
            metadata = RotatorMetadata()

        try:
            if metadata.is_empty():
                self.discover_groups(cluster, metadata)
        except Exception as e:
            log.error(f"Failed to discover autoscaling groups: {e}")
            raise RotationError(
                f"Failed to discover autoscaling groups for cluster {cluster.cluster_id}: {e}",
                metadata,
            ) from e

        policy_args = dict(
            cluster=cluster,
            cloud=self.cloud,
            nodes=self.nodes,
            drainer=self.drainer,
            logger=log,
            settle_seconds=self.settle_seconds,
        )
        masters = MasterRotationPolicy(**policy_args)
        workers = WorkerRotationPolicy(**policy_args)

        for policy, groups in ((masters, metadata.master_groups), (workers, metadata.worker_groups)):
            for group in groups:
                self._rotate_group(policy, group, metadata, log)

        log.info("All ASGs rotated successfully")
        return metadata

    def _rotate_group(self, policy, group, metadata, log) -> None:
        group_log = bind_logger(log, group=group.name)
        if not group.nodes:
            group_log.info(f"ASG {group.name} has no pending nodes, skipping")
            return

        group_log.info(f"The autoscaling group {group.name} has {group.desired_capacity} instance(s)")
        try:
            policy.rotate(group)
            group_log.info(f"Checking that all {group.desired_capacity} nodes are running...")
            self.final_check(group)
        except Exception as e:
            group_log.error(f"Failed to rotate cluster: {e}")
            raise RotationError(
                f"Failed to rotate autoscaling group {group.name}: {e}",
                metadata,
                f"{len(group.nodes)} node(s) still pending: {', '.join(group.nodes) or 'none'}",
            ) from e
        group_log.info(f"ASG {group.name} rotated successfully.")

"""Autoscaling group and compute instance inventory.

Wraps the boto3 ``autoscaling`` and ``ec2`` clients with the operations the
rotation policies need. Every API failure is wrapped in a CloudError naming
the operation and resource; nothing is retried here.
"""

import time

from botocore.exceptions import BotoCoreError, ClientError

from node_rotator.exceptions import CloudError, WaitTimeoutError
from node_rotator.logging_config import bind_logger, get_logger

GROUP_READY_TIMEOUT = 300
GROUP_POLL_INTERVAL = 5

# Instances in any other state are treated as already gone
LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]


class CloudInventory:
    """Queries and mutates autoscaling groups and their instances."""

    def __init__(
        self,
        autoscaling,
        ec2,
        logger=None,
        ready_timeout: float = GROUP_READY_TIMEOUT,
        poll_interval: float = GROUP_POLL_INTERVAL,
    ):
        """Initialize the inventory.

        Args:
            autoscaling: boto3 autoscaling client
            ec2: boto3 ec2 client
            logger: Logger or bound adapter, defaults to the module logger
            ready_timeout: Seconds to wait for a group to reach capacity
            poll_interval: Seconds between group capacity checks
        """
        self.autoscaling = autoscaling
        self.ec2 = ec2
        self.logger = logger or get_logger(__name__)
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval

    def get_autoscaling_groups(self, cluster_id: str) -> list[dict]:
        """Return every autoscaling group whose name contains the cluster ID."""
        groups = []
        kwargs = {}
        while True:
            try:
                resp = self.autoscaling.describe_auto_scaling_groups(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise CloudError(f"Failed to describe autoscaling groups for cluster {cluster_id}: {e}")

            for group in resp.get("AutoScalingGroups", []):
                if cluster_id in group["AutoScalingGroupName"]:
                    groups.append(group)

            next_token = resp.get("NextToken")
            if not next_token:
                break
            kwargs["NextToken"] = next_token

        self.logger.debug(f"Found {len(groups)} autoscaling groups for cluster {cluster_id}")
        return groups

    def describe_group(self, group_name: str) -> dict:
        """Return the description of a single autoscaling group.

        Raises:
            CloudError: If the API call fails or the group does not exist
        """
        try:
            resp = self.autoscaling.describe_auto_scaling_groups(
                AutoScalingGroupNames=[group_name]
            )
        except (ClientError, BotoCoreError) as e:
            raise CloudError(f"Failed to describe the autoscaling group {group_name}: {e}")

        groups = resp.get("AutoScalingGroups", [])
        if not groups:
            raise CloudError(f"Autoscaling group {group_name} not found")
        return groups[0]

    def get_node_hostnames(self, instances: list[dict]) -> list[str]:
        """Resolve autoscaling group instances to node hostnames (private DNS names).

        Order follows the order of ``instances``.
        """
        instance_ids = [i["InstanceId"] for i in instances]
        if not instance_ids:
            return []

        try:
            resp = self.ec2.describe_instances(InstanceIds=instance_ids)
        except (ClientError, BotoCoreError) as e:
            raise CloudError(f"Failed to describe ec2 instances {', '.join(instance_ids)}: {e}")

        hostnames = {}
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                hostnames[instance["InstanceId"]] = instance.get("PrivateDnsName", "")

        missing = [i for i in instance_ids if not hostnames.get(i)]
        if missing:
            raise CloudError(f"No private DNS name found for instance(s) {', '.join(missing)}")
        return [hostnames[i] for i in instance_ids]

    def group_hostnames(self, group: dict) -> list[str]:
        return self.get_node_hostnames(group.get("Instances", []))

    def get_instance_id(self, hostname: str) -> str | None:
        """Return the instance ID for a node hostname, or None if the instance is gone."""
        try:
            resp = self.ec2.describe_instances(
                Filters=[
                    {"Name": "private-dns-name", "Values": [hostname]},
                    {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
                ]
            )
        except (ClientError, BotoCoreError) as e:
            raise CloudError(f"Failed to describe ec2 instance for node {hostname}: {e}")

        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance["InstanceId"]

        self.logger.warning(
            f"Instance {hostname} not found, assuming that instance was already deleted"
        )
        return None

    def node_in_group(self, group_name: str, instance_id: str) -> bool:
        group = self.describe_group(group_name)
        return any(i["InstanceId"] == instance_id for i in group.get("Instances", []))

    def detach_nodes(self, nodes: list[str], group_name: str, decrement: bool = False) -> None:
        """Detach nodes from an autoscaling group.

        Nodes whose instance no longer exists, or is no longer a member of the
        group, are skipped.

        Args:
            nodes: Node hostnames to detach
            group_name: Autoscaling group name
            decrement: Whether to lower the group's desired capacity
        """
        for node in nodes:
            log = bind_logger(self.logger, group=group_name, node=node)
            instance_id = self.get_instance_id(node)
            if not instance_id:
                log.info(f"Instance {node} does not exist. No detachment required")
                continue

            if not self.node_in_group(group_name, instance_id):
                log.info(f"Instance {instance_id} is not a member of the group, skipping detach")
                continue

            log.info(f"Detaching instance {instance_id}")
            try:
                self.autoscaling.detach_instances(
                    AutoScalingGroupName=group_name,
                    InstanceIds=[instance_id],
                    ShouldDecrementDesiredCapacity=decrement,
                )
            except (ClientError, BotoCoreError) as e:
                raise CloudError(
                    f"Failed to detach instance {instance_id} ({node}) from {group_name}: {e}"
                )

    def terminate_nodes(self, nodes: list[str]) -> None:
        """Terminate the instances backing the given node hostnames."""
        self.logger.info(f"Terminating {len(nodes)} nodes")
        for node in nodes:
            log = bind_logger(self.logger, node=node)
            instance_id = self.get_instance_id(node)
            if not instance_id:
                log.info(f"Instance {node} does not exist. No termination required")
                continue

            log.info(f"Terminating instance {instance_id}")
            try:
                self.ec2.terminate_instances(InstanceIds=[instance_id])
            except (ClientError, BotoCoreError) as e:
                raise CloudError(f"Failed to terminate instance {instance_id} ({node}): {e}")

    def wait_for_group_capacity(self, group_name: str, desired_capacity: int) -> dict:
        """Poll a group until its instance count equals the desired capacity.

        Returns:
            The group description at the time it reached capacity

        Raises:
            WaitTimeoutError: If the group does not reach capacity in time
        """
        log = bind_logger(self.logger, group=group_name)
        log.info(
            f"Waiting up to {self.ready_timeout} seconds for autoscaling group "
            f"{group_name} to become ready..."
        )
        deadline = time.monotonic() + self.ready_timeout
        while True:
            group = self.describe_group(group_name)
            if len(group.get("Instances", [])) == desired_capacity:
                return group

            if time.monotonic() >= deadline:
                raise WaitTimeoutError(
                    f"Timed out waiting for autoscaling group {group_name} to reach "
                    f"{desired_capacity} instance(s)"
                )
            log.info("Autoscaling group not updated with new instances, waiting...")
            time.sleep(self.poll_interval)

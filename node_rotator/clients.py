"""Construction of the AWS and Kubernetes API clients."""

import os
from dataclasses import dataclass
from pathlib import Path

from node_rotator.exceptions import CloudError, KubernetesError
from node_rotator.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class KubeClients:
    """Bundle of Kubernetes API clients used by the rotator.

    Attributes:
        core: CoreV1Api for nodes, pods and evictions
        apps: AppsV1Api for DaemonSet lookups
        apis: ApisApi for API group discovery
    """

    core: object
    apps: object
    apis: object


@dataclass
class AWSClients:
    """Bundle of boto3 clients used by the rotator."""

    autoscaling: object
    ec2: object


def load_kube_clients(kubeconfig: str | None = None) -> KubeClients:
    """Create Kubernetes clients from a kubeconfig, falling back to in-cluster config.

    Args:
        kubeconfig: Optional kubeconfig path; defaults to $KUBECONFIG or ~/.kube/config

    Returns:
        KubeClients bundle

    Raises:
        KubernetesError: If no usable configuration is found
    """
    from kubernetes import client, config
    from kubernetes.config.config_exception import ConfigException

    kubeconfig_path = Path(
        kubeconfig or os.environ.get("KUBECONFIG", "~/.kube/config")
    ).expanduser()

    try:
        if kubeconfig_path.exists():
            logger.debug(f"Loading kubeconfig from {kubeconfig_path}")
            config.load_kube_config(config_file=str(kubeconfig_path))
        else:
            logger.debug("Kubeconfig not found, trying in-cluster configuration")
            config.load_incluster_config()
    except ConfigException as e:
        raise KubernetesError(
            f"Failed to load Kubernetes configuration: {e}",
            f"Checked kubeconfig at {kubeconfig_path} and the in-cluster service account. "
            "Set KUBECONFIG or pass --kubeconfig.",
        )

    return KubeClients(core=client.CoreV1Api(), apps=client.AppsV1Api(), apis=client.ApisApi())


def load_aws_clients(region: str | None = None, profile: str | None = None) -> AWSClients:
    """Create boto3 autoscaling and EC2 clients.

    Args:
        region: Optional AWS region override
        profile: Optional named AWS profile

    Returns:
        AWSClients bundle

    Raises:
        CloudError: If the session cannot be created
    """
    import boto3
    from botocore.exceptions import BotoCoreError

    try:
        session = boto3.session.Session(profile_name=profile, region_name=region)
        return AWSClients(autoscaling=session.client("autoscaling"), ec2=session.client("ec2"))
    except BotoCoreError as e:
        raise CloudError(
            f"Failed to create AWS session: {e}",
            "Check AWS credentials, AWS_PROFILE and AWS_REGION",
        )

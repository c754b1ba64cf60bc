"""Data models for rotation requests, progress metadata and drain options."""

from node_rotator.models.cluster import Cluster, RotateClusterRequest
from node_rotator.models.drain import DrainOptions, PodDeletionDecision
from node_rotator.models.group import AutoscalingGroup, RotatorMetadata

__all__ = [
    "AutoscalingGroup",
    "Cluster",
    "DrainOptions",
    "PodDeletionDecision",
    "RotateClusterRequest",
    "RotatorMetadata",
]

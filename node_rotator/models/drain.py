"""Drain configuration and per-pod filter results."""

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict


class DrainOptions(BaseModel):
    """Options controlling which pods a drain may remove and how."""

    model_config = ConfigDict(frozen=True)

    # Continue even if there are pods not managed by a controller
    force: bool = False
    ignore_daemonsets: bool = False
    # Continue even if there are pods using emptyDir volumes
    delete_local_data: bool = False
    # Seconds to wait for eviction/deletion, 0 means no timeout
    timeout: int = 0
    # Negative means use the pod's own terminationGracePeriodSeconds
    grace_period_seconds: int = -1
    namespace: str = ""
    selector: str | None = None
    # Pods deleted longer ago than this many seconds are treated as gone, 0 disables
    skip_wait_for_delete_timeout: int = 0


@dataclass(frozen=True)
class PodDeletionDecision:
    """Result of running one pod filter.

    Attributes:
        include: Whether the pod may be removed
        warning: Optional reason logged without stopping the drain
        fatal: Optional reason that blocks the whole node's drain
    """

    include: bool
    warning: str | None = None
    fatal: str | None = None

"""Node rotation engine for autoscaling-group backed Kubernetes clusters."""

__version__ = "0.1.0"

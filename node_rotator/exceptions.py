"""Custom exceptions for the node rotator."""


class RotatorError(Exception):
    """Base exception for all node rotator errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ValidationError(RotatorError):
    """Exception raised for invalid rotation requests."""

    pass


class CloudError(RotatorError):
    """Exception raised for autoscaling or compute API errors."""

    pass


class KubernetesError(RotatorError):
    """Exception raised for Kubernetes API errors."""

    pass


class WaitTimeoutError(RotatorError):
    """Exception raised when a polling wait runs out of time."""

    pass


class EvictionTimeoutError(WaitTimeoutError):
    """A pod was still being rate limited when the drain deadline fired."""

    def __init__(self, pod_name: str, timeout: float):
        self.pod_name = pod_name
        self.timeout = timeout
        super().__init__(
            f"Error when evicting pod {pod_name!r}: global timeout reached: {timeout}s"
        )


class BlockingPodsError(RotatorError):
    """Exception raised when pods on a node prevent it from being drained.

    Attributes:
        reasons: Mapping of blocking reason to the names of the pods it applies to
    """

    def __init__(self, node: str, reasons: dict[str, list[str]]):
        self.node = node
        self.reasons = reasons
        message = "; ".join(f"{reason}: {', '.join(pods)}" for reason, pods in reasons.items())
        super().__init__(
            f"Cannot drain node {node!r}: {message}",
            "Retry with relaxed drain options (force, ignore-daemonsets, delete-local-data)",
        )


class PodRemovalError(RotatorError):
    """Aggregate of per-pod failures raised by a single drain call."""

    def __init__(self, node: str, errors: list[Exception]):
        self.node = node
        self.errors = errors
        if len(errors) == 1:
            message = str(errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in errors) + "]"
        super().__init__(f"Failed to remove pods from node {node!r}: {message}")


class DrainError(RotatorError):
    """Exception raised when a node could not be drained after all attempts."""

    def __init__(self, node: str, attempts: int, cause: Exception):
        self.node = node
        self.attempts = attempts
        super().__init__(f"Failed to drain node {node} after {attempts} attempt(s): {cause}")


class RotationError(RotatorError):
    """Exception raised when a cluster rotation stops.

    Attributes:
        metadata: Rotation progress at the time of the failure, suitable for
            resubmitting to resume the rotation
    """

    def __init__(self, message: str, metadata, details: str = None):
        self.metadata = metadata
        super().__init__(message, details)

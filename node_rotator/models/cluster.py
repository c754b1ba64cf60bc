"""Data models for cluster rotation requests."""

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from node_rotator.exceptions import ValidationError


class RotationParameters(BaseModel):
    """Rotation parameters shared by requests and the cluster value."""

    cluster_id: str
    max_scaling: int = 1
    rotate_masters: bool = True
    rotate_workers: bool = True
    max_drain_retries: int = 10
    evict_grace_period: int = 600
    wait_between_rotations: int = 60
    wait_between_drains: int = 60
    wait_between_pod_evictions: int = 1

    @field_validator("cluster_id")
    @classmethod
    def validate_cluster_id(cls, v: str) -> str:
        """Validate cluster ID is not empty."""
        if not v or not v.strip():
            raise ValueError("Cluster ID cannot be empty")
        return v

    @field_validator("max_scaling")
    @classmethod
    def validate_max_scaling(cls, v: int) -> int:
        """Validate at least one worker can be replaced at a time."""
        if v < 1:
            raise ValueError("Max scaling cannot be 0 or negative")
        return v

    @field_validator(
        "max_drain_retries",
        "evict_grace_period",
        "wait_between_rotations",
        "wait_between_drains",
        "wait_between_pod_evictions",
    )
    @classmethod
    def validate_not_negative(cls, v: int, info) -> int:
        """Validate retry counts and waits are not negative."""
        if v < 0:
            label = info.field_name.replace("_", " ").capitalize()
            raise ValueError(f"{label} cannot be negative")
        return v

    @classmethod
    def parse(cls, data: dict):
        """Validate raw parameters.

        Raises:
            ValidationError: If any field is missing or out of range
        """
        try:
            return cls(**data)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError("Rotate cluster request failed validation", problems)


class RotateClusterRequest(RotationParameters):
    """Parameters for a new cluster rotation."""

    @classmethod
    def load(cls, path: str) -> "RotateClusterRequest":
        """Load a request from a YAML or JSON file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.parse(data)


class Cluster(RotationParameters):
    """Rotation parameters for a cluster, fixed for the duration of a rotation."""

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_request(cls, request: RotateClusterRequest) -> "Cluster":
        """Build the cluster value from a validated request."""
        return cls(**request.model_dump())

    def validated(self) -> "Cluster":
        """Re-check the parameters of a cluster built without validation.

        Raises:
            ValidationError: If any parameter is out of range
        """
        return Cluster.parse(self.model_dump())

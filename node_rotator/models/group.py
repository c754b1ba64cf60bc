"""Autoscaling group state and resumable rotation metadata."""

from pydantic import BaseModel, Field, model_validator


class AutoscalingGroup(BaseModel):
    """An autoscaling group and the hostnames still waiting to be rotated."""

    name: str
    desired_capacity: int
    nodes: list[str] = Field(default_factory=list)

    @property
    def pending(self) -> bool:
        return bool(self.nodes)

    def pop_nodes(self, rotated: list[str]) -> None:
        """Remove nodes that completed rotation from the pending list."""
        done = set(rotated)
        self.nodes = [node for node in self.nodes if node not in done]


class RotatorMetadata(BaseModel):
    """Rotation progress for a cluster.

    Groups are processed in order, masters first. A group whose node list is
    empty has finished rotating and is skipped when the metadata is
    resubmitted after a failure.
    """

    master_groups: list[AutoscalingGroup] = Field(default_factory=list)
    worker_groups: list[AutoscalingGroup] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_nodes(self) -> "RotatorMetadata":
        """Validate a hostname is pending in at most one group."""
        seen = {}
        for group in self.master_groups + self.worker_groups:
            for node in group.nodes:
                if node in seen and seen[node] != group.name:
                    raise ValueError(
                        f"node '{node}' is pending in both '{seen[node]}' and '{group.name}'"
                    )
                seen[node] = group.name
        return self

    def is_empty(self) -> bool:
        """Return True if no groups have been discovered yet."""
        return not self.master_groups and not self.worker_groups

    def pending_nodes(self) -> int:
        return sum(len(g.nodes) for g in self.master_groups + self.worker_groups)

    def save(self, path: str) -> None:
        """Save metadata to a YAML file."""
        import yaml

        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls, path: str) -> "RotatorMetadata":
        """Load metadata from a YAML or JSON file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))

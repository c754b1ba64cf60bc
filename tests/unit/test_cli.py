"""Unit tests for CLI commands."""

from unittest.mock import Mock, patch

from typer.testing import CliRunner

from node_rotator.cli import app
from node_rotator.exceptions import KubernetesError, RotationError
from node_rotator.models import AutoscalingGroup, RotatorMetadata

runner = CliRunner()


def sample_metadata(pending=()):
    return RotatorMetadata(
        master_groups=[AutoscalingGroup(name="abc123-master", desired_capacity=1, nodes=[])],
        worker_groups=[
            AutoscalingGroup(name="abc123-worker", desired_capacity=2, nodes=list(pending))
        ],
    )


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "node-rotator version 0.1.0" in result.stdout


def test_rotate_help():
    """Test that rotate command help works."""
    result = runner.invoke(app, ["rotate", "--help"])
    assert result.exit_code == 0
    assert "--max-scaling" in result.stdout
    assert "--metadata" in result.stdout


def test_rotate_rejects_invalid_request_before_connecting():
    with patch("node_rotator.clients.load_kube_clients") as load_kube, patch(
        "node_rotator.clients.load_aws_clients"
    ) as load_aws:
        result = runner.invoke(app, ["rotate", "abc123", "--max-scaling=0"])

    assert result.exit_code == 1
    assert "failed validation" in result.stdout
    load_kube.assert_not_called()
    load_aws.assert_not_called()


def test_rotate_reports_client_errors():
    with patch(
        "node_rotator.clients.load_kube_clients",
        side_effect=KubernetesError("Failed to load kubeconfig"),
    ):
        result = runner.invoke(app, ["rotate", "abc123"])

    assert result.exit_code == 1
    assert "Failed to load kubeconfig" in result.stdout


def test_rotate_saves_metadata_on_success(tmp_path):
    path = tmp_path / "progress.yml"
    rotator = Mock()
    rotator.rotate.return_value = sample_metadata()

    with patch("node_rotator.clients.load_kube_clients"), patch(
        "node_rotator.clients.load_aws_clients"
    ), patch("node_rotator.rotator.Rotator.from_clients", return_value=rotator):
        result = runner.invoke(app, ["rotate", "abc123", "--max-scaling", "2", "-m", str(path)])

    assert result.exit_code == 0
    cluster, metadata = rotator.rotate.call_args.args
    assert cluster.cluster_id == "abc123"
    assert cluster.max_scaling == 2
    assert metadata is None
    assert RotatorMetadata.load(str(path)) == sample_metadata()


def test_rotate_resumes_and_saves_progress_on_failure(tmp_path):
    path = tmp_path / "progress.yml"
    sample_metadata(pending=["w1", "w2"]).save(str(path))
    rotator = Mock()
    rotator.rotate.side_effect = RotationError(
        "Failed to rotate autoscaling group abc123-worker", sample_metadata(pending=["w2"])
    )

    with patch("node_rotator.clients.load_kube_clients"), patch(
        "node_rotator.clients.load_aws_clients"
    ), patch("node_rotator.rotator.Rotator.from_clients", return_value=rotator):
        result = runner.invoke(app, ["rotate", "abc123", "-m", str(path)])

    assert result.exit_code == 1
    _, resumed = rotator.rotate.call_args.args
    assert resumed.worker_groups[0].nodes == ["w1", "w2"]
    assert RotatorMetadata.load(str(path)).worker_groups[0].nodes == ["w2"]
    assert "Failed to rotate" in result.stdout


def test_drain_rejects_negative_timeout():
    result = runner.invoke(app, ["drain", "node-1", "--timeout=-5"])
    assert result.exit_code == 1
    assert "cannot be negative" in result.stdout


def test_cordon_missing_node():
    kube = Mock()
    with patch("node_rotator.clients.load_kube_clients", return_value=kube), patch(
        "node_rotator.nodes.NodeManager.get_node", return_value=None
    ):
        result = runner.invoke(app, ["cordon", "ghost"])

    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_show_metadata(tmp_path):
    path = tmp_path / "progress.yml"
    sample_metadata(pending=["w2"]).save(str(path))

    result = runner.invoke(app, ["show-metadata", str(path)])

    assert result.exit_code == 0
    assert "abc123-worker" in result.stdout
    assert "Pending nodes:" in result.stdout


def test_show_metadata_missing_file():
    result = runner.invoke(app, ["show-metadata", "nonexistent.yml"])
    assert result.exit_code == 1
    assert "not found" in result.stdout

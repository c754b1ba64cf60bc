"""Main CLI entry point for node rotation."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from node_rotator.exceptions import RotationError, RotatorError, ValidationError
from node_rotator.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="node-rotator",
    help="Rotate the nodes of autoscaling-group backed Kubernetes clusters",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


@app.command()
def version() -> None:
    """Show version information."""
    from node_rotator import __version__

    typer.echo(f"node-rotator version {__version__}")


def _print_error(e: RotatorError) -> None:
    console.print(f"[red]Error:[/red] {e.message}")
    if e.details:
        console.print(f"\n{e.details}")


def _metadata_table(metadata) -> Table:
    table = Table(title="Rotation Progress")
    table.add_column("Type", style="magenta")
    table.add_column("Autoscaling Group", style="cyan")
    table.add_column("Desired", style="blue")
    table.add_column("Pending Nodes", style="yellow")
    table.add_column("Status")

    for kind, groups in (("master", metadata.master_groups), ("worker", metadata.worker_groups)):
        for group in groups:
            status = "[yellow]Pending[/yellow]" if group.nodes else "[green]✓ Rotated[/green]"
            table.add_row(
                kind,
                group.name,
                str(group.desired_capacity),
                ", ".join(group.nodes) or "-",
                status,
            )
    return table


@app.command()
def rotate(
    cluster_id: str = typer.Argument(..., help="ID of the cluster whose nodes are rotated"),
    masters: bool = typer.Option(True, "--masters/--no-masters", help="Rotate master groups"),
    workers: bool = typer.Option(True, "--workers/--no-workers", help="Rotate worker groups"),
    max_scaling: int = typer.Option(
        1, "--max-scaling", help="Worker nodes replaced at the same time"
    ),
    max_drain_retries: int = typer.Option(
        10, "--max-drain-retries", help="Attempts made to drain each node"
    ),
    evict_grace_period: int = typer.Option(
        600, "--evict-grace-period", help="Grace period in seconds given to evicted pods"
    ),
    wait_between_rotations: int = typer.Option(
        60, "--wait-between-rotations", help="Seconds to wait between worker batches"
    ),
    wait_between_drains: int = typer.Option(
        60, "--wait-between-drains", help="Seconds to wait between node drains in a batch"
    ),
    wait_between_pod_evictions: int = typer.Option(
        1, "--wait-between-pod-evictions", help="Seconds to wait between pod evictions"
    ),
    metadata_path: str | None = typer.Option(
        None,
        "--metadata",
        "-m",
        help="Progress file; resumed from if it exists and written after the run",
    ),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
    region: str | None = typer.Option(None, "--region", help="AWS region"),
    profile: str | None = typer.Option(None, "--profile", help="AWS profile"),
) -> None:
    """
    Rotate every node of a cluster's autoscaling groups, masters first.

    Master nodes are drained and replaced one at a time. Worker nodes are
    replaced in batches of --max-scaling and drained once their replacements
    are ready. If the rotation fails, the progress is written to --metadata
    so the same command resumes where it stopped.

    Examples:
        # Rotate all nodes of a cluster
        node-rotator rotate abc123

        # Only rotate workers, two at a time, keeping progress on disk
        node-rotator rotate abc123 --no-masters --max-scaling 2 -m progress.yml
    """
    from node_rotator.clients import load_aws_clients, load_kube_clients
    from node_rotator.models import Cluster, RotateClusterRequest, RotatorMetadata
    from node_rotator.rotator import Rotator

    try:
        request = RotateClusterRequest.parse(
            {
                "cluster_id": cluster_id,
                "max_scaling": max_scaling,
                "rotate_masters": masters,
                "rotate_workers": workers,
                "max_drain_retries": max_drain_retries,
                "evict_grace_period": evict_grace_period,
                "wait_between_rotations": wait_between_rotations,
                "wait_between_drains": wait_between_drains,
                "wait_between_pod_evictions": wait_between_pod_evictions,
            }
        )
    except ValidationError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    cluster = Cluster.from_request(request)

    metadata = None
    if metadata_path and Path(metadata_path).exists():
        try:
            metadata = RotatorMetadata.load(metadata_path)
        except Exception as e:
            console.print(f"[red]Error:[/red] Failed to load metadata from {metadata_path}: {e}")
            raise typer.Exit(code=1)
        console.print(
            f"Resuming rotation with {metadata.pending_nodes()} pending node(s) from {metadata_path}"
        )

    try:
        kube = load_kube_clients(kubeconfig)
        aws = load_aws_clients(region=region, profile=profile)
    except RotatorError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    rotator = Rotator.from_clients(kube, aws)
    console.print(f"[bold cyan]Rotating cluster {cluster.cluster_id}[/bold cyan]")

    try:
        metadata = rotator.rotate(cluster, metadata)
    except RotationError as e:
        if metadata_path:
            e.metadata.save(metadata_path)
            console.print(f"Progress saved to {metadata_path}")
        console.print(_metadata_table(e.metadata))
        _print_error(e)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Rotation interrupted by user[/yellow]")
        raise typer.Exit(code=130)

    if metadata_path:
        metadata.save(metadata_path)
    console.print(_metadata_table(metadata))
    console.print("\n[green]✓ All autoscaling groups rotated successfully[/green]")


@app.command()
def drain(
    node: str = typer.Argument(..., help="Name of the node to drain"),
    force: bool = typer.Option(False, "--force", help="Remove pods without a controller"),
    ignore_daemonsets: bool = typer.Option(
        False, "--ignore-daemonsets", help="Ignore DaemonSet-managed pods"
    ),
    delete_local_data: bool = typer.Option(
        False, "--delete-local-data", help="Remove pods using emptyDir volumes"
    ),
    timeout: int = typer.Option(0, "--timeout", help="Seconds to wait, 0 waits forever"),
    grace_period: int = typer.Option(
        -1, "--grace-period", help="Pod grace period in seconds, negative uses the pod's own"
    ),
    namespace: str = typer.Option("", "--namespace", "-n", help="Only drain pods in namespace"),
    selector: str | None = typer.Option(
        None, "--selector", "-l", help="Only drain pods matching the label selector"
    ),
    wait_between_evictions: int = typer.Option(
        0, "--wait-between-evictions", help="Seconds to wait between pod evictions"
    ),
    skip_wait_for_delete_timeout: int = typer.Option(
        0,
        "--skip-wait-for-delete-timeout",
        help="Treat pods deleted more than S seconds ago as gone, 0 disables",
    ),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
) -> None:
    """
    Cordon a node and evict its pods.

    Pods are evicted when the API server supports the eviction subresource
    (respecting disruption budgets) and deleted otherwise.
    """
    from node_rotator.clients import load_kube_clients
    from node_rotator.drain import DrainEngine
    from node_rotator.models import DrainOptions

    if timeout < 0 or wait_between_evictions < 0:
        console.print("[red]Error:[/red] --timeout and --wait-between-evictions cannot be negative")
        raise typer.Exit(code=1)

    options = DrainOptions(
        force=force,
        ignore_daemonsets=ignore_daemonsets,
        delete_local_data=delete_local_data,
        timeout=timeout,
        grace_period_seconds=grace_period,
        namespace=namespace,
        selector=selector,
        skip_wait_for_delete_timeout=skip_wait_for_delete_timeout,
    )

    try:
        kube = load_kube_clients(kubeconfig)
        engine = DrainEngine(kube.core, kube.apps, kube.apis)
        engine.drain(node, options, wait_between_evictions)
    except RotatorError as e:
        _print_error(e)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Drain interrupted by user[/yellow]")
        raise typer.Exit(code=130)

    console.print(f"[green]✓[/green] Node {node} drained")


def _set_schedulable(node: str, kubeconfig: str | None, cordon: bool) -> None:
    from node_rotator.clients import load_kube_clients
    from node_rotator.nodes import NodeManager

    try:
        manager = NodeManager(load_kube_clients(kubeconfig).core)
        node_obj = manager.get_node(node)
        if node_obj is None:
            console.print(f"[red]Error:[/red] Node {node} not found")
            raise typer.Exit(code=1)
        changed = manager.cordon(node_obj) if cordon else manager.uncordon(node_obj)
    except RotatorError as e:
        _print_error(e)
        raise typer.Exit(code=1)

    verb = "cordoned" if cordon else "uncordoned"
    if changed:
        console.print(f"[green]✓[/green] Node {node} {verb}")
    else:
        console.print(f"Node {node} already {verb}")


@app.command()
def cordon(
    node: str = typer.Argument(..., help="Name of the node to cordon"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
) -> None:
    """Mark a node as unschedulable."""
    _set_schedulable(node, kubeconfig, cordon=True)


@app.command()
def uncordon(
    node: str = typer.Argument(..., help="Name of the node to uncordon"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
) -> None:
    """Mark a node as schedulable."""
    _set_schedulable(node, kubeconfig, cordon=False)


@app.command()
def show_metadata(
    path: str = typer.Argument(..., help="Rotation progress file written by 'rotate --metadata'"),
) -> None:
    """Show the progress stored in a rotation metadata file."""
    from node_rotator.models import RotatorMetadata

    if not Path(path).exists():
        console.print(f"[red]Error:[/red] Metadata file not found: {path}")
        raise typer.Exit(code=1)

    try:
        metadata = RotatorMetadata.load(path)
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to load metadata from {path}: {e}")
        raise typer.Exit(code=1)

    console.print(_metadata_table(metadata))
    console.print(f"\n[bold]Pending nodes:[/bold] {metadata.pending_nodes()}")


if __name__ == "__main__":
    app()

# src/kubestrap/cli/app.py
from __future__ import annotations

import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, NoReturn, Optional

import typer
from pydantic import ValidationError

from kubestrap.config.loader import dump_plan, load_plan
from kubestrap.config.models import PlanConfig
from kubestrap.config.settings import Settings, load_settings
from kubestrap.engine.state import RunStatus
from kubestrap.errors import (
    ConfigError,
    KubestrapError,
    NotFound,
    PartialFailure,
    TeardownIncomplete,
)
from kubestrap.logging.log import init_logging
from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import Observer
from kubestrap.observers.logger import LoggerObserver
from kubestrap.orchestrator.facade import Orchestrator
from kubestrap.topology.store import default_topology
from kubestrap.utils.cancel import CancelToken


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Local Kubernetes cluster bootstrap CLI", no_args_is_help=True)


def build_orchestrator(settings: Settings, observers: List[Observer]) -> Orchestrator:
    return Orchestrator(settings, observers=observers)


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _fail(exc: KubestrapError) -> NoReturn:
    if isinstance(exc, PartialFailure):
        typer.secho(exc.describe(), fg=typer.colors.RED, err=True)
        typer.echo(f"\nFix the cause and resume with: kubestrap bootstrap --resume {exc.run_id}", err=True)
    else:
        typer.secho(f"[{type(exc).__name__}] {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=exc.exit_code)


def _settings() -> Settings:
    try:
        return load_settings()
    except KubestrapError as e:
        _fail(e)


@contextmanager
def _interruptible(cancel: CancelToken) -> Iterator[None]:
    """Ctrl-C cancels the run instead of killing in-flight commands."""

    def _handler(signum, frame):
        typer.secho("\ninterrupt received; finishing in-flight steps...", fg=typer.colors.YELLOW, err=True)
        cancel.cancel("interrupted by user")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def bootstrap(
    plan: Optional[Path] = typer.Option(None, "--plan", "-p", help="Cluster plan YAML"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Run id to continue"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Provision every node and wait until the cluster is healthy."""
    if plan is None and resume is None:
        raise typer.BadParameter("either --plan or --resume is required")

    settings = _settings()
    logger, log_path = init_logging(base_dir=settings.logs_dir, command="bootstrap", verbose=verbose)

    typer.echo("")
    typer.secho("Cluster bootstrap started", bold=True)
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    cancel = CancelToken()
    try:
        cfg: Optional[PlanConfig] = load_plan(plan) if plan else None
        orch = build_orchestrator(settings, [ConsoleObserver(verbose), LoggerObserver(logger)])
        with _interruptible(cancel):
            report = orch.bootstrap(cfg, resume=resume, cancel=cancel)
    except KubestrapError as e:
        logger.error("bootstrap failed: %s", e)
        _fail(e)

    cp = report.control_plane
    typer.echo("")
    typer.secho(f"Cluster is {report.status.value} (run {report.run_id})", fg=typer.colors.GREEN, bold=True)
    if cp is not None:
        typer.echo(f"  Control plane : {cp.id} ({cp.address})")
        typer.echo(f"  Check cluster : vagrant ssh {cp.id} -c 'kubectl get nodes'")
    if report.kubeconfig:
        typer.echo("  To use kubectl from this machine:")
        typer.echo(f"    export KUBECONFIG={report.kubeconfig}")
        typer.echo("    kubectl get nodes")


@app.command()
def teardown(
    run: Optional[str] = typer.Option(None, "--run", help="Run id (defaults to the latest run)"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip the confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Best-effort reverse of a bootstrap run. Safe to repeat."""
    settings = _settings()
    logger, _ = init_logging(base_dir=settings.logs_dir, command="teardown", verbose=verbose)
    orch = build_orchestrator(settings, [ConsoleObserver(verbose), LoggerObserver(logger)])

    try:
        current = orch.status(run)
    except NotFound:
        typer.echo("Nothing to tear down.")
        return
    except KubestrapError as e:
        _fail(e)

    active = current.status not in (RunStatus.NOT_STARTED, RunStatus.TORN_DOWN)
    if active and not force:
        typer.secho("This will reset every node of the cluster!", fg=typer.colors.YELLOW)
        typer.echo(f"  Run     : {current.run_id}")
        typer.echo(f"  Cluster : {current.plan.cluster_name} ({len(current.plan.nodes)} nodes)")
        typer.confirm("Are you sure you want to continue?", abort=True)

    try:
        report = orch.teardown(current.run_id)
        if report.errors:
            raise TeardownIncomplete(current.run_id, report.errors)
    except KubestrapError as e:
        _fail(e)

    if report.noop:
        typer.echo(f"Run {current.run_id} is {current.status.value}; nothing to tear down.")
    else:
        typer.secho(f"Run {report.run_id} torn down.", fg=typer.colors.GREEN)


@app.command()
def status(
    run: Optional[str] = typer.Option(None, "--run", help="Run id (defaults to the latest run)"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw run snapshot"),
):
    """Show the persisted state of a run."""
    orch = build_orchestrator(_settings(), [])
    try:
        snapshot = orch.status(run)
    except KubestrapError as e:
        _fail(e)

    if as_json:
        typer.echo(snapshot.model_dump_json(indent=2))
        return

    counts = snapshot.counts()
    typer.secho(f"Run {snapshot.run_id}", bold=True)
    typer.echo(f"  Cluster : {snapshot.plan.cluster_name}")
    typer.echo(f"  Status  : {snapshot.status.value}")
    typer.echo(f"  Updated : {snapshot.updated_at.isoformat(timespec='seconds')}")
    typer.echo("  Steps   : " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    if snapshot.failure:
        typer.secho(f"  Failure : {snapshot.failure}", fg=typer.colors.RED)
    for err in snapshot.teardown_errors:
        typer.secho(f"  Teardown error: {err}", fg=typer.colors.YELLOW)
    typer.echo("")
    for st in snapshot.steps.values():
        line = f"  {st.status.value:<10} {st.key} (attempts={st.attempts})"
        if st.last_error:
            line += f": {st.last_error}"
        typer.echo(line)


@app.command()
def init(
    workers: int = typer.Option(2, "--workers", min=0),
    memory: int = typer.Option(2048, "--memory", help="Memory per node (MB)"),
    cpus: int = typer.Option(2, "--cpus"),
    ip_prefix: str = typer.Option("192.168.56.", "--ip-prefix"),
    cluster_name: str = typer.Option("local-k8s", "--cluster-name"),
    output: Path = typer.Option(Path("kubestrap.yaml"), "--output", "-o"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write a starter plan: one control plane plus N workers."""
    if output.exists() and not force:
        typer.secho(f"{output} already exists (use --force to overwrite)", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    try:
        plan = PlanConfig(
            cluster_name=cluster_name,
            nodes=default_topology(workers=workers, memory_mb=memory, cpus=cpus, ip_prefix=ip_prefix),
        )
        dump_plan(plan, output)
    except ValidationError as e:
        _fail(ConfigError(f"invalid plan settings: {e}"))
    except KubestrapError as e:
        _fail(e)
    typer.echo(f"Plan with 1 control plane and {workers} worker(s) written to {output}")


if __name__ == "__main__":
    app()

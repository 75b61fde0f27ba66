# src/kubestrap/observers/console.py
import typer

from .events import BaseEvent, StepFailed, StepSucceeded, RunPhaseChanged


class ConsoleObserver:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        if isinstance(event, StepFailed):
            color = typer.colors.RED
        elif isinstance(event, (StepSucceeded, RunPhaseChanged)):
            color = typer.colors.GREEN
        elif not self.verbose:
            return
        else:
            color = typer.colors.BLUE
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "cluster"))
        typer.secho(f"[{d['ts']}] {k} {data}", fg=color)

"""ci-driver CLI."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import typer

from ci_driver.drivers import build_driver_from_env
from ci_driver.drivers.contracts import (
    ConfigurationError,
    ProviderDriver,
    ProviderRequestError,
    RunnerProvisionError,
    UnsupportedOperationError,
)
from ci_driver.shared.settings import DriverSettings, ExecutionContext

app = typer.Typer(add_completion=False, help="ci-driver: forge driver for CI/CD automation")

_HANDLED_ERRORS = (
    ConfigurationError,
    ProviderRequestError,
    RunnerProvisionError,
    UnsupportedOperationError,
    ValueError,
)


def _driver() -> ProviderDriver:
    return build_driver_from_env()


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _run(action: Callable[[ProviderDriver], Any]) -> Any:
    try:
        return action(_driver())
    except _HANDLED_ERRORS as exc:
        logging.getLogger(__name__).debug("command failed", exc_info=True)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@app.callback()
def main(log_level: str = typer.Option("INFO", "--log-level")) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def runners() -> None:
    """List self-hosted runners for the configured repository or organization."""
    found = _run(lambda driver: driver.runners())
    _emit([runner.model_dump() for runner in found])


@app.command("runner-start")
def runner_start(
    name: str = typer.Option(..., "--name"),
    labels: str = typer.Option("", "--labels"),
    workdir: Path = typer.Option(None, "--workdir"),
    single: bool = typer.Option(False, "--single"),
) -> None:
    """Provision, register and launch a self-hosted runner."""
    resolved_workdir = workdir or DriverSettings.from_env().runner_workdir
    label_set = {label.strip() for label in labels.split(",") if label.strip()}
    handle = _run(
        lambda driver: driver.start_runner(
            workdir=resolved_workdir, single=single, name=name, labels=label_set
        )
    )
    _emit({"pid": handle.pid, "workdir": str(handle.workdir), "config_done": handle.config_done})


@app.command("runner-unregister")
def runner_unregister(runner_id: int) -> None:
    """Remove a runner registration."""
    _run(lambda driver: driver.unregister_runner(runner_id))
    _emit({"runner_id": runner_id, "status": "unregistered"})


@app.command()
def rerun(run_id: int = typer.Option(None, "--run-id")) -> None:
    """Re-run a workflow run (defaults to the current one) unless it is in progress."""
    if run_id is None:
        context_run_id = ExecutionContext.from_env().run_id
        run_id = int(context_run_id) if context_run_id.isdigit() else None
    requested = _run(lambda driver: driver.pipeline_rerun(run_id))
    _emit({"run_id": run_id, "rerun_requested": requested})


@app.command()
def restart(job_id: int) -> None:
    """Best-effort re-run of the workflow run owning a job."""
    outcome = _run(lambda driver: driver.pipeline_restart(job_id))
    _emit(
        {
            "job_id": outcome.job_id,
            "run_id": outcome.run_id,
            "rerun_requested": outcome.rerun_requested,
            "error": outcome.error,
        }
    )


@app.command()
def job(
    status: str = typer.Option("queued", "--status"),
    time: str = typer.Option("", "--time"),
    runner_id: int = typer.Option(None, "--runner-id"),
) -> None:
    """Find the job running on a runner, or the one started nearest to a timestamp."""
    found = _run(lambda driver: driver.job(status=status, time=time or None, runner_id=runner_id))
    _emit(found.model_dump() if found is not None else None)


@app.command("auto-merge")
def auto_merge(
    pull_request_id: int,
    base: str = typer.Option(..., "--base"),
    mode: str = typer.Option("merge", "--mode"),
    message: str = typer.Option("", "--message"),
) -> None:
    """Enable auto-merge on a pull request, merging immediately when unavailable."""
    result = _run(
        lambda driver: driver.pr_auto_merge(
            pull_request_id=pull_request_id,
            merge_mode=mode,
            base=base,
            merge_message=message or None,
        )
    )
    _emit({"pull_request_id": pull_request_id, "result": result})


@app.command("git-config")
def git_config(
    user_name: str = typer.Option("", "--user-name"),
    user_email: str = typer.Option("", "--user-email"),
) -> None:
    """Print shell commands that point origin at the authenticated repository URL."""
    command = _run(
        lambda driver: driver.update_git_config(
            user_name=user_name or None, user_email=user_email or None
        )
    )
    typer.echo(command)


if __name__ == "__main__":
    app()

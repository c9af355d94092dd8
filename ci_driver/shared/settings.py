"""Process-level configuration and the CI execution context, read once from the environment."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


def _parse_bool(value: str | None) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DriverSettings:
    """Which provider to drive and where it lives."""

    provider: str
    repo_url: str | None
    runner_workdir: Path

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "DriverSettings":
        source = os.environ if env is None else env
        provider = (source.get("CI_DRIVER_PROVIDER") or "github").strip().lower()
        repo_url = (source.get("CI_DRIVER_REPO") or "").strip() or None
        if repo_url is None and source.get("GITHUB_REPOSITORY"):
            server = (source.get("GITHUB_SERVER_URL") or "https://github.com").rstrip("/")
            repo_url = f"{server}/{source['GITHUB_REPOSITORY']}"
        runner_workdir = Path(source.get("CI_DRIVER_RUNNER_WORKDIR", "./runner"))
        return cls(provider=provider, repo_url=repo_url, runner_workdir=runner_workdir)


@dataclass(frozen=True)
class ExecutionContext:
    """Ambient CI identity, built at process start and passed explicitly to drivers."""

    event_name: str = ""
    sha: str = ""
    ref: str = ""
    head_ref: str = ""
    run_id: str = ""
    token: str | None = None
    repository: str = ""
    pull_request_head_sha: str = ""
    ci: bool = False
    tpi_task: bool = False

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "ExecutionContext":
        source = os.environ if env is None else env
        return cls(
            event_name=source.get("GITHUB_EVENT_NAME", ""),
            sha=source.get("GITHUB_SHA", ""),
            ref=source.get("GITHUB_REF", ""),
            head_ref=source.get("GITHUB_HEAD_REF", ""),
            run_id=source.get("GITHUB_RUN_ID", ""),
            token=(source.get("GITHUB_TOKEN") or "").strip() or None,
            repository=source.get("GITHUB_REPOSITORY", ""),
            pull_request_head_sha=_pull_request_head_sha(source.get("GITHUB_EVENT_PATH")),
            ci=_parse_bool(source.get("CI")),
            tpi_task=_parse_bool(source.get("TPI_TASK")),
        )


def _pull_request_head_sha(event_path: str | None) -> str:
    if not event_path:
        return ""
    path = Path(event_path)
    if not path.is_file():
        return ""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return ""
    pull_request = payload.get("pull_request") if isinstance(payload, dict) else None
    if not isinstance(pull_request, dict):
        return ""
    head = pull_request.get("head")
    if not isinstance(head, dict):
        return ""
    return str(head.get("sha") or "")

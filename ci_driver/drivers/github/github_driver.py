"""GitHub implementation of the provider driver capability set."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from ci_driver.drivers.contracts import (
    Comment,
    ConfigurationError,
    Job,
    MergeRequestConfig,
    PullRequest,
    RepositoryCoordinate,
    RestartOutcome,
    Runner,
    RunnerProcess,
    UnsupportedOperationError,
)
from ci_driver.drivers.github.github_auth import GitHubAuth
from ci_driver.drivers.github.github_client import GitHubAPIClient
from ci_driver.drivers.github.identity import branch_name, require_repository, resolve_coordinate
from ci_driver.drivers.github.jobs import JobCorrelator
from ci_driver.drivers.github.merge import DEFAULT_TOLERATED_MERGE_ERRORS, MergeOrchestrator
from ci_driver.drivers.github.pipelines import RerunCoordinator
from ci_driver.drivers.github.runners import ArchiveFetcher, RunnerLifecycleManager
from ci_driver.shared.settings import ExecutionContext

logger = logging.getLogger(__name__)

CHECK_TITLE = "CML Report"
DEFAULT_USER_NAME = "GitHub Action"
DEFAULT_USER_EMAIL = "action@github.com"
_CI_ONLY_WARNING = "This command only works inside a Github runner or a Github app."


class GitHubDriver:
    name = "github"
    user_name = DEFAULT_USER_NAME
    user_email = DEFAULT_USER_EMAIL

    def __init__(
        self,
        repo_url: str | None,
        auth: GitHubAuth,
        context: ExecutionContext | None = None,
        client: GitHubAPIClient | None = None,
        fetcher: ArchiveFetcher | None = None,
        tolerated_merge_errors: Iterable[str] = DEFAULT_TOLERATED_MERGE_ERRORS,
    ) -> None:
        if not repo_url:
            raise ConfigurationError("repo not found")
        if not auth.token:
            raise ConfigurationError("token not found")
        self.repo_url = repo_url
        self.auth = auth
        self.context = context or ExecutionContext()
        self.client = client or GitHubAPIClient(auth=auth, repo_url=repo_url)

        parts = urlsplit(repo_url)
        self.web_url = f"{parts.scheme or 'https'}://{parts.netloc}"
        self.runner_manager = RunnerLifecycleManager(self.client, repo_url, fetcher=fetcher)
        self.jobs = JobCorrelator(self.client)
        self.merges = MergeOrchestrator(
            self.client, web_url=self.web_url, tolerated_errors=tolerated_merge_errors
        )
        self.reruns = RerunCoordinator(self.client)

    def owner_repo(self, uri: str | None = None) -> RepositoryCoordinate:
        return resolve_coordinate(uri or self.repo_url, self.context)

    def _repo_path(self) -> str:
        owner, repo = require_repository(self.owner_repo())
        return f"/repos/{owner}/{repo}"

    # Commit comments

    def comment_create(self, report: str, commit_sha: str) -> str:
        payload = self.client.request(
            "POST", f"{self._repo_path()}/commits/{commit_sha}/comments", json={"body": report}
        )
        return str(payload["html_url"])

    def comment_update(self, report: str, comment_id: int) -> str:
        payload = self.client.request(
            "PATCH", f"{self._repo_path()}/comments/{comment_id}", json={"body": report}
        )
        return str(payload["html_url"])

    def commit_comments(self, commit_sha: str) -> list[Comment]:
        rows = self.client.paginate(f"{self._repo_path()}/commits/{commit_sha}/comments")
        return [Comment(id=row["id"], body=row.get("body")) for row in rows]

    def commit_prs(self, commit_sha: str, state: str = "open") -> list[PullRequest]:
        rows = self.client.paginate(
            f"{self._repo_path()}/commits/{commit_sha}/pulls", params={"state": state}
        )
        if state != "all":
            rows = [row for row in rows if row.get("state", state) == state]
        return [_pull_request_from_payload(row) for row in rows]

    # Checks

    def check_create(
        self,
        report: str,
        head_sha: str,
        title: str = CHECK_TITLE,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        conclusion: str = "success",
        status: str = "completed",
    ) -> dict[str, Any]:
        if not self.context.ci or self.context.tpi_task:
            logger.warning(_CI_ONLY_WARNING)
        if self.auth.differs_from(self.context.token):
            logger.warning(
                "Your token is different than the GITHUB_TOKEN, this command does not work "
                "with PAT. %s",
                _CI_ONLY_WARNING,
            )
        now = datetime.now(timezone.utc)
        return self.client.request(
            "POST",
            f"{self._repo_path()}/check-runs",
            json={
                "head_sha": head_sha,
                "started_at": _isoformat(started_at or now),
                "completed_at": _isoformat(completed_at or now),
                "conclusion": conclusion,
                "status": status,
                "name": title,
                "output": {"title": title, "summary": report},
            },
        )

    def upload(self, *args: Any, **kwargs: Any) -> None:
        raise UnsupportedOperationError("Github does not support publish!")

    # Self-hosted runners

    def runner_token(self) -> str:
        return self.runner_manager.registration_token(self.owner_repo())

    def register_runner(self, *args: Any, **kwargs: Any) -> None:
        raise UnsupportedOperationError("Github does not support registerRunner!")

    def unregister_runner(self, runner_id: int) -> None:
        self.runner_manager.unregister(self.owner_repo(), runner_id)

    def start_runner(
        self, workdir: Path, single: bool, name: str, labels: set[str]
    ) -> RunnerProcess:
        return self.runner_manager.start(
            self.owner_repo(), workdir=Path(workdir), single=single, name=name, labels=labels
        )

    def runners(self) -> list[Runner]:
        return self.runner_manager.list(self.owner_repo())

    def runner_by_id(self, runner_id: int) -> Runner:
        return self.runner_manager.get(self.owner_repo(), runner_id)

    # Pull requests

    def pr_create(
        self,
        source: str,
        target: str,
        title: str,
        description: str,
        auto_merge: str | None = None,
    ) -> str:
        payload = self.client.request(
            "POST",
            f"{self._repo_path()}/pulls",
            json={"head": source, "base": target, "title": title, "body": description},
        )
        if auto_merge:
            self.pr_auto_merge(pull_request_id=payload["number"], merge_mode=auto_merge, base=target)
        return str(payload["html_url"])

    def is_protected(self, branch: str) -> bool:
        return self.merges.is_protected(self.owner_repo(), branch)

    def pr_auto_merge(
        self,
        pull_request_id: int,
        merge_mode: str,
        base: str,
        merge_message: str | None = None,
    ) -> str:
        config = MergeRequestConfig(
            pull_request_id=pull_request_id, merge_mode=merge_mode, merge_message=merge_message
        )
        return self.merges.enable_auto_merge(self.owner_repo(), config, base)

    def pr_comment_create(self, report: str, pr_number: int) -> str:
        payload = self.client.request(
            "POST", f"{self._repo_path()}/issues/{pr_number}/comments", json={"body": report}
        )
        return str(payload["html_url"])

    def pr_comment_update(self, report: str, comment_id: int) -> str:
        payload = self.client.request(
            "PATCH", f"{self._repo_path()}/issues/comments/{comment_id}", json={"body": report}
        )
        return str(payload["html_url"])

    def pr_comments(self, pr_number: int) -> list[Comment]:
        rows = self.client.paginate(f"{self._repo_path()}/issues/{pr_number}/comments")
        return [Comment(id=row["id"], body=row.get("body")) for row in rows]

    def prs(self, state: str = "open") -> list[PullRequest]:
        rows = self.client.paginate(f"{self._repo_path()}/pulls", params={"state": state})
        return [_pull_request_from_payload(row) for row in rows]

    # Pipelines

    def pipeline_rerun(self, run_id: int | None = None) -> bool:
        resolved = run_id if run_id is not None else self.context.run_id
        if not resolved:
            raise ConfigurationError("run id not found")
        return self.reruns.rerun(self.owner_repo(), int(resolved))

    def pipeline_restart(self, job_id: int) -> RestartOutcome:
        return self.reruns.restart_by_job(self.owner_repo(), job_id)

    def pipeline_jobs(self, job_ids: list[int]) -> list[Job]:
        return self.jobs.details(self.owner_repo(), job_ids)

    def job(
        self,
        status: str = "queued",
        time: datetime | str | None = None,
        runner_id: int | None = None,
    ) -> Job | None:
        return self.jobs.find(self.owner_repo(), status=status, time=time, runner_id=runner_id)

    # Git remote

    def update_git_config(
        self, user_name: str | None = None, user_email: str | None = None
    ) -> str:
        parts = urlsplit(self.repo_url)
        host = parts.hostname or ""
        netloc = f"token:{self.auth.token}@{host}"
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        remote = urlunsplit((parts.scheme or "https", netloc, parts.path, parts.query, ""))
        if not remote.endswith(".git"):
            remote = f"{remote}.git"

        return (
            f"git config --unset http.{self.web_url}/.extraheader;\n"
            f'git config user.name "{user_name or self.user_name}" &&\n'
            f'git config user.email "{user_email or self.user_email}" &&\n'
            f'git remote set-url origin "{remote}"'
        )


def _pull_request_from_payload(payload: dict[str, Any]) -> PullRequest:
    head = payload.get("head") or {}
    base = payload.get("base") or {}
    return PullRequest(
        url=str(payload.get("html_url", "")),
        source=branch_name(head.get("ref")),
        target=branch_name(base.get("ref")),
    )


def _isoformat(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")

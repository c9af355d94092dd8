"""Provider driver contracts: normalized records, error taxonomy, capability protocol."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConfigurationError(ValueError):
    """Missing credential, repository or provider; raised before any network call."""


class UnsupportedOperationError(RuntimeError):
    """The operation has no mapping for this provider and is never attempted."""


class ProviderRequestError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RetryableGitHubError(ProviderRequestError):
    def __init__(
        self,
        message: str,
        reason_code: str,
        retry_after_s: float | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reason_code = reason_code
        self.retry_after_s = retry_after_s


class ThrottlingRetryExhausted(ProviderRequestError):
    def __init__(self, message: str, attempts: int, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.attempts = attempts


class RunnerProvisionError(RuntimeError):
    """Runner binary acquisition, unpacking or configuration failed."""


class MergeMode(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


class RepositoryCoordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str = Field(min_length=1)
    repo: str | None = None

    @property
    def is_organization(self) -> bool:
        return self.repo is None

    @property
    def slug(self) -> str:
        if self.repo is None:
            return self.owner
        return f"{self.owner}/{self.repo}"


class Runner(BaseModel):
    id: int
    name: str
    labels: list[str] = Field(default_factory=list)
    online: bool = False
    busy: bool = False


class WorkflowRun(BaseModel):
    id: int
    status: str


class Job(BaseModel):
    id: int
    date: datetime | None = None
    run_id: int | None = None
    runner_id: int | None = None
    status: str = ""


class PullRequest(BaseModel):
    url: str
    source: str | None = None
    target: str | None = None


class Comment(BaseModel):
    id: int
    body: str | None = None


class MergeRequestConfig(BaseModel):
    pull_request_id: int = Field(ge=1)
    merge_mode: MergeMode
    merge_message: str | None = None

    @field_validator("merge_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def commit_headline(self) -> str | None:
        if not self.merge_message:
            return None
        return self.merge_message.partition("\n\n")[0]

    @property
    def commit_body(self) -> str | None:
        if not self.merge_message:
            return None
        _headline, separator, body = self.merge_message.partition("\n\n")
        return body if separator else None


@dataclass
class RunnerProcess:
    config_done: bool
    workdir: Path
    process: subprocess.Popen | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None


@dataclass(frozen=True)
class RestartOutcome:
    job_id: int
    run_id: int
    rerun_requested: bool = False
    error: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.error)


class ProviderDriver(Protocol):
    """Capability set consumed by the provider-agnostic orchestrator."""

    name: str

    def owner_repo(self, uri: str | None = None) -> RepositoryCoordinate: ...

    def comment_create(self, report: str, commit_sha: str) -> str: ...

    def comment_update(self, report: str, comment_id: int) -> str: ...

    def commit_comments(self, commit_sha: str) -> list[Comment]: ...

    def commit_prs(self, commit_sha: str, state: str = "open") -> list[PullRequest]: ...

    def check_create(self, report: str, head_sha: str, **options: Any) -> dict[str, Any]: ...

    def upload(self, *args: Any, **kwargs: Any) -> None: ...

    def runner_token(self) -> str: ...

    def register_runner(self, *args: Any, **kwargs: Any) -> None: ...

    def unregister_runner(self, runner_id: int) -> None: ...

    def start_runner(
        self, workdir: Path, single: bool, name: str, labels: set[str]
    ) -> RunnerProcess: ...

    def runners(self) -> list[Runner]: ...

    def runner_by_id(self, runner_id: int) -> Runner: ...

    def pr_create(
        self,
        source: str,
        target: str,
        title: str,
        description: str,
        auto_merge: str | None = None,
    ) -> str: ...

    def pr_auto_merge(
        self,
        pull_request_id: int,
        merge_mode: str,
        base: str,
        merge_message: str | None = None,
    ) -> str: ...

    def is_protected(self, branch: str) -> bool: ...

    def pr_comment_create(self, report: str, pr_number: int) -> str: ...

    def pr_comment_update(self, report: str, comment_id: int) -> str: ...

    def pr_comments(self, pr_number: int) -> list[Comment]: ...

    def prs(self, state: str = "open") -> list[PullRequest]: ...

    def pipeline_rerun(self, run_id: int | None = None) -> bool: ...

    def pipeline_restart(self, job_id: int) -> RestartOutcome: ...

    def pipeline_jobs(self, job_ids: list[int]) -> list[Job]: ...

    def job(
        self,
        status: str = "queued",
        time: datetime | str | None = None,
        runner_id: int | None = None,
    ) -> Job | None: ...

    def update_git_config(
        self, user_name: str | None = None, user_email: str | None = None
    ) -> str: ...


__all__ = [
    "Comment",
    "ConfigurationError",
    "Job",
    "MergeMode",
    "MergeRequestConfig",
    "ProviderDriver",
    "ProviderRequestError",
    "PullRequest",
    "RepositoryCoordinate",
    "RestartOutcome",
    "RetryableGitHubError",
    "Runner",
    "RunnerProcess",
    "RunnerProvisionError",
    "ThrottlingRetryExhausted",
    "UnsupportedOperationError",
    "WorkflowRun",
]

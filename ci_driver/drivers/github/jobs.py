"""Workflow job lookup and job/runner correlation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from ci_driver.drivers.contracts import Job, RepositoryCoordinate
from ci_driver.drivers.github.github_client import GitHubAPIClient
from ci_driver.drivers.github.identity import require_repository

logger = logging.getLogger(__name__)

# Human state names the provider does not accept verbatim.
_STATUS_ALIASES = {"running": "in_progress"}
DEFAULT_JOB_STATUS = "queued"
MAX_FAN_OUT = 8


def provider_status(status: str | None) -> str:
    value = (status or DEFAULT_JOB_STATUS).strip().lower()
    return _STATUS_ALIASES.get(value, value)


def parse_timestamp(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def correlate_by_id(jobs: Iterable[Job], runner_id: int) -> Job | None:
    for job in jobs:
        if job.runner_id == runner_id:
            return job
    return None


def correlate_by_time(jobs: Iterable[Job], target: datetime | str) -> Job | None:
    """Job whose start time is nearest to ``target``; the earliest candidate wins ties."""
    moment = parse_timestamp(target)
    best: Job | None = None
    best_delta: float | None = None
    for job in jobs:
        if job.date is None:
            continue
        delta = abs((parse_timestamp(job.date) - moment).total_seconds())
        if best_delta is None or delta < best_delta:
            best, best_delta = job, delta
    return best


def job_from_payload(payload: dict[str, Any]) -> Job:
    return Job(
        id=payload["id"],
        date=payload.get("started_at"),
        run_id=payload.get("run_id"),
        runner_id=payload.get("runner_id"),
        status=str(payload.get("status") or ""),
    )


class JobCorrelator:
    def __init__(self, client: GitHubAPIClient, max_workers: int = MAX_FAN_OUT) -> None:
        self.client = client
        self.max_workers = max(1, max_workers)

    def candidates(self, coordinate: RepositoryCoordinate, status: str | None = None) -> list[Job]:
        """All jobs in ``status`` across the runs in that status, in run order."""
        owner, repo = require_repository(coordinate)
        wanted = provider_status(status)
        runs = self.client.paginate(
            f"/repos/{owner}/{repo}/actions/runs",
            params={"status": wanted},
            items_key="workflow_runs",
        )
        run_ids = [run["id"] for run in runs if "id" in run]
        if not run_ids:
            return []

        def _jobs_for_run(run_id: int) -> list[dict[str, Any]]:
            return self.client.paginate(
                f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs", items_key="jobs"
            )

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(run_ids)), thread_name_prefix="ci-driver-jobs"
        ) as executor:
            per_run = list(executor.map(_jobs_for_run, run_ids))

        jobs = [
            job_from_payload(row)
            for rows in per_run
            for row in rows
            if str(row.get("status") or "") == wanted
        ]
        logger.info(
            "collected job candidates repo=%s status=%s runs=%s jobs=%s",
            coordinate.slug,
            wanted,
            len(run_ids),
            len(jobs),
        )
        return jobs

    def find(
        self,
        coordinate: RepositoryCoordinate,
        status: str | None = None,
        time: datetime | str | None = None,
        runner_id: int | None = None,
    ) -> Job | None:
        if (time is None) == (runner_id is None):
            raise ValueError("Exactly one of time or runner_id is required")
        jobs = self.candidates(coordinate, status)
        if time is not None:
            return correlate_by_time(jobs, time)
        return correlate_by_id(jobs, int(runner_id))

    def details(self, coordinate: RepositoryCoordinate, job_ids: Sequence[int]) -> list[Job]:
        owner, repo = require_repository(coordinate)
        if not job_ids:
            return []

        def _fetch(job_id: int) -> Job:
            payload = self.client.request("GET", f"/repos/{owner}/{repo}/actions/jobs/{job_id}")
            return job_from_payload(payload)

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(job_ids)), thread_name_prefix="ci-driver-jobs"
        ) as executor:
            return list(executor.map(_fetch, job_ids))

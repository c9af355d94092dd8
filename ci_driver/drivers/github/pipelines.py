"""Workflow run re-runs guarded against duplicating an in-flight run."""

from __future__ import annotations

import logging

import requests

from ci_driver.drivers.contracts import (
    ProviderRequestError,
    RepositoryCoordinate,
    RestartOutcome,
    WorkflowRun,
)
from ci_driver.drivers.github.github_client import GitHubAPIClient
from ci_driver.drivers.github.identity import require_repository

logger = logging.getLogger(__name__)

RUNNING_STATUS = "in_progress"


class RerunCoordinator:
    def __init__(self, client: GitHubAPIClient) -> None:
        self.client = client

    def workflow_run(self, coordinate: RepositoryCoordinate, run_id: int) -> WorkflowRun:
        owner, repo = require_repository(coordinate)
        payload = self.client.request("GET", f"/repos/{owner}/{repo}/actions/runs/{run_id}")
        return WorkflowRun(id=payload.get("id", run_id), status=str(payload.get("status") or ""))

    def rerun(self, coordinate: RepositoryCoordinate, run_id: int) -> bool:
        """Request a re-run unless the run is in progress; returns whether one was requested."""
        run = self.workflow_run(coordinate, run_id)
        if run.status == RUNNING_STATUS:
            logger.info("run already in progress, skipping rerun run_id=%s", run_id)
            return False
        self._request_rerun(coordinate, run_id)
        return True

    def restart_by_job(self, coordinate: RepositoryCoordinate, job_id: int) -> RestartOutcome:
        """Best-effort rerun of the run owning ``job_id``.

        Failures of the rerun request itself are reported on the outcome, not raised.
        """
        owner, repo = require_repository(coordinate)
        job = self.client.request("GET", f"/repos/{owner}/{repo}/actions/jobs/{job_id}")
        run_id = int(job["run_id"])
        run = self.workflow_run(coordinate, run_id)
        if run.status == RUNNING_STATUS:
            return RestartOutcome(job_id=job_id, run_id=run_id)
        try:
            self._request_rerun(coordinate, run_id)
        except (ProviderRequestError, requests.RequestException) as exc:
            logger.warning(
                "rerun request failed job_id=%s run_id=%s error=%s", job_id, run_id, exc
            )
            return RestartOutcome(job_id=job_id, run_id=run_id, error=str(exc))
        return RestartOutcome(job_id=job_id, run_id=run_id, rerun_requested=True)

    def _request_rerun(self, coordinate: RepositoryCoordinate, run_id: int) -> None:
        owner, repo = require_repository(coordinate)
        self.client.request("POST", f"/repos/{owner}/{repo}/actions/runs/{run_id}/rerun")
        logger.info("rerun requested repo=%s run_id=%s", coordinate.slug, run_id)

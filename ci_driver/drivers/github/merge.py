"""Pull-request auto-merge with a bounded fallback to an immediate merge."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Literal

from ci_driver.drivers.contracts import (
    MergeRequestConfig,
    ProviderRequestError,
    RepositoryCoordinate,
)
from ci_driver.drivers.github.github_client import GitHubAPIClient
from ci_driver.drivers.github.identity import require_repository

logger = logging.getLogger(__name__)

# Provider messages meaning "auto-merge is unavailable here", matched case-insensitively.
DEFAULT_TOLERATED_MERGE_ERRORS: tuple[str, ...] = (
    "can't enable auto-merge for this pull request",
    "cannot enable auto-merge for this pull request",
    "protected branch rules not configured for this branch",
    "pull request is in clean status",
)

ENABLE_AUTO_MERGE_MUTATION = """
mutation autoMerge(
  $pullRequestId: ID!
  $mergeMethod: PullRequestMergeMethod
  $commitHeadline: String
  $commitBody: String
) {
  enablePullRequestAutoMerge(
    input: {
      pullRequestId: $pullRequestId
      mergeMethod: $mergeMethod
      commitHeadline: $commitHeadline
      commitBody: $commitBody
    }
  ) {
    clientMutationId
  }
}
"""

MergeResult = Literal["auto_merge_enabled", "merged"]


def is_tolerated(message: str, tolerated: Iterable[str]) -> bool:
    lowered = message.lower()
    return any(fragment.lower() in lowered for fragment in tolerated)


class MergeOrchestrator:
    def __init__(
        self,
        client: GitHubAPIClient,
        web_url: str = "https://github.com",
        tolerated_errors: Iterable[str] = DEFAULT_TOLERATED_MERGE_ERRORS,
    ) -> None:
        self.client = client
        self.web_url = web_url.rstrip("/")
        self.tolerated_errors = tuple(tolerated_errors)

    def is_protected(self, coordinate: RepositoryCoordinate, branch: str) -> bool:
        owner, repo = require_repository(coordinate)
        try:
            self.client.request("GET", f"/repos/{owner}/{repo}/branches/{branch}/protection")
        except ProviderRequestError as exc:
            if exc.status_code == 404 and exc.message == "Branch not protected":
                return False
            raise
        return True

    def enable_auto_merge(
        self, coordinate: RepositoryCoordinate, config: MergeRequestConfig, base: str
    ) -> MergeResult:
        owner, repo = require_repository(coordinate)
        pull = self.client.request("GET", f"/repos/{owner}/{repo}/pulls/{config.pull_request_id}")
        node_id = pull["node_id"]

        try:
            self.client.graphql(
                ENABLE_AUTO_MERGE_MUTATION,
                {
                    "pullRequestId": node_id,
                    "mergeMethod": config.merge_mode.value.upper(),
                    "commitHeadline": config.commit_headline,
                    "commitBody": config.commit_body,
                },
            )
        except ProviderRequestError as exc:
            if not is_tolerated(exc.message, self.tolerated_errors):
                raise
            self._warn_auto_merge_unavailable(coordinate, base)
            self.merge(coordinate, config)
            return "merged"

        logger.info(
            "auto-merge enabled repo=%s pull_request=%s mode=%s",
            coordinate.slug,
            config.pull_request_id,
            config.merge_mode.value,
        )
        return "auto_merge_enabled"

    def merge(self, coordinate: RepositoryCoordinate, config: MergeRequestConfig) -> None:
        owner, repo = require_repository(coordinate)
        payload: dict[str, str] = {"merge_method": config.merge_mode.value}
        if config.commit_headline is not None:
            payload["commit_title"] = config.commit_headline
        if config.commit_body is not None:
            payload["commit_message"] = config.commit_body
        self.client.request(
            "PUT", f"/repos/{owner}/{repo}/pulls/{config.pull_request_id}/merge", json=payload
        )
        logger.info(
            "merged pull request repo=%s pull_request=%s mode=%s",
            coordinate.slug,
            config.pull_request_id,
            config.merge_mode.value,
        )

    def _warn_auto_merge_unavailable(self, coordinate: RepositoryCoordinate, base: str) -> None:
        settings_url = f"{self.web_url}/{coordinate.slug}/settings"
        if self.is_protected(coordinate, base):
            logger.warning(
                "Failed to enable auto-merge: Enable the feature in your repository settings: "
                "%s#merge_types_auto_merge. Trying to merge immediately...",
                settings_url,
            )
        else:
            logger.warning(
                "Failed to enable auto-merge: Set up branch protection and add "
                "\"required status checks\" for branch '%s': %s/branches. "
                "Trying to merge immediately...",
                base,
                settings_url,
            )

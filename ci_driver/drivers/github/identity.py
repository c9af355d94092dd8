"""Repository coordinates and ref names derived from URLs or the execution context."""

from __future__ import annotations

import re
from urllib.parse import urlparse

from ci_driver.drivers.contracts import ConfigurationError, RepositoryCoordinate
from ci_driver.shared.settings import ExecutionContext

_REF_PREFIX_RE = re.compile(r"^refs/(?:heads|tags)/")


def branch_name(ref: str | None) -> str | None:
    if not ref:
        return ref
    return _REF_PREFIX_RE.sub("", ref, count=1)


def resolve_coordinate(
    uri: str | None, context: ExecutionContext | None = None
) -> RepositoryCoordinate:
    """Owner and optional repository from a repository/organization URL, else the context."""
    if uri:
        segments = [segment for segment in urlparse(uri).path.split("/") if segment]
    elif context is not None and context.repository:
        segments = [segment for segment in context.repository.split("/") if segment]
    else:
        segments = []
    if not segments:
        raise ConfigurationError("repository not found")

    owner = segments[0]
    repo = segments[1] if len(segments) > 1 else None
    if repo is not None and repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return RepositoryCoordinate(owner=owner, repo=repo or None)


def require_repository(coordinate: RepositoryCoordinate) -> tuple[str, str]:
    if coordinate.repo is None:
        raise ConfigurationError(
            f"'{coordinate.owner}' is an organization; this operation needs a repository URL"
        )
    return coordinate.owner, coordinate.repo


def current_sha(context: ExecutionContext) -> str:
    if context.event_name == "pull_request" and context.pull_request_head_sha:
        return context.pull_request_head_sha
    return context.sha


def current_branch(context: ExecutionContext) -> str | None:
    return branch_name(context.head_ref or context.ref or None)

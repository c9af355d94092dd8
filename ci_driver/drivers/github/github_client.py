"""GitHub REST/GraphQL client with bounded throttling retries and pagination."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import requests

from ci_driver.drivers.contracts import (
    ConfigurationError,
    ProviderRequestError,
    RetryableGitHubError,
    ThrottlingRetryExhausted,
)
from ci_driver.drivers.github.github_auth import GitHubAuth

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
RATE_LIMITED = "github_rate_limited"
MAX_THROTTLE_RETRIES = 5
DEFAULT_RETRY_AFTER_S = 1.0


def api_base_url_for(repo_url: str | None) -> str:
    """REST base URL for a repository URL; GitHub Enterprise hosts use ``/api/v3``."""
    if not repo_url:
        return GITHUB_API_URL
    host = urlparse(repo_url).hostname or ""
    if not host or host == "github.com" or host.endswith(".github.com"):
        return GITHUB_API_URL
    return f"https://{host}/api/v3"


class GitHubAPIClient:
    def __init__(
        self,
        auth: GitHubAuth,
        repo_url: str | None = None,
        base_url: str | None = None,
        session: requests.Session | None = None,
        max_retries: int = MAX_THROTTLE_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
        timeout_s: float = 15,
    ) -> None:
        if not auth.token:
            raise ConfigurationError("token not found")
        self.auth = auth
        self.base_url = (base_url or api_base_url_for(repo_url)).rstrip("/")
        self.session = session or requests.Session()
        self.max_retries = max(0, int(max_retries))
        self.timeout_s = timeout_s
        self._sleep = sleep

    @property
    def graphql_url(self) -> str:
        if self.base_url.endswith("/api/v3"):
            return f"{self.base_url[: -len('/v3')]}/graphql"
        return f"{self.base_url}/graphql"

    def request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        payload, _headers = self.request_with_headers(
            method=method, path=path, json=json, params=params
        )
        return payload

    def request_with_headers(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[Any, dict[str, Any]]:
        attempt = 0
        while True:
            try:
                return self._send(method=method, path=path, json=json, params=params)
            except RetryableGitHubError as exc:
                if exc.reason_code != RATE_LIMITED:
                    raise
                if attempt >= self.max_retries:
                    raise ThrottlingRetryExhausted(
                        f"GitHub API throttling persisted after {attempt} retries: {exc.message}",
                        attempts=attempt,
                        status_code=exc.status_code,
                    ) from exc
                attempt += 1
                delay = exc.retry_after_s if exc.retry_after_s is not None else DEFAULT_RETRY_AFTER_S
                logger.info(
                    "github throttled, retrying method=%s path=%s attempt=%s delay_s=%s",
                    method,
                    path,
                    attempt,
                    delay,
                )
                self._sleep(delay)

    def paginate(
        self,
        path: str,
        params: dict[str, str] | None = None,
        items_key: str | None = None,
        per_page: int = 100,
    ) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": str(per_page), "page": str(page)})
            payload = self.request("GET", path, params=query)
            batch = payload.get(items_key, []) if items_key and isinstance(payload, dict) else payload
            if not isinstance(batch, list):
                break
            rows.extend(row for row in batch if isinstance(row, dict))
            if len(batch) < per_page:
                break
            page += 1
        return rows

    def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload = self.request(
            "POST", self.graphql_url, json={"query": query, "variables": variables}
        )
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            messages = [
                str(error.get("message", "")) for error in errors if isinstance(error, dict)
            ]
            raise ProviderRequestError("; ".join(message for message in messages if message))
        data = payload.get("data") if isinstance(payload, dict) else None
        return data or {}

    def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[Any, dict[str, Any]]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"Bearer {self.auth.token}",
        }
        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}{path}"

        response = self.session.request(
            method=method,
            url=url,
            headers=headers,
            json=json,
            params=params,
            timeout=self.timeout_s,
        )
        response_headers = dict(response.headers or {})

        if response.status_code in {429, 403} and _looks_like_rate_limit(response):
            raise RetryableGitHubError(
                _error_message(response),
                reason_code=RATE_LIMITED,
                retry_after_s=_retry_after(response_headers),
                status_code=response.status_code,
            )
        if response.status_code in {500, 502, 503, 504}:
            raise RetryableGitHubError(
                _error_message(response),
                reason_code=f"github_{response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderRequestError(_error_message(response), status_code=response.status_code)

        if not response.content:
            return {}, response_headers
        return response.json(), response_headers


def _json_or_none(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(response: requests.Response) -> str:
    payload = _json_or_none(response)
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return f"GitHub API request failed with HTTP {response.status_code}"


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if str((response.headers or {}).get("X-RateLimit-Remaining", "")) == "0":
        return True
    message = _error_message(response).lower()
    return "rate limit" in message or "abuse" in message


def _retry_after(headers: dict[str, Any]) -> float | None:
    parsed = _parse_seconds(headers.get("Retry-After"))
    if parsed is not None:
        return parsed
    reset_at = _parse_seconds(headers.get("X-RateLimit-Reset"))
    if reset_at is None:
        return None
    return max(0.0, reset_at - time.time())


def _parse_seconds(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None

"""Self-hosted GitHub Actions runner provisioning, launch, listing and removal."""

from __future__ import annotations

import contextlib
import logging
import os
import platform
import subprocess
import tarfile
from pathlib import Path
from typing import Any, Protocol

import requests

from ci_driver.drivers.contracts import (
    RepositoryCoordinate,
    Runner,
    RunnerProcess,
    RunnerProvisionError,
)
from ci_driver.drivers.github.github_client import GitHubAPIClient

logger = logging.getLogger(__name__)

RUNNER_MARKER = ".runner"
RUNNER_ARCHIVE = "actions-runner.tar.gz"
RUNNER_RELEASES_URL = "https://api.github.com/repos/actions/runner/releases/latest"
RUNNER_DOWNLOAD_URL = (
    "https://github.com/actions/runner/releases/download/{tag}/actions-runner-{arch}-{version}.tar.gz"
)


def runner_arch(system: str | None = None, machine: str | None = None) -> str:
    system_name = (system or platform.system()).lower()
    machine_name = (machine or platform.machine()).lower()
    os_part = "osx" if system_name == "darwin" else "linux"
    cpu_part = "arm64" if machine_name in {"arm64", "aarch64"} else "x64"
    return f"{os_part}-{cpu_part}"


class ArchiveFetcher(Protocol):
    def latest_version(self) -> str: ...

    def download(self, url: str, destination: Path) -> None: ...

    def extract(self, archive: Path, workdir: Path) -> None: ...


class RunnerArchiveFetcher:
    """Fetches and unpacks the upstream actions/runner release archive."""

    def __init__(self, session: requests.Session | None = None, timeout_s: float = 60) -> None:
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def latest_version(self) -> str:
        response = self.session.get(RUNNER_RELEASES_URL, timeout=self.timeout_s)
        response.raise_for_status()
        tag = str(response.json().get("tag_name") or "").strip()
        if not tag:
            raise ValueError("actions/runner latest release has no tag_name")
        return tag

    def download(self, url: str, destination: Path) -> None:
        with self.session.get(url, stream=True, timeout=self.timeout_s) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=1 << 20):
                    if chunk:
                        handle.write(chunk)

    def extract(self, archive: Path, workdir: Path) -> None:
        with tarfile.open(archive, "r:gz") as bundle:
            bundle.extractall(workdir, filter="data")


def _make_world_accessible(root: Path) -> None:
    os.chmod(root, 0o777)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in (*dirnames, *filenames):
            path = Path(dirpath) / name
            if not path.is_symlink():
                os.chmod(path, 0o777)


class RunnerLifecycleManager:
    def __init__(
        self,
        client: GitHubAPIClient,
        repo_url: str,
        fetcher: ArchiveFetcher | None = None,
    ) -> None:
        self.client = client
        self.repo_url = repo_url
        self.fetcher = fetcher or RunnerArchiveFetcher()

    def provision(self, workdir: Path) -> bool:
        """Download and unpack the runner unless ``workdir`` is already configured.

        Returns True when the configuration marker was already present, in which
        case nothing is fetched, whatever version is installed.
        """
        workdir = Path(workdir)
        marker = workdir / RUNNER_MARKER
        if marker.exists():
            logger.info("runner already configured workdir=%s", workdir)
            return True

        archive = workdir / RUNNER_ARCHIVE
        try:
            workdir.mkdir(parents=True, exist_ok=True)
            tag = self.fetcher.latest_version()
            url = RUNNER_DOWNLOAD_URL.format(tag=tag, arch=runner_arch(), version=tag.lstrip("v"))
            logger.info("downloading runner version=%s url=%s", tag, url)
            self.fetcher.download(url, archive)
            self.fetcher.extract(archive, workdir)
            _make_world_accessible(workdir)
        except Exception as exc:
            for leftover in (archive, marker):
                with contextlib.suppress(OSError):
                    leftover.unlink(missing_ok=True)
            raise RunnerProvisionError(f"Failed preparing GitHub runner: {exc}") from exc
        return False

    def registration_token(self, coordinate: RepositoryCoordinate) -> str:
        if coordinate.repo is None:
            path = f"/orgs/{coordinate.owner}/actions/runners/registration-token"
        else:
            path = f"/repos/{coordinate.owner}/{coordinate.repo}/actions/runners/registration-token"
        payload = self.client.request("POST", path)
        return str(payload["token"])

    def start(
        self,
        coordinate: RepositoryCoordinate,
        workdir: Path,
        single: bool,
        name: str,
        labels: set[str],
    ) -> RunnerProcess:
        workdir = Path(workdir).resolve()
        config_done = self.provision(workdir)
        env = {**os.environ, "RUNNER_ALLOW_RUNASROOT": "1"}

        if not config_done:
            token = self.registration_token(coordinate)
            command = [
                str(workdir / "config.sh"),
                "--unattended",
                "--token",
                token,
                "--url",
                self.repo_url,
                "--name",
                name,
                "--labels",
                ",".join(sorted(labels)),
                "--work",
                str(workdir / "_work"),
            ]
            if single:
                command.append("--ephemeral")
            logger.info(
                "configuring runner name=%s labels=%s ephemeral=%s workdir=%s",
                name,
                ",".join(sorted(labels)),
                single,
                workdir,
            )
            try:
                subprocess.run(
                    command, cwd=workdir, env=env, check=True, capture_output=True, text=True
                )
            except (OSError, subprocess.CalledProcessError) as exc:
                detail = getattr(exc, "stderr", "") or str(exc)
                raise RunnerProvisionError(f"Failed preparing GitHub runner: {detail}") from exc

        try:
            process = subprocess.Popen(
                [str(workdir / "run.sh")],
                cwd=workdir,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise RunnerProvisionError(f"Failed preparing GitHub runner: {exc}") from exc
        logger.info("runner launched pid=%s workdir=%s", process.pid, workdir)
        return RunnerProcess(config_done=config_done, workdir=workdir, process=process)

    def list(self, coordinate: RepositoryCoordinate) -> list[Runner]:
        rows = self.client.paginate(
            f"{_scope_path(coordinate)}/actions/runners", items_key="runners"
        )
        logger.info("listed runners scope=%s count=%s", coordinate.slug, len(rows))
        return [runner_from_payload(row) for row in rows]

    def get(self, coordinate: RepositoryCoordinate, runner_id: int) -> Runner:
        payload = self.client.request(
            "GET", f"{_scope_path(coordinate)}/actions/runners/{runner_id}"
        )
        return runner_from_payload(payload)

    def unregister(self, coordinate: RepositoryCoordinate, runner_id: int) -> None:
        logger.info("unregistering runner scope=%s runner_id=%s", coordinate.slug, runner_id)
        self.client.request("DELETE", f"{_scope_path(coordinate)}/actions/runners/{runner_id}")


def runner_from_payload(payload: dict[str, Any]) -> Runner:
    labels = [
        str(label.get("name", ""))
        for label in payload.get("labels", [])
        if isinstance(label, dict)
    ]
    return Runner(
        id=payload["id"],
        name=str(payload.get("name", "")),
        labels=labels,
        online=payload.get("status") == "online",
        busy=bool(payload.get("busy", False)),
    )


def _scope_path(coordinate: RepositoryCoordinate) -> str:
    if coordinate.repo is None:
        return f"/orgs/{coordinate.owner}"
    return f"/repos/{coordinate.owner}/{coordinate.repo}"

from __future__ import annotations

import io
import stat
import subprocess
import tarfile
from pathlib import Path
from typing import Any

import pytest
import requests

from ci_driver.drivers.contracts import (
    ProviderRequestError,
    RepositoryCoordinate,
    RunnerProvisionError,
)
from ci_driver.drivers.github import runners as runners_module
from ci_driver.drivers.github.github_auth import GitHubAuth
from ci_driver.drivers.github.github_client import GitHubAPIClient
from ci_driver.drivers.github.runners import (
    RunnerArchiveFetcher,
    RunnerLifecycleManager,
    runner_arch,
)
from tests.fakes import FakeResponse, FakeSession

REPO = RepositoryCoordinate(owner="octo", repo="demo")
ORG = RepositoryCoordinate(owner="octo-org")
REPO_URL = "https://github.com/octo/demo"
RELEASE_PATH = "/repos/actions/runner/releases/latest"


class FakeFetcher:
    def __init__(self, fail_on: str = "") -> None:
        self.fail_on = fail_on
        self.calls: list[tuple[str, Any]] = []

    def latest_version(self) -> str:
        self.calls.append(("latest_version", None))
        return "v2.311.0"

    def download(self, url: str, destination: Path) -> None:
        self.calls.append(("download", url))
        destination.write_bytes(b"archive")
        if self.fail_on == "download":
            raise OSError("connection reset")

    def extract(self, archive: Path, workdir: Path) -> None:
        self.calls.append(("extract", archive))
        if self.fail_on == "extract":
            raise ValueError("not a gzip file")
        (workdir / "config.sh").write_text("#!/bin/sh\n")
        (workdir / "run.sh").write_text("#!/bin/sh\n")
        (workdir / "bin").mkdir()
        (workdir / "bin" / "Runner.Listener").write_text("")


class FakePopen:
    def __init__(self, args: list[str], **kwargs: Any) -> None:
        self.args = args
        self.kwargs = kwargs
        self.pid = 4321


def _manager(session: FakeSession | None = None, fetcher: FakeFetcher | None = None):
    client = GitHubAPIClient(
        auth=GitHubAuth(token="t"), session=session or FakeSession(), sleep=lambda _s: None
    )
    return RunnerLifecycleManager(client, REPO_URL, fetcher=fetcher or FakeFetcher())


@pytest.fixture
def spawned(monkeypatch: pytest.MonkeyPatch) -> dict[str, list[Any]]:
    recorded: dict[str, list[Any]] = {"run": [], "popen": []}

    def fake_run(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        recorded["run"].append((command, kwargs))
        return subprocess.CompletedProcess(command, 0, "", "")

    def fake_popen(command: list[str], **kwargs: Any) -> FakePopen:
        process = FakePopen(command, **kwargs)
        recorded["popen"].append(process)
        return process

    monkeypatch.setattr(runners_module.subprocess, "run", fake_run)
    monkeypatch.setattr(runners_module.subprocess, "Popen", fake_popen)
    return recorded


@pytest.mark.parametrize(
    ("system", "machine", "expected"),
    [
        ("Linux", "x86_64", "linux-x64"),
        ("Linux", "aarch64", "linux-arm64"),
        ("Darwin", "x86_64", "osx-x64"),
        ("Darwin", "arm64", "osx-arm64"),
    ],
)
def test_runner_arch(system: str, machine: str, expected: str) -> None:
    assert runner_arch(system, machine) == expected


def test_provision_skips_download_when_marker_exists(tmp_path: Path) -> None:
    (tmp_path / ".runner").write_text("{}")
    fetcher = FakeFetcher()

    assert _manager(fetcher=fetcher).provision(tmp_path) is True
    assert fetcher.calls == []


def test_provision_downloads_extracts_and_opens_permissions(tmp_path: Path) -> None:
    workdir = tmp_path / "runner"
    fetcher = FakeFetcher()

    assert _manager(fetcher=fetcher).provision(workdir) is False

    assert [name for name, _ in fetcher.calls] == ["latest_version", "download", "extract"]
    url = fetcher.calls[1][1]
    assert url.startswith("https://github.com/actions/runner/releases/download/v2.311.0/")
    assert url.endswith(f"actions-runner-{runner_arch()}-2.311.0.tar.gz")
    mode = stat.S_IMODE((workdir / "bin" / "Runner.Listener").stat().st_mode)
    assert mode == 0o777
    assert not (workdir / ".runner").exists()


@pytest.mark.parametrize("fail_on", ["download", "extract"])
def test_provision_failure_is_wrapped_and_leaves_no_marker(tmp_path: Path, fail_on: str) -> None:
    with pytest.raises(RunnerProvisionError, match="Failed preparing GitHub runner") as exc_info:
        _manager(fetcher=FakeFetcher(fail_on=fail_on)).provision(tmp_path)

    assert exc_info.value.__cause__ is not None
    assert not (tmp_path / ".runner").exists()
    assert not (tmp_path / "actions-runner.tar.gz").exists()


def test_provision_wraps_failure_when_workdir_is_a_file(tmp_path: Path) -> None:
    workdir = tmp_path / "runner"
    workdir.write_text("not a directory")
    fetcher = FakeFetcher()

    with pytest.raises(RunnerProvisionError, match="Failed preparing GitHub runner"):
        _manager(fetcher=fetcher).provision(workdir)

    assert fetcher.calls == []
    assert workdir.read_text() == "not a directory"


def _tarball(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            bundle.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _download_path(tag: str = "v2.311.0") -> str:
    version = tag.lstrip("v")
    return f"/actions/runner/releases/download/{tag}/actions-runner-{runner_arch()}-{version}.tar.gz"


def test_archive_fetcher_reads_latest_release_tag() -> None:
    session = FakeSession({("GET", RELEASE_PATH): FakeResponse(200, {"tag_name": " v2.311.0 "})})

    assert RunnerArchiveFetcher(session=session).latest_version() == "v2.311.0"
    assert session.calls[0]["url"] == "https://api.github.com" + RELEASE_PATH


@pytest.mark.parametrize("payload", [{}, {"tag_name": ""}, {"tag_name": None}])
def test_archive_fetcher_rejects_release_without_tag(payload: dict[str, Any]) -> None:
    session = FakeSession({("GET", RELEASE_PATH): FakeResponse(200, payload)})

    with pytest.raises(ValueError, match="no tag_name"):
        RunnerArchiveFetcher(session=session).latest_version()


def test_archive_fetcher_streams_download_to_disk(tmp_path: Path) -> None:
    body = b"x" * 2048
    session = FakeSession({("GET", _download_path()): FakeResponse(200, body)})
    destination = tmp_path / "actions-runner.tar.gz"

    RunnerArchiveFetcher(session=session).download(
        "https://github.com" + _download_path(), destination
    )

    assert destination.read_bytes() == body
    assert session.calls[0]["stream"] is True


def test_archive_fetcher_download_raises_on_http_error(tmp_path: Path) -> None:
    session = FakeSession({("GET", _download_path()): FakeResponse(404, b"")})

    with pytest.raises(requests.HTTPError):
        RunnerArchiveFetcher(session=session).download(
            "https://github.com" + _download_path(), tmp_path / "archive.tar.gz"
        )


def test_archive_fetcher_extracts_tree(tmp_path: Path) -> None:
    archive = tmp_path / "actions-runner.tar.gz"
    archive.write_bytes(
        _tarball({"config.sh": b"#!/bin/sh\n", "bin/Runner.Listener": b"listener"})
    )
    workdir = tmp_path / "runner"
    workdir.mkdir()

    RunnerArchiveFetcher(session=FakeSession()).extract(archive, workdir)

    assert (workdir / "config.sh").read_bytes() == b"#!/bin/sh\n"
    assert (workdir / "bin" / "Runner.Listener").read_bytes() == b"listener"


def test_archive_fetcher_refuses_members_outside_workdir(tmp_path: Path) -> None:
    archive = tmp_path / "evil.tar.gz"
    archive.write_bytes(_tarball({"../escaped.sh": b"boom"}))
    workdir = tmp_path / "runner"
    workdir.mkdir()

    with pytest.raises(tarfile.TarError):
        RunnerArchiveFetcher(session=FakeSession()).extract(archive, workdir)

    assert not (tmp_path / "escaped.sh").exists()


def test_provision_with_release_archive(tmp_path: Path) -> None:
    session = FakeSession(
        {
            ("GET", RELEASE_PATH): FakeResponse(200, {"tag_name": "v2.311.0"}),
            ("GET", _download_path()): FakeResponse(
                200, _tarball({"run.sh": b"#!/bin/sh\n", "bin/Runner.Listener": b""})
            ),
        }
    )
    workdir = tmp_path / "runner"
    manager = _manager(fetcher=RunnerArchiveFetcher(session=session))

    assert manager.provision(workdir) is False

    assert (workdir / "run.sh").exists()
    assert stat.S_IMODE((workdir / "bin" / "Runner.Listener").stat().st_mode) == 0o777
    assert not (workdir / ".runner").exists()


def test_provision_with_corrupt_release_archive_leaves_no_marker(tmp_path: Path) -> None:
    session = FakeSession(
        {
            ("GET", RELEASE_PATH): FakeResponse(200, {"tag_name": "v2.311.0"}),
            ("GET", _download_path()): FakeResponse(200, b"not a tarball"),
        }
    )
    workdir = tmp_path / "runner"
    manager = _manager(fetcher=RunnerArchiveFetcher(session=session))

    with pytest.raises(RunnerProvisionError, match="Failed preparing GitHub runner") as exc_info:
        manager.provision(workdir)

    assert isinstance(exc_info.value.__cause__, tarfile.TarError)
    assert not (workdir / ".runner").exists()
    assert not (workdir / "actions-runner.tar.gz").exists()


def test_registration_token_scopes() -> None:
    session = FakeSession(
        {
            ("POST", "/repos/octo/demo/actions/runners/registration-token"): FakeResponse(
                201, {"token": "repo-token"}
            ),
            ("POST", "/orgs/octo-org/actions/runners/registration-token"): FakeResponse(
                201, {"token": "org-token"}
            ),
        }
    )
    manager = _manager(session)

    assert manager.registration_token(REPO) == "repo-token"
    assert manager.registration_token(ORG) == "org-token"
    assert [call["path"] for call in session.calls] == [
        "/repos/octo/demo/actions/runners/registration-token",
        "/orgs/octo-org/actions/runners/registration-token",
    ]


def test_start_configures_and_launches_fresh_runner(
    tmp_path: Path, spawned: dict[str, list[Any]]
) -> None:
    session = FakeSession(
        {
            ("POST", "/repos/octo/demo/actions/runners/registration-token"): FakeResponse(
                201, {"token": "reg-token"}
            )
        }
    )

    handle = _manager(session).start(
        REPO, workdir=tmp_path, single=True, name="gpu-1", labels={"gpu", "cml"}
    )

    command, kwargs = spawned["run"][0]
    assert command[0] == str(tmp_path.resolve() / "config.sh")
    assert command[1:] == [
        "--unattended",
        "--token",
        "reg-token",
        "--url",
        REPO_URL,
        "--name",
        "gpu-1",
        "--labels",
        "cml,gpu",
        "--work",
        str(tmp_path.resolve() / "_work"),
        "--ephemeral",
    ]
    assert kwargs["env"]["RUNNER_ALLOW_RUNASROOT"] == "1"
    process = spawned["popen"][0]
    assert process.args == [str(tmp_path.resolve() / "run.sh")]
    assert process.kwargs["start_new_session"] is True
    assert handle.pid == 4321
    assert handle.config_done is False


def test_start_only_launches_when_already_configured(
    tmp_path: Path, spawned: dict[str, list[Any]]
) -> None:
    (tmp_path / ".runner").write_text("{}")
    session = FakeSession()
    fetcher = FakeFetcher()

    handle = _manager(session, fetcher).start(
        REPO, workdir=tmp_path, single=False, name="cpu", labels=set()
    )

    assert handle.config_done is True
    assert fetcher.calls == []
    assert spawned["run"] == []
    assert len(spawned["popen"]) == 1
    assert session.calls == []


def test_start_wraps_configuration_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def failing_run(command: list[str], **kwargs: Any) -> None:
        raise subprocess.CalledProcessError(1, command, output="", stderr="Invalid token")

    monkeypatch.setattr(runners_module.subprocess, "run", failing_run)
    session = FakeSession(
        {
            ("POST", "/repos/octo/demo/actions/runners/registration-token"): FakeResponse(
                201, {"token": "reg-token"}
            )
        }
    )

    with pytest.raises(RunnerProvisionError, match="Invalid token"):
        _manager(session).start(REPO, workdir=tmp_path, single=False, name="x", labels=set())


def test_list_normalizes_runners_for_organization() -> None:
    session = FakeSession(
        {
            ("GET", "/orgs/octo-org/actions/runners"): FakeResponse(
                200,
                {
                    "total_count": 2,
                    "runners": [
                        {
                            "id": 1,
                            "name": "a",
                            "status": "online",
                            "busy": True,
                            "labels": [{"id": 1, "name": "self-hosted"}, {"id": 2, "name": "gpu"}],
                        },
                        {"id": 2, "name": "b", "status": "offline", "busy": False, "labels": []},
                    ],
                },
            )
        }
    )

    found = _manager(session).list(ORG)

    assert [(runner.id, runner.online, runner.busy) for runner in found] == [
        (1, True, True),
        (2, False, False),
    ]
    assert found[0].labels == ["self-hosted", "gpu"]
    assert session.calls[0]["params"]["per_page"] == "100"


def test_get_runner_for_repository() -> None:
    session = FakeSession(
        {
            ("GET", "/repos/octo/demo/actions/runners/9"): FakeResponse(
                200, {"id": 9, "name": "r9", "status": "online", "busy": False, "labels": []}
            )
        }
    )
    runner = _manager(session).get(REPO, 9)
    assert runner.name == "r9"
    assert runner.online is True


def test_unregister_uses_scope_and_propagates_errors() -> None:
    session = FakeSession(
        {
            ("DELETE", "/orgs/octo-org/actions/runners/3"): FakeResponse(204, None),
            ("DELETE", "/repos/octo/demo/actions/runners/4"): FakeResponse(
                404, {"message": "Not Found"}
            ),
        }
    )
    manager = _manager(session)

    manager.unregister(ORG, 3)
    with pytest.raises(ProviderRequestError, match="Not Found"):
        manager.unregister(REPO, 4)

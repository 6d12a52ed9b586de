"""Tests for the channel bridge and its JSON-lines server."""

import io
import json
import shutil
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_harbor import bridge as bridge_module
from git_harbor.bridge import Bridge, check_ssh, repo_id_for
from git_harbor.config import Config
from git_harbor.errors import GitError
from git_harbor.git_wrapper import GitRepo
from git_harbor.models import RepoInfo, StatusSnapshot
from git_harbor.registry import RepositoryRegistry

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def bridge(tmp_path: Path, config: Config) -> Bridge:
    return Bridge(registry=RepositoryRegistry(tmp_path / "repos.json"), config=config)


@pytest.fixture
def fake_repo(mocker: MagicMock, tmp_path: Path) -> Path:
    """Makes any directory look like a repository without running git."""
    path = tmp_path / "project"
    path.mkdir()
    mocker.patch.object(GitRepo, "is_repo", return_value=True)
    mocker.patch.object(
        GitRepo,
        "repo_info",
        autospec=True,
        side_effect=lambda self: RepoInfo(
            path=str(self.path), name=self.path.name, is_repo=True, current_branch="main"
        ),
    )
    return path


def _open(bridge: Bridge, path: Path) -> str:
    response = bridge.handle("git:openRepo", {"path": str(path)})
    assert "result" in response, response
    return response["result"]["repoId"]


# --- Dispatch and error normalization ---


def test_unknown_channel(bridge: Bridge) -> None:
    response = bridge.handle("git:teleport", {})
    assert response == {"error": "Unknown channel: git:teleport", "code": "unknown_channel"}


def test_params_must_be_an_object(bridge: Bridge) -> None:
    assert bridge.handle("repository:getAll", ["nope"])["code"] == "bad_request"  # type: ignore[arg-type]


def test_missing_required_parameter(bridge: Bridge) -> None:
    response = bridge.handle("repository:add", {})
    assert response["code"] == "bad_request"
    assert "path" in response["error"]


def test_repository_operation_without_session(bridge: Bridge) -> None:
    """Verifies that repository-scoped channels fail cleanly with nothing open."""
    for channel in ("git:status", "git:log", "git:commit", "git:push"):
        response = bridge.handle(channel, {"message": "x"})
        assert response["code"] == "no_repository", channel


def test_unknown_repo_id(bridge: Bridge, tmp_path: Path) -> None:
    response = bridge.handle("git:status", {"repoId": str(tmp_path)})
    assert response["code"] == "no_repository"


def test_registry_not_found_is_reported(bridge: Bridge) -> None:
    response = bridge.handle("repository:toggleFavorite", {"path": "/not/registered"})
    assert response["code"] == "not_found"
    assert "/not/registered" in response["error"]


def test_open_plain_directory_is_rejected(bridge: Bridge, tmp_path: Path) -> None:
    response = bridge.handle("git:openRepo", {"path": str(tmp_path)})
    assert response["code"] == "not_a_repository"
    assert bridge.sessions == {}


def test_git_errors_carry_git_message(
    bridge: Bridge, fake_repo: Path, mocker: MagicMock
) -> None:
    repo_id = _open(bridge, fake_repo)
    mocker.patch.object(
        GitRepo, "checkout", side_effect=GitError("error: pathspec 'nope' did not match")
    )

    response = bridge.handle("git:checkout", {"repoId": repo_id, "branch": "nope"})

    assert response == {
        "error": "error: pathspec 'nope' did not match",
        "code": "git_error",
    }


# --- Registry channels ---


def test_registry_channels(bridge: Bridge, tmp_path: Path) -> None:
    """Verifies the add/toggle/update/getAll/remove lifecycle over the bridge."""
    path = str(tmp_path / "alpha")

    added = bridge.handle("repository:add", {"path": path})["result"]
    assert added["name"] == "alpha"
    assert added["isFavorite"] is False

    toggled = bridge.handle("repository:toggleFavorite", {"path": path})["result"]
    assert toggled["isFavorite"] is True

    renamed = bridge.handle(
        "repository:update", {"path": path, "data": {"name": "Alpha"}}
    )["result"]
    assert renamed["name"] == "Alpha"

    listing = bridge.handle("repository:getAll")["result"]
    assert [r["path"] for r in listing] == [repo_id_for(path)]

    assert bridge.handle("repository:remove", {"path": path}) == {"result": True}
    assert bridge.handle("repository:getAll") == {"result": []}


# --- Sessions ---


def test_open_registers_and_stamps_repository(bridge: Bridge, fake_repo: Path) -> None:
    repo_id = _open(bridge, fake_repo)

    assert repo_id == repo_id_for(fake_repo)
    record = bridge.registry.get(repo_id)
    assert record.last_opened


def test_sessions_are_independent(
    bridge: Bridge, fake_repo: Path, tmp_path: Path, mocker: MagicMock
) -> None:
    """Verifies that two open repositories are addressed by their own ids."""
    other = tmp_path / "other"
    other.mkdir()
    first, second = _open(bridge, fake_repo), _open(bridge, other)

    seen = []
    mocker.patch.object(
        GitRepo,
        "status",
        autospec=True,
        side_effect=lambda self: seen.append(self.path) or StatusSnapshot(current="main"),
    )

    bridge.handle("git:status", {"repoId": second})
    bridge.handle("git:status", {"repoId": first})
    assert seen == [Path(second), Path(first)]

    assert bridge.handle("git:closeRepo", {"repoId": first}) == {"result": True}
    assert bridge.handle("git:status", {"repoId": first})["code"] == "no_repository"
    assert "result" in bridge.handle("git:status", {"repoId": second})


def test_select_repo_cancelled(bridge: Bridge, mocker: MagicMock) -> None:
    mocker.patch("git_harbor.bridge.dialogs.select_directory", return_value=None)
    assert bridge.handle("git:selectRepo") == {"result": None}
    assert bridge.sessions == {}


def test_dialogs_without_tk_are_io_errors(bridge: Bridge, mocker: MagicMock) -> None:
    """Verifies that a missing Tk is reported instead of escaping the dispatcher."""
    mocker.patch.dict("sys.modules", {"tkinter": None, "tkinter.filedialog": None})

    for channel in ("fs:selectDirectory", "fs:selectFile", "git:selectRepo"):
        response = bridge.handle(channel)
        assert response["code"] == "io_error", channel
        assert "Tk is not available" in response["error"]


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="X11 display required")
def test_dialogs_without_display_are_io_errors(
    bridge: Bridge, monkeypatch: pytest.MonkeyPatch
) -> None:
    pytest.importorskip("tkinter")
    monkeypatch.delenv("DISPLAY", raising=False)

    response = bridge.handle("fs:selectDirectory")

    assert response["code"] == "io_error"
    assert "Cannot open a dialog" in response["error"]


# --- Behaviour switches ---


def test_commit_auto_push_failure_is_not_fatal(
    bridge: Bridge, fake_repo: Path, mocker: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    bridge.config.git.auto_push_after_commit = True
    repo_id = _open(bridge, fake_repo)
    mocker.patch.object(GitRepo, "commit", return_value="abc123")
    mocker.patch.object(GitRepo, "push", side_effect=GitError("rejected"))

    response = bridge.handle("git:commit", {"repoId": repo_id, "message": "Work"})

    assert response == {"result": {"commitHash": "abc123", "pushed": False}}
    assert "Auto-push after commit failed: rejected" in caplog.text


def test_commit_without_auto_push(bridge: Bridge, fake_repo: Path, mocker: MagicMock) -> None:
    repo_id = _open(bridge, fake_repo)
    mocker.patch.object(GitRepo, "commit", return_value="abc123")
    push = mocker.patch.object(GitRepo, "push")

    response = bridge.handle("git:commit", {"repoId": repo_id, "message": "Work"})

    assert response == {"result": {"commitHash": "abc123", "pushed": False}}
    push.assert_not_called()


def test_pull_auto_stash_restores_changes_on_failure(
    bridge: Bridge, fake_repo: Path, mocker: MagicMock
) -> None:
    """Verifies that stashed work is popped even when the pull itself fails."""
    bridge.config.git.auto_stash_before_pull = True
    repo_id = _open(bridge, fake_repo)
    mocker.patch.object(
        GitRepo, "status", return_value=StatusSnapshot(modified=["a.txt"])
    )
    mocker.patch.object(GitRepo, "rev_parse", side_effect=[None, "abc123"])
    stash = mocker.patch.object(GitRepo, "stash")
    pop = mocker.patch.object(GitRepo, "stash_pop")
    mocker.patch.object(GitRepo, "pull", side_effect=GitError("conflict"))

    response = bridge.handle("git:pull", {"repoId": repo_id})

    assert response["code"] == "git_error"
    stash.assert_called_once()
    pop.assert_called_once()


def test_pull_auto_stash_leaves_older_stash_alone(
    bridge: Bridge, fake_repo: Path, mocker: MagicMock
) -> None:
    """Verifies that nothing is popped when the stash saved nothing new."""
    bridge.config.git.auto_stash_before_pull = True
    repo_id = _open(bridge, fake_repo)
    mocker.patch.object(
        GitRepo, "status", return_value=StatusSnapshot(not_added=["scratch.txt"])
    )
    mocker.patch.object(GitRepo, "rev_parse", return_value="0ld5ta5h")
    mocker.patch.object(GitRepo, "stash")
    pop = mocker.patch.object(GitRepo, "stash_pop")
    mocker.patch.object(GitRepo, "pull")

    assert bridge.handle("git:pull", {"repoId": repo_id}) == {"result": True}
    pop.assert_not_called()


def test_pull_clean_tree_skips_stash(
    bridge: Bridge, fake_repo: Path, mocker: MagicMock
) -> None:
    bridge.config.git.auto_stash_before_pull = True
    repo_id = _open(bridge, fake_repo)
    mocker.patch.object(GitRepo, "status", return_value=StatusSnapshot())
    stash = mocker.patch.object(GitRepo, "stash")
    pull = mocker.patch.object(GitRepo, "pull")

    assert bridge.handle("git:pull", {"repoId": repo_id}) == {"result": True}
    stash.assert_not_called()
    assert pull.call_args.args[0].remote == "origin"


def test_push_uses_configured_default_remote(
    bridge: Bridge, fake_repo: Path, mocker: MagicMock
) -> None:
    bridge.config.core.default_remote = "upstream"
    repo_id = _open(bridge, fake_repo)
    push = mocker.patch.object(GitRepo, "push")

    bridge.handle("git:push", {"repoId": repo_id, "remote": None})

    assert push.call_args.args[0].remote == "upstream"


# --- Filesystem channels ---


def test_fs_read_file_respects_limit(bridge: Bridge, tmp_path: Path) -> None:
    small = tmp_path / "small.txt"
    small.write_text("hello")
    big = tmp_path / "big.txt"
    big.write_text("x" * 64)
    bridge.config.limits.max_read_size = 32

    assert bridge.handle("fs:readFile", {"path": str(small)}) == {"result": "hello"}
    assert bridge.handle("fs:readFile", {"path": str(big)})["code"] == "bad_request"
    assert bridge.handle("fs:readFile", {"path": str(tmp_path / "nope")})["code"] == "io_error"


def test_fs_exists(bridge: Bridge, tmp_path: Path) -> None:
    assert bridge.handle("fs:exists", {"path": str(tmp_path)}) == {"result": True}
    assert bridge.handle("fs:exists", {"path": str(tmp_path / "x")}) == {"result": False}


# --- SSH ---


def test_check_ssh_reads_greeting_from_stderr(mocker: MagicMock) -> None:
    """Verifies that a non-zero exit with the success greeting counts as success."""
    mock_run = mocker.patch(
        "subprocess.run",
        return_value=subprocess.CompletedProcess(
            args=[],
            returncode=1,
            stdout="",
            stderr="Hi octocat! You've successfully authenticated, but GitHub does not provide shell access.",
        ),
    )

    assert check_ssh("github.com") is True
    cmd = mock_run.call_args.args[0]
    assert cmd[:2] == ["ssh", "-T"]
    assert "BatchMode=yes" in cmd
    assert cmd[-1] == "git@github.com"


def test_check_ssh_failures(mocker: MagicMock) -> None:
    mocker.patch(
        "subprocess.run",
        return_value=subprocess.CompletedProcess(
            args=[], returncode=255, stdout="", stderr="Permission denied (publickey)."
        ),
    )
    assert check_ssh("github.com") is False

    mocker.patch("subprocess.run", side_effect=subprocess.TimeoutExpired("ssh", 5))
    assert check_ssh("github.com") is False


def test_test_ssh_channel_uses_config(bridge: Bridge, mocker: MagicMock) -> None:
    bridge.config.ssh.host = "gitlab.example.com"
    mock_check = mocker.patch.object(bridge_module, "check_ssh", return_value=True)

    assert bridge.handle("git:testSSH") == {"result": True}
    mock_check.assert_called_once_with("gitlab.example.com", user="git", timeout=5.0)


# --- JSON lines ---


def test_serve_answers_each_line(bridge: Bridge, tmp_path: Path) -> None:
    """Verifies one response per request, ids echoed, malformed input tolerated."""
    requests = "\n".join(
        [
            json.dumps({"id": 1, "channel": "repository:add", "params": {"path": str(tmp_path)}}),
            "this is not json",
            "",
            json.dumps({"id": 2, "channel": 42}),
            json.dumps({"id": "three", "channel": "git:status"}),
        ]
    )
    stdout = io.StringIO()

    bridge.serve(io.StringIO(requests + "\n"), stdout)

    responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert len(responses) == 4
    assert responses[0]["id"] == 1
    assert responses[0]["result"]["path"] == repo_id_for(tmp_path)
    assert responses[1] == {
        "id": None,
        "error": responses[1]["error"],
        "code": "bad_request",
    }
    assert responses[2]["code"] == "bad_request"
    assert responses[3] == {
        "id": "three",
        "error": "No repository is open",
        "code": "no_repository",
    }


@requires_git
def test_end_to_end_with_real_git(
    bridge: Bridge, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")

    info = bridge.handle("git:init", {"path": str(tmp_path / "repo")})["result"]
    repo_id = info["repoId"]
    assert info["isRepo"] is True
    assert repo_id in bridge.registry

    (Path(repo_id) / "README.md").write_text("# hello\n")
    status = bridge.handle("git:status", {"repoId": repo_id})["result"]
    assert status["notAdded"] == ["README.md"]

    assert bridge.handle("git:addAll", {"repoId": repo_id}) == {"result": True}
    commit = bridge.handle("git:commit", {"repoId": repo_id, "message": "Initial"})
    assert len(commit["result"]["commitHash"]) == 40

    log = bridge.handle("git:log", {"repoId": repo_id})["result"]
    assert [c["message"] for c in log] == ["Initial"]
    assert bridge.handle("git:status", {"repoId": repo_id})["result"]["isClean"] is True


@pytest.fixture
def git_identity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


def _commit_all(bridge: Bridge, repo_id: str, message: str) -> None:
    assert bridge.handle("git:addAll", {"repoId": repo_id}) == {"result": True}
    assert "result" in bridge.handle("git:commit", {"repoId": repo_id, "message": message})


@requires_git
def test_failed_add_reports_git_message(
    bridge: Bridge, tmp_path: Path, git_identity: None
) -> None:
    repo_id = bridge.handle("git:init", {"path": str(tmp_path / "repo")})["result"]["repoId"]

    response = bridge.handle("git:add", {"repoId": repo_id, "files": ["nope.txt"]})

    assert response["code"] == "git_error"
    assert "pathspec 'nope.txt' did not match" in response["error"]


@requires_git
def test_reset_everything_before_first_commit(
    bridge: Bridge, tmp_path: Path, git_identity: None
) -> None:
    repo_id = bridge.handle("git:init", {"path": str(tmp_path / "repo")})["result"]["repoId"]
    (Path(repo_id) / "u.txt").write_text("untracked\n")

    assert bridge.handle("git:reset", {"repoId": repo_id}) == {"result": True}
    status = bridge.handle("git:status", {"repoId": repo_id})["result"]
    assert status["notAdded"] == ["u.txt"]


@requires_git
def test_merge_conflict_reports_git_message(
    bridge: Bridge, tmp_path: Path, git_identity: None
) -> None:
    repo_id = bridge.handle("git:init", {"path": str(tmp_path / "repo")})["result"]["repoId"]
    target = Path(repo_id) / "a.txt"
    target.write_text("base\n")
    _commit_all(bridge, repo_id, "Base")
    base = bridge.handle("git:status", {"repoId": repo_id})["result"]["current"]

    bridge.handle("git:createBranch", {"repoId": repo_id, "name": "feature"})
    target.write_text("feature\n")
    _commit_all(bridge, repo_id, "Feature")
    bridge.handle("git:checkout", {"repoId": repo_id, "branch": base})
    target.write_text("mainline\n")
    _commit_all(bridge, repo_id, "Mainline")

    response = bridge.handle("git:merge", {"repoId": repo_id, "branch": "feature"})

    assert response["code"] == "git_error"
    assert "CONFLICT" in response["error"]
    status = bridge.handle("git:status", {"repoId": repo_id})["result"]
    assert status["conflicted"] == ["a.txt"]


@requires_git
def test_pull_auto_stash_keeps_unrelated_stash(
    bridge: Bridge, tmp_path: Path, git_identity: None
) -> None:
    """Verifies that an untracked-only tree never pops a stash the user made earlier."""
    bridge.config.git.auto_stash_before_pull = True
    upstream = tmp_path / "upstream"
    upstream_id = bridge.handle("git:init", {"path": str(upstream)})["result"]["repoId"]
    (upstream / "a.txt").write_text("one\n")
    _commit_all(bridge, upstream_id, "One")

    clone = tmp_path / "clone"
    subprocess.run(["git", "clone", "-q", str(upstream), str(clone)], check=True)
    repo_id = _open(bridge, clone)
    (clone / "a.txt").write_text("parked\n")
    subprocess.run(["git", "stash", "push", "-q", "-m", "parked"], cwd=clone, check=True)
    (clone / "scratch.txt").write_text("scratch\n")

    assert bridge.handle("git:pull", {"repoId": repo_id}) == {"result": True}

    stashes = bridge.handle("git:stashList", {"repoId": repo_id})["result"]
    assert len(stashes) == 1
    assert (clone / "a.txt").read_text() == "one\n"
    assert (clone / "scratch.txt").exists()

"""Request/response bridge between a front-end and the Git backend.

Each named channel maps to one handler. Handlers that act on a repository
look up an explicit `Session` by `repoId`, so any number of repositories can
be open at once without sharing state. Every handler outcome is normalized
into either ``{"result": ...}`` or ``{"error": ..., "code": ...}``; callers
never need an exception path.

The `serve` loop exposes the bridge over JSON lines: one request object per
input line, exactly one response object per output line.
"""

import argparse
import datetime
import json
import logging
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, TextIO

from . import dialogs
from .config import Config
from .constants import APP_NAME, LOG_FILE, SSH_SUCCESS_MARKER
from .errors import (
    BadRequestError,
    GitError,
    HarborError,
    NoRepositoryError,
    NotARepositoryError,
)
from .git_wrapper import GitRepo
from .models import (
    CloneOptions,
    CommitOptions,
    LogOptions,
    PullOptions,
    PushOptions,
    as_file_list,
)
from .registry import RepositoryRegistry

logger = logging.getLogger(APP_NAME)

Handler = Callable[[dict[str, Any]], Any]


def repo_id_for(path: str | Path) -> str:
    """Canonical identifier for a repository path (absolute, resolved)."""
    return str(Path(path).expanduser().resolve())


def _require(params: dict[str, Any], key: str) -> Any:
    value = params.get(key)
    if value is None or value == "":
        raise BadRequestError(f"Missing required parameter '{key}'")
    return value


def check_ssh(host: str, user: str = "git", timeout: float = 5.0) -> bool:
    """Checks SSH authentication against a Git hosting provider.

    Hosting providers reject the shell but print a greeting on a successful
    handshake, so the exit status is ignored and the output is inspected.

    Args:
        host (str): The host to connect to (e.g. 'github.com').
        user (str, optional): The SSH user. Defaults to 'git'.
        timeout (float, optional): Seconds before giving up.

    Returns:
        bool: True if the greeting contains the success marker.
    """
    cmd = [
        "ssh",
        "-T",
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={max(1, int(timeout))}",
        f"{user}@{host}",
    ]
    try:
        res = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"SSH test to {host} timed out after {timeout:g}s")
        return False
    except OSError as e:
        logger.warning(f"SSH test to {host} could not start: {e}")
        return False

    output = f"{res.stdout}\n{res.stderr}"
    ok = SSH_SUCCESS_MARKER in output
    logger.info(f"SSH test to {host}: {'ok' if ok else 'failed'}")
    return ok


@dataclass
class Session:
    """An open repository on the bridge.

    Attributes:
        repo_id (str): The canonical path used as the session key.
        repo (GitRepo): The wrapper all operations go through.
        opened_at (datetime.datetime): When the session was opened.
    """

    repo_id: str
    repo: GitRepo
    opened_at: datetime.datetime = field(default_factory=datetime.datetime.now)


class Bridge:
    """Dispatches named channels to the registry, sessions, and utilities.

    Attributes:
        config (Config): Settings applied to git invocations and behaviours.
        registry (RepositoryRegistry): The known-repositories store.
        sessions (dict[str, Session]): Open repositories keyed by repo id.
    """

    def __init__(
        self,
        registry: RepositoryRegistry | None = None,
        config: Config | None = None,
    ):
        self.config = config or Config.load()
        if registry is None:
            override = self.config.core.registry_file
            registry = RepositoryRegistry(Path(override) if override else None)
        self.registry = registry
        self.sessions: dict[str, Session] = {}
        self.channels: dict[str, Handler] = {
            # Registry
            "repository:getAll": self._repository_get_all,
            "repository:add": self._repository_add,
            "repository:remove": self._repository_remove,
            "repository:update": self._repository_update,
            "repository:toggleFavorite": self._repository_toggle_favorite,
            "repository:updateLastOpened": self._repository_update_last_opened,
            # Repository lifecycle
            "git:selectRepo": self._git_select_repo,
            "git:openRepo": self._git_open_repo,
            "git:closeRepo": self._git_close_repo,
            "git:init": self._git_init,
            "git:clone": self._git_clone,
            # Working tree
            "git:status": self._git_status,
            "git:add": self._git_add,
            "git:addAll": self._git_add_all,
            "git:reset": self._git_reset,
            "git:discard": self._git_discard,
            "git:commit": self._git_commit,
            "git:diff": self._git_diff,
            "git:log": self._git_log,
            # Branches
            "git:branches": self._git_branches,
            "git:createBranch": self._git_create_branch,
            "git:checkout": self._git_checkout,
            "git:deleteBranch": self._git_delete_branch,
            "git:merge": self._git_merge,
            # Remotes
            "git:push": self._git_push,
            "git:pull": self._git_pull,
            "git:fetch": self._git_fetch,
            "git:remotes": self._git_remotes,
            "git:addRemote": self._git_add_remote,
            "git:removeRemote": self._git_remove_remote,
            "git:testSSH": self._git_test_ssh,
            # Tags and stash
            "git:tags": self._git_tags,
            "git:createTag": self._git_create_tag,
            "git:deleteTag": self._git_delete_tag,
            "git:stash": self._git_stash,
            "git:stashPop": self._git_stash_pop,
            "git:stashList": self._git_stash_list,
            # Filesystem
            "fs:selectDirectory": self._fs_select_directory,
            "fs:selectFile": self._fs_select_file,
            "fs:exists": self._fs_exists,
            "fs:readFile": self._fs_read_file,
        }

    # --- Dispatch ---

    def handle(self, channel: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Runs one request and returns its normalized response.

        Args:
            channel (str): The channel name (e.g. 'git:status').
            params (dict | None): Request parameters.

        Returns:
            dict[str, Any]: ``{"result": ...}`` or ``{"error": str, "code": str}``.
        """
        handler = self.channels.get(channel)
        if handler is None:
            return {"error": f"Unknown channel: {channel}", "code": "unknown_channel"}
        if params is not None and not isinstance(params, dict):
            return {"error": "Request params must be an object", "code": "bad_request"}

        try:
            return {"result": handler(params or {})}
        except HarborError as e:
            logger.warning(f"{channel} failed ({e.code}): {e}")
            return {"error": str(e), "code": e.code}
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"{channel} rejected: {e}")
            return {"error": f"Invalid request: {e}", "code": "bad_request"}
        except OSError as e:
            logger.error(f"{channel} I/O error: {e}")
            return {"error": str(e), "code": "io_error"}

    def serve(self, stdin: TextIO, stdout: TextIO) -> None:
        """Serves JSON-lines requests until the input stream closes.

        Each request is ``{"id": ..., "channel": str, "params": {...}}``; the
        response echoes ``id`` alongside the normalized payload.
        """
        logger.info("Bridge ready.")
        for line in stdin:
            if not line.strip():
                continue

            request_id = None
            try:
                request = json.loads(line)
                if not isinstance(request, dict) or not isinstance(request.get("channel"), str):
                    raise ValueError("request must be an object with a 'channel'")
                request_id = request.get("id")
                response = self.handle(request["channel"], request.get("params"))
            except ValueError as e:
                response = {"error": f"Malformed request: {e}", "code": "bad_request"}

            stdout.write(json.dumps({"id": request_id, **response}) + "\n")
            stdout.flush()
        logger.info("Bridge input closed; shutting down.")

    # --- Sessions ---

    def _new_repo(self, path: str | Path) -> GitRepo:
        return GitRepo(
            Path(repo_id_for(path)),
            timeout=self.config.git.timeout,
            network_timeout=self.config.git.network_timeout,
        )

    def _session(self, params: dict[str, Any]) -> Session:
        repo_id = params.get("repoId")
        if not repo_id:
            raise NoRepositoryError("No repository is open")
        session = self.sessions.get(repo_id_for(repo_id))
        if session is None:
            raise NoRepositoryError(f"Repository is not open: {repo_id}")
        return session

    def _start_session(self, repo: GitRepo) -> dict[str, Any]:
        """Registers an opened repository and returns its info payload."""
        repo_id = str(repo.path)
        self.sessions[repo_id] = Session(repo_id=repo_id, repo=repo)
        self.registry.add(repo_id)
        self.registry.update_last_opened(repo_id)
        logger.info(f"Opened session for {repo_id} ({len(self.sessions)} open)")
        return {**repo.repo_info().to_dict(), "repoId": repo_id}

    def open_repository(self, path: str | Path) -> dict[str, Any]:
        repo = self._new_repo(path)
        if not repo.is_repo():
            raise NotARepositoryError(f"Not a git repository: {repo.path}")
        return self._start_session(repo)

    # --- Registry channels ---

    def _repository_get_all(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return [repo.to_dict() for repo in self.registry.get_all()]

    def _repository_add(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.registry.add(repo_id_for(_require(params, "path"))).to_dict()

    def _repository_remove(self, params: dict[str, Any]) -> bool:
        self.registry.remove(repo_id_for(_require(params, "path")))
        return True

    def _repository_update(self, params: dict[str, Any]) -> dict[str, Any]:
        data = params.get("data") or {}
        if not isinstance(data, dict):
            raise BadRequestError("'data' must be an object")
        path = repo_id_for(_require(params, "path"))
        return self.registry.update(path, data).to_dict()

    def _repository_toggle_favorite(self, params: dict[str, Any]) -> dict[str, Any]:
        path = repo_id_for(_require(params, "path"))
        return self.registry.toggle_favorite(path).to_dict()

    def _repository_update_last_opened(self, params: dict[str, Any]) -> dict[str, Any]:
        path = repo_id_for(_require(params, "path"))
        return self.registry.update_last_opened(path).to_dict()

    # --- Repository lifecycle channels ---

    def _git_select_repo(self, params: dict[str, Any]) -> dict[str, Any] | None:
        chosen = dialogs.select_directory()
        if chosen is None:
            return None
        return self.open_repository(chosen)

    def _git_open_repo(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.open_repository(_require(params, "path"))

    def _git_close_repo(self, params: dict[str, Any]) -> bool:
        session = self._session(params)
        del self.sessions[session.repo_id]
        logger.info(f"Closed session for {session.repo_id}")
        return True

    def _git_init(self, params: dict[str, Any]) -> dict[str, Any]:
        repo = self._new_repo(_require(params, "path"))
        repo.init(
            user_name=self.config.git.user_name,
            user_email=self.config.git.user_email,
        )
        return self._start_session(repo)

    def _git_clone(self, params: dict[str, Any]) -> dict[str, Any]:
        options = CloneOptions.from_dict(params)
        options.path = repo_id_for(options.path)
        repo = GitRepo.clone(
            options,
            timeout=self.config.git.timeout,
            network_timeout=self.config.git.network_timeout,
        )
        return self._start_session(repo)

    # --- Working tree channels ---

    def _git_status(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._session(params).repo.status().to_dict()

    def _git_add(self, params: dict[str, Any]) -> bool:
        files = as_file_list(_require(params, "files"))
        self._session(params).repo.add(files or [])
        return True

    def _git_add_all(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.add_all()
        return True

    def _git_reset(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.reset(as_file_list(params.get("files")))
        return True

    def _git_discard(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.discard_changes(as_file_list(params.get("files")))
        return True

    def _git_commit(self, params: dict[str, Any]) -> dict[str, Any]:
        repo = self._session(params).repo
        commit_hash = repo.commit(CommitOptions.from_dict(params))

        pushed = False
        if self.config.git.auto_push_after_commit:
            try:
                repo.push(PushOptions(remote=self.config.core.default_remote))
                pushed = True
            except GitError as e:
                logger.warning(f"Auto-push after commit failed: {e}")
        return {"commitHash": commit_hash, "pushed": pushed}

    def _git_diff(self, params: dict[str, Any]) -> str:
        return self._session(params).repo.diff(
            file=params.get("file"), staged=bool(params.get("staged", False))
        )

    def _git_log(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        commits = self._session(params).repo.log(
            LogOptions.from_dict(params),
            default_max=self.config.git.max_commit_history,
        )
        return [c.to_dict() for c in commits]

    # --- Branch channels ---

    def _git_branches(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return [b.to_dict() for b in self._session(params).repo.branches()]

    def _git_create_branch(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.create_branch(
            _require(params, "name"), checkout=bool(params.get("checkout", True))
        )
        return True

    def _git_checkout(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.checkout(_require(params, "branch"))
        return True

    def _git_delete_branch(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.delete_branch(
            _require(params, "name"), force=bool(params.get("force", False))
        )
        return True

    def _git_merge(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.merge(
            _require(params, "branch"), no_ff=bool(params.get("noFf", False))
        )
        return True

    # --- Remote channels ---

    def _with_default_remote(self, params: dict[str, Any]) -> dict[str, Any]:
        return {**params, "remote": params.get("remote") or self.config.core.default_remote}

    def _git_push(self, params: dict[str, Any]) -> bool:
        repo = self._session(params).repo
        repo.push(PushOptions.from_dict(self._with_default_remote(params)))
        return True

    def _git_pull(self, params: dict[str, Any]) -> bool:
        repo = self._session(params).repo
        options = PullOptions.from_dict(self._with_default_remote(params))

        if not self.config.git.auto_stash_before_pull or repo.status().is_clean:
            repo.pull(options)
            return True

        # Untracked-only changes make `stash push` a no-op; never pop an older stash.
        before = repo.rev_parse("refs/stash")
        repo.stash(f"{APP_NAME}: auto-stash before pull")
        stashed = repo.rev_parse("refs/stash") != before
        try:
            repo.pull(options)
        finally:
            if stashed:
                repo.stash_pop()
        return True

    def _git_fetch(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.fetch(params.get("remote"))
        return True

    def _git_remotes(self, params: dict[str, Any]) -> list[dict[str, str]]:
        return [r.to_dict() for r in self._session(params).repo.remotes()]

    def _git_add_remote(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.add_remote(
            _require(params, "name"), _require(params, "url")
        )
        return True

    def _git_remove_remote(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.remove_remote(_require(params, "name"))
        return True

    def _git_test_ssh(self, params: dict[str, Any]) -> bool:
        ssh = self.config.ssh
        return check_ssh(
            params.get("host") or ssh.host,
            user=params.get("user") or ssh.user,
            timeout=ssh.timeout,
        )

    # --- Tag and stash channels ---

    def _git_tags(self, params: dict[str, Any]) -> list[dict[str, str]]:
        return [t.to_dict() for t in self._session(params).repo.tags()]

    def _git_create_tag(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.create_tag(
            _require(params, "name"), params.get("message")
        )
        return True

    def _git_delete_tag(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.delete_tag(_require(params, "name"))
        return True

    def _git_stash(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.stash(params.get("message"))
        return True

    def _git_stash_pop(self, params: dict[str, Any]) -> bool:
        self._session(params).repo.stash_pop()
        return True

    def _git_stash_list(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._session(params).repo.stash_list()]

    # --- Filesystem channels ---

    def _fs_select_directory(self, params: dict[str, Any]) -> str | None:
        chosen = dialogs.select_directory(params.get("title") or "Select a folder")
        return str(chosen) if chosen else None

    def _fs_select_file(self, params: dict[str, Any]) -> str | None:
        initial = params.get("initialDir")
        chosen = dialogs.select_file(
            params.get("title") or "Select a file",
            initial_dir=Path(initial) if initial else None,
        )
        return str(chosen) if chosen else None

    def _fs_exists(self, params: dict[str, Any]) -> bool:
        return Path(_require(params, "path")).expanduser().exists()

    def _fs_read_file(self, params: dict[str, Any]) -> str:
        path = Path(_require(params, "path")).expanduser()
        limit = self.config.limits.max_read_size
        if path.stat().st_size > limit:
            raise BadRequestError(f"File exceeds {limit} bytes: {path}")
        return path.read_text(encoding="utf-8", errors="replace")


def setup_logging(interactive: bool, verbose: bool = False, config: Config | None = None) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stderr only. If False (bridge
                            process), also logs to a rotating file.
        verbose (bool, optional): Enables DEBUG output.
        config (Config | None, optional): Supplies the log rotation size.
    """
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # stdout carries the bridge protocol, so logs always go to stderr.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    if interactive and not verbose:
        stream_handler.setLevel(logging.WARNING)
    logger.addHandler(stream_handler)

    if not interactive:
        config = config or Config.load()
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=config.limits.max_log_size,
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def main() -> None:
    """Entry point for the `git-harbor-bridge` backend process."""
    parser = argparse.ArgumentParser(
        prog="git-harbor-bridge",
        description="Serve Git Harbor requests as JSON lines over stdio.",
    )
    parser.add_argument("--registry", type=Path, help="Registry JSON file to use")
    parser.add_argument("--config", type=Path, help="Config TOML file to use")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    config = Config.load(args.config) if args.config else Config.load()
    setup_logging(interactive=False, verbose=args.verbose, config=config)

    registry = RepositoryRegistry(args.registry) if args.registry else None
    bridge = Bridge(registry=registry, config=config)
    try:
        bridge.serve(sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        logger.info("Bridge interrupted.")


if __name__ == "__main__":
    main()

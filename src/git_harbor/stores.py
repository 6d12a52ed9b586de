"""Client-side state for front-ends talking to a bridge.

Transports deliver one request and return one response dict. Stores keep
the last fetched registry and repository state, re-fetch on demand, and
record the last error message instead of raising, so a view can render
``store.error`` directly.
"""

import itertools
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any, Protocol

from .bridge import Bridge, repo_id_for
from .constants import APP_NAME
from .errors import HarborError

logger = logging.getLogger(APP_NAME)


class BridgeError(HarborError):
    """A bridge response carried an error payload."""

    def __init__(self, message: str, code: str = "error"):
        super().__init__(message)
        self.code = code


class Transport(Protocol):
    def request(self, channel: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...


class LocalTransport:
    """Calls a Bridge living in the same process."""

    def __init__(self, bridge: Bridge | None = None):
        self.bridge = bridge or Bridge()

    def request(self, channel: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.bridge.handle(channel, params)

    def close(self) -> None:
        pass


class ProcessTransport:
    """Spawns a bridge process and talks to it over JSON lines.

    Attributes:
        args (list[str]): Extra arguments for the bridge process.
    """

    def __init__(self, args: list[str] | None = None):
        self.args = args or []
        self._ids = itertools.count(1)
        self._proc = subprocess.Popen(
            [sys.executable, "-m", "git_harbor.bridge", *self.args],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            bufsize=1,
        )

    def request(self, channel: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._proc.stdin is None or self._proc.stdout is None:
            raise BridgeError("Bridge process is not connected", "io_error")

        request_id = next(self._ids)
        message = {"id": request_id, "channel": channel, "params": params or {}}
        try:
            self._proc.stdin.write(json.dumps(message) + "\n")
            self._proc.stdin.flush()
            line = self._proc.stdout.readline()
        except OSError as e:
            raise BridgeError(f"Bridge connection lost: {e}", "io_error") from e

        if not line:
            raise BridgeError("Bridge process exited", "io_error")

        try:
            response = json.loads(line)
        except json.JSONDecodeError as e:
            raise BridgeError(f"Malformed bridge response: {e}", "io_error") from e
        if not isinstance(response, dict):
            raise BridgeError(f"Malformed bridge response: {line.strip()}", "io_error")
        if response.get("id") != request_id:
            raise BridgeError(
                f"Out-of-order response {response.get('id')} for request {request_id}",
                "io_error",
            )
        response.pop("id", None)
        return response

    def close(self) -> None:
        if self._proc.stdin:
            self._proc.stdin.close()
        try:
            self._proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("Bridge process did not exit; terminating.")
            self._proc.terminate()

    def __enter__(self) -> "ProcessTransport":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def call(transport: Transport, channel: str, **params: Any) -> Any:
    """Sends a request and unwraps its result.

    Raises:
        BridgeError: If the response carries an error.
    """
    response = transport.request(channel, params)
    if "error" in response:
        raise BridgeError(response["error"], response.get("code", "error"))
    return response.get("result")


class _Store:
    def __init__(self, transport: Transport):
        self.transport = transport
        self.error: str | None = None
        self.error_code: str | None = None

    def _call(self, channel: str, **params: Any) -> Any:
        try:
            result = call(self.transport, channel, **params)
        except BridgeError as e:
            logger.debug(f"{channel} failed: {e}")
            self.error, self.error_code = str(e), e.code
            return None
        self.error = self.error_code = None
        return result


class RepositoryStore(_Store):
    """Cached view of the repository registry.

    Attributes:
        repositories (list[dict]): Records from the last load.
        current (dict | None): The repository the user is working in.
    """

    def __init__(self, transport: Transport):
        super().__init__(transport)
        self.repositories: list[dict[str, Any]] = []
        self.current: dict[str, Any] | None = None

    def load(self) -> list[dict[str, Any]]:
        result = self._call("repository:getAll")
        if result is not None:
            self.repositories = result
        return self.repositories

    def add(self, path: str | Path) -> dict[str, Any] | None:
        repo = self._call("repository:add", path=str(path))
        if repo is not None:
            self.load()
        return repo

    def remove(self, path: str | Path) -> bool:
        ok = self._call("repository:remove", path=str(path)) is not None
        if ok:
            if self.current and self.current["path"] == repo_id_for(path):
                self.current = None
            self.load()
        return ok

    def toggle_favorite(self, path: str | Path) -> dict[str, Any] | None:
        repo = self._call("repository:toggleFavorite", path=str(path))
        if repo is not None:
            self.load()
        return repo

    def update(self, path: str | Path, data: dict[str, Any]) -> dict[str, Any] | None:
        repo = self._call("repository:update", path=str(path), data=data)
        if repo is not None:
            self.load()
        return repo

    def set_current(self, repo: dict[str, Any] | None) -> None:
        self.current = repo
        if repo is not None:
            self._call("repository:updateLastOpened", path=repo["path"])

    @property
    def favorites(self) -> list[dict[str, Any]]:
        return sorted(
            (r for r in self.repositories if r.get("isFavorite")),
            key=lambda r: r["name"].lower(),
        )

    @property
    def recent(self) -> list[dict[str, Any]]:
        return sorted(
            self.repositories, key=lambda r: r.get("lastOpened") or "", reverse=True
        )


class GitStore(_Store):
    """Cached state of one open repository.

    Every successful mutating action re-fetches the status; history and
    branch lists are refreshed only where the action can change them.
    """

    def __init__(self, transport: Transport):
        super().__init__(transport)
        self.repo_id: str | None = None
        self.info: dict[str, Any] | None = None
        self.status: dict[str, Any] | None = None
        self.commits: list[dict[str, Any]] = []
        self.branches: list[dict[str, Any]] = []
        self.remotes: list[dict[str, Any]] = []
        self.tags: list[dict[str, Any]] = []
        self.stashes: list[dict[str, Any]] = []

    def _repo_call(self, channel: str, **params: Any) -> Any:
        return self._call(channel, repoId=self.repo_id, **params)

    def open(self, path: str | Path) -> dict[str, Any] | None:
        info = self._call("git:openRepo", path=str(path))
        if info is None:
            return None
        self.info, self.repo_id = info, info["repoId"]
        return info

    def close(self) -> None:
        if self.repo_id:
            self._repo_call("git:closeRepo")
        self.repo_id = self.info = self.status = None
        self.commits, self.branches, self.remotes = [], [], []
        self.tags, self.stashes = [], []

    # --- Refresh ---

    def refresh_status(self) -> dict[str, Any] | None:
        self.status = self._repo_call("git:status")
        return self.status

    def refresh_log(self, max_count: int | None = None) -> list[dict[str, Any]]:
        params = {"maxCount": max_count} if max_count else {}
        self.commits = self._repo_call("git:log", **params) or []
        return self.commits

    def refresh_branches(self) -> list[dict[str, Any]]:
        self.branches = self._repo_call("git:branches") or []
        return self.branches

    def refresh_remotes(self) -> list[dict[str, Any]]:
        self.remotes = self._repo_call("git:remotes") or []
        return self.remotes

    def refresh_tags(self) -> list[dict[str, Any]]:
        self.tags = self._repo_call("git:tags") or []
        return self.tags

    def refresh_stashes(self) -> list[dict[str, Any]]:
        self.stashes = self._repo_call("git:stashList") or []
        return self.stashes

    def refresh_all(self) -> None:
        self.refresh_status()
        self.refresh_log()
        self.refresh_branches()
        self.refresh_remotes()
        self.refresh_tags()
        self.refresh_stashes()

    # --- Actions ---

    def stage(self, files: list[str]) -> bool:
        ok = self._repo_call("git:add", files=files) is not None
        if ok:
            self.refresh_status()
        return ok

    def stage_all(self) -> bool:
        ok = self._repo_call("git:addAll") is not None
        if ok:
            self.refresh_status()
        return ok

    def unstage(self, files: list[str] | None = None) -> bool:
        ok = self._repo_call("git:reset", files=files) is not None
        if ok:
            self.refresh_status()
        return ok

    def discard(self, files: list[str] | None = None) -> bool:
        ok = self._repo_call("git:discard", files=files) is not None
        if ok:
            self.refresh_status()
        return ok

    def commit(self, message: str, amend: bool = False, allow_empty: bool = False) -> str | None:
        result = self._repo_call(
            "git:commit", message=message, amend=amend, allowEmpty=allow_empty
        )
        if result is None:
            return None
        self.refresh_status()
        self.refresh_log()
        return result["commitHash"]

    def push(self, **options: Any) -> bool:
        ok = self._repo_call("git:push", **options) is not None
        if ok:
            self.refresh_status()
        return ok

    def pull(self, **options: Any) -> bool:
        ok = self._repo_call("git:pull", **options) is not None
        if ok:
            self.refresh_status()
            self.refresh_log()
        return ok

    def checkout(self, branch: str) -> bool:
        ok = self._repo_call("git:checkout", branch=branch) is not None
        if ok:
            self.refresh_status()
            self.refresh_branches()
            self.refresh_log()
        return ok

    def create_branch(self, name: str, checkout: bool = True) -> bool:
        ok = self._repo_call("git:createBranch", name=name, checkout=checkout) is not None
        if ok:
            self.refresh_branches()
            self.refresh_status()
        return ok

    def delete_branch(self, name: str, force: bool = False) -> bool:
        ok = self._repo_call("git:deleteBranch", name=name, force=force) is not None
        if ok:
            self.refresh_branches()
        return ok

    def merge(self, branch: str, no_ff: bool = False) -> bool:
        ok = self._repo_call("git:merge", branch=branch, noFf=no_ff) is not None
        if ok:
            self.refresh_status()
            self.refresh_log()
        return ok

    def diff(self, file: str | None = None, staged: bool = False) -> str | None:
        return self._repo_call("git:diff", file=file, staged=staged)

"""Data models shared by the registry, the Git wrapper, and the bridge.

Records cross the bridge as plain dictionaries. ``to_dict`` emits the
camelCase keys used on the wire and ``from_dict`` accepts either camelCase or
snake_case so that hand-written requests stay forgiving.
"""

import datetime
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .constants import DEFAULT_REMOTE, SHORT_HASH_LENGTH


def _pick(data: dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    """Reads a key from a request payload, accepting either naming style."""
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def as_file_list(files: str | list[str] | None) -> list[str] | None:
    """Normalizes a single path or a list of paths into a list."""
    if files is None:
        return None
    if isinstance(files, str):
        return [files]
    return list(files)


def now_iso() -> str:
    """Returns the current local time as an ISO-8601 string."""
    return datetime.datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class Repository:
    """A repository known to the registry.

    Attributes:
        path (str): The filesystem path; the registry key. Never changes.
        name (str): Display name, derived from the final path segment.
        last_opened (str | None): ISO-8601 timestamp of the last open.
        is_favorite (bool): Whether the user pinned the repository.
    """

    path: str
    name: str
    last_opened: str | None = None
    is_favorite: bool = False

    @classmethod
    def create(cls, path: str) -> "Repository":
        """Builds a fresh record for a newly added path."""
        return cls(
            path=path,
            name=Path(path).name or path,
            last_opened=now_iso(),
            is_favorite=False,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "lastOpened": self.last_opened,
            "isFavorite": self.is_favorite,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Repository":
        path = str(data["path"])
        return cls(
            path=path,
            name=data.get("name") or Path(path).name or path,
            last_opened=_pick(data, "last_opened", "lastOpened"),
            is_favorite=bool(_pick(data, "is_favorite", "isFavorite", False)),
        )


@dataclass
class RenamedFile:
    """A rename reported by `git status`."""

    source: str
    target: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.source, "to": self.target}


@dataclass
class StatusSnapshot:
    """A point-in-time view of a work tree, recomputed on every request.

    Attributes:
        current (str): The checked-out branch ("" when detached).
        tracking (str | None): The upstream branch, if configured.
        staged (list[str]): Paths with changes in the index.
        modified (list[str]): Tracked paths with unstaged changes.
        not_added (list[str]): Untracked paths.
        deleted (list[str]): Paths deleted in the work tree or index.
        renamed (list[RenamedFile]): Renames recorded in the index.
        conflicted (list[str]): Paths with unresolved merge conflicts.
        ahead (int): Commits on the branch not on its upstream.
        behind (int): Commits on the upstream not on the branch.
    """

    current: str = ""
    tracking: str | None = None
    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    not_added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[RenamedFile] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)
    ahead: int = 0
    behind: int = 0

    @property
    def is_clean(self) -> bool:
        return not (
            self.staged
            or self.modified
            or self.not_added
            or self.deleted
            or self.renamed
            or self.conflicted
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "tracking": self.tracking,
            "staged": list(self.staged),
            "modified": list(self.modified),
            "notAdded": list(self.not_added),
            "deleted": list(self.deleted),
            "renamed": [r.to_dict() for r in self.renamed],
            "conflicted": list(self.conflicted),
            "ahead": self.ahead,
            "behind": self.behind,
            "isClean": self.is_clean,
        }


@dataclass
class Commit:
    hash: str
    message: str
    author: str
    email: str
    date: str
    refs: str = ""
    parents: list[str] = field(default_factory=list)

    @property
    def short_hash(self) -> str:
        return self.hash[:SHORT_HASH_LENGTH]

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "shortHash": self.short_hash,
            "message": self.message,
            "author": self.author,
            "email": self.email,
            "date": self.date,
            "refs": self.refs,
            "parents": list(self.parents),
        }


@dataclass
class Branch:
    name: str
    current: bool
    commit: str
    is_remote: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "current": self.current,
            "commit": self.commit,
            "isRemote": self.is_remote,
        }


@dataclass
class Remote:
    name: str
    fetch_url: str = ""
    push_url: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "fetchUrl": self.fetch_url, "pushUrl": self.push_url}


@dataclass
class Tag:
    name: str
    commit: str
    message: str = ""
    date: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass
class Stash:
    index: int
    message: str
    date: str
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RepoInfo:
    """Summary returned when a repository is opened, initialized, or cloned."""

    path: str
    name: str
    is_repo: bool
    current_branch: str | None = None
    remotes: list[Remote] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "name": self.name,
            "isRepo": self.is_repo,
        }
        if self.is_repo:
            data["currentBranch"] = self.current_branch
            data["remotes"] = [r.to_dict() for r in self.remotes]
        return data


# --- Options ---


@dataclass
class CloneOptions:
    url: str
    path: str
    branch: str | None = None
    recursive: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CloneOptions":
        return cls(
            url=data["url"],
            path=str(data["path"]),
            branch=data.get("branch"),
            recursive=bool(data.get("recursive", False)),
        )


@dataclass
class CommitOptions:
    message: str
    allow_empty: bool = False
    amend: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CommitOptions":
        return cls(
            message=data.get("message", ""),
            allow_empty=bool(_pick(data, "allow_empty", "allowEmpty", False)),
            amend=bool(data.get("amend", False)),
        )


@dataclass
class PushOptions:
    remote: str = DEFAULT_REMOTE
    branch: str | None = None
    force: bool = False
    set_upstream: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PushOptions":
        data = data or {}
        return cls(
            remote=data.get("remote") or DEFAULT_REMOTE,
            branch=data.get("branch"),
            force=bool(data.get("force", False)),
            set_upstream=bool(_pick(data, "set_upstream", "setUpstream", False)),
        )


@dataclass
class PullOptions:
    remote: str = DEFAULT_REMOTE
    branch: str | None = None
    rebase: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PullOptions":
        data = data or {}
        return cls(
            remote=data.get("remote") or DEFAULT_REMOTE,
            branch=data.get("branch"),
            rebase=bool(data.get("rebase", False)),
        )


@dataclass
class LogOptions:
    max_count: int | None = None
    file: str | None = None
    from_ref: str | None = None
    to_ref: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LogOptions":
        data = data or {}
        max_count = _pick(data, "max_count", "maxCount")
        return cls(
            max_count=int(max_count) if max_count is not None else None,
            file=data.get("file"),
            from_ref=_pick(data, "from_ref", "from"),
            to_ref=_pick(data, "to_ref", "to"),
        )


"""The repository registry: the durable list of repositories the user knows.

The registry is independent of any repository's git state. Records are keyed by
path and persisted as a single versioned JSON document, rewritten in full on
every mutation via a temp file and an atomic rename.
"""

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from .constants import APP_NAME, REGISTRY_FILE, REGISTRY_SCHEMA_VERSION
from .errors import RegistryIOError, RepositoryNotFoundError
from .models import Repository, now_iso

logger = logging.getLogger(APP_NAME)

_UPDATABLE_FIELDS = {
    "name": "name",
    "lastOpened": "last_opened",
    "last_opened": "last_opened",
    "isFavorite": "is_favorite",
    "is_favorite": "is_favorite",
}


def _parse_document(data: Any) -> list[dict[str, Any]]:
    """Extracts the record list from any registry shape seen in the wild.

    Accepts the versioned document, the legacy wrapped object without a
    version, and the legacy bare array.

    Args:
        data (Any): The decoded JSON document.

    Returns:
        list[dict[str, Any]]: The raw repository records.

    Raises:
        ValueError: If the document matches none of the known shapes.
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("repositories", []), list):
        version = data.get("version", REGISTRY_SCHEMA_VERSION)
        if isinstance(version, int) and version > REGISTRY_SCHEMA_VERSION:
            logger.warning(
                f"Registry schema v{version} is newer than supported "
                f"v{REGISTRY_SCHEMA_VERSION}; reading known fields only."
            )
        return data.get("repositories", [])
    raise ValueError("Unrecognized registry document")


class RepositoryRegistry:
    """In-memory map of path -> Repository backed by a JSON file.

    The file is read lazily on first access. A missing or unreadable file is
    treated as an empty registry. Every mutating call raises
    `RepositoryNotFoundError` for unknown paths instead of silently doing
    nothing, and `RegistryIOError` when the file cannot be written.

    Attributes:
        registry_file (Path): The backing JSON file.
    """

    def __init__(self, registry_file: Path | None = None):
        self.registry_file = Path(registry_file) if registry_file else REGISTRY_FILE
        self._repos: dict[str, Repository] | None = None

    @property
    def repos(self) -> dict[str, Repository]:
        if self._repos is None:
            self._repos = self._load()
        return self._repos

    def _load(self) -> dict[str, Repository]:
        """Reads the registry file into a path-keyed dictionary."""
        if not self.registry_file.exists():
            logger.debug(f"No registry at {self.registry_file}; starting empty.")
            return {}

        try:
            with open(self.registry_file, "r", encoding="utf-8") as f:
                records = _parse_document(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable registry {self.registry_file}: {e}")
            return {}

        repos: dict[str, Repository] = {}
        for raw in records:
            try:
                repo = Repository.from_dict(raw)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed registry entry {raw!r}: {e}")
                continue
            repos[repo.path] = repo

        logger.debug(f"Loaded {len(repos)} repositories from {self.registry_file}")
        return repos

    def _save(self, repos: dict[str, Repository]) -> None:
        """Persists the given records atomically.

        Args:
            repos (dict[str, Repository]): The full registry contents to write.

        Raises:
            RegistryIOError: If the file cannot be written.
        """
        tmp_file = self.registry_file.with_suffix(".tmp")
        document = {
            "version": REGISTRY_SCHEMA_VERSION,
            "repositories": [repo.to_dict() for repo in repos.values()],
        }

        try:
            self.registry_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_file, self.registry_file)
        except OSError as e:
            logger.error(f"Could not write registry {self.registry_file}: {e}")
            with contextlib.suppress(OSError):
                tmp_file.unlink(missing_ok=True)
            raise RegistryIOError(f"Could not write registry: {e}") from e

    def _commit(self, repos: dict[str, Repository]) -> None:
        """Writes a candidate state, then adopts it only if the write succeeded."""
        self._save(repos)
        self._repos = repos

    def get_all(self) -> list[Repository]:
        """Returns all registered repositories."""
        return list(self.repos.values())

    def get(self, path: str) -> Repository:
        """Looks up a single repository.

        Raises:
            RepositoryNotFoundError: If the path is not registered.
        """
        try:
            return self.repos[str(path)]
        except KeyError:
            raise RepositoryNotFoundError(str(path)) from None

    def __contains__(self, path: object) -> bool:
        return str(path) in self.repos

    def __len__(self) -> int:
        return len(self.repos)

    def add(self, path: str) -> Repository:
        """Registers a path, returning the existing record if already known.

        The path is not checked for git metadata.

        Args:
            path (str): The repository path.

        Returns:
            Repository: The new or existing record.
        """
        path = str(path)
        if existing := self.repos.get(path):
            return existing

        repo = Repository.create(path)
        self._commit({**self.repos, path: repo})
        logger.info(f"Registered repository: {repo.name} ({path})")
        return repo

    def remove(self, path: str) -> None:
        """Forgets a path. The repository on disk is never touched.

        Raises:
            RepositoryNotFoundError: If the path is not registered.
        """
        path = str(path)
        if path not in self.repos:
            raise RepositoryNotFoundError(path)

        self._commit({k: v for k, v in self.repos.items() if k != path})
        logger.info(f"Unregistered repository: {path}")

    def update(self, path: str, fields: dict[str, Any]) -> Repository:
        """Merges fields into a record. `path` itself is never overwritten.

        Args:
            path (str): The repository path.
            fields (dict[str, Any]): Partial record, camelCase or snake_case keys.

        Returns:
            Repository: The updated record.

        Raises:
            RepositoryNotFoundError: If the path is not registered.
        """
        current = self.get(path)

        changes: dict[str, Any] = {}
        ignored = []
        for key, value in fields.items():
            if key == "path":
                continue
            attr = _UPDATABLE_FIELDS.get(key)
            if attr is None:
                ignored.append(key)
                continue
            changes[attr] = bool(value) if attr == "is_favorite" else value

        if ignored:
            logger.warning(f"Ignoring unknown repository fields: {', '.join(ignored)}")

        updated = Repository(
            path=current.path,
            name=changes.get("name", current.name),
            last_opened=changes.get("last_opened", current.last_opened),
            is_favorite=changes.get("is_favorite", current.is_favorite),
        )
        self._commit({**self.repos, current.path: updated})
        return updated

    def toggle_favorite(self, path: str) -> Repository:
        """Flips the favorite flag of exactly one record.

        Raises:
            RepositoryNotFoundError: If the path is not registered.
        """
        current = self.get(path)
        return self.update(current.path, {"is_favorite": not current.is_favorite})

    def update_last_opened(self, path: str) -> Repository:
        """Stamps the record with the current time."""
        return self.update(path, {"last_opened": now_iso()})

import copy
import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import APP_NAME, CONFIG_FILE, DEFAULT_REMOTE

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '30s', '2m') to seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return num * multiplier[unit]


@dataclass
class CoreConfig:
    """Core application settings.

    Attributes:
        default_remote (str): The remote used when a request names none.
        registry_file (str | None): Override for the registry JSON location.
    """

    default_remote: str = DEFAULT_REMOTE
    registry_file: str | None = None


@dataclass
class GitConfig:
    """Settings applied to every git invocation.

    Attributes:
        timeout (float): Deadline in seconds for local git commands.
        network_timeout (float): Deadline in seconds for clone/fetch/push/pull.
        max_commit_history (int): Default number of commits returned by log.
        auto_stash_before_pull (bool): Stash local changes around a pull.
        auto_push_after_commit (bool): Push the current branch after a commit.
        user_name (str): Identity written into newly initialized repositories.
        user_email (str): Identity written into newly initialized repositories.
    """

    timeout: float = 30.0
    network_timeout: float = 300.0
    max_commit_history: int = 100
    auto_stash_before_pull: bool = False
    auto_push_after_commit: bool = False
    user_name: str = ""
    user_email: str = ""


@dataclass
class SSHConfig:
    """SSH connectivity test settings.

    Attributes:
        host (str): The Git hosting provider to handshake with.
        user (str): The SSH user on that host.
        timeout (float): Seconds to wait for the handshake.
    """

    host: str = "github.com"
    user: str = "git"
    timeout: float = 5.0


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
        max_read_size (int): Max bytes returned by the file-read channel.
    """

    max_log_size: int = 5 * 1024 * 1024
    max_read_size: int = 2 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Core settings.
        git (GitConfig): Git invocation settings.
        ssh (SSHConfig): SSH test settings.
        limits (LimitsConfig): Resource limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    git: GitConfig = field(default_factory=GitConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the parsed global configuration
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults and the global TOML file.

        Args:
            path (Path | None): Explicit config file. Bypasses the cache.

        Returns:
            Config: The merged configuration object.
        """
        if path is not None:
            instance = cls()
            if path.exists():
                instance._merge_from_file(path)
            return instance

        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        return copy.deepcopy(cls._global_cache)

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if not data:
                return

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "git" in data:
                self.git = self._update_dataclass("git", self.git, data["git"])
            if "ssh" in data:
                self.ssh = self._update_dataclass("ssh", self.ssh, data["ssh"])
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in ["max_log_size", "max_read_size"]:
                    filtered_updates[k] = parse_size(v)
                elif k in ["timeout", "network_timeout"]:
                    filtered_updates[k] = parse_time(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)

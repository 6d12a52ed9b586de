import os
from pathlib import Path

"""Global constants and filesystem layout for Git Harbor.

This module defines the per-user data, state, and configuration paths
(adhering to XDG standards where applicable), the application identifiers,
and the fixed values shared by the registry, the bridge, and the CLI.
"""

# --- Identity ---
APP_NAME = "git-harbor"
"""str: The human-readable application name, also used as the logger name."""

# --- Paths ---
_DATA_OVERRIDE = os.environ.get("GIT_HARBOR_DATA_DIR")
_XDG_DATA = os.environ.get("XDG_DATA_HOME")
_XDG_STATE = os.environ.get("XDG_STATE_HOME")

if _DATA_OVERRIDE:
    DATA_DIR = Path(_DATA_OVERRIDE)
else:
    DATA_DIR = (Path(_XDG_DATA) if _XDG_DATA else Path.home() / ".local/share") / APP_NAME
"""Path: The per-user application-data directory holding the registry."""

STATE_DIR = (Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state") / APP_NAME
"""Path: The directory for runtime state (bridge logs)."""

REGISTRY_FILE = DATA_DIR / "repositories.json"
"""Path: The JSON file storing the known repositories."""

LOG_FILE = STATE_DIR / "bridge.log"
"""Path: The rotating log file written by the bridge process."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-harbor"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Registry / Protocol Constants ---
REGISTRY_SCHEMA_VERSION = 1
"""int: The schema version written into the registry file."""

DEFAULT_REMOTE = "origin"
"""str: The remote used by push/pull/fetch when none is given."""

SHORT_HASH_LENGTH = 7
"""int: Length of the abbreviated commit hash shown to users."""

SSH_SUCCESS_MARKER = "successfully authenticated"
"""str: Text printed by Git hosting providers on a successful `ssh -T` handshake."""

LOG_FIELD_SEP = "\x1f"
"""str: Unit separator placed between fields in `git log` formats."""

LOG_RECORD_SEP = "\x1e"
"""str: Record separator placed after each commit in `git log` formats."""

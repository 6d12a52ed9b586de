"""Git Harbor: a repository manager and Git client backend.

This package provides a persistent registry of known repositories, a wrapper
around the git executable, and a channel-based bridge that front-ends (the
bundled command-line interface or a separate UI process) use to drive them.
"""

from . import (
    bridge,
    cli,
    config,
    constants,
    dialogs,
    errors,
    git_wrapper,
    models,
    registry,
    stores,
)

__all__ = [
    "bridge",
    "cli",
    "config",
    "constants",
    "dialogs",
    "errors",
    "git_wrapper",
    "models",
    "registry",
    "stores",
]

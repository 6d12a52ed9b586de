"""Exception hierarchy shared by the registry, the Git wrapper, and the bridge.

Every error carries a stable, machine-readable ``code`` so the bridge can hand
clients something better than free text to dispatch on.
"""


class HarborError(Exception):
    """Base class for all Git Harbor errors."""

    code = "error"


class GitError(HarborError, RuntimeError):
    """A git invocation exited with a non-zero status."""

    code = "git_error"


class GitTimeoutError(GitError):
    """A git invocation did not finish before its deadline."""

    code = "timeout"


class NotARepositoryError(GitError, ValueError):
    """The given path is not inside a git work tree."""

    code = "not_a_repository"


class RegistryError(HarborError):
    """Base class for repository registry failures."""

    code = "registry_error"


class RepositoryNotFoundError(RegistryError, KeyError):
    """The requested path is not present in the registry."""

    code = "not_found"

    def __init__(self, path: str):
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"Repository not registered: {self.path}"


class RegistryIOError(RegistryError, OSError):
    """The registry file could not be written."""

    code = "io_error"


class NoRepositoryError(HarborError):
    """A request needed an open repository session and none matched."""

    code = "no_repository"


class BadRequestError(HarborError, ValueError):
    """A bridge request was malformed or missing a required parameter."""

    code = "bad_request"


class DialogUnavailableError(HarborError, OSError):
    """A native dialog could not be shown (no Tk, or no display)."""

    code = "io_error"

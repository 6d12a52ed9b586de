import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME, DEFAULT_REMOTE, LOG_FIELD_SEP, LOG_RECORD_SEP
from .errors import GitError, GitTimeoutError, NotARepositoryError
from .models import (
    Branch,
    CloneOptions,
    Commit,
    CommitOptions,
    LogOptions,
    PullOptions,
    PushOptions,
    Remote,
    RenamedFile,
    RepoInfo,
    Stash,
    StatusSnapshot,
    Tag,
)

logger = logging.getLogger(APP_NAME)

DEFAULT_TIMEOUT = 30.0
DEFAULT_NETWORK_TIMEOUT = 300.0


def run_git(
    args: list[str],
    cwd: Path | None = None,
    capture: bool = True,
    env: dict | None = None,
    timeout: float | None = None,
    strip: bool = True,
) -> str:
    """Executes a git command and returns its output.

    Args:
        args (list[str]): Arguments passed to `git`.
        cwd (Path | None): Working directory for the command.
        capture (bool): Whether to capture and return stdout.
        env (dict | None): Full environment for the subprocess.
        timeout (float | None): Seconds before the command is killed.
        strip (bool): Whether to strip surrounding whitespace from stdout.

    Returns:
        str: The command's stdout (empty when capture is False).

    Raises:
        GitTimeoutError: If the command exceeds `timeout`.
        GitError: If git exits non-zero or cannot be started.
    """
    try:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd,
            stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            check=True,
            env=env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise GitTimeoutError(
            f"git {args[0]} timed out after {e.timeout:g}s"
        ) from e
    except subprocess.CalledProcessError as e:
        # Conflicts are reported on stdout, most other failures on stderr.
        detail = "\n".join(s.strip() for s in (e.stderr, e.stdout) if s and s.strip())
        raise GitError(detail or str(e)) from e
    except OSError as e:
        raise GitError(f"Could not run git in {cwd}: {e}") from e

    if not capture:
        return ""
    return res.stdout.strip() if strip else res.stdout


def _network_env(env: dict | None = None) -> dict:
    """Environment for commands that talk to a remote.

    Disables interactive credential and host-key prompts so that a missing
    credential fails instead of hanging until the deadline.
    """
    env = dict(env if env is not None else os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


def parse_status(output: str) -> StatusSnapshot:
    """Parses `git status --porcelain=v2 --branch -z` output.

    A path with both index and work-tree changes is reported in both
    `staged` and `modified`; every other path lands in exactly one list.

    Args:
        output (str): The raw NUL-separated status output.

    Returns:
        StatusSnapshot: The normalized status.
    """
    snapshot = StatusSnapshot()
    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if not entry:
            continue

        if entry.startswith("# "):
            key, _, value = entry[2:].partition(" ")
            if key == "branch.head":
                snapshot.current = "" if value == "(detached)" else value
            elif key == "branch.upstream":
                snapshot.tracking = value
            elif key == "branch.ab":
                ahead, _, behind = value.partition(" ")
                snapshot.ahead = int(ahead.lstrip("+"))
                snapshot.behind = int(behind.lstrip("-"))
            continue

        kind = entry[0]
        if kind == "?":
            snapshot.not_added.append(entry[2:])
        elif kind == "u":
            snapshot.conflicted.append(entry.split(" ", 10)[10])
        elif kind == "1":
            fields = entry.split(" ", 8)
            _classify(snapshot, fields[1], fields[8])
        elif kind == "2":
            fields = entry.split(" ", 9)
            original = entries[i] if i < len(entries) else ""
            i += 1
            xy, path = fields[1], fields[9]
            if xy[0] in "RC":
                snapshot.renamed.append(RenamedFile(source=original, target=path))
                if xy[1] == "D":
                    snapshot.deleted.append(path)
                elif xy[1] == "M":
                    snapshot.modified.append(path)
            else:
                _classify(snapshot, xy, path)

    return snapshot


def _classify(snapshot: StatusSnapshot, xy: str, path: str) -> None:
    index, worktree = xy[0], xy[1]
    if "D" in (index, worktree):
        snapshot.deleted.append(path)
        return
    if index != ".":
        snapshot.staged.append(path)
    if worktree != ".":
        snapshot.modified.append(path)


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    One method per Git capability: typed options go in, models from
    `git_harbor.models` come out. Every invocation is bounded by a deadline
    (`timeout` for local commands, `network_timeout` for commands that talk
    to a remote). Failures raise `GitError` with git's own message.

    Construction does not validate the path so that `is_repo` and `init` can
    run against plain directories. Use `GitRepo.open` to require a work tree.

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float): Deadline for local commands, in seconds.
        network_timeout (float): Deadline for remote commands, in seconds.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = DEFAULT_TIMEOUT,
        network_timeout: float = DEFAULT_NETWORK_TIMEOUT,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.network_timeout = network_timeout

    @classmethod
    def open(cls, path: Path, **kwargs: float) -> "GitRepo":
        """Creates a wrapper for an existing work tree.

        Raises:
            NotARepositoryError: If the path is not inside a git work tree.
        """
        repo = cls(path, **kwargs)
        if not repo.is_repo():
            raise NotARepositoryError(f"Not a git repository: {repo.path}")
        return repo

    @classmethod
    def clone(cls, options: CloneOptions, **kwargs: float) -> "GitRepo":
        """Clones a remote repository into `options.path`.

        Args:
            options (CloneOptions): Source URL, target path and flags.

        Returns:
            GitRepo: A wrapper for the new work tree.
        """
        target = Path(options.path)
        target.mkdir(parents=True, exist_ok=True)

        cmd = ["clone"]
        if options.branch:
            cmd.extend(["--branch", options.branch])
        if options.recursive:
            cmd.append("--recursive")
        cmd.extend([options.url, str(target)])

        repo = cls(target, **kwargs)
        logger.info(f"Cloning {options.url} into {target}")
        run_git(
            cmd,
            cwd=target.parent,
            env=_network_env(),
            timeout=repo.network_timeout,
        )
        return repo

    def _run(
        self,
        args: list[str],
        capture: bool = True,
        env: dict | None = None,
        network: bool = False,
        strip: bool = True,
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional): Whether to capture and return stdout.
            env (dict | None, optional): Environment variables for the subprocess.
            network (bool, optional): Whether the command contacts a remote,
                                      selecting the network deadline.
            strip (bool, optional): Whether to strip the captured output.

        Returns:
            str: The stdout of the command if capture is True.

        Raises:
            GitError: If the git command fails or exceeds its deadline.
        """
        if network:
            env = _network_env(env)
        timeout = self.network_timeout if network else self.timeout
        return run_git(
            args, cwd=self.path, capture=capture, env=env, timeout=timeout, strip=strip
        )

    # --- Repository ---

    def is_repo(self) -> bool:
        """Checks whether the path is inside a git work tree."""
        if not self.path.is_dir():
            return False
        try:
            return self._run(["rev-parse", "--is-inside-work-tree"]) == "true"
        except GitError as e:
            logger.debug(f"{self.path} is not a repository: {e}")
            return False

    def init(self, user_name: str = "", user_email: str = "") -> None:
        """Initializes a repository, creating the directory if needed.

        Args:
            user_name (str, optional): Local `user.name` to configure.
            user_email (str, optional): Local `user.email` to configure.
        """
        self.path.mkdir(parents=True, exist_ok=True)
        self._run(["init"])
        if user_name:
            self._run(["config", "user.name", user_name])
        if user_email:
            self._run(["config", "user.email", user_email])
        logger.info(f"Initialized repository at {self.path}")

    def repo_info(self) -> RepoInfo:
        """Summarizes the repository for the open/init/clone responses."""
        name = self.path.name or str(self.path)
        if not self.is_repo():
            return RepoInfo(path=str(self.path), name=name, is_repo=False)

        return RepoInfo(
            path=str(self.path),
            name=name,
            is_repo=True,
            current_branch=self.current_branch() or None,
            remotes=self.remotes(),
        )

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash.

        Returns:
            str | None: The hash, or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    # --- Working tree ---

    def status(self) -> StatusSnapshot:
        """Returns a fresh status snapshot of the work tree."""
        output = self._run(
            ["status", "--porcelain=v2", "--branch", "-z"], strip=False
        )
        return parse_status(output)

    def add(self, files: list[str]) -> None:
        """Stages the given paths."""
        if not files:
            return
        self._run(["add", "--", *files], capture=False)

    def add_all(self) -> None:
        """Stages all changes (modified, deleted, and untracked files)."""
        self._run(["add", "."], capture=False)

    def reset(self, files: list[str] | None = None) -> None:
        """Unstages the given paths, or everything when `files` is None.

        In a repository without commits there is no HEAD to reset to, so the
        paths are removed from the index instead.
        """
        if self.rev_parse("HEAD") is None:
            cmd = ["rm", "--cached", "-r", "--quiet", "--ignore-unmatch"]
            self._run([*cmd, "--", *(files or ["."])], capture=False)
            return

        cmd = ["reset", "--quiet", "HEAD"]
        if files:
            cmd.extend(["--", *files])
        self._run(cmd, capture=False)

    def discard_changes(self, files: list[str] | None = None) -> None:
        """Restores tracked paths to their staged content.

        Untracked files are left alone.
        """
        self._run(["checkout", "--", *(files or ["."])], capture=False)

    def commit(self, options: CommitOptions) -> str:
        """Creates a commit and returns its hash.

        The message is passed through as-is; git rejects an empty one.

        Args:
            options (CommitOptions): Message and flags.

        Returns:
            str: The SHA-1 of the new commit.
        """
        cmd = ["commit", "-m", options.message]
        if options.allow_empty:
            cmd.append("--allow-empty")
        if options.amend:
            cmd.append("--amend")
        self._run(cmd)
        return self._run(["rev-parse", "HEAD"])

    def diff(self, file: str | None = None, staged: bool = False) -> str:
        """Returns the raw textual diff of the work tree or the index.

        Args:
            file (str | None, optional): Restrict the diff to one path.
            staged (bool, optional): Compare the index against HEAD instead of
                                     the work tree against the index.
        """
        cmd = ["diff"]
        if staged:
            cmd.append("--cached")
        if file:
            cmd.extend(["--", file])
        return self._run(cmd, strip=False)

    # --- History ---

    def log(self, options: LogOptions | None = None, default_max: int = 100) -> list[Commit]:
        """Reads commit history.

        Args:
            options (LogOptions | None, optional): Count, path and range filters.
            default_max (int, optional): Count used when options give none.

        Returns:
            list[Commit]: Newest first. Empty for a repository without commits.
        """
        options = options or LogOptions()
        fmt = LOG_FIELD_SEP.join(["%H", "%s", "%ai", "%an", "%ae", "%D", "%P"])
        cmd = [
            "log",
            f"--max-count={options.max_count or default_max}",
            f"--format={fmt}{LOG_RECORD_SEP}",
        ]

        if options.from_ref and options.to_ref:
            cmd.append(f"{options.from_ref}..{options.to_ref}")
        elif self.rev_parse("HEAD") is None:
            return []

        if options.file:
            cmd.extend(["--", options.file])

        output = self._run(cmd)
        commits = []
        for record in output.split(LOG_RECORD_SEP):
            record = record.strip("\n")
            if not record:
                continue
            parts = record.split(LOG_FIELD_SEP)
            if len(parts) != 7:
                logger.warning(f"Skipping unparsable log record: {record!r}")
                continue
            sha, subject, date, author, email, refs, parents = parts
            commits.append(
                Commit(
                    hash=sha,
                    message=subject,
                    date=date,
                    author=author,
                    email=email,
                    refs=refs,
                    parents=parents.split(),
                )
            )
        return commits

    # --- Branches ---

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch ("" if detached)."""
        return self._run(["branch", "--show-current"])

    def branches(self) -> list[Branch]:
        """Lists local and remote-tracking branches."""
        fmt = LOG_FIELD_SEP.join(["%(HEAD)", "%(refname)", "%(objectname)"])
        output = self._run(
            ["for-each-ref", f"--format={fmt}", "refs/heads", "refs/remotes"]
        )

        branches = []
        for line in output.splitlines():
            head, refname, sha = line.split(LOG_FIELD_SEP)
            if refname.startswith("refs/heads/"):
                name, is_remote = refname[len("refs/heads/") :], False
            else:
                name, is_remote = refname[len("refs/remotes/") :], True
                # origin/HEAD is a symbolic pointer, not a branch
                if name.endswith("/HEAD"):
                    continue
            branches.append(
                Branch(name=name, current=head == "*", commit=sha, is_remote=is_remote)
            )
        return branches

    def create_branch(self, name: str, checkout: bool = True) -> None:
        """Creates a branch at HEAD, optionally switching to it."""
        if checkout:
            self._run(["checkout", "-b", name], capture=False)
        else:
            self._run(["branch", name], capture=False)

    def checkout(self, branch: str) -> None:
        """Switches the work tree to a branch or commit."""
        self._run(["checkout", branch])

    def delete_branch(self, name: str, force: bool = False) -> None:
        """Deletes a local branch (`-D` when forced)."""
        self._run(["branch", "-D" if force else "-d", name])

    def merge(self, branch: str, no_ff: bool = False) -> None:
        """Merges a branch into HEAD.

        Conflicts are not handled here; git's message is raised as a GitError.
        """
        cmd = ["merge"]
        if no_ff:
            cmd.append("--no-ff")
        cmd.append(branch)
        self._run(cmd)

    # --- Remotes ---

    def remotes(self) -> list[Remote]:
        """Lists remotes with their fetch and push URLs."""
        output = self._run(["remote", "-v"])
        remotes: dict[str, Remote] = {}
        for line in output.splitlines():
            try:
                name, rest = line.split("\t", 1)
                url, _, kind = rest.rpartition(" ")
            except ValueError:
                continue
            remote = remotes.setdefault(name, Remote(name=name))
            if kind == "(fetch)":
                remote.fetch_url = url
            elif kind == "(push)":
                remote.push_url = url
        return list(remotes.values())

    def add_remote(self, name: str, url: str) -> None:
        self._run(["remote", "add", name, url])

    def remove_remote(self, name: str) -> None:
        self._run(["remote", "remove", name])

    def _resolve_branch(self, branch: str | None, action: str) -> str:
        if branch:
            return branch
        current = self.current_branch()
        if not current:
            raise GitError(f"Cannot {action} from a detached HEAD; specify a branch.")
        return current

    def push(self, options: PushOptions | None = None) -> None:
        """Pushes a branch to a remote.

        When no branch is given the current branch is pushed explicitly.
        """
        options = options or PushOptions()
        branch = self._resolve_branch(options.branch, "push")
        cmd = ["push"]
        if options.force:
            cmd.append("--force")
        if options.set_upstream:
            cmd.append("--set-upstream")
        cmd.extend([options.remote or DEFAULT_REMOTE, branch])
        self._run(cmd, network=True)

    def pull(self, options: PullOptions | None = None) -> None:
        """Pulls a branch from a remote into the current branch.

        When no branch is given the current branch's name is pulled explicitly.
        """
        options = options or PullOptions()
        branch = self._resolve_branch(options.branch, "pull")
        cmd = ["pull"]
        if options.rebase:
            cmd.append("--rebase")
        cmd.extend([options.remote or DEFAULT_REMOTE, branch])
        self._run(cmd, network=True)

    def fetch(self, remote: str | None = None) -> None:
        """Fetches one remote, or all of them when `remote` is None."""
        self._run(["fetch", remote] if remote else ["fetch", "--all"], network=True)

    # --- Tags ---

    def tags(self) -> list[Tag]:
        """Lists tags with their target commits resolved in the same call."""
        fmt = LOG_FIELD_SEP.join(
            [
                "%(refname:short)",
                "%(objecttype)",
                "%(objectname)",
                "%(*objectname)",
                "%(contents:subject)",
                "%(creatordate:iso8601)",
            ]
        )
        output = self._run(["for-each-ref", f"--format={fmt}", "refs/tags"])

        tags = []
        for line in output.splitlines():
            name, objtype, sha, peeled, subject, date = line.split(LOG_FIELD_SEP)
            annotated = objtype == "tag"
            tags.append(
                Tag(
                    name=name,
                    commit=peeled if annotated and peeled else sha,
                    message=subject if annotated else "",
                    date=date,
                )
            )
        return tags

    def create_tag(self, name: str, message: str | None = None) -> None:
        """Creates an annotated tag when a message is given, else a lightweight one."""
        if message:
            self._run(["tag", "-a", name, "-m", message])
        else:
            self._run(["tag", name])

    def delete_tag(self, name: str) -> None:
        self._run(["tag", "-d", name])

    # --- Stash ---

    def stash(self, message: str | None = None) -> None:
        """Stashes local changes."""
        cmd = ["stash", "push"]
        if message:
            cmd.extend(["-m", message])
        self._run(cmd)

    def stash_pop(self) -> None:
        self._run(["stash", "pop"])

    def stash_list(self) -> list[Stash]:
        """Lists stash entries, newest first."""
        fmt = LOG_FIELD_SEP.join(["%gd", "%H", "%ai", "%gs"])
        output = self._run(["stash", "list", f"--format={fmt}"])

        entries = []
        for line in output.splitlines():
            selector, sha, date, message = line.split(LOG_FIELD_SEP, 3)
            # stash@{N}
            index = int(selector[selector.index("{") + 1 : selector.index("}")])
            entries.append(Stash(index=index, message=message, date=date, hash=sha))
        return entries

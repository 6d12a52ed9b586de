import argparse
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, NoReturn

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from . import bridge
from .config import Config
from .constants import CONFIG_FILE
from .stores import GitStore, LocalTransport, RepositoryStore, Transport

console = Console()


def _fail(message: str) -> NoReturn:
    console.print(f"[bold red]ERROR:[/bold red] {message}")
    sys.exit(1)


def _open_repo(transport: Transport, path: str | None) -> GitStore:
    """Opens a repository session, exiting with a message on failure."""
    store = GitStore(transport)
    if store.open(path or Path.cwd()) is None:
        _fail(store.error or "Could not open repository.")
    return store


def _format_opened(value: str | None) -> str:
    if not value:
        return "-"
    # 2026-01-02T03:04:05+00:00 -> 2026-01-02 03:04
    return value.replace("T", " ")[:16]


def list_repos(transport: Transport) -> None:
    """Lists all registered repositories, favorites first."""
    store = RepositoryStore(transport)
    store.load()
    if store.error:
        _fail(store.error)

    if not store.repositories:
        console.print("[yellow]Registry is empty.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("", width=1)
    table.add_column("Name", style="cyan")
    table.add_column("Path")
    table.add_column("Status")
    table.add_column("Last Opened", justify="right", style="dim")

    favorites = store.favorites
    others = [r for r in store.recent if r not in favorites]
    for repo in [*favorites, *others]:
        path = Path(repo["path"])
        display_path = str(path).replace(str(Path.home()), "~")
        if not path.exists():
            status = "[red]Missing[/red]"
        elif not (path / ".git").exists():
            status = "[yellow]No .git[/yellow]"
        else:
            status = "[green]OK[/green]"

        table.add_row(
            "[yellow]★[/yellow]" if repo.get("isFavorite") else "",
            repo["name"],
            display_path,
            status,
            _format_opened(repo.get("lastOpened")),
        )

    console.print(table)


def add_repo(transport: Transport, path: str) -> None:
    store = RepositoryStore(transport)
    repo = store.add(path)
    if repo is None:
        _fail(store.error or "Could not add repository.")
    console.print(f"✔ Registered: [cyan]{repo['path']}[/cyan]", style="green")


def remove_repo(transport: Transport, path: str) -> None:
    store = RepositoryStore(transport)
    if not store.remove(path):
        _fail(store.error or "Could not remove repository.")
    console.print(f"✔ Unregistered: [cyan]{path}[/cyan]", style="green")


def toggle_favorite(transport: Transport, path: str) -> None:
    store = RepositoryStore(transport)
    repo = store.toggle_favorite(path)
    if repo is None:
        _fail(store.error or "Could not update repository.")
    state = "starred" if repo["isFavorite"] else "unstarred"
    console.print(f"✔ {repo['name']} {state}.", style="green")


def _file_table(status: dict[str, Any]) -> Table:
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("State", style="dim")
    table.add_column("Path")

    rows = [
        ("staged", "green", status["staged"]),
        ("modified", "yellow", status["modified"]),
        ("deleted", "red", status["deleted"]),
        ("untracked", "cyan", status["notAdded"]),
        ("conflicted", "bold red", status["conflicted"]),
    ]
    for label, style, paths in rows:
        for p in paths:
            table.add_row(label, f"[{style}]{p}[/{style}]")
    for r in status["renamed"]:
        table.add_row("renamed", f"[green]{r['from']} → {r['to']}[/green]")
    return table


def show_status(transport: Transport, path: str | None) -> None:
    """Displays branch, tracking and file state for a repository."""
    store = _open_repo(transport, path)
    status = store.refresh_status()
    if status is None:
        _fail(store.error or "Could not read status.")

    header = Text()
    header.append("Branch:   ", style="bold")
    header.append((status["current"] or "(detached)") + "\n", style="cyan")
    header.append("Tracking: ", style="bold")
    header.append((status["tracking"] or "none") + "\n")
    header.append("Sync:     ", style="bold")
    header.append(f"↑{status['ahead']} ↓{status['behind']}")

    console.print(Panel(header, title=store.info["name"], expand=False))

    if status["isClean"]:
        console.print("[green]✔ Working tree clean.[/green]")
    else:
        console.print(_file_table(status))


def show_log(transport: Transport, path: str | None, count: int | None) -> None:
    store = _open_repo(transport, path)
    commits = store.refresh_log(count)
    if store.error:
        _fail(store.error)
    if not commits:
        console.print("[dim]No commits yet.[/dim]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Commit", style="yellow")
    table.add_column("Message")
    table.add_column("Author", style="cyan")
    table.add_column("Date", style="dim")
    for c in commits:
        message = c["message"]
        if c["refs"]:
            message = f"[green]({c['refs']})[/green] {message}"
        table.add_row(c["shortHash"], message, c["author"], c["date"][:16])
    console.print(table)


def show_branches(transport: Transport, path: str | None) -> None:
    store = _open_repo(transport, path)
    branches = store.refresh_branches()
    if store.error:
        _fail(store.error)

    for b in branches:
        marker = "*" if b["current"] else " "
        style = "bold green" if b["current"] else ("red" if b["isRemote"] else "")
        name = f"[{style}]{b['name']}[/{style}]" if style else b["name"]
        console.print(f"{marker} {name} [dim]{b['commit'][:7]}[/dim]")


def show_diff(transport: Transport, path: str | None, file: str | None, staged: bool) -> None:
    store = _open_repo(transport, path)
    text = store.diff(file=file, staged=staged)
    if text is None:
        _fail(store.error or "Could not compute diff.")
    if not text.strip():
        console.print("[dim]No differences.[/dim]")
        return
    console.print(Syntax(text, "diff", theme="ansi_dark", word_wrap=True))


def run_commit(transport: Transport, args: argparse.Namespace) -> None:
    store = _open_repo(transport, args.path)
    if args.all and not store.stage_all():
        _fail(store.error or "Could not stage changes.")

    commit_hash = store.commit(args.message, amend=args.amend, allow_empty=args.allow_empty)
    if commit_hash is None:
        _fail(store.error or "Commit failed.")
    console.print(f"[bold green]✔ Committed[/bold green] [yellow]{commit_hash[:7]}[/yellow]")


def run_push(transport: Transport, args: argparse.Namespace) -> None:
    store = _open_repo(transport, args.path)
    options = {"remote": args.remote, "branch": args.branch}
    if args.command == "push":
        options.update(force=args.force, setUpstream=args.set_upstream)
        label, action = "Pushing", store.push
    else:
        options.update(rebase=args.rebase)
        label, action = "Pulling", store.pull

    with console.status(f"{label}...", spinner="dots"):
        ok = action(**options)
    if not ok:
        _fail(store.error or f"{args.command} failed.")
    console.print(f"[bold green]✔ {args.command.capitalize()} complete.[/bold green]")


def run_ssh_test(host: str | None) -> None:
    conf = Config.load()
    host = host or conf.ssh.host
    with console.status(f"Contacting {host}...", spinner="dots"):
        ok = bridge.check_ssh(host, user=conf.ssh.user, timeout=conf.ssh.timeout)
    if ok:
        console.print(f"[bold green]✔ SSH authentication to {host} works.[/bold green]")
    else:
        _fail(f"SSH authentication to {host} failed.")


def open_config() -> None:
    """Opens the global configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# Git Harbor Configuration\n\n"
                "[git]\n"
                '# timeout = "30s"\n'
                "# auto_stash_before_pull = false\n"
            )

    editor = os.environ.get("EDITOR")
    if not editor:
        editor = "open" if sys.platform == "darwin" else "nano"

    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")
    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="Git Harbor Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row("core", "default_remote", "str", '"origin"', "Remote used when none is given.")
    table.add_row("", "registry_file", "str", "None", "Override for repositories.json.")
    table.add_row("git", "timeout", "int | str", '"30s"', "Deadline for local git commands.")
    table.add_row("", "network_timeout", "int | str", '"5m"', "Deadline for clone/fetch/push/pull.")
    table.add_row("", "max_commit_history", "int", "100", "Commits returned by log by default.")
    table.add_row("", "auto_stash_before_pull", "bool", "false", "Stash local changes around a pull.")
    table.add_row("", "auto_push_after_commit", "bool", "false", "Push the current branch after committing.")
    table.add_row("", "user_name", "str", '""', "user.name written by init.")
    table.add_row("", "user_email", "str", '""', "user.email written by init.")
    table.add_row("ssh", "host", "str", '"github.com"', "Host used by ssh-test.")
    table.add_row("", "user", "str", '"git"', "SSH user used by ssh-test.")
    table.add_row("", "timeout", "int | str", '"5s"', "Handshake timeout.")
    table.add_row("limits", "max_log_size", "int | str", '"5mb"', "Bridge log size before rotation.")
    table.add_row("", "max_read_size", "int | str", '"2mb"', "Largest file served by fs:readFile.")

    console.print(table)


def main() -> None:
    """Main entry point for the Git Harbor CLI."""
    parser = argparse.ArgumentParser(
        prog="git-harbor",
        description="Manage known repositories and run everyday git operations.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("list", help="List registered repositories")
    for name, help_text in [
        ("add", "Register a repository path"),
        ("remove", "Forget a repository path"),
        ("favorite", "Toggle the favorite flag"),
    ]:
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("path")

    for name, help_text in [
        ("status", "Show working tree status"),
        ("branches", "List branches"),
    ]:
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("path", nargs="?")

    log_parser = subparsers.add_parser("log", help="Show commit history")
    log_parser.add_argument("path", nargs="?")
    log_parser.add_argument("-n", "--max-count", type=int, default=None)

    diff_parser = subparsers.add_parser("diff", help="Show changes")
    diff_parser.add_argument("path", nargs="?")
    diff_parser.add_argument("--staged", action="store_true")
    diff_parser.add_argument("--file")

    commit_parser = subparsers.add_parser("commit", help="Record staged changes")
    commit_parser.add_argument("path", nargs="?")
    commit_parser.add_argument("-m", "--message", required=True)
    commit_parser.add_argument("-a", "--all", action="store_true", help="Stage everything first")
    commit_parser.add_argument("--amend", action="store_true")
    commit_parser.add_argument("--allow-empty", action="store_true")

    push_parser = subparsers.add_parser("push", help="Push a branch")
    pull_parser = subparsers.add_parser("pull", help="Pull a branch")
    for p in (push_parser, pull_parser):
        p.add_argument("path", nargs="?")
        p.add_argument("--remote")
        p.add_argument("--branch")
    push_parser.add_argument("--force", action="store_true")
    push_parser.add_argument("--set-upstream", action="store_true")
    pull_parser.add_argument("--rebase", action="store_true")

    ssh_parser = subparsers.add_parser("ssh-test", help="Check SSH authentication")
    ssh_parser.add_argument("--host")

    config_parser = subparsers.add_parser("config", help="Open config file or view options")
    config_parser.add_argument("--list", "-l", action="store_true")

    subparsers.add_parser("serve", help="Run the bridge over stdio")

    args = parser.parse_args()

    if args.command == "serve":
        bridge.setup_logging(interactive=False, verbose=args.verbose)
        bridge.Bridge().serve(sys.stdin, sys.stdout)
        return
    if args.command == "config":
        if args.list:
            show_config_reference()
        else:
            open_config()
        return
    if args.command == "ssh-test":
        bridge.setup_logging(interactive=True, verbose=args.verbose)
        run_ssh_test(args.host)
        return

    bridge.setup_logging(interactive=True, verbose=args.verbose)
    transport = LocalTransport()

    if args.command in (None, "list"):
        list_repos(transport)
    elif args.command == "add":
        add_repo(transport, args.path)
    elif args.command == "remove":
        remove_repo(transport, args.path)
    elif args.command == "favorite":
        toggle_favorite(transport, args.path)
    elif args.command == "status":
        show_status(transport, args.path)
    elif args.command == "log":
        show_log(transport, args.path, args.max_count)
    elif args.command == "branches":
        show_branches(transport, args.path)
    elif args.command == "diff":
        show_diff(transport, args.path, args.file, args.staged)
    elif args.command == "commit":
        run_commit(transport, args)
    elif args.command in ("push", "pull"):
        run_push(transport, args)


if __name__ == "__main__":
    main()

"""Native file and directory pickers for the bridge's `fs:` channels.

Tk is imported lazily so that headless environments can run everything else.
"""

from pathlib import Path
from typing import Any

from .errors import DialogUnavailableError


def _tk_root() -> tuple[Any, Any]:
    """Creates a hidden, topmost Tk root and returns it with `filedialog`.

    Raises:
        DialogUnavailableError: If Tk is not installed or no display is available.
    """
    try:
        import tkinter
        from tkinter import filedialog
    except ImportError as e:
        raise DialogUnavailableError(f"Tk is not available: {e}") from e

    try:
        root = tkinter.Tk()
    except tkinter.TclError as e:
        raise DialogUnavailableError(f"Cannot open a dialog: {e}") from e

    root.withdraw()
    root.attributes("-topmost", True)
    return root, filedialog


def select_directory(title: str = "Select a repository folder") -> Path | None:
    """Shows a directory picker.

    Returns:
        Path | None: The chosen directory, or None if the dialog was cancelled.
    """
    root, filedialog = _tk_root()
    try:
        chosen = filedialog.askdirectory(title=title, parent=root)
    finally:
        root.destroy()
    return Path(chosen) if chosen else None


def select_file(title: str = "Select a file", initial_dir: Path | None = None) -> Path | None:
    """Shows a file picker.

    Returns:
        Path | None: The chosen file, or None if the dialog was cancelled.
    """
    root, filedialog = _tk_root()
    try:
        chosen = filedialog.askopenfilename(
            title=title,
            parent=root,
            initialdir=str(initial_dir) if initial_dir else None,
        )
    finally:
        root.destroy()
    return Path(chosen) if chosen else None

"""
Platform detection and path helpers.
"""
import os
import sys
from pathlib import Path


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def expand_path(path: str) -> Path:
    """Expand ~ and environment variables in path, return Path object."""
    expanded = os.path.expanduser(os.path.expandvars(str(path)))
    return Path(expanded)


def get_home_dir() -> Path:
    """Get user home directory as Path."""
    return Path.home()


def get_ssh_dir() -> Path:
    """Get .ssh directory path."""
    return get_home_dir() / ".ssh"


def get_default_config_path() -> Path:
    """Per-user OpenSSH client config."""
    return get_ssh_dir() / "config"


def contract_home(path: Path) -> str:
    """Render a path with the home directory shortened to ~, as people write it in ssh config."""
    home = str(get_home_dir())
    text = str(path)
    if text == home or text.startswith(home + os.sep):
        return "~" + text[len(home):].replace(os.sep, "/")
    return text


def is_named_pipe(path: str) -> bool:
    """Check if path is a Windows named pipe."""
    if not is_windows():
        return False
    return path.startswith("\\\\.\\pipe\\") or path.startswith("\\\\")


def get_socket_type(path: str) -> str:
    """Determine socket type: 'unix', 'named_pipe', 'missing' or 'other'."""
    if is_named_pipe(path):
        return "named_pipe"
    path_obj = Path(path)
    if not path_obj.exists():
        return "missing"
    if not is_windows() and path_obj.is_socket():
        return "unix"
    return "other"

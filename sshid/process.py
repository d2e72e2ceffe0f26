"""
Running the OpenSSH command-line tools and inspecting agent processes.
"""
import subprocess
from typing import Dict, List, Optional

import psutil

from .errors import FileSystemError
from .logging_utils import log_debug

# Arguments whose following value is a passphrase and must never be logged.
SECRET_FLAGS = ("-N", "-P")


def describe_command(cmd: List[str]) -> str:
    """Render a command line for logs with passphrase arguments masked."""
    shown = []
    mask_next = False
    for arg in cmd:
        if mask_next:
            shown.append("'***'")
            mask_next = False
            continue
        shown.append(arg)
        mask_next = arg in SECRET_FLAGS
    return " ".join(shown)


def run_tool(
    cmd: List[str],
    capture: bool = True,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external tool and return its result without raising on exit status.

    Args:
        cmd: Command and arguments
        capture: Capture stdout/stderr as text; when False the tool shares our
            terminal so it can prompt the user
        env: Full environment for the child (default: inherit)
        timeout: Seconds before giving up (default: wait forever)

    Returns:
        CompletedProcess with returncode (and output when captured)

    Raises:
        FileSystemError: If the executable cannot be found or started
    """
    log_debug(f"Running: {describe_command(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=capture,
            text=True,
            env=env,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise FileSystemError("Executable not found", cmd[0],
                              hint="install the OpenSSH client tools or point sshid at them") from e
    except PermissionError as e:
        raise FileSystemError("Executable is not runnable", cmd[0]) from e
    log_debug(f"Exit status {result.returncode}")
    return result


def agent_process_alive(pid: int) -> bool:
    """
    Check whether SSH_AGENT_PID still names a running ssh-agent.

    Args:
        pid: Process ID from the environment

    Returns:
        True if the process exists and looks like an agent
    """
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        name = proc.name()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        log_debug(f"Access denied inspecting PID {pid}")
        return True
    return "agent" in name.lower() and proc.is_running()

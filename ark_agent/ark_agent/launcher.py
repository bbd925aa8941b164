"""
Starts the Ark agent as a detached background process.
"""

import os
import shutil
import subprocess
import sys
from typing import Optional

from ark_agent.config import AgentSettings, default_data_dir
from ark_agent.errors import LaunchError
from ark_agent.logging import get_logger

logger = get_logger("Launcher")

AGENT_EXECUTABLE = "ark-agent"


def find_agent_binary() -> str:
    """
    Locate the ark-agent executable.

    Search order: PATH, then the directory of the running interpreter
    (where console scripts of the same environment are installed), then
    the directory of the invoked program.

    Raises:
        LaunchError: If no candidate exists
    """
    path = shutil.which(AGENT_EXECUTABLE)
    if path:
        return path

    name = AGENT_EXECUTABLE + (".exe" if os.name == "nt" else "")
    search_dirs = []
    for exe in (sys.executable, sys.argv[0] if sys.argv else ""):
        if exe:
            exe_dir = os.path.dirname(os.path.abspath(exe))
            if exe_dir not in search_dirs:
                search_dirs.append(exe_dir)

    for exe_dir in search_dirs:
        candidate = os.path.join(exe_dir, name)
        if os.path.isfile(candidate):
            return candidate

    raise LaunchError(
        f"{AGENT_EXECUTABLE} binary not found in PATH or {', '.join(search_dirs)}"
    )


def _detach_kwargs() -> dict:
    """Platform specific Popen arguments detaching the child from our session."""
    if os.name == "nt":
        flags = (
            subprocess.CREATE_NEW_PROCESS_GROUP
            | subprocess.DETACHED_PROCESS
            | subprocess.CREATE_NO_WINDOW
        )
        return {"creationflags": flags}
    # New session: no controlling terminal, survives the parent's exit
    return {"start_new_session": True}


def start(binary_path: Optional[str] = None, data_dir: Optional[str] = None) -> subprocess.Popen:
    """
    Launch the agent in the background.

    The child's stdout and stderr are appended to <data_dir>/agent.log and its
    working directory is the data directory. The call returns as soon as the
    process is spawned; readiness is checked by polling the health endpoint.

    Args:
        binary_path (str, optional): Agent executable, located if omitted
        data_dir (str, optional): Data directory, defaults to $ARK_AGENT_DATA or ~/.ark

    Returns:
        subprocess.Popen: Handle of the spawned process

    Raises:
        LaunchError: If the directory, log file or process cannot be created
    """
    data_dir = data_dir or default_data_dir()
    try:
        os.makedirs(data_dir, mode=0o700, exist_ok=True)
    except OSError as e:
        raise LaunchError(f"create data directory: {e}") from e

    if not binary_path:
        binary_path = find_agent_binary()
    elif not os.path.isfile(binary_path):
        raise LaunchError(f"agent binary not found: {binary_path}")

    log_path = AgentSettings(data_dir=data_dir).log_path
    try:
        log_fd = os.open(log_path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
    except OSError as e:
        raise LaunchError(f"open log file: {e}") from e

    try:
        with os.fdopen(log_fd, "ab") as log_file:
            proc = subprocess.Popen(
                [binary_path],
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                cwd=data_dir,
                close_fds=True,
                **_detach_kwargs(),
            )
    except OSError as e:
        raise LaunchError(f"start agent process: {e}") from e

    logger.info(f"Started agent process {proc.pid} from {binary_path}, logging to {log_path}")
    return proc

"""
PID lock file ensuring a single agent instance per data directory.
"""

import os
import tempfile
from typing import Optional, Protocol

import psutil

from ark_agent.errors import AlreadyRunningError, LockError
from ark_agent.logging import get_logger

logger = get_logger("LockFile")


class ProcessProbe(Protocol):
    """Answers whether a PID currently names a live process."""

    def exists(self, pid: int) -> bool: ...


class PsutilProbe:
    """
    Liveness check backed by psutil.

    On POSIX psutil sends signal 0; a process we may not signal (EPERM)
    still counts as alive. On Windows it queries the process table.
    """

    def exists(self, pid: int) -> bool:
        if pid <= 0:
            return False
        return psutil.pid_exists(pid)


def _read_pid(path: str) -> Optional[int]:
    """
    Read the PID recorded in a lock file.

    Returns:
        int | None: The PID, or None if the content is not a positive integer

    Raises:
        FileNotFoundError: If the lock file does not exist
    """
    with open(path, "r") as f:
        content = f.read().strip()
    try:
        pid = int(content)
    except ValueError:
        return None
    return pid if pid > 0 else None


class LockFile:
    """
    PID-based lock file.

    The file holds the owner's PID as newline-terminated decimal text.
    A lock whose PID no longer names a live process is stale and is
    replaced on the next acquire.
    """

    def __init__(self, path: str, probe: Optional[ProcessProbe] = None, pid: Optional[int] = None):
        """
        Args:
            path (str): Lock file path
            probe (ProcessProbe, optional): Liveness check, defaults to PsutilProbe
            pid (int, optional): PID to record, defaults to the current process
        """
        self.path = path
        self.probe = probe or PsutilProbe()
        self.pid = pid if pid is not None else os.getpid()

    def acquire(self):
        """
        Acquire the lock for this process.

        Raises:
            AlreadyRunningError: If a live process already holds the lock
            LockError: If the lock file cannot be read, removed or written
        """
        try:
            existing_pid = _read_pid(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LockError(f"read existing lock file: {e}") from e
        else:
            if existing_pid is None:
                logger.warning(f"Lock file {self.path} has malformed content, removing it")
                self._remove_stale()
            elif self.probe.exists(existing_pid):
                raise AlreadyRunningError(existing_pid)
            else:
                logger.info(f"Removing stale lock held by dead PID {existing_pid}")
                self._remove_stale()

        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, mode=0o700, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".agent-lock-")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(f"{self.pid}\n")
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise LockError(f"write lock file: {e}") from e

        logger.debug(f"Lock acquired at {self.path} for PID {self.pid}")

    def _remove_stale(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LockError(f"remove stale lock file: {e}") from e

    def release(self):
        """
        Release the lock if, and only if, it is held by this process.

        Raises:
            LockError: If the lock belongs to another PID or cannot be removed
        """
        try:
            lock_pid = _read_pid(self.path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise LockError(f"read lock file: {e}") from e

        if lock_pid is not None and lock_pid != self.pid:
            raise LockError(f"lock file belongs to PID {lock_pid}, not {self.pid}")

        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LockError(f"remove lock file: {e}") from e
        logger.debug(f"Lock released at {self.path}")


def locked_pid(path: str, probe: Optional[ProcessProbe] = None) -> Optional[int]:
    """
    Return the PID of the live process holding the lock at path, or None
    if there is no lock, it is malformed, or its owner is dead.
    """
    try:
        pid = _read_pid(path)
    except OSError:
        return None
    if pid is None:
        return None
    probe = probe or PsutilProbe()
    return pid if probe.exists(pid) else None


def is_locked(path: str, probe: Optional[ProcessProbe] = None) -> bool:
    """Whether a live process currently holds the lock at path."""
    return locked_pid(path, probe) is not None

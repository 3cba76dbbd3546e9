"""Exclusive run lock.

At most one run may operate on the host at a time. The lock is an
advisory `flock` on a file in the state directory, so it is released by the
kernel if the holding process dies. A second invocation fails immediately
rather than waiting.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO

from ..errors import ConcurrentRunInProgress


class RunLock:
    """Non-blocking exclusive lock on a lock file."""

    def __init__(self, path: Path):
        self.path = path
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def holder(self) -> int | None:
        """PID written by the current holder, if readable."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        """Acquire the lock or raise ConcurrentRunInProgress."""
        if self._handle is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            pid = self.holder()
            raise ConcurrentRunInProgress(
                message=f"Another run holds {self.path}" + (f" (PID {pid})" if pid else ""),
                remediation="Wait for the running deployment to finish, then retry",
                data={"lock_file": str(self.path), "pid": pid},
            ) from None
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            self._handle.seek(0)
            self._handle.truncate()
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

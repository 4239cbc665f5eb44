from __future__ import annotations

import logging
import os
import socket
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Tuple, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class SingleFlight:
    """Non-blocking guard: a job that finds the guard taken is skipped, not queued.

    All scheduled jobs share one guard because they all read-modify-write the
    same tracker records.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.running: Optional[str] = None

    def run(self, name: str, fn: Callable[[], T]) -> Tuple[bool, Optional[T]]:
        if not self._lock.acquire(blocking=False):
            logger.warning("job=%s skipped: job=%s is still running", name, self.running)
            return False, None
        self.running = name
        try:
            return True, fn()
        finally:
            self.running = None
            self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()


class InstanceLock:
    """Exclusive OS-level lock file so only one scheduler process runs at a time."""

    def __init__(self, path: Path | str, run_id: str = ""):
        self.path = Path(path)
        self.run_id = run_id
        self._fh: Any = None
        self._kind: Optional[str] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+b")
        try:
            if os.name == "nt":
                import msvcrt  # type: ignore

                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
                self._kind = "msvcrt"
            else:
                import fcntl  # type: ignore

                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._kind = "fcntl"
        except OSError as e:
            fh.close()
            raise RuntimeError(
                f"Another orchestrator instance is running (lock_file={self.path}, pid={os.getpid()}): {e}"
            ) from e

        fh.seek(0)
        fh.truncate()
        fh.write(f"pid={os.getpid()} host={socket.gethostname()} run={self.run_id}\n".encode("utf-8"))
        fh.flush()
        self._fh = fh
        logger.info("acquired instance lock path=%s run=%s", self.path, self.run_id)

    def release(self) -> None:
        fh = self._fh
        if fh is None:
            return
        try:
            if self._kind == "msvcrt":
                import msvcrt  # type: ignore

                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
            elif self._kind == "fcntl":
                import fcntl  # type: ignore

                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
            self._fh = None
            self._kind = None

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()

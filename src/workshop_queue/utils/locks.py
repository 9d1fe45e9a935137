from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import TextIO


class LockTimeout(RuntimeError):
    pass


def _try_lock(fp: TextIO) -> bool:
    if os.name == "nt":
        import msvcrt  # type: ignore

        try:
            msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
            return True
        except OSError:
            return False
    import fcntl

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except BlockingIOError:
        return False


def _unlock(fp: TextIO) -> None:
    if os.name == "nt":
        import msvcrt  # type: ignore

        msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
        return
    import fcntl

    fcntl.flock(fp.fileno(), fcntl.LOCK_UN)


class StoreLock:
    """
    Exclusive lock shared by every process (and thread) that opens the same queue DB.

    The in-process mutex is taken first so threads of one process queue up on it
    instead of spinning on the OS lock.
    """

    def __init__(self, path: Path, *, timeout_s: float = 10.0, poll_interval_s: float = 0.02) -> None:
        self.path = Path(path).resolve()
        self.timeout_s = float(timeout_s)
        self.poll_interval_s = float(poll_interval_s)
        self._mutex = threading.Lock()
        self._fp: TextIO | None = None

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout_s
        if not self._mutex.acquire(timeout=max(0.0, self.timeout_s)):
            raise LockTimeout(f"Timed out waiting for {self.path.name}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fp = self.path.open("a+", encoding="utf-8")
            while not _try_lock(fp):
                if time.monotonic() >= deadline:
                    fp.close()
                    raise LockTimeout(f"Timed out acquiring {self.path.name}")
                time.sleep(self.poll_interval_s)
            self._fp = fp
        except BaseException:
            self._mutex.release()
            raise

    def release(self) -> None:
        fp, self._fp = self._fp, None
        try:
            if fp is not None:
                try:
                    _unlock(fp)
                finally:
                    fp.close()
        finally:
            self._mutex.release()

    def __enter__(self) -> StoreLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

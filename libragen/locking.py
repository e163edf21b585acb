"""
Advisory build lock.

A build holds an exclusive, non-blocking OS lock on ``<output>.lock`` for its
whole lifetime.  A second build for the same output fails immediately with
:class:`~libragen.errors.AlreadyLocked`.  The OS releases the lock when
the process dies, so a crashed build never blocks the next one.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from .errors import AlreadyLocked

logger = logging.getLogger(__name__)

if os.name == "nt":
    import msvcrt

    def _try_lock(fd: int) -> bool:
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            return True
        except OSError:
            return False

    def _unlock(fd: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
else:
    import fcntl

    def _try_lock(fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False

    def _unlock(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


class LibraryLock:
    """
    Exclusive lock for building the library at *target*.

    Use as a context manager::

        with LibraryLock("react.libragen"):
            ...
    """

    def __init__(self, target: str) -> None:
        self.target = target
        self.lock_path = os.path.abspath(target) + ".lock"
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        if not _try_lock(fd):
            os.close(fd)
            raise AlreadyLocked(self.target)
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("ascii"))
        self._fd = fd
        logger.debug("Acquired build lock %s", self.lock_path)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        # Only the OS lock is released; the lock file stays in place.
        try:
            _unlock(fd)
        finally:
            os.close(fd)
        logger.debug("Released build lock %s", self.lock_path)

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "LibraryLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()

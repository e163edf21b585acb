"""
Background build tasks.

A :class:`TaskManager` runs builds on a small thread pool so a long-running
caller (a server, an editor integration) can start a build, poll its
progress and cancel it.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional, Union

from .builder import Builder, BuildOptions, BuildProgress, BuildResult
from .errors import BuildCancelled
from .sources import SourceFile

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

_FINAL = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)


@dataclass
class BuildTask:
    """State of one submitted build; read it from any thread."""

    id: str
    source: Union[str, list[SourceFile]]
    options: BuildOptions
    status: str = STATUS_PENDING
    progress: Optional[BuildProgress] = None
    result: Optional[BuildResult] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _future: Optional[Future] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status in _FINAL

    def cancel(self) -> bool:
        """
        Request cancellation.  A pending task never starts; a running one
        stops at its next batch boundary and leaves no output file.

        Returns ``False`` when the task had already finished.
        """
        if self.done:
            return False
        self._cancel_event.set()
        if self._future is not None and self._future.cancel():
            self.status = STATUS_CANCELLED
            self.finished_at = time.time()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task is finished; ``False`` on timeout."""
        if self._future is None:
            return self.done
        try:
            self._future.result(timeout=timeout)
        except (CancelledError, FutureTimeout):
            pass
        return self.done


class TaskManager:
    """
    Runs :meth:`Builder.build` calls in background threads.

    Parameters
    ----------
    builder:
        Builder shared by every task (and therefore its embedder).
    max_concurrent:
        Builds running at the same time; the rest wait as ``pending``.
    """

    def __init__(self, builder: Builder, max_concurrent: int = 1) -> None:
        self.builder = builder
        self._pool = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="libragen-task")
        self._tasks: dict[str, BuildTask] = {}
        self._lock = threading.Lock()

    def submit(self, source: Union[str, list[SourceFile]], options: Optional[BuildOptions] = None) -> BuildTask:
        task = BuildTask(id=uuid.uuid4().hex[:12], source=source, options=options or BuildOptions())
        with self._lock:
            self._tasks[task.id] = task
        task._future = self._pool.submit(self._run, task)
        logger.info("Queued build task %s", task.id)
        return task

    def get(self, task_id: str) -> Optional[BuildTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self) -> list[BuildTask]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda t: t.created_at)

    def cancel(self, task_id: str) -> bool:
        task = self.get(task_id)
        return task.cancel() if task else False

    def clear_finished(self) -> int:
        with self._lock:
            finished = [tid for tid, t in self._tasks.items() if t.done]
            for tid in finished:
                del self._tasks[tid]
        return len(finished)

    def shutdown(self, cancel_running: bool = True) -> None:
        if cancel_running:
            for task in self.list_tasks():
                task.cancel()
        self._pool.shutdown(wait=True)

    # ------------------------------------------------------------------

    def _run(self, task: BuildTask) -> None:
        if task._cancel_event.is_set():
            task.status = STATUS_CANCELLED
            task.finished_at = time.time()
            return
        task.status = STATUS_RUNNING

        def on_progress(progress: BuildProgress) -> None:
            task.progress = progress

        try:
            task.result = self.builder.build(
                task.source, task.options, progress=on_progress, cancel_event=task._cancel_event,
            )
            task.status = STATUS_COMPLETED
            logger.info("Build task %s completed: %s", task.id, task.result.output_path)
        except BuildCancelled:
            task.status = STATUS_CANCELLED
            logger.info("Build task %s cancelled", task.id)
        except Exception as exc:
            task.error = str(exc)
            task.status = STATUS_FAILED
            logger.warning("Build task %s failed: %s", task.id, exc)
        finally:
            task.finished_at = time.time()

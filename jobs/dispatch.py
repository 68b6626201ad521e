"""Background dispatcher running job continuations off the request path."""
from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from config import JOB_RUNNER_WORKERS
from observability.logger import get_logger
from observability.metrics import get_registry

LOGGER = get_logger("genjobs.jobs.dispatch")
REGISTRY = get_registry()
QUEUE_GAUGE = REGISTRY.gauge("jobs.queue_length")

_SHUTDOWN = "__shutdown__"

ErrorSink = Callable[[str, BaseException], None]


@dataclass
class RunnerTask:
    job_id: str
    target: Callable[[str], None]
    on_error: Optional[ErrorSink] = None


class BackgroundDispatcher:
    """Worker threads consuming spawned job tasks from a FIFO queue.

    ``spawn`` never blocks on the task itself. A task that raises is logged and
    handed to its error sink, so a failed continuation is always observed.
    """

    def __init__(self, *, workers: int = JOB_RUNNER_WORKERS, name: str = "job-runner") -> None:
        self._workers = max(1, int(workers))
        self._name = name
        self._tasks: "queue.Queue[RunnerTask]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._events: Dict[str, threading.Event] = {}
        self._inflight: Dict[str, int] = {}
        self._events_lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._started = False

    def start(self) -> None:
        with self._start_lock:
            if self._started:
                return
            for index in range(self._workers):
                thread = threading.Thread(target=self._worker, name=f"{self._name}-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)
            self._started = True

    def stop(self, timeout: float = 1.0) -> None:
        with self._start_lock:
            if not self._started:
                return
            for _ in self._threads:
                self._tasks.put(RunnerTask(job_id=_SHUTDOWN, target=lambda _job_id: None))
            for thread in self._threads:
                thread.join(timeout=timeout)
            self._threads.clear()
            self._started = False

    def spawn(self, job_id: str, target: Callable[[str], None], *, on_error: Optional[ErrorSink] = None) -> None:
        with self._events_lock:
            self._inflight[job_id] = self._inflight.get(job_id, 0) + 1
            self._events.setdefault(job_id, threading.Event())
        self._tasks.put(RunnerTask(job_id=job_id, target=target, on_error=on_error))
        QUEUE_GAUGE.set(float(self._tasks.qsize()))
        self.start()
        LOGGER.info("job_task_spawned", extra={"job_id": job_id, "task": getattr(target, "__name__", "task")})

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until no task for ``job_id`` is queued or running."""

        with self._events_lock:
            event = self._events.get(job_id)
        if event is None:
            return True
        return event.wait(timeout)

    def pending(self) -> int:
        return self._tasks.qsize()

    def _worker(self) -> None:
        while True:
            task = self._tasks.get()
            QUEUE_GAUGE.set(float(self._tasks.qsize()))
            if task.job_id == _SHUTDOWN:
                break
            try:
                task.target(task.job_id)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("job_task_failed", extra={"job_id": task.job_id, "error": str(exc)})
                self._report(task, exc)
            finally:
                self._finish(task.job_id)

    def _report(self, task: RunnerTask, exc: BaseException) -> None:
        if task.on_error is None:
            return
        try:
            task.on_error(task.job_id, exc)
        except Exception:  # noqa: BLE001
            LOGGER.exception("job_error_sink_failed", extra={"job_id": task.job_id})

    def _finish(self, job_id: str) -> None:
        with self._events_lock:
            remaining = self._inflight.get(job_id, 1) - 1
            if remaining > 0:
                self._inflight[job_id] = remaining
                return
            self._inflight.pop(job_id, None)
            event = self._events.pop(job_id, None)
        if event:
            event.set()


__all__ = ["BackgroundDispatcher", "RunnerTask"]

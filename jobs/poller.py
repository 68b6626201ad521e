"""Cancellable fixed-delay polling of long-running operations."""
from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

from config import JOB_POLL_INTERVAL_S
from errors import describe_error
from observability.logger import get_logger
from observability.metrics import get_registry

from .models import OperationHandle

LOGGER = get_logger("genjobs.jobs.poller")
ACTIVE_GAUGE = get_registry().gauge("poller.active")

Check = Callable[[], OperationHandle]
Parse = Callable[[OperationHandle], Any]
DoneCallback = Callable[[Any], None]
ErrorCallback = Callable[[str], None]


def response_payload(handle: OperationHandle) -> Any:
    if handle.response is None:
        raise ValueError(f"Operation {handle.name} finished without a response payload")
    return handle.response


class PollHandle:
    """Caller-side reference to one recurring check."""

    def __init__(
        self,
        poller: "OperationPoller",
        key: str,
        check: Check,
        on_done: DoneCallback,
        on_error: ErrorCallback,
        parse: Parse,
    ) -> None:
        self.key = key
        self.checks = 0
        self._poller = poller
        self._check = check
        self._on_done = on_done
        self._on_error = on_error
        self._parse = parse
        self._stop = threading.Event()
        self._cancelled = False
        self._thread = threading.Thread(target=poller._run, args=(self,), name=f"poll-{key}", daemon=True)

    @property
    def active(self) -> bool:
        return not self._stop.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        return self._poller._cancel_entry(self)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)


class OperationPoller:
    """At most one recurring check per key, each tick waiting for the previous.

    The first check happens one interval after :meth:`start`. A terminal outcome
    fires exactly one of ``on_done``/``on_error`` and removes the entry. Cancelling
    discards the result of a check that is still in flight.
    """

    def __init__(self, *, interval_s: float = JOB_POLL_INTERVAL_S) -> None:
        self._interval_s = max(0.0, float(interval_s))
        self._entries: Dict[str, PollHandle] = {}
        self._lock = threading.Lock()

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def start(
        self,
        key: str,
        check: Check,
        on_done: DoneCallback,
        on_error: ErrorCallback,
        *,
        parse: Optional[Parse] = None,
    ) -> PollHandle:
        entry = PollHandle(self, key, check, on_done, on_error, parse or response_payload)
        with self._lock:
            previous = self._entries.get(key)
        if previous is not None:
            LOGGER.info("poll_replaced", extra={"key": key})
            previous.cancel()
        with self._lock:
            self._entries[key] = entry
        ACTIVE_GAUGE.inc()
        entry._thread.start()
        LOGGER.info("poll_started", extra={"key": key, "interval_s": self._interval_s})
        return entry

    def cancel(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return False
        return entry.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            entry.cancel()

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _run(self, entry: PollHandle) -> None:
        while not entry._stop.wait(self._interval_s):
            entry.checks += 1
            try:
                handle = entry._check()
            except Exception as exc:  # noqa: BLE001
                self._fail(entry, describe_error(exc, default="Polling failed."))
                return
            if entry._stop.is_set():
                LOGGER.info("poll_result_discarded", extra={"key": entry.key, "checks": entry.checks})
                return
            if not handle.done:
                continue
            if handle.error_message:
                self._fail(entry, handle.error_message)
                return
            try:
                value = entry._parse(handle)
            except Exception as exc:  # noqa: BLE001
                self._fail(entry, describe_error(exc, default="Operation returned a malformed response."))
                return
            self._succeed(entry, value)
            return

    def _claim(self, entry: PollHandle, *, cancelled: bool = False) -> bool:
        with self._lock:
            if entry._stop.is_set():
                return False
            entry._stop.set()
            entry._cancelled = cancelled
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]
        ACTIVE_GAUGE.dec()
        return True

    def _cancel_entry(self, entry: PollHandle) -> bool:
        if not self._claim(entry, cancelled=True):
            return False
        LOGGER.info("poll_cancelled", extra={"key": entry.key, "checks": entry.checks})
        return True

    def _succeed(self, entry: PollHandle, value: Any) -> None:
        if not self._claim(entry):
            return
        LOGGER.info("poll_done", extra={"key": entry.key, "checks": entry.checks})
        try:
            entry._on_done(value)
        except Exception:  # noqa: BLE001
            LOGGER.exception("poll_callback_failed", extra={"key": entry.key})

    def _fail(self, entry: PollHandle, message: str) -> None:
        if not self._claim(entry):
            return
        LOGGER.warning("poll_failed", extra={"key": entry.key, "checks": entry.checks, "error": message})
        try:
            entry._on_error(message)
        except Exception:  # noqa: BLE001
            LOGGER.exception("poll_callback_failed", extra={"key": entry.key})


__all__ = ["OperationPoller", "PollHandle", "response_payload"]

from __future__ import annotations

import threading
import time

from jobs.models import OperationHandle
from jobs.poller import OperationPoller

from conftest import wait_for


class Recorder:
    def __init__(self) -> None:
        self.done = []
        self.errors = []
        self.finished = threading.Event()

    def on_done(self, value) -> None:
        self.done.append(value)
        self.finished.set()

    def on_error(self, message) -> None:
        self.errors.append(message)
        self.finished.set()


def _sequence(*handles):
    calls = []
    remaining = list(handles)

    def _check():
        calls.append(time.monotonic())
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return _check, calls


def test_done_on_second_poll_fires_exactly_once(fast_poller):
    recorder = Recorder()
    check, calls = _sequence(
        OperationHandle(name="op-1"),
        OperationHandle(name="op-1", done=True, response={"videos": [{"gcsUri": "gs://b/v.mp4"}]}),
    )
    entry = fast_poller.start("op-1", check, recorder.on_done, recorder.on_error)

    assert recorder.finished.wait(5)
    entry.join(5)
    assert len(calls) == 2
    assert entry.checks == 2
    assert recorder.done == [{"videos": [{"gcsUri": "gs://b/v.mp4"}]}]
    assert recorder.errors == []
    assert fast_poller.is_active("op-1") is False
    assert len(fast_poller) == 0


def test_operation_error_is_reported(fast_poller):
    recorder = Recorder()
    check, _ = _sequence(OperationHandle(name="op-2", done=True, error={"code": 7, "message": "quota exceeded"}))
    fast_poller.start("op-2", check, recorder.on_done, recorder.on_error)

    assert recorder.finished.wait(5)
    assert recorder.errors == ["quota exceeded"]
    assert recorder.done == []


def test_done_without_payload_is_an_error(fast_poller):
    recorder = Recorder()
    check, _ = _sequence(OperationHandle(name="op-3", done=True))
    fast_poller.start("op-3", check, recorder.on_done, recorder.on_error)

    assert recorder.finished.wait(5)
    assert recorder.done == []
    assert len(recorder.errors) == 1
    assert "op-3" in recorder.errors[0]


def test_parse_failure_is_an_error(fast_poller):
    recorder = Recorder()
    check, _ = _sequence(OperationHandle(name="op-4", done=True, response={"unexpected": True}))

    def _parse(handle):
        return handle.response["videos"][0]

    fast_poller.start("op-4", check, recorder.on_done, recorder.on_error, parse=_parse)

    assert recorder.finished.wait(5)
    assert recorder.done == []
    assert recorder.errors and recorder.errors[0]


def test_check_exception_stops_polling(fast_poller):
    recorder = Recorder()

    def _check():
        raise ConnectionError("network unreachable")

    entry = fast_poller.start("op-5", _check, recorder.on_done, recorder.on_error)
    assert recorder.finished.wait(5)
    entry.join(5)
    assert recorder.errors == ["network unreachable"]
    assert entry.checks == 1


def test_cancel_after_five_ticks_discards_in_flight_result(fast_poller):
    recorder = Recorder()
    fifth_check = threading.Event()
    release = threading.Event()
    calls = []

    def _check():
        calls.append(1)
        if len(calls) == 5:
            fifth_check.set()
            release.wait(5)
            return OperationHandle(name="op-6", done=True, response={"late": True})
        return OperationHandle(name="op-6")

    entry = fast_poller.start("op-6", _check, recorder.on_done, recorder.on_error)
    assert fifth_check.wait(5)
    assert entry.cancel() is True
    release.set()
    entry.join(5)
    time.sleep(0.05)

    assert len(calls) == 5
    assert recorder.done == []
    assert recorder.errors == []
    assert entry.cancelled is True
    assert fast_poller.is_active("op-6") is False


def test_cancel_is_idempotent_and_safe_after_completion(fast_poller):
    recorder = Recorder()
    check, _ = _sequence(OperationHandle(name="op-7", done=True, response={"ok": True}))
    entry = fast_poller.start("op-7", check, recorder.on_done, recorder.on_error)
    assert recorder.finished.wait(5)

    assert entry.cancel() is False
    assert entry.cancel() is False
    assert entry.cancelled is False
    assert fast_poller.cancel("op-7") is False
    assert fast_poller.cancel("never-started") is False
    assert recorder.done == [{"ok": True}]


def test_restarting_a_key_replaces_the_previous_entry():
    poller = OperationPoller(interval_s=0.05)
    first = Recorder()
    second = Recorder()
    pending = lambda: OperationHandle(name="op-8")  # noqa: E731
    try:
        old = poller.start("op-8", pending, first.on_done, first.on_error)
        new = poller.start("op-8", pending, second.on_done, second.on_error)
        assert old.cancelled is True
        assert old.active is False
        assert new.active is True
        assert len(poller) == 1
    finally:
        poller.cancel_all()
    assert wait_for(lambda: len(poller) == 0)
    assert first.done == first.errors == []

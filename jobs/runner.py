"""Job lifecycle engine: create, advance and report single-step generation jobs."""
from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from config import (
    ALLOW_ADULT_DEFAULT,
    IMAGE_ASPECT_RATIOS,
    JOB_STALE_AFTER_S,
    OPERATION_TIMEOUT_S,
    VIDEO_ASPECT_RATIOS,
)
from domain.prompt_builder import enhance_image_prompt
from errors import GatewayError, NotFoundError, ValidationError, describe_error
from observability.logger import bind_trace_id, clear_trace_id, current_trace_id, get_logger, log_job_event
from observability.metrics import get_registry

from .dispatch import BackgroundDispatcher
from .models import Job, JobKind, JobStatus, OperationHandle, job_from_dict, strip_data_url, utcnow
from .poller import OperationPoller, response_payload
from .store import JobStore

LOGGER = get_logger("genjobs.jobs.runner")
REGISTRY = get_registry()
CREATED_COUNTER = REGISTRY.counter("jobs.created_total")
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")

IN_FLIGHT_STATUSES = frozenset({JobStatus.PLANNING, JobStatus.PROCESSING, JobStatus.PROCESSING_IMAGES})
SINGLE_STEP_KINDS = (JobKind.TRY_ON, JobKind.IMAGE, JobKind.VIDEO)
CANCEL_CHECK_INTERVAL_S = 0.25

Clock = Callable[[], datetime]


def _require_text(payload: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValidationError(f"Missing required field: {names[0]}", field=names[0])


def _aspect_ratio(payload: Dict[str, Any], allowed, default: str) -> str:
    value = str(payload.get("aspect_ratio") or default).strip()
    if value not in allowed:
        raise ValidationError(
            f"Unsupported aspect_ratio {value!r}; expected one of {', '.join(allowed)}",
            field="aspect_ratio",
        )
    return value


def normalize_image(value: Any) -> Optional[Dict[str, str]]:
    if value in (None, ""):
        return None
    if isinstance(value, str):
        mime_type = "image/png"
        if value.startswith("data:") and ";" in value:
            mime_type = value[len("data:"):value.index(";")] or mime_type
        return {"data": strip_data_url(value), "mime_type": mime_type}
    if isinstance(value, dict) and isinstance(value.get("data"), str) and value["data"].strip():
        return {
            "data": strip_data_url(value["data"].strip()),
            "mime_type": str(value.get("mime_type") or value.get("mimeType") or "image/png"),
        }
    raise ValidationError("image must be a base64 string or an object with data and mime_type", field="image")


def _infer_kind(payload: Dict[str, Any]) -> JobKind:
    raw = payload.get("kind")
    if raw:
        try:
            kind = JobKind(str(raw).strip().lower())
        except ValueError:
            kind = None
        if kind not in SINGLE_STEP_KINDS:
            raise ValidationError(f"Unsupported job kind: {raw}", field="kind")
        return kind
    if payload.get("person_image") or payload.get("product_image"):
        return JobKind.TRY_ON
    return JobKind.IMAGE


def normalize_job_input(payload: Any) -> Dict[str, Any]:
    """Validate a submission and return the input stored on the job."""

    if not isinstance(payload, dict):
        raise ValidationError("Job input must be an object")
    kind = _infer_kind(payload)
    if kind == JobKind.TRY_ON:
        allow_adult = payload.get("allow_adult", ALLOW_ADULT_DEFAULT)
        return {
            "kind": kind.value,
            "person_image": strip_data_url(_require_text(payload, "person_image")),
            "product_image": strip_data_url(_require_text(payload, "product_image")),
            "allow_adult": bool(allow_adult),
        }
    if kind == JobKind.IMAGE:
        prompt = _require_text(payload, "prompt", "text")
        if payload.get("enhance"):
            prompt = enhance_image_prompt(prompt)
        return {
            "kind": kind.value,
            "prompt": prompt,
            "aspect_ratio": _aspect_ratio(payload, IMAGE_ASPECT_RATIOS, "1:1"),
        }
    normalized = {
        "kind": kind.value,
        "prompt": _require_text(payload, "prompt", "text"),
        "aspect_ratio": _aspect_ratio(payload, VIDEO_ASPECT_RATIOS, "16:9"),
    }
    image = normalize_image(payload.get("image"))
    if image:
        normalized["image"] = image
    return normalized


def finished_handle(handle: OperationHandle) -> OperationHandle:
    """Poller parse step: a finished handle must carry a response payload."""

    response_payload(handle)
    return handle


def await_operation(
    poller: OperationPoller,
    check: Callable[[], OperationHandle],
    handle: OperationHandle,
    *,
    timeout_s: float,
) -> OperationHandle:
    """Block the calling worker until the poller reports ``handle`` finished.

    Raises :class:`errors.GatewayError` with the operation error, or when the
    operation is still running after ``timeout_s`` or its poll is cancelled.
    """

    outcome: Dict[str, Any] = {}
    finished = threading.Event()

    def _on_done(value: OperationHandle) -> None:
        outcome["handle"] = value
        finished.set()

    def _on_error(message: str) -> None:
        outcome["error"] = message
        finished.set()

    entry = poller.start(handle.name, check, _on_done, _on_error, parse=finished_handle)
    deadline = time.monotonic() + timeout_s
    # a poll cancelled elsewhere (shutdown, key restart) never calls back
    while not finished.wait(CANCEL_CHECK_INTERVAL_S):
        if entry.cancelled:
            raise GatewayError(f"Polling of operation {handle.name} was cancelled.")
        if time.monotonic() < deadline:
            continue
        if entry.cancel():
            raise GatewayError(f"Operation {handle.name} did not finish within {int(timeout_s)} seconds.")
        if entry.cancelled:
            raise GatewayError(f"Polling of operation {handle.name} was cancelled.")
    if "error" in outcome:
        raise GatewayError(outcome["error"])
    return outcome["handle"]


def read_job(store: JobStore, job_id: str, *, clock: Clock, stale_after_s: float) -> Job:
    """Read a job, failing it first when it has been in flight for too long.

    A job whose worker died mid-call would otherwise stay in flight forever. The
    expiry is a conditional write, so a worker finishing late cannot overwrite it.
    """

    record = store.get(job_id)
    if record is None:
        raise NotFoundError(job_id)
    job = job_from_dict(record)
    if job.status not in IN_FLIGHT_STATUSES or job.started_at is None:
        return job
    if (clock() - job.started_at).total_seconds() <= stale_after_s:
        return job
    message = f"Job timed out after {int(stale_after_s)} seconds without finishing."
    current, applied = store.transition(
        job_id,
        IN_FLIGHT_STATUSES,
        lambda stale: stale.mark_failed(message, now=clock()),
    )
    if current is None:
        raise NotFoundError(job_id)
    if applied:
        FAILED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job_id, event="job_marked_stale", status=current.status.value)
    return current


class JobRunner:
    """Drives single-step jobs through ``PENDING -> PROCESSING -> COMPLETED|FAILED``.

    Submission writes the ``PENDING`` record and returns; :meth:`advance` runs on
    the background dispatcher and makes exactly one gateway submission. Every
    status change is a conditional write, so terminal records are never touched
    again.
    """

    def __init__(
        self,
        store: JobStore,
        gateway: Any,
        *,
        dispatcher: Optional[BackgroundDispatcher] = None,
        poller: Optional[OperationPoller] = None,
        clock: Clock = utcnow,
        stale_after_s: float = JOB_STALE_AFTER_S,
        operation_timeout_s: float = OPERATION_TIMEOUT_S,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher if dispatcher is not None else BackgroundDispatcher()
        self._poller = poller if poller is not None else OperationPoller()
        self._clock = clock
        self._stale_after_s = stale_after_s
        self._operation_timeout_s = operation_timeout_s

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def poller(self) -> OperationPoller:
        return self._poller

    @property
    def dispatcher(self) -> BackgroundDispatcher:
        return self._dispatcher

    def create_job(self, payload: Any, *, trace_id: Optional[str] = None) -> Job:
        normalized = normalize_job_input(payload)
        job = Job(
            id=uuid.uuid4().hex,
            kind=JobKind(normalized["kind"]),
            created_at=self._clock(),
            input=normalized,
            trace_id=trace_id or current_trace_id(),
        )
        self._store.set(job.id, job.to_dict())
        CREATED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job.id, event="job_created", status=job.status.value, kind=job.kind.value)
        return job

    def submit_job(self, payload: Any, *, trace_id: Optional[str] = None) -> Job:
        job = self.create_job(payload, trace_id=trace_id)
        self._dispatcher.spawn(job.id, self.advance, on_error=self._on_task_error)
        return job

    def resume(self, job_id: str) -> Job:
        """Schedule another :meth:`advance` for an existing job."""

        job = self.get_status(job_id)
        self._dispatcher.spawn(job_id, self.advance, on_error=self._on_task_error)
        return job

    def advance(self, job_id: str) -> None:
        def _claim(current: Job) -> Optional[bool]:
            # batches and video pipelines share the store but have their own drivers
            if current.kind not in SINGLE_STEP_KINDS:
                return False
            current.mark_processing(now=self._clock())
            return None

        job, claimed = self._store.transition(job_id, (JobStatus.PENDING,), _claim)
        if job is None:
            LOGGER.warning("job_advance_missing", extra={"job_id": job_id})
            return
        if not claimed:
            log_job_event(LOGGER, job_id=job_id, event="job_advance_skipped", status=job.status.value)
            return

        bind_trace_id(job.trace_id)
        try:
            log_job_event(LOGGER, job_id=job_id, event="job_processing", status=job.status.value)
            try:
                result = self._execute(job)
            except Exception as exc:  # noqa: BLE001
                self._fail(job_id, describe_error(exc))
                return
            self._complete(job_id, result)
        finally:
            clear_trace_id()

    def get_status(self, job_id: str) -> Job:
        job = read_job(self._store, job_id, clock=self._clock, stale_after_s=self._stale_after_s)
        if job.kind not in SINGLE_STEP_KINDS:
            raise NotFoundError(job_id)
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        return self._dispatcher.wait(job_id, timeout)

    def shutdown(self) -> None:
        self._poller.cancel_all()
        self._dispatcher.stop()

    def _execute(self, job: Job) -> Any:
        request = dict(job.input)
        request["kind"] = job.kind.value
        handle = self._gateway.submit(request)
        if not handle.done:
            log_job_event(LOGGER, job_id=job.id, event="job_operation_pending", status=job.status.value, operation=handle.name)
            handle = await_operation(
                self._poller,
                lambda: self._gateway.poll_operation(handle),
                handle,
                timeout_s=self._operation_timeout_s,
            )
        if handle.error_message:
            raise GatewayError(handle.error_message)
        return self._gateway.extract_result(job.kind.value, handle)

    def _complete(self, job_id: str, result: Any) -> None:
        job, applied = self._store.transition(
            job_id,
            (JobStatus.PROCESSING,),
            lambda current: current.mark_completed(result, now=self._clock()),
        )
        if not applied:
            LOGGER.warning("job_terminal_write_skipped", extra={"job_id": job_id, "outcome": "completed"})
            return
        COMPLETED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job_id, event="job_completed", status=job.status.value)

    def _fail(self, job_id: str, message: str, *, expected=(JobStatus.PROCESSING,)) -> None:
        job, applied = self._store.transition(
            job_id,
            expected,
            lambda current: current.mark_failed(message, now=self._clock()),
        )
        if not applied:
            LOGGER.warning("job_terminal_write_skipped", extra={"job_id": job_id, "outcome": "failed"})
            return
        FAILED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job_id, event="job_failed", status=job.status.value, error=message)

    def _on_task_error(self, job_id: str, exc: BaseException) -> None:
        self._fail(job_id, describe_error(exc), expected=(JobStatus.PENDING, JobStatus.PROCESSING))


__all__ = [
    "JobRunner",
    "await_operation",
    "finished_handle",
    "normalize_image",
    "normalize_job_input",
    "read_job",
]

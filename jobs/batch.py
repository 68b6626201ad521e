"""Batch orchestrator: ordered sub-tasks under one parent job."""
from __future__ import annotations

import uuid
from typing import Any, Callable, List, Optional, Sequence

from config import BATCH_MAX_PROMPTS, BATCH_TOPIC_CONCEPTS, IMAGE_ASPECT_RATIOS, JOB_STALE_AFTER_S
from domain.prompt_builder import CONCEPTS_SCHEMA, build_concepts_prompt
from errors import GatewayError, NotFoundError, OrchestrationError, ValidationError, describe_error
from observability.logger import bind_trace_id, clear_trace_id, current_trace_id, get_logger, log_job_event
from observability.metrics import get_registry

from .dispatch import BackgroundDispatcher
from .models import BatchJob, JobKind, JobStatus, SubResult, utcnow
from .runner import Clock, read_job
from .store import JobStore

LOGGER = get_logger("genjobs.jobs.batch")
REGISTRY = get_registry()
CREATED_COUNTER = REGISTRY.counter("jobs.created_total")
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")
ITEM_COMPLETE_COUNTER = REGISTRY.counter("batch.items_complete_total")
ITEM_FAILED_COUNTER = REGISTRY.counter("batch.items_failed_total")


def _validate_aspect_ratio(aspect_ratio: str) -> str:
    value = str(aspect_ratio or "1:1").strip()
    if value not in IMAGE_ASPECT_RATIOS:
        raise ValidationError(
            f"Unsupported aspect_ratio {value!r}; expected one of {', '.join(IMAGE_ASPECT_RATIOS)}",
            field="aspect_ratio",
        )
    return value


class BatchOrchestrator:
    """Runs a batch of image prompts one after another in prompt order.

    Each item is written back on its own through a conditional store write, so a
    reader always sees live per-item progress and one item never overwrites its
    siblings. Item failures stay on the item; the parent still ends ``COMPLETED``.
    Only a fault in the loop itself, or in the planning call of a topic batch,
    fails the parent.
    """

    def __init__(
        self,
        store: JobStore,
        gateway: Any,
        *,
        dispatcher: Optional[BackgroundDispatcher] = None,
        clock: Clock = utcnow,
        max_prompts: int = BATCH_MAX_PROMPTS,
        stale_after_s: float = JOB_STALE_AFTER_S,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher if dispatcher is not None else BackgroundDispatcher(name="batch-runner")
        self._clock = clock
        self._max_prompts = max(1, int(max_prompts))
        self._stale_after_s = stale_after_s

    def submit_batch(
        self,
        prompts: Sequence[str],
        *,
        aspect_ratio: str = "1:1",
        trace_id: Optional[str] = None,
    ) -> BatchJob:
        cleaned = self._validate_prompts(prompts)
        ratio = _validate_aspect_ratio(aspect_ratio)
        job = BatchJob(
            id=uuid.uuid4().hex,
            created_at=self._clock(),
            input={"prompts": list(cleaned), "aspect_ratio": ratio},
            aspect_ratio=ratio,
            trace_id=trace_id or current_trace_id(),
        )
        job.seed(cleaned)
        return self._persist_and_spawn(job)

    def submit_topic(
        self,
        topic: str,
        *,
        count: int = BATCH_TOPIC_CONCEPTS,
        aspect_ratio: str = "1:1",
        trace_id: Optional[str] = None,
    ) -> BatchJob:
        """Create a batch whose prompts come from one planning call on ``topic``."""

        if not isinstance(topic, str) or not topic.strip():
            raise ValidationError("topic must be a non-empty string", field="topic")
        try:
            count = int(count)
        except (TypeError, ValueError) as exc:
            raise ValidationError("count must be an integer", field="count") from exc
        if count < 1 or count > self._max_prompts:
            raise ValidationError(f"count must be between 1 and {self._max_prompts}", field="count")
        ratio = _validate_aspect_ratio(aspect_ratio)
        job = BatchJob(
            id=uuid.uuid4().hex,
            created_at=self._clock(),
            input={"topic": topic.strip(), "count": count, "aspect_ratio": ratio},
            topic=topic.strip(),
            aspect_ratio=ratio,
            trace_id=trace_id or current_trace_id(),
        )
        return self._persist_and_spawn(job)

    def get_batch_status(self, job_id: str) -> BatchJob:
        job = read_job(self._store, job_id, clock=self._clock, stale_after_s=self._stale_after_s)
        if not isinstance(job, BatchJob):
            raise NotFoundError(job_id)
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        return self._dispatcher.wait(job_id, timeout)

    def shutdown(self) -> None:
        self._dispatcher.stop()

    def process(self, job_id: str) -> None:
        job, claimed = self._store.transition(job_id, (JobStatus.PENDING,), self._claim)
        if job is None:
            LOGGER.warning("batch_process_missing", extra={"job_id": job_id})
            return
        if not claimed:
            log_job_event(LOGGER, job_id=job_id, event="batch_process_skipped", status=job.status.value)
            return
        bind_trace_id(job.trace_id)
        try:
            self._run(job)
        finally:
            clear_trace_id()

    def _claim(self, job: BatchJob) -> None:
        # topic batches plan their prompts before any image is generated
        if job.topic and not job.prompts:
            job.mark_processing(JobStatus.PLANNING, now=self._clock())
        else:
            job.mark_processing(JobStatus.PROCESSING_IMAGES, now=self._clock())

    def _run(self, job: BatchJob) -> None:
        if job.status == JobStatus.PLANNING:
            try:
                prompts = self._plan(job)
            except Exception as exc:  # noqa: BLE001
                self._fail(job.id, f"Planning failed: {describe_error(exc)}", JobStatus.PLANNING)
                return
            job = self._seed(job.id, prompts)

        log_job_event(LOGGER, job_id=job.id, event="batch_processing", status=job.status.value, total=len(job.prompts))
        try:
            for index, prompt in enumerate(job.prompts):
                self._run_item(job, index, prompt)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("batch_orchestration_failed", extra={"job_id": job.id})
            self._fail(job.id, f"Batch processing failed: {describe_error(exc)}", JobStatus.PROCESSING_IMAGES)
            return
        self._finish(job.id)

    def _plan(self, job: BatchJob) -> List[str]:
        count = int(job.input.get("count") or BATCH_TOPIC_CONCEPTS)
        payload = self._gateway.generate_content(
            build_concepts_prompt(job.topic or "", count),
            schema=CONCEPTS_SCHEMA,
        )
        concepts = [str(item).strip() for item in payload.get("concepts") or [] if str(item).strip()]
        if not concepts:
            raise OrchestrationError("The planning call returned no prompts.")
        return concepts[:count]

    def _seed(self, job_id: str, prompts: List[str]) -> BatchJob:
        def _apply(job: BatchJob) -> None:
            job.seed(prompts)
            job.status = JobStatus.PROCESSING_IMAGES

        job, applied = self._store.transition(job_id, (JobStatus.PLANNING,), _apply)
        if not applied:
            raise OrchestrationError(f"Batch {job_id} is no longer planning")
        log_job_event(LOGGER, job_id=job_id, event="batch_planned", status=job.status.value, total=len(prompts))
        return job

    def _run_item(self, job: BatchJob, index: int, prompt: str) -> None:
        self._update_item(job.id, index, SubResult.mark_generating)
        try:
            src = self._generate(prompt, job.aspect_ratio)
        except Exception as exc:  # noqa: BLE001
            message = describe_error(exc, default="Unknown generation error.")
            self._update_item(job.id, index, lambda item: item.mark_failed(message))
            ITEM_FAILED_COUNTER.inc()
            LOGGER.warning("batch_item_failed", extra={"job_id": job.id, "index": index, "error": message})
            return
        self._update_item(job.id, index, lambda item: item.mark_complete(src))
        ITEM_COMPLETE_COUNTER.inc()
        LOGGER.info("batch_item_complete", extra={"job_id": job.id, "index": index})

    def _generate(self, prompt: str, aspect_ratio: str) -> str:
        handle = self._gateway.submit({"kind": JobKind.IMAGE.value, "prompt": prompt, "aspect_ratio": aspect_ratio})
        if handle.error_message:
            raise GatewayError(handle.error_message)
        if not handle.done:
            raise GatewayError(f"Image operation {handle.name} did not complete synchronously.")
        return self._gateway.extract_result(JobKind.IMAGE.value, handle)

    def _update_item(self, job_id: str, index: int, change: Callable[[SubResult], None]) -> None:
        def _apply(job: BatchJob) -> None:
            change(job.results[index])

        job, applied = self._store.transition(job_id, (JobStatus.PROCESSING_IMAGES,), _apply)
        if not applied:
            status = job.status.value if job else "missing"
            raise OrchestrationError(f"Batch {job_id} is no longer processing (status: {status})")

    def _finish(self, job_id: str) -> None:
        def _apply(job: BatchJob) -> None:
            job.mark_completed(job.summary(), now=self._clock())

        job, applied = self._store.transition(job_id, (JobStatus.PROCESSING_IMAGES,), _apply)
        if not applied:
            LOGGER.warning("job_terminal_write_skipped", extra={"job_id": job_id, "outcome": "completed"})
            return
        COMPLETED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job_id, event="batch_completed", status=job.status.value, **job.summary())

    def _fail(self, job_id: str, message: str, expected: JobStatus) -> None:
        job, applied = self._store.transition(
            job_id,
            (expected,),
            lambda current: current.mark_failed(message, now=self._clock()),
        )
        if not applied:
            LOGGER.warning("job_terminal_write_skipped", extra={"job_id": job_id, "outcome": "failed"})
            return
        FAILED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job_id, event="batch_failed", status=job.status.value, error=message)

    def _on_task_error(self, job_id: str, exc: BaseException) -> None:
        message = f"Batch processing failed: {describe_error(exc)}"
        job, applied = self._store.transition(
            job_id,
            (JobStatus.PENDING, JobStatus.PLANNING, JobStatus.PROCESSING_IMAGES),
            lambda current: current.mark_failed(message, now=self._clock()),
        )
        if applied:
            FAILED_COUNTER.inc()

    def _validate_prompts(self, prompts: Sequence[str]) -> List[str]:
        if isinstance(prompts, str) or not isinstance(prompts, (list, tuple)) or not prompts:
            raise ValidationError("prompts must be a non-empty list of strings", field="prompts")
        if len(prompts) > self._max_prompts:
            raise ValidationError(f"A batch accepts at most {self._max_prompts} prompts", field="prompts")
        cleaned = []
        for index, prompt in enumerate(prompts):
            if not isinstance(prompt, str) or not prompt.strip():
                raise ValidationError(f"prompts[{index}] must be a non-empty string", field="prompts")
            cleaned.append(prompt.strip())
        return cleaned

    def _persist_and_spawn(self, job: BatchJob) -> BatchJob:
        self._store.set(job.id, job.to_dict())
        CREATED_COUNTER.inc()
        log_job_event(
            LOGGER,
            job_id=job.id,
            event="batch_created",
            status=job.status.value,
            total=len(job.prompts),
            topic=job.topic,
        )
        self._dispatcher.spawn(job.id, self.process, on_error=self._on_task_error)
        return job


__all__ = ["BatchOrchestrator"]

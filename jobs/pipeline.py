"""Multi-scene video pipeline: brief, storyboard, then one video per scene."""
from __future__ import annotations

import base64
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from config import (
    BATCH_MAX_PROMPTS,
    JOB_STALE_AFTER_S,
    OPERATION_TIMEOUT_S,
    STORYBOARD_SCENES,
    VIDEO_ASPECT_RATIOS,
    VIDEO_LANGUAGES,
    VIDEO_POLL_INTERVAL_S,
)
from domain.prompt_builder import (
    BRIEF_SCHEMA,
    METADATA_SCHEMA,
    STORYBOARD_SCHEMA,
    build_brief_prompt,
    build_metadata_prompt,
    build_storyboard_prompt,
)
from errors import GatewayError, NotFoundError, OrchestrationError, ValidationError, describe_error
from observability.logger import bind_trace_id, clear_trace_id, current_trace_id, get_logger, log_job_event
from observability.metrics import get_registry

from .dispatch import BackgroundDispatcher
from .models import ItemStatus, JobKind, JobStatus, OperationHandle, VideoJob, VideoScene, utcnow
from .poller import OperationPoller
from .runner import Clock, finished_handle, normalize_image, read_job
from .store import JobStore

LOGGER = get_logger("genjobs.jobs.pipeline")
REGISTRY = get_registry()
CREATED_COUNTER = REGISTRY.counter("jobs.created_total")
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")
SCENE_COMPLETE_COUNTER = REGISTRY.counter("video.scenes_complete_total")
SCENE_FAILED_COUNTER = REGISTRY.counter("video.scenes_failed_total")

STAGE_BRIEFING = "briefing"
STAGE_STORYBOARDING = "storyboarding"
STAGE_ASSET_GENERATION = "asset_generation"
STAGE_COMPLETE = "complete"
STAGE_FAILED = "failed"

SceneChange = Callable[[VideoScene], None]


def _scenes_from_storyboard(storyboard: Dict[str, Any], scene_count: int) -> List[VideoScene]:
    scenes = []
    for index, item in enumerate((storyboard.get("scenes") or [])[:scene_count]):
        prompt = str(item.get("veo_prompt") or "").strip()
        if not prompt:
            raise OrchestrationError(f"Storyboard scene {index + 1} has no video prompt.")
        overlay = str(item.get("overlay_text") or "").strip() or None
        scenes.append(
            VideoScene(
                id=index + 1,
                base_prompt=prompt,
                voice_over=str(item.get("display_voice_over") or "").strip(),
                overlay_text=overlay,
            )
        )
    if not scenes:
        raise OrchestrationError("The storyboard contained no scenes.")
    return scenes


class VideoPipeline:
    """Turns one product photo and description into a storyboard of video scenes.

    The planning calls run on the dispatcher. Each scene is then submitted as its
    own long-running video operation and watched by the poller; scene callbacks
    write only their own scene. The aggregate is re-checked inside the same
    write, so the job completes on the update that finishes the last scene.
    """

    def __init__(
        self,
        store: JobStore,
        gateway: Any,
        *,
        dispatcher: Optional[BackgroundDispatcher] = None,
        poller: Optional[OperationPoller] = None,
        clock: Clock = utcnow,
        scene_count: int = STORYBOARD_SCENES,
        operation_timeout_s: float = OPERATION_TIMEOUT_S,
        stale_after_s: float = JOB_STALE_AFTER_S,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher if dispatcher is not None else BackgroundDispatcher(name="video-pipeline")
        self._poller = poller if poller is not None else OperationPoller(interval_s=VIDEO_POLL_INTERVAL_S)
        self._clock = clock
        self._scene_count = max(1, int(scene_count))
        self._operation_timeout_s = operation_timeout_s
        self._stale_after_s = stale_after_s
        self._finished: Dict[str, threading.Event] = {}
        self._finished_lock = threading.Lock()

    @property
    def poller(self) -> OperationPoller:
        return self._poller

    def submit(
        self,
        product_image: Any,
        description: str,
        *,
        language: str = "english",
        aspect_ratio: str = "9:16",
        scene_count: Optional[int] = None,
        with_metadata: bool = False,
        trace_id: Optional[str] = None,
    ) -> VideoJob:
        image = normalize_image(product_image)
        if image is None:
            raise ValidationError("product_image is required", field="product_image")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("description must be a non-empty string", field="description")
        language = str(language or "english").strip().lower()
        if language not in VIDEO_LANGUAGES:
            raise ValidationError(
                f"Unsupported language {language!r}; expected one of {', '.join(VIDEO_LANGUAGES)}",
                field="language",
            )
        if aspect_ratio not in VIDEO_ASPECT_RATIOS:
            raise ValidationError(
                f"Unsupported aspect_ratio {aspect_ratio!r}; expected one of {', '.join(VIDEO_ASPECT_RATIOS)}",
                field="aspect_ratio",
            )
        count = self._scene_count if scene_count is None else scene_count
        if not isinstance(count, int) or isinstance(count, bool) or not 1 <= count <= BATCH_MAX_PROMPTS:
            raise ValidationError(f"scene_count must be between 1 and {BATCH_MAX_PROMPTS}", field="scene_count")

        job = VideoJob(
            id=uuid.uuid4().hex,
            created_at=self._clock(),
            input={
                "product_image": image,
                "description": description.strip(),
                "language": language,
                "aspect_ratio": aspect_ratio,
                "scene_count": count,
                "with_metadata": bool(with_metadata),
            },
            trace_id=trace_id or current_trace_id(),
        )
        self._store.set(job.id, job.to_dict())
        with self._finished_lock:
            self._finished[job.id] = threading.Event()
        CREATED_COUNTER.inc()
        log_job_event(LOGGER, job_id=job.id, event="video_job_created", status=job.status.value, scenes=count)
        self._dispatcher.spawn(job.id, self.process, on_error=self._on_task_error)
        return job

    def get_status(self, job_id: str) -> VideoJob:
        job = read_job(self._store, job_id, clock=self._clock, stale_after_s=self._stale_after_s)
        if not isinstance(job, VideoJob):
            raise NotFoundError(job_id)
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job reaches a terminal state."""

        with self._finished_lock:
            event = self._finished.get(job_id)
        if event is None:
            record = self._store.get(job_id)
            return record is None or JobStatus(record["status"]).is_terminal
        return event.wait(timeout)

    def shutdown(self) -> None:
        self._poller.cancel_all()
        self._dispatcher.stop()

    def process(self, job_id: str) -> None:
        def _claim(job: VideoJob) -> None:
            job.mark_processing(JobStatus.PLANNING, now=self._clock())
            job.stage = STAGE_BRIEFING

        job, claimed = self._store.transition(job_id, (JobStatus.PENDING,), _claim)
        if job is None:
            LOGGER.warning("video_process_missing", extra={"job_id": job_id})
            return
        if not claimed:
            log_job_event(LOGGER, job_id=job_id, event="video_process_skipped", status=job.status.value)
            return

        bind_trace_id(job.trace_id)
        try:
            try:
                scenes = self._plan(job)
            except Exception as exc:  # noqa: BLE001
                self._fail(job_id, f"Planning failed: {describe_error(exc)}")
                return
            job = self._start_asset_generation(job_id, scenes)
            for scene in job.scenes:
                self._start_scene(job, scene)
        finally:
            clear_trace_id()

    # ── Planning ───────────────────────────────────────────────────────────

    def _plan(self, job: VideoJob) -> List[VideoScene]:
        params = job.input
        brief = self._gateway.generate_content(
            build_brief_prompt(params["description"], params["language"]),
            schema=BRIEF_SCHEMA,
            image=params["product_image"],
        )

        def _briefed(current: VideoJob) -> None:
            current.brief = brief
            current.stage = STAGE_STORYBOARDING

        self._require(self._store.transition(job.id, (JobStatus.PLANNING,), _briefed), job.id)
        log_job_event(LOGGER, job_id=job.id, event="video_brief_ready", status=JobStatus.PLANNING.value)

        storyboard = self._gateway.generate_content(
            build_storyboard_prompt(brief, params["language"], params["aspect_ratio"], params["scene_count"]),
            schema=STORYBOARD_SCHEMA,
        )
        return _scenes_from_storyboard(storyboard, params["scene_count"])

    def _start_asset_generation(self, job_id: str, scenes: List[VideoScene]) -> VideoJob:
        def _apply(current: VideoJob) -> None:
            current.scenes = scenes
            current.status = JobStatus.PROCESSING
            current.stage = STAGE_ASSET_GENERATION

        job = self._require(self._store.transition(job_id, (JobStatus.PLANNING,), _apply), job_id)
        log_job_event(LOGGER, job_id=job_id, event="video_storyboard_ready", status=job.status.value, scenes=len(scenes))
        return job

    @staticmethod
    def _require(outcome, job_id: str) -> VideoJob:
        job, applied = outcome
        if not applied:
            status = job.status.value if job else "missing"
            raise OrchestrationError(f"Video job {job_id} changed state during planning (status: {status})")
        return job

    # ── Scenes ─────────────────────────────────────────────────────────────

    def _start_scene(self, job: VideoJob, scene: VideoScene) -> None:
        params = job.input
        request: Dict[str, Any] = {
            "kind": JobKind.VIDEO.value,
            "prompt": scene.base_prompt,
            "aspect_ratio": params["aspect_ratio"],
        }
        # only the opening scene is seeded with the product photo
        if scene.id == 1:
            request["image"] = params["product_image"]

        self._update_scene(job.id, scene.id, lambda item: setattr(item, "status", ItemStatus.GENERATING))
        try:
            handle = self._gateway.submit(request)
        except Exception as exc:  # noqa: BLE001
            self._scene_failed(job.id, scene.id, describe_error(exc))
            return
        if handle.done:
            self._scene_done(job.id, scene, bool(params.get("with_metadata")), handle)
            return

        def _polling(item: VideoScene) -> None:
            item.status = ItemStatus.POLLING
            item.operation_name = handle.name

        self._update_scene(job.id, scene.id, _polling)
        deadline = time.monotonic() + self._operation_timeout_s

        def _check() -> OperationHandle:
            if time.monotonic() > deadline:
                raise GatewayError(f"Operation {handle.name} did not finish within {int(self._operation_timeout_s)} seconds.")
            return self._gateway.poll_operation(handle)

        self._poller.start(
            handle.name,
            _check,
            lambda finished: self._scene_done(job.id, scene, bool(params.get("with_metadata")), finished),
            lambda message: self._scene_failed(job.id, scene.id, message),
            parse=finished_handle,
        )

    def _scene_done(self, job_id: str, scene: VideoScene, with_metadata: bool, handle: OperationHandle) -> None:
        try:
            if handle.error_message:
                raise GatewayError(handle.error_message)
            reference = self._gateway.extract_result(JobKind.VIDEO.value, handle)
            data = self._gateway.fetch_asset(reference)
        except Exception as exc:  # noqa: BLE001
            self._scene_failed(job_id, scene.id, describe_error(exc))
            return
        src = "data:video/mp4;base64," + base64.b64encode(data).decode("ascii")
        metadata = self._scene_metadata(job_id, scene) if with_metadata else None

        def _complete(item: VideoScene) -> None:
            item.status = ItemStatus.COMPLETE
            item.src = src
            item.error = None
            item.metadata = metadata

        SCENE_COMPLETE_COUNTER.inc()
        LOGGER.info("video_scene_complete", extra={"job_id": job_id, "scene_id": scene.id})
        self._update_scene(job_id, scene.id, _complete)

    def _scene_metadata(self, job_id: str, scene: VideoScene) -> Optional[Dict[str, Any]]:
        try:
            return self._gateway.generate_content(build_metadata_prompt(scene.base_prompt, "video"), schema=METADATA_SCHEMA)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "video_scene_metadata_failed",
                extra={"job_id": job_id, "scene_id": scene.id, "error": describe_error(exc)},
            )
            return None

    def _scene_failed(self, job_id: str, scene_id: int, message: str) -> None:
        def _failed(item: VideoScene) -> None:
            item.status = ItemStatus.FAILED
            item.error = message
            item.src = None

        SCENE_FAILED_COUNTER.inc()
        LOGGER.warning("video_scene_failed", extra={"job_id": job_id, "scene_id": scene_id, "error": message})
        self._update_scene(job_id, scene_id, _failed)

    def _update_scene(self, job_id: str, scene_id: int, change: SceneChange) -> None:
        completed = []

        def _apply(job: VideoJob) -> Optional[bool]:
            scene = job.scene(scene_id)
            if scene is None or scene.status.is_finished:
                return False
            change(scene)
            if job.all_scenes_finished():
                job.mark_completed(job.summary(), now=self._clock())
                job.stage = STAGE_COMPLETE
                completed.append(job.summary())
            return None

        job, applied = self._store.transition(job_id, (JobStatus.PROCESSING,), _apply)
        if not applied:
            LOGGER.warning("video_scene_update_skipped", extra={"job_id": job_id, "scene_id": scene_id})
            return
        if completed:
            COMPLETED_COUNTER.inc()
            log_job_event(LOGGER, job_id=job_id, event="video_job_completed", status=job.status.value, **completed[0])
            self._signal(job_id)

    # ── Failure ────────────────────────────────────────────────────────────

    def _fail(self, job_id: str, message: str) -> None:
        def _apply(job: VideoJob) -> None:
            job.mark_failed(message, now=self._clock())
            job.stage = STAGE_FAILED

        job, applied = self._store.transition(
            job_id,
            (JobStatus.PENDING, JobStatus.PLANNING, JobStatus.PROCESSING),
            _apply,
        )
        if not applied:
            LOGGER.warning("job_terminal_write_skipped", extra={"job_id": job_id, "outcome": "failed"})
        else:
            FAILED_COUNTER.inc()
            log_job_event(LOGGER, job_id=job_id, event="video_job_failed", status=job.status.value, error=message)
        self._signal(job_id)

    def _on_task_error(self, job_id: str, exc: BaseException) -> None:
        self._fail(job_id, f"Video pipeline failed: {describe_error(exc)}")

    def _signal(self, job_id: str) -> None:
        with self._finished_lock:
            event = self._finished.pop(job_id, None)
        if event:
            event.set()


__all__ = [
    "VideoPipeline",
    "STAGE_ASSET_GENERATION",
    "STAGE_BRIEFING",
    "STAGE_COMPLETE",
    "STAGE_FAILED",
    "STAGE_STORYBOARDING",
]

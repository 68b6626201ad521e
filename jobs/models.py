"""Data models describing asynchronous generation jobs."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(ISO_FORMAT) if value else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.strptime(str(value), ISO_FORMAT).replace(tzinfo=timezone.utc)


def strip_data_url(value: str) -> str:
    """Return the base64 payload of a data URL, or the value unchanged."""

    parts = value.split(",")
    return parts[1] if len(parts) == 2 else value


class JobStatus(str, Enum):
    """Lifecycle states for a job record."""

    PENDING = "PENDING"
    PLANNING = "PLANNING"
    PROCESSING = "PROCESSING"
    PROCESSING_IMAGES = "PROCESSING_IMAGES"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobKind(str, Enum):
    TRY_ON = "try_on"
    IMAGE = "image"
    VIDEO = "video"
    BATCH = "batch"
    VIDEO_PIPELINE = "video_pipeline"


class ItemStatus(str, Enum):
    """Lifecycle states for a batch sub-result or a video scene."""

    PENDING = "pending"
    GENERATING = "generating"
    POLLING = "polling"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (ItemStatus.COMPLETE, ItemStatus.FAILED)


@dataclass
class OperationHandle:
    """Reference to one long-running call on the generation gateway."""

    name: str
    done: bool = False
    response: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "OperationHandle":
        if not isinstance(payload, dict):
            raise ValueError("Operation payload must be an object")
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("Operation name missing from response")
        error = payload.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        response = payload.get("response")
        return cls(
            name=name,
            done=bool(payload.get("done")),
            response=response if isinstance(response, dict) else None,
            error=error,
        )

    @property
    def error_message(self) -> Optional[str]:
        if not self.error:
            return None
        message = str(self.error.get("message") or "").strip()
        return message or f"Operation {self.name} failed"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "done": self.done, "response": self.response, "error": self.error}


@dataclass
class Job:
    """Durable record for one request of asynchronous generation work."""

    id: str
    kind: JobKind = JobKind.IMAGE
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    input: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    trace_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_processing(self, status: JobStatus = JobStatus.PROCESSING, *, now: Optional[datetime] = None) -> None:
        self.status = status
        self.started_at = self.started_at or now or utcnow()

    def mark_completed(self, result: Any, *, now: Optional[datetime] = None) -> None:
        self.status = JobStatus.COMPLETED
        self.result = result
        self.error = None
        self.finished_at = now or utcnow()

    def mark_failed(self, error: str, *, now: Optional[datetime] = None) -> None:
        self.status = JobStatus.FAILED
        self.error = error
        self.result = None
        self.finished_at = now or utcnow()

    def to_dict(self, *, include_input: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "created_at": _format_ts(self.created_at),
            "started_at": _format_ts(self.started_at),
            "finished_at": _format_ts(self.finished_at),
            "result": self.result,
            "error": self.error,
            "trace_id": self.trace_id,
        }
        if include_input:
            payload["input"] = dict(self.input)
        payload.update(self._extra_to_dict())
        return payload

    def _extra_to_dict(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def _base_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": str(data["id"]),
            "kind": JobKind(data.get("kind") or JobKind.IMAGE.value),
            "status": JobStatus(data.get("status") or JobStatus.PENDING.value),
            "created_at": _parse_ts(data.get("created_at")) or utcnow(),
            "input": dict(data.get("input") or {}),
            "result": data.get("result"),
            "error": data.get("error"),
            "started_at": _parse_ts(data.get("started_at")),
            "finished_at": _parse_ts(data.get("finished_at")),
            "trace_id": data.get("trace_id"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(**cls._base_kwargs(data))


@dataclass
class SubResult:
    """One item of a batch, index-aligned with the batch prompts."""

    id: str
    prompt: str
    status: ItemStatus = ItemStatus.PENDING
    src: Optional[str] = None
    error: Optional[str] = None

    def mark_generating(self) -> None:
        self.status = ItemStatus.GENERATING

    def mark_complete(self, src: str) -> None:
        self.status = ItemStatus.COMPLETE
        self.src = src
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.status = ItemStatus.FAILED
        self.error = error
        self.src = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status.value,
            "src": self.src,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubResult":
        return cls(
            id=str(data["id"]),
            prompt=str(data.get("prompt") or ""),
            status=ItemStatus(data.get("status") or ItemStatus.PENDING.value),
            src=data.get("src"),
            error=data.get("error"),
        )


@dataclass
class BatchJob(Job):
    """Job owning an ordered collection of sub-results."""

    kind: JobKind = JobKind.BATCH
    topic: Optional[str] = None
    aspect_ratio: str = "1:1"
    prompts: List[str] = field(default_factory=list)
    results: List[SubResult] = field(default_factory=list)

    def seed(self, prompts: List[str]) -> None:
        """Fix the prompt list and pre-populate one pending result per prompt."""

        self.prompts = list(prompts)
        self.results = [SubResult(id=f"image-{index}", prompt=prompt) for index, prompt in enumerate(self.prompts)]

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ItemStatus}
        for item in self.results:
            counts[item.status.value] += 1
        return {
            "total": len(self.results),
            "complete": counts[ItemStatus.COMPLETE.value],
            "failed": counts[ItemStatus.FAILED.value],
        }

    def _extra_to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "aspect_ratio": self.aspect_ratio,
            "prompts": list(self.prompts),
            "results": [item.to_dict() for item in self.results],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchJob":
        kwargs = cls._base_kwargs(data)
        return cls(
            **kwargs,
            topic=data.get("topic"),
            aspect_ratio=str(data.get("aspect_ratio") or "1:1"),
            prompts=[str(prompt) for prompt in data.get("prompts") or []],
            results=[SubResult.from_dict(item) for item in data.get("results") or []],
        )


@dataclass
class VideoScene:
    """One scene of a storyboard, produced independently of its siblings."""

    id: int
    base_prompt: str
    voice_over: str = ""
    overlay_text: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    src: Optional[str] = None
    error: Optional[str] = None
    operation_name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "base_prompt": self.base_prompt,
            "voice_over": self.voice_over,
            "overlay_text": self.overlay_text,
            "status": self.status.value,
            "src": self.src,
            "error": self.error,
            "operation_name": self.operation_name,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoScene":
        return cls(
            id=int(data["id"]),
            base_prompt=str(data.get("base_prompt") or ""),
            voice_over=str(data.get("voice_over") or ""),
            overlay_text=data.get("overlay_text"),
            status=ItemStatus(data.get("status") or ItemStatus.PENDING.value),
            src=data.get("src"),
            error=data.get("error"),
            operation_name=data.get("operation_name"),
            metadata=data.get("metadata"),
        )


@dataclass
class VideoJob(Job):
    """Multi-scene video pipeline run: brief, storyboard, then one video per scene."""

    kind: JobKind = JobKind.VIDEO_PIPELINE
    stage: str = "input"
    brief: Optional[Dict[str, Any]] = None
    scenes: List[VideoScene] = field(default_factory=list)

    def all_scenes_finished(self) -> bool:
        return bool(self.scenes) and all(scene.status.is_finished for scene in self.scenes)

    def scene(self, scene_id: int) -> Optional[VideoScene]:
        return next((scene for scene in self.scenes if scene.id == scene_id), None)

    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.scenes),
            "complete": sum(1 for scene in self.scenes if scene.status == ItemStatus.COMPLETE),
            "failed": sum(1 for scene in self.scenes if scene.status == ItemStatus.FAILED),
        }

    def _extra_to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "brief": self.brief,
            "scenes": [scene.to_dict() for scene in self.scenes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoJob":
        kwargs = cls._base_kwargs(data)
        return cls(
            **kwargs,
            stage=str(data.get("stage") or "input"),
            brief=data.get("brief"),
            scenes=[VideoScene.from_dict(item) for item in data.get("scenes") or []],
        )


def job_from_dict(data: Dict[str, Any]) -> Job:
    """Rebuild the right job class from a stored record."""

    kind = data.get("kind")
    if kind == JobKind.BATCH.value:
        return BatchJob.from_dict(data)
    if kind == JobKind.VIDEO_PIPELINE.value:
        return VideoJob.from_dict(data)
    return Job.from_dict(data)

"""Job management primitives for asynchronous generation."""

from .models import (  # noqa: F401
    BatchJob,
    ItemStatus,
    Job,
    JobKind,
    JobStatus,
    OperationHandle,
    SubResult,
    VideoJob,
    VideoScene,
)
from .store import JobStore  # noqa: F401
from .dispatch import BackgroundDispatcher  # noqa: F401
from .poller import OperationPoller, PollHandle  # noqa: F401
from .runner import JobRunner  # noqa: F401
from .batch import BatchOrchestrator  # noqa: F401
from .pipeline import VideoPipeline  # noqa: F401

__all__ = [
    "BatchJob",
    "ItemStatus",
    "Job",
    "JobKind",
    "JobStatus",
    "OperationHandle",
    "SubResult",
    "VideoJob",
    "VideoScene",
    "JobStore",
    "BackgroundDispatcher",
    "OperationPoller",
    "PollHandle",
    "JobRunner",
    "BatchOrchestrator",
    "VideoPipeline",
]

from __future__ import annotations

import pytest

from domain.prompt_builder import build_brief_prompt, build_storyboard_prompt, enhance_image_prompt
from jobs.models import (
    BatchJob,
    ItemStatus,
    Job,
    JobKind,
    JobStatus,
    OperationHandle,
    SubResult,
    VideoJob,
    VideoScene,
    job_from_dict,
    strip_data_url,
)


def test_job_from_dict_picks_the_record_class():
    batch = BatchJob(id="b1", prompts=["p1"], results=[SubResult(id="image-0", prompt="p1")])
    video = VideoJob(id="v1", scenes=[VideoScene(id=1, base_prompt="opening shot")])
    single = Job(id="j1", kind=JobKind.TRY_ON)

    assert isinstance(job_from_dict(batch.to_dict()), BatchJob)
    rebuilt_video = job_from_dict(video.to_dict())
    assert isinstance(rebuilt_video, VideoJob)
    assert rebuilt_video.scenes[0].base_prompt == "opening shot"
    assert type(job_from_dict(single.to_dict())) is Job


def test_snapshot_can_hide_input():
    job = Job(id="j1", input={"prompt": "a cat"})
    assert "input" in job.to_dict()
    assert "input" not in job.to_dict(include_input=False)


def test_terminal_states():
    assert JobStatus.COMPLETED.is_terminal and JobStatus.FAILED.is_terminal
    assert not JobStatus.PROCESSING_IMAGES.is_terminal
    assert ItemStatus.FAILED.is_finished and not ItemStatus.POLLING.is_finished


def test_batch_summary_counts_items():
    job = BatchJob(
        id="b1",
        results=[
            SubResult(id="image-0", prompt="p1", status=ItemStatus.COMPLETE),
            SubResult(id="image-1", prompt="p2", status=ItemStatus.FAILED),
            SubResult(id="image-2", prompt="p3"),
        ],
    )
    assert job.summary() == {"total": 3, "complete": 1, "failed": 1}


def test_video_job_is_unfinished_without_scenes():
    assert VideoJob(id="v1").all_scenes_finished() is False


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": "op-1", "done": True, "error": {"code": 3, "message": "blocked"}}, "blocked"),
        ({"name": "op-1", "done": True, "error": "quota"}, "quota"),
        ({"name": "op-1", "done": True, "error": {"code": 3}}, "Operation op-1 failed"),
    ],
)
def test_operation_error_message(payload, message):
    assert OperationHandle.from_payload(payload).error_message == message


@pytest.mark.parametrize("payload", [None, [], {"done": True}, {"name": "  "}])
def test_operation_payload_requires_a_name(payload):
    with pytest.raises(ValueError):
        OperationHandle.from_payload(payload)


def test_strip_data_url():
    assert strip_data_url("data:image/png;base64,QUJD") == "QUJD"
    assert strip_data_url("QUJD") == "QUJD"


def test_prompt_builders_embed_their_inputs():
    assert "Bahasa Indonesia" in build_brief_prompt("serum", "indonesia")
    storyboard = build_storyboard_prompt({"product_name": "Glow"}, "english", "9:16", 4)
    assert "exactly 4 scenes" in storyboard and "9:16" in storyboard and '"product_name": "Glow"' in storyboard
    assert enhance_image_prompt("  a cat ").startswith("a cat, ultra-realistic")

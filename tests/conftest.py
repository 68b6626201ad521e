import base64
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from domain.prompt_builder import BRIEF_SCHEMA, CONCEPTS_SCHEMA, METADATA_SCHEMA, STORYBOARD_SCHEMA  # noqa: E402
from errors import GatewayError  # noqa: E402
from jobs.dispatch import BackgroundDispatcher  # noqa: E402
from jobs.models import OperationHandle  # noqa: E402
from jobs.poller import OperationPoller  # noqa: E402
from jobs.store import JobStore  # noqa: E402


class FakeGateway:
    """In-memory stand-in for the Vertex gateway.

    Image-like requests finish synchronously; videos return a pending handle
    that reports done after ``polls_before_done`` polls.
    """

    def __init__(self):
        self.submitted = []
        self.polled = []
        self.content_calls = []
        self.fail_prompts = set()
        self.failing_video_prompts = set()
        self.polls_before_done = 1
        self.release = None
        self.on_submit = None
        self.submit_started = threading.Event()
        self.content = {
            "concepts": {"concepts": ["red apple on a table", "green pear in the rain"]},
            "brief": {
                "product_name": "Glow Serum",
                "target_audience": "busy professionals",
                "key_benefits": ["hydration", "glow"],
                "hook": "Wake up glowing",
            },
            "storyboard": {
                "scenes": [
                    {"veo_prompt": "scene one prompt", "display_voice_over": "line one", "overlay_text": "One"},
                    {"veo_prompt": "scene two prompt", "display_voice_over": "line two"},
                    {"veo_prompt": "scene three prompt", "display_voice_over": "line three"},
                ]
            },
            "metadata": {"title": "Glow", "description": "A glowing clip.", "tags": ["serum", "glow"]},
        }
        self._operations = {}
        self._poll_counts = {}
        self._lock = threading.Lock()

    def submit(self, request):
        with self._lock:
            self.submitted.append(dict(request))
            index = len(self.submitted)
        self.submit_started.set()
        if self.release is not None:
            assert self.release.wait(5), "test never released the gateway"
        if self.on_submit is not None:
            self.on_submit(request)
        prompt = request.get("prompt")
        if prompt in self.fail_prompts:
            raise GatewayError(f"API request failed with status 400: prompt rejected: {prompt}", status_code=400)
        if request["kind"] == "video":
            name = f"projects/demo/locations/us-central1/publishers/google/models/veo/operations/op-{index}"
            with self._lock:
                self._operations[name] = prompt
            return OperationHandle(name=name)
        data = base64.b64encode(f"image:{prompt or request.get('kind')}".encode()).decode()
        return OperationHandle(
            name=f"predict-{index}",
            done=True,
            response={"predictions": [{"bytesBase64Encoded": data, "mimeType": "image/png"}]},
        )

    def poll_operation(self, handle):
        with self._lock:
            self.polled.append(handle.name)
            count = self._poll_counts.get(handle.name, 0) + 1
            self._poll_counts[handle.name] = count
            prompt = self._operations.get(handle.name)
        if count < self.polls_before_done:
            return OperationHandle(name=handle.name)
        if prompt in self.failing_video_prompts:
            return OperationHandle(name=handle.name, done=True, error={"code": 3, "message": "Video generation was blocked."})
        return OperationHandle(
            name=handle.name,
            done=True,
            response={"videos": [{"gcsUri": f"gs://bucket/{handle.name.rsplit('/', 1)[-1]}.mp4"}]},
        )

    def extract_result(self, kind, handle):
        response = handle.response or {}
        if kind == "video":
            return response["videos"][0]["gcsUri"]
        predictions = response.get("predictions") or []
        if not predictions:
            raise GatewayError("No predictions returned from the API.")
        return f"data:image/png;base64,{predictions[0]['bytesBase64Encoded']}"

    def fetch_asset(self, reference):
        return f"bytes:{reference}".encode()

    def generate_content(self, prompt, *, schema, model=None, image=None, temperature=None):
        key = {
            id(CONCEPTS_SCHEMA): "concepts",
            id(BRIEF_SCHEMA): "brief",
            id(STORYBOARD_SCHEMA): "storyboard",
            id(METADATA_SCHEMA): "metadata",
        }[id(schema)]
        with self._lock:
            self.content_calls.append({"key": key, "prompt": prompt, "image": image})
        value = self.content[key]
        if isinstance(value, Exception):
            raise value
        return value


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def store():
    return JobStore(ttl_seconds=600)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def dispatcher():
    dispatcher = BackgroundDispatcher(workers=2, name="test-runner")
    yield dispatcher
    dispatcher.stop()


@pytest.fixture()
def fast_poller():
    poller = OperationPoller(interval_s=0.01)
    yield poller
    poller.cancel_all()

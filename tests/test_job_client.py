from __future__ import annotations

import json
import threading

import httpx
import pytest

from errors import GatewayError, NotFoundError, TransportError
from services.job_client import JobApiClient, job_handle, watch_job


def _client(responder):
    requests = []

    def _record(request):
        requests.append(request)
        return responder(request)

    http = httpx.Client(transport=httpx.MockTransport(_record))
    return JobApiClient("http://jobs.local/", client=http), requests


def test_submit_job_posts_payload_and_returns_id():
    client, requests = _client(lambda request: httpx.Response(202, json={"job_id": "abc", "status": "PENDING"}))

    assert client.submit_job({"prompt": "a cat"}) == "abc"
    assert requests[0].method == "POST"
    assert str(requests[0].url) == "http://jobs.local/api/jobs"
    assert json.loads(requests[0].content) == {"prompt": "a cat"}


def test_submit_batch_sends_topic_or_prompts():
    client, requests = _client(lambda request: httpx.Response(202, json={"job_id": "b1"}))

    client.submit_batch(["p1", "p2"])
    client.submit_batch(topic="autumn fruit", aspect_ratio="16:9")

    assert json.loads(requests[0].content) == {"aspect_ratio": "1:1", "prompts": ["p1", "p2"]}
    assert json.loads(requests[1].content) == {"aspect_ratio": "16:9", "topic": "autumn fruit"}
    assert requests[1].url.path == "/api/batches"


def test_status_routes_per_resource():
    client, requests = _client(lambda request: httpx.Response(200, json={"id": "x", "status": "PROCESSING"}))

    client.get_job_status("x")
    client.get_batch_status("x")
    client.get_video_status("x")

    assert [request.url.path for request in requests] == ["/api/jobs/x", "/api/batches/x", "/api/videos/x"]


def test_unknown_job_raises_not_found():
    client, _ = _client(
        lambda request: httpx.Response(404, json={"error": {"message": "Job x not found", "code": 404}})
    )
    with pytest.raises(NotFoundError):
        client.get_job_status("x")


def test_server_error_carries_message():
    client, _ = _client(
        lambda request: httpx.Response(400, json={"error": {"message": "prompt is required", "code": 400}})
    )
    with pytest.raises(GatewayError) as excinfo:
        client.submit_job({})
    assert str(excinfo.value) == "prompt is required"
    assert excinfo.value.status_code == 400


def test_network_failure_raises_transport_error():
    def _respond(request):
        raise httpx.ConnectError("refused", request=request)

    client, _ = _client(_respond)
    with pytest.raises(TransportError):
        client.get_job_status("x")


def test_job_handle_maps_terminal_states():
    assert job_handle("a", {"status": "PROCESSING"}).done is False
    completed = job_handle("a", {"status": "COMPLETED", "result": "r"})
    assert completed.done and completed.response == {"job": {"status": "COMPLETED", "result": "r"}}
    failed = job_handle("a", {"status": "FAILED", "error": "boom"})
    assert failed.error_message == "boom"
    assert job_handle("a", {"status": "FAILED"}).error_message == "Job a failed"


class StubClient:
    def __init__(self, snapshots):
        self._snapshots = list(snapshots)
        self.calls = []

    def get_status(self, resource, job_id):
        self.calls.append((resource, job_id))
        return self._snapshots.pop(0) if len(self._snapshots) > 1 else self._snapshots[0]


def test_watch_job_reports_final_snapshot(fast_poller):
    client = StubClient(
        [
            {"id": "j1", "status": "PENDING"},
            {"id": "j1", "status": "PROCESSING"},
            {"id": "j1", "status": "COMPLETED", "result": "data:image/png;base64,AAA"},
        ]
    )
    done = []
    finished = threading.Event()

    def _on_done(snapshot):
        done.append(snapshot)
        finished.set()

    entry = watch_job(client, "j1", _on_done, lambda message: None, poller=fast_poller, resource="batch")

    assert finished.wait(5)
    assert entry.key == "batch:j1"
    assert done == [{"id": "j1", "status": "COMPLETED", "result": "data:image/png;base64,AAA"}]
    assert client.calls[0] == ("batch", "j1")
    assert len(client.calls) == 3


def test_watch_job_reports_failure_message(fast_poller):
    client = StubClient([{"id": "j2", "status": "FAILED", "error": "quota exceeded"}])
    errors = []
    finished = threading.Event()

    def _on_error(message):
        errors.append(message)
        finished.set()

    watch_job(client, "j2", lambda snapshot: None, _on_error, poller=fast_poller)

    assert finished.wait(5)
    assert errors == ["quota exceeded"]


def test_watch_job_reports_missing_job(fast_poller):
    class MissingClient:
        def get_status(self, resource, job_id):
            raise NotFoundError(job_id)

    errors = []
    finished = threading.Event()

    def _on_error(message):
        errors.append(message)
        finished.set()

    watch_job(MissingClient(), "gone", lambda snapshot: None, _on_error, poller=fast_poller)

    assert finished.wait(5)
    assert errors == ["Job gone not found"]


def test_watch_job_runs_on_the_given_idle_poller(fast_poller):
    client = StubClient([{"id": "j3", "status": "PENDING"}])
    assert len(fast_poller) == 0

    entry = watch_job(client, "j3", lambda snapshot: None, lambda message: None, poller=fast_poller)

    assert fast_poller.is_active("job:j3")
    assert entry.cancel() is True
    assert not fast_poller.is_active("job:j3")

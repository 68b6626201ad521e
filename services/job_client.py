"""HTTP client for the job API, for applications consuming the service."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import httpx

from config import GATEWAY_TIMEOUT_S, JOB_POLL_INTERVAL_S
from errors import GatewayError, NotFoundError, TransportError
from jobs.models import JobStatus, OperationHandle
from jobs.poller import OperationPoller, PollHandle, response_payload
from observability.logger import get_logger

LOGGER = get_logger("genjobs.services.job_client")

RESOURCE_PATHS = {
    "job": "/api/jobs",
    "batch": "/api/batches",
    "video": "/api/videos",
}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_block = payload.get("error")
        if isinstance(error_block, dict) and error_block.get("message"):
            return str(error_block["message"])
    return (response.text or "").strip() or f"HTTP {response.status_code}"


class JobApiClient:
    """Thin wrapper over the ``/api`` routes.

    ``404`` answers become :class:`errors.NotFoundError`; other failures become
    :class:`errors.GatewayError` carrying the server's error message.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout_s: float = GATEWAY_TIMEOUT_S,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_s), http2=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def submit_job(self, payload: Dict[str, Any]) -> str:
        return self._post(RESOURCE_PATHS["job"], payload)["job_id"]

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        return self.get_status("job", job_id)

    def submit_batch(
        self,
        prompts: Optional[List[str]] = None,
        *,
        topic: Optional[str] = None,
        aspect_ratio: str = "1:1",
    ) -> str:
        body: Dict[str, Any] = {"aspect_ratio": aspect_ratio}
        if topic:
            body["topic"] = topic
        else:
            body["prompts"] = list(prompts or [])
        return self._post(RESOURCE_PATHS["batch"], body)["job_id"]

    def get_batch_status(self, job_id: str) -> Dict[str, Any]:
        return self.get_status("batch", job_id)

    def submit_video(self, payload: Dict[str, Any]) -> str:
        return self._post(RESOURCE_PATHS["video"], payload)["job_id"]

    def get_video_status(self, job_id: str) -> Dict[str, Any]:
        return self.get_status("video", job_id)

    def get_status(self, resource: str, job_id: str) -> Dict[str, Any]:
        url = f"{self._base_url}{RESOURCE_PATHS[resource]}/{job_id}"
        response = self._request("GET", url)
        if response.status_code == 404:
            raise NotFoundError(job_id)
        return self._json(response)

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._json(self._request("POST", f"{self._base_url}{path}", json=body))

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timed out calling {url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Network failure calling {url}: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            raise GatewayError(_error_message(response), status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Job API returned a malformed response body.") from exc
        if not isinstance(payload, dict):
            raise GatewayError("Job API returned a malformed response body.")
        return payload


def job_handle(job_id: str, snapshot: Dict[str, Any]) -> OperationHandle:
    """Express a job snapshot as an operation handle for the poller."""

    status = snapshot.get("status")
    if status == JobStatus.COMPLETED.value:
        return OperationHandle(name=job_id, done=True, response={"job": snapshot})
    if status == JobStatus.FAILED.value:
        message = str(snapshot.get("error") or "").strip() or f"Job {job_id} failed"
        return OperationHandle(name=job_id, done=True, error={"message": message})
    return OperationHandle(name=job_id, done=False)


def watch_job(
    client: JobApiClient,
    job_id: str,
    on_done: Callable[[Dict[str, Any]], None],
    on_error: Callable[[str], None],
    *,
    poller: Optional[OperationPoller] = None,
    resource: str = "job",
) -> PollHandle:
    """Poll a job until it is terminal; ``on_done`` receives the final snapshot.

    The returned handle cancels the watch, e.g. when the consuming view goes
    away. A job that disappears is reported through ``on_error``.
    """

    if poller is None:
        poller = OperationPoller(interval_s=JOB_POLL_INTERVAL_S)
    LOGGER.info("job_watch_started", extra={"job_id": job_id, "resource": resource})
    return poller.start(
        f"{resource}:{job_id}",
        lambda: job_handle(job_id, client.get_status(resource, job_id)),
        on_done,
        on_error,
        parse=lambda handle: response_payload(handle)["job"],
    )


__all__ = ["JobApiClient", "job_handle", "watch_job"]

"""Flask application exposing the generation job service via HTTP."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import BATCH_TOPIC_CONCEPTS, CORS_ORIGINS, JOB_STORE_TTL_S, OPERATION_TIMEOUT_S
from errors import NotFoundError, ValidationError
from jobs import BatchOrchestrator, JobRunner, JobStatus, JobStore, VideoPipeline
from observability.logger import bind_trace_id, clear_trace_id, get_logger
from observability.metrics import get_registry
from services import VertexGateway, build_token_provider

load_dotenv()

LOGGER = get_logger("genjobs.api")


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass
class Services:
    runner: JobRunner
    batches: BatchOrchestrator
    videos: VideoPipeline


def build_services() -> Services:
    """Wire the engines to one shared store and one Vertex AI gateway."""

    store = JobStore(ttl_seconds=JOB_STORE_TTL_S)
    gateway = VertexGateway(build_token_provider())
    return Services(
        runner=JobRunner(store, gateway),
        batches=BatchOrchestrator(store, gateway),
        videos=VideoPipeline(store, gateway),
    )


def create_app(
    *,
    runner: Optional[JobRunner] = None,
    batches: Optional[BatchOrchestrator] = None,
    videos: Optional[VideoPipeline] = None,
) -> Flask:
    if runner is None or batches is None or videos is None:
        defaults = build_services()
        runner = runner or defaults.runner
        batches = batches or defaults.batches
        videos = videos or defaults.videos

    app = Flask(__name__)
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    CORS(app, resources={r"/api/*": {"origins": CORS_ORIGINS}})
    app.extensions["genjobs"] = Services(runner=runner, batches=batches, videos=videos)

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        g.trace_id = trace_id
        bind_trace_id(trace_id)

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault("X-Trace-Id", trace_id)
        clear_trace_id()
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        clear_trace_id()

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("api_error", extra={"error": exc.message, "code": exc.status_code})
        return _error_response(exc.message, exc.status_code)

    @app.errorhandler(ValidationError)
    def _handle_validation_error(exc: ValidationError):  # type: ignore[override]
        LOGGER.info("api_validation_error", extra={"error": exc.message, "field": exc.field})
        return _error_response(exc.message, 400)

    @app.errorhandler(NotFoundError)
    def _handle_not_found(exc: NotFoundError):  # type: ignore[override]
        return _error_response(exc.message, 404)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        if isinstance(exc, HTTPException):
            return _error_response(exc.description or exc.name, exc.code or 500)
        LOGGER.exception("unhandled_error")
        return _error_response("Internal server error", 500)

    @app.post("/api/jobs")
    def submit_job():
        payload = _require_json(request)
        job = runner.submit_job(payload, trace_id=g.trace_id)
        sync_raw = payload.get("sync", request.args.get("sync"))
        if str(sync_raw).lower() in {"1", "true", "yes"}:
            runner.wait(job.id, timeout=OPERATION_TIMEOUT_S)
            current = runner.get_status(job.id)
            if current.status == JobStatus.COMPLETED:
                return jsonify(_snapshot(current))
            if current.status == JobStatus.FAILED:
                return (
                    jsonify(
                        {
                            "error": {
                                "message": current.error,
                                "code": 502,
                                "trace_id": current.trace_id,
                            },
                            "job_id": current.id,
                            "status": current.status.value,
                        }
                    ),
                    502,
                )
        return jsonify({"job_id": job.id, "status": job.status.value, "trace_id": job.trace_id}), 202

    @app.get("/api/jobs/<job_id>")
    def job_status(job_id: str):
        return jsonify(_snapshot(runner.get_status(job_id)))

    @app.post("/api/jobs/<job_id>/process")
    def process_job(job_id: str):
        job = runner.resume(job_id)
        return jsonify({"job_id": job.id, "status": job.status.value}), 202

    @app.post("/api/batches")
    def submit_batch():
        payload = _require_json(request)
        aspect_ratio = str(payload.get("aspect_ratio") or "1:1")
        topic = payload.get("topic")
        if topic:
            job = batches.submit_topic(
                topic,
                count=payload.get("count", BATCH_TOPIC_CONCEPTS),
                aspect_ratio=aspect_ratio,
                trace_id=g.trace_id,
            )
        else:
            job = batches.submit_batch(payload.get("prompts"), aspect_ratio=aspect_ratio, trace_id=g.trace_id)
        return jsonify({"job_id": job.id, "status": job.status.value, "trace_id": job.trace_id}), 202

    @app.get("/api/batches/<job_id>")
    def batch_status(job_id: str):
        return jsonify(_snapshot(batches.get_batch_status(job_id)))

    @app.post("/api/videos")
    def submit_video():
        payload = _require_json(request)
        job = videos.submit(
            payload.get("product_image"),
            payload.get("description"),
            language=str(payload.get("language") or "english"),
            aspect_ratio=str(payload.get("aspect_ratio") or "9:16"),
            scene_count=payload.get("scene_count"),
            with_metadata=bool(payload.get("with_metadata")),
            trace_id=g.trace_id,
        )
        return jsonify({"job_id": job.id, "status": job.status.value, "trace_id": job.trace_id}), 202

    @app.get("/api/videos/<job_id>")
    def video_status(job_id: str):
        return jsonify(_snapshot(videos.get_status(job_id)))

    @app.get("/api/health")
    def health():
        metrics_snapshot = get_registry().snapshot()
        queue_len = int(metrics_snapshot.get("jobs.queue_length", 0))
        checks = {
            "job_store": {"ok": True, "message": f"Records stored: {len(runner.store)}"},
            "job_queue": {"ok": queue_len < 10, "message": f"Queue length: {queue_len}"},
            "pollers": {
                "ok": True,
                "message": f"Active polls: {len(runner.poller) + len(videos.poller)}",
            },
        }
        ok = all(check["ok"] for check in checks.values())
        return jsonify({"ok": ok, "checks": checks, "metrics": metrics_snapshot}), 200 if ok else 503

    return app


def _snapshot(job) -> Dict[str, Any]:
    return job.to_dict(include_input=False)


def _error_response(message: str, status_code: int):
    trace_id = getattr(g, "trace_id", None)
    return (
        jsonify(
            {
                "error": {
                    "message": message,
                    "code": status_code,
                    "trace_id": trace_id,
                }
            }
        ),
        status_code,
    )


def _require_json(req) -> Dict[str, Any]:
    try:
        data = req.get_json(force=True)  # type: ignore[no-any-return]
    except Exception as exc:  # noqa: BLE001
        raise ApiError("Malformed JSON body") from exc
    if not isinstance(data, dict):
        raise ApiError("Expected a JSON object")
    return data


__all__ = ["ApiError", "Services", "build_services", "create_app"]

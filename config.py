# -*- coding: utf-8 -*-

import os


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


# Vertex AI project
VERTEX_AI_PROJECT_ID = str(os.getenv("VERTEX_AI_PROJECT_ID", "")).strip()
VERTEX_AI_LOCATION = str(os.getenv("VERTEX_AI_LOCATION", "us-central1")).strip() or "us-central1"

VIRTUAL_TRY_ON_MODEL_ID = "virtual-try-on-preview-08-04"
STOCK_PHOTO_MODEL_ID = "imagen-4.0-generate-001"
VIDEO_MODEL_ID = "veo-3.1-fast-generate-preview"
TEXT_MODEL_ID = "gemini-2.5-flash"
ADVANCED_TEXT_MODEL_ID = "gemini-2.5-pro"

# Credentials: a pre-issued token wins over the service account JSON.
GOOGLE_CREDENTIALS_JSON = str(os.getenv("GOOGLE_CREDENTIALS_JSON", "")).strip()
VERTEX_ACCESS_TOKEN = str(os.getenv("VERTEX_ACCESS_TOKEN", "")).strip()
TOKEN_REFRESH_MARGIN_S = max(0, _env_int("TOKEN_REFRESH_MARGIN_S", 300))

GATEWAY_TIMEOUT_S = max(1.0, _env_float("GATEWAY_TIMEOUT_S", 60.0))

# Job lifecycle
JOB_STORE_TTL_S = max(60, _env_int("JOB_STORE_TTL_S", 24 * 60 * 60))
JOB_STALE_AFTER_S = max(1, _env_int("JOB_STALE_AFTER_S", 15 * 60))
JOB_RUNNER_WORKERS = max(1, _env_int("JOB_RUNNER_WORKERS", 2))
JOB_POLL_INTERVAL_S = max(0.01, _env_float("JOB_POLL_INTERVAL_S", 3.0))
VIDEO_POLL_INTERVAL_S = max(0.01, _env_float("VIDEO_POLL_INTERVAL_S", 10.0))
OPERATION_TIMEOUT_S = max(JOB_POLL_INTERVAL_S, _env_float("OPERATION_TIMEOUT_S", 600.0))

# Batches and storyboards
BATCH_MAX_PROMPTS = max(1, _env_int("BATCH_MAX_PROMPTS", 10))
BATCH_TOPIC_CONCEPTS = max(1, _env_int("BATCH_TOPIC_CONCEPTS", 5))
STORYBOARD_SCENES = max(1, _env_int("STORYBOARD_SCENES", 5))
IMAGE_ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4")
VIDEO_ASPECT_RATIOS = ("16:9", "9:16")
VIDEO_LANGUAGES = ("english", "indonesia")

# Person generation is relaxed to "allow_all" unless a request asks for adults only.
ALLOW_ADULT_DEFAULT = _env_bool("ALLOW_ADULT_DEFAULT", False)

CORS_ORIGINS = str(os.getenv("CORS_ORIGINS", "*")).strip() or "*"

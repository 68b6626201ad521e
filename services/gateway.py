"""Vertex AI generation gateway: predictions, long-running operations, assets."""
from __future__ import annotations

import base64
import binascii
import json
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as JSONSchemaValidationError

from config import (
    GATEWAY_TIMEOUT_S,
    STOCK_PHOTO_MODEL_ID,
    TEXT_MODEL_ID,
    VERTEX_AI_LOCATION,
    VERTEX_AI_PROJECT_ID,
    VIDEO_MODEL_ID,
    VIRTUAL_TRY_ON_MODEL_ID,
)
from errors import GatewayError, TransportError, ValidationError
from jobs.models import JobKind, OperationHandle, strip_data_url
from observability.logger import get_logger

from .token_provider import TokenProvider

LOGGER = get_logger("genjobs.services.gateway")

STORAGE_DOWNLOAD_URL = "https://storage.googleapis.com/storage/v1/b/{bucket}/o/{name}"
NO_PREDICTIONS_MESSAGE = "No predictions returned from the API."

# Vertex response schemas are an OpenAPI subset with upper-case type names.
_RESPONSE_SCHEMA_KEYS = {"type", "format", "description", "nullable", "enum", "properties", "required", "items", "minItems", "maxItems"}


def to_response_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    converted: Dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _RESPONSE_SCHEMA_KEYS:
            continue
        if key == "type":
            converted[key] = str(value).upper()
        elif key == "properties":
            converted[key] = {name: to_response_schema(child) for name, child in value.items()}
        elif key == "items":
            converted[key] = to_response_schema(value)
        else:
            converted[key] = value
    return converted


def _extract_error_message(response: httpx.Response) -> str:
    message = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_block = payload.get("error")
        if isinstance(error_block, dict):
            message = str(error_block.get("message", ""))
        elif isinstance(payload.get("message"), str):
            message = payload["message"]
    if not message:
        message = response.text or ""
    return message.strip()


class VertexGateway:
    """Generation gateway for Vertex AI publisher models.

    Short tasks (virtual try-on, stock photos) complete inside ``submit`` and come
    back as a done handle. Videos come back as a pending handle that callers poll
    with :meth:`poll_operation`. A fresh token is requested from the provider
    before every call.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        project_id: str = VERTEX_AI_PROJECT_ID,
        location: str = VERTEX_AI_LOCATION,
        timeout_s: float = GATEWAY_TIMEOUT_S,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._token_provider = token_provider
        self._project_id = project_id
        self._location = location
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout=timeout_s, connect=min(20.0, timeout_s)),
            http2=True,
        )

    @property
    def base_url(self) -> str:
        return (
            f"https://{self._location}-aiplatform.googleapis.com/v1/projects/{self._project_id}"
            f"/locations/{self._location}"
        )

    def model_url(self, model: str, method: str) -> str:
        return f"{self.base_url}/publishers/google/models/{model}:{method}"

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ── Operations ─────────────────────────────────────────────────────────

    def submit(self, request: Dict[str, Any]) -> OperationHandle:
        kind = request.get("kind")
        if kind == JobKind.TRY_ON.value:
            return self._predict(VIRTUAL_TRY_ON_MODEL_ID, self._try_on_body(request))
        if kind == JobKind.IMAGE.value:
            return self._predict(STOCK_PHOTO_MODEL_ID, self._image_body(request))
        if kind == JobKind.VIDEO.value:
            payload = self._post_json(self.model_url(VIDEO_MODEL_ID, "predictLongRunning"), self._video_body(request))
            handle = self._handle_from(payload)
            LOGGER.info("video_operation_started", extra={"operation": handle.name})
            return handle
        raise ValidationError(f"Unsupported generation kind: {kind}", field="kind")

    def poll_operation(self, handle: OperationHandle) -> OperationHandle:
        model = self._model_from_operation(handle.name) or VIDEO_MODEL_ID
        payload = self._post_json(self.model_url(model, "fetchPredictOperation"), {"operationName": handle.name})
        return self._handle_from(payload)

    def fetch_asset(self, reference: str) -> bytes:
        if reference.startswith("data:"):
            try:
                return base64.b64decode(strip_data_url(reference), validate=True)
            except (binascii.Error, ValueError) as exc:
                raise GatewayError("Inline asset is not valid base64 data.") from exc
        if reference.startswith("gs://"):
            bucket, _, name = reference[len("gs://"):].partition("/")
            if not bucket or not name:
                raise GatewayError(f"Malformed storage URI: {reference}")
            url = STORAGE_DOWNLOAD_URL.format(bucket=bucket, name=quote(name, safe=""))
            return self._send("GET", url, params={"alt": "media"}).content
        if reference.startswith(("http://", "https://")):
            return self._send("GET", reference).content
        raise GatewayError(f"Unsupported asset reference: {reference[:40]}")

    def generate_content(
        self,
        prompt: str,
        *,
        schema: Dict[str, Any],
        model: str = TEXT_MODEL_ID,
        temperature: float = 0.8,
        image: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Run a JSON-mode text generation and validate it against ``schema``."""

        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if image:
            parts.append(
                {"inlineData": {"mimeType": image.get("mime_type") or "image/png", "data": strip_data_url(image["data"])}}
            )
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": temperature,
                "responseMimeType": "application/json",
                "responseSchema": to_response_schema(schema),
            },
        }
        payload = self._post_json(self.model_url(model, "generateContent"), body)
        text = self._candidate_text(payload)
        try:
            result = json.loads(text)
        except ValueError as exc:
            raise GatewayError("Model returned text that is not valid JSON.") from exc
        try:
            Draft7Validator(schema).validate(result)
        except JSONSchemaValidationError as exc:
            raise GatewayError(f"Model response did not match the expected structure: {exc.message}") from exc
        return result

    def extract_result(self, kind: str, handle: OperationHandle) -> str:
        """Turn a finished handle into the job result string."""

        response = handle.response or {}
        if kind == JobKind.VIDEO.value:
            return self._video_reference(response)
        predictions = response.get("predictions")
        if not isinstance(predictions, list) or not predictions:
            raise GatewayError(NO_PREDICTIONS_MESSAGE)
        first = predictions[0] if isinstance(predictions[0], dict) else {}
        data = first.get("bytesBase64Encoded")
        if not data:
            raise GatewayError(NO_PREDICTIONS_MESSAGE)
        mime_type = first.get("mimeType") or "image/png"
        return f"data:{mime_type};base64,{data}"

    # ── Request bodies ─────────────────────────────────────────────────────

    @staticmethod
    def _try_on_body(request: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "instances": [
                {
                    "personImage": {"image": {"bytesBase64Encoded": strip_data_url(request["person_image"])}},
                    "productImages": [{"image": {"bytesBase64Encoded": strip_data_url(request["product_image"])}}],
                }
            ],
            "parameters": {
                "sampleCount": 1,
                "personGeneration": "allow_adult" if request.get("allow_adult") else "allow_all",
            },
        }

    @staticmethod
    def _image_body(request: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "instances": [{"prompt": request["prompt"]}],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": request.get("aspect_ratio") or "1:1",
                "outputOptions": {"mimeType": "image/png"},
            },
        }

    @staticmethod
    def _video_body(request: Dict[str, Any]) -> Dict[str, Any]:
        instance: Dict[str, Any] = {"prompt": request["prompt"]}
        image = request.get("image")
        if image:
            instance["image"] = {
                "bytesBase64Encoded": strip_data_url(image["data"]),
                "mimeType": image.get("mime_type") or "image/png",
            }
        return {
            "instances": [instance],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": request.get("aspect_ratio") or "16:9",
                "resolution": "720p",
                "generateAudio": True,
            },
        }

    # ── Response parsing ───────────────────────────────────────────────────

    def _predict(self, model: str, body: Dict[str, Any]) -> OperationHandle:
        payload = self._post_json(self.model_url(model, "predict"), body)
        return OperationHandle(name=f"{model}/predict/{uuid.uuid4().hex}", done=True, response=payload)

    @staticmethod
    def _handle_from(payload: Dict[str, Any]) -> OperationHandle:
        try:
            return OperationHandle.from_payload(payload)
        except ValueError as exc:
            raise GatewayError(f"Malformed operation response: {exc}") from exc

    @staticmethod
    def _model_from_operation(name: str) -> Optional[str]:
        segments = name.split("/")
        if "models" in segments:
            index = segments.index("models")
            if index + 1 < len(segments):
                return segments[index + 1]
        return None

    @staticmethod
    def _video_reference(response: Dict[str, Any]) -> str:
        videos = response.get("videos")
        if isinstance(videos, list) and videos and isinstance(videos[0], dict):
            first = videos[0]
            if first.get("gcsUri"):
                return str(first["gcsUri"])
            if first.get("bytesBase64Encoded"):
                return f"data:{first.get('mimeType') or 'video/mp4'};base64,{first['bytesBase64Encoded']}"
        generated = response.get("generatedVideos")
        if isinstance(generated, list) and generated and isinstance(generated[0], dict):
            uri = (generated[0].get("video") or {}).get("uri")
            if uri:
                return str(uri)
        reasons = response.get("raiMediaFilteredReasons")
        if isinstance(reasons, list) and reasons:
            raise GatewayError(f"Video was filtered: {'; '.join(str(reason) for reason in reasons)}")
        raise GatewayError("Video URI not found in the operation response.")

    @staticmethod
    def _candidate_text(payload: Dict[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise GatewayError("Model returned no candidates.")
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            raise GatewayError("Model returned an empty candidate.")
        text = "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict)).strip()
        if not text:
            raise GatewayError("Model returned an empty candidate.")
        return text

    # ── Transport ──────────────────────────────────────────────────────────

    def _send(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        token = self._token_provider.get_token()
        headers = {
            "Authorization": f"Bearer {token.token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        try:
            response = self._client.request(method, url, json=json_body, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timed out calling the generation service: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"Network failure calling the generation service: {exc}") from exc
        if response.status_code >= 400:
            detail = _extract_error_message(response) or "Unknown error"
            LOGGER.warning(
                "gateway_request_failed",
                extra={"url": url, "status_code": response.status_code, "error": detail},
            )
            raise GatewayError(
                f"API request failed with status {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response

    def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = self._send("POST", url, json_body=body)
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Generation service returned a malformed response body.") from exc
        if not isinstance(payload, dict):
            raise GatewayError("Generation service returned a malformed response body.")
        return payload


__all__ = ["VertexGateway", "to_response_schema", "NO_PREDICTIONS_MESSAGE"]

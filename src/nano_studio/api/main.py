"""FastAPI proxy between the queue and the Gemini/Veo APIs.

Keeps the API credential server-side. Queued image work goes through the batch
API (google-genai SDK), immediate generate/edit/segment calls go through
``generate_content``; video operations are polled over REST because an
operation cannot be rebuilt in the SDK from its name alone.

Every error answers ``{"error": message}``.
"""

import asyncio
import base64
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from google import genai
from starlette.middleware.base import BaseHTTPMiddleware

from ..exceptions import ConfigError
from ..logging_conf import get_log_context, reset_request_id, set_request_id
from ..queue.models import (
    BatchResults,
    BatchStatus,
    BatchSubmission,
    EditRequest,
    GenerateRequest,
    OperationStatus,
    SegmentRequest,
    SegmentResult,
    VideoGenerateRequest,
    VideoResult,
    VideoSubmission,
)
from .contents import (
    build_edit_batch,
    build_generate_batch,
    build_generation_config,
    build_immediate_config,
    build_video_params,
    edit_parts,
    extract_batch_images,
    generate_parts,
    normalize_progress,
    parse_duration,
    resolve_image_model,
    response_images,
    response_text,
    segment_parts,
    state_name,
)

logger = logging.getLogger(__name__)

GEMINI_REST_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_PORT = 3001


class ProxyError(Exception):
    """Error answered to the caller with a specific HTTP status."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


# --- Dependencies (overridden in tests) ---


def get_api_key() -> str:
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ConfigError("GEMINI_API_KEY environment variable is required")
    return api_key


@lru_cache(maxsize=1)
def _genai_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def get_genai_client(api_key: str = Depends(get_api_key)) -> genai.Client:
    return _genai_client(api_key)


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.http_client = httpx.AsyncClient(timeout=120, follow_redirects=True)
    yield
    await app.state.http_client.aclose()


# --- App ---


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach and propagate a request identifier for each HTTP request."""

    async def dispatch(self, request: Request, call_next):
        request_id = (request.headers.get("X-Request-ID") or "").strip() or uuid.uuid4().hex
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error in {request.url.path}: {exc}", exc_info=True)
            response = _error(str(exc) or type(exc).__name__, 500)
        finally:
            reset_request_id(token)

        response.headers["X-Request-ID"] = request_id
        return response


app = FastAPI(title="nano-studio proxy", lifespan=lifespan)

app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(message: str, status_code: int) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content={"error": message})
    request_id = get_log_context()["request_id"]
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return _error(str(exc), exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    logger.warning(f"Validation error on {request.url.path} ({len(errors)} issue(s))")
    message = "; ".join(f"{'.'.join(str(p) for p in e['loc'][1:])}: {e['msg']}" for e in errors)
    return _error(message or "Invalid request", 400)


@app.get("/health")
async def health():
    return {"status": "ok"}


# --- Immediate image calls ---


async def _generate_content(client: genai.Client, model: str, parts, config):
    return await asyncio.to_thread(
        client.models.generate_content,
        model=resolve_image_model(model),
        contents=[{"role": "user", "parts": parts}],
        config=config,
    )


@app.post("/api/generate")
async def generate(body: GenerateRequest, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    response = await _generate_content(client, body.model, generate_parts(body), build_immediate_config(body))
    images = response_images(response, all_candidates=True)
    logger.info(f"Generated {len(images)} image(s)")
    return BatchResults(images=images).to_wire()


@app.post("/api/edit")
async def edit(body: EditRequest, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    response = await _generate_content(client, body.model, edit_parts(body), build_immediate_config(body))
    images = response_images(response, all_candidates=True)
    logger.info(f"Edited image into {len(images)} result(s)")
    return BatchResults(images=images).to_wire()


@app.post("/api/segment")
async def segment(body: SegmentRequest, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    if bool(body.image) == bool(body.mask_image):
        raise ProxyError("Provide either image or maskImage, but not both", 400)

    config = build_generation_config(
        body.safety_settings, body.temperature, body.seed, body.aspect_ratio, body.resolution_tier
    )
    response = await _generate_content(
        client, body.model, segment_parts(body.query, body.image or body.mask_image), config
    )
    text = response_text(response)
    if not text:
        raise ProxyError("No response text received")

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("masks"), list):
        logger.warning("Segmentation answer has no masks list; returning raw text")
        return SegmentResult(raw=text).to_wire()
    return SegmentResult(masks=parsed["masks"]).to_wire()


# --- Image batch jobs ---


@app.post("/api/batch/generate")
async def batch_generate(body: GenerateRequest, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    job = await asyncio.to_thread(
        client.batches.create,
        model=resolve_image_model(body.model),
        src=build_generate_batch(body),
        config={"display_name": f"batch-{int(time.time() * 1000)}"},
    )
    logger.info(f"Created batch {job.name} ({max(1, body.variant_count or 1)} request(s))")
    return BatchSubmission(batch_name=job.name or "").to_wire()


@app.post("/api/batch/edit")
async def batch_edit(body: EditRequest, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    job = await asyncio.to_thread(
        client.batches.create,
        model=resolve_image_model(body.model),
        src=build_edit_batch(body),
        config={"display_name": f"batch-edit-{int(time.time() * 1000)}"},
    )
    logger.info(f"Created edit batch {job.name} ({max(1, body.variant_count or 1)} request(s))")
    return BatchSubmission(batch_name=job.name or "").to_wire()


# Batch names contain a slash ("batches/..."), so match the rest of the path.
# The results route must be registered before the status route.
@app.get("/api/batch/{name:path}/results")
async def batch_results(name: str, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    job = await asyncio.to_thread(client.batches.get, name=name)
    state = state_name(job.state)
    if state != "JOB_STATE_SUCCEEDED":
        raise ProxyError(f"Batch job not completed. Current state: {state}")
    return BatchResults(images=extract_batch_images(job.dest)).to_wire()


@app.get("/api/batch/{name:path}")
async def batch_status(name: str, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    job = await asyncio.to_thread(client.batches.get, name=name)
    dest = job.dest
    return BatchStatus(
        state=state_name(job.state),
        dest_file_name=getattr(dest, "file_name", None) if dest is not None else None,
    ).to_wire()


# --- Video operations ---


@app.post("/api/video/generate")
async def video_generate(body: VideoGenerateRequest, client: genai.Client = Depends(get_genai_client)) -> Dict[str, Any]:
    if not body.prompt:
        raise ProxyError("Prompt is required", 400)

    params = build_video_params(body)
    operation = await asyncio.to_thread(client.models.generate_videos, **params)
    logger.info(f"Started video operation {operation.name} on {params['model']}")
    return VideoSubmission(operation_name=operation.name, model=params["model"]).to_wire()


async def _fetch_operation(name: str, http: httpx.AsyncClient, api_key: str) -> Dict[str, Any]:
    if not name:
        raise ProxyError("Operation name is required", 400)

    response = await http.get(f"{GEMINI_REST_BASE}/{name}", params={"key": api_key})
    if response.is_error:
        try:
            message = response.json().get("error", {}).get("message")
        except ValueError:
            message = None
        raise ProxyError(message or f"API request failed with status {response.status_code}")
    return response.json()


@app.get("/api/video/operation/status")
async def operation_status(
    name: str = "",
    http: httpx.AsyncClient = Depends(get_http_client),
    api_key: str = Depends(get_api_key),
) -> Dict[str, Any]:
    operation = await _fetch_operation(name, http, api_key)

    done = bool(operation.get("done", False))
    error = operation.get("error")
    if not done:
        state = "RUNNING"
    else:
        state = "FAILED" if error else "SUCCEEDED"

    status = OperationStatus(
        done=done,
        state=state,
        error=(error.get("message") or "Video generation failed") if error else None,
        progress=normalize_progress((operation.get("metadata") or {}).get("progress")),
    )
    return status.to_wire()


@app.get("/api/video/operation/result")
async def operation_result(
    name: str = "",
    http: httpx.AsyncClient = Depends(get_http_client),
    api_key: str = Depends(get_api_key),
) -> Dict[str, Any]:
    operation = await _fetch_operation(name, http, api_key)

    if not operation.get("done"):
        raise ProxyError("Video generation not complete", 400)
    if operation.get("error"):
        raise ProxyError(operation["error"].get("message") or "Video generation failed", 400)

    response = operation.get("response") or {}
    samples = (
        (response.get("generateVideoResponse") or {}).get("generatedSamples")
        or response.get("generatedVideos")
        or response.get("videos")
    )
    if not samples:
        raise ProxyError("No video generated", 404)

    video_data = samples[0].get("video") or samples[0]

    if video_data.get("uri"):
        uri = video_data["uri"]
        separator = "&" if "?" in uri else "?"
        download = await http.get(f"{uri}{separator}key={api_key}")
        if download.is_error:
            raise ProxyError(f"Failed to download video: {download.status_code}")
        video = base64.b64encode(download.content).decode("ascii")
    elif video_data.get("encodedVideo") or video_data.get("videoBytes"):
        video = video_data.get("encodedVideo") or video_data.get("videoBytes")
    else:
        logger.error(f"Unexpected video response format: keys={sorted(video_data)}")
        raise ProxyError("Unexpected video response format")

    result = VideoResult(
        video=video,
        mime_type=video_data.get("mimeType") or video_data.get("encoding") or "video/mp4",
        duration_seconds=parse_duration(video_data.get("duration")),
        width=video_data.get("width") or 1920,
        height=video_data.get("height") or 1080,
    )
    return result.to_wire()


def serve(host: str = "127.0.0.1", port: int = None) -> None:
    """Run the proxy with uvicorn (blocking)."""
    import uvicorn

    port = port or int(os.getenv("PORT", DEFAULT_PORT))
    logger.info(f"Starting proxy on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)

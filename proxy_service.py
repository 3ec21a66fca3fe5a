import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException, MultiPartParser

from delivery import DeliveryOutcome, MessageBusPublisher, deliver
from errors import DecodeError, ProxyError, RenderToolAbsent
from pixlet import artifact_path_for, run_pixlet_render
from request_models import decode_image_json, decode_image_upload, decode_notify
from scratch import ScratchFiles
from service_config import ServiceConfig, configure_logging, load_config
from star_templates import TemplateRegistry, materialize

logger = logging.getLogger("tidbyt_proxy")

NOTIFY_APPLET = "notify"
GIF_MEDIA_TYPE = "image/gif"
# Room for boundaries and the small text fields sent alongside the upload.
MULTIPART_OVERHEAD_BYTES = 64 * 1024


class PipelineState(str, Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    DEFAULTED = "defaulted"
    MATERIALIZED = "materialized"
    RENDERED = "rendered"
    DELIVERED = "delivered"
    CLEANED = "cleaned"
    FAILED = "failed"


@dataclass
class PipelineResult:
    state: PipelineState
    failed_at: Optional[PipelineState] = None
    error: Optional[ProxyError] = None
    outcome: Optional[DeliveryOutcome] = None
    source_path: Optional[Path] = None
    artifact_path: Optional[Path] = None
    render_seconds: Optional[float] = None

    @property
    def soft_skipped(self) -> bool:
        return isinstance(self.error, RenderToolAbsent)


def run_pipeline(
    request_model,
    config: ServiceConfig,
    registry: TemplateRegistry,
    *,
    applet: str,
    publisher: Optional[MessageBusPublisher] = None,
    received_at: Optional[float] = None,
) -> PipelineResult:
    """Default-fill, materialize, render and deliver one decoded request.

    Scratch files are removed before this returns, on every path.
    """
    timestamp = int(received_at if received_at is not None else time.time())
    filled = request_model.apply_defaults()
    result = PipelineResult(state=PipelineState.DEFAULTED)

    with ScratchFiles(config.scratch_dir) as scratch:
        try:
            result.source_path = materialize(registry, filled, scratch)
            result.state = PipelineState.MATERIALIZED

            result.artifact_path = scratch.track(artifact_path_for(result.source_path, timestamp))
            result.render_seconds = run_pixlet_render(
                result.source_path,
                result.artifact_path,
                binary=config.pixlet_binary,
                timeout=config.pixlet_timeout,
            )
            result.state = PipelineState.RENDERED
            logger.debug("rendered %s in %.2fs", result.artifact_path, result.render_seconds)
        except RenderToolAbsent as exc:
            return _failed(result, exc)
        except ProxyError as exc:
            logger.error("%s request failed at %s: %s", filled.template_name, result.state.value, exc)
            return _failed(result, exc)

        result.outcome = deliver(
            result.artifact_path,
            filled.delivery_options(),
            config,
            applet=applet,
            publisher=publisher,
        )
        if result.outcome.error is not None:
            logger.error("%s delivery failed: %s", filled.template_name, result.outcome.error)
            return _failed(result, result.outcome.error)
        result.state = PipelineState.DELIVERED

    result.state = PipelineState.CLEANED
    return result


def _failed(result: PipelineResult, error: ProxyError) -> PipelineResult:
    result.failed_at = result.state
    result.state = PipelineState.FAILED
    result.error = error
    return result


def _error_response(error: ProxyError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_payload(), headers=headers)


def pipeline_response(result: PipelineResult) -> Response:
    headers = result.outcome.headers() if result.outcome else {}
    if result.error is not None and not result.soft_skipped:
        return _error_response(result.error, headers)
    if result.outcome is not None and result.outcome.image is not None:
        return Response(content=result.outcome.image, media_type=GIF_MEDIA_TYPE, headers=headers)
    return Response(status_code=200, headers=headers)


def _upload_too_big(max_bytes: int) -> DecodeError:
    return DecodeError(
        f"The uploaded file is too big. Please choose a file that's less than {max_bytes // 1024} KB in size."
    )


async def _bounded_stream(request: Request, max_bytes: int) -> AsyncIterator[bytes]:
    """Yield the request body, refusing to read past the upload cap plus form overhead."""
    limit = max_bytes + MULTIPART_OVERHEAD_BYTES
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            logger.info("multipart body exceeded %s bytes; stopped reading", limit)
            raise _upload_too_big(max_bytes)
        yield chunk


async def _decode_multipart_image(request: Request, max_bytes: int):
    parser = MultiPartParser(request.headers, _bounded_stream(request, max_bytes))
    try:
        form = await parser.parse()
    except MultiPartException as exc:
        raise DecodeError("Malformed multipart body.", detail=exc.message) from exc
    try:
        upload = form.get("image")
        if not isinstance(upload, UploadFile):
            raise DecodeError("Multipart requests must include a file field named 'image'.")
        data = await upload.read(max_bytes + 1)
        fields: Dict[str, Any] = {key: value for key, value in form.multi_items() if isinstance(value, str)}
        return decode_image_upload(data, fields, max_bytes=max_bytes)
    finally:
        await form.close()


router = APIRouter()


@router.post("/api/notify")
async def notify_handler(request: Request):
    state = request.app.state
    received_at = time.time()
    try:
        model = decode_notify(await request.body())
    except DecodeError as exc:
        logger.info("rejected notify request: %s", exc.detail or exc)
        return _error_response(exc)

    result = await run_in_threadpool(
        run_pipeline,
        model,
        state.config,
        state.templates,
        applet=NOTIFY_APPLET,
        publisher=state.publisher,
        received_at=received_at,
    )
    return pipeline_response(result)


@router.post("/api/image")
async def image_handler(request: Request):
    state = request.app.state
    config: ServiceConfig = state.config
    received_at = time.time()
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("multipart/form-data"):
            declared = request.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > config.max_upload_bytes + MULTIPART_OVERHEAD_BYTES:
                raise _upload_too_big(config.max_upload_bytes)
            model = await _decode_multipart_image(request, config.max_upload_bytes)
        else:
            model = decode_image_json(await request.body())
    except DecodeError as exc:
        logger.info("rejected image request: %s", exc.detail or exc)
        return _error_response(exc)

    result = await run_in_threadpool(
        run_pipeline,
        model,
        config,
        state.templates,
        applet=config.applet_name,
        publisher=state.publisher,
        received_at=received_at,
    )
    return pipeline_response(result)


@router.api_route("/healthcheck", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
async def healthcheck():
    return Response(status_code=200)


@router.get("/")
async def root():
    return {
        "message": "Tidbyt render proxy",
        "endpoints": ["/api/notify", "/api/image", "/healthcheck"],
        "docs": "/docs",
        "example_notify": 'curl -d \'{"text": "hello", "return_image": true}\' http://localhost:8080/api/notify --output notify.gif',
        "example_image_url": 'curl -d \'{"image": "https://example.com/cat.png"}\' http://localhost:8080/api/image',
        "example_image_upload": 'curl -F "image=@cat.png" -F "return_image=true" http://localhost:8080/api/image --output cat.gif',
    }


def create_app(
    config: Optional[ServiceConfig] = None,
    registry: Optional[TemplateRegistry] = None,
    publisher: Optional[MessageBusPublisher] = None,
) -> FastAPI:
    """Build the app around one immutable config and one template registry."""
    config = config or ServiceConfig()
    os.makedirs(config.scratch_dir, exist_ok=True)
    app = FastAPI(title="Tidbyt Render Proxy")
    app.state.config = config
    app.state.templates = registry or TemplateRegistry(config.template_dir)
    app.state.publisher = publisher
    app.include_router(router)
    return app


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = load_config(argv)
    configure_logging(config.debug, config.log_file)
    app = create_app(config)
    print("Starting server on port", config.http_port, flush=True)
    uvicorn.run(
        app,
        host=config.http_host,
        port=config.http_port,
        log_level="debug" if config.debug else "warning",
    )


if __name__ == "__main__":
    main()

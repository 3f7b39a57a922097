"""
QuickPay Bill Fetcher API - FastAPI Backend
Handles workbook upload, batch progress, captcha relay and result download.
"""

import os
import re
import json
import uuid
import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, UploadFile, File, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from api.config import config
from api.logging_config import logger, log_batch_event, log_challenge_event
from api.services import Services, build_services
from core.errors import InvalidIdentifier, StaleChallenge
from core.spreadsheet import TEMPLATE_NAME
from monitoring.progress import ProgressBus, Subscription

API_VERSION = "1.0.0"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting QuickPay Bill Fetcher API...")
    services: Optional[Services] = getattr(app.state, "services", None)
    if services is None:
        problems = config.validate()
        if problems:
            logger.warning(f"Configuration problems: {problems}")
        services = build_services(config)
        app.state.services = services
    await services.start()
    logger.info(
        f"Services ready (engine={services.config.SESSION_ENGINE}, pool={services.config.POOL_SIZE})"
    )

    yield
    # Shutdown
    logger.info("Shutting down QuickPay Bill Fetcher API...")
    await services.stop()
    app.state.services = None
    logger.info("Automation sessions closed")


# Initialize FastAPI app
app = FastAPI(
    title="QuickPay Bill Fetcher API",
    description="Concurrent MGVCL bill lookups with human-in-the-loop captcha solving",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

# CORS configuration - restricted to specific origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration:.2f}ms)")
    return response


def upload_dir(services: Services) -> Path:
    """Upload directory of the running configuration."""
    path = Path(services.config.UPLOAD_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


# === Pydantic Models with Validation ===

class CaptchaAnswerRequest(BaseModel):
    batch_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    identifier: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1, max_length=32)


class CaptchaReloadRequest(BaseModel):
    batch_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    identifier: str = Field(..., min_length=1)


class CaptchaSkipRequest(BaseModel):
    session_id: Optional[str] = None


# === Helpers ===

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def sanitize_filename(filename: str) -> str:
    """Sanitize filename to prevent path traversal."""
    # First, get just the basename (remove any path components)
    filename = os.path.basename(filename or "")
    # Remove path separators and other dangerous characters
    sanitized = re.sub(r'[/\\:*?"<>|]', '_', filename)
    # Remove any leading dots or spaces
    sanitized = sanitized.lstrip('. ')
    return sanitized or "upload.xlsx"


def validate_file_extension(filename: str, allowed: List[str]) -> bool:
    """Validate file has allowed extension."""
    ext = os.path.splitext(filename or "")[1].lower()
    return ext in allowed


def _require_batch(services: Services, batch_id: str):
    batch = services.registry.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return batch


def handle_client_message(services: Services, message: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a captcha answer or reload request sent over the WebSocket."""
    kind = message.get("type")
    batch_id = message.get("batch_id")
    session_id = message.get("session_id") or ""
    identifier = message.get("identifier") or ""

    try:
        if kind == "captcha-response":
            services.relay.submit_answer(batch_id, session_id, identifier, message.get("answer") or "")
            log_challenge_event(session_id, identifier, "answer submitted", batch_id)
            return {"type": "captcha-submitted", "session_id": session_id, "identifier": identifier}
        if kind == "reload-captcha":
            services.relay.request_reload(batch_id, session_id, identifier)
            return {"type": "captcha-reload-requested", "session_id": session_id, "identifier": identifier}
        if kind == "ping":
            return {"type": "pong"}
    except StaleChallenge as e:
        return {"type": "challenge-error", "session_id": session_id, "identifier": identifier,
                "error": str(e), "stale": True}
    except ValueError as e:
        return {"type": "challenge-error", "session_id": session_id, "identifier": identifier,
                "error": str(e), "stale": False}

    return {"type": "error", "error": f"Unknown message type {kind!r}"}


# === API Endpoints ===

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": f"QuickPay Bill Fetcher API v{API_VERSION}",
            "docs": "/docs" if config.DEBUG else "disabled"}


@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    services = get_services(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "engine": services.config.SESSION_ENGINE,
        "pool_initialized": services.pool.initialized,
        "pool": services.pool.get_stats(),
        "relay": services.relay.get_stats(),
        "dispatcher": services.dispatcher.get_stats(),
        "subscribers": services.bus.subscriber_count,
        "version": API_VERSION,
    }


# === Batch Endpoints ===

@app.post("/upload")
async def upload_workbook(request: Request, file: UploadFile = File(...)):
    """Upload a workbook of consumer numbers and start a batch."""
    services = get_services(request)
    cfg = services.config

    # Validate file extension
    if not validate_file_extension(file.filename, cfg.ALLOWED_EXTENSIONS):
        raise HTTPException(status_code=400, detail=f"Invalid file type. Allowed: {cfg.ALLOWED_EXTENSIONS}")

    # Validate file size
    content = await file.read()
    if len(content) > cfg.MAX_UPLOAD_SIZE_MB * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File too large. Max: {cfg.MAX_UPLOAD_SIZE_MB}MB")

    file_path = upload_dir(services) / f"{uuid.uuid4().hex[:8]}_{sanitize_filename(file.filename)}"
    with open(file_path, "wb") as f:
        f.write(content)

    try:
        raw_values = await asyncio.to_thread(services.excel.read_identifiers, file_path)
        batch_id = await services.dispatcher.submit(raw_values)
    except InvalidIdentifier as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        file_path.unlink(missing_ok=True)

    batch = services.registry.get(batch_id)
    log_batch_event(batch_id, "started", f"{batch.total} consumers from {file.filename}")
    return {
        "batch_id": batch_id,
        "total": batch.total,
        "rejected": [{"value": raw, "reason": reason} for raw, reason in batch.rejected],
        "message": f"Processing {batch.total} consumer numbers",
    }


@app.get("/status/{batch_id}")
async def batch_status(batch_id: str, request: Request):
    """Progress and counters of one batch."""
    services = get_services(request)
    batch = _require_batch(services, batch_id)
    result = batch.progress()
    result["recent_events"] = [e.to_dict() for e in services.bus.history(batch_id)[-20:]
                               if e.type.value != "challenge-issued"]
    if batch.status.is_terminal:
        result["statistics"] = services.excel.get_statistics(batch.ordered_outcomes())
        result["download_url"] = f"/download/{batch_id}" if batch.results_path else None
        result["error"] = batch.error
    return result


@app.get("/batches")
async def list_batches(request: Request):
    services = get_services(request)
    return {"batches": [b.progress() for b in services.registry.list()]}


@app.get("/download/{batch_id}")
async def download_results(batch_id: str, request: Request):
    """Download the results workbook of a finished batch."""
    services = get_services(request)
    batch = _require_batch(services, batch_id)
    if not batch.results_path or not Path(batch.results_path).exists():
        raise HTTPException(status_code=404, detail="Results not ready")

    services.registry.mark_retrieved(batch_id)
    log_batch_event(batch_id, "downloaded")
    return FileResponse(
        batch.results_path,
        media_type=XLSX_MEDIA_TYPE,
        filename=Path(batch.results_path).name,
    )


@app.get("/template")
async def download_template(request: Request):
    """Sample input workbook."""
    services = get_services(request)
    path = await asyncio.to_thread(services.excel.create_template, upload_dir(services))
    return FileResponse(path, media_type=XLSX_MEDIA_TYPE, filename=TEMPLATE_NAME)


@app.get("/sessions")
async def sessions(request: Request):
    """Per-session pool status."""
    services = get_services(request)
    return {"sessions": services.pool.status(), "stats": services.pool.get_stats()}


# === Captcha Endpoints ===

@app.get("/captcha/pending")
async def pending_captchas(request: Request):
    """The captcha currently presented and the ones queued behind it."""
    services = get_services(request)
    current = services.relay.queue.current()
    return {
        "current": current.to_dict() if current else None,
        "pending": [c.to_dict() for c in services.relay.queue.pending()],
    }


@app.post("/captcha/answer")
async def answer_captcha(body: CaptchaAnswerRequest, request: Request):
    """Forward a human captcha answer to the waiting session."""
    services = get_services(request)
    try:
        services.relay.submit_answer(body.batch_id, body.session_id, body.identifier, body.answer)
    except StaleChallenge as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_challenge_event(body.session_id, body.identifier, "answer submitted", body.batch_id)
    return {"status": "submitted", "session_id": body.session_id, "identifier": body.identifier}


@app.post("/captcha/reload")
async def reload_captcha(body: CaptchaReloadRequest, request: Request):
    """Ask the waiting session for a fresh captcha image."""
    services = get_services(request)
    try:
        services.relay.request_reload(body.batch_id, body.session_id, body.identifier)
    except StaleChallenge as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "reload_requested", "session_id": body.session_id, "identifier": body.identifier}


@app.post("/captcha/skip")
async def skip_captcha(body: CaptchaSkipRequest, request: Request):
    """Move the presented captcha to the back of the queue."""
    services = get_services(request)
    current = services.relay.skip(body.session_id)
    return {"current": current.to_dict() if current else None}


# === Progress Stream ===

async def _forward_events(websocket: WebSocket, subscription: Subscription):
    while True:
        event = await subscription.get()
        if event is not None:
            await websocket.send_json(event.to_dict())


@app.websocket("/ws")
async def progress_stream(websocket: WebSocket):
    """Stream progress events; accept captcha answers and reload requests."""
    services: Optional[Services] = getattr(websocket.app.state, "services", None)
    await websocket.accept()
    if services is None:
        await websocket.close(code=1013)
        return

    bus: ProgressBus = services.bus
    subscription = bus.subscribe()
    sender = None
    try:
        for event in bus.replay():
            await websocket.send_json(event.to_dict())
        current = services.relay.queue.current()
        if current is not None:
            await websocket.send_json({"type": "challenge-pending", **current.to_dict()})

        sender = asyncio.create_task(_forward_events(websocket, subscription))
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "error": "Expected a JSON object"})
                continue
            await websocket.send_json(handle_client_message(services, message))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        if sender is not None:
            sender.cancel()
        subscription.close()


# === Error Handlers ===

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

"""All REST + SSE endpoints for the FastAPI backend."""

import re
import time

import config
from fastapi import APIRouter, HTTPException
from sse_starlette.sse import EventSourceResponse

from pilot.backends import validate_backend
from pilot.errors import (
    DesktopBusyError,
    InstructionRequiredError,
    PilotError,
    RegistryFullError,
    SessionBusyError,
    SessionNotFoundError,
    UnknownBackendError,
)
from pilot.logging import get_logger, log_error, tagged
from pilot.runtime import PilotRuntime
from pilot.session import Session
from pilot.turn_limits import resolve_iterations

from .models import (
    HistoryEntryInfo,
    RunRequest,
    ScreenshotResponse,
    ServerStatus,
    SessionHistory,
    SessionStatus,
    StepRequest,
)
from .streaming import sse_events

router = APIRouter(prefix="/api")
logger = get_logger()

# Injected by app.py lifespan
runtime: PilotRuntime = None  # type: ignore[assignment]
_start_time: float = 0.0

CONVERSATION_HEADER = "x-conversation-id"

# conversation ids: alphanumeric + underscore/dot/dash
_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_.-]{1,128}$")

_STATUS_CODES: dict[type, int] = {
    InstructionRequiredError: 400,
    UnknownBackendError: 400,
    SessionNotFoundError: 404,
    SessionBusyError: 409,
    DesktopBusyError: 409,
    RegistryFullError: 429,
}


def _validate_conversation_id(value: str) -> None:
    if not _SAFE_ID_RE.match(value):
        raise HTTPException(status_code=400, detail=f"Invalid conversation id: {value!r}")


def _http_error(exc: PilotError) -> HTTPException:
    for cls, code in _STATUS_CODES.items():
        if isinstance(exc, cls):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _check_request(backend, policy: str, max_iterations) -> None:
    """Validate backend and iteration policy before anything is created or locked."""
    try:
        if backend is not None:
            validate_backend(backend)
        resolve_iterations(policy, backend or config.DEFAULT_BACKEND, max_iterations)
    except UnknownBackendError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _status(session: Session) -> dict:
    return SessionStatus(**session.status()).model_dump()


def _stream_response(session: Session, req) -> EventSourceResponse:
    try:
        stream = runtime.launch(
            session,
            backend=req.backend,
            iteration_policy=req.iteration_policy,
            max_iterations=req.max_iterations,
        )
    except PilotError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(
        f"Streaming conversation {session.id} (policy={req.iteration_policy})",
        extra=tagged("api"),
    )
    return EventSourceResponse(sse_events(stream), headers={CONVERSATION_HEADER: session.id})


# ---- Sessions ----


@router.post("/sessions/run")
async def run_session(req: RunRequest):
    """Start (or resume) a conversation and stream its events.

    Fresh-start policy: an absent or unknown ``conversation_id`` creates the
    conversation, which requires an ``instruction``.
    """
    if req.conversation_id:
        _validate_conversation_id(req.conversation_id)
    _check_request(req.backend, req.iteration_policy, req.max_iterations)
    try:
        runtime.ensure_desktop_available()
        # launch() marks the session as used once the invocation has started
        session, is_new = runtime.registry.get_or_create(
            req.conversation_id,
            req.instruction,
            create_missing=True,
            backend=req.backend,
            touch=False,
        )
    except PilotError as e:
        raise _http_error(e)
    if is_new:
        logger.info(f"New conversation {session.id}", extra=tagged("api"))
    return _stream_response(session, req)


@router.post("/sessions/{conversation_id}/step")
async def step_session(conversation_id: str, req: StepRequest):
    """Continue an existing conversation. Unknown ids are 404, nothing is created."""
    _validate_conversation_id(conversation_id)
    _check_request(req.backend, req.iteration_policy, req.max_iterations)
    try:
        session = runtime.registry.get(conversation_id, touch=False)
    except PilotError as e:
        raise _http_error(e)
    return _stream_response(session, req)


@router.get("/sessions")
async def list_sessions():
    return [_status(s) for s in runtime.registry.list()]


@router.get("/sessions/{conversation_id}")
async def get_session(conversation_id: str):
    """Read-only status: turn count, history length, running flag, instruction."""
    _validate_conversation_id(conversation_id)
    try:
        session = runtime.registry.get(conversation_id)
    except PilotError as e:
        raise _http_error(e)
    return _status(session)


@router.get("/sessions/{conversation_id}/history")
async def get_history(conversation_id: str):
    _validate_conversation_id(conversation_id)
    try:
        session = runtime.registry.get(conversation_id)
    except PilotError as e:
        raise _http_error(e)
    return SessionHistory(
        conversation_id=session.id,
        turn_count=session.turn_count,
        entries=[HistoryEntryInfo(**e.to_dict()) for e in session.history],
    ).model_dump()


@router.post("/sessions/{conversation_id}/stop", status_code=202)
async def stop_session(conversation_id: str):
    """Detach the current consumer. The invocation itself runs to completion."""
    _validate_conversation_id(conversation_id)
    try:
        runtime.registry.get(conversation_id)
    except PilotError as e:
        raise _http_error(e)
    detached = runtime.turn_loop.detach(conversation_id)
    return {"status": "detached" if detached else "idle"}


# ---- Desktop ----


@router.get("/desktop/screenshot")
async def desktop_screenshot():
    try:
        image = await runtime.screenshot()
    except Exception as e:
        log_error("Screenshot failed", exc=e)
        raise HTTPException(status_code=502, detail=f"Failed to capture screenshot: {e}")
    return ScreenshotResponse(image=image).model_dump()


@router.post("/desktop/reset")
async def desktop_reset():
    """Restart the shared desktop VM. Refused while any conversation is running."""
    try:
        await runtime.reset_desktop()
    except DesktopBusyError as e:
        raise _http_error(e)
    except Exception as e:
        log_error("Desktop reset failed", exc=e)
        raise HTTPException(status_code=502, detail=f"Failed to reset desktop: {e}")
    return {"status": "reset"}


# ---- Config ----


@router.get("/config")
async def get_config():
    """Current settings (no secrets) with their descriptions."""
    cfg = {
        "default_backend": config.DEFAULT_BACKEND,
        "display": {"width": config.DISPLAY_WIDTH, "height": config.DISPLAY_HEIGHT},
        "desktop": {"exclusive": config.EXCLUSIVE_DESKTOP},
        "delays": {"action_ms": config.ACTION_DELAY_MS, "screenshot_ms": config.SCREENSHOT_DELAY_MS},
        "llm_timeout_seconds": config.LLM_TIMEOUT_SECONDS,
        "history": {"max_rendered_entries": config.MAX_RENDERED_HISTORY},
        "executor": {"max_wait_seconds": config.MAX_WAIT_SECONDS},
        "sessions": {
            "max_sessions": config.MAX_SESSIONS,
            "idle_timeout_seconds": config.SESSION_IDLE_TIMEOUT,
        },
        "backends": {
            name: {
                "provider": config.backend_get(name, "provider"),
                "model": config.backend_get(name, "model"),
            }
            for name in runtime.backends
        },
    }
    cfg["_descriptions"] = config.CONFIG_DESCRIPTIONS
    return cfg


@router.get("/config/schema")
async def get_config_schema():
    """Return setting descriptions for clients."""
    return {"descriptions": config.CONFIG_DESCRIPTIONS}


@router.post("/config/reload")
async def reload_settings():
    """Re-read .env and config.json. Only new invocations pick up changes."""
    config.reload_config()
    logger.info("Configuration reloaded", extra=tagged("api"))
    return {"status": "reloaded"}


# ---- Server ----


@router.get("/status")
async def server_status():
    sessions = runtime.registry.list()
    return ServerStatus(
        uptime_seconds=round(time.time() - _start_time, 1),
        total_sessions=len(sessions),
        running_sessions=sum(1 for s in sessions if s.running),
        max_sessions=runtime.registry.max_sessions,
        backends=list(runtime.backends),
        default_backend=runtime.registry.default_backend,
        exclusive_desktop=runtime.turn_loop.desktop_lock is not None,
    ).model_dump()

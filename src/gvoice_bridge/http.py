"""HTTP surface for on-demand conversation access, plus service lifecycle wiring."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional, cast

import structlog
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .actions import read_conversation, send_message
from .config import Settings, get_settings
from .db import ensure_schema, get_session
from .errors import BridgeError, SessionNotReady
from .navigator import ConversationRef
from .session import BrowserSession, SessionArbiter
from .sync import InboxSynchronizer

_LOGGING_CONFIGURED = False
SESSION_NOT_READY_MESSAGE = SessionNotReady().args[0]


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "account_index", "path", "status"]))
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)

    # Suppress verbose aiosqlite DEBUG logs (functools.partial cursor/operation noise)
    logging.getLogger("aiosqlite").setLevel(logging.INFO)

    _LOGGING_CONFIGURED = True


class SendMessageRequest(BaseModel):
    text: Optional[str] = None
    account_index: int = 0

    @field_validator("account_index", mode="before")
    @classmethod
    def _default_account_index(cls, value: Any) -> Any:
        return 0 if value is None or value == "" else value


async def _json_object(request: Request) -> dict[str, Any]:
    """Return a JSON-typed body that holds an object; anything else reads as empty."""
    if "json" not in request.headers.get("content-type", "").lower():
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _parse_account_index(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return 0
    try:
        return int(raw)
    except ValueError:
        return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.time()
        response = await call_next(request)
        with contextlib.suppress(Exception):
            structlog.get_logger("http").info(
                "request",
                method=request.method,
                path=request.url.path,
                status=getattr(response, "status_code", 0),
                duration_ms=int((time.time() - start) * 1000),
                client_ip=request.client.host if request.client else "-",
            )
        return response


async def readiness_check() -> None:
    await ensure_schema()
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


def build_http_app(settings: Settings, session: Any = None) -> FastAPI:
    """Build the FastAPI app around one automation session.

    ``session`` defaults to a fresh ``BrowserSession``; the lifespan launches it
    in the background so the server accepts requests (answering "not ready")
    while the browser starts.
    """
    _configure_logging(settings)
    browser_session = session if session is not None else BrowserSession(settings.browser)
    arbiter = SessionArbiter(browser_session)
    synchronizer = InboxSynchronizer(arbiter, settings)
    log = structlog.get_logger("http")

    async def _launch_session() -> None:
        # start() logs its own failure; the session then stays not-ready until restart
        with contextlib.suppress(Exception):
            await browser_session.start()

    async def _startup() -> None:  # pragma: no cover - service lifecycle
        await ensure_schema()
        tasks: list[asyncio.Task[Any]] = []
        if not browser_session.is_ready:
            tasks.append(asyncio.create_task(_launch_session()))
        if settings.sync.enabled:
            tasks.append(synchronizer.start())
        fastapi_app.state.background_tasks = tasks

    async def _shutdown() -> None:  # pragma: no cover - service lifecycle
        await synchronizer.stop()
        tasks = getattr(fastapi_app.state, "background_tasks", [])
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(BaseException):
                await task
        with contextlib.suppress(Exception):
            await browser_session.close()

    @asynccontextmanager
    async def lifespan_context(app: FastAPI):
        await _startup()
        try:
            yield
        finally:
            await _shutdown()

    fastapi_app = FastAPI(title="gvoice-bridge", lifespan=lifespan_context)
    fastapi_app.state.session = browser_session
    fastapi_app.state.arbiter = arbiter
    fastapi_app.state.synchronizer = synchronizer

    if settings.http.request_log_enabled:
        cast(Any, fastapi_app).add_middleware(RequestLoggingMiddleware)

    if settings.cors.enabled:
        cast(Any, fastapi_app).add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.origins or ["*"],
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods or ["*"],
            allow_headers=settings.cors.allow_headers or ["*"],
        )

    def _account_index_error(account_index: Optional[int]) -> Optional[str]:
        upper = settings.sync.account_count - 1
        if account_index is not None and 0 <= account_index <= upper:
            return None
        return f"account_index must be between 0 and {upper}."

    def _log_failure(event: str, account_index: int, exc: Exception) -> int:
        status_code = exc.status_code if isinstance(exc, BridgeError) else 500
        error_type = exc.error_type if isinstance(exc, BridgeError) else type(exc).__name__
        log_method = log.error if status_code >= 500 else log.info
        log_method(event, account_index=account_index, status=status_code, error=str(exc), error_type=error_type)
        return status_code

    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive"})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        session_state = "ready" if arbiter.session_ready else "not_ready"
        try:
            await readiness_check()
        except Exception as exc:
            log.error("readiness_error", error=str(exc))
            return JSONResponse({"status": "database_unavailable", "session": session_state, "error": str(exc)}, status_code=503)
        if not arbiter.session_ready:
            return JSONResponse({"status": "not_ready", "session": session_state}, status_code=503)
        return JSONResponse({"status": "ready", "session": session_state})

    @fastapi_app.post("/conversation-send")
    async def conversation_send(request: Request) -> PlainTextResponse:
        """Body ``{"text": str, "account_index": int = 0}``; a non-JSON body counts as empty."""
        if not arbiter.session_ready:
            return PlainTextResponse(SESSION_NOT_READY_MESSAGE, status_code=SessionNotReady.status_code)
        body = await _json_object(request)
        if not body.get("text"):
            return PlainTextResponse("text is required.", status_code=400)
        try:
            payload = SendMessageRequest.model_validate(body)
        except ValidationError as exc:
            if any(err["loc"][:1] == ("text",) for err in exc.errors()):
                return PlainTextResponse("text is required.", status_code=400)
            return PlainTextResponse(str(_account_index_error(None)), status_code=400)
        account_index = payload.account_index
        invalid = _account_index_error(account_index)
        if invalid:
            return PlainTextResponse(invalid, status_code=400)
        assert payload.text is not None
        try:
            await send_message(arbiter, settings.browser, payload.text, account_index=account_index)
        except Exception as exc:
            status_code = _log_failure("conversation_send_failed", account_index, exc)
            return PlainTextResponse(str(exc) or type(exc).__name__, status_code=status_code)
        return PlainTextResponse(f"Message sent in conversation using account index {account_index}.")

    @fastapi_app.get("/conversation", response_model=None)
    async def conversation(
        account_index: Optional[str] = None,
        item_id: Optional[str] = Query(default=None, alias="itemId"),
        phone: Optional[str] = None,
    ) -> JSONResponse | PlainTextResponse:
        if not arbiter.session_ready:
            return PlainTextResponse(SESSION_NOT_READY_MESSAGE, status_code=SessionNotReady.status_code)
        index = _parse_account_index(account_index)
        invalid = _account_index_error(index)
        if invalid or index is None:
            return JSONResponse({"error": invalid}, status_code=400)
        if item_id:
            ref = ConversationRef.by_item_id(item_id)
        elif phone:
            ref = ConversationRef.by_label(phone)
        else:
            return JSONResponse({"error": "Missing 'phone' query param."}, status_code=400)
        try:
            messages = await read_conversation(arbiter, settings.browser, index, ref)
        except Exception as exc:
            status_code = _log_failure("conversation_read_failed", index, exc)
            # Client errors answer in JSON like the other 4xx bodies; server errors in plain text
            if status_code < 500:
                return JSONResponse({"error": str(exc)}, status_code=status_code)
            return PlainTextResponse(str(exc) or type(exc).__name__, status_code=status_code)
        return JSONResponse([message.to_payload() for message in messages])

    return fastapi_app


def main() -> None:
    """Run the HTTP service using settings-specified host/port."""

    parser = argparse.ArgumentParser(description="Run the gvoice-bridge HTTP service")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    # Be tolerant of extraneous argv when invoked under test runners
    args, _unknown = parser.parse_known_args()

    settings = get_settings()
    host = args.host or settings.http.host
    port = args.port or settings.http.port

    app = build_http_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()

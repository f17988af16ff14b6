"""
FastAPI application for the code execution service.

This module configures the FastAPI application and registers the HTTP
routes for submitting, inspecting and cancelling executions, plus the
``/ws`` WebSocket that streams execution events to observers.  The session
registry is created when the application starts and shut down (cancelling
every live execution) when it stops.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from ..config import Config
from ..errors import CodeTooLargeError, SessionNotFoundError, UnsupportedLanguageError, ValidationError
from ..events import to_message
from ..executor import build_launchers
from ..models import CancelResponse, ExecuteRequest, ExecuteResult, SessionList, SessionStatus, SubmitResponse
from ..notifier import Notifier, Subscription, all_events, for_session, for_sessions
from ..registry import SessionRegistry
from ..workspace import LocalProjectSource, NullProjectSource, ProjectSource, WorkspaceManager


logger = logging.getLogger("codestream")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[codestream] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


config = Config.from_env()

logger.setLevel(config.log_level)

logger.info(
    "Loaded config: workspace_path=%s, allowed_langs=%s, timeout=%ss, max_source_bytes=%s",
    config.workspace_path,
    config.allowed_langs,
    config.execution_timeout_seconds,
    config.max_source_bytes,
)


def build_registry(cfg: Config) -> SessionRegistry:
    """Wire launchers, workspaces and the notifier from ``cfg``."""
    projects: ProjectSource = (
        LocalProjectSource(cfg.projects_path) if cfg.projects_path else NullProjectSource()
    )
    workspaces = WorkspaceManager(
        cfg.workspace_path,
        projects=projects,
        release_retries=cfg.release_retries,
        release_backoff=cfg.release_backoff_seconds,
    )
    return SessionRegistry(
        build_launchers(cfg),
        workspaces,
        Notifier(max_queue_size=cfg.subscriber_queue_size),
        timeout=cfg.execution_timeout_seconds,
        kill_grace=cfg.kill_grace_seconds,
        max_source_bytes=cfg.max_source_bytes,
        outbox_size=cfg.output_queue_size,
        chunk_size=cfg.read_chunk_size,
        retention=cfg.session_retention_seconds,
    )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app.state.registry = build_registry(config)
    logger.info("Session registry ready; languages: %s", sorted(app.state.registry.launchers))
    try:
        yield
    finally:
        await app.state.registry.shutdown()
        app.state.registry.notifier.close()
        logger.info("Session registry stopped")


app = FastAPI(title="Code Execution Service", version="0.2.0", lifespan=lifespan)


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _submit(registry: SessionRegistry, language: str, code: str, project_ref: Any) -> str:
    try:
        return registry.submit(language, code, project_ref)
    except UnsupportedLanguageError as exc:
        logger.warning("Rejected submission: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))
    except CodeTooLargeError as exc:
        logger.warning("Rejected submission: %s", exc)
        raise HTTPException(status_code=413, detail=str(exc))
    except ValidationError as exc:
        logger.warning("Rejected submission: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
async def health() -> Dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


@app.post("/v1/executions", response_model=SubmitResponse, status_code=201)
async def submit_execution(req: ExecuteRequest, request: Request) -> SubmitResponse:
    """Start executing a snippet and return its session id immediately."""
    registry = _registry(request)
    session_id = _submit(registry, req.language, req.code, req.project_id)
    return SubmitResponse(session_id=session_id, state=registry.status(session_id).state.value)


@app.get("/v1/executions", response_model=SessionList)
async def list_executions(request: Request) -> SessionList:
    """List the sessions that are running or still retained."""
    snapshots = _registry(request).sessions()
    return SessionList(sessions=[SessionStatus.from_snapshot(s) for s in snapshots])


@app.get("/v1/executions/{session_id}", response_model=SessionStatus)
async def get_execution(session_id: str, request: Request) -> SessionStatus:
    try:
        snapshot = _registry(request).status(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionStatus.from_snapshot(snapshot)


@app.post("/v1/executions/{session_id}/cancel", response_model=CancelResponse)
async def cancel_execution(session_id: str, request: Request) -> CancelResponse:
    """Cancel a running session.  ``cancelled`` is false if it already ended."""
    try:
        cancelled = _registry(request).cancel(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return CancelResponse(session_id=session_id, cancelled=cancelled)


@app.post("/api/execute", response_model=ExecuteResult)
async def execute_blocking(req: ExecuteRequest, request: Request) -> ExecuteResult:
    """Run a snippet to completion and return its collected output.

    Kept for clients of the legacy request/response endpoint; new clients
    should submit through ``/v1/executions`` and watch ``/ws``.
    """
    registry = _registry(request)
    session_id = _submit(registry, req.language, req.code, req.project_id)
    # subscribing before the first await guarantees no event is missed
    subscription = registry.notifier.subscribe(for_session(session_id))
    stdout: list[str] = []
    stderr: list[str] = []
    try:
        async for event in subscription:
            if event.type == "output":
                (stdout if event.stream == "stdout" else stderr).append(event.content)
            elif event.type == "execution_complete":
                break
    finally:
        subscription.unsubscribe()
    snapshot = registry.status(session_id)
    logger.info(
        "[/api/execute] Session %s finished: state=%s, exit_code=%s",
        session_id,
        snapshot.state.value,
        snapshot.exit_code,
    )
    error = "".join(stderr) or snapshot.error
    return ExecuteResult(
        session_id=session_id,
        output="".join(stdout) or "Code executed successfully",
        error=error or None,
        exit_code=snapshot.exit_code,
        reason=snapshot.reason,
    )


async def _forward_events(websocket: WebSocket, subscription: Subscription, send_lock: asyncio.Lock) -> None:
    async for event in subscription:
        async with send_lock:
            await websocket.send_json(to_message(event))


def _handle_message(registry: SessionRegistry, message: Dict[str, Any], watched: Set[str]) -> Dict[str, Any]:
    kind = message.get("type")
    if kind == "execute":
        language, code = message.get("language"), message.get("code")
        if not isinstance(language, str) or not isinstance(code, str):
            return {"type": "rejected", "message": "language and code are required"}
        try:
            session_id = registry.submit(language, code, message.get("projectId"))
        except ValidationError as exc:
            return {"type": "rejected", "message": str(exc)}
        watched.add(session_id)
        return {"type": "accepted", "sessionId": session_id}

    session_id = message.get("sessionId")
    if kind not in {"subscribe", "unsubscribe", "cancel"}:
        return {"type": "rejected", "message": f"Unknown message type: {kind}"}
    if not isinstance(session_id, str):
        return {"type": "rejected", "message": "sessionId is required"}
    if kind == "unsubscribe":
        watched.discard(session_id)
        return {"type": "unsubscribed", "sessionId": session_id}
    try:
        if kind == "subscribe":
            snapshot = registry.status(session_id)
            watched.add(session_id)
            return {"type": "subscribed", "sessionId": session_id, "state": snapshot.state.value}
        return {"type": "cancel_ack", "sessionId": session_id, "cancelled": registry.cancel(session_id)}
    except SessionNotFoundError as exc:
        return {"type": "rejected", "message": str(exc)}


@app.websocket("/ws")
async def events_socket(websocket: WebSocket) -> None:
    """Stream execution events and accept execute/subscribe/cancel commands.

    By default a connection only receives events of sessions it submitted
    or subscribed to (``?session=<id>`` may be repeated).  ``?all=true``, or
    ``CODESTREAM_WS_BROADCAST=true``, delivers the events of every session.
    """
    registry: SessionRegistry = websocket.app.state.registry
    await websocket.accept()
    watched: Set[str] = set(websocket.query_params.getlist("session"))
    broadcast_param: Optional[str] = websocket.query_params.get("all")
    broadcast = config.ws_broadcast if broadcast_param is None else broadcast_param.lower() in {"1", "true", "yes"}
    subscription = registry.notifier.subscribe(all_events if broadcast else for_sessions(watched))
    send_lock = asyncio.Lock()
    sender = asyncio.create_task(_forward_events(websocket, subscription, send_lock))
    logger.info("WebSocket client connected (broadcast=%s)", broadcast)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                reply: Dict[str, Any] = {"type": "rejected", "message": "Invalid JSON"}
            else:
                if isinstance(message, dict):
                    reply = _handle_message(registry, message, watched)
                else:
                    reply = {"type": "rejected", "message": "Expected a JSON object"}
            async with send_lock:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        subscription.unsubscribe()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await sender

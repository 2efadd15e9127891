"""HTTP service exposing the session engine to the dashboard backend."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel

from ..config import load_config
from ..engine.cancellation import CancellationToken
from ..factory import Engine, build_engine
from ..models import OperationOutcome

LOGGER = logging.getLogger(__name__)

CONFIG_PATH_ENV = "WHATSAPP_SESSION_ENGINE_CONFIG"
DISCONNECT_POLL_INTERVAL = 0.5


# Engine state ---------------------------------------------------------------


class EngineState:
    """Lazily built engine shared by every request."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self._config_path = config_path
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None

    def get(self) -> Engine:
        with self._lock:
            if self._engine is None:
                LOGGER.info("Building session engine (config: %s)", self._config_path or "defaults")
                self._engine = build_engine(load_config(self._config_path))
            return self._engine

    def set(self, engine: Optional[Engine]) -> None:
        with self._lock:
            self._engine = engine

    def shutdown(self) -> None:
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            engine.shutdown()


_config_path = os.environ.get(CONFIG_PATH_ENV)
state = EngineState(Path(_config_path) if _config_path else None)


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    state.shutdown()


app = FastAPI(title="WhatsApp Session Engine", lifespan=_lifespan)


# Request models -------------------------------------------------------------


class PauseRequest(BaseModel):
    reason: str
    acting_user_id: Optional[int] = None


class ResumeRequest(BaseModel):
    reason: str


class SendMessageRequest(BaseModel):
    phone_number: str
    text: str
    acting_user_id: Optional[int] = None


def _respond(outcome: OperationOutcome) -> Dict[str, Any]:
    return outcome.model_dump(mode="json")


async def _run_cancellable(
    request: Request,
    call: Callable[[CancellationToken], OperationOutcome],
) -> OperationOutcome:
    """Run a blocking engine flow off the event loop, cancelling it if the client goes away."""

    token = CancellationToken()

    async def watch() -> None:
        while not token.cancelled:
            if await request.is_disconnected():
                LOGGER.info("Client disconnected from %s; cancelling", request.url.path)
                token.cancel()
                return
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    watcher = asyncio.create_task(watch())
    try:
        return await asyncio.to_thread(call, token)
    finally:
        watcher.cancel()


# API routes -----------------------------------------------------------------


@app.get("/health")
def get_health() -> Dict[str, Any]:
    engine = state.get()
    return {"status": "ok", "active_moderators": engine.registry.active_moderators()}


@app.get("/moderators/{moderator_id}/status")
def get_session_status(moderator_id: int) -> Dict[str, Any]:
    return _respond(state.get().operations.session_status(moderator_id))


@app.get("/check-connectivity")
def check_connectivity() -> Dict[str, Any]:
    return _respond(state.get().operations.check_connectivity())


@app.get("/moderators/{moderator_id}/check-authentication")
async def check_authentication(
    moderator_id: int,
    request: Request,
    acting_user_id: Optional[int] = None,
) -> Dict[str, Any]:
    operations = state.get().operations
    outcome = await _run_cancellable(
        request,
        lambda token: operations.check_authentication(moderator_id, acting_user_id, token),
    )
    return _respond(outcome)


@app.post("/moderators/{moderator_id}/authenticate")
async def authenticate(
    moderator_id: int,
    request: Request,
    acting_user_id: Optional[int] = None,
) -> Dict[str, Any]:
    operations = state.get().operations
    outcome = await _run_cancellable(
        request,
        lambda token: operations.authenticate(moderator_id, acting_user_id, token),
    )
    return _respond(outcome)


@app.get("/moderators/{moderator_id}/check-whatsapp/{phone_number}")
async def check_whatsapp_number(
    moderator_id: int,
    phone_number: str,
    request: Request,
    acting_user_id: Optional[int] = None,
) -> Dict[str, Any]:
    operations = state.get().operations
    outcome = await _run_cancellable(
        request,
        lambda token: operations.check_number(moderator_id, phone_number, acting_user_id, token),
    )
    return _respond(outcome)


@app.post("/moderators/{moderator_id}/send-message")
async def send_message(moderator_id: int, payload: SendMessageRequest, request: Request) -> Dict[str, Any]:
    operations = state.get().operations
    outcome = await _run_cancellable(
        request,
        lambda token: operations.send_message(
            moderator_id,
            payload.phone_number,
            payload.text,
            payload.acting_user_id,
            token,
        ),
    )
    return _respond(outcome)


@app.get("/moderators/{moderator_id}/login-code")
def get_login_code(moderator_id: int) -> Dict[str, Any]:
    return _respond(state.get().operations.capture_login_code(moderator_id))


@app.post("/moderators/{moderator_id}/pause")
def pause_tasks(moderator_id: int, payload: PauseRequest) -> Dict[str, Any]:
    coordinator = state.get().coordinator
    if coordinator.pause_all(moderator_id, payload.acting_user_id, payload.reason):
        return _respond(OperationOutcome.success(True, message=f"Tasks paused: {payload.reason}"))
    return _respond(OperationOutcome.failure("Failed to pause tasks"))


@app.post("/moderators/{moderator_id}/resume")
def resume_tasks(moderator_id: int, payload: ResumeRequest) -> Dict[str, Any]:
    coordinator = state.get().coordinator
    if coordinator.resume_if_reason(moderator_id, payload.reason):
        return _respond(OperationOutcome.success(True, message=f"Tasks resumed: {payload.reason}"))
    pause = coordinator.get_pause(moderator_id)
    message = (
        f"Tasks remain paused for {pause.reason!r}" if pause.is_paused else "Tasks are not paused"
    )
    return _respond(OperationOutcome.success(False, message=message))


@app.delete("/moderators/{moderator_id}/session")
def dispose_session(moderator_id: int) -> Dict[str, Any]:
    disposed = state.get().registry.dispose(moderator_id)
    return _respond(OperationOutcome.success(disposed))


@app.get("/moderators/{moderator_id}/session/health")
def get_session_health(moderator_id: int) -> Dict[str, Any]:
    try:
        metrics = state.get().optimizer.health_metrics(moderator_id)
    except Exception as exc:
        LOGGER.exception("Health metrics failed for moderator %s", moderator_id)
        return _respond(OperationOutcome.failure(f"Failed to read session health: {exc}"))
    payload = metrics.model_dump(mode="json")
    payload.update(
        exceeds_threshold=metrics.exceeds_threshold,
        current_size_mb=metrics.current_size_mb,
        threshold_mb=metrics.threshold_mb,
    )
    return _respond(OperationOutcome.success(payload))


@app.post("/moderators/{moderator_id}/session/restore")
def restore_session(moderator_id: int) -> Dict[str, Any]:
    return _respond(state.get().optimizer.restore_from_backup(moderator_id))


@app.post("/moderators/{moderator_id}/session/optimize")
def optimize_session(moderator_id: int) -> Dict[str, Any]:
    return _respond(state.get().optimizer.optimize_current_session_only(moderator_id))


@app.post("/moderators/{moderator_id}/session/check-and-restore")
def check_and_restore_session(moderator_id: int) -> Dict[str, Any]:
    return _respond(state.get().optimizer.check_and_auto_restore_if_needed(moderator_id))

"""
HTTP/WebSocket process for the restaurant booking bot.

Routes:
- GET /health: liveness plus the number of calls in progress
- GET /metrics: connection, call and outcome counters
- WS {WS_PATH}: jambonz application socket, one call per connection
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import structlog
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from src.restobot.config import ConfigError, get_config, init_config
from src.restobot.jambonz_protocol import (
    JAMBONZ_SUBPROTOCOL,
    JambonzMessageType,
    ProtocolError,
    parse_jambonz_message,
)
from src.restobot.session import JambonzSession


def configure_logging(log_level: str = "INFO") -> None:
    """JSON logs in production, console rendering when LOG_LEVEL=DEBUG."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_level == "DEBUG"
        else structlog.processors.JSONRenderer(ensure_ascii=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Process-wide counters; per-call outcomes live on the controller."""
    started_at: float = field(default_factory=time.time)
    connections_total: int = 0
    connections_open: int = 0
    calls_started: int = 0
    hook_tasks_failed: int = 0
    errors: int = 0
    protocol_errors: int = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.started_at, 2),
            "connections_total": self.connections_total,
            "connections_open": self.connections_open,
            "calls_started": self.calls_started,
            "hook_tasks_failed": self.hook_tasks_failed,
            "errors": self.errors,
            "protocol_errors": self.protocol_errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration and build the controller before serving."""
    client = None
    try:
        config = init_config()
        configure_logging(config.log_level)

        # Tests may install their own controller before startup.
        if app.state.controller is None:
            from src.restobot.controller import create_controller
            from src.restobot.llm import initialize_llm

            client = await initialize_llm(config)
            app.state.controller = create_controller(config, client=client)

        logger.info(
            "Listening for jambonz sessions",
            port=config.port,
            ws_path=config.ws_path,
            delivery_mode=config.delivery_mode,
        )
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Could not start", error=str(e))
        sys.exit(1)

    yield

    logger.info("Stopping", active_calls=app.state.controller.active_calls)
    if client is not None:
        await client.close()


app = FastAPI(
    title="Restaurant Booking Voice Bot",
    description="LLM voice agent for jambonz WebSocket calls",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.controller = None


@app.get("/health")
async def health() -> JSONResponse:
    controller = app.state.controller
    return JSONResponse(
        content={
            "status": "healthy",
            "active_calls": controller.active_calls if controller else 0,
            "checked_at": time.time(),
        }
    )


@app.get("/metrics")
async def metrics_view() -> JSONResponse:
    content = metrics.snapshot()
    controller = app.state.controller
    if controller is not None:
        content.update(
            active_calls=controller.active_calls,
            conversations=len(controller.store),
            outcomes=dict(controller.outcomes),
        )
    return JSONResponse(content=content)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    metrics.errors += 1
    logger.error("Request failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


class _HookTasks:
    """Speech hooks for one connection, run off the read loop."""

    def __init__(self, session: JambonzSession):
        self._session = session
        self._tasks: Set[asyncio.Task] = set()

    def start(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        metrics.hook_tasks_failed += 1
        logger.error(
            "Speech hook failed",
            call_sid=self._session.call_sid,
            error=str(task.exception()),
        )

    def __len__(self) -> int:
        return len(self._tasks)


async def _read_loop(websocket: WebSocket, session: JambonzSession, controller) -> int:
    """Feed jambonz messages to the controller until the socket closes."""
    hooks = _HookTasks(session)

    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect as e:
            session.log.info("jambonz closed the socket", code=e.code)
            return len(hooks)

        try:
            message_type, event = parse_jambonz_message(raw)
        except ProtocolError as e:
            metrics.protocol_errors += 1
            session.log.warning("Skipping bad jambonz frame", error=str(e))
            continue

        if message_type == JambonzMessageType.SESSION_NEW:
            metrics.calls_started += 1
            structlog.contextvars.bind_contextvars(call_sid=getattr(event, "call_sid", ""))

        # Status and close events must not wait behind a pending model reply.
        if message_type == JambonzMessageType.VERB_HOOK:
            hooks.start(controller.dispatch(session, message_type, event))
            continue

        try:
            await controller.dispatch(session, message_type, event)
        except Exception as e:
            metrics.errors += 1
            session.log.error("Failed to handle jambonz message", type=message_type.value, error=str(e))


async def jambonz_endpoint(websocket: WebSocket) -> None:
    """jambonz WebSocket application endpoint."""
    controller = websocket.app.state.controller

    offered = websocket.scope.get("subprotocols") or []
    await websocket.accept(
        subprotocol=JAMBONZ_SUBPROTOCOL if JAMBONZ_SUBPROTOCOL in offered else None
    )
    metrics.connections_total += 1
    metrics.connections_open += 1
    structlog.contextvars.clear_contextvars()

    session = JambonzSession(websocket.send_text)
    in_flight = 0
    try:
        in_flight = await _read_loop(websocket, session, controller)
    except Exception as e:
        metrics.errors += 1
        session.log.error("Connection handler crashed", error=str(e))
    finally:
        # Replies still in flight are dropped when they land.
        await controller.handle_close(session)
        metrics.connections_open -= 1
        session.log.info(
            "Connection finished",
            active_calls=controller.active_calls,
            replies_in_flight=in_flight,
        )
        structlog.contextvars.clear_contextvars()


app.add_api_websocket_route(get_config().ws_path, jambonz_endpoint)


def main(port: Optional[int] = None) -> None:
    """Console entry point."""
    config = get_config()
    configure_logging(config.log_level)
    port = port or config.port

    # uvicorn exits the process if the port cannot be bound.
    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()

"""
FastAPI server for the hospital voice receptionist.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST|GET /incoming: TwiML for the Twilio voice webhook
- WS /connection: Twilio Media Streams WebSocket (one turn coordinator per call)
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.receptionist.config import ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    active_calls: int = 0
    dropped_utterances: int = 0
    ack_timeouts: int = 0
    errors: int = 0
    last_call: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "dropped_utterances": self.dropped_utterances,
            "ack_timeouts": self.ack_timeouts,
            "errors": self.errors,
            "last_call": self.last_call,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting hospital receptionist server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.receptionist.llm import validate_openai_model
        await validate_openai_model(config.openai_api_key, config.openai_model)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Hospital Voice Receptionist",
    description="AI receptionist for hospital phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


def build_twiml(ws_url: str, caller: str = "") -> str:
    """TwiML that connects the call audio to our WebSocket endpoint."""
    response = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=ws_url)
    if caller:
        stream.parameter(name="from", value=caller)
    response.append(connect)
    return str(response)


@app.post("/incoming")
@app.get("/incoming")
async def incoming_call(request: Request) -> Response:
    """Twilio voice webhook."""
    config = get_config()
    caller = request.query_params.get("From", "")

    logger.info("Incoming call", ws_url=config.ws_url)
    return Response(content=build_twiml(config.ws_url, caller), media_type="text/xml")


@app.websocket("/connection")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Handles incoming audio and sends outgoing audio for a call.
    """
    await websocket.accept()

    metrics.total_calls += 1
    metrics.active_calls += 1
    logger.info("WebSocket connected", active_calls=metrics.active_calls)

    # Import here to speed up startup
    from src.receptionist.coordinator import create_coordinator

    coordinator = None

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    try:
        coordinator = await create_coordinator(send_message)
        await coordinator.run(coordinator.transport.events(websocket.iter_text()))

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if coordinator:
            try:
                await coordinator.stop()
            except Exception as e:
                logger.error("Error stopping coordinator", error=str(e))
            call_metrics = coordinator.metrics
            metrics.dropped_utterances += call_metrics["dropped_utterances"]
            metrics.ack_timeouts += call_metrics["ack_timeouts"]
            metrics.last_call = call_metrics

        metrics.active_calls -= 1
        logger.info("WebSocket closed", active_calls=metrics.active_calls)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()

"""
FastAPI server for the truck-accident intake voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming-call: Twilio voice webhook, returns TwiML
- POST /call-status: Twilio status callback
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from xml.sax.saxutils import quoteattr
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.intake.config import get_config, init_config, ConfigError
from src.intake.orchestrator import CallEvent, CallEventKind, CallOrchestrator, build_orchestrator
from src.intake.twilio_protocol import TelephonyChannel, TwilioEventType, parse_twilio_message


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

# Twilio CallStatus values after which the call is gone.
TERMINAL_CALL_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

_orchestrator: Optional[CallOrchestrator] = None


def get_orchestrator() -> CallOrchestrator:
    """Get the process-wide orchestrator, building it on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(get_config())
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting intake voice agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        get_orchestrator()

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

    # Shutdown: save and close anything still live.
    logger.info("Shutting down server...")
    await get_orchestrator().shutdown()


app = FastAPI(
    title="Intake Voice Agent",
    description="Voice intake agent for truck accident leads over Twilio",
    version="1.0.0",
    lifespan=lifespan,
)


async def _request_params(request: Request) -> Dict[str, str]:
    """Twilio posts form-encoded webhooks; GET webhooks use the query string."""
    params: Dict[str, str] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items()})
    return params


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(get_orchestrator().store),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    orchestrator = get_orchestrator()
    content = metrics.to_dict()
    content["active_calls"] = len(orchestrator.store)
    content.update(orchestrator.stats.to_dict())
    return JSONResponse(content=content)


@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Registers the call and returns TwiML that connects it to our WebSocket.
    """
    config = get_config()
    params = await _request_params(request)
    call_sid = params.get("CallSid", "")
    caller = params.get("From", "")

    if call_sid:
        await get_orchestrator().handle_call_event(
            CallEvent(kind=CallEventKind.INITIATED, call_id=call_sid, caller_phone=caller)
        )

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(config.ws_url)}>
            <Parameter name="from" value={quoteattr(caller)} />
        </Stream>
    </Connect>
</Response>"""

    logger.info("Incoming call", call_id=call_sid or None, caller=caller or None, ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.post("/call-status")
async def call_status(request: Request) -> Response:
    """Twilio status callback; a terminal status tears the call down."""
    params = await _request_params(request)
    call_sid = params.get("CallSid", "")
    status = (params.get("CallStatus") or "").lower()

    logger.info("Call status", call_id=call_sid or None, status=status or None)

    if call_sid and status in TERMINAL_CALL_STATUSES:
        await get_orchestrator().handle_call_event(
            CallEvent(kind=CallEventKind.HANGUP, call_id=call_sid, reason=f"status_{status}")
        )

    return Response(status_code=204)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Translates stream frames into call events for the orchestrator. The
    telephony channel is owned here; sessions only hold a weak reference.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    orchestrator = get_orchestrator()

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    async def close_stream() -> None:
        await websocket.close()

    channel = TelephonyChannel(send_message, close_stream=close_stream)
    call_id: Optional[str] = None

    try:
        # The orchestrator closes the channel when it hangs up a failed call.
        while channel.is_open:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break

            try:
                event_type, event = parse_twilio_message(message)
            except ValueError:
                metrics.errors += 1
                continue

            try:
                if event_type == TwilioEventType.START:
                    channel.stream_sid = event.stream_sid
                    channel.call_sid = event.call_sid
                    call_id = event.call_sid or f"call_{int(time.time() * 1000)}"
                    logger.info("Stream started", call_id=call_id, stream_sid=event.stream_sid)
                    await orchestrator.handle_call_event(
                        CallEvent(
                            kind=CallEventKind.ANSWERED,
                            call_id=call_id,
                            caller_phone=str(event.custom_parameters.get("from") or ""),
                            channel=channel,
                        )
                    )

                elif event_type == TwilioEventType.MEDIA:
                    if call_id:
                        await orchestrator.handle_call_event(
                            CallEvent(kind=CallEventKind.MEDIA, call_id=call_id, payload=event.payload)
                        )

                elif event_type == TwilioEventType.STOP:
                    logger.info("Stream stopped", call_id=call_id)
                    break

            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Don't drop the call on a single bad frame.
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        channel.close()
        if call_id:
            try:
                await orchestrator.handle_call_event(
                    CallEvent(kind=CallEventKind.STOP, call_id=call_id, reason="stream_stopped")
                )
            except Exception as e:
                logger.error("Error closing call", call_id=call_id, error=str(e))

        metrics.active_connections -= 1

        try:
            await websocket.close()
        except Exception:
            pass  # already closed by the peer

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=len(orchestrator.store),
        )


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

    logger.info(
        "Starting server",
        port=config.port,
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()

"""FastAPI application — Twilio messaging webhook plus admin endpoints.

Endpoints:

  POST   /twilio/message                  Twilio SMS / WhatsApp webhook
  GET    /health                          Health check
  GET    /api/sessions                    Live sessions (admin)
  GET    /api/sessions/{user_id}          One session in full (admin)
  DELETE /api/sessions/{user_id}          Drop a session (admin)
  WS     /api/sessions/{user_id}/debug    Live flow events (admin, ?token=)

The messaging flow:
  1. Twilio posts the inbound message to /twilio/message
  2. We verify X-Twilio-Signature and answer at once with empty TwiML
  3. The FlowMachine handles the message in a background task
  4. Replies go out through the Twilio Messages REST API

Run with ``python -m intake.app`` or ``uvicorn intake.app:app``.
"""

from __future__ import annotations

# Load .env into os.environ early so every settings reader sees it
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

# Configure root logger early so all intake.* loggers have a handler
# and are visible when run via `uvicorn intake.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse, Response
from twilio.twiml.messaging_response import MessagingResponse

from intake.allocator import SlotAllocator, local_clock
from intake.auth import require_admin_token, require_admin_ws
from intake.channels.base import InboundMessage
from intake.channels.twilio_channel import (
    TwilioMessagingChannel,
    parse_webhook,
    validate_signature,
)
from intake.config import Settings, settings
from intake.knowledge import load_knowledge
from intake.oracle.llm import LLMOracle
from intake.persistence.sql import SqlGateway
from intake.session import FlowMachine
from intake.store import SessionStore, redact_pii

log = logging.getLogger("intake.app")

_START_TIME = time.time()

EMPTY_TWIML = str(MessagingResponse())


def build_machine(cfg: Settings, gateway: SqlGateway) -> tuple[FlowMachine, list]:
    """Wire a FlowMachine from settings.  Returns it with closables."""
    oracle = LLMOracle.from_settings(cfg)
    channel = TwilioMessagingChannel(
        cfg.twilio_account_sid,
        cfg.twilio_auth_token,
        cfg.twilio_phone_number,
        api_url=cfg.twilio_api_url,
    )
    allocator = SlotAllocator(
        gateway,
        clock=local_clock(cfg.calendar_timezone),
        window_days=cfg.slot_window_days,
        day_start_hour=cfg.slot_day_start_hour,
        day_end_hour=cfg.slot_day_end_hour,
        step_minutes=cfg.slot_step_minutes,
        weekdays=cfg.slot_weekdays,
        tolerance_seconds=cfg.booking_tolerance_seconds,
        host=cfg.appointment_host,
        purpose=cfg.appointment_purpose,
        appointment_type=cfg.appointment_type,
    )
    machine = FlowMachine(
        store=SessionStore(),
        oracle=oracle,
        gateway=gateway,
        allocator=allocator,
        channel=channel,
        knowledge=load_knowledge(cfg.knowledge_path),
        cancel_keyword=cfg.cancel_keyword,
        supersede_replaced=cfg.supersede_replaced_appointments,
    )
    return machine, [oracle.aclose, channel.close, gateway.dispose]


def _public_url(request: Request) -> str:
    """The URL Twilio signed, honouring a TLS-terminating proxy."""
    url = request.url
    proto = request.headers.get("x-forwarded-proto")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    if proto:
        url = url.replace(scheme=proto)
    if host:
        url = url.replace(netloc=host)
    return str(url)


async def _process(machine: FlowMachine, message: InboundMessage) -> None:
    try:
        await machine.handle_message(message)
    except Exception:
        log.exception("Unhandled error processing message from %s",
                      redact_pii(message.user_id))


def create_app(
    config: Optional[Settings] = None,
    machine: Optional[FlowMachine] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass *machine* to serve a pre-wired FlowMachine (tests do); otherwise
    one is built from *config* when the app starts.
    """
    cfg = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        closers = []
        if app.state.machine is None:
            for warning in cfg.validate_startup():
                log.warning(warning)
            gateway = SqlGateway(cfg.database_url, echo=cfg.sql_echo)
            await gateway.init_schema()
            app.state.machine, closers = build_machine(cfg, gateway)
        log.info("Intake service ready")
        yield
        for close in closers:
            await close()

    app = FastAPI(
        title="Admission Intake",
        description="Conversational admission intake and meeting booking over SMS / WhatsApp",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.machine = machine

    def _machine() -> FlowMachine:
        return app.state.machine

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        m = app.state.machine
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "sessions": len(m.store) if m else 0,
        })

    # ── Twilio messaging webhook ───────────────────────────────

    @app.post("/twilio/message")
    async def twilio_message(request: Request, background: BackgroundTasks) -> Response:
        """Twilio webhook for inbound SMS / WhatsApp messages.

        Replies are sent asynchronously through the REST API, so the
        webhook itself always answers with an empty TwiML document.
        """
        form = await request.form()
        params = {k: str(v) for k, v in form.items()}

        if cfg.twilio_validate_signature and cfg.twilio_auth_token:
            signature = request.headers.get("X-Twilio-Signature", "")
            if not validate_signature(
                cfg.twilio_auth_token, _public_url(request), params, signature
            ):
                log.warning("Rejected Twilio webhook with invalid signature")
                return Response(status_code=403)

        message = parse_webhook(params)
        if message is None:
            log.warning("Twilio webhook without sender ignored")
        else:
            log.info("Inbound message from %s (%s)",
                     redact_pii(message.user_id), message.message_id or "no sid")
            background.add_task(_process, _machine(), message)

        return Response(content=EMPTY_TWIML, media_type="application/xml")

    # ── Admin: sessions ────────────────────────────────────────

    @app.get("/api/sessions", dependencies=[Depends(require_admin_token)])
    async def list_sessions() -> JSONResponse:
        records = _machine().store.all()
        return JSONResponse({
            "count": len(records),
            "sessions": [r.summary() for r in records],
        })

    @app.get("/api/sessions/{user_id}", dependencies=[Depends(require_admin_token)])
    async def get_session(user_id: str) -> JSONResponse:
        m = _machine()
        record = m.store.get(user_id)
        if record is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        body = record.model_dump(mode="json")
        broadcaster = m.broadcasters.find(user_id)
        if broadcaster is not None:
            body["event_log"] = broadcaster.event_log
        return JSONResponse(body)

    @app.delete("/api/sessions/{user_id}", dependencies=[Depends(require_admin_token)])
    async def delete_session(user_id: str) -> JSONResponse:
        store = _machine().store
        async with store.lock(user_id):
            removed = store.delete(user_id)
        if not removed:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        log.info("Session %s dropped via admin API", redact_pii(user_id))
        return JSONResponse({"deleted": user_id})

    @app.websocket("/api/sessions/{user_id}/debug")
    async def debug_stream(
        websocket: WebSocket,
        user_id: str,
        _auth: None = Depends(require_admin_ws),
    ) -> None:
        """WebSocket endpoint that streams a user's flow events live."""
        registry = _machine().broadcasters
        await websocket.accept()
        broadcaster = registry.get(user_id)
        queue = broadcaster.subscribe()

        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(queue)
            registry.remove(user_id)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "intake.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )

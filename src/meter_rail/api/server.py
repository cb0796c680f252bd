"""
METER RAIL - FastAPI Server

HTTP surface over the metering engine.

Endpoints:
- POST /sessions - Start a metering session
- POST /sessions/{id}/advance - Tick a session (advance + cap check)
- POST /sessions/{id}/end - End a session, returns final billing
- POST /settlements - Settle a session (clamped to actual cost)
- POST /settlements/{id}/confirm - Attach the external transaction
- GET /rates - Current rate snapshot
- PUT /payers/{id}/cap - Set a payer's universal cap
- WS /ws - Live updates
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import asyncio
import os
import structlog

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import MeterConfig
from ..core.clock import Clock
from ..core.errors import (
    CapConflict,
    InvalidConfiguration,
    InvalidStateTransition,
    MeterRailError,
    RateRefreshError,
    SessionNotActive,
    SessionNotFound,
    SettlementNotFound,
    UnknownCurrency,
    UnknownUnit,
)
from ..engine.engine import MeteringEngine
from ..engine.scheduler import RateRefresher, TickScheduler

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class SessionRequest(BaseModel):
    """Request to start a metering session."""
    cost_rate: Optional[Decimal] = Field(None, description="Cost per rate_unit")
    rate_unit: str = Field(default="hour", description="minute, hour or day")
    currency: str = Field(default="USD")
    mode: str = Field(default="time", description="time or balance")
    payer_id: Optional[str] = Field(None, description="Opaque payer identifier")
    session_cap: Optional[Decimal] = Field(None, description="Per-session spending cap")


class EventRequest(BaseModel):
    """Consumption event for a session's audit log."""
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SettlementRequest(BaseModel):
    """Request to settle a session."""
    session_id: str
    amount: Decimal = Field(..., description="Requested amount in session currency")
    destination: str = Field(..., description="Payer-supplied destination identifier")
    currency: Optional[str] = None


class ValidationRequest(BaseModel):
    session_id: str
    amount: Decimal


class ConfirmRequest(BaseModel):
    external_tx_ref: str


class FailRequest(BaseModel):
    reason: str = ""


class UniversalCapRequest(BaseModel):
    """Set (or clear with null) a payer's universal cap."""
    cap: Optional[Decimal] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    active_sessions: int
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, config: Optional[MeterConfig] = None, clock: Optional[Clock] = None):
        self.config = config or MeterConfig.from_env()
        self.engine = MeteringEngine.from_config(self.config, clock=clock)
        self.tick_scheduler: Optional[TickScheduler] = None
        self.rate_refresher: Optional[RateRefresher] = None
        if self.config.tick_interval_ms > 0:
            self.tick_scheduler = TickScheduler(self.engine, self.config.tick_interval_ms)
        if self.config.rate_refresh_seconds > 0:
            self.rate_refresher = RateRefresher(self.engine.rates, self.config.rate_refresh_seconds)
        self.start_time = datetime.now(timezone.utc)

    def start_drivers(self) -> None:
        for driver in (self.tick_scheduler, self.rate_refresher):
            if driver is not None:
                driver.start()

    async def stop_drivers(self) -> None:
        for driver in (self.tick_scheduler, self.rate_refresher):
            if driver is not None:
                await driver.stop()


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    state = app_state or AppState()
    app_state = state
    logger.info("meter_rail_starting", version=__version__, auto_stop=state.config.auto_stop)
    state.start_drivers()
    yield
    await state.stop_drivers()
    app_state = None
    logger.info("meter_rail_stopping")


# Error class -> HTTP status
ERROR_STATUS = {
    InvalidConfiguration: 400,
    RateRefreshError: 400,
    UnknownCurrency: 422,
    UnknownUnit: 422,
    SessionNotActive: 409,
    SessionNotFound: 404,
    SettlementNotFound: 404,
    CapConflict: 409,
    InvalidStateTransition: 409,
}


def status_for(error: MeterRailError) -> int:
    for error_class in type(error).__mro__:
        if error_class in ERROR_STATUS:
            return ERROR_STATUS[error_class]
    return 400


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Meter Rail",
        description="""
# Nanosecond Metering and Settlement

**PAY FOR WHAT YOU USE** - sessions are billed from integer-nanosecond elapsed time.

## Features
- **Fixed-point billing**: 10^18-scaled integer cost math, no float drift
- **Dual spending caps**: per-session and lifetime (universal) ceilings
- **No overpayment**: settlements are clamped to actual accumulated cost
- **Live updates**: per-tick session state over websocket
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(MeterRailError)
    async def meter_rail_error_handler(request: Request, exc: MeterRailError):
        status = status_for(exc)
        logger.info("request_rejected", path=request.url.path, code=exc.code, status=status)
        return JSONResponse(status_code=status, content={"error": exc.code, "detail": str(exc)})

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def get_engine(state: AppState = Depends(get_state)) -> MeteringEngine:
    return state.engine


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        active_sessions=len(state.engine.store.active_sessions()),
        uptime_seconds=uptime,
    )


@app.post("/sessions", tags=["Sessions"])
async def start_session(
    request: SessionRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """
    Start a metering session.

    Rejected with 409 when the session cap does not fit inside what is
    left of the payer's universal cap.
    """
    session = engine.start_session(
        request.cost_rate,
        request.currency,
        rate_unit=request.rate_unit,
        mode=request.mode,
        payer_id=request.payer_id,
        session_cap=request.session_cap,
    )
    return {
        "session": session.to_dict(),
        "billing": engine.breakdown(session.session_id).to_dict(),
    }


@app.get("/sessions/{session_id}", tags=["Sessions"])
async def get_session(
    session_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    session = engine.store.get(session_id)
    return {
        "session": session.to_dict(),
        "billing": engine.breakdown(session_id).to_dict(),
    }


@app.post("/sessions/{session_id}/advance", tags=["Sessions"])
async def advance_session(
    session_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Run one tick: advance elapsed time, evaluate caps, auto-stop if needed."""
    return engine.tick(session_id).to_dict()


@app.post("/sessions/{session_id}/end", tags=["Sessions"])
async def end_session(
    session_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """End a session. Calling twice returns the same final billing."""
    final = engine.stop_session(session_id)
    return {"final_billing": final.to_dict()}


@app.post("/sessions/{session_id}/events", tags=["Sessions"])
async def log_event(
    session_id: str,
    request: EventRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Append to the consumption log. Unknown sessions are ignored."""
    recorded = engine.log_event(session_id, request.description, request.metadata)
    return {"recorded": recorded}


@app.get("/sessions/{session_id}/events", tags=["Sessions"])
async def get_events(
    session_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    events = engine.store.consumption_log(session_id)
    return {"total": len(events), "events": [e.to_dict() for e in events]}


@app.get("/sessions/{session_id}/stats", tags=["Sessions"])
async def session_stats(
    session_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    session = engine.store.get(session_id)
    return {
        "billing": engine.breakdown(session_id).to_dict(),
        "cap_status": session.cap_status.value,
        "event_count": len(engine.store.consumption_log(session_id)),
        "settlements": [r.to_dict() for r in engine.settlements.for_session(session_id)],
    }


@app.post("/settlements", tags=["Settlement"])
async def settle(
    request: SettlementRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """
    Initiate a settlement.

    An amount above the session's accumulated cost is clamped, never
    rejected; compare requested_amount with charged_amount.
    """
    record = engine.settlements.initiate(
        request.session_id,
        request.amount,
        request.destination,
        request.currency,
    )
    return record.to_dict()


@app.post("/settlements/validate", tags=["Settlement"])
async def validate_settlement(
    request: ValidationRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.settlements.validate(request.session_id, request.amount).to_dict()


@app.get("/settlements/history", tags=["Settlement"])
async def settlement_history(
    limit: Optional[int] = None,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    records = engine.settlements.history(limit)
    return {"total": len(records), "settlements": [r.to_dict() for r in records]}


@app.get("/settlements/summary", tags=["Settlement"])
async def settlement_summary(
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.settlements.summary()


@app.get("/settlements/{settlement_id}", tags=["Settlement"])
async def settlement_status(
    settlement_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.settlements.get(settlement_id).to_dict()


@app.post("/settlements/{settlement_id}/confirm", tags=["Settlement"])
async def confirm_settlement(
    settlement_id: str,
    request: ConfirmRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.settlements.confirm(settlement_id, request.external_tx_ref).to_dict()


@app.post("/settlements/{settlement_id}/fail", tags=["Settlement"])
async def fail_settlement(
    settlement_id: str,
    request: FailRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.settlements.fail(settlement_id, request.reason).to_dict()


@app.post("/settlements/{settlement_id}/refund", tags=["Settlement"])
async def refund_settlement(
    settlement_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    refund = engine.settlements.refund(settlement_id)
    return {"refund": refund.to_dict() if refund else None}


@app.get("/rates", tags=["Rates"])
async def get_rates(
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return {"snapshot": engine.rates.snapshot.to_dict(), "status": engine.rates.status()}


@app.post("/rates", tags=["Rates"])
async def push_rates(
    payload: Dict[str, Any],
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Price-feed push: {"fiatRates": {...}, "unitPrices": {...}}."""
    snapshot = engine.rates.publish(payload)
    return {"snapshot": snapshot.to_dict()}


@app.get("/rates/convert", tags=["Rates"])
async def convert(
    amount: Decimal,
    currency: str = "USD",
    unit: str = "ETH",
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.rates.conversion(amount, currency, unit).to_dict()


@app.get("/payers/{payer_id}/caps", tags=["Caps"])
async def get_payer_caps(
    payer_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.payer_status(payer_id)


@app.put("/payers/{payer_id}/cap", tags=["Caps"])
async def set_universal_cap(
    payer_id: str,
    request: UniversalCapRequest,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.set_universal_cap(payer_id, request.cap)


@app.post("/payers/{payer_id}/reset", tags=["Caps"])
async def reset_payer(
    payer_id: str,
    engine: MeteringEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return engine.reset_payer(payer_id)


async def reap_task(task: asyncio.Task) -> Optional[BaseException]:
    """Cancel a background task and return the error it died with, if any."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        return None
    except Exception as e:
        return e
    return None


@app.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """
    Stream live updates and settlement notifications.

    Authenticate with ?api_key=... since browsers cannot set headers on
    a websocket handshake.
    """
    state = app_state
    if state is None or websocket.query_params.get("api_key") != state.config.api_key:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=1000)

    def enqueue(payload: Dict[str, Any]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(payload)

    def on_message(message) -> None:
        loop.call_soon_threadsafe(enqueue, message.to_dict())

    async def pump() -> None:
        while True:
            await websocket.send_json(await queue.get())

    unsubscribe = state.engine.publisher.subscribe(on_message)
    sender = asyncio.create_task(pump())
    logger.info("websocket_connected", subscribers=state.engine.publisher.subscriber_count)
    try:
        while True:
            # Client messages are ignored; only the disconnect matters
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        error = await reap_task(sender)
        if error is not None:
            logger.warning("websocket_send_failed", error=str(error))
        logger.info("websocket_disconnected")


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "meter_rail.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()

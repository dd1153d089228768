"""
Main FastAPI application
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging
import asyncio
import os

from pyramid_trader.config import DEFAULT_PYRAMID_CONFIG, DEFAULT_STARTING_CAPITAL, load_pyramid_config
from pyramid_trader.database import get_db, init_db
from pyramid_trader.services.backtester import PyramidBacktester
from pyramid_trader.services.execution import PaperExecutor
from pyramid_trader.services.live_session import (
    DEFAULT_MAX_CONSECUTIVE_LOSSES,
    DEFAULT_MAX_DAILY_LOSS,
    DEFAULT_MAX_DRAWDOWN_PERCENT,
    LiveTradingSession,
    SessionStoppedError,
)
from pyramid_trader.services.pyramid import (
    FeatureSnapshot,
    PositionContractError,
    SwingEvent,
    score_confluence,
)
from pyramid_trader.services.pyramid.confluence import max_possible_score
from pyramid_trader.services.run_store import RunStore
from pydantic import BaseModel, Field

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ── Live session factory (reads EXECUTION_MODE from env) ────────────────

def _build_live_session() -> LiveTradingSession:
    """Create the live session. Only paper execution is wired up."""
    mode = os.getenv("EXECUTION_MODE", "paper").lower().strip()
    if mode != "paper":
        logger.warning(f"EXECUTION_MODE={mode} has no executor here, falling back to paper")

    max_losses = int(os.getenv("PYRAMID_MAX_CONSECUTIVE_LOSSES", DEFAULT_MAX_CONSECUTIVE_LOSSES))
    max_daily_loss = float(os.getenv("PYRAMID_MAX_DAILY_LOSS", DEFAULT_MAX_DAILY_LOSS))
    max_drawdown = float(os.getenv("PYRAMID_MAX_DRAWDOWN_PERCENT", DEFAULT_MAX_DRAWDOWN_PERCENT))
    logger.info("Execution mode: PAPER (simulated)")
    return LiveTradingSession(
        load_pyramid_config(),
        starting_capital=DEFAULT_STARTING_CAPITAL,
        executor=PaperExecutor(),
        max_consecutive_losses=max_losses,
        max_daily_loss=max_daily_loss,
        max_drawdown_percent=max_drawdown,
    )


# Initialize services
backtester = PyramidBacktester()
live_session = _build_live_session()


# Pydantic models for API
class SwingEventIn(BaseModel):
    id: Optional[str] = None
    side: str                                  # "high" | "low"
    open_time: int                             # ms epoch
    price: float
    features: Dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> SwingEvent:
        data = self.model_dump()
        if data["id"] is None:
            data.pop("id")
        try:
            return SwingEvent.from_dict(data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid swing: {e}")


class ConfluenceRequest(BaseModel):
    features: Dict[str, Any] = Field(default_factory=dict)


class BacktestRequest(BaseModel):
    swings: List[SwingEventIn]
    starting_capital: float = DEFAULT_STARTING_CAPITAL
    config: Dict[str, Any] = Field(default_factory=dict)   # partial PyramidConfig overrides
    persist: bool = False
    label: Optional[str] = None


class EmergencyCloseRequest(BaseModel):
    price: float
    timestamp: Optional[int] = None


# ── Lifespan ────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup → yield → shutdown."""
    logger.info("Starting Pyramid Trader...")
    init_db()
    logger.info(f"Application started, live session mode: {live_session.executor.mode}")

    yield

    logger.info("Shutting down...")
    live_session.stop()


# Initialize FastAPI app with lifespan
app = FastAPI(title="Pyramid Trader - Confluence Pyramiding Engine", version="1.0.0", lifespan=lifespan)


# ── Health / config ───────────────────────────────────────────────────────

@app.get("/api/health")
def health_check():
    """Check API and live session health"""
    return {
        "status": "ok",
        "execution_mode": live_session.executor.mode,
        "live_running": live_session.is_running,
        "circuit_breaker_triggered": live_session.circuit_breaker_triggered,
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/api/config/defaults")
def config_defaults():
    """Return built-in defaults and the config in effect (defaults + env)."""
    return {
        "defaults": DEFAULT_PYRAMID_CONFIG.to_dict(),
        "effective": live_session.config.to_dict(),
        "starting_capital": DEFAULT_STARTING_CAPITAL,
    }


@app.post("/api/confluence")
def confluence_score(req: ConfluenceRequest):
    """Score a feature snapshot without touching any position."""
    result = score_confluence(FeatureSnapshot.from_mapping(req.features))
    return {
        "score": result.score,
        "factors": list(result.factors),
        "max_score": max_possible_score(),
    }


# ── Backtesting ───────────────────────────────────────────────────────────

@app.post("/api/backtest")
async def run_backtest(req: BacktestRequest, db: Session = Depends(get_db)):
    """Replay the supplied swings. Large histories may take a few seconds."""
    if req.starting_capital <= 0:
        raise HTTPException(status_code=400, detail="starting_capital must be positive")
    try:
        config = load_pyramid_config(req.config)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    swings = [s.to_event() for s in req.swings]

    try:
        result = await asyncio.to_thread(
            backtester.run, swings, config, req.starting_capital,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Backtest failed: {e}")
        raise HTTPException(status_code=500, detail=f"Backtest error: {str(e)}")

    payload = result.to_dict()
    payload["run_id"] = None
    if req.persist:
        run = RunStore(db).save(result, label=req.label)
        payload["run_id"] = run.id
    return payload


@app.get("/api/backtests")
def list_backtests(limit: int = 50, db: Session = Depends(get_db)):
    """List persisted backtest runs, newest first"""
    if not (1 <= limit <= 500):
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    return RunStore(db).list_runs(limit=limit)


@app.get("/api/backtests/{run_id}")
def get_backtest(run_id: int, db: Session = Depends(get_db)):
    """Get a persisted run with its trades"""
    run = RunStore(db).get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Backtest run not found")
    return run


# ── Live session ──────────────────────────────────────────────────────────

@app.post("/api/live/stop")
def stop_live_session():
    """Stop accepting live events. Open positions are kept."""
    live_session.stop()
    return live_session.get_status()


@app.post("/api/live/circuit-breaker/reset")
def reset_circuit_breaker():
    """Allow new entries again after a loss streak"""
    live_session.reset_circuit_breaker()
    return live_session.get_status()


@app.post("/api/live/{symbol}/events")
async def submit_live_event(symbol: str, swing: SwingEventIn):
    """Feed one swing event for *symbol* to the live session."""
    event = swing.to_event()
    try:
        outcome = await live_session.on_swing(symbol.upper(), event)
    except SessionStoppedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PositionContractError as e:
        logger.error(f"{symbol}: position contract violated: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return outcome.to_dict()


@app.get("/api/live/{symbol}")
def get_live_position(symbol: str):
    """Current position and closed trades for *symbol*"""
    status = live_session.position_status(symbol.upper())
    status["session"] = live_session.get_status()
    return status


@app.post("/api/live/{symbol}/emergency-close")
async def emergency_close(symbol: str, req: EmergencyCloseRequest):
    """Close the open position for *symbol* at the given price."""
    if req.price <= 0:
        raise HTTPException(status_code=400, detail="price must be positive")
    outcome = await live_session.emergency_close(symbol.upper(), req.price, req.timestamp)
    if not outcome.applied and outcome.error is None:
        raise HTTPException(status_code=404, detail="No open position")
    if outcome.error is not None:
        raise HTTPException(status_code=502, detail=outcome.error)
    return outcome.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)

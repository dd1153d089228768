# tests/conftest.py
import os

# Keep the API module off the on-disk ledger before anything imports it
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from dataclasses import replace

import pytest

from pyramid_trader.config import DEFAULT_PYRAMID_CONFIG
from pyramid_trader.services.pyramid import (
    ClosedPyramidTrade,
    ExitReason,
    PositionSide,
    SwingEvent,
    SwingSide,
)

T0 = 1_700_000_000_000
HOUR_MS = 60 * 60 * 1000

# RSI<25 (12) + EMA6>50 (7) + London (4) = 23
STRONG_FEATURES = {"rsi14": 22, "ema6_gt_ema50": True, "london_open": True}
# Fires nothing
NO_FEATURES = {}


@pytest.fixture
def config():
    """Defaults at 3x, where the percent stop sits below entry for a long."""
    return replace(DEFAULT_PYRAMID_CONFIG, max_leverage=3)


@pytest.fixture
def short_config():
    """Defaults at 1.5x, where the percent stop sits above entry for a short."""
    return replace(DEFAULT_PYRAMID_CONFIG, max_leverage=1.5)


def make_swing(side, price, hours=0.0, features=None, swing_id=None):
    """SwingEvent at T0 + hours."""
    open_time = T0 + int(hours * HOUR_MS)
    return SwingEvent.from_dict({
        "id": swing_id or f"swing-{open_time}",
        "side": side.value if isinstance(side, SwingSide) else side,
        "open_time": open_time,
        "price": price,
        "features": features if features is not None else {},
    })


def make_trade(pnl, reason=ExitReason.STOP, levels=1, margin=30.0, idx=0):
    return ClosedPyramidTrade(
        id=f"pyramid-{T0 + idx}",
        side=PositionSide.LONG,
        level_count=levels,
        avg_entry_price=100.0,
        exit_price=100.0,
        entry_time=T0 + idx,
        exit_time=T0 + idx + HOUR_MS,
        pnl=pnl,
        pnl_percent=pnl / margin * 100,
        funding_paid=0.0,
        fees_paid=0.036,
        peak_confluence=23,
        exit_reason=reason,
        total_margin=margin,
    )


@pytest.fixture
def swing():
    return make_swing


@pytest.fixture
def trade():
    return make_trade

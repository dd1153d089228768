"""
Data models for the pyramid engine.
FeatureSnapshot, SwingEvent, PyramidConfig, PyramidLevel, ClosedPyramidTrade
and the Decision records passed between evaluator, executor and position book.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


# ── Exchange constants (perpetual futures fee schedule) ─────────────────────

MAINTENANCE_MARGIN_RATE = 0.005   # 0.5% maintenance margin
TRADING_FEE_RATE = 0.0006         # 0.06% per side
FUNDING_RATE_AVG = 0.0001         # 0.01% per funding interval (typical)
FUNDING_INTERVAL_HOURS = 8

PNL_CAP_MULTIPLE = 50             # net PnL never reported above 50× margin


# ── Enums ───────────────────────────────────────────────────────────────────


class SwingSide(str, Enum):
    HIGH = "high"
    LOW = "low"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def for_swing(cls, swing_side: SwingSide) -> "PositionSide":
        """A swing low is a long candidate, a swing high a short candidate."""
        return cls.LONG if swing_side == SwingSide.LOW else cls.SHORT


class ExitReason(str, Enum):
    STOP = "stop"
    TARGET = "target"
    SIGNAL_REVERSAL = "signal_reversal"
    LIQUIDATION = "liquidation"
    EMERGENCY = "emergency"     # operator-triggered, live session only


class Action(str, Enum):
    OPEN = "open"
    ADD = "add"
    TRAIL = "trail"
    CLOSE = "close"


# ── Feature snapshot ────────────────────────────────────────────────────────


def _as_number(value: Any) -> Optional[float]:
    # bool is an int subclass; a flag is never a reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _as_flag(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _as_label(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class FeatureSnapshot:
    """Indicator readings attached to a swing event. None = not present."""

    # ── Oscillators ────────────────────────────────────────────────────
    rsi14: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_oversold: Optional[bool] = None
    stoch_overbought: Optional[bool] = None

    # ── Trend ──────────────────────────────────────────────────────────
    ema6_gt_ema50: Optional[bool] = None
    close_gt_sma200: Optional[bool] = None
    macd_bullish: Optional[bool] = None
    macd_histogram: Optional[float] = None
    adx14: Optional[float] = None

    # ── Bollinger Bands ────────────────────────────────────────────────
    bb_pct_b: Optional[float] = None
    bb_oversold: Optional[bool] = None
    bb_overbought: Optional[bool] = None

    # ── Sessions / calendar ────────────────────────────────────────────
    us_market_hours: Optional[bool] = None
    london_open: Optional[bool] = None
    nyse_open: Optional[bool] = None
    tokyo_open: Optional[bool] = None
    moon_phase: Optional[str] = None

    # ── Derivatives context ────────────────────────────────────────────
    funding_rate: Optional[float] = None

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "FeatureSnapshot":
        """Build a snapshot from a loosely-typed feature dict.

        Unknown keys are dropped and wrongly-typed values become None, so a
        malformed feature can only ever mean "factor not present".
        """
        if not isinstance(raw, Mapping) or not raw:
            return cls()
        values = {}
        for f in fields(cls):
            value = raw.get(f.name)
            if f.name in _LABEL_FIELDS:
                values[f.name] = _as_label(value)
            elif f.name in _FLAG_FIELDS:
                values[f.name] = _as_flag(value)
            else:
                values[f.name] = _as_number(value)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


_FLAG_FIELDS = frozenset({
    "stoch_oversold", "stoch_overbought", "ema6_gt_ema50", "close_gt_sma200",
    "macd_bullish", "bb_oversold", "bb_overbought", "us_market_hours",
    "london_open", "nyse_open", "tokyo_open",
})
_LABEL_FIELDS = frozenset({"moon_phase"})


# ── Swing event ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SwingEvent:
    """A detected local high/low, timestamped (ms epoch) and featurized."""
    id: str
    side: SwingSide
    open_time: int
    price: float
    features: FeatureSnapshot = field(default_factory=FeatureSnapshot)

    @property
    def is_valid(self) -> bool:
        return (isinstance(self.price, (int, float))
                and math.isfinite(self.price) and self.price > 0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SwingEvent":
        """Accept the swing supplier's JSON shape (camelCase or snake_case).

        Raises ValueError for a record that is not an object, or whose side or
        open_time is missing or unusable.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"swing must be an object, got {type(data).__name__}")
        side = data.get("side") or data.get("swingType") or data.get("swing_type")
        open_time = data.get("open_time", data.get("openTime"))
        if isinstance(open_time, bool):
            open_time = None
        try:
            open_time = int(open_time)
        except (TypeError, ValueError, OverflowError):
            raise ValueError(f"swing open_time must be a millisecond timestamp, got {open_time!r}")
        price = data.get("price")
        try:
            price = float(price)
        except (TypeError, ValueError):
            price = float("nan")
        return cls(
            id=str(data.get("id", f"swing-{open_time}")),
            side=SwingSide(str(side).lower()),
            open_time=open_time,
            price=price,
            features=FeatureSnapshot.from_mapping(data.get("features")),
        )


# ── Confluence ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConfluenceResult:
    score: int
    factors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "factors": list(self.factors)}


# ── Configuration ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PyramidConfig:
    """Immutable per-run parameters. Defaults live in pyramid_trader.config."""

    # ── Leverage / sizing ──────────────────────────────────────────────
    max_leverage: float
    base_risk_percent: float
    max_pyramid_levels: int
    confluence_thresholds: Tuple[int, ...]
    pyramid_size_multipliers: Tuple[float, ...]

    # ── Stops / targets (percent of price) ─────────────────────────────
    initial_stop_percent: float
    trailing_stop_percent: float
    take_profit_percent: float

    # ── Entry quality ──────────────────────────────────────────────────
    min_confluence_to_enter: int
    min_confluence_to_add: int

    # ── Guards ─────────────────────────────────────────────────────────
    funding_rate_threshold: float
    liquidation_buffer: float     # percent of price between entry and liquidation

    def validate(self) -> "PyramidConfig":
        """Raise ValueError on values the engine cannot trade with."""
        if not math.isfinite(self.max_leverage) or self.max_leverage < 1:
            raise ValueError(f"max_leverage must be >= 1, got {self.max_leverage}")
        if self.base_risk_percent <= 0 or self.base_risk_percent > 100:
            raise ValueError(f"base_risk_percent must be in (0, 100], got {self.base_risk_percent}")
        if self.max_pyramid_levels < 1:
            raise ValueError(f"max_pyramid_levels must be >= 1, got {self.max_pyramid_levels}")
        if not self.confluence_thresholds:
            raise ValueError("confluence_thresholds must not be empty")
        if any(m <= 0 for m in self.pyramid_size_multipliers):
            raise ValueError("pyramid_size_multipliers must be positive")
        for name in ("initial_stop_percent", "trailing_stop_percent", "take_profit_percent"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.liquidation_buffer < 0 or self.funding_rate_threshold < 0:
            raise ValueError("liquidation_buffer and funding_rate_threshold must be >= 0")
        return self

    def threshold_for(self, level_slot: int) -> int:
        """Confluence needed for the level at 0-based slot; last entry repeats."""
        if level_slot < len(self.confluence_thresholds):
            return self.confluence_thresholds[level_slot]
        return self.confluence_thresholds[-1]

    def multiplier_for(self, level_slot: int) -> float:
        if level_slot < len(self.pyramid_size_multipliers):
            return self.pyramid_size_multipliers[level_slot]
        return 0.25

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to plain dict (lists instead of tuples)."""
        d = asdict(self)
        d["confluence_thresholds"] = list(self.confluence_thresholds)
        d["pyramid_size_multipliers"] = list(self.pyramid_size_multipliers)
        return d


# ── Position records ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PyramidLevel:
    """One scale-in of a pyramid position."""
    level_index: int          # 1-based
    entry_price: float
    size: float               # position units (notional / entry price)
    margin: float             # quote-currency collateral
    timestamp: int
    confluence_score: int
    factors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ClosedPyramidTrade:
    """Realized result of one pyramid position, emitted exactly once on close."""
    id: str
    side: PositionSide
    level_count: int
    avg_entry_price: float
    exit_price: float
    entry_time: int
    exit_time: int
    pnl: float
    pnl_percent: float
    funding_paid: float
    fees_paid: float
    peak_confluence: int
    exit_reason: ExitReason
    total_margin: float = 0.0

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "side": self.side.value,
            "levels": self.level_count,
            "avgEntryPrice": self.avg_entry_price,
            "exitPrice": self.exit_price,
            "entryTime": self.entry_time,
            "exitTime": self.exit_time,
            "pnl": round(self.pnl, 6),
            "pnlPercent": round(self.pnl_percent, 4),
            "fundingPaid": round(self.funding_paid, 6),
            "feesPaid": round(self.fees_paid, 6),
            "peakConfluence": self.peak_confluence,
            "exitReason": self.exit_reason.value,
            "totalMargin": round(self.total_margin, 6),
        }


# ── Decisions (evaluator output) ────────────────────────────────────────────


@dataclass(frozen=True)
class Decision:
    """A desired transition for one symbol's position.

    open/add carry price, margin and size; trail carries stop_price;
    close carries price and exit_reason.
    """
    action: Action
    side: PositionSide
    price: float
    timestamp: int
    margin: float = 0.0
    size: float = 0.0
    stop_price: float = 0.0
    exit_reason: Optional[ExitReason] = None
    confluence: ConfluenceResult = field(default_factory=lambda: ConfluenceResult(0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "side": self.side.value,
            "price": self.price,
            "timestamp": self.timestamp,
            "margin": round(self.margin, 6),
            "size": self.size,
            "stop_price": self.stop_price,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "score": self.confluence.score,
            "factors": list(self.confluence.factors),
        }

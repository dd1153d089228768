"""
Pyramid Position State Machine
==============================
FLAT → OPEN(1 level) → OPEN(N levels) → CLOSED(reason) → FLAT

A PyramidPosition is only ever built with a stop that a price path moving
against it reaches before the liquidation price. Later transitions may only
tighten that stop, so liquidation stays unreachable for the position's life.

PositionBook holds at most one position per symbol and maps evaluator
decisions onto transitions. Contract violations (open when open, add past
the level cap, anything while flat) raise PositionContractError: they mean
the caller skipped the evaluator's guards.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pyramid_trader.services.pyramid.models import (
    FUNDING_INTERVAL_HOURS,
    FUNDING_RATE_AVG,
    PNL_CAP_MULTIPLE,
    TRADING_FEE_RATE,
    Action,
    ClosedPyramidTrade,
    Decision,
    ExitReason,
    PositionSide,
    PyramidConfig,
    PyramidLevel,
)
from pyramid_trader.services.pyramid.risk import liquidation_price, stop_clears_liquidation

logger = logging.getLogger(__name__)

_MS_PER_HOUR = 60 * 60 * 1000


class PositionContractError(RuntimeError):
    """A transition was requested that the evaluator guards should rule out."""


class PositionInvariantError(PositionContractError):
    """The protective stop would not trigger before liquidation."""


@dataclass
class PyramidPosition:
    side: PositionSide
    leverage: float
    max_levels: int
    levels: List[PyramidLevel] = field(default_factory=list)
    avg_entry_price: float = 0.0
    total_size: float = 0.0
    total_margin: float = 0.0
    current_stop_price: float = 0.0
    liquidation_price: float = 0.0
    closed: bool = False

    # ── Construction ────────────────────────────────────────────────────

    @classmethod
    def open(
        cls,
        side: PositionSide,
        level: PyramidLevel,
        leverage: float,
        max_levels: int,
        stop_price: float,
    ) -> "PyramidPosition":
        """Create a one-level position; reject a stop beyond liquidation."""
        if level.level_index != 1:
            raise PositionContractError(f"first level must have index 1, got {level.level_index}")
        if level.margin <= 0 or level.entry_price <= 0:
            raise PositionContractError("opening level needs positive margin and price")

        liq = liquidation_price(side, level.entry_price, leverage)
        if not stop_clears_liquidation(side, stop_price, liq):
            raise PositionInvariantError(
                f"{side.value} stop {stop_price:.6f} does not clear liquidation {liq:.6f}"
            )
        return cls(
            side=side,
            leverage=leverage,
            max_levels=max_levels,
            levels=[level],
            avg_entry_price=level.entry_price,
            total_size=level.size,
            total_margin=level.margin,
            current_stop_price=stop_price,
            liquidation_price=liq,
        )

    # ── Queries ─────────────────────────────────────────────────────────

    @property
    def level_count(self) -> int:
        return len(self.levels)

    @property
    def has_capacity(self) -> bool:
        return len(self.levels) < self.max_levels

    @property
    def entry_time(self) -> int:
        return self.levels[0].timestamp

    @property
    def peak_confluence(self) -> int:
        return max(lv.confluence_score for lv in self.levels)

    def price_move(self, price: float) -> float:
        """Signed fractional move from average entry (positive = in profit)."""
        if self.avg_entry_price <= 0:
            return 0.0
        if self.side == PositionSide.LONG:
            return (price - self.avg_entry_price) / self.avg_entry_price
        return (self.avg_entry_price - price) / self.avg_entry_price

    def stop_hit(self, price: float) -> bool:
        if self.side == PositionSide.LONG:
            return price <= self.current_stop_price
        return price >= self.current_stop_price

    def liquidation_hit(self, price: float) -> bool:
        if self.side == PositionSide.LONG:
            return price <= self.liquidation_price
        return price >= self.liquidation_price

    def is_tighter(self, stop_price: float) -> bool:
        if self.side == PositionSide.LONG:
            return stop_price > self.current_stop_price
        return stop_price < self.current_stop_price

    def unrealized_pnl(self, price: float) -> float:
        return self.total_margin * self.leverage * self.price_move(price)

    def project_add(self, entry_price: float, margin: float,
                    trailing_stop_percent: float) -> Tuple[float, float, float]:
        """(avg entry, liquidation, stop) the position would have after an add."""
        total_margin = sum(lv.margin for lv in self.levels) + margin
        avg_entry = (sum(lv.entry_price * lv.margin for lv in self.levels)
                     + entry_price * margin) / total_margin
        liq = liquidation_price(self.side, avg_entry, self.leverage)
        if self.side == PositionSide.LONG:
            stop = max(self.current_stop_price, entry_price * (1 - trailing_stop_percent / 100))
        else:
            stop = min(self.current_stop_price, entry_price * (1 + trailing_stop_percent / 100))
        return avg_entry, liq, stop

    # ── Transitions ─────────────────────────────────────────────────────

    def add_level(self, level: PyramidLevel, trailing_stop_percent: float) -> None:
        """Append a scale-in, recompute aggregates, pull the stop toward price."""
        self._ensure_open()
        if not self.has_capacity:
            raise PositionContractError(
                f"cannot add level {level.level_index}: max {self.max_levels} levels"
            )
        if level.level_index != len(self.levels) + 1:
            raise PositionContractError(
                f"expected level {len(self.levels) + 1}, got {level.level_index}"
            )

        levels = self.levels + [level]
        avg_entry, liq, stop = self.project_add(level.entry_price, level.margin,
                                                trailing_stop_percent)

        if not stop_clears_liquidation(self.side, stop, liq):
            raise PositionInvariantError(
                f"{self.side.value} stop {stop:.6f} does not clear liquidation {liq:.6f} "
                f"after adding level {level.level_index}"
            )

        self.levels = levels
        self.total_margin = sum(lv.margin for lv in levels)
        self.total_size = sum(lv.size for lv in levels)
        self.avg_entry_price = avg_entry
        self.liquidation_price = liq
        self.current_stop_price = stop

    def trail(self, new_stop_price: float) -> bool:
        """Replace the stop only if strictly tighter. Returns True if moved."""
        self._ensure_open()
        if not math.isfinite(new_stop_price) or not self.is_tighter(new_stop_price):
            return False
        self.current_stop_price = new_stop_price
        return True

    def close(self, exit_price: float, exit_reason: ExitReason, timestamp: int) -> ClosedPyramidTrade:
        """Realize the position. PnL is clamped to [-margin, 50 × margin]."""
        self._ensure_open()

        price_move = self.price_move(exit_price)
        gross_pnl = self.total_margin * self.leverage * price_move

        hold_hours = max(0.0, (timestamp - self.entry_time) / _MS_PER_HOUR)
        funding_periods = math.floor(hold_hours / FUNDING_INTERVAL_HOURS)
        funding_cost = self.total_margin * FUNDING_RATE_AVG * funding_periods
        trading_fees = self.total_margin * TRADING_FEE_RATE * 2

        if exit_reason == ExitReason.LIQUIDATION:
            net_pnl = -self.total_margin
        else:
            net_pnl = gross_pnl - funding_cost - trading_fees
        if not math.isfinite(net_pnl):
            net_pnl = -self.total_margin

        pnl = max(-self.total_margin, min(net_pnl, self.total_margin * PNL_CAP_MULTIPLE))

        self.closed = True
        return ClosedPyramidTrade(
            id=f"pyramid-{self.entry_time}",
            side=self.side,
            level_count=len(self.levels),
            avg_entry_price=self.avg_entry_price,
            exit_price=exit_price,
            entry_time=self.entry_time,
            exit_time=timestamp,
            pnl=pnl,
            pnl_percent=pnl / self.total_margin * 100 if self.total_margin > 0 else 0.0,
            funding_paid=funding_cost,
            fees_paid=trading_fees,
            peak_confluence=self.peak_confluence,
            exit_reason=exit_reason,
            total_margin=self.total_margin,
        )

    def _ensure_open(self) -> None:
        if self.closed:
            raise PositionContractError("position is already closed")

    def to_dict(self) -> Dict:
        return {
            "side": self.side.value,
            "levels": [
                {
                    "level": lv.level_index,
                    "entryPrice": lv.entry_price,
                    "size": lv.size,
                    "margin": lv.margin,
                    "timestamp": lv.timestamp,
                    "confluenceScore": lv.confluence_score,
                    "factors": list(lv.factors),
                }
                for lv in self.levels
            ],
            "avgEntryPrice": self.avg_entry_price,
            "totalSize": self.total_size,
            "totalMargin": self.total_margin,
            "currentStop": self.current_stop_price,
            "liquidationPrice": self.liquidation_price,
            "maxLevels": self.max_levels,
        }


# ── Position book ───────────────────────────────────────────────────────────


class PositionBook:
    """Zero or one open PyramidPosition per symbol."""

    def __init__(self, config: PyramidConfig):
        self.config = config
        self._positions: Dict[str, PyramidPosition] = {}

    def get(self, symbol: str) -> Optional[PyramidPosition]:
        return self._positions.get(symbol)

    def symbols(self) -> List[str]:
        return list(self._positions)

    def apply(self, symbol: str, decision: Decision) -> Optional[ClosedPyramidTrade]:
        """Apply one decision. Returns the closed trade on a close, else None."""
        position = self._positions.get(symbol)

        if decision.action == Action.OPEN:
            if position is not None:
                raise PositionContractError(f"{symbol}: open requested while a position exists")
            level = self._level_from(decision, 1)
            self._positions[symbol] = PyramidPosition.open(
                decision.side, level, self.config.max_leverage,
                self.config.max_pyramid_levels, decision.stop_price,
            )
            logger.info(
                f"{symbol}: OPEN {decision.side.value.upper()} @ {decision.price:.4f} "
                f"margin {decision.margin:.2f} stop {decision.stop_price:.4f} "
                f"(score {decision.confluence.score})"
            )
            return None

        if position is None:
            raise PositionContractError(f"{symbol}: {decision.action.value} requested while flat")

        if decision.action == Action.ADD:
            level = self._level_from(decision, position.level_count + 1)
            position.add_level(level, self.config.trailing_stop_percent)
            logger.info(
                f"{symbol}: ADD L{level.level_index} @ {decision.price:.4f} "
                f"margin {decision.margin:.2f} → avg {position.avg_entry_price:.4f}, "
                f"stop {position.current_stop_price:.4f}"
            )
            return None

        if decision.action == Action.TRAIL:
            old_stop = position.current_stop_price
            if position.trail(decision.stop_price):
                logger.debug(f"{symbol}: trail stop {old_stop:.4f} → {decision.stop_price:.4f}")
            return None

        trade = position.close(decision.price, decision.exit_reason or ExitReason.STOP,
                               decision.timestamp)
        del self._positions[symbol]
        logger.info(
            f"{symbol}: CLOSE {trade.side.value.upper()} ({trade.exit_reason.value}) "
            f"@ {trade.exit_price:.4f} after {trade.level_count} level(s): "
            f"PnL {trade.pnl:+.2f} ({trade.pnl_percent:+.1f}%)"
        )
        return trade

    @staticmethod
    def _level_from(decision: Decision, index: int) -> PyramidLevel:
        return PyramidLevel(
            level_index=index,
            entry_price=decision.price,
            size=decision.size,
            margin=decision.margin,
            timestamp=decision.timestamp,
            confluence_score=decision.confluence.score,
            factors=decision.confluence.factors,
        )

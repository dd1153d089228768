"""
Backtesting Engine
==================
Replays a sequence of featurized swing events through the pyramid engine to
simulate how the strategy would have performed.

Single-threaded and deterministic: the same swings and config always give
the same trades and capital. Events are replayed in open_time order
whatever the input order; events with a non-finite or non-positive price
are skipped without touching any state.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from pyramid_trader.services.pyramid import (
    Action,
    ClosedPyramidTrade,
    PositionBook,
    PyramidConfig,
    SignalEvaluator,
    SwingEvent,
)
from pyramid_trader.services.statistics import PyramidStats, compute_statistics

logger = logging.getLogger(__name__)

BACKTEST_SYMBOL = "BACKTEST"


# ── Data Classes ────────────────────────────────────────────────────────────

@dataclass
class CapitalLedger:
    """Capital, high-water mark and running max drawdown of one run."""
    capital: float
    peak_capital: float
    max_drawdown: float = 0.0
    curve: List[float] = field(default_factory=list)

    @classmethod
    def starting_with(cls, capital: float) -> "CapitalLedger":
        return cls(capital=capital, peak_capital=capital, curve=[capital])

    def record_close(self, pnl: float) -> None:
        """Apply a realized PnL. Capital can't go negative."""
        self.capital = max(0.0, self.capital + pnl)
        if self.capital > self.peak_capital:
            self.peak_capital = self.capital
        drawdown = self.peak_capital - self.capital
        if drawdown > self.max_drawdown:
            self.max_drawdown = drawdown
        self.curve.append(self.capital)


@dataclass
class BacktestResult:
    """Aggregate results of a backtest run."""
    config: PyramidConfig
    trades: List[ClosedPyramidTrade]
    stats: PyramidStats
    starting_capital: float
    final_capital: float
    peak_capital: float
    capital_curve: List[float]
    events_processed: int
    events_skipped: int
    adds: int
    trailing_stops_moved: int
    open_position: Optional[Dict] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            "config": self.config.to_dict(),
            "trades": [t.to_dict() for t in self.trades],
            "stats": self.stats.to_dict(),
            "starting_capital": self.starting_capital,
            "final_capital": round(self.final_capital, 6),
            "peak_capital": round(self.peak_capital, 6),
            "capital_curve": [round(c, 6) for c in self.capital_curve],
            "events_processed": self.events_processed,
            "events_skipped": self.events_skipped,
            "adds": self.adds,
            "trailing_stops_moved": self.trailing_stops_moved,
            "open_position": self.open_position,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


# ── Backtester ──────────────────────────────────────────────────────────────

class PyramidBacktester:
    """Drives the pyramid state machine over historical swings."""

    def run(
        self,
        swings: Iterable[SwingEvent],
        config: PyramidConfig,
        starting_capital: float = 10000.0,
    ) -> BacktestResult:
        """Execute a full replay and return results."""
        config.validate()
        if not math.isfinite(starting_capital) or starting_capital <= 0:
            raise ValueError(f"starting_capital must be positive, got {starting_capital}")

        ordered = sorted(swings, key=lambda s: s.open_time)
        evaluator = SignalEvaluator(config, starting_capital)
        book = PositionBook(config)
        ledger = CapitalLedger.starting_with(starting_capital)

        trades: List[ClosedPyramidTrade] = []
        processed = skipped = adds = trails = 0

        for swing in ordered:
            if not swing.is_valid:
                skipped += 1
                logger.debug(f"Backtest: skipping swing {swing.id} with price {swing.price!r}")
                continue
            processed += 1

            position = book.get(BACKTEST_SYMBOL)
            evaluation = evaluator.evaluate(swing, position, ledger.capital)

            for decision in evaluation.decisions:
                if decision.action == Action.TRAIL:
                    before = book.get(BACKTEST_SYMBOL).current_stop_price
                    book.apply(BACKTEST_SYMBOL, decision)
                    if book.get(BACKTEST_SYMBOL).current_stop_price != before:
                        trails += 1
                    continue

                closed = book.apply(BACKTEST_SYMBOL, decision)
                if decision.action == Action.ADD:
                    adds += 1
                if closed is not None:
                    trades.append(closed)
                    ledger.record_close(closed.pnl)

        open_position = book.get(BACKTEST_SYMBOL)
        stats = compute_statistics(
            trades,
            starting_capital=starting_capital,
            final_capital=ledger.capital,
            peak_capital=ledger.peak_capital,
            max_drawdown=ledger.max_drawdown,
            capital_curve=ledger.curve,
        )

        valid = [s for s in ordered if s.is_valid]
        result = BacktestResult(
            config=config,
            trades=trades,
            stats=stats,
            starting_capital=starting_capital,
            final_capital=ledger.capital,
            peak_capital=ledger.peak_capital,
            capital_curve=ledger.curve,
            events_processed=processed,
            events_skipped=skipped,
            adds=adds,
            trailing_stops_moved=trails,
            open_position=open_position.to_dict() if open_position else None,
            start_time=valid[0].open_time if valid else None,
            end_time=valid[-1].open_time if valid else None,
        )

        logger.info(
            f"Backtest ({config.max_leverage:g}x, {len(ordered)} swings): "
            f"{stats.compounded_roi:+.2f}% ROI, {stats.total_trades} trades, "
            f"{stats.win_rate:.0f}% win rate, PF {stats.profit_factor:.2f}, "
            f"avg depth {stats.avg_pyramid_levels:.2f}, "
            f"{stats.max_drawdown_percent:.1f}% max DD, "
            f"exits stop/target/reversal {stats.stop_exits}/{stats.target_exits}/"
            f"{stats.reversal_exits}, skipped {skipped}"
        )
        return result

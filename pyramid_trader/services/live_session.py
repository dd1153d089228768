"""
Live Trading Session
====================
Feeds swing events to the pyramid engine one at a time as they arrive.

Architecture:
  event → per-symbol lock → evaluate → await executor → apply → ledger

Safety:
  - One asyncio.Lock per symbol: events for a symbol are handled in arrival order
  - A separate lock guards the shared capital ledger and trade history
  - A decision is applied only after the executor confirms the fill; a
    rejected order leaves the position as it was and drops the rest of
    that event's decisions
  - Circuit breaker: new entries are declined until reset once N closes in
    a row lose, the realized loss for one UTC day passes a limit, or the
    drawdown from peak capital passes a percentage; adds, trails and exits
    keep working
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pyramid_trader.services.backtester import CapitalLedger
from pyramid_trader.services.execution import ExecutionResult, PaperExecutor, TradeExecutor
from pyramid_trader.services.pyramid import (
    Action,
    ClosedPyramidTrade,
    ConfluenceResult,
    Decision,
    ExitReason,
    PositionBook,
    PyramidConfig,
    SignalEvaluator,
    SwingEvent,
)
from pyramid_trader.services.statistics import compute_statistics

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONSECUTIVE_LOSSES = 3
DEFAULT_MAX_DAILY_LOSS = 500.0
DEFAULT_MAX_DRAWDOWN_PERCENT = 10.0


class SessionStoppedError(RuntimeError):
    """Raised when an event reaches a stopped session."""


@dataclass
class LiveEventOutcome:
    """What one event did to one symbol."""
    symbol: str
    confluence: Optional[ConfluenceResult] = None
    applied: List[Decision] = field(default_factory=list)
    rejected: Optional[Decision] = None
    error: Optional[str] = None
    closed_trade: Optional[ClosedPyramidTrade] = None
    fills: List[ExecutionResult] = field(default_factory=list)
    note: str = ""

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "confluence": self.confluence.to_dict() if self.confluence else None,
            "applied": [d.to_dict() for d in self.applied],
            "rejected": self.rejected.to_dict() if self.rejected else None,
            "error": self.error,
            "closed_trade": self.closed_trade.to_dict() if self.closed_trade else None,
            "fills": [f.to_dict() for f in self.fills],
            "note": self.note,
        }


class LiveTradingSession:
    """Event-driven pyramid trading over any number of symbols.

    Usage:
        session = LiveTradingSession(config, starting_capital=10_000)
        outcome = await session.on_swing("BTCUSDT", event)
        await session.emergency_close("BTCUSDT", price, ts)
        session.stop()
    """

    def __init__(
        self,
        config: PyramidConfig,
        starting_capital: float = 10000.0,
        executor: Optional[TradeExecutor] = None,
        max_consecutive_losses: int = DEFAULT_MAX_CONSECUTIVE_LOSSES,
        max_daily_loss: float = DEFAULT_MAX_DAILY_LOSS,
        max_drawdown_percent: float = DEFAULT_MAX_DRAWDOWN_PERCENT,
    ):
        config.validate()
        if starting_capital <= 0:
            raise ValueError(f"starting_capital must be positive, got {starting_capital}")
        if max_consecutive_losses < 1:
            raise ValueError("max_consecutive_losses must be at least 1")
        if max_daily_loss <= 0:
            raise ValueError(f"max_daily_loss must be positive, got {max_daily_loss}")
        if not 0 < max_drawdown_percent <= 100:
            raise ValueError(f"max_drawdown_percent must be in (0, 100], got {max_drawdown_percent}")

        self.config = config
        self.starting_capital = starting_capital
        self.executor = executor or PaperExecutor()
        self.max_consecutive_losses = max_consecutive_losses
        self.max_daily_loss = max_daily_loss
        self.max_drawdown_percent = max_drawdown_percent

        self._evaluator = SignalEvaluator(config, starting_capital)
        self._book = PositionBook(config)
        self._ledger = CapitalLedger.starting_with(starting_capital)
        self._trades: List[ClosedPyramidTrade] = []
        self._trades_by_symbol: Dict[str, List[ClosedPyramidTrade]] = {}
        self._last_price: Dict[str, float] = {}

        self._symbol_locks: Dict[str, asyncio.Lock] = {}
        self._ledger_lock = asyncio.Lock()

        self._running = True
        self._consecutive_losses = 0
        self._trading_day: Optional[str] = None
        self._daily_realized_pnl = 0.0
        self._circuit_breaker_reason: Optional[str] = None
        self._started_at = time.time()

    # ── Properties ──────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def circuit_breaker_triggered(self) -> bool:
        return self._circuit_breaker_reason is not None

    @property
    def capital(self) -> float:
        return self._ledger.capital

    @property
    def current_drawdown_percent(self) -> float:
        """Distance of capital below its high-water mark, in percent."""
        peak = self._ledger.peak_capital
        if peak <= 0:
            return 0.0
        return (peak - self._ledger.capital) / peak * 100

    @property
    def trades(self) -> List[ClosedPyramidTrade]:
        return list(self._trades)

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._symbol_locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._symbol_locks[symbol] = lock
        return lock

    # ── Event handling ──────────────────────────────────────────────────

    async def on_swing(self, symbol: str, event: SwingEvent) -> LiveEventOutcome:
        """Evaluate one swing for *symbol* and execute its decisions in order."""
        self._ensure_running(symbol, event)

        async with self._lock_for(symbol):
            # stop() may have landed while this event waited on the lock
            self._ensure_running(symbol, event)
            outcome = LiveEventOutcome(symbol=symbol)
            if not event.is_valid:
                outcome.note = "invalid price"
                logger.debug(f"{symbol}: skipping swing {event.id} with price {event.price!r}")
                return outcome
            self._last_price[symbol] = event.price

            async with self._ledger_lock:
                capital = self._ledger.capital
                allow_entry = not self.circuit_breaker_triggered

            evaluation = self._evaluator.evaluate(
                event, self._book.get(symbol), capital, allow_entry=allow_entry,
            )
            outcome.confluence = evaluation.confluence
            outcome.note = evaluation.note
            if not allow_entry and self._book.get(symbol) is None:
                outcome.note = f"circuit breaker: {self._circuit_breaker_reason}"

            for decision in evaluation.decisions:
                result = await self.executor.execute(symbol, decision)
                outcome.fills.append(result)
                if not result.success:
                    self._reject(outcome, decision, result)
                    break
                closed = self._book.apply(symbol, decision)
                outcome.applied.append(decision)
                if closed is not None:
                    outcome.closed_trade = closed
                    await self._record_close(symbol, closed)
            return outcome

    async def emergency_close(self, symbol: str, price: float,
                              timestamp: Optional[int] = None) -> LiveEventOutcome:
        """Close *symbol* at *price* immediately, bypassing the evaluator."""
        async with self._lock_for(symbol):
            outcome = LiveEventOutcome(symbol=symbol)
            position = self._book.get(symbol)
            if position is None:
                outcome.note = "no open position"
                return outcome

            decision = Decision(
                action=Action.CLOSE,
                side=position.side,
                price=price,
                timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
                margin=position.total_margin,
                size=position.total_size,
                exit_reason=ExitReason.EMERGENCY,
            )
            result = await self.executor.execute(symbol, decision)
            outcome.fills.append(result)
            if not result.success:
                self._reject(outcome, decision, result)
                return outcome

            closed = self._book.apply(symbol, decision)
            self._last_price[symbol] = price
            outcome.applied.append(decision)
            outcome.closed_trade = closed
            await self._record_close(symbol, closed)
            logger.warning(f"{symbol}: emergency close @ {price:.4f}, PnL {closed.pnl:+.2f}")
            return outcome

    def stop(self) -> None:
        """Reject further events. Open positions are left as they are."""
        if self._running:
            self._running = False
            logger.info(f"Live session stopped with {len(self._book.symbols())} open position(s)")

    def reset_circuit_breaker(self) -> None:
        if self._circuit_breaker_reason is not None:
            logger.info(f"Circuit breaker reset (was: {self._circuit_breaker_reason})")
        self._circuit_breaker_reason = None
        self._consecutive_losses = 0

    # ── Internals ───────────────────────────────────────────────────────

    def _ensure_running(self, symbol: str, event: SwingEvent) -> None:
        if not self._running:
            raise SessionStoppedError(f"session stopped, rejecting event {event.id} for {symbol}")

    def _reject(self, outcome: LiveEventOutcome, decision: Decision,
                result: ExecutionResult) -> None:
        outcome.rejected = decision
        outcome.error = result.error or "execution failed"
        logger.warning(
            f"{outcome.symbol}: {decision.action.value} rejected by "
            f"{self.executor.mode} executor: {outcome.error}"
        )

    async def _record_close(self, symbol: str, trade: ClosedPyramidTrade) -> None:
        async with self._ledger_lock:
            self._ledger.record_close(trade.pnl)
            self._trades.append(trade)
            self._trades_by_symbol.setdefault(symbol, []).append(trade)

            day = datetime.fromtimestamp(trade.exit_time / 1000, tz=timezone.utc).date().isoformat()
            if day != self._trading_day:
                self._trading_day = day
                self._daily_realized_pnl = 0.0
            self._daily_realized_pnl += trade.pnl

            if trade.is_win:
                self._consecutive_losses = 0
            else:
                self._consecutive_losses += 1
            self._check_circuit_breakers()

    def _check_circuit_breakers(self) -> None:
        """Trip on the first limit breached. Caller holds the ledger lock."""
        if self._circuit_breaker_reason is not None:
            return

        daily_loss = -self._daily_realized_pnl
        drawdown = self.current_drawdown_percent
        if daily_loss > self.max_daily_loss:
            reason = (f"daily loss {daily_loss:.2f} on {self._trading_day} exceeds "
                      f"limit {self.max_daily_loss:.2f}")
        elif drawdown > self.max_drawdown_percent:
            reason = f"drawdown {drawdown:.2f}% exceeds limit {self.max_drawdown_percent:.2f}%"
        elif self._consecutive_losses >= self.max_consecutive_losses:
            reason = f"{self._consecutive_losses} consecutive losses"
        else:
            return

        self._circuit_breaker_reason = reason
        logger.warning(f"Circuit breaker triggered: {reason}")

    # ── Status ──────────────────────────────────────────────────────────

    def position_status(self, symbol: str) -> Dict:
        position = self._book.get(symbol)
        last_price = self._last_price.get(symbol)
        unrealized = None
        if position is not None and last_price is not None:
            unrealized = round(position.unrealized_pnl(last_price), 6)
        return {
            "symbol": symbol,
            "position": position.to_dict() if position else None,
            "last_price": last_price,
            "unrealized_pnl": unrealized,
            "trades": [t.to_dict() for t in self._trades_by_symbol.get(symbol, [])],
        }

    def get_status(self) -> Dict:
        stats = compute_statistics(
            self._trades,
            starting_capital=self.starting_capital,
            final_capital=self._ledger.capital,
            peak_capital=self._ledger.peak_capital,
            max_drawdown=self._ledger.max_drawdown,
            capital_curve=self._ledger.curve,
        )
        return {
            "running": self._running,
            "mode": self.executor.mode,
            "capital": round(self._ledger.capital, 6),
            "peak_capital": round(self._ledger.peak_capital, 6),
            "open_symbols": self._book.symbols(),
            "consecutive_losses": self._consecutive_losses,
            "daily_realized_pnl": round(self._daily_realized_pnl, 6),
            "current_drawdown_percent": round(self.current_drawdown_percent, 4),
            "limits": {
                "max_consecutive_losses": self.max_consecutive_losses,
                "max_daily_loss": self.max_daily_loss,
                "max_drawdown_percent": self.max_drawdown_percent,
            },
            "circuit_breaker_triggered": self.circuit_breaker_triggered,
            "circuit_breaker_reason": self._circuit_breaker_reason,
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "stats": stats.to_dict(),
        }

"""
Signal Evaluator — swing event + current position → decisions.

Pure with respect to the position: it only reads it. The caller (backtester
or live session) applies the returned decisions through a PositionBook.

Per event:
  flat  → maybe OPEN
  open  → first of LIQUIDATION > STOP > TARGET > SIGNAL_REVERSAL closes;
          otherwise maybe ADD, then maybe TRAIL (against the post-add average)
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pyramid_trader.services.pyramid.confluence import score_confluence
from pyramid_trader.services.pyramid.models import (
    Action,
    ConfluenceResult,
    Decision,
    ExitReason,
    PositionSide,
    PyramidConfig,
    SwingEvent,
)
from pyramid_trader.services.pyramid.position import PyramidPosition
from pyramid_trader.services.pyramid.risk import (
    initial_stop_price,
    liquidation_distance,
    liquidation_price,
    safe_position_size,
    stop_clears_liquidation,
)

logger = logging.getLogger(__name__)

MIN_FAVORABLE_MOVE_TO_ADD = 0.005   # price ≥ 0.5% in favour of avg entry
MIN_PROFIT_TO_TRAIL = 0.005         # trail once > 0.5% in profit
MAX_ADD_CAPITAL_SHARE = 0.20        # one add never commits > 20% of capital
ENTRY_CAPITAL_RISK_MULTIPLE = 2     # need 2× the fixed risk amount to enter


@dataclass
class EvaluationResult:
    confluence: ConfluenceResult
    decisions: List[Decision] = field(default_factory=list)
    note: str = ""

    @property
    def close_decision(self) -> Optional[Decision]:
        for d in self.decisions:
            if d.action == Action.CLOSE:
                return d
        return None


class SignalEvaluator:
    """Turns confluence-scored swing events into pyramid decisions."""

    def __init__(self, config: PyramidConfig, starting_capital: float):
        self.config = config
        self.starting_capital = starting_capital
        # Sizing is fixed off starting capital so compounding cannot blow up size
        self.fixed_risk_amount = starting_capital * (config.base_risk_percent / 100)

    def evaluate(
        self,
        event: SwingEvent,
        position: Optional[PyramidPosition],
        capital: float,
        allow_entry: bool = True,
    ) -> EvaluationResult:
        confluence = score_confluence(event.features)
        result = EvaluationResult(confluence)

        if not event.is_valid:
            result.note = "invalid price"
            return result

        if position is None:
            if not allow_entry:
                result.note = "entries blocked"
                return result
            opening = self._entry_decision(event, confluence, capital)
            if opening is not None:
                result.decisions.append(opening)
            else:
                result.note = "no entry"
            return result

        exit_decision = self._exit_decision(event, confluence, position)
        if exit_decision is not None:
            result.decisions.append(exit_decision)
            return result

        add = self._add_decision(event, confluence, position, capital)
        if add is not None:
            result.decisions.append(add)

        trail = self._trail_decision(event, confluence, position, add)
        if trail is not None:
            result.decisions.append(trail)
        return result

    # ── Entry ───────────────────────────────────────────────────────────

    def _entry_decision(self, event: SwingEvent, confluence: ConfluenceResult,
                        capital: float) -> Optional[Decision]:
        cfg = self.config
        if confluence.score < cfg.min_confluence_to_enter:
            return None
        if capital < self.fixed_risk_amount * ENTRY_CAPITAL_RISK_MULTIPLE:
            logger.debug(f"Entry declined: capital {capital:.2f} below 2× risk amount")
            return None

        side = PositionSide.for_swing(event.side)
        price = event.price

        if self._funding_blocks(side, event):
            logger.debug(f"Entry declined: funding {event.features.funding_rate} against {side.value}")
            return None

        liq = liquidation_price(side, price, cfg.max_leverage)
        if liquidation_distance(side, price, liq) <= cfg.liquidation_buffer / 100:
            logger.debug(f"Entry declined: liquidation {liq:.4f} too close to {price:.4f}")
            return None

        sizing = safe_position_size(capital, price, cfg.max_leverage,
                                    cfg.base_risk_percent, cfg.initial_stop_percent)
        margin = min(self.fixed_risk_amount, sizing.margin)
        if margin <= 0:
            return None

        return Decision(
            action=Action.OPEN,
            side=side,
            price=price,
            timestamp=event.open_time,
            margin=margin,
            size=margin * cfg.max_leverage / price,
            stop_price=initial_stop_price(side, price, liq, cfg.initial_stop_percent),
            confluence=confluence,
        )

    def _funding_blocks(self, side: PositionSide, event: SwingEvent) -> bool:
        rate = event.features.funding_rate
        if rate is None or abs(rate) <= self.config.funding_rate_threshold:
            return False
        # positive funding: longs pay shorts
        return (rate > 0) == (side == PositionSide.LONG)

    # ── Exit ────────────────────────────────────────────────────────────

    def _exit_decision(self, event: SwingEvent, confluence: ConfluenceResult,
                       position: PyramidPosition) -> Optional[Decision]:
        cfg = self.config
        price = event.price
        exit_price = price

        if position.liquidation_hit(price) and not position.stop_hit(price):
            # unreachable while the stop clears liquidation
            reason = ExitReason.LIQUIDATION
            exit_price = position.liquidation_price
        elif position.stop_hit(price):
            reason = ExitReason.STOP
        elif position.price_move(price) * 100 >= cfg.take_profit_percent:
            reason = ExitReason.TARGET
        elif self._is_reversal(event, confluence, position):
            reason = ExitReason.SIGNAL_REVERSAL
        else:
            return None

        return Decision(
            action=Action.CLOSE,
            side=position.side,
            price=exit_price,
            timestamp=event.open_time,
            margin=position.total_margin,
            size=position.total_size,
            exit_reason=reason,
            confluence=confluence,
        )

    def _is_reversal(self, event: SwingEvent, confluence: ConfluenceResult,
                     position: PyramidPosition) -> bool:
        if confluence.score < self.config.min_confluence_to_enter:
            return False
        return PositionSide.for_swing(event.side) != position.side

    # ── Pyramid add ─────────────────────────────────────────────────────

    def _add_decision(self, event: SwingEvent, confluence: ConfluenceResult,
                      position: PyramidPosition, capital: float) -> Optional[Decision]:
        cfg = self.config
        if not position.has_capacity or confluence.score < cfg.min_confluence_to_add:
            return None

        slot = position.level_count
        if confluence.score < cfg.threshold_for(slot):
            return None
        if position.price_move(event.price) < MIN_FAVORABLE_MOVE_TO_ADD:
            return None
        if capital <= self.fixed_risk_amount:
            return None

        add_margin = self.fixed_risk_amount * cfg.multiplier_for(slot)
        if add_margin > capital * MAX_ADD_CAPITAL_SHARE:
            logger.debug(f"Add declined: margin {add_margin:.2f} > 20% of capital {capital:.2f}")
            return None

        _, liq, stop = position.project_add(event.price, add_margin, cfg.trailing_stop_percent)
        if not stop_clears_liquidation(position.side, stop, liq):
            logger.debug(f"Add declined: stop {stop:.4f} would not clear liquidation {liq:.4f}")
            return None

        return Decision(
            action=Action.ADD,
            side=position.side,
            price=event.price,
            timestamp=event.open_time,
            margin=add_margin,
            size=add_margin * cfg.max_leverage / event.price,
            confluence=confluence,
        )

    # ── Trailing stop ───────────────────────────────────────────────────

    def _trail_decision(self, event: SwingEvent, confluence: ConfluenceResult,
                        position: PyramidPosition,
                        add: Optional[Decision]) -> Optional[Decision]:
        cfg = self.config
        price = event.price
        avg_entry, stop = position.avg_entry_price, position.current_stop_price

        if add is not None:
            # judge against the position as it will be once the add lands
            avg_entry, _, stop = position.project_add(add.price, add.margin,
                                                      cfg.trailing_stop_percent)

        if position.side == PositionSide.LONG:
            if price <= avg_entry * (1 + MIN_PROFIT_TO_TRAIL):
                return None
            new_stop = price * (1 - cfg.trailing_stop_percent / 100)
            if new_stop <= stop:
                return None
        else:
            if price >= avg_entry * (1 - MIN_PROFIT_TO_TRAIL):
                return None
            new_stop = price * (1 + cfg.trailing_stop_percent / 100)
            if new_stop >= stop:
                return None

        return Decision(
            action=Action.TRAIL,
            side=position.side,
            price=price,
            timestamp=event.open_time,
            stop_price=new_stop,
            confluence=confluence,
        )

"""
PaperExecutor — Simulated execution.
====================================
Every decision fills immediately at its own price. Failures can be queued
for specific actions so callers can exercise the rejected-order path.
"""
from __future__ import annotations

import itertools
import logging
from collections import deque
from typing import Deque, List, Optional

from pyramid_trader.services.execution.exchange_adapter import ExecutionResult, TradeExecutor
from pyramid_trader.services.pyramid.models import Action, Decision

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 1000


class PaperExecutor(TradeExecutor):
    """No real exchange interaction. Keeps the most recent fills only."""

    def __init__(self, fail_actions: Optional[List[Action]] = None,
                 history_size: int = DEFAULT_HISTORY_SIZE):
        self._ids = itertools.count(1)
        self._fail_actions: List[Action] = list(fail_actions or [])
        self.executed: Deque[Decision] = deque(maxlen=history_size)

    def fail_next(self, action: Action) -> None:
        """Make the next execution of *action* report failure."""
        self._fail_actions.append(action)

    async def execute(self, symbol: str, decision: Decision) -> ExecutionResult:
        if decision.action in self._fail_actions:
            self._fail_actions.remove(decision.action)
            return ExecutionResult(
                success=False,
                error=f"paper {decision.action.value} rejected for {symbol}",
            )

        order_id = f"paper-{next(self._ids)}"
        self.executed.append(decision)
        logger.debug(f"{symbol}: paper {decision.action.value} filled @ {decision.price:.4f} ({order_id})")
        return ExecutionResult(success=True, fill_price=decision.price, order_id=order_id)

    @property
    def mode(self) -> str:
        return "paper"

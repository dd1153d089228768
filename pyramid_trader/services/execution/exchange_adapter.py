"""
TradeExecutor — Abstract interface for order execution.
=======================================================
Strategy Pattern: the LiveTradingSession hands every decision the evaluator
produces to an executor before the position state machine is mutated.
Concrete implementations:

  • PaperExecutor  — fills at the decision price, no exchange interaction

The session computes sizing, stops and exits; the executor only *executes*
the order and reports back. A failed execution leaves the position untouched.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from pyramid_trader.services.pyramid.models import Decision


# ── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ExecutionResult:
    """Standardised result returned by every executor."""
    success: bool
    fill_price: float = 0.0
    order_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "fill_price": self.fill_price,
            "order_id": self.order_id,
            "error": self.error,
        }


# ── Abstract Base Class ─────────────────────────────────────────────────────


class TradeExecutor(ABC):
    """Interface every execution backend must implement."""

    @abstractmethod
    async def execute(self, symbol: str, decision: Decision) -> ExecutionResult:
        """Place the order a decision implies (open, add, stop move, close)."""
        ...

    @property
    @abstractmethod
    def mode(self) -> str:
        """Return ``'paper'``, ``'testnet'``, or ``'live'``."""
        ...

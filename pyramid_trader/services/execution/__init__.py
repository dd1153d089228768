"""Execution Package — Trade executors the live session delegates orders to."""
from __future__ import annotations

__all__ = ["TradeExecutor", "ExecutionResult", "PaperExecutor"]

from pyramid_trader.services.execution.exchange_adapter import ExecutionResult, TradeExecutor
from pyramid_trader.services.execution.paper_adapter import PaperExecutor

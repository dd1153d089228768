"""
Pyramid Package — confluence-scored pyramiding position engine.

External code can do:
    from pyramid_trader.services.pyramid import SignalEvaluator, PositionBook, score_confluence, ...
"""
from pyramid_trader.services.pyramid.models import (
    Action,
    ClosedPyramidTrade,
    ConfluenceResult,
    Decision,
    ExitReason,
    FeatureSnapshot,
    PositionSide,
    PyramidConfig,
    PyramidLevel,
    SwingEvent,
    SwingSide,
)
from pyramid_trader.services.pyramid.confluence import FACTOR_FAMILIES, score_confluence
from pyramid_trader.services.pyramid.risk import (
    PositionSize,
    initial_stop_price,
    liquidation_price,
    safe_position_size,
)
from pyramid_trader.services.pyramid.position import (
    PositionBook,
    PositionContractError,
    PositionInvariantError,
    PyramidPosition,
)
from pyramid_trader.services.pyramid.evaluator import EvaluationResult, SignalEvaluator

__all__ = [
    "Action",
    "ClosedPyramidTrade",
    "ConfluenceResult",
    "Decision",
    "ExitReason",
    "FeatureSnapshot",
    "PositionSide",
    "PyramidConfig",
    "PyramidLevel",
    "SwingEvent",
    "SwingSide",
    "FACTOR_FAMILIES",
    "score_confluence",
    "PositionSize",
    "initial_stop_price",
    "liquidation_price",
    "safe_position_size",
    "PositionBook",
    "PositionContractError",
    "PositionInvariantError",
    "PyramidPosition",
    "EvaluationResult",
    "SignalEvaluator",
]

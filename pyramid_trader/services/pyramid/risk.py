"""
Risk / liquidation math for leveraged perpetual positions.

Pure functions only. Degenerate inputs fall back to 0.0 rather than raising,
matching how the position sizing helpers have always treated them.
"""
import math
from dataclasses import dataclass

from pyramid_trader.services.pyramid.models import MAINTENANCE_MARGIN_RATE, PositionSide

# Margin never exceeds this share of capital (10% kept as buffer)
MAX_MARGIN_CAPITAL_SHARE = 0.9

# The liquidation-derived stop sits 35% inside the liquidation price
LIQUIDATION_STOP_FACTOR = 0.35


@dataclass(frozen=True)
class PositionSize:
    size: float      # position units
    margin: float    # quote currency


def liquidation_price(
    side: PositionSide,
    avg_entry: float,
    leverage: float,
    maintenance_margin_rate: float = MAINTENANCE_MARGIN_RATE,
) -> float:
    """Price at which the exchange force-closes the position."""
    if leverage <= 0 or avg_entry <= 0:
        return 0.0
    margin_ratio = 1 / leverage
    if side == PositionSide.LONG:
        return avg_entry * (1 - margin_ratio + maintenance_margin_rate)
    return avg_entry * (1 + margin_ratio - maintenance_margin_rate)


def liquidation_distance(side: PositionSide, price: float, liq_price: float) -> float:
    """Fractional distance from price to liquidation on the losing side."""
    if price <= 0:
        return 0.0
    if side == PositionSide.LONG:
        return (price - liq_price) / price
    return (liq_price - price) / price


def safe_position_size(
    capital: float,
    entry_price: float,
    leverage: float,
    risk_percent: float,
    stop_loss_percent: float,
) -> PositionSize:
    """
    Risk-based sizing: losing stop_loss_percent of the notional costs
    risk_percent of capital.

    Margin is clamped to 90% of capital; size is recomputed from the clamp.
    Returns: PositionSize(size, margin)
    """
    if capital <= 0 or entry_price <= 0 or leverage <= 0 or stop_loss_percent <= 0:
        return PositionSize(0.0, 0.0)

    risk_amount = capital * (risk_percent / 100)
    notional = risk_amount / (stop_loss_percent / 100)
    size = notional / entry_price
    margin = notional / leverage

    max_margin = capital * MAX_MARGIN_CAPITAL_SHARE
    if margin > max_margin:
        margin = max_margin
        size = margin * leverage / entry_price

    if not (math.isfinite(size) and math.isfinite(margin)):
        return PositionSize(0.0, 0.0)
    return PositionSize(size, margin)


def initial_stop_price(
    side: PositionSide,
    entry_price: float,
    liq_price: float,
    initial_stop_percent: float,
) -> float:
    """The safer of a fixed-percent stop and a stop 35% inside liquidation.

    "Safer" means farther from liquidation: the higher of the two for a long,
    the lower for a short. Either way the stop sits on the safe side of
    the liquidation price.
    """
    if side == PositionSide.LONG:
        from_liq = liq_price * (1 + LIQUIDATION_STOP_FACTOR)
        from_entry = entry_price * (1 - initial_stop_percent / 100)
        return max(from_liq, from_entry)
    from_liq = liq_price * (1 - LIQUIDATION_STOP_FACTOR)
    from_entry = entry_price * (1 + initial_stop_percent / 100)
    return min(from_liq, from_entry)


def stop_clears_liquidation(side: PositionSide, stop_price: float, liq_price: float) -> bool:
    """True when a price path moving against the position meets the stop first."""
    if not (math.isfinite(stop_price) and math.isfinite(liq_price)):
        return False
    if side == PositionSide.LONG:
        return stop_price > liq_price
    return stop_price < liq_price

"""
Statistics Aggregator
=====================
Pure function over a closed-trade ledger and the capital trajectory.
Every reported number is finite: NaN/Infinity intermediates become 0 and
unbounded ratios are capped.
"""
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Sequence

from pyramid_trader.services.pyramid.models import ClosedPyramidTrade, ExitReason

PROFIT_FACTOR_CAP = 99.0
SHARPE_CAP = 99.0


@dataclass
class PyramidStats:
    """Aggregate results of one replay."""
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    avg_win: float
    avg_loss: float               # magnitude
    profit_factor: float
    avg_pyramid_levels: float
    max_drawdown: float           # quote currency, from peak capital
    max_drawdown_percent: float
    sharpe_ratio: float
    starting_capital: float
    final_capital: float
    compounded_roi: float
    total_funding: float
    total_fees: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    liquidations: int
    stop_exits: int
    target_exits: int
    reversal_exits: int
    emergency_exits: int = 0
    exits_by_reason: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


def _finite(value: float) -> float:
    return value if isinstance(value, (int, float)) and math.isfinite(value) else 0.0


def compute_statistics(
    trades: Sequence[ClosedPyramidTrade],
    starting_capital: float,
    final_capital: float,
    peak_capital: float,
    max_drawdown: float,
    capital_curve: Sequence[float] = (),
) -> PyramidStats:
    wins = [t for t in trades if t.pnl > 0]
    losses = [t for t in trades if t.pnl <= 0]

    total_pnl = sum(t.pnl for t in trades)
    avg_win = sum(t.pnl for t in wins) / len(wins) if wins else 0.0
    avg_loss = abs(sum(t.pnl for t in losses) / len(losses)) if losses else 0.0

    if avg_loss > 0:
        profit_factor = min(avg_win / avg_loss, PROFIT_FACTOR_CAP)
    else:
        profit_factor = PROFIT_FACTOR_CAP if wins else 0.0

    by_reason = {reason.value: 0 for reason in ExitReason}
    for t in trades:
        by_reason[t.exit_reason.value] += 1

    final_capital = final_capital if math.isfinite(final_capital) else starting_capital
    roi = ((final_capital - starting_capital) / starting_capital * 100
           if starting_capital > 0 else 0.0)
    dd_pct = max_drawdown / peak_capital * 100 if peak_capital > 0 else 0.0
    max_w, max_l = _calc_streaks(trades)

    return PyramidStats(
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=_finite(len(wins) / len(trades) * 100 if trades else 0.0),
        total_pnl=_finite(total_pnl),
        avg_win=_finite(avg_win),
        avg_loss=_finite(avg_loss),
        profit_factor=_finite(profit_factor),
        avg_pyramid_levels=_finite(
            sum(t.level_count for t in trades) / len(trades) if trades else 0.0
        ),
        max_drawdown=_finite(max_drawdown),
        max_drawdown_percent=_finite(dd_pct),
        sharpe_ratio=_finite(_calc_sharpe(capital_curve)),
        starting_capital=_finite(starting_capital),
        final_capital=_finite(final_capital),
        compounded_roi=_finite(roi),
        total_funding=_finite(sum(t.funding_paid for t in trades)),
        total_fees=_finite(sum(t.fees_paid for t in trades)),
        max_consecutive_wins=max_w,
        max_consecutive_losses=max_l,
        liquidations=by_reason[ExitReason.LIQUIDATION.value],
        stop_exits=by_reason[ExitReason.STOP.value],
        target_exits=by_reason[ExitReason.TARGET.value],
        reversal_exits=by_reason[ExitReason.SIGNAL_REVERSAL.value],
        emergency_exits=by_reason[ExitReason.EMERGENCY.value],
        exits_by_reason=by_reason,
    )


def _calc_sharpe(capital_curve: Sequence[float]) -> float:
    """Per-trade Sharpe-like ratio from the capital trajectory.

    mean(return) / std(return) × sqrt(n), capped at ±99.
    """
    returns: List[float] = []
    for prev, curr in zip(capital_curve, capital_curve[1:]):
        if prev > 0:
            returns.append((curr - prev) / prev)
    if len(returns) < 2:
        return 0.0

    mean_r = sum(returns) / len(returns)
    var = sum((r - mean_r) ** 2 for r in returns) / len(returns)
    std = math.sqrt(var) if var > 0 else 0.0001
    sharpe = mean_r / std * math.sqrt(len(returns))
    return max(min(sharpe, SHARPE_CAP), -SHARPE_CAP)


def _calc_streaks(trades: Sequence[ClosedPyramidTrade]) -> tuple:
    """Max consecutive wins and losses."""
    max_w = max_l = cur_w = cur_l = 0
    for t in trades:
        if t.pnl > 0:
            cur_w += 1
            cur_l = 0
            max_w = max(max_w, cur_w)
        else:
            cur_l += 1
            cur_w = 0
            max_l = max(max_l, cur_l)
    return max_w, max_l

"""
Run Store — persists backtest results to the run ledger.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from pyramid_trader.models.database import BacktestRun, PyramidTradeRecord
from pyramid_trader.services.backtester import BacktestResult

logger = logging.getLogger(__name__)


class RunStore:
    """Thin repository over a SQLAlchemy session. The caller owns the session."""

    def __init__(self, db: Session):
        self.db = db

    def save(self, result: BacktestResult, label: Optional[str] = None) -> BacktestRun:
        stats = result.stats
        run = BacktestRun(
            label=label,
            config=result.config.to_dict(),
            stats=stats.to_dict(),
            starting_capital=result.starting_capital,
            final_capital=result.final_capital,
            compounded_roi=stats.compounded_roi,
            total_trades=stats.total_trades,
            win_rate=stats.win_rate,
            max_drawdown_percent=stats.max_drawdown_percent,
            events_processed=result.events_processed,
            events_skipped=result.events_skipped,
            start_time=result.start_time,
            end_time=result.end_time,
        )
        for t in result.trades:
            run.trades.append(PyramidTradeRecord(
                trade_key=t.id,
                side=t.side.value,
                level_count=t.level_count,
                avg_entry_price=t.avg_entry_price,
                exit_price=t.exit_price,
                entry_time=t.entry_time,
                exit_time=t.exit_time,
                pnl=t.pnl,
                pnl_percent=t.pnl_percent,
                funding_paid=t.funding_paid,
                fees_paid=t.fees_paid,
                total_margin=t.total_margin,
                peak_confluence=t.peak_confluence,
                exit_reason=t.exit_reason.value,
            ))

        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        logger.info(f"Saved backtest run #{run.id} ({len(result.trades)} trades, "
                    f"{stats.compounded_roi:+.2f}% ROI)")
        return run

    def list_runs(self, limit: int = 50) -> List[Dict]:
        runs = (
            self.db.query(BacktestRun)
            .order_by(BacktestRun.created_at.desc(), BacktestRun.id.desc())
            .limit(limit)
            .all()
        )
        return [_run_summary(r) for r in runs]

    def get_run(self, run_id: int) -> Optional[Dict]:
        run = self.db.query(BacktestRun).filter(BacktestRun.id == run_id).first()
        if run is None:
            return None
        detail = _run_summary(run)
        detail["config"] = run.config
        detail["stats"] = run.stats
        detail["trades"] = [_trade_dict(t) for t in run.trades]
        return detail


def _run_summary(run: BacktestRun) -> Dict:
    return {
        "id": run.id,
        "label": run.label,
        "starting_capital": run.starting_capital,
        "final_capital": run.final_capital,
        "compounded_roi": run.compounded_roi,
        "total_trades": run.total_trades,
        "win_rate": run.win_rate,
        "max_drawdown_percent": run.max_drawdown_percent,
        "events_processed": run.events_processed,
        "events_skipped": run.events_skipped,
        "start_time": run.start_time,
        "end_time": run.end_time,
        "created_at": run.created_at.isoformat() if run.created_at else None,
    }


def _trade_dict(t: PyramidTradeRecord) -> Dict:
    return {
        "id": t.trade_key,
        "side": t.side,
        "levels": t.level_count,
        "avgEntryPrice": t.avg_entry_price,
        "exitPrice": t.exit_price,
        "entryTime": t.entry_time,
        "exitTime": t.exit_time,
        "pnl": t.pnl,
        "pnlPercent": t.pnl_percent,
        "fundingPaid": t.funding_paid,
        "feesPaid": t.fees_paid,
        "peakConfluence": t.peak_confluence,
        "exitReason": t.exit_reason,
        "totalMargin": t.total_margin,
    }

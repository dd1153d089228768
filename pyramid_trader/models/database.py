"""
Database models for the pyramid run ledger.
Every persisted backtest keeps its config, headline stats and closed trades.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, JSON, BigInteger
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


class BacktestRun(Base):
    """One backtest replay"""
    __tablename__ = "backtest_runs"

    id = Column(Integer, primary_key=True, index=True)
    label = Column(String, nullable=True)
    config = Column(JSON)                 # PyramidConfig.to_dict()
    stats = Column(JSON)                  # PyramidStats.to_dict()
    starting_capital = Column(Float)
    final_capital = Column(Float)
    compounded_roi = Column(Float, default=0.0)
    total_trades = Column(Integer, default=0)
    win_rate = Column(Float, default=0.0)
    max_drawdown_percent = Column(Float, default=0.0)
    events_processed = Column(Integer, default=0)
    events_skipped = Column(Integer, default=0)
    start_time = Column(BigInteger, nullable=True)   # ms epoch of first valid swing
    end_time = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    trades = relationship(
        "PyramidTradeRecord", back_populates="run",
        cascade="all, delete-orphan", order_by="PyramidTradeRecord.exit_time",
    )


class PyramidTradeRecord(Base):
    """A closed pyramid position belonging to a run"""
    __tablename__ = "pyramid_trades"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("backtest_runs.id"), index=True)
    trade_key = Column(String)            # "pyramid-{entry_time}"
    side = Column(String)                 # long | short
    level_count = Column(Integer)
    avg_entry_price = Column(Float)
    exit_price = Column(Float)
    entry_time = Column(BigInteger)
    exit_time = Column(BigInteger)
    pnl = Column(Float)
    pnl_percent = Column(Float)
    funding_paid = Column(Float, default=0.0)
    fees_paid = Column(Float, default=0.0)
    total_margin = Column(Float, default=0.0)
    peak_confluence = Column(Integer)
    exit_reason = Column(String)          # stop | target | signal_reversal | liquidation | emergency

    run = relationship("BacktestRun", back_populates="trades")

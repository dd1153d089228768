"""
Confluence Scorer — fixed, hand-tuned weight table.

Each family is an exclusive chain ordered from the most to the least extreme
reading, so one indicator can contribute at most once. Families are scored
independently and in catalogue order; the score is the sum of fired weights.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from pyramid_trader.services.pyramid.models import ConfluenceResult, FeatureSnapshot


@dataclass(frozen=True)
class ConfluenceFactor:
    label: str
    weight: int
    predicate: Callable[[FeatureSnapshot], bool]


def _below(attr: str, limit: float) -> Callable[[FeatureSnapshot], bool]:
    def check(f: FeatureSnapshot) -> bool:
        value: Optional[float] = getattr(f, attr)
        return value is not None and value < limit
    return check


def _above(attr: str, limit: float) -> Callable[[FeatureSnapshot], bool]:
    def check(f: FeatureSnapshot) -> bool:
        value: Optional[float] = getattr(f, attr)
        return value is not None and value > limit
    return check


def _is(attr: str, expected) -> Callable[[FeatureSnapshot], bool]:
    def check(f: FeatureSnapshot) -> bool:
        return getattr(f, attr) is expected if isinstance(expected, bool) \
            else getattr(f, attr) == expected
    return check


def _either(*checks: Callable[[FeatureSnapshot], bool]) -> Callable[[FeatureSnapshot], bool]:
    return lambda f: any(c(f) for c in checks)


def _macd_strong(f: FeatureSnapshot) -> bool:
    return f.macd_histogram is not None and abs(f.macd_histogram) > 50


# ── Weight table ────────────────────────────────────────────────────────────

FACTOR_FAMILIES: Tuple[Tuple[ConfluenceFactor, ...], ...] = (
    # 1. RSI extremes
    (
        ConfluenceFactor("RSI<25", 12, _below("rsi14", 25)),
        ConfluenceFactor("RSI<30", 8, _below("rsi14", 30)),
        ConfluenceFactor("RSI>75", 12, _above("rsi14", 75)),
        ConfluenceFactor("RSI>70", 8, _above("rsi14", 70)),
    ),
    # 2. Trend alignment
    (
        ConfluenceFactor("EMA6>50", 7, _is("ema6_gt_ema50", True)),
        ConfluenceFactor("EMA6<50", 7, _is("ema6_gt_ema50", False)),
    ),
    (
        ConfluenceFactor(">SMA200", 6, _is("close_gt_sma200", True)),
        ConfluenceFactor("<SMA200", 6, _is("close_gt_sma200", False)),
    ),
    # 3. MACD
    (
        ConfluenceFactor("MACD+", 8, _is("macd_bullish", True)),
        ConfluenceFactor("MACD-", 8, _is("macd_bullish", False)),
    ),
    (ConfluenceFactor("MACD_Strong", 5, _macd_strong),),
    # 4. Stochastic
    (ConfluenceFactor("Stoch<20", 9, _either(_is("stoch_oversold", True), _below("stoch_k", 20))),),
    (ConfluenceFactor("Stoch>80", 9, _either(_is("stoch_overbought", True), _above("stoch_k", 80))),),
    # 5. Bollinger Bands (outside the bands)
    (ConfluenceFactor("BB_OS", 10, _either(_is("bb_oversold", True), _below("bb_pct_b", 0))),),
    (ConfluenceFactor("BB_OB", 10, _either(_is("bb_overbought", True), _above("bb_pct_b", 1))),),
    # 6. Trend strength
    (ConfluenceFactor("ADX>25", 6, _above("adx14", 25)),),
    # 7. Session opens
    (ConfluenceFactor("US_Mkt", 4, _is("us_market_hours", True)),),
    (ConfluenceFactor("London", 4, _is("london_open", True)),),
    (ConfluenceFactor("NYSE", 5, _is("nyse_open", True)),),
    (ConfluenceFactor("Tokyo", 3, _is("tokyo_open", True)),),
    # 8. Lunar calendar
    (
        ConfluenceFactor("NewMoon", 2, _is("moon_phase", "new")),
        ConfluenceFactor("FullMoon", 2, _is("moon_phase", "full")),
    ),
)


def score_confluence(features: Optional[FeatureSnapshot]) -> ConfluenceResult:
    """Score a snapshot. Total: absent features never fire."""
    if features is None:
        return ConfluenceResult(0, ())

    score = 0
    factors: List[str] = []
    for family in FACTOR_FAMILIES:
        for factor in family:
            if factor.predicate(features):
                score += factor.weight
                factors.append(factor.label)
                break
    return ConfluenceResult(score, tuple(factors))


def max_possible_score() -> int:
    """Upper bound of the score: heaviest entry of every family."""
    return sum(max(f.weight for f in family) for family in FACTOR_FAMILIES)

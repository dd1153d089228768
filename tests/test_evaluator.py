# tests/test_evaluator.py
from dataclasses import replace

import pytest

from conftest import NO_FEATURES, STRONG_FEATURES, make_swing
from pyramid_trader.services.pyramid import (
    Action,
    ExitReason,
    PositionBook,
    PositionSide,
    SignalEvaluator,
    SwingSide,
)

LOW, HIGH = SwingSide.LOW, SwingSide.HIGH
SYMBOL = "BTCUSDT"


def opened(config, price=100.0, side=LOW, capital=10000.0):
    """Evaluator + book holding a freshly opened position."""
    evaluator = SignalEvaluator(config, starting_capital=10000.0)
    book = PositionBook(config)
    result = evaluator.evaluate(make_swing(side, price, 0, STRONG_FEATURES), None, capital)
    for d in result.decisions:
        book.apply(SYMBOL, d)
    return evaluator, book


# ── Entry ────────────────────────────────────────────────────────────────────

def test_fixed_risk_amount_comes_from_starting_capital(config):
    evaluator = SignalEvaluator(config, starting_capital=10000.0)
    assert evaluator.fixed_risk_amount == pytest.approx(30.0)


def test_swing_low_with_confluence_opens_long(config):
    evaluator = SignalEvaluator(config, 10000.0)
    result = evaluator.evaluate(make_swing(LOW, 100.0, 0, STRONG_FEATURES), None, 10000.0)

    assert len(result.decisions) == 1
    d = result.decisions[0]
    assert d.action == Action.OPEN
    assert d.side == PositionSide.LONG
    assert d.margin == pytest.approx(30.0)
    assert d.size == pytest.approx(30.0 * 3 / 100.0)
    assert d.stop_price == pytest.approx(99.2)
    assert result.confluence.score == 23


def test_swing_high_opens_short(short_config):
    evaluator = SignalEvaluator(short_config, 10000.0)
    result = evaluator.evaluate(make_swing(HIGH, 100.0, 0, STRONG_FEATURES), None, 10000.0)
    d = result.decisions[0]
    assert d.side == PositionSide.SHORT
    assert d.stop_price == pytest.approx(100.8)


def test_low_confluence_does_not_open(config):
    evaluator = SignalEvaluator(config, 10000.0)
    result = evaluator.evaluate(make_swing(LOW, 100.0, 0, {"moon_phase": "new"}), None, 10000.0)
    assert result.decisions == []
    assert result.confluence.score == 2


def test_entry_declined_without_twice_the_risk_amount(config):
    evaluator = SignalEvaluator(config, 10000.0)
    swing = make_swing(LOW, 100.0, 0, STRONG_FEATURES)
    assert evaluator.evaluate(swing, None, 59.0).decisions == []
    assert evaluator.evaluate(swing, None, 60.0).decisions[0].action == Action.OPEN


def test_entry_margin_capped_by_safe_sizing(config):
    evaluator = SignalEvaluator(config, 10000.0)
    result = evaluator.evaluate(make_swing(LOW, 100.0, 0, STRONG_FEATURES), None, 61.0)
    d = result.decisions[0]
    # 61 * 0.3% / 0.8% notional / 3x leverage
    assert d.margin == pytest.approx(61 * 0.003 / 0.008 / 3)


def test_entries_blocked_flag(config):
    evaluator = SignalEvaluator(config, 10000.0)
    result = evaluator.evaluate(make_swing(LOW, 100.0, 0, STRONG_FEATURES), None, 10000.0,
                                allow_entry=False)
    assert result.decisions == []
    assert result.note == "entries blocked"


def test_adverse_funding_blocks_entry(config):
    evaluator = SignalEvaluator(config, 10000.0)
    features = dict(STRONG_FEATURES, funding_rate=0.001)
    assert evaluator.evaluate(make_swing(LOW, 100.0, 0, features), None, 10000.0).decisions == []

    mild = dict(STRONG_FEATURES, funding_rate=0.0004)
    assert evaluator.evaluate(make_swing(LOW, 100.0, 0, mild), None, 10000.0).decisions


def test_favourable_funding_allows_entry(short_config):
    evaluator = SignalEvaluator(short_config, 10000.0)
    features = dict(STRONG_FEATURES, funding_rate=0.001)
    result = evaluator.evaluate(make_swing(HIGH, 100.0, 0, features), None, 10000.0)
    assert result.decisions[0].side == PositionSide.SHORT


def test_liquidation_too_close_blocks_entry(config):
    tight = replace(config, max_leverage=125, liquidation_buffer=0.5)
    evaluator = SignalEvaluator(tight, 10000.0)
    assert evaluator.evaluate(make_swing(LOW, 100.0, 0, STRONG_FEATURES), None, 10000.0).decisions == []


def test_invalid_price_yields_nothing(config):
    evaluator = SignalEvaluator(config, 10000.0)
    result = evaluator.evaluate(make_swing(LOW, 0, 0, STRONG_FEATURES), None, 10000.0)
    assert result.decisions == []
    assert result.note == "invalid price"


# ── Exits ────────────────────────────────────────────────────────────────────

def test_stop_hit_closes(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(HIGH, 99.0, 1, NO_FEATURES), book.get(SYMBOL), 10000.0)
    close = result.close_decision
    assert close.exit_reason == ExitReason.STOP
    assert close.price == 99.0


def test_price_through_liquidation_still_reports_stop(config):
    evaluator, book = opened(config)
    pos = book.get(SYMBOL)
    result = evaluator.evaluate(make_swing(HIGH, pos.liquidation_price * 0.9, 1), pos, 10000.0)
    assert result.close_decision.exit_reason == ExitReason.STOP


def test_take_profit_closes(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(HIGH, 108.5, 1, NO_FEATURES), book.get(SYMBOL), 10000.0)
    assert result.close_decision.exit_reason == ExitReason.TARGET


def test_opposing_swing_with_confluence_reverses(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(HIGH, 101.0, 1, STRONG_FEATURES), book.get(SYMBOL), 10000.0)
    assert result.close_decision.exit_reason == ExitReason.SIGNAL_REVERSAL
    assert len(result.decisions) == 1


def test_stop_takes_priority_over_reversal(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(HIGH, 99.0, 1, STRONG_FEATURES), book.get(SYMBOL), 10000.0)
    assert result.close_decision.exit_reason == ExitReason.STOP


# ── Adds and trailing ────────────────────────────────────────────────────────

def test_add_on_favourable_move_with_confluence(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(LOW, 102.0, 4, STRONG_FEATURES), book.get(SYMBOL), 10000.0)
    add = result.decisions[0]
    assert add.action == Action.ADD
    assert add.margin == pytest.approx(30.0 * 0.75)
    assert add.size == pytest.approx(22.5 * 3 / 102.0)


def test_no_add_below_minimum_move(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(LOW, 100.3, 4, STRONG_FEATURES), book.get(SYMBOL), 10000.0)
    assert all(d.action != Action.ADD for d in result.decisions)


def test_no_add_at_level_cap(config):
    capped = replace(config, max_pyramid_levels=1)
    evaluator, book = opened(capped)
    result = evaluator.evaluate(make_swing(LOW, 102.0, 4, STRONG_FEATURES), book.get(SYMBOL), 10000.0)
    assert all(d.action != Action.ADD for d in result.decisions)


def test_add_never_commits_more_than_a_fifth_of_capital(config):
    evaluator, book = opened(config)
    # 22.5 add margin against 100 capital is 22.5%
    result = evaluator.evaluate(make_swing(LOW, 102.0, 4, STRONG_FEATURES), book.get(SYMBOL), 100.0)
    assert all(d.action != Action.ADD for d in result.decisions)


def test_add_declined_when_new_average_overtakes_stop(config):
    wide = replace(config, max_leverage=1.5, trailing_stop_percent=90.0,
                   take_profit_percent=1000.0)
    evaluator, book = opened(wide)
    pos = book.get(SYMBOL)
    # a 22.5 margin add at 600 drags liquidation up to ~106, past the 99.2 stop
    _, liq, stop = pos.project_add(600.0, 22.5, wide.trailing_stop_percent)
    assert liq > stop

    result = evaluator.evaluate(make_swing(LOW, 600.0, 4, STRONG_FEATURES), pos, 10000.0)
    assert all(d.action != Action.ADD for d in result.decisions)
    for d in result.decisions:
        book.apply(SYMBOL, d)
    assert book.get(SYMBOL).level_count == 1


def test_add_then_trail_uses_post_add_average(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(LOW, 102.0, 4, STRONG_FEATURES), book.get(SYMBOL), 10000.0)
    # the add already pulls the stop to 102 * 0.995, so no separate trail
    assert [d.action for d in result.decisions] == [Action.ADD]
    for d in result.decisions:
        book.apply(SYMBOL, d)

    result = evaluator.evaluate(make_swing(LOW, 104.0, 8, {"moon_phase": "new"}), book.get(SYMBOL), 10000.0)
    assert [d.action for d in result.decisions] == [Action.TRAIL]
    assert result.decisions[0].stop_price == pytest.approx(104 * 0.995)


def test_trail_when_in_profit(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(HIGH, 101.0, 1, NO_FEATURES), book.get(SYMBOL), 10000.0)
    assert [d.action for d in result.decisions] == [Action.TRAIL]
    assert result.decisions[0].stop_price == pytest.approx(101 * 0.995)


def test_no_trail_below_profit_buffer(config):
    evaluator, book = opened(config)
    result = evaluator.evaluate(make_swing(HIGH, 100.4, 1, NO_FEATURES), book.get(SYMBOL), 10000.0)
    assert result.decisions == []


def test_evaluate_does_not_mutate_position(config):
    evaluator, book = opened(config)
    pos = book.get(SYMBOL)
    before = pos.to_dict()
    evaluator.evaluate(make_swing(LOW, 102.0, 4, STRONG_FEATURES), pos, 10000.0)
    assert pos.to_dict() == before

# tests/test_backtester.py
import random
from dataclasses import replace

import pytest

from conftest import NO_FEATURES, STRONG_FEATURES, make_swing
from pyramid_trader.services.backtester import CapitalLedger, PyramidBacktester
from pyramid_trader.services.pyramid import ExitReason, SwingSide

LOW, HIGH = SwingSide.LOW, SwingSide.HIGH


def pyramid_then_target():
    return [
        make_swing(LOW, 100.0, 0, STRONG_FEATURES),
        make_swing(LOW, 102.0, 4, STRONG_FEATURES),
        make_swing(HIGH, 110.0, 12, NO_FEATURES),
    ]


def test_long_opened_then_held_through_weak_opposing_swing(config):
    swings = [
        make_swing(LOW, 100.0, 0, STRONG_FEATURES),
        make_swing(HIGH, 101.0, 4, {"moon_phase": "full"}),
    ]
    result = PyramidBacktester().run(swings, config, 10000.0)

    assert result.trades == []
    pos = result.open_position
    assert pos is not None
    assert pos["side"] == "long"
    assert len(pos["levels"]) == 1
    assert pos["currentStop"] >= 99.2
    assert result.trailing_stops_moved == 1
    assert result.final_capital == 10000.0


def test_fixed_risk_sizing_and_add_cap(config):
    swings = pyramid_then_target()[:2]
    result = PyramidBacktester().run(swings, config, 10000.0)

    margins = [lv["margin"] for lv in result.open_position["levels"]]
    assert margins[0] <= 30.0 + 1e-9
    assert margins[1] == pytest.approx(30.0 * 0.75)
    assert all(m <= 0.2 * 10000.0 for m in margins[1:])
    assert result.adds == 1


def test_pyramid_closes_at_target(config):
    result = PyramidBacktester().run(pyramid_then_target(), config, 10000.0)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason == ExitReason.TARGET
    assert trade.level_count == 2
    assert trade.total_margin == pytest.approx(52.5)
    assert trade.pnl > 0
    assert result.final_capital == pytest.approx(10000.0 + trade.pnl)
    assert result.capital_curve == [10000.0, result.final_capital]
    assert result.open_position is None
    assert result.stats.target_exits == 1
    assert result.stats.avg_pyramid_levels == 2


def test_add_that_would_breach_liquidation_is_skipped(config):
    wide = replace(config, max_leverage=1.5, trailing_stop_percent=90.0,
                   take_profit_percent=1000.0)
    swings = [
        make_swing(LOW, 100.0, 0, STRONG_FEATURES),
        make_swing(LOW, 600.0, 4, STRONG_FEATURES),
    ]
    result = PyramidBacktester().run(swings, wide, 10000.0)

    assert result.adds == 0
    assert result.trades == []
    assert len(result.open_position["levels"]) == 1
    assert result.open_position["currentStop"] > result.open_position["liquidationPrice"]


def test_stop_out_loses(config):
    swings = [
        make_swing(LOW, 100.0, 0, STRONG_FEATURES),
        make_swing(HIGH, 99.0, 2, NO_FEATURES),
    ]
    result = PyramidBacktester().run(swings, config, 10000.0)
    trade = result.trades[0]
    assert trade.exit_reason == ExitReason.STOP
    assert trade.pnl == pytest.approx(30 * 3 * -0.01 - 30 * 0.0012)
    assert result.stats.max_drawdown == pytest.approx(-trade.pnl)


def test_zero_price_event_is_invisible(config):
    base = pyramid_then_target()
    with_bad = base[:1] + [make_swing(LOW, 0, 2, STRONG_FEATURES)] + base[1:]

    clean = PyramidBacktester().run(base, config, 10000.0)
    noisy = PyramidBacktester().run(with_bad, config, 10000.0)

    assert noisy.trades == clean.trades
    assert noisy.final_capital == clean.final_capital
    assert noisy.capital_curve == clean.capital_curve
    assert noisy.events_skipped == 1
    assert noisy.events_processed == clean.events_processed


@pytest.mark.parametrize("bad_price", [float("nan"), float("inf"), -5.0])
def test_non_finite_and_negative_prices_are_skipped(config, bad_price):
    swings = pyramid_then_target()
    swings.insert(1, make_swing(HIGH, bad_price, 1, STRONG_FEATURES))
    result = PyramidBacktester().run(swings, config, 10000.0)
    assert result.events_skipped == 1
    assert len(result.trades) == 1


def test_unsorted_input_is_replayed_in_time_order(config):
    swings = pyramid_then_target()
    shuffled = list(swings)
    random.Random(7).shuffle(shuffled)

    ordered = PyramidBacktester().run(swings, config, 10000.0)
    replayed = PyramidBacktester().run(shuffled, config, 10000.0)
    assert replayed.trades == ordered.trades
    assert replayed.start_time == swings[0].open_time
    assert replayed.end_time == swings[-1].open_time


def test_replay_is_deterministic(config):
    first = PyramidBacktester().run(pyramid_then_target(), config, 10000.0)
    second = PyramidBacktester().run(pyramid_then_target(), config, 10000.0)
    assert first.to_dict() == second.to_dict()


def test_many_round_trips_keep_capital_and_pnl_bounded(config):
    rng = random.Random(42)
    swings = []
    price = 100.0
    for i in range(400):
        price = max(1.0, price * (1 + rng.uniform(-0.04, 0.04)))
        side = LOW if i % 2 == 0 else HIGH
        features = STRONG_FEATURES if rng.random() < 0.6 else NO_FEATURES
        swings.append(make_swing(side, price, i * 4, features))

    result = PyramidBacktester().run(swings, config, 10000.0)

    assert result.final_capital >= 0
    assert all(c >= 0 for c in result.capital_curve)
    for t in result.trades:
        assert -t.total_margin - 1e-9 <= t.pnl <= t.total_margin * 50 + 1e-9
    assert result.stats.liquidations == 0


def test_default_leverage_still_never_liquidates(config):
    wild = replace(config, max_leverage=88)
    swings = [make_swing(LOW if i % 2 else HIGH, 100 + (i % 7) - 3, i, STRONG_FEATURES)
              for i in range(50)]
    result = PyramidBacktester().run(swings, wild, 10000.0)
    assert result.stats.liquidations == 0


def test_empty_input(config):
    result = PyramidBacktester().run([], config, 10000.0)
    assert result.trades == []
    assert result.stats.total_trades == 0
    assert result.stats.compounded_roi == 0
    assert result.start_time is None


def test_invalid_config_or_capital_raises(config):
    with pytest.raises(ValueError):
        PyramidBacktester().run([], replace(config, max_leverage=0.5), 10000.0)
    with pytest.raises(ValueError):
        PyramidBacktester().run([], config, 0)


def test_capital_ledger_never_goes_negative():
    ledger = CapitalLedger.starting_with(100.0)
    ledger.record_close(50.0)
    ledger.record_close(-500.0)
    assert ledger.capital == 0.0
    assert ledger.peak_capital == 150.0
    assert ledger.max_drawdown == 150.0
    assert ledger.curve == [100.0, 150.0, 0.0]

#!/usr/bin/env python3
"""
Backtest CLI — replay a swing file through the pyramid engine locally.

Usage:
  python3 backtest_cli.py swings.json                     # default config
  python3 backtest_cli.py swings.jsonl -l 3 10 25 88      # compare leverages
  python3 backtest_cli.py swings.json -b 1000 --trades    # $1000, list trades
  python3 backtest_cli.py swings.json --set take_profit_percent=5 --set max_pyramid_levels=3
  python3 backtest_cli.py swings.json --save "btc 4h"     # persist to the run ledger

The swing file is either a JSON array (or {"swings": [...]}) or JSON Lines,
one swing per line, in the shape SwingEvent.from_dict accepts.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from pyramid_trader.config import DEFAULT_STARTING_CAPITAL, load_pyramid_config
from pyramid_trader.services.backtester import BacktestResult, PyramidBacktester
from pyramid_trader.services.pyramid import SwingEvent


def load_swings(path: Path) -> list:
    """Read swings from a JSON array / object or a JSON Lines file."""
    text = path.read_text()
    stripped = text.lstrip()
    if stripped.startswith("[") or stripped.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            data = data["swings"] if "swings" in data else [data]
        if isinstance(data, list):
            return [SwingEvent.from_dict(d) for d in data]

    swings = []
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            swings.append(SwingEvent.from_dict(json.loads(line)))
        except (json.JSONDecodeError, ValueError) as e:
            raise ValueError(f"{path}:{lineno}: {e}")
    return swings


def parse_overrides(pairs: list) -> dict:
    """--set key=value pairs → config override dict (lists comma separated)."""
    overrides = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"--set expects key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        overrides[key.strip()] = value.strip()
    return overrides


def format_pct(val, width=8):
    """Format a percentage with ANSI colour."""
    s = f"{val:+.1f}%"
    if val > 0:
        return f"\033[92m{s:>{width}}\033[0m"  # green
    elif val < 0:
        return f"\033[91m{s:>{width}}\033[0m"  # red
    return f"{s:>{width}}"


def print_result(result: BacktestResult, show_trades: bool = False):
    """Print a single backtest summary block."""
    s = result.stats
    cfg = result.config
    print(f"  ┌─ Pyramid {cfg.max_leverage:g}x | {cfg.max_pyramid_levels} levels | "
          f"risk {cfg.base_risk_percent:g}%")
    print(f"  │ ROI:     {format_pct(s.compounded_roi)}  "
          f"(${result.starting_capital:.2f} → ${s.final_capital:.2f})")
    print(f"  │ PnL:     ${s.total_pnl:+.2f}  (Fees: ${s.total_fees:.2f} + Funding: ${s.total_funding:.2f})")
    print(f"  │ Trades:  {s.total_trades}  (W:{s.winning_trades} L:{s.losing_trades})  "
          f"avg depth {s.avg_pyramid_levels:.2f}")
    print(f"  │ WR: {s.win_rate:.1f}%  |  PF: {s.profit_factor:.2f}  |  Sharpe: {s.sharpe_ratio:.2f}")
    print(f"  │ Max DD:  {s.max_drawdown_percent:.1f}%  (${s.max_drawdown:.2f})")
    print(f"  │ Exits:   stop {s.stop_exits} | target {s.target_exits} | "
          f"reversal {s.reversal_exits} | liquidation {s.liquidations}")
    print(f"  │ Streaks: {s.max_consecutive_wins} wins / {s.max_consecutive_losses} losses")
    print(f"  │ Events:  {result.events_processed} processed, {result.events_skipped} skipped, "
          f"{result.adds} adds, {result.trailing_stops_moved} trail moves")
    if result.open_position:
        pos = result.open_position
        print(f"  │ Open:    {pos['side']} {len(pos['levels'])} level(s) @ {pos['avgEntryPrice']:.4f}, "
              f"stop {pos['currentStop']:.4f}")
    print(f"  └{'─' * 60}")

    if show_trades and result.trades:
        print()
        print(f"  {'#':>3}  {'Side':<5}  {'Lv':>2}  {'Entry':>12}  {'Exit':>12}  "
              f"{'PnL':>10}  {'PnL%':>8}  {'Reason':<16}")
        print(f"  {'─' * 80}")
        for i, t in enumerate(result.trades, 1):
            print(f"  {i:>3}  {t.side.value:<5}  {t.level_count:>2}  {t.avg_entry_price:>12.4f}  "
                  f"{t.exit_price:>12.4f}  {t.pnl:>+10.2f}  {format_pct(t.pnl_percent)}  "
                  f"{t.exit_reason.value:<16}")


def print_compare_table(results: list):
    """Print one row per leverage."""
    if not results:
        return
    print()
    print(f"  {'Lev':>5}  {'ROI':>8}  {'Trd':>4}  {'WR':>4}  {'PF':>5}  {'DD':>6}  "
          f"{'Depth':>5}  {'Stop':>4}  {'Tgt':>4}  {'Rev':>4}")
    print(f"  {'─' * 70}")
    for result in results:
        s = result.stats
        print(f"  {result.config.max_leverage:>4g}x  {format_pct(s.compounded_roi)}  "
              f"{s.total_trades:>4}  {s.win_rate:>3.0f}%  {s.profit_factor:>5.2f}  "
              f"{s.max_drawdown_percent:>5.1f}%  {s.avg_pyramid_levels:>5.2f}  "
              f"{s.stop_exits:>4}  {s.target_exits:>4}  {s.reversal_exits:>4}")
    print(f"  {'─' * 70}")

    best = max(results, key=lambda r: r.stats.compounded_roi)
    print(f"\n  Best: {best.config.max_leverage:g}x → {format_pct(best.stats.compounded_roi)}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Backtest CLI — confluence pyramiding on recorded swings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s swings.json                          # Default config
  %(prog)s swings.jsonl -l 3 10 88              # Compare three leverages
  %(prog)s swings.json --set initial_stop_percent=1.2 --trades
        """,
    )
    parser.add_argument("swings", type=Path, help="JSON / JSONL file of swing events")
    parser.add_argument("-l", "--leverage", nargs="+", type=float, default=None,
                        help="Leverage(s) to test (default: config value)")
    parser.add_argument("-b", "--balance", type=float, default=DEFAULT_STARTING_CAPITAL,
                        help=f"Starting capital (default: {DEFAULT_STARTING_CAPITAL:g})")
    parser.add_argument("--set", dest="overrides", action="append", default=[],
                        metavar="KEY=VALUE", help="Override a config field (repeatable)")
    parser.add_argument("--trades", action="store_true", help="List every closed trade")
    parser.add_argument("--json", action="store_true", help="Print raw JSON instead of the summary")
    parser.add_argument("--save", metavar="LABEL", default=None,
                        help="Persist the run(s) to the run ledger under LABEL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every decision")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        swings = load_swings(args.swings)
        overrides = parse_overrides(args.overrides)
        leverages = args.leverage or [None]
        configs = []
        for lev in leverages:
            cfg_overrides = dict(overrides)
            if lev is not None:
                cfg_overrides["max_leverage"] = lev
            configs.append(load_pyramid_config(cfg_overrides))
    except (OSError, ValueError) as e:
        print(f"  ❌ {e}", file=sys.stderr)
        return 2

    if not args.json:
        print(f"\n{'═' * 65}")
        print(f"  BACKTEST CLI")
        print(f"  File:      {args.swings} ({len(swings)} swings)")
        print(f"  Leverage:  {', '.join(f'{c.max_leverage:g}x' for c in configs)}")
        print(f"  Capital:   ${args.balance:.0f}")
        print(f"{'═' * 65}\n")

    backtester = PyramidBacktester()
    results = []
    for i, config in enumerate(configs, 1):
        t0 = time.time()
        try:
            result = backtester.run(swings, config, args.balance)
        except ValueError as e:
            print(f"  ❌ {e}", file=sys.stderr)
            return 2
        results.append(result)
        if not args.json:
            print(f"  [{i}/{len(configs)}] {config.max_leverage:g}x ... "
                  f"{format_pct(result.stats.compounded_roi)}  "
                  f"({result.stats.total_trades} trades, {time.time() - t0:.2f}s)")

    if args.save is not None:
        from pyramid_trader.database import SessionLocal, init_db
        from pyramid_trader.services.run_store import RunStore

        init_db()
        db = SessionLocal()
        try:
            store = RunStore(db)
            for result in results:
                run = store.save(result, label=args.save)
                if not args.json:
                    print(f"  Saved run #{run.id}")
        finally:
            db.close()

    if args.json:
        payload = [r.to_dict() for r in results]
        print(json.dumps(payload[0] if len(payload) == 1 else payload, indent=2))
        return 0

    print()
    if len(results) == 1:
        print_result(results[0], show_trades=args.trades)
    else:
        print_compare_table(results)
        if args.trades:
            for result in results:
                print()
                print_result(result, show_trades=True)
    print()
    return 0


if __name__ == "__main__":
    sys.exit(main())

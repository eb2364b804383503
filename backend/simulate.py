#!/usr/bin/env python3
"""
Headless Monte-Carlo runs of the simulator engines.

Runs the engines synchronously with a seeded random source and prints
summary tables. Useful for tuning the regime table, the blast tables and
the ascending bet win probability.
"""

import argparse
import logging
import random
from collections import Counter
from dataclasses import replace

from rich.console import Console
from rich.table import Table

from account import AccountState
from ascending_bet import AscendingBetEngine
from config import DEFAULT_CONFIG, setup_logging
from escalating_crash import EscalatingCrashEngine
from ledger import Position
from market_regimes import REGIME_TABLE, Regime, price_floor
from price_engine import initial_state, tick
from wager_base import WagerStatus

console = Console()


# ============================================================================
# PRICE ENGINE
# ============================================================================

def run_prices(ticks: int, seed: int) -> dict:
    """Tick the price engine and collect regime statistics"""
    rng = random.Random(seed)
    config = DEFAULT_CONFIG.price
    state = initial_state(config=config)

    occupancy = Counter()
    in_band = Counter()
    transitions = 0
    min_price = state.current_price
    max_price = state.current_price

    for _ in range(ticks):
        previous = state.regime
        state = tick(state, rng, None, config)
        if state.regime != previous:
            transitions += 1

        occupancy[state.regime] += 1
        if state.spec.contains(state.current_price):
            in_band[state.regime] += 1
        min_price = min(min_price, state.current_price)
        max_price = max(max_price, state.current_price)

    return {
        "occupancy": occupancy,
        "in_band": in_band,
        "transitions": transitions,
        "min_price": min_price,
        "max_price": max_price,
        "final": state,
    }


def print_prices(stats: dict, ticks: int):
    table = Table(title=f"Price Engine - {ticks:,} ticks", expand=False)
    table.add_column("Regime", style="cyan")
    table.add_column("Band", justify="right")
    table.add_column("Ticks", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("In Band", justify="right")

    for regime in Regime:
        spec = REGIME_TABLE[regime]
        count = stats["occupancy"][regime]
        in_band = stats["in_band"][regime]
        ratio = in_band / count if count else 0.0
        ratio_style = "green" if ratio >= 0.9 else "yellow"
        table.add_row(
            regime.value,
            f"${spec.price_min:,.0f} - ${spec.price_max:,.0f}",
            f"{count:,}",
            f"{count / ticks * 100:.1f}%",
            f"[{ratio_style}]{ratio * 100:.1f}%[/]" if count else "-",
        )

    console.print(table)

    floor = price_floor()
    floor_ok = stats["min_price"] >= floor
    console.print(f"Regime transitions: {stats['transitions']:,}")
    console.print(f"Price range: ${stats['min_price']:,.2f} - ${stats['max_price']:,.2f}")
    console.print(
        f"Floor ${floor:,.2f}: " + ("[green]held[/]" if floor_ok else "[red]VIOLATED[/]")
    )
    console.print(f"Final: ${stats['final'].current_price:,.2f} ({stats['final'].regime.value})")


# ============================================================================
# WAGERS
# ============================================================================

def _funded_account(stake: float, sessions: int) -> AccountState:
    return AccountState("simulate", Position(cash_balance=stake * sessions * 10))


def run_crash(sessions: int, stake: float, cashout: float, seed: int) -> dict:
    """Play crash sessions, withdrawing once the gain reaches `cashout` percent"""
    rng = random.Random(seed)
    config = replace(DEFAULT_CONFIG.crash, pre_roll_sec=0.0)
    account = _funded_account(stake, sessions)
    engine = EscalatingCrashEngine(account, config, rng)

    statuses = Counter()
    turbo = 0
    staked = 0.0
    paid = 0.0
    ticks = 0

    for _ in range(sessions):
        engine.start(stake)
        outcome = None
        while engine.is_active:
            outcome = engine.on_tick(config.tick_interval_sec)
            if engine.status == WagerStatus.RUNNING and engine.gain_percent >= cashout:
                outcome = engine.withdraw()

        if outcome is not None:
            statuses[outcome.status] += 1
            turbo += 1 if outcome.detail["turbo"] else 0
            staked += outcome.stake
            paid += outcome.payout
            ticks += outcome.detail["ticks"]
        engine.reset()

    return {
        "statuses": statuses,
        "turbo": turbo,
        "staked": staked,
        "paid": paid,
        "avg_ticks": ticks / sessions if sessions else 0.0,
    }


def run_ascending(sessions: int, stake: float, direction: str, seed: int) -> dict:
    rng = random.Random(seed)
    config = DEFAULT_CONFIG.ascending
    account = _funded_account(stake, sessions)
    engine = AscendingBetEngine(account, config, rng)

    wins = 0
    staked = 0.0
    paid = 0.0

    for _ in range(sessions):
        engine.start(stake, direction)
        outcome = None
        while engine.status == WagerStatus.RUNNING:
            outcome = engine.on_tick(config.sample_interval_sec)

        wins += 1 if outcome.is_win else 0
        staked += outcome.stake
        paid += outcome.payout

    return {"wins": wins, "staked": staked, "paid": paid}


def print_wager(title: str, sessions: int, stats: dict, rows: list[tuple[str, str]]):
    table = Table(title=title, expand=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Sessions", f"{sessions:,}")
    for name, value in rows:
        table.add_row(name, value)

    staked = stats["staked"]
    rtp = stats["paid"] / staked if staked else 0.0
    rtp_style = "green" if rtp >= 1.0 else "red"
    table.add_row("Staked", f"${staked:,.2f}")
    table.add_row("Paid", f"${stats['paid']:,.2f}")
    table.add_row("Return to player", f"[{rtp_style}]{rtp * 100:.2f}%[/]")

    console.print(table)


# ============================================================================
# MAIN
# ============================================================================

def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Monte-Carlo runs of the trading simulator engines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python simulate.py prices --ticks 100000
  python simulate.py crash --sessions 5000 --cashout 25
  python simulate.py ascending --direction down
        """
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")

    sub = parser.add_subparsers(dest="command", required=True)

    prices = sub.add_parser("prices", help="Regime occupancy and floor check")
    prices.add_argument("--ticks", type=int, default=50_000, help="Ticks to simulate")

    crash = sub.add_parser("crash", help="Escalating crash return to player")
    crash.add_argument("--sessions", type=int, default=2_000, help="Sessions to play")
    crash.add_argument("--stake", type=float, default=10.0, help="Stake per session")
    crash.add_argument("--cashout", type=float, default=20.0, help="Withdraw at this gain percent")

    ascending = sub.add_parser("ascending", help="Ascending bet return to player")
    ascending.add_argument("--sessions", type=int, default=2_000, help="Bets to place")
    ascending.add_argument("--stake", type=float, default=10.0, help="Stake per bet")
    ascending.add_argument("--direction", choices=["up", "down"], default="up")

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(log_dir=None, level=logging.WARNING)

    if args.command == "prices":
        stats = run_prices(args.ticks, args.seed)
        print_prices(stats, args.ticks)

    elif args.command == "crash":
        stats = run_crash(args.sessions, args.stake, args.cashout, args.seed)
        statuses = stats["statuses"]
        print_wager(f"Escalating Crash - cash out at {args.cashout:g}%", args.sessions, stats, [
            ("Withdrawn", f"{statuses[WagerStatus.WITHDRAWN]:,}"),
            ("Blasted", f"{statuses[WagerStatus.BLASTED]:,}"),
            ("Turbo sessions", f"{stats['turbo']:,}"),
            ("Avg ticks", f"{stats['avg_ticks']:.1f}"),
        ])

    elif args.command == "ascending":
        stats = run_ascending(args.sessions, args.stake, args.direction, args.seed)
        print_wager(f"Ascending Bet - {args.direction.upper()}", args.sessions, stats, [
            ("Wins", f"{stats['wins']:,}"),
            ("Win rate", f"{stats['wins'] / args.sessions * 100:.1f}%" if args.sessions else "-"),
        ])


if __name__ == "__main__":
    main()

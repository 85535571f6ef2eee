#!/usr/bin/env python3
"""
PEGDROP - Command Line

Usage:
    pegdrop table --rows 12 --risk medium
    pegdrop seed
    pegdrop verify SERVER_SEED CLIENT_SEED NONCE SLOT --rows 12 --bias 0
    pegdrop autoplay --bet 1 --bets 50 --balls 3 --stop-on-loss 20
    pegdrop allin --balance 5 --risk high
    pegdrop simulate --rows 16 --risk high --rounds 200000
"""

import argparse
import json
import logging
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.game_schema import AutoBetConfig, RiskLevel
from config.settings import GameConfig
from sim_engine import PlinkoSimulator
from tools.ledger import Ledger
from tools.multipliers import CLASS_COLORS, build_slots, expected_return
from tools.persistence import MemoryStore, PersistenceError, SqliteStore
from tools.physics_board import SimulatedBoard
from tools.provably_fair import new_seed_state, round_audit, verify, verify_server_seed
from tools.scheduler import VirtualScheduler
from tools.wager_session import WagerSession

console = Console()
logger = logging.getLogger("pegdrop")


def _setup_logging(verbose: bool) -> None:
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", datefmt="%H:%M:%S"))
        logger.addHandler(h)
    logger.setLevel(logging.DEBUG if verbose else GameConfig.LOG_LEVEL)


def cmd_table(args) -> int:
    slots = build_slots(args.rows, args.risk)
    table = Table(title=f"{args.rows} rows · {args.risk} risk · bias {args.bias:+d}")
    table.add_column("Slot", justify="right")
    table.add_column("Multiplier", justify="right")
    table.add_column("Class")
    for s in slots:
        color = CLASS_COLORS[s.color_class]
        table.add_row(str(s.index), f"[{color}]{s.multiplier:g}x[/]", s.color_class.value)
    console.print(table)
    rtp = expected_return(args.rows, args.risk, args.bias)
    console.print(f"Expected return: [bold]{rtp * 100:.2f}%[/]")
    return 0


def cmd_seed(args) -> int:
    seeds = new_seed_state(client_seed=args.client_seed)
    console.print(Panel(
        f"server_seed      {seeds.server_seed}\n"
        f"server_seed_hash {seeds.server_seed_hash}\n"
        f"client_seed      {seeds.client_seed}",
        title="New seed pair (keep server_seed secret until rotation)",
    ))
    return 0


def cmd_verify(args) -> int:
    slot_count = args.rows + 1
    ok = verify(args.server_seed, args.client_seed, args.nonce, slot_count, args.bias, args.slot)
    audit = round_audit(args.server_seed, args.client_seed, args.nonce, slot_count, args.bias)
    if args.json:
        console.print_json(json.dumps({**audit.to_dict(), "claimed_slot": args.slot, "verified": ok}))
    else:
        for step in audit.steps:
            console.print(f"  {step}")
        console.print(f"  computed slot {audit.slot_index}, claimed {args.slot}")
        if args.server_seed_hash:
            seed_ok = verify_server_seed(args.server_seed, args.server_seed_hash)
            console.print(f"Commitment: {'[green]MATCH[/]' if seed_ok else '[red]MISMATCH[/]'}")
            ok = ok and seed_ok
        console.print(f"Result: {'[green]VERIFIED[/]' if ok else '[red]MISMATCH[/]'}")
    return 0 if ok else 1


def _headless_session(args) -> tuple[WagerSession, VirtualScheduler]:
    sched = VirtualScheduler()
    board = SimulatedBoard(sched, width=GameConfig.BOARD_WIDTH, fall_time=GameConfig.BALL_FALL_S)
    session = None
    if args.state_db:
        try:
            session = WagerSession.load(sched, board, SqliteStore(args.state_db))
        except PersistenceError as e:
            logger.warning(f"{e}; session will not be saved")
    if session is None:
        session = WagerSession(sched, board, store=MemoryStore(),
                               ledger=Ledger(balance=args.balance))
    session.update_settings(rows=args.rows, risk=args.risk,
                            balls_at_once=args.balls, center_bias=args.bias)
    return session, sched


def _print_session(session: WagerSession) -> None:
    st = session.statistics
    table = Table(title="Session")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Balance", f"{session.balance:.2f}")
    table.add_row("Balls resolved", str(st.total_bets))
    table.add_row("Wagered", f"{st.total_wagered:.2f}")
    table.add_row("Won", f"{st.total_won:.2f}")
    table.add_row("Net profit", f"{st.net_profit:+.2f}")
    table.add_row("Biggest win", f"{st.biggest_win:+.2f}")
    table.add_row("Biggest loss", f"{st.biggest_loss:+.2f}")
    table.add_row("Win rate", f"{st.win_rate:.1f}%")
    console.print(table)
    hits = ", ".join(f"{m:g}x×{n}" for m, n in sorted(st.multiplier_hits.items()))
    console.print(f"Multiplier hits: {hits or '-'}")
    console.print(f"Commitment: {session.seed_commitment()}")


def cmd_autoplay(args) -> int:
    session, sched = _headless_session(args)
    session.set_bet(args.bet)
    session.auto_stop_listeners.append(lambda r: console.print(f"[yellow]Auto-bet stopped:[/] {r.value}"))
    config = AutoBetConfig(
        number_of_bets=args.bets or None,
        stop_on_profit=args.stop_on_profit,
        stop_on_loss=args.stop_on_loss,
        increase_on_loss=args.increase_on_loss,
        reset_on_win=args.reset_on_win,
    )
    session.start_auto_bet(config)
    sched.run_until_idle()
    _print_session(session)
    return 0


def cmd_allin(args) -> int:
    session, sched = _headless_session(args)
    session.auto_stop_listeners.append(lambda r: console.print(f"[yellow]All-in stopped:[/] {r.value}"))
    session.start_all_in()
    sched.run_until_idle()
    _print_session(session)
    return 0


def cmd_simulate(args) -> int:
    result = PlinkoSimulator().simulate(rows=args.rows, risk=args.risk, center_bias=args.bias,
                                        rounds=args.rounds, seed=args.seed)
    if args.json:
        console.print_json(json.dumps(result.to_dict()))
        return 0
    console.print(Panel(
        f"RTP measured     {result.rtp * 100:.3f}%\n"
        f"RTP theoretical  {(1 - result.house_edge_theoretical) * 100:.3f}%\n"
        f"Hit rate (>=1x)  {result.hit_rate * 100:.2f}%\n"
        f"Max multiplier   {result.max_multiplier_hit:g}x\n"
        f"95% CI (edge)    [{result.confidence_95[0]:.4f}, {result.confidence_95[1]:.4f}]",
        title=f"{args.rounds:,} rounds · {args.rows} rows · {args.risk}",
    ))
    return 0


def _add_board_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--rows", type=int, default=12, choices=range(8, 17), metavar="8-16")
    p.add_argument("--risk", type=str, default="medium", choices=[r.value for r in RiskLevel])
    p.add_argument("--bias", type=int, default=0, choices=range(-5, 6), metavar="-5..5")


def _add_session_args(p: argparse.ArgumentParser) -> None:
    _add_board_args(p)
    p.add_argument("--balance", type=float, default=GameConfig.INITIAL_BALANCE)
    p.add_argument("--balls", type=int, default=1, choices=range(1, 11), metavar="1-10")
    p.add_argument("--state-db", type=str, nargs="?", const=GameConfig.STATE_DB, default=None,
                   help="SQLite file to restore from and save to (bare flag: PEGDROP_STATE_DB)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pegdrop", description="Provably fair Plinko engine")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("table", help="Show the multiplier table")
    _add_board_args(p)
    p.set_defaults(func=cmd_table)

    p = sub.add_parser("seed", help="Generate a seed pair and commitment")
    p.add_argument("--client-seed", type=str, default=None)
    p.set_defaults(func=cmd_seed)

    p = sub.add_parser("verify", help="Verify a slot from a revealed server seed")
    p.add_argument("server_seed")
    p.add_argument("client_seed")
    p.add_argument("nonce", type=int)
    p.add_argument("slot", type=int)
    p.add_argument("--server-seed-hash", type=str, default=None)
    p.add_argument("--json", action="store_true")
    _add_board_args(p)
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("autoplay", help="Run a headless auto-bet session")
    _add_session_args(p)
    p.add_argument("--bet", type=float, default=GameConfig.DEFAULT_BET)
    p.add_argument("--bets", type=int, default=10, help="0 = until a stop condition")
    p.add_argument("--stop-on-profit", type=float, default=None)
    p.add_argument("--stop-on-loss", type=float, default=None)
    p.add_argument("--increase-on-loss", type=float, default=None, help="percent")
    p.add_argument("--reset-on-win", action="store_true")
    p.set_defaults(func=cmd_autoplay)

    p = sub.add_parser("allin", help="Bet the whole balance until it runs out")
    _add_session_args(p)
    p.set_defaults(func=cmd_allin)

    p = sub.add_parser("simulate", help="Measure RTP over many rounds")
    _add_board_args(p)
    p.add_argument("--rounds", type=int, default=100_000)
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_simulate)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    logger.debug(f"Config: {GameConfig.as_dict()}")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

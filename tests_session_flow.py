#!/usr/bin/env python3
"""
Tests for the wager session: bets, batches, loops, failsafe, persistence

Validates:
1.  A single bet debits, resolves and credits the committed slot's payout
2.  Multi-ball batches split the stake and consume nonces in drop order
3.  Rejected bets are no-ops with a reason
4.  Bet sizing clamps and quick-bet actions
5.  Settings changes are validated and refused while playing
6.  The physics landing position never changes the payout
7.  The 30s failsafe forces IDLE, burns nonces and ignores late landings
8.  Auto-bet stops on bet count, loss limit, and keeps going after a stall
9.  increase_on_loss / reset_on_win adjust the next bet
10. All-in never drives the balance negative and ends BANKRUPT
11. Seed rotation reveals the old seed and past results verify against it
12. Recent results are capped, most recent first
13. Save/load through the store; corrupt and failing stores degrade to defaults
14. Listeners receive results with their feedback tier
15. The live asyncio scheduler drives a batch end to end
16. CLI subcommands
"""

import asyncio
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.game_schema import AutoBetConfig, RiskLevel, SeedState
from config.settings import GameConfig
from tools.ledger import Ledger
from tools.multipliers import feedback_tier, get_multipliers, payout
from tools.persistence import MemoryStore, PersistenceError
from tools.physics_board import SimulatedBoard
from tools.provably_fair import commit, resolve_slot
from tools.scheduler import AsyncioScheduler, VirtualScheduler
from tools.wager_session import (
    AutoStopReason, BetRejection, SessionState, WagerSession, split_stake,
)


def _session(balance: float = 1000.0, stalled: bool = False, store=None, ledger=None):
    sched = VirtualScheduler()
    board = SimulatedBoard(sched, stalled=stalled)
    session = WagerSession(sched, board, store=store,
                           ledger=ledger or Ledger(balance=balance))
    return session, sched, board


def _losing_board(session: WagerSession) -> None:
    # 16 rows / high / full centre bias only reaches slots 5-11 (0.5x and 0.2x)
    assert session.update_settings(rows=16, risk="high", center_bias=5)


def _stops(session: WagerSession) -> list:
    reasons = []
    session.auto_stop_listeners.append(reasons.append)
    return reasons


def _by_drop_order(results):
    return sorted(results, key=lambda r: int(r.id.rsplit("-", 1)[1]))


# ============================================================
# Single bets and batches
# ============================================================

def test_single_bet_pays_committed_slot():
    store = MemoryStore()
    session, sched, board = _session(store=store)
    receipt = session.place_bet(10)
    assert receipt.accepted and receipt.ball_count == 1
    assert session.state is SessionState.PLAYING
    assert session.balance == 990

    sched.run_until_idle()
    assert session.state is SessionState.IDLE
    result = session.recent_results[0]
    assert result.slot_index == board.dropped[0][1]
    assert result.multiplier == get_multipliers(12, "medium")[result.slot_index]
    assert session.balance == round(990 + payout(10, result.multiplier), 2)
    assert session.statistics.net_profit == result.profit
    assert session.ledger.nonce == 1
    assert GameConfig.STATE_KEY in store.data


def test_split_stake_in_cents():
    assert split_stake(10, 1) == [10.0]
    assert split_stake(5, 5) == [1.0] * 5
    assert split_stake(1, 3) == [0.33, 0.33, 0.34]
    assert split_stake(0.1, 10) == [0.01] * 10


def test_multi_ball_batch_uses_consecutive_nonces_in_drop_order():
    session, sched, board = _session()
    session.update_settings(balls_at_once=5)
    receipt = session.place_bet(5)
    assert receipt.ball_count == 5

    sched.advance(0.5)
    assert len(board.dropped) == 3, "drops are staggered 0.2s apart"
    sched.run_until_idle()

    results = _by_drop_order(session.recent_results)
    assert [r.nonce for r in results] == [0, 1, 2, 3, 4]
    assert all(r.bet_amount == 1.0 for r in results)
    s = session.ledger.seeds
    for r in results:
        assert r.slot_index == resolve_slot(s.server_seed, s.client_seed, r.nonce, 13, 0)
    assert session.statistics.total_bets == 5
    assert session.statistics.total_wagered == 5.0
    assert session.ledger.nonce == 5


def test_rejections_are_no_ops():
    session, sched, _ = _session(balance=20)

    r = session.place_bet(0.05)
    assert not r.accepted and r.reason is BetRejection.BELOW_MINIMUM
    r = session.place_bet(25)
    assert not r.accepted and r.reason is BetRejection.INSUFFICIENT_BALANCE
    for amount in (float("nan"), float("inf")):
        r = session.place_bet(amount)
        assert not r.accepted and r.reason is BetRejection.INVALID_AMOUNT
    assert session.balance == 20 and session.state is SessionState.IDLE

    assert session.place_bet(10).accepted
    r = session.place_bet(5)
    assert r.reason is BetRejection.ALREADY_PLAYING
    assert session.balance == 10
    sched.run_until_idle()
    assert session.statistics.total_bets == 1


def test_bet_sizing():
    session, _, _ = _session()
    assert session.set_bet(5000) == GameConfig.MAX_BET
    assert session.set_bet(0.01) == GameConfig.MIN_BET
    assert session.set_bet(7.5) == 7.5
    session.set_bet(10)
    assert session.quick_bet("half") == 5
    assert session.quick_bet("double") == 10
    assert session.quick_bet("min") == 0.1
    assert session.quick_bet("max") == 1000
    with pytest.raises(ValueError):
        session.quick_bet("triple")


def test_settings_validated_and_locked_while_playing():
    session, sched, _ = _session()
    with pytest.raises(ValidationError):
        session.update_settings(rows=20)
    with pytest.raises(ValidationError):
        session.update_settings(ballsAtOnce=3)
    assert session.settings.rows == 12

    session.place_bet(1)
    assert session.update_settings(rows=8) is False
    assert session.change_client_seed("nope") is None
    assert session.reset() is None
    sched.run_until_idle()
    assert session.update_settings(rows=8, risk=RiskLevel.LOW)
    assert session.settings.slot_count == 9


def test_physics_position_never_changes_payout():
    class DriftingBoard(SimulatedBoard):
        def _land(self, ball_id, final_x):
            super()._land(ball_id, 0.0)

    sched = VirtualScheduler()
    board = DriftingBoard(sched)
    session = WagerSession(sched, board)
    for _ in range(5):
        session.place_bet(1)
        sched.run_until_idle()
    committed = [slot for _, slot in board.dropped]
    assert [r.slot_index for r in reversed(session.recent_results)] == committed


# ============================================================
# Failsafe
# ============================================================

def test_failsafe_forces_idle_and_burns_nonce():
    session, sched, board = _session(stalled=True)
    session.place_bet(10)

    sched.advance(29.9)
    assert session.is_playing
    assert session.outstanding_balls == 1

    sched.advance(0.2)
    assert session.state is SessionState.IDLE
    assert session.outstanding_balls == 0
    assert session.balance == 990, "a lost ball's stake is not refunded"
    assert session.ledger.nonce == 1

    late_id = board.dropped[0][0]
    assert session.landed(late_id, 400.0) is None
    assert session.statistics.total_bets == 0

    board.stalled = False
    session.place_bet(1)
    sched.run_until_idle()
    assert session.recent_results[0].nonce == 1


def test_failsafe_mid_batch_keeps_resolved_balls():
    session, sched, board = _session()
    session.update_settings(balls_at_once=3)
    session.place_bet(3)
    sched.advance(0.1)
    board.stalled = True
    sched.advance(40)
    assert not session.is_playing
    assert session.statistics.total_bets == 1
    assert session.ledger.nonce == 3


# ============================================================
# Auto-bet
# ============================================================

def test_auto_bet_stops_at_bet_count():
    session, sched, _ = _session()
    reasons = _stops(session)
    session.update_settings(balls_at_once=2)
    session.set_bet(2)
    session.start_auto_bet(AutoBetConfig(number_of_bets=3))
    assert session.auto_bet_active
    sched.run_until_idle()

    assert reasons == [AutoStopReason.BET_LIMIT]
    assert not session.auto_bet_active
    assert session.statistics.total_bets == 6
    assert session.statistics.total_wagered == 6.0


def test_auto_bet_stop_on_loss():
    session, sched, _ = _session()
    _losing_board(session)
    reasons = _stops(session)
    profits = []
    session.result_listeners.append(lambda r, tier: profits.append(r.profit))

    session.start_auto_bet(AutoBetConfig(number_of_bets=None, stop_on_loss=5))
    sched.run_until_idle()

    assert reasons == [AutoStopReason.LOSS_LIMIT]
    assert all(p < 0 for p in profits)
    net = session.statistics.net_profit
    assert net <= -5
    assert round(net - profits[-1], 2) > -5, "stopped at the first batch that crossed the limit"
    placed = session.statistics.total_bets

    sched.advance(100)
    assert session.statistics.total_bets == placed


def test_auto_bet_continues_after_failsafe():
    session, sched, board = _session(stalled=True)
    reasons = _stops(session)
    session.start_auto_bet(AutoBetConfig(number_of_bets=2))
    sched.run_until_idle()

    assert reasons == [AutoStopReason.BET_LIMIT]
    assert len(board.dropped) == 2
    assert session.balance == 998
    assert session.ledger.nonce == 2


def test_auto_bet_stops_when_balance_runs_short():
    session, sched, _ = _session(balance=3)
    _losing_board(session)
    reasons = _stops(session)
    session.set_bet(1)
    session.start_auto_bet(AutoBetConfig(number_of_bets=None))
    sched.run_until_idle()

    assert reasons == [AutoStopReason.INSUFFICIENT_BALANCE]
    assert session.balance < 1
    assert session.balance >= 0


def test_increase_on_loss_compounds():
    session, sched, _ = _session()
    _losing_board(session)
    session.start_auto_bet(AutoBetConfig(number_of_bets=3, increase_on_loss=100))
    sched.run_until_idle()

    bets = [r.bet_amount for r in reversed(session.recent_results)]
    assert bets == [1.0, 2.0, 4.0]
    assert session.statistics.total_wagered == 7.0


def _seeds_with_outcomes(wanted):
    """A seed pair whose first balls (12 rows / medium) strictly lose (False)
    or strictly win (True) in the order given."""
    mults = get_multipliers(12, "medium")
    server = "0" * 64
    for i in range(10_000):
        client = f"pick-{i}"
        hits = [mults[resolve_slot(server, client, n, 13, 0)] for n in range(len(wanted))]
        if all((m > 1) if win else (m < 1) for m, win in zip(hits, wanted)):
            return SeedState(server_seed=server, server_seed_hash=commit(server),
                             client_seed=client, nonce=0)
    raise AssertionError("no seed pair found")


def test_reset_on_win_returns_to_base_bet():
    seeds = _seeds_with_outcomes([False, True])
    session, sched, _ = _session(ledger=Ledger(balance=1000, seeds=seeds))
    session.start_auto_bet(AutoBetConfig(number_of_bets=3, increase_on_loss=100, reset_on_win=True))
    sched.run_until_idle()

    bets = [r.bet_amount for r in reversed(session.recent_results)]
    assert bets == [1.0, 2.0, 1.0]


def test_stop_auto_play_lets_batch_finish():
    session, sched, _ = _session()
    reasons = _stops(session)
    session.update_settings(balls_at_once=3)
    session.set_bet(3)
    session.start_auto_bet(AutoBetConfig(number_of_bets=None))
    session.stop_auto_play()

    assert session.is_playing
    sched.run_until_idle()
    assert reasons == [AutoStopReason.CANCELLED]
    assert session.statistics.total_bets == 3
    assert not session.is_playing


# ============================================================
# All-in
# ============================================================

def test_all_in_ends_bankrupt_without_going_negative():
    session, sched, _ = _session(balance=1.0)
    _losing_board(session)
    reasons = _stops(session)
    balances = []
    session.state_listeners.append(lambda s: balances.append(s.balance))

    session.start_all_in()
    assert session.all_in_active
    sched.run_until_idle()

    assert reasons == [AutoStopReason.BANKRUPT]
    assert not session.all_in_active
    assert session.balance < GameConfig.MIN_BET
    assert all(b >= 0 for b in balances)
    stakes = [r.bet_amount for r in reversed(session.recent_results)]
    assert stakes[0] == 1.0
    assert stakes == sorted(stakes, reverse=True)


def test_all_in_after_stall_stops_bankrupt():
    session, sched, _ = _session(balance=5, stalled=True)
    reasons = _stops(session)
    session.start_all_in()
    sched.run_until_idle()
    assert reasons == [AutoStopReason.BANKRUPT]
    assert session.balance == 0


def test_all_in_refused_on_empty_balance():
    session, _, _ = _session(balance=0.05)
    reasons = _stops(session)
    receipt = session.start_all_in()
    assert not receipt.accepted
    assert reasons == [AutoStopReason.BANKRUPT]


# ============================================================
# Seeds
# ============================================================

def test_seed_rotation_reveals_and_verifies():
    session, sched, _ = _session()
    before = session.seed_commitment()
    assert "server_seed" not in before

    session.update_settings(balls_at_once=2)
    session.place_bet(2)
    sched.run_until_idle()
    results = session.recent_results

    revealed = session.change_client_seed("my-seed")
    assert revealed.server_seed_hash == before["server_seed_hash"]
    assert commit(revealed.server_seed) == revealed.server_seed_hash
    assert revealed.final_nonce == 2

    after = session.seed_commitment()
    assert after["client_seed"] == "my-seed"
    assert after["nonce"] == 0
    assert after["server_seed_hash"] != before["server_seed_hash"]

    for r in results:
        assert WagerSession.verify_result(r, revealed.server_seed)
        assert not WagerSession.verify_result(r, revealed.server_seed[::-1])

    session.place_bet(1)
    sched.run_until_idle()
    assert session.recent_results[0].seeds.client_seed == "my-seed"
    assert session.recent_results[0].nonce == 0


def test_reset_restores_defaults():
    session, sched, _ = _session(balance=40)
    session.update_settings(rows=16)
    session.place_bet(10)
    sched.run_until_idle()
    revealed = session.reset()
    assert revealed is not None
    assert session.balance == GameConfig.INITIAL_BALANCE
    assert session.statistics.total_bets == 0
    assert session.recent_results == []
    assert session.settings.rows == 12
    assert session.current_bet == GameConfig.DEFAULT_BET


# ============================================================
# Recent results + listeners
# ============================================================

def test_recent_results_capped_most_recent_first():
    session, sched, _ = _session()
    session.update_settings(balls_at_once=10)
    for _ in range(3):
        session.place_bet(10)
        sched.run_until_idle()
    recent = session.recent_results
    assert len(recent) == GameConfig.MAX_RECENT_RESULTS
    assert session.statistics.total_bets == 30
    assert recent[0].nonce == 29
    assert recent[-1].nonce == 10


def test_listeners_receive_results_and_tiers():
    session, sched, _ = _session()
    seen, states = [], []
    session.result_listeners.append(lambda r, tier: seen.append((r, tier)))
    session.state_listeners.append(lambda s: states.append(s.state))
    session.update_settings(balls_at_once=4)
    session.place_bet(4)
    sched.run_until_idle()

    assert len(seen) == 4
    for r, tier in seen:
        assert tier is feedback_tier(r.multiplier)
    assert states[-2:] == [SessionState.PLAYING, SessionState.IDLE]


# ============================================================
# Persistence
# ============================================================

def test_save_and_load_roundtrip():
    store = MemoryStore()
    session, sched, _ = _session(store=store)
    session.update_settings(rows=10, risk="low", balls_at_once=2)
    session.place_bet(4)
    sched.run_until_idle()

    sched2 = VirtualScheduler()
    restored = WagerSession.load(sched2, SimulatedBoard(sched2), store)
    assert restored.balance == session.balance
    assert restored.settings == session.settings
    assert restored.statistics == session.statistics
    assert restored.recent_results == session.recent_results
    assert restored.seed_commitment() == session.seed_commitment()

    restored.place_bet(1)
    sched2.run_until_idle()
    assert restored.recent_results[0].nonce == 2


def test_corrupt_saved_state_starts_fresh():
    store = MemoryStore()
    store.data[GameConfig.STATE_KEY] = "{oops"
    sched = VirtualScheduler()
    session = WagerSession.load(sched, SimulatedBoard(sched), store)
    assert session.balance == GameConfig.INITIAL_BALANCE
    assert session.settings.rows == 12


class BrokenStore:
    def load(self, key):
        raise PersistenceError("disk gone")

    def save(self, key, blob):
        raise PersistenceError("disk gone")


def test_failing_store_does_not_block_play():
    sched = VirtualScheduler()
    session = WagerSession.load(sched, SimulatedBoard(sched), BrokenStore())
    assert session.balance == GameConfig.INITIAL_BALANCE
    assert session.save() is False
    session.place_bet(1)
    sched.run_until_idle()
    assert session.statistics.total_bets == 1


# ============================================================
# Live loop
# ============================================================

def test_asyncio_scheduler_drives_a_batch():
    async def play():
        sched = AsyncioScheduler()
        board = SimulatedBoard(sched, fall_time=0.01)
        session = WagerSession(sched, board)
        session.place_bet(1)
        for _ in range(200):
            if not session.is_playing:
                break
            await asyncio.sleep(0.01)
        return session

    session = asyncio.run(play())
    assert not session.is_playing
    assert session.statistics.total_bets == 1


# ============================================================
# CLI
# ============================================================

def test_cli_table_and_simulate():
    from tools.plinko_cli import main
    assert main(["table", "--rows", "12", "--risk", "medium"]) == 0
    assert main(["simulate", "--rows", "8", "--risk", "low", "--rounds", "500", "--json"]) == 0


def test_cli_verify():
    from tools.plinko_cli import main
    slot = resolve_slot("server", "client", 3, 13, 0)
    assert main(["verify", "server", "client", "3", str(slot)]) == 0
    assert main(["verify", "server", "client", "3", str((slot + 1) % 13)]) == 1
    assert main(["verify", "server", "client", "3", str(slot),
                 "--server-seed-hash", commit("other")]) == 1


def test_cli_headless_sessions(tmp_path):
    from tools.plinko_cli import main
    db = str(tmp_path / "state.db")
    assert main(["autoplay", "--bets", "3", "--balls", "2", "--state-db", db]) == 0
    assert main(["allin", "--balance", "1", "--rows", "16", "--risk", "high", "--bias", "5"]) == 0

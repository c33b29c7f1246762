import threading
import time
from dataclasses import replace

import pytest

from bingo_autoloop.checkpoint import CheckpointStore
from bingo_autoloop.draw import DrawExhaustedError, card_for
from bingo_autoloop.errors import ResourceExhaustionError
from bingo_autoloop.events import Notification, NotificationKind, parse_notification
from bingo_autoloop.lifecycle import ActionKind
from bingo_autoloop.project_constants import DEFAULT_JOIN_WINDOW_SEC

from conftest import find_seed, first_cover, make_driver, played_ledger


def _kinds(ledger):
    return [op.kind.value for op, _, _ in ledger.submissions]


def test_first_round_is_created_when_ledger_is_empty(driver, ledger):
    action = driver.tick()
    assert action.kind is ActionKind.CREATE_NEXT
    assert ledger.current == 1
    assert ledger.rounds[1]["entryFee"] == 1


def test_end_to_end_round_to_chained_round(ledger, clock, settings):
    driver = make_driver(ledger, clock, settings)
    seed = find_seed(["P1", "P2"], winning_draw=5)

    rid = ledger.create_round_direct(int(clock()), 100, 5, 1)
    ledger.join_direct(rid, "P1")
    ledger.join_direct(rid, "P2")
    ledger.auto_seed = seed

    assert driver.tick().kind is ActionKind.WAIT
    clock.advance(100)
    assert driver.tick().kind is ActionKind.REQUEST_SEED
    assert ledger.rounds[rid]["seed"] == seed

    for _ in range(40):
        clock.advance(5)
        driver.tick()
        if ledger.current == rid + 1:
            break

    r = ledger.rounds[rid]
    assert r["finalized"] is True
    assert r["drawCount"] == 5
    assert first_cover(seed, r["winner"]) == 5
    assert len(ledger.payouts(rid)) == 1
    assert ledger.current == rid + 1
    nxt = ledger.rounds[rid + 1]
    assert nxt["entryFee"] == 1
    assert nxt["joinDeadline"] - nxt["startTime"] == DEFAULT_JOIN_WINDOW_SEC
    assert _kinds(ledger) == ["requestSeed"] + ["drawNext"] * 5 + ["claimFor", "createRound"]

    # nothing left to do for the new round until it opens
    assert driver.tick().kind is ActionKind.WAIT


def test_payout_notification_chains_immediately(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 7)
    ledger.join_direct(rid, "P1")
    ledger.fulfill_seed(rid, 42)
    ledger.set_drawn(rid, card_for(42, "P1", 3, 10))
    driver.tick()  # claims
    assert ledger.rounds[rid]["finalized"]

    payout = parse_notification(ledger.payouts(rid)[0])
    action = driver.on_notification(payout)
    assert action.kind is ActionKind.CREATE_NEXT
    assert ledger.rounds[rid + 1]["entryFee"] == 7

    # a duplicate Payout never chains twice
    driver.on_notification(payout)
    assert ledger.current == rid + 1
    assert _kinds(ledger).count("createRound") == 1


def test_empty_round_chains_without_seed(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 3)
    action = driver.tick()
    assert action.kind is ActionKind.CREATE_NEXT
    assert "requestSeed" not in _kinds(ledger)
    assert ledger.rounds[rid + 1]["entryFee"] == 3


def test_exhausted_round_is_abandoned_for_a_new_one(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    ledger.join_direct(rid, "P1")
    ledger.fulfill_seed(rid, 42)
    ledger.set_drawn(rid, list(range(1, 11)))
    ledger.claimable_override = False  # ledger refuses the final claim

    action = driver.tick()
    assert action.kind is ActionKind.CLAIM
    assert not ledger.rounds[rid]["finalized"]
    assert ledger.current == rid + 1


def test_watchdog_forces_one_action_and_resets(ledger, clock, settings):
    driver = make_driver(ledger, clock, settings)
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 60, 1)
    ledger.join_direct(rid, "P1")
    ledger.fulfill_seed(rid, 42)
    ledger.draw_direct(rid)

    assert driver.tick().kind is ActionKind.WAIT  # draw interval not over
    assert driver.watchdog() is None

    clock.advance(settings.stall_threshold_s + 20)
    action = driver.watchdog()
    assert action.kind is ActionKind.DRAW_NEXT
    assert ledger.rounds[rid]["drawCount"] == 2
    assert driver.watermarks[rid].last_change_time == clock()

    assert driver.watchdog() is None
    assert _kinds(ledger) == ["drawNext"]


def test_gap_reconciliation_matches_uninterrupted_run(clock, settings):
    full = played_ledger(clock)
    gappy = played_ledger(clock)

    a = make_driver(full, clock, settings)
    for raw in full.events:
        a.on_notification(parse_notification(raw))

    b = make_driver(gappy, clock, settings)
    cut = len(gappy.events) // 2
    for raw in gappy.events[:cut]:
        b.on_notification(parse_notification(raw))
    assert b.observed_state() != a.observed_state()

    b.reconcile_gap(b.cursor)
    assert b.observed_state() == a.observed_state()
    assert full.submissions == [] and gappy.submissions == []


def test_dropped_notifications_are_backfilled(clock, settings):
    full = played_ledger(clock)
    gappy = played_ledger(clock)
    a = make_driver(full, clock, settings)
    b = make_driver(gappy, clock, settings)
    for raw in full.events:
        a.on_notification(parse_notification(raw))

    drawn = [e["cursor"] for e in gappy.events if e["kind"] == "Drawn"]
    lost = set(drawn[1:3]) | {e["cursor"] for e in gappy.events if e["kind"] == "Payout"}
    for raw in gappy.events:
        if raw["cursor"] not in lost:
            b.on_notification(parse_notification(raw))

    assert b.observed_state() == a.observed_state()
    payout = b.observed_state()["rounds"][1]["payout"]
    assert payout is not None and payout[1] == 2


def test_errors_stay_inside_one_pass(ledger, clock, driver):
    ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    ledger.fail_reads = 1
    assert driver.handle("tick") is None
    assert driver.backoff_s() == 1.0
    assert driver.handle("tick") is not None
    assert driver.backoff_s() == 0.0


def test_disputed_claim_falls_back_to_drawing(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    ledger.join_direct(rid, "P1")
    ledger.fulfill_seed(rid, 42)
    ledger.set_drawn(rid, card_for(42, "P1", 3, 10))
    ledger.claimable_override = False
    action = driver.handle("tick")
    assert action.kind is ActionKind.DRAW_NEXT
    assert _kinds(ledger) == ["drawNext"]
    assert ledger.rounds[rid]["drawCount"] == 4


def test_resource_exhaustion_reaches_the_operator(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    ledger.join_direct(rid, "P1")
    ledger.reject_next = ["insufficient funds for transfer"]
    with pytest.raises(ResourceExhaustionError):
        driver.handle("tick")


def test_restart_resumes_watermark_and_cursor(tmp_path, ledger, clock, settings):
    path = str(tmp_path / "cp.json")
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 120, 1)
    ledger.join_direct(rid, "P1")
    ledger.fulfill_seed(rid, 42)
    ledger.draw_direct(rid)

    first = make_driver(ledger, clock, settings, CheckpointStore(path))
    first.resume()
    stored = CheckpointStore(path).get(rid)
    assert stored.last_observed_draw_count == 1
    assert stored.last_checkpoint_time == clock()

    clock.advance(settings.stall_threshold_s + 20)
    second = make_driver(ledger, clock, settings, CheckpointStore(path))
    assert second.cursor == ledger.latest_cursor()
    second.resume()
    assert second.active_round_id == rid
    assert second.watermarks[rid].last_change_time == stored.last_checkpoint_time

    # the restored watermark is already stale, so the watchdog fires at once
    assert second.watchdog() is not None
    assert second.watermarks[rid].last_change_time == clock()


def test_health_check_rejects_wrong_chain(ledger, clock, settings):
    driver = make_driver(ledger, clock, replace(settings, chain_id=1))
    with pytest.raises(RuntimeError):
        driver.check_health()
    make_driver(ledger, clock, replace(settings, chain_id=8453)).check_health()


def test_run_loop_drives_until_stopped(ledger, clock, settings):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    driver = make_driver(ledger, clock, replace(settings, poll_interval_s=0.01))
    stop = threading.Event()
    worker = threading.Thread(target=driver.run, args=(stop,), daemon=True)
    worker.start()
    try:
        deadline = time.monotonic() + 5.0
        while ledger.current == rid and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        stop.set()
        worker.join(5.0)
    assert not worker.is_alive()
    assert ledger.current == rid + 1
    assert driver.cursor >= 1


def test_watchdog_replaces_interrupted_submission(ledger, clock, driver, settings):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    ledger.confirm_delay = 5
    ledger.fail_waits = 1
    assert driver.handle("tick") is None
    assert driver.pending_slots() == ["create-next"]

    clock.advance(settings.stall_threshold_s + 1)
    driver.handle("watchdog")

    sequences = {seq for op, seq, _ in ledger.submissions if op.kind.value == "createRound"}
    assert sequences == {0}
    assert ledger.current == rid + 1
    assert driver.pending_slots() == []


def test_first_round_is_not_created_twice_when_reads_lag(ledger, driver, monkeypatch):
    monkeypatch.setattr(ledger, "current_round_id", lambda: 0)
    assert driver.tick().kind is ActionKind.CREATE_NEXT
    assert driver.tick().kind is ActionKind.WAIT
    assert _kinds(ledger) == ["createRound"]
    assert ledger.current == 1


def test_hex_address_players_play_a_full_round(ledger, clock, driver):
    players = ("0x" + "00" * 19 + "a1", "0x" + "00" * 19 + "b2")
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    for p in players:
        ledger.join_direct(rid, p)
    ledger.fulfill_seed(rid, 42)

    for _ in range(20):
        clock.advance(5)
        driver.handle("tick")
        if ledger.current == rid + 1:
            break

    assert ledger.rounds[rid]["finalized"] is True
    assert ledger.rounds[rid]["winner"] in players
    assert ledger.current == rid + 1


def test_unknown_event_kind_is_skipped(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    ledger._emit("SeedRequested", rid, {})
    assert driver.handle("gap", 0) is not None
    assert driver.observed[rid].entry_fee == 1


def test_malformed_event_is_logged_not_raised(ledger, clock, driver):
    rid = ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)
    event = Notification(NotificationKind.DRAWN, rid, cursor=0, data={"number": 3})
    assert driver.handle("event", event) is not None
    assert driver.cursor == 1
    assert driver.observed[rid].draws == {}


@pytest.mark.parametrize("error", [DrawExhaustedError("all drawn"), KeyError("players"), ZeroDivisionError()])
def test_unexpected_errors_stay_inside_one_pass(ledger, clock, driver, monkeypatch, error):
    ledger.create_round_direct(int(clock()) - 200, 100, 5, 1)

    def broken(round_id):
        raise error

    monkeypatch.setattr(ledger, "players_of", broken)
    assert driver.handle("tick") is None
    monkeypatch.undo()
    assert driver.handle("tick") is not None

from __future__ import annotations

from typing import List

import pytest

from bingo_autoloop.checkpoint import CheckpointStore
from bingo_autoloop.config import Settings
from bingo_autoloop.draw import card_for, draw_sequence
from bingo_autoloop.driver import Driver
from bingo_autoloop.rpc import claim_for
from bingo_autoloop.slots import ReplaceableSubmitter

from fake_ledger import FakeClock, FakeLedger

SIGNER = "Drv1"
K = 3
N = 10


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> FakeLedger:
    return FakeLedger(clock, card_size=K, max_number=N)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ledger_url="http://ledger.test",
        signer_id=SIGNER,
        confirm_timeout_s=1.0,
        stall_threshold_s=45.0,
        first_entry_fee=1,
    )


def make_driver(ledger: FakeLedger, clock: FakeClock, settings: Settings, checkpoints=None) -> Driver:
    submitter = ReplaceableSubmitter(ledger, sender=SIGNER, confirm_timeout_s=settings.confirm_timeout_s)
    return Driver(
        ledger,
        submitter,
        checkpoints or CheckpointStore(None),
        settings,
        clock=clock,
        card_size=K,
        max_number=N,
    )


@pytest.fixture
def driver(ledger: FakeLedger, clock: FakeClock, settings: Settings) -> Driver:
    return make_driver(ledger, clock, settings)


def first_cover(seed: int, participant: str, k: int = K, n: int = N) -> int:
    """Number of draws after which `participant`'s card is covered."""
    card = set(card_for(seed, participant, k, n))
    seq = draw_sequence(seed, n, n)
    for i in range(1, n + 1):
        if card <= set(seq[:i]):
            return i
    raise AssertionError("a card is always covered once every number is drawn")


def find_seed(players: List[str], winning_draw: int) -> int:
    """A seed whose first covered card appears exactly at draw `winning_draw`."""
    for seed in range(1, 50_000):
        if min(first_cover(seed, p) for p in players) == winning_draw:
            return seed
    raise AssertionError("no seed found")


def played_ledger(clock: FakeClock) -> FakeLedger:
    """A finished round 1 followed by a scheduled round 2."""
    ledger = FakeLedger(clock, card_size=K, max_number=N)
    rid = ledger.create_round_direct(int(clock()) - 500, 100, 5, 1)
    ledger.join_direct(rid, "P1")
    ledger.join_direct(rid, "P2")
    ledger.fulfill_seed(rid, 42)
    while not any(ledger.covered(rid, p) for p in ("P1", "P2")):
        ledger.draw_direct(rid)
    winner = next(p for p in ("P1", "P2") if ledger.covered(rid, p))
    ledger._apply(claim_for(rid, winner), winner)
    ledger.create_round_direct(int(clock()) + 1_000, 100, 5, 1)
    return ledger

"""
Round lifecycle: the states a round moves through and the single next
legal action for a snapshot.

    Scheduled -> Joinable -> AwaitingSeed -> Drawing -> Resolved
                                               |
                                               +-> Exhausted (all drawn, no claim)

The ledger enforces the same rules. Submitting anything `legal_action` does
not return costs fees and gets rejected.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from .draw import find_winner, popcount
from .errors import IllegalStateError
from .project_constants import CARD_SIZE, MAX_NUMBER


class RoundState(Enum):
    SCHEDULED = "scheduled"
    JOINABLE = "joinable"
    AWAITING_SEED = "awaiting_seed"
    DRAWING = "drawing"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class ActionKind(Enum):
    REQUEST_SEED = "request-seed"
    DRAW_NEXT = "draw-next"
    CLAIM = "claim-for"
    CREATE_NEXT = "create-next"
    WAIT = "wait"


@dataclass(frozen=True)
class RoundInfo:
    round_id: int
    start_time: int
    join_deadline: int
    draw_interval: int
    entry_fee: int
    players: Tuple[str, ...]
    seed_requested: bool
    seed: int  # 0 = not delivered yet
    drawn_mask: int
    draw_count: int
    last_draw_time: int
    finalized: bool
    winner: Optional[str]
    prize_pool: int


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    round_id: int
    participant: Optional[str] = None
    reason: str = ""

    @property
    def label(self) -> str:
        if self.participant:
            return f"{self.kind.value}({self.round_id},{self.participant})"
        return f"{self.kind.value}({self.round_id})"


def _as_int(value: Any) -> int:
    # Big values (seed, mask, fees) may arrive as hex/decimal strings
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    return int(value)


def parse_round_info(round_id: int, raw: Dict[str, Any], players: Iterable[str]) -> RoundInfo:
    """Build a RoundInfo from a ledger `roundInfo` object and `playersOf` list."""
    winner = raw.get("winner") or None
    info = RoundInfo(
        round_id=int(round_id),
        start_time=_as_int(raw["startTime"]),
        join_deadline=_as_int(raw["joinDeadline"]),
        draw_interval=_as_int(raw["drawInterval"]),
        entry_fee=_as_int(raw["entryFee"]),
        players=tuple(players),
        seed_requested=bool(raw["seedRequested"]),
        seed=_as_int(raw.get("seed")),
        drawn_mask=_as_int(raw.get("drawnMask")),
        draw_count=_as_int(raw.get("drawCount")),
        last_draw_time=_as_int(raw.get("lastDrawTime")),
        finalized=bool(raw["finalized"]),
        winner=str(winner) if winner else None,
        prize_pool=_as_int(raw.get("prizePool")),
    )
    check_invariants(info)
    return info


def check_invariants(info: RoundInfo) -> None:
    rid = info.round_id
    if info.draw_count != popcount(info.drawn_mask):
        raise IllegalStateError(
            f"Round {rid}: drawCount={info.draw_count} but mask has {popcount(info.drawn_mask)} bits"
        )
    if info.seed != 0 and not info.seed_requested:
        raise IllegalStateError(f"Round {rid}: seed present without a request")
    if info.finalized and not info.winner:
        raise IllegalStateError(f"Round {rid}: finalized without a winner")
    if info.join_deadline <= info.start_time:
        raise IllegalStateError(f"Round {rid}: joinDeadline must be after startTime")
    if len(set(info.players)) != len(info.players):
        raise IllegalStateError(f"Round {rid}: duplicate participant")
    if not all(info.players):
        raise IllegalStateError(f"Round {rid}: empty participant id")


def round_state(info: RoundInfo, now: int, max_number: int = MAX_NUMBER) -> RoundState:
    if info.finalized:
        return RoundState.RESOLVED
    if info.seed != 0:
        if info.draw_count >= max_number:
            return RoundState.EXHAUSTED
        return RoundState.DRAWING
    if now < info.start_time:
        return RoundState.SCHEDULED
    if now < info.join_deadline:
        return RoundState.JOINABLE
    return RoundState.AWAITING_SEED


def legal_action(
    info: RoundInfo,
    now: int,
    card_size: int = CARD_SIZE,
    max_number: int = MAX_NUMBER,
) -> Action:
    """
    The one action that may be submitted for `info` at time `now`, or WAIT.

    A covered card is always claimed before any further draw.
    """
    rid = info.round_id
    state = round_state(info, now, max_number)

    if state is RoundState.RESOLVED:
        return Action(ActionKind.CREATE_NEXT, rid, reason="resolved")
    if state in (RoundState.SCHEDULED, RoundState.JOINABLE):
        return Action(ActionKind.WAIT, rid, reason=state.value)

    # Join window closed with nobody in it: skip the seed entirely.
    if not info.players:
        return Action(ActionKind.CREATE_NEXT, rid, reason="empty")

    if state is RoundState.AWAITING_SEED:
        if not info.seed_requested:
            return Action(ActionKind.REQUEST_SEED, rid)
        return Action(ActionKind.WAIT, rid, reason="seed pending")

    winner = find_winner(info.seed, info.players, info.drawn_mask, card_size, max_number)
    if winner is not None:
        return Action(ActionKind.CLAIM, rid, participant=winner)

    if state is RoundState.EXHAUSTED:
        return Action(ActionKind.CREATE_NEXT, rid, reason="exhausted")

    if now < info.last_draw_time + info.draw_interval:
        return Action(ActionKind.WAIT, rid, reason="draw interval")
    return Action(ActionKind.DRAW_NEXT, rid)

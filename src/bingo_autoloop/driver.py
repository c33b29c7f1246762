"""
Unattended round driver.

Polls and listens to the ledger, asks the lifecycle model for the one legal
action of the active round and pushes it through a replaceable slot. All
decisions happen on one thread: the poll timer and the notification stream
only enqueue work for it.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .checkpoint import Checkpoint, CheckpointStore
from .config import Settings
from .draw import DrawConsistencyError, DrawExhaustedError, mask_with, next_number
from .errors import (
    DriverError,
    LedgerUnavailableError,
    ResourceExhaustionError,
)
from .events import EventStream, Notification, NotificationKind
from .lifecycle import (
    Action,
    ActionKind,
    RoundInfo,
    RoundState,
    legal_action,
    parse_round_info,
    round_state,
)
from .project_constants import (
    CARD_SIZE,
    DEFAULT_DRAW_INTERVAL_SEC,
    DEFAULT_JOIN_WINDOW_SEC,
    MAX_NUMBER,
    NEXT_ROUND_START_DELAY_SEC,
)
from .rpc import claim_for, create_round, draw_next, request_seed
from .slots import ReplaceableSubmitter, SubmitOutcome

log = logging.getLogger("driver")

CREATE_NEXT_KEY = "create-next"


@dataclass
class Watermark:
    last_draw_count: int
    last_finalized: bool
    last_change_time: float


@dataclass
class ObservedRound:
    """What the notifications told us about one round."""

    entry_fee: Optional[int] = None
    players: Set[str] = field(default_factory=set)
    seed: int = 0
    draws: Dict[int, int] = field(default_factory=dict)  # draw index -> number
    claimed_by: Optional[str] = None
    payout: Optional[Tuple[str, int]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entry_fee": self.entry_fee,
            "players": sorted(self.players),
            "seed": self.seed,
            "draws": dict(sorted(self.draws.items())),
            "claimed_by": self.claimed_by,
            "payout": self.payout,
        }


def _slot_key(action: Action) -> str:
    if action.kind is ActionKind.CREATE_NEXT:
        return CREATE_NEXT_KEY
    if action.kind is ActionKind.REQUEST_SEED:
        return f"seed:{action.round_id}"
    if action.kind is ActionKind.DRAW_NEXT:
        return f"draw:{action.round_id}"
    return f"claim:{action.round_id}:{action.participant}"


class Driver:
    def __init__(
        self,
        ledger: Any,
        submitter: ReplaceableSubmitter,
        checkpoints: CheckpointStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        card_size: int = CARD_SIZE,
        max_number: int = MAX_NUMBER,
    ) -> None:
        self.ledger = ledger
        self.submitter = submitter
        self.checkpoints = checkpoints
        self.settings = settings
        self.clock = clock
        self.card_size = card_size
        self.max_number = max_number

        self.active_round_id = 0
        self.cursor = checkpoints.cursor
        self.watermarks: Dict[int, Watermark] = {}
        self.observed: Dict[int, ObservedRound] = {}
        self.chained: Set[int] = set()

        self._queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._decide_lock = threading.RLock()
        self._read_failures = 0

    def now(self) -> int:
        return int(self.clock())

    # ---- ground truth ----

    def snapshot(self, round_id: int) -> RoundInfo:
        raw = self.ledger.round_info(round_id)
        players = self.ledger.players_of(round_id)
        return parse_round_info(round_id, raw, players)

    def _observe(self, info: RoundInfo) -> None:
        """Move the progress watermark and checkpoint when the round advanced."""
        rid = info.round_id
        wm = self.watermarks.get(rid)
        if wm is None:
            cp = self.checkpoints.get(rid)
            if cp is not None:
                wm = Watermark(cp.last_observed_draw_count, cp.last_observed_finalized, cp.last_checkpoint_time)
            else:
                wm = Watermark(-1, False, self.clock())
            self.watermarks[rid] = wm

        if wm.last_draw_count != info.draw_count or wm.last_finalized != info.finalized:
            wm.last_draw_count = info.draw_count
            wm.last_finalized = info.finalized
            wm.last_change_time = self.clock()
            self._checkpoint(rid)

    def _checkpoint(self, round_id: int) -> None:
        wm = self.watermarks[round_id]
        self.checkpoints.record(
            Checkpoint(
                round_id=round_id,
                last_observed_draw_count=max(wm.last_draw_count, 0),
                last_observed_finalized=wm.last_finalized,
                last_checkpoint_time=wm.last_change_time,
                cursor=self.cursor,
            )
        )

    # ---- decisions ----

    def tick(self) -> Optional[Action]:
        """One polling pass: at most one action for the current round."""
        rid = self.ledger.current_round_id()
        if rid == 0:
            return self._create_first_round()
        if rid != self.active_round_id:
            log.info("active round %d -> %d", self.active_round_id, rid)
            self.active_round_id = rid
        return self._evaluate(rid)

    def _evaluate(self, round_id: int, forced: bool = False) -> Action:
        info = self.snapshot(round_id)
        self._observe(info)
        now = self.now()
        state = round_state(info, now, self.max_number)
        action = legal_action(info, now, self.card_size, self.max_number)
        if action.kind is ActionKind.WAIT:
            log.debug("round=%d state=%s wait=%s", round_id, state.value, action.reason)
            return action

        log.info(
            "decide round=%d state=%s draws=%d action=%s%s",
            round_id,
            state.value,
            info.draw_count,
            action.label,
            " forced" if forced else "",
        )
        if action.kind is ActionKind.CLAIM and state is RoundState.EXHAUSTED:
            self._final_claim_then_chain(info, action)
        elif action.kind is ActionKind.CLAIM:
            if not self._claim(info, action):
                action = self._draw_past_disputed_claim(info, now)
        elif action.kind is ActionKind.CREATE_NEXT:
            self._chain(info)
        else:
            op = request_seed(round_id) if action.kind is ActionKind.REQUEST_SEED else draw_next(round_id)
            outcome = self.submitter.submit(_slot_key(action), op, action.label)
            self._after(round_id, action, outcome)
        return action

    def _after(self, round_id: int, action: Action, outcome: SubmitOutcome) -> None:
        log.info("outcome round=%d action=%s result=%s", round_id, action.label, outcome.value)
        if outcome is SubmitOutcome.SEQUENCE_CONSUMED:
            info = self.snapshot(round_id)
            self._observe(info)
            log.info(
                "re-derived round=%d state=%s draws=%d finalized=%s",
                round_id,
                round_state(info, self.now(), self.max_number).value,
                info.draw_count,
                info.finalized,
            )

    def _claim(self, info: RoundInfo, action: Action) -> bool:
        """Submit the claim unless the ledger disagrees with the local scan."""
        rid, who = info.round_id, action.participant
        if not self.ledger.can_claim(rid, who):
            log.warning("[claim] round=%d card of %s covered locally but ledger says not claimable", rid, who)
            return False
        log.info("[claim] bingo detected round=%d participant=%s", rid, who)
        outcome = self.submitter.submit(_slot_key(action), claim_for(rid, who), action.label)
        self._after(rid, action, outcome)
        return True

    def _draw_past_disputed_claim(self, info: RoundInfo, now: int) -> Action:
        rid = info.round_id
        if now < info.last_draw_time + info.draw_interval:
            return Action(ActionKind.WAIT, rid, reason="claim disputed")
        action = Action(ActionKind.DRAW_NEXT, rid, reason="claim disputed")
        outcome = self.submitter.submit(_slot_key(action), draw_next(rid), action.label)
        self._after(rid, action, outcome)
        return action

    def _final_claim_then_chain(self, info: RoundInfo, action: Action) -> None:
        try:
            self._claim(info, action)
        except (ResourceExhaustionError, LedgerUnavailableError):
            raise
        except DriverError as e:
            log.warning("[claim] final claim round=%d failed: %s", info.round_id, e)
        after = self.snapshot(info.round_id)
        self._observe(after)
        if not after.finalized:
            log.warning("round=%d exhausted without payout; forcing next round", info.round_id)
        self._chain(after)

    def _chain(self, info: RoundInfo) -> None:
        rid = info.round_id
        if rid in self.chained:
            log.debug("round=%d already chained", rid)
            return
        if self.ledger.current_round_id() > rid:
            self.chained.add(rid)
            return

        start = self.now() + NEXT_ROUND_START_DELAY_SEC
        op = create_round(start, DEFAULT_JOIN_WINDOW_SEC, DEFAULT_DRAW_INTERVAL_SEC, info.entry_fee)
        outcome = self.submitter.submit(CREATE_NEXT_KEY, op, f"create-next(after={rid},start={start})")
        if outcome is SubmitOutcome.CONFIRMED or self.ledger.current_round_id() > rid:
            self.chained.add(rid)
            log.info("[next] round scheduled after=%d fee=%d", rid, info.entry_fee)
        else:
            log.warning("[next] create after round=%d not visible yet (%s)", rid, outcome.value)

    def _create_first_round(self) -> Optional[Action]:
        # Round id 0 in `chained` marks the first round as already created
        if 0 in self.chained:
            log.debug("first round created, waiting for the ledger to show it")
            return Action(ActionKind.WAIT, 0, reason="first round pending")
        fee = self.settings.first_entry_fee
        log.info("[init] no rounds yet, creating the first one fee=%d", fee)
        start = self.now() + NEXT_ROUND_START_DELAY_SEC
        op = create_round(start, DEFAULT_JOIN_WINDOW_SEC, DEFAULT_DRAW_INTERVAL_SEC, fee)
        outcome = self.submitter.submit(CREATE_NEXT_KEY, op, f"create-first(start={start})")
        log.info("outcome action=create-first result=%s", outcome.value)
        if outcome is SubmitOutcome.CONFIRMED or self.ledger.current_round_id() > 0:
            self.chained.add(0)
        return Action(ActionKind.CREATE_NEXT, 0, reason="first")

    # ---- notifications ----

    def on_notification(self, event: Notification) -> Optional[Action]:
        """Apply a pushed event, then re-evaluate its round."""
        if event.cursor > self.cursor:
            # Cursors are consecutive; anything between was missed
            log.info("notification gap expected=%d got=%d", self.cursor, event.cursor)
            self._replay(self.cursor)
        self._apply(event)
        self._advance_cursor(event.cursor + 1)

        if event.kind is NotificationKind.ROUND_CREATED:
            self.active_round_id = max(self.active_round_id, event.round_id)
        if event.kind is NotificationKind.JOINED or event.round_id < self.active_round_id:
            return None
        return self._evaluate(event.round_id)

    def reconcile_gap(self, from_cursor: int) -> Optional[Action]:
        """Replay everything committed since `from_cursor`, then re-evaluate once."""
        replayed = self._replay(from_cursor)
        log.info("reconciled from_cursor=%d replayed=%d cursor=%d", from_cursor, replayed, self.cursor)
        return self.tick()

    def _replay(self, from_cursor: int) -> int:
        events = sorted(self.ledger.events_since(from_cursor), key=lambda e: e.cursor)
        for ev in events:
            self._apply(ev)
            self._advance_cursor(ev.cursor + 1)
        return len(events)

    def _advance_cursor(self, cursor: int) -> None:
        if cursor > self.cursor:
            self.cursor = cursor
            self.checkpoints.advance_cursor(cursor)

    def _apply(self, event: Notification) -> None:
        """Fold one event into the observed state. Applying twice is a no-op."""
        obs = self.observed.setdefault(event.round_id, ObservedRound())
        try:
            self._fold(obs, event)
        except (KeyError, TypeError, ValueError) as e:
            log.warning(
                "malformed %s event cursor=%d round=%d: %r", event.kind.value, event.cursor, event.round_id, e
            )

        for rid in sorted(self.observed)[: -self.checkpoints.retain]:
            del self.observed[rid]

    def _fold(self, obs: ObservedRound, event: Notification) -> None:
        data = event.data
        kind = event.kind

        if kind is NotificationKind.ROUND_CREATED:
            obs.entry_fee = int(data.get("entryFee", 0))
        elif kind is NotificationKind.JOINED:
            obs.players.add(str(data["participant"]))
        elif kind is NotificationKind.SEED_FULFILLED:
            obs.seed = int(data["seed"])
        elif kind is NotificationKind.DRAWN:
            index, number = int(data["drawIndex"]), int(data["number"])
            if index not in obs.draws:
                self._check_draw(event.round_id, obs, index, number)
            obs.draws[index] = number
        elif kind is NotificationKind.CLAIMED:
            obs.claimed_by = str(data["participant"])
        elif kind is NotificationKind.PAYOUT:
            obs.payout = (str(data["winner"]), int(data["amount"]))

    def _check_draw(self, round_id: int, obs: ObservedRound, index: int, number: int) -> None:
        # Local replay of the ledger's draw, only when every earlier draw is known
        if not obs.seed or any(i not in obs.draws for i in range(index)):
            return
        mask = 0
        for i in range(index):
            mask = mask_with(mask, obs.draws[i])
        try:
            expected = next_number(obs.seed, index, mask, self.max_number)
        except (DrawConsistencyError, DrawExhaustedError) as e:
            log.error("round=%d draw=%d local replay failed: %s", round_id, index, e)
            return
        if expected != number:
            log.error("round=%d draw=%d ledger=%d local=%d MISMATCH", round_id, index, number, expected)

    def observed_state(self) -> Dict[str, Any]:
        return {
            "cursor": self.cursor,
            "rounds": {rid: obs.as_dict() for rid, obs in sorted(self.observed.items())},
        }

    # ---- watchdog ----

    def watchdog(self) -> Optional[Action]:
        """Force the legal action of a round with no progress for too long."""
        rid = self.active_round_id
        wm = self.watermarks.get(rid)
        if not rid or wm is None:
            return None
        stalled = self.clock() - wm.last_change_time
        if stalled <= self.settings.stall_threshold_s:
            return None

        log.warning("[watchdog] round=%d stalled %.0fs, forcing", rid, stalled)
        try:
            return self._evaluate(rid, forced=True)
        finally:
            wm = self.watermarks[rid]
            wm.last_change_time = self.clock()
            self._checkpoint(rid)

    # ---- lifecycle ----

    def check_health(self) -> None:
        info = self.ledger.chain_info()
        chain_id = int(info.get("chainId", -1))
        log.info("[startup] chainId=%d game=%s", chain_id, info.get("game"))
        if self.settings.chain_id is not None and chain_id != self.settings.chain_id:
            raise RuntimeError(f"Wrong ledger. Expected chain {self.settings.chain_id}, got {chain_id}.")
        if not info.get("game"):
            raise RuntimeError("Ledger reports no game address.")

    def resume(self) -> None:
        """Pick up from the last checkpoint, or from the ledger head on first start."""
        cp = self.checkpoints.latest()
        if cp is None:
            self.cursor = self.ledger.latest_cursor()
            self.checkpoints.advance_cursor(self.cursor)
            log.info("[resume] no checkpoint, starting at cursor=%d", self.cursor)
            self.handle("tick")
            return
        log.info(
            "[resume] round=%d draws=%d finalized=%s cursor=%d",
            cp.round_id,
            cp.last_observed_draw_count,
            cp.last_observed_finalized,
            self.checkpoints.cursor,
        )
        self.active_round_id = cp.round_id
        self.handle("gap", self.checkpoints.cursor)

    def handle(self, kind: str, payload: Any = None) -> Optional[Action]:
        """
        Process one queued message. Errors stay inside this call, except
        ResourceExhaustionError which must reach the operator.
        """
        with self._decide_lock:
            try:
                if kind == "event":
                    result = self.on_notification(payload)
                elif kind == "gap":
                    result = self.reconcile_gap(payload)
                elif kind == "watchdog":
                    result = self.watchdog()
                else:
                    result = self.tick()
                self._read_failures = 0
                return result
            except ResourceExhaustionError:
                raise
            except LedgerUnavailableError as e:
                self._read_failures += 1
                log.warning("[%s] ledger unavailable (%d in a row): %s", kind, self._read_failures, e)
            except DriverError as e:
                log.warning("[%s] %s: %s -> re-evaluating next pass", kind, type(e).__name__, e)
            except (DrawConsistencyError, DrawExhaustedError) as e:
                log.error("[%s] draw engine fault: %s", kind, e)
            except Exception:
                log.exception("[%s] unexpected failure -> re-evaluating next pass", kind)
        return None

    def backoff_s(self) -> float:
        if not self._read_failures:
            return 0.0
        return min(2 ** (self._read_failures - 1), 30.0)

    def run(self, stop: threading.Event) -> None:
        self.check_health()
        self.resume()

        stream = EventStream(
            self.ledger,
            on_event=lambda ev: self._queue.put(("event", ev)),
            on_gap=lambda cursor: self._queue.put(("gap", cursor)),
            start_cursor=self.cursor,
        )
        stream.start()
        log.info("[loop] running poll=%.1fs stall=%.0fs", self.settings.poll_interval_s, self.settings.stall_threshold_s)
        try:
            while not stop.is_set():
                try:
                    kind, payload = self._queue.get(timeout=self.settings.poll_interval_s)
                except queue.Empty:
                    kind, payload = "tick", None
                self.handle(kind, payload)
                self.handle("watchdog")
                if self.backoff_s():
                    stop.wait(self.backoff_s())
        finally:
            stream.stop()
            log.info("[loop] stopped cursor=%d", self.cursor)

    def pending_slots(self) -> List[str]:
        return sorted(self.submitter.slots)

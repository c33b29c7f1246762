from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import DriverError, LedgerUnavailableError
from .project_constants import (
    STREAM_BACKOFF_INITIAL_SEC,
    STREAM_BACKOFF_MAX_SEC,
    STREAM_SILENCE_RESUBSCRIBE_SEC,
)

log = logging.getLogger("events")


class NotificationKind(Enum):
    ROUND_CREATED = "RoundCreated"
    JOINED = "Joined"
    SEED_FULFILLED = "SeedFulfilled"
    DRAWN = "Drawn"
    CLAIMED = "Claimed"
    PAYOUT = "Payout"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    round_id: int
    cursor: int  # ledger-wide, strictly increasing per committed event
    data: Dict[str, Any] = field(default_factory=dict)


def parse_notification(raw: Dict[str, Any]) -> Notification:
    return Notification(
        kind=NotificationKind(raw["kind"]),
        round_id=int(raw["roundId"]),
        cursor=int(raw["cursor"]),
        data=dict(raw.get("data") or {}),
    )


def parse_notifications(raws: Iterable[Dict[str, Any]]) -> List[Notification]:
    """Parse a batch, skipping events of unknown kind or shape."""
    out: List[Notification] = []
    for raw in raws:
        try:
            out.append(parse_notification(raw))
        except (KeyError, TypeError, ValueError) as e:
            log.warning("skipping unreadable event %r: %s", raw, e)
    return out


class EventStream:
    """
    Background reader of the ledger's best-effort notification feed.

    Events go to `on_event`. Whenever the feed may have lost events (a failed
    poll, or silence while the ledger cursor moved on) the stream resubscribes
    at the ledger's latest cursor and reports the first possibly-missed cursor
    to `on_gap`. Both callbacks must only enqueue work; the driver decides.
    """

    def __init__(
        self,
        ledger: Any,
        on_event: Callable[[Notification], None],
        on_gap: Callable[[int], None],
        start_cursor: int,
        wait_s: float = 5.0,
        silence_s: float = STREAM_SILENCE_RESUBSCRIBE_SEC,
    ) -> None:
        self.ledger = ledger
        self.on_event = on_event
        self.on_gap = on_gap
        self.cursor = start_cursor
        self.wait_s = wait_s
        self.silence_s = silence_s
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="event-stream", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, join_timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(join_timeout)

    def _run(self) -> None:
        backoff = STREAM_BACKOFF_INITIAL_SEC
        gap_from: Optional[int] = None
        last_event_at = time.monotonic()

        while not self._stop.is_set():
            try:
                if gap_from is not None:
                    self._resubscribe(gap_from)
                    gap_from = None
                    backoff = STREAM_BACKOFF_INITIAL_SEC
                    last_event_at = time.monotonic()

                events = self.ledger.poll_events(self.cursor, self.wait_s)
                for ev in self._ordered(events):
                    self.on_event(ev)
                    self.cursor = max(self.cursor, ev.cursor + 1)
                    last_event_at = time.monotonic()
            except LedgerUnavailableError as e:
                if gap_from is None:
                    gap_from = self.cursor
                log.warning("stream down err=%s retry_in=%.1fs", e, backoff)
                self._stop.wait(backoff)
                backoff = min(backoff * 2, STREAM_BACKOFF_MAX_SEC)
                continue
            except DriverError as e:
                log.warning("stream poll rejected err=%s", e)
                self._stop.wait(backoff)
                continue
            except Exception:
                if gap_from is None:
                    gap_from = self.cursor
                log.exception("stream poll failed, retry_in=%.1fs", backoff)
                self._stop.wait(backoff)
                backoff = min(backoff * 2, STREAM_BACKOFF_MAX_SEC)
                continue

            if not events and time.monotonic() - last_event_at > self.silence_s:
                log.info("stream silent %.0fs, checking for missed events", self.silence_s)
                gap_from = self.cursor

    def _resubscribe(self, gap_from: int) -> None:
        latest = self.ledger.latest_cursor()
        if latest > gap_from:
            log.info("stream gap from_cursor=%d latest=%d", gap_from, latest)
            self.on_gap(gap_from)
        self.cursor = max(self.cursor, latest)

    @staticmethod
    def _ordered(events: List[Notification]) -> List[Notification]:
        return sorted(events, key=lambda e: e.cursor)

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Checkpoint:
    round_id: int
    last_observed_draw_count: int
    last_observed_finalized: bool
    last_checkpoint_time: float
    cursor: int = 0


class CheckpointStore:
    """
    Durable per-round progress records, one per round id.

    Only the newest `retain` round ids are kept. The whole file is rewritten
    atomically on every change so a crash never leaves a torn record.
    `path=None` keeps everything in memory.
    """

    def __init__(self, path: Optional[str], retain: int = 16) -> None:
        if retain < 1:
            raise ValueError("retain must be >= 1")
        self.path = path
        self.retain = retain
        self.cursor = 0
        self._records: Dict[int, Checkpoint] = {}
        if path and os.path.exists(path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        self.cursor = int(raw.get("cursor", 0))
        for item in raw.get("rounds", []):
            cp = Checkpoint(
                round_id=int(item["round_id"]),
                last_observed_draw_count=int(item["last_observed_draw_count"]),
                last_observed_finalized=bool(item["last_observed_finalized"]),
                last_checkpoint_time=float(item["last_checkpoint_time"]),
                cursor=int(item.get("cursor", 0)),
            )
            self._records[cp.round_id] = cp
        self._trim()

    def get(self, round_id: int) -> Optional[Checkpoint]:
        return self._records.get(round_id)

    def latest(self) -> Optional[Checkpoint]:
        if not self._records:
            return None
        return self._records[max(self._records)]

    def round_ids(self) -> List[int]:
        return sorted(self._records)

    def record(self, cp: Checkpoint) -> None:
        # Rounds that already fell out of the window are not resurrected
        if len(self._records) >= self.retain and cp.round_id < min(self._records):
            return
        self._records[cp.round_id] = cp
        self.cursor = max(self.cursor, cp.cursor)
        self._trim()
        self._save()

    def advance_cursor(self, cursor: int) -> None:
        if cursor > self.cursor:
            self.cursor = cursor
            self._save()

    def _trim(self) -> None:
        for rid in sorted(self._records)[: -self.retain]:
            del self._records[rid]

    def _save(self) -> None:
        if not self.path:
            return
        doc = {
            "cursor": self.cursor,
            "rounds": [asdict(self._records[rid]) for rid in sorted(self._records)],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(prefix=".checkpoint-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

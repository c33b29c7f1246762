from __future__ import annotations

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from .errors import LedgerRejectedError, LedgerUnavailableError
from .events import Notification, parse_notifications


class OperationKind(Enum):
    CREATE_ROUND = "createRound"
    JOIN = "join"
    REQUEST_SEED = "requestSeed"
    DRAW_NEXT = "drawNext"
    CLAIM_FOR = "claimFor"


@dataclass(frozen=True)
class Operation:
    kind: OperationKind
    round_id: int = 0
    participant: Optional[str] = None
    # createRound only
    start_time: int = 0
    join_window: int = 0
    draw_interval: int = 0
    entry_fee: int = 0

    def params(self) -> Dict[str, Any]:
        if self.kind is OperationKind.CREATE_ROUND:
            return {
                "startTime": self.start_time,
                "joinWindow": self.join_window,
                "drawInterval": self.draw_interval,
                "entryFee": str(self.entry_fee),
            }
        out: Dict[str, Any] = {"roundId": self.round_id}
        if self.participant is not None:
            out["participant"] = self.participant
        return out


def create_round(start_time: int, join_window: int, draw_interval: int, entry_fee: int) -> Operation:
    return Operation(
        OperationKind.CREATE_ROUND,
        start_time=start_time,
        join_window=join_window,
        draw_interval=draw_interval,
        entry_fee=entry_fee,
    )


def join(round_id: int) -> Operation:
    return Operation(OperationKind.JOIN, round_id=round_id)


def request_seed(round_id: int) -> Operation:
    return Operation(OperationKind.REQUEST_SEED, round_id=round_id)


def draw_next(round_id: int) -> Operation:
    return Operation(OperationKind.DRAW_NEXT, round_id=round_id)


def claim_for(round_id: int, participant: str) -> Operation:
    return Operation(OperationKind.CLAIM_FOR, round_id=round_id, participant=participant)


@dataclass(frozen=True)
class Priority:
    max_priority_fee: int
    max_fee: int


@dataclass(frozen=True)
class Receipt:
    op_id: str
    success: bool
    reason: str = ""


class LedgerClient:
    """JSON-RPC client for the ledger service holding the authoritative rounds."""

    def __init__(self, ledger_url: str, timeout_s: float = 60.0) -> None:
        self.ledger_url = ledger_url
        self.timeout_s = timeout_s
        self.client = httpx.Client(timeout=timeout_s)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self.client.close()

    def _post(self, payload: Dict[str, Any], timeout_s: Optional[float] = None) -> Dict[str, Any]:
        try:
            resp = self.client.post(
                self.ledger_url,
                json=payload,
                timeout=timeout_s if timeout_s is not None else self.timeout_s,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status >= 500 or status == 429:
                raise LedgerUnavailableError(f"{payload['method']}: HTTP {status}") from e
            raise LedgerRejectedError(status, e.response.text) from e
        except httpx.TransportError as e:
            raise LedgerUnavailableError(f"{payload['method']}: {e}") from e

        data = resp.json()
        if "error" in data:
            err = data["error"] or {}
            raise LedgerRejectedError(int(err.get("code", -1)), str(err.get("message", err)))
        return data

    def _call(self, method: str, params: List[Any], timeout_s: Optional[float] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        return self._post(payload, timeout_s).get("result")

    # ---- reads ----

    def chain_info(self) -> Dict[str, Any]:
        """Returns {"chainId": ..., "game": ...} of the ledger endpoint."""
        return dict(self._call("getChainInfo", []))

    def current_round_id(self) -> int:
        return int(self._call("currentRoundId", []))

    def round_info(self, round_id: int) -> Dict[str, Any]:
        result = self._call("roundInfo", [round_id])
        if result is None:
            raise LedgerRejectedError(-1, f"unknown round {round_id}")
        return dict(result)

    def players_of(self, round_id: int) -> List[str]:
        return [str(p) for p in self._call("playersOf", [round_id]) or []]

    def card_of(self, round_id: int, participant: str) -> List[int]:
        return [int(n) for n in self._call("cardOf", [round_id, participant]) or []]

    def can_claim(self, round_id: int, participant: str) -> bool:
        return bool(self._call("canClaim", [round_id, participant]))

    # ---- submission ----

    def sequence_of(self, account: str, pending: bool = True) -> int:
        """Next sequence number for `account`, counting pending operations."""
        return int(self._call("getSequence", [account, "pending" if pending else "committed"]))

    def fee_quote(self) -> Dict[str, int]:
        result = self._call("getFeeQuote", []) or {}
        return {
            "base_fee": int(result.get("baseFee") or 0),
            "max_priority_fee": int(result.get("maxPriorityFee") or 0),
            "max_fee": int(result.get("maxFee") or 0),
        }

    def submit(self, op: Operation, sender: str, sequence: int, priority: Priority) -> str:
        """Submit `op` at `sequence`. A pending op at the same sequence is replaced."""
        return str(
            self._call(
                "submitOperation",
                [
                    {
                        "kind": op.kind.value,
                        "params": op.params(),
                        "sender": sender,
                        "sequence": sequence,
                        "maxPriorityFee": str(priority.max_priority_fee),
                        "maxFee": str(priority.max_fee),
                    }
                ],
            )
        )

    def wait_for_confirmation(self, op_id: str, timeout_s: float) -> Optional[Receipt]:
        """Long-poll for a receipt. None when nothing committed within `timeout_s`."""
        result = self._call(
            "getReceipt",
            [op_id, {"waitMs": int(timeout_s * 1000)}],
            timeout_s=timeout_s + self.timeout_s,
        )
        if result is None:
            return None
        return Receipt(
            op_id=str(result.get("opId", op_id)),
            success=bool(result.get("success")),
            reason=str(result.get("reason") or ""),
        )

    # ---- notifications ----

    def latest_cursor(self) -> int:
        return int(self._call("latestCursor", []))

    def events_since(
        self,
        from_cursor: int,
        to_cursor: Optional[int] = None,
        round_id: Optional[int] = None,
    ) -> List[Notification]:
        """Committed notifications with from_cursor <= cursor (<= to_cursor)."""
        query: Dict[str, Any] = {"fromCursor": from_cursor}
        if to_cursor is not None:
            query["toCursor"] = to_cursor
        if round_id is not None:
            query["roundId"] = round_id
        return parse_notifications(self._call("getEvents", [query]) or [])

    def poll_events(self, from_cursor: int, wait_s: float) -> List[Notification]:
        """Best-effort live feed. May drop or repeat events."""
        result = self._call(
            "pollEvents",
            [{"fromCursor": from_cursor, "waitMs": int(wait_s * 1000)}],
            timeout_s=wait_s + self.timeout_s,
        )
        return parse_notifications(result or [])

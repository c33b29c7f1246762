"""
Replaceable operation slots.

Every logical action (request-seed for round 7, draw-next for round 7, ...)
owns at most one slot. A slot pins one sequence number of the signing
identity; retries reuse that number with a higher priority, so the ledger
commits at most one of the attempts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import (
    DriverError,
    IllegalStateError,
    LedgerRejectedError,
    SequenceConsumedError,
    StaleActionError,
    TransientSubmissionError,
    classify_rejection,
)
from .project_constants import (
    FEE_BUMP_DEN,
    FEE_BUMP_NUM,
    MAX_SUBMIT_ATTEMPTS,
    MIN_MAX_FEE,
    MIN_PRIORITY_FEE,
)
from .rpc import Operation, Priority

log = logging.getLogger("slots")


class SubmitOutcome(Enum):
    CONFIRMED = "confirmed"
    STALE = "stale"
    SEQUENCE_CONSUMED = "sequence-consumed"


@dataclass
class OperationSlot:
    key: str
    sequence: int
    priority: Priority
    attempts: int = 0


def bump(value: int) -> int:
    return value * FEE_BUMP_NUM // FEE_BUMP_DEN


class ReplaceableSubmitter:
    def __init__(
        self,
        ledger: Any,
        sender: str,
        confirm_timeout_s: float = 20.0,
        max_attempts: int = MAX_SUBMIT_ATTEMPTS,
        fee_ceiling: Optional[int] = None,
    ) -> None:
        self.ledger = ledger
        self.sender = sender
        self.confirm_timeout_s = confirm_timeout_s
        self.max_attempts = max_attempts
        self.fee_ceiling = fee_ceiling
        self.slots: Dict[str, OperationSlot] = {}

    def safe_priority(self) -> Priority:
        quote = self.ledger.fee_quote()
        prio = max(quote["max_priority_fee"], MIN_PRIORITY_FEE)
        max_fee = max(quote["max_fee"], MIN_MAX_FEE, quote["base_fee"] * 2 + prio)
        return self._capped(Priority(prio, max_fee))

    def _capped(self, p: Priority) -> Priority:
        if self.fee_ceiling is None:
            return p
        max_fee = min(p.max_fee, self.fee_ceiling)
        return Priority(min(p.max_priority_fee, max_fee), max_fee)

    def _escalate(self, slot: OperationSlot) -> None:
        slot.priority = self._capped(
            Priority(bump(slot.priority.max_priority_fee), bump(slot.priority.max_fee))
        )

    def _release(self, key: str) -> None:
        self.slots.pop(key, None)

    def submit(self, key: str, op: Operation, label: Optional[str] = None) -> SubmitOutcome:
        """
        Drive `op` to a terminal outcome under slot `key`.

        Returns CONFIRMED, STALE (action no longer applies, treat as done) or
        SEQUENCE_CONSUMED (something took the sequence, re-read the ledger).
        Raises ResourceExhaustionError / IllegalStateError after releasing the
        slot, and TransientSubmissionError once attempts run out.
        LedgerUnavailableError leaves the slot in place so the next call for
        the same key replaces rather than duplicates.
        """
        label = label or key
        slot = self.slots.get(key)
        if slot is None:
            slot = OperationSlot(
                key=key,
                sequence=self.ledger.sequence_of(self.sender, pending=True),
                priority=self.safe_priority(),
            )
            self.slots[key] = slot
        else:
            # Same sequence, priority above both the last attempt and a fresh quote
            quote = self.safe_priority()
            bumped = Priority(bump(slot.priority.max_priority_fee), bump(slot.priority.max_fee))
            slot.priority = self._capped(
                Priority(
                    max(bumped.max_priority_fee, quote.max_priority_fee),
                    max(bumped.max_fee, quote.max_fee),
                )
            )
            log.info("slot reuse key=%s seq=%d attempts=%d", key, slot.sequence, slot.attempts)

        while slot.attempts < self.max_attempts:
            slot.attempts += 1
            try:
                op_id = self.ledger.submit(op, self.sender, slot.sequence, slot.priority)
            except LedgerRejectedError as e:
                err = classify_rejection(e.message, slot.sequence)
                if isinstance(err, TransientSubmissionError):
                    log.warning("%s rejected err=%s -> bump & retry", label, e.message)
                    self._escalate(slot)
                    continue
                return self._terminal(slot, label, err)

            log.info(
                "%s submitted op=%s seq=%d attempt=%d prio=%d fee=%d",
                label,
                op_id,
                slot.sequence,
                slot.attempts,
                slot.priority.max_priority_fee,
                slot.priority.max_fee,
            )
            receipt = self.ledger.wait_for_confirmation(op_id, self.confirm_timeout_s)
            if receipt is None:
                log.warning("%s confirm timeout seq=%d -> replace", label, slot.sequence)
                self._escalate(slot)
                continue
            if receipt.success:
                self._release(key)
                log.info("%s confirmed seq=%d attempts=%d", label, slot.sequence, slot.attempts)
                return SubmitOutcome.CONFIRMED

            # Committed but rejected: the sequence is spent either way
            err = classify_rejection(receipt.reason, slot.sequence)
            if isinstance(err, (TransientSubmissionError, SequenceConsumedError)):
                err = IllegalStateError(f"{label} reverted: {receipt.reason}")
            return self._terminal(slot, label, err)

        self._release(key)
        raise TransientSubmissionError(f"{label} failed after {self.max_attempts} replacements")

    def _terminal(self, slot: OperationSlot, label: str, err: DriverError) -> SubmitOutcome:
        self._release(slot.key)
        if isinstance(err, StaleActionError):
            log.info("%s stale (%s) -> treated as done", label, err)
            return SubmitOutcome.STALE
        if isinstance(err, SequenceConsumedError):
            log.warning("%s seq=%d already consumed -> state check", label, slot.sequence)
            return SubmitOutcome.SEQUENCE_CONSUMED
        log.error("%s failed err=%s", label, err)
        raise err

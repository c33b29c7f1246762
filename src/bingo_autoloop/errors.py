"""
Driver error taxonomy.

Every ledger rejection is mapped onto one of these classes so the decision
loop can pick the right reaction: retry, drop as done, re-derive, or stop.
"""
from __future__ import annotations


class DriverError(Exception):
    """Base class for all driver errors."""


class TransientSubmissionError(DriverError):
    """Submission may succeed if retried with a higher priority."""


class StaleActionError(DriverError):
    """The ledger says the action no longer applies. Success-equivalent."""


class IllegalStateError(DriverError):
    """Local plan and ledger disagree. Re-read ground truth, never assume."""


class ResourceExhaustionError(DriverError):
    """Signing identity cannot pay for submissions. Fatal for that identity."""


class LedgerUnavailableError(DriverError):
    """Read or submit path is failing. Never means "round absent"."""


class SequenceConsumedError(DriverError):
    """The slot's sequence number was already used by some committed operation."""

    def __init__(self, sequence: int, message: str = "") -> None:
        self.sequence = sequence
        super().__init__(message or f"Sequence {sequence} already consumed")


class LedgerRejectedError(DriverError):
    """Raw JSON-RPC error object returned by the ledger."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"Ledger error {code}: {message}")


_CONSUMED = ("nonce too low", "nonce_expired", "sequence too low", "sequence consumed")
_EXHAUSTED = ("insufficient funds", "intrinsic transaction cost", "fee ceiling")
_STALE = (
    "already finalized",
    "round finalized",
    "already requested",
    "seed already",
    "too early",
    "round ended",
    "already joined",
    "already created",
)
_ILLEGAL = ("not claimable", "no bingo", "not joinable", "fee mismatch", "no seed", "unknown round")


def classify_rejection(message: str, sequence: int | None = None) -> DriverError:
    """Map a ledger reject reason onto the taxonomy.

    Unknown reasons are treated as transient: the submitter bumps and retries,
    and the attempt cap bounds how long that goes on.
    """
    m = message.lower()
    if any(s in m for s in _CONSUMED):
        return SequenceConsumedError(sequence if sequence is not None else -1, message)
    if any(s in m for s in _EXHAUSTED):
        return ResourceExhaustionError(message)
    if any(s in m for s in _STALE):
        return StaleActionError(message)
    if any(s in m for s in _ILLEGAL):
        return IllegalStateError(message)
    return TransientSubmissionError(message)

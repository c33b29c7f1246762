from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import base58
from dotenv import load_dotenv

from .project_constants import DEFAULT_ENTRY_FEE


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw, 0) if raw else None


@dataclass(frozen=True)
class Settings:
    ledger_url: str
    signer_id: Optional[str] = None
    chain_id: Optional[int] = None
    poll_interval_s: float = 1.5
    confirm_timeout_s: float = 20.0
    stall_threshold_s: float = 45.0
    fee_ceiling: Optional[int] = None
    checkpoint_file: str = "checkpoints.json"
    checkpoint_retain: int = 16
    first_entry_fee: int = DEFAULT_ENTRY_FEE

    def __post_init__(self) -> None:
        # The watchdog must not fire while a replacement cycle is still waiting
        if self.stall_threshold_s <= 2 * self.confirm_timeout_s:
            raise RuntimeError(
                f"STALL_THRESHOLD_SEC ({self.stall_threshold_s}) must be more than twice "
                f"CONFIRM_TIMEOUT_SEC ({self.confirm_timeout_s})."
            )
        if self.signer_id is not None:
            try:
                if self.signer_id[:2].lower() == "0x":
                    bytes.fromhex(self.signer_id[2:])
                else:
                    base58.b58decode(self.signer_id)
            except ValueError as e:
                raise RuntimeError(f"SIGNER_ID is neither a 0x hex nor a base58 address: {e}") from e

    @staticmethod
    def from_env(
        ledger_url_override: str | None = None,
        require_signer: bool = False,
    ) -> "Settings":
        load_dotenv()

        # If user provides --ledger-url, trust it.
        ledger_url = ledger_url_override or os.getenv("LEDGER_URL", "").strip()
        if not ledger_url:
            raise RuntimeError("Missing LEDGER_URL. Put it in .env or export it.")

        signer = os.getenv("SIGNER_ID", "").strip() or None
        if require_signer and not signer:
            raise RuntimeError("Missing SIGNER_ID (the driver's signing identity).")

        return Settings(
            ledger_url=ledger_url,
            signer_id=signer,
            chain_id=_env_int("CHAIN_ID"),
            poll_interval_s=_env_float("POLL_INTERVAL_SEC", 1.5),
            confirm_timeout_s=_env_float("CONFIRM_TIMEOUT_SEC", 20.0),
            stall_threshold_s=_env_float("STALL_THRESHOLD_SEC", 45.0),
            fee_ceiling=_env_int("MAX_FEE_CEILING"),
            checkpoint_file=os.getenv("CHECKPOINT_FILE", "").strip() or "checkpoints.json",
            checkpoint_retain=_env_int("CHECKPOINT_RETAIN") or 16,
            first_entry_fee=_env_int("FIRST_ENTRY_FEE") or DEFAULT_ENTRY_FEE,
        )

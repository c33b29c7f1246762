from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from .draw import card_for, draw_sequence, has_number, mask_of
from .events import NotificationKind
from .lifecycle import parse_round_info
from .project_constants import CARD_SIZE, MAX_NUMBER


def verify_round(
    ledger: Any,
    round_id: int,
    card_size: int = CARD_SIZE,
    max_number: int = MAX_NUMBER,
) -> Dict[str, Any]:
    """
    Recompute a round's draws and the winner's card from its seed and compare
    with what the ledger recorded. Returns an audit dict; raises RuntimeError
    on the first mismatch.
    """
    info = parse_round_info(round_id, ledger.round_info(round_id), ledger.players_of(round_id))
    if info.seed == 0:
        raise RuntimeError(f"Round {round_id} has no seed yet; nothing to verify.")

    draws = draw_sequence(info.seed, info.draw_count, max_number)
    if mask_of(draws) != info.drawn_mask:
        raise RuntimeError(
            f"Drawn mask mismatch: ledger={info.drawn_mask:#x} recomputed={mask_of(draws):#x}"
        )

    # Recorded history may be pruned; check whatever is still there
    for ev in ledger.events_since(0, round_id=round_id):
        if ev.kind is not NotificationKind.DRAWN or ev.round_id != round_id:
            continue
        index, number = int(ev.data["drawIndex"]), int(ev.data["number"])
        expected = draws[index] if index < len(draws) else None
        if expected != number:
            raise RuntimeError(f"Draw {index} mismatch: ledger={number} recomputed={expected}")

    winner: Dict[str, Any] | None = None
    if info.winner:
        card = card_for(info.seed, info.winner, card_size, max_number)
        if not all(has_number(info.drawn_mask, n) for n in card):
            raise RuntimeError(f"Winner {info.winner} card is not covered by the draws.")
        ledger_card = ledger.card_of(round_id, info.winner)
        if ledger_card and ledger_card != card:
            raise RuntimeError(f"Card mismatch for {info.winner}: ledger={ledger_card} recomputed={card}")
        winner = {"address": info.winner, "card": card}

    return {
        "metadata": {
            "tool": "bingo-autoloop",
            "version": "1.0.0",
            "generated_at_utc": datetime.now(timezone.utc).isoformat(),
            "round_id": round_id,
            "seed": hex(info.seed),
            "draw_count": info.draw_count,
            "entry_fee": info.entry_fee,
            "prize_pool": info.prize_pool,
            "finalized": info.finalized,
        },
        "draws": draws,
        "winner": winner,
        "players": [
            {"address": p, "card": card_for(info.seed, p, card_size, max_number)}
            for p in info.players
        ],
    }

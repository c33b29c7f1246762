from __future__ import annotations

import hashlib
from typing import Iterable, List, Optional

import base58

from .project_constants import CARD_SIZE, MAX_NUMBER, MAX_PROBES


class DrawConsistencyError(RuntimeError):
    """Probe cap exceeded. Means a corrupt mask or hash, never expected."""


class DrawExhaustedError(RuntimeError):
    """Every number in the space has already been drawn."""


def _word(value: int) -> bytes:
    # 32-byte big-endian, so every hash input has a fixed layout
    return int(value).to_bytes(32, "big")


def participant_bytes(participant: str) -> bytes:
    """
    Hash input for a participant id.

    0x-prefixed hex ids give their decoded bytes, base58 ids their raw key
    bytes, anything else its UTF-8 bytes.
    """
    if not participant:
        raise ValueError("Participant address is empty.")
    if participant[:2].lower() == "0x":
        try:
            return bytes.fromhex(participant[2:])
        except ValueError:
            pass
    try:
        return base58.b58decode(participant)
    except ValueError:
        return participant.encode("utf-8")


def hash_int(*parts: bytes) -> int:
    h = hashlib.sha256()
    for part in parts:
        h.update(part)
    return int(h.hexdigest(), 16)


def has_number(mask: int, number: int) -> bool:
    return (mask >> (number - 1)) & 1 == 1


def mask_with(mask: int, number: int) -> int:
    return mask | (1 << (number - 1))


def mask_of(numbers: Iterable[int]) -> int:
    mask = 0
    for n in numbers:
        mask = mask_with(mask, n)
    return mask


def popcount(mask: int) -> int:
    return bin(mask).count("1")


def numbers_in_mask(mask: int, max_number: int = MAX_NUMBER) -> List[int]:
    return [n for n in range(1, max_number + 1) if has_number(mask, n)]


def next_number(
    seed: int,
    draw_index: int,
    drawn_mask: int,
    max_number: int = MAX_NUMBER,
) -> int:
    """
    Next undrawn number for draw `draw_index`.

    candidate = sha256(seed | drawIndex | probe) mod N + 1, first one not in
    the mask wins. The undrawn pool is non-empty and finite so a hit comes
    quickly; MAX_PROBES only guards against a corrupted mask.
    """
    full = (1 << max_number) - 1
    if drawn_mask & full == full:
        raise DrawExhaustedError(f"All {max_number} numbers already drawn.")

    seed_w = _word(seed)
    index_w = _word(draw_index)
    for probe in range(MAX_PROBES):
        candidate = hash_int(seed_w, index_w, _word(probe)) % max_number + 1
        if not has_number(drawn_mask, candidate):
            return candidate
    raise DrawConsistencyError(
        f"Draw {draw_index}: no free number after {MAX_PROBES} probes (mask={drawn_mask:#x})."
    )


def draw_sequence(seed: int, count: int, max_number: int = MAX_NUMBER) -> List[int]:
    """Replay the first `count` draws of a round from its seed."""
    numbers: List[int] = []
    mask = 0
    for i in range(count):
        n = next_number(seed, i, mask, max_number)
        numbers.append(n)
        mask = mask_with(mask, n)
    return numbers


def card_for(
    seed: int,
    participant: str,
    card_size: int = CARD_SIZE,
    max_number: int = MAX_NUMBER,
) -> List[int]:
    """
    Card of `participant` for a round seeded with `seed`.

    salt = sha256(seed | participant); slot i takes sha256(salt | i) mod N + 1.
    On a collision the salt is re-hashed with the colliding number and the
    same slot is retried, so slot order is fixed.
    """
    if card_size > max_number:
        raise ValueError(f"Card size {card_size} exceeds number space {max_number}.")

    salt = hash_int(_word(seed), participant_bytes(participant))
    card: List[int] = []
    for slot in range(card_size):
        for _ in range(MAX_PROBES):
            candidate = hash_int(_word(salt), _word(slot)) % max_number + 1
            if candidate not in card:
                break
            salt = hash_int(_word(salt), _word(candidate))
        else:
            raise DrawConsistencyError(
                f"Card slot {slot} for {participant}: no free number after {MAX_PROBES} probes."
            )
        card.append(candidate)
    return card


def is_winner(
    seed: int,
    participant: str,
    drawn_mask: int,
    card_size: int = CARD_SIZE,
    max_number: int = MAX_NUMBER,
) -> bool:
    card = card_for(seed, participant, card_size, max_number)
    return all(has_number(drawn_mask, n) for n in card)


def find_winner(
    seed: int,
    players: Iterable[str],
    drawn_mask: int,
    card_size: int = CARD_SIZE,
    max_number: int = MAX_NUMBER,
) -> Optional[str]:
    """First participant, in join order, whose card is fully covered."""
    for p in players:
        if is_winner(seed, p, drawn_mask, card_size, max_number):
            return p
    return None

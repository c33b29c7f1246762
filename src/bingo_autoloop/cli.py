from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
import time

from .checkpoint import CheckpointStore
from .config import Settings
from .draw import card_for
from .driver import Driver
from .errors import ResourceExhaustionError
from .lifecycle import legal_action, parse_round_info, round_state
from .rpc import LedgerClient, join
from .slots import ReplaceableSubmitter
from .verify import verify_round


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _parse_seed(raw: str) -> int:
    return int(raw, 0)


def cmd_run(args: argparse.Namespace) -> int:
    settings = Settings.from_env(ledger_url_override=args.ledger_url, require_signer=True)
    log = logging.getLogger("run")

    ledger = LedgerClient(settings.ledger_url, timeout_s=args.timeout)
    checkpoints = CheckpointStore(
        args.checkpoint_file or settings.checkpoint_file,
        retain=settings.checkpoint_retain,
    )
    submitter = ReplaceableSubmitter(
        ledger,
        sender=settings.signer_id,
        confirm_timeout_s=settings.confirm_timeout_s,
        fee_ceiling=settings.fee_ceiling,
    )
    driver = Driver(ledger, submitter, checkpoints, settings)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    log.info("Signer           : %s", settings.signer_id)
    log.info("Checkpoint file  : %s", checkpoints.path)
    try:
        driver.run(stop)
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down.")
    except ResourceExhaustionError as e:
        log.critical("Signer %s cannot pay for submissions: %s", settings.signer_id, e)
        return 2
    finally:
        ledger.close()
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    settings = Settings.from_env(ledger_url_override=args.ledger_url)
    ledger = LedgerClient(settings.ledger_url, timeout_s=args.timeout)
    try:
        rid = args.round if args.round is not None else ledger.current_round_id()
        if rid == 0:
            print("No rounds yet.")
            return 0
        info = parse_round_info(rid, ledger.round_info(rid), ledger.players_of(rid))
    finally:
        ledger.close()

    now = int(time.time())
    action = legal_action(info, now)
    print("========================================")
    print(f"ROUND {rid}")
    print("========================================")
    print(f"State         : {round_state(info, now).value}")
    print(f"Players       : {len(info.players)}")
    print(f"Entry fee     : {info.entry_fee}")
    print(f"Prize pool    : {info.prize_pool}")
    print(f"Seed          : {hex(info.seed) if info.seed else '(pending)'}")
    print(f"Draws         : {info.draw_count}")
    print(f"Winner        : {info.winner or '-'}")
    print("----------------------------------------")
    print(f"Next action   : {action.label} {action.reason}".rstrip())
    return 0


def cmd_card(args: argparse.Namespace) -> int:
    card = card_for(_parse_seed(args.seed), args.participant)
    print(f"Participant   : {args.participant}")
    print(f"Card          : {' '.join(str(n) for n in card)}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    settings = Settings.from_env(ledger_url_override=args.ledger_url)
    ledger = LedgerClient(settings.ledger_url, timeout_s=args.timeout)
    try:
        audit = verify_round(ledger, args.round)
    finally:
        ledger.close()

    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(audit, f, indent=2)

    print("✅ ROUND VERIFIED")
    print(f"Round         : {args.round}")
    print(f"Seed          : {audit['metadata']['seed']}")
    print(f"Draws         : {' '.join(str(n) for n in audit['draws'])}")
    if audit["winner"]:
        print(f"Winner        : {audit['winner']['address']}")
    if args.out:
        print(f"🧾 Wrote audit: {args.out}")
    return 0


def cmd_join(args: argparse.Namespace) -> int:
    settings = Settings.from_env(ledger_url_override=args.ledger_url, require_signer=True)
    ledger = LedgerClient(settings.ledger_url, timeout_s=args.timeout)
    try:
        submitter = ReplaceableSubmitter(
            ledger,
            sender=settings.signer_id,
            confirm_timeout_s=settings.confirm_timeout_s,
            fee_ceiling=settings.fee_ceiling,
        )
        outcome = submitter.submit(f"join:{args.round}", join(args.round), f"join({args.round})")
    finally:
        ledger.close()
    print(f"Join round {args.round}: {outcome.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bingo-autoloop",
        description="Unattended driver and verifier for ledger-hosted bingo rounds.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--ledger-url", default=None, help="Override ledger URL (else use env).")
    p.add_argument("--timeout", type=float, default=60.0, help="Ledger request timeout seconds.")

    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Drive rounds until interrupted.")
    r.add_argument("--checkpoint-file", default=None, help="Override CHECKPOINT_FILE.")
    r.set_defaults(func=cmd_run)

    s = sub.add_parser("status", help="Show a round's state and its next legal action.")
    s.add_argument("--round", type=int, default=None, help="Round id (default: current).")
    s.set_defaults(func=cmd_status)

    c = sub.add_parser("card", help="Compute a participant's card offline.")
    c.add_argument("--seed", required=True, help="Round seed (decimal or 0x hex).")
    c.add_argument("--participant", required=True, help="Participant address (base58).")
    c.set_defaults(func=cmd_card)

    v = sub.add_parser("verify", help="Recompute a round's draws and winner from its seed.")
    v.add_argument("--round", required=True, type=int, help="Round id.")
    v.add_argument("--out", default=None, help="Write the audit JSON here.")
    v.set_defaults(func=cmd_verify)

    j = sub.add_parser("join", help="Join a round with the configured signer.")
    j.add_argument("--round", required=True, type=int, help="Round id.")
    j.set_defaults(func=cmd_join)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    raise SystemExit(args.func(args))

#!/usr/bin/env python3
"""
HoldReg Management CLI

Commands:
- keygen: Generate an Ed25519 keypair and its registry address
- sign-message: Sign an attestation message (what an actor hands a facilitator)
- sign-request: Build and sign an API command body
- verify-chain: Verify audit log integrity
- show: Show an actor's claim, live balance and verified amount
- export-events: Export the audit log to JSON

Usage:
    python -m holdreg.manage <command> [options]

Examples:
    python -m holdreg.manage keygen
    python -m holdreg.manage sign-message --private-key <b64> --message "I hold"
    python -m holdreg.manage sign-request --private-key <b64> --amount 500 --message "I hold"
    python -m holdreg.manage verify-chain
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone


PRIVATE_KEY_ENV = "HOLDREG_PRIVATE_KEY"


def _private_key(args) -> str:
    key = args.private_key or os.environ.get(PRIVATE_KEY_ENV, "")
    if not key:
        raise SystemExit(f"Error: pass --private-key or set {PRIVATE_KEY_ENV}")
    return key


def cmd_keygen(args):
    """Generate a new keypair."""
    from .core import Signer

    private_key, address = Signer.generate_keypair()

    print("[OK] Keypair generated")
    print(f"\n  Address:")
    print(f"  {address}")
    print(f"\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    return 0


def cmd_sign_message(args):
    """Sign an attestation message with the actor's key."""
    from .core import Signer

    private_key = _private_key(args)
    signature = Signer.sign_personal_message(args.message, private_key)

    if args.json:
        print(json.dumps({
            "actor": Signer.address_from_private_key(private_key),
            "message": args.message,
            "signature": signature,
        }, indent=2))
    else:
        print(signature)
    return 0


def cmd_sign_request(args):
    """Build a signed /register or /register-for body."""
    from .api.auth import sign_request
    from .api.routes import RegisterForRequest, RegisterRequest
    from .core import Signer

    private_key = _private_key(args)
    caller = Signer.address_from_private_key(private_key)
    issued_at = datetime.now(timezone.utc)

    if args.actor:
        if not args.signature:
            print("Error: --signature is required with --actor")
            return 1
        body = RegisterForRequest(
            caller=caller,
            actor=args.actor,
            amount=args.amount,
            message=args.message,
            signature=args.signature,
            issued_at=issued_at,
        )
    else:
        body = RegisterRequest(
            caller=caller,
            amount=args.amount,
            message=args.message,
            issued_at=issued_at,
        )

    signed = sign_request(body, private_key)
    print(json.dumps(signed.model_dump(mode="json"), indent=2))
    return 0


def cmd_verify_chain(args):
    """Verify the integrity of the audit log."""
    from .bootstrap import build_registry_from_env
    from .core import ChainError

    print("Loading registry...")
    try:
        registry = build_registry_from_env(verify=True)
    except ChainError as e:
        print(f"[FAIL] Chain integrity verification FAILED: {e}")
        return 1

    print(f"Registry loaded: {registry.event_count} events")

    if registry.verify_chain_integrity():
        print("[OK] Chain integrity verified OK")
        head = registry.store.get_head()
        if head.last_event_hash:
            print(f"  Chain head: {head.last_event_hash[:16]}...")
        return 0
    else:
        print("[FAIL] Chain integrity verification FAILED!")
        return 1


def cmd_show(args):
    """Show one actor's holding status."""
    from .bootstrap import build_registry_from_env
    from .core import OracleError, Signer

    if not Signer.is_address(args.actor):
        print(f"Error: invalid address {args.actor}")
        return 1

    registry = build_registry_from_env(verify=False)
    try:
        status = registry.holding_status(args.actor)
    except OracleError as e:
        print(f"[FAIL] Balance source unavailable: {e}")
        return 1
    eligibility = registry.eligibility(args.actor)

    print(f"Actor: {status.actor}")
    print(f"  Claimed amount:  {status.claimed_amount}")
    print(f"  Live balance:    {status.balance}")
    print(f"  Verified amount: {status.verified_amount}")
    if status.is_backed:
        print("  Claim: [OK] Backed by live balance")
    elif status.claimed_amount > 0:
        print("  Claim: [WARN] Not backed by live balance")
    else:
        print("  Claim: none")
    print(f"  Eligible: {eligibility.eligible}  Standing: {eligibility.standing}")
    return 0


def cmd_export_events(args):
    """Export the audit log to a JSON file."""
    from .bootstrap import build_registry_from_env

    print("Loading events...")
    registry = build_registry_from_env(verify=False)
    events = registry.get_events()

    print(f"Found {len(events)} events")

    export_data = [event.model_dump(mode="json") for event in events]

    output_file = args.output or "registry_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(events)} events to {output_file}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="HoldReg Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # keygen
    subparsers.add_parser(
        "keygen",
        help="Generate an Ed25519 keypair and address",
    )

    # sign-message
    p_sign_msg = subparsers.add_parser(
        "sign-message",
        help="Sign an attestation message",
    )
    p_sign_msg.add_argument("--private-key", help=f"Base64 private key (or set {PRIVATE_KEY_ENV})")
    p_sign_msg.add_argument("--message", required=True, help="Attestation message")
    p_sign_msg.add_argument("--json", action="store_true", help="Print actor, message and signature as JSON")

    # sign-request
    p_sign_req = subparsers.add_parser(
        "sign-request",
        help="Build a signed API command body",
    )
    p_sign_req.add_argument("--private-key", help=f"Caller's base64 private key (or set {PRIVATE_KEY_ENV})")
    p_sign_req.add_argument("--amount", type=int, required=True, help="Claimed amount")
    p_sign_req.add_argument("--message", required=True, help="Attestation message")
    p_sign_req.add_argument("--actor", help="Register for this actor (facilitators only)")
    p_sign_req.add_argument("--signature", help="Actor's attestation signature (with --actor)")

    # verify-chain
    subparsers.add_parser(
        "verify-chain",
        help="Verify audit log integrity",
    )

    # show
    p_show = subparsers.add_parser(
        "show",
        help="Show an actor's holding status",
    )
    p_show.add_argument("actor", help="Actor address")

    # export-events
    p_export = subparsers.add_parser(
        "export-events",
        help="Export all events to JSON",
    )
    p_export.add_argument("--output", "-o", help="Output file (default: registry_export.json)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "keygen": cmd_keygen,
        "sign-message": cmd_sign_message,
        "sign-request": cmd_sign_request,
        "verify-chain": cmd_verify_chain,
        "show": cmd_show,
        "export-events": cmd_export_events,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Agent Identity - agent-side command line tooling

Usage:
    agentid keygen [--out key.json]                 Create an Ed25519 agent key
    agentid sign-request --key-file key.json        Print a signed-request JSON body
    agentid sign-challenge --key-file key.json --challenge STRING
                                                    Print the challenge signature (hex)
"""

import argparse
import json
import logging
import os
import secrets
import sys
import time
from pathlib import Path
from typing import List, Optional

from agentid_gateway.auth import canonical_request_message
from agentid_gateway.keys import Ed25519KeyPair

logger = logging.getLogger("agentid_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def load_key_file(path: Path) -> Ed25519KeyPair:
    """Load an agent key written by `keygen`."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"KEY_FILE_ERROR: invalid JSON in '{path}': {e}") from e
    seed_hex = data.get("private_key_hex") if isinstance(data, dict) else None
    if not seed_hex:
        raise ValueError(f"KEY_FILE_ERROR: '{path}' has no private_key_hex")
    return Ed25519KeyPair.from_seed(bytes.fromhex(seed_hex))


def cmd_keygen(args) -> int:
    kp = Ed25519KeyPair.generate()
    public = {
        "hex": kp.public_key_hex,
        "base64": kp.public_key_b64,
        "spki": kp.public_key_spki_b64,
    }
    if args.out:
        out = Path(args.out)
        out.write_text(
            json.dumps({"private_key_hex": kp.private_key_bytes.hex(), "public_key_hex": kp.public_key_hex}, indent=2),
            encoding="utf-8",
        )
        os.chmod(out, 0o600)
        logger.info("Wrote agent key to %s", out)
    else:
        public["private_key_hex"] = kp.private_key_bytes.hex()
    print(json.dumps(public, indent=2))
    return 0


def build_signed_request(kp: Ed25519KeyPair, public_key_format: str = "spki", timestamp_ms: Optional[int] = None, nonce: Optional[str] = None) -> dict:
    agent_public_key = kp.public_key_as(public_key_format)
    ts = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    nonce = nonce or secrets.token_hex(16)
    message = canonical_request_message(agent_public_key, ts, nonce)
    return {
        "agentPublicKey": agent_public_key,
        "timestamp": ts,
        "nonce": nonce,
        "signature": kp.sign(message).hex(),
    }


def cmd_sign_request(args) -> int:
    kp = load_key_file(args.key_file)
    body = build_signed_request(kp, args.public_key_format)
    for item in args.field or []:
        key, sep, value = item.partition("=")
        if not sep:
            print(f"ERROR: --field expects KEY=VALUE, got {item!r}", file=sys.stderr)
            return 2
        body[key] = value
    print(json.dumps(body))
    return 0


def cmd_sign_challenge(args) -> int:
    kp = load_key_file(args.key_file)
    print(kp.sign(args.challenge).hex())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Agent Identity CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Create an Ed25519 agent key")
    keygen_parser.add_argument("--out", help="Write the key to this file (mode 0600)")
    keygen_parser.set_defaults(func=cmd_keygen)

    sr_parser = subparsers.add_parser("sign-request", help="Print a signed-request JSON body")
    sr_parser.add_argument("--key-file", required=True, type=Path, help="Key file written by keygen")
    sr_parser.add_argument(
        "--public-key-format",
        default="spki",
        choices=["hex", "base64", "spki"],
        help="Encoding of agentPublicKey (default: spki)",
    )
    sr_parser.add_argument("--field", action="append", help="Extra body field KEY=VALUE (repeatable)")
    sr_parser.set_defaults(func=cmd_sign_request)

    sc_parser = subparsers.add_parser("sign-challenge", help="Sign a verification challenge")
    sc_parser.add_argument("--key-file", required=True, type=Path, help="Key file written by keygen")
    sc_parser.add_argument("--challenge", required=True, help="Exact challenge string from /v1/verify/start")
    sc_parser.set_defaults(func=cmd_sign_challenge)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    try:
        return args.func(args)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Sign a sign-in challenge with a local key (development helper)."""
from __future__ import annotations

import argparse
import json
import os
import sys

from eth_account import Account
from eth_account.messages import encode_defunct


def main() -> int:
    parser = argparse.ArgumentParser(description="Sign a custody sign-in challenge message")
    parser.add_argument("--message", required=True, help="Exact challenge message returned by /{scope}/auth")
    parser.add_argument(
        "--private-key",
        default=os.environ.get("SIGNER_PRIVATE_KEY"),
        help="Hex private key (defaults to $SIGNER_PRIVATE_KEY)",
    )
    args = parser.parse_args()

    if not args.private_key:
        parser.error("a private key is required (use --private-key or SIGNER_PRIVATE_KEY)")

    account = Account.from_key(args.private_key)
    signed = account.sign_message(encode_defunct(text=args.message))
    json.dump(
        {"address": account.address.lower(), "signed_proof": "0x" + bytes(signed.signature).hex()},
        sys.stdout,
        indent=2,
    )
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())

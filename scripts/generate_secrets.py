#!/usr/bin/env python3
"""Print fresh secrets for CUSTODY_VAULT_ENCRYPTION_KEY and CUSTODY_TOKEN_SIGNING_SECRET."""
from __future__ import annotations

import argparse
import secrets


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate custody service secrets in .env format")
    parser.add_argument("--token-bytes", type=int, default=48, help="Token signing secret size (min 32)")
    args = parser.parse_args()
    if args.token_bytes < 32:
        parser.error("--token-bytes must be at least 32")

    print(f"CUSTODY_VAULT_ENCRYPTION_KEY={secrets.token_hex(32)}")
    print(f"CUSTODY_TOKEN_SIGNING_SECRET={secrets.token_urlsafe(args.token_bytes)}")


if __name__ == "__main__":
    main()

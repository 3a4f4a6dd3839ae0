#!/usr/bin/env python3
"""Generate an RSA signing key for session tokens.

Usage:
    # Print a PEM key suitable for JWT_PRIVATE_KEY:
    python scripts/generate_signing_key.py

    # Write it to a file (mode 0600) and show the matching public JWK:
    python scripts/generate_signing_key.py --output /srv/podauth/.jwt_signing_key.pem --show-jwk

    # Emit a single-line value for a .env file:
    python scripts/generate_signing_key.py --env
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def write_key(path: Path, pem: str, force: bool = False) -> None:
    if path.exists() and not force:
        raise FileExistsError(f"{path} already exists (use --force to overwrite)")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, pem.encode())
    finally:
        os.close(fd)


def public_jwk(pem: str, key_id: str) -> dict:
    # Import here to avoid loading config before env vars are set
    from podauth.service.tokens import TokenManager

    manager = TokenManager(pem, issuer="podauth", key_id=key_id)
    return manager.public_jwk()


def main():
    parser = argparse.ArgumentParser(
        description="Generate an RSA signing key for podauth session tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--output", type=Path, help="Write the PEM key to this path")
    parser.add_argument(
        "--key-size", type=int, default=2048, help="RSA modulus size in bits"
    )
    parser.add_argument(
        "--key-id",
        default=os.environ.get("JWT_KEY_ID", "default"),
        help="Key id for the public JWK (or set JWT_KEY_ID env var)",
    )
    parser.add_argument(
        "--env",
        action="store_true",
        help="Print JWT_PRIVATE_KEY=... with escaped newlines",
    )
    parser.add_argument("--show-jwk", action="store_true", help="Print the public JWK")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    args = parser.parse_args()

    if args.key_size < 2048:
        print("Error: --key-size must be at least 2048")
        sys.exit(1)

    from podauth.config import generate_private_key_pem

    pem = generate_private_key_pem(args.key_size)

    try:
        if args.output:
            write_key(args.output, pem, force=args.force)
            print(f"Wrote signing key to {args.output}")
        elif args.env:
            escaped = pem.strip().replace("\n", "\\n")
            print(f'JWT_PRIVATE_KEY="{escaped}"')
        else:
            print(pem, end="")

        if args.show_jwk:
            print(json.dumps(public_jwk(pem, args.key_id), indent=2))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Generate an RSA signing key pair for the broker.

Prints ``JWT_PRIVATE_KEY``, ``JWT_PUBLIC_KEY`` and ``JWT_KEY_ID`` lines with
newlines escaped so the output can be appended to a ``.env`` file::

    python -m scripts.generate_signing_keys --key-id broker-key-2 >> .env
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone

from broker.services.signing_keys import generate_signing_key_pair


def _escape(pem: str) -> str:
    return pem.strip().replace("\n", "\\n")


def render_env_lines(key_id: str, *, key_size: int = 2048) -> list[str]:
    pair = generate_signing_key_pair(key_id, key_size=key_size)
    return [
        f'JWT_PRIVATE_KEY="{_escape(pair.private_key_pem)}"',
        f'JWT_PUBLIC_KEY="{_escape(pair.public_key_pem)}"',
        f"JWT_KEY_ID={pair.key_id}",
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate broker signing keys.")
    parser.add_argument(
        "--key-id",
        default=f"broker-{datetime.now(timezone.utc):%Y%m%d}",
        help="Key identifier published in the JWKS (default: broker-<date>).",
    )
    parser.add_argument("--key-size", type=int, default=2048)
    args = parser.parse_args(argv)

    for line in render_env_lines(args.key_id, key_size=args.key_size):
        print(line)
    return 0


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())

# src/xchat_core/scripts/keygen.py
"""Generate an identity key pair and print the invite to share with a peer.

The invite is the base64 public key; send it to the peer over any channel.
Keep the secret key private; it never leaves this machine.
"""

from __future__ import annotations

import argparse
import base64
import json
import logging

from xchat_core.core.settings import settings
from xchat_core.services.identity import encode_public_key, fingerprint, generate_key_pair

logger = logging.getLogger(__name__)


def build_identity() -> dict[str, str]:
    """Return a fresh identity as printable strings."""
    key_pair = generate_key_pair()
    return {
        "invite": encode_public_key(key_pair.public_key),
        "fingerprint": fingerprint(key_pair.public_key),
        "secret_key": base64.b64encode(key_pair.secret_key).decode("ascii"),
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=f"Generate an {settings.app_name} identity key pair"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the identity as a JSON object",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=settings.log_level.upper())
    identity = build_identity()
    logger.info("Generated identity with fingerprint %s", identity["fingerprint"])
    if args.json:
        print(json.dumps(identity))
        return
    print(f"Invite:      {identity['invite']}")
    print(f"Fingerprint: {identity['fingerprint']}")
    print(f"Secret key:  {identity['secret_key']}")


if __name__ == "__main__":
    main()

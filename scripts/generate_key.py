#!/usr/bin/env python3
"""
Key Generator
=============

Prints a fresh secp256k1 private key (hex) and its x-only public key.

Usage:
    python scripts/generate_key.py >> .env
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.crypto import Identity


def main() -> None:
    identity = Identity.generate()
    print(f"NOSTR_PRIVATE_KEY={identity.export_hex()}")
    print(f"# pubkey: {identity.pubkey}")


if __name__ == "__main__":
    main()

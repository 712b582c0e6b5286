"""License key generation.

Two kinds of keys exist:
- provisional keys (L1, L2, ...) handed out at enqueue time, cheap and
  only unique within one payment event
- final keys (KEY-XXXX-XXXX-XXXX-XXXX), allocated once during processing
  and checked against the licenses table
"""

from __future__ import annotations

import re
import secrets

# Excludes characters that are easy to confuse (0/O, 1/I)
KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
KEY_SEGMENTS = (4, 4, 4, 4)
KEY_PREFIX = "KEY"

_PROVISIONAL_RE = re.compile(r"^L\d+$")


def generate_license_key() -> str:
    """Generate a random license key of the form KEY-XXXX-XXXX-XXXX-XXXX."""
    segments = [
        "".join(secrets.choice(KEY_ALPHABET) for _ in range(length)) for length in KEY_SEGMENTS
    ]
    return "-".join([KEY_PREFIX, *segments])


def provisional_keys(count: int) -> list[str]:
    """Placeholder keys for a purchase of `count` licenses.

    They are deterministic so that a redelivered payment event produces the
    same (payment_intent_id, license_key) pairs and is caught by dedup.
    """
    if count < 1:
        msg = f"count must be positive, got {count}"
        raise ValueError(msg)
    return [f"L{i}" for i in range(1, count + 1)]


def is_provisional_key(key: str) -> bool:
    return bool(_PROVISIONAL_RE.match(key))

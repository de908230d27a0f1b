from __future__ import annotations

import hashlib
import hmac
import secrets

# Compared against when the booking is unknown so both paths do the same work.
_DECOY_SALT = secrets.token_hex(16)
_DECOY_DIGEST = hashlib.sha256(b"decoy").hexdigest()


def generate_pin() -> str:
    return f"{secrets.randbelow(10_000):04d}"


def new_salt() -> str:
    return secrets.token_hex(16)


def pin_digest(salt: str, pin: str) -> str:
    return hmac.new(salt.encode("utf-8"), pin.encode("utf-8"), hashlib.sha256).hexdigest()


def pins_match(salt: str | None, expected_digest: str | None, candidate: str) -> bool:
    if salt is None or expected_digest is None:
        salt, expected_digest = _DECOY_SALT, _DECOY_DIGEST
    supplied = pin_digest(salt, candidate or "")
    return hmac.compare_digest(supplied, expected_digest)


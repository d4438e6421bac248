"""Identifier generation for tasks, events, runs and workflows."""

import random
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def issue_id(prefix: str) -> str:
    """Return '<prefix>_<base36 millis>_<6 random chars>'."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_ALPHABET, k=6))
    return f"{prefix}_{stamp}_{suffix}"

"""Timestamps and short random ids used in persisted records."""

import secrets
import string
import time
from datetime import datetime, timezone

_BASE36 = string.digits + string.ascii_lowercase


def base36(number: int) -> str:
    if number <= 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def make_id(prefix: str, now_ms: int | None = None) -> str:
    """``<prefix>_<base36 epoch ms>_<6 random chars>``, e.g. ``turn_m1x2..._k3j9aa``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}_{base36(now_ms)}_{suffix}"


def iso_now(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

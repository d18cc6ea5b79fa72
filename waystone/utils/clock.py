"""Wall-clock helpers. Everything in the engine speaks epoch milliseconds."""

from __future__ import annotations

import time

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def now_ms() -> int:
    return int(time.time() * 1000)


def resolve_now(now: int | None, clock=now_ms) -> int:
    """Return ``now`` when the caller pinned a time, else read ``clock``."""
    return int(now) if now is not None else int(clock())

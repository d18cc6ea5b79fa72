"""Named wrapper for side effects that must never undo committed state.

Rewards, notifications and capability revocations run after the primary
transaction has committed. A failure there is logged with the caller's
context and reported back as a ``SideEffectResult``; it is never re-raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from waystone.logging_utils import get_logger

log = get_logger("waystone.side_effects")


@dataclass(frozen=True)
class SideEffectResult:
    label: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


def best_effort(label: str, fn: Callable[..., Any], *args: Any, **context: Any) -> SideEffectResult:
    """Call ``fn(*args)``; log and swallow any exception.

    ``context`` is only used for the log line (user id, encounter id...), it is
    not forwarded to ``fn``.
    """
    try:
        value = fn(*args)
    except Exception as exc:  # noqa: BLE001 - best-effort boundary
        log.warn(event="side_effect_failed", effect=label, error=f"{type(exc).__name__}: {exc}", **context)
        return SideEffectResult(label=label, ok=False, error=str(exc))
    return SideEffectResult(label=label, ok=True, value=value)


__all__ = ["SideEffectResult", "best_effort"]

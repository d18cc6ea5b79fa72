"""Minimal structured logging helper.

Provides a lightweight wrapper around print() to emit key=value pairs with a
timestamp and level. Engine events (travel completions, boss spawns, batch
failures) go through here so they stay greppable in worker output.

Usage:
    from waystone.logging_utils import get_logger
    log = get_logger("waystone.boss")
    log.info(event="boss_spawned", encounter_id=3, tier=2)

    # Context bound once and repeated on every line
    worker_log = log.bind(worker="3f2a9c1e")
    worker_log.info(event="scheduler_started")

None values are dropped; bools print as true/false; other non-numeric values
are str()'d with spaces replaced. Reserved keys: level, ts, logger.
Environment (read on every call so tests can flip them):
    WAYSTONE_LOG_LEVEL  debug|info|warn|error (default info)
    WAYSTONE_LOG_JSON   1 to emit one JSON object per line
"""

from __future__ import annotations

import json
import os
import sys
import time

LEVELS = {"debug": 10, "info": 20, "warn": 30, "warning": 30, "error": 40}


def _current_level() -> int:
    return LEVELS.get(os.getenv("WAYSTONE_LOG_LEVEL", "info").lower(), 20)


def _json_mode() -> bool:
    return os.getenv("WAYSTONE_LOG_JSON", "0").lower() in ("1", "true", "yes", "on")


def _kv(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return str(value).replace(" ", "_")


def _format(level: str, fields: dict) -> str:
    fields = {k: v for k, v in fields.items() if v is not None}
    if _json_mode():
        return json.dumps(dict(fields, level=level, ts=int(time.time())), separators=(",", ":"), default=repr)
    head = [f"level={level}", f"ts={int(time.time())}"]
    return " ".join(head + [f"{k}={_kv(v)}" for k, v in fields.items()])


class _Logger:
    def __init__(self, name: str | None = None, context: dict | None = None):
        self.name = name or "waystone"
        self.context = dict(context or {})

    def bind(self, **context) -> "_Logger":
        """Child logger that adds ``context`` to every line; call-site fields win."""
        return _Logger(self.name, {**self.context, **context})

    def _log(self, lvl: str, **fields):
        if LEVELS[lvl] < _current_level():
            return
        record = {"logger": self.name, **self.context, **fields}
        print(_format(lvl, record), file=sys.stderr if lvl == "error" else sys.stdout)

    def debug(self, **fields):
        self._log("debug", **fields)

    def info(self, **fields):
        self._log("info", **fields)

    def warn(self, **fields):
        self._log("warn", **fields)

    def error(self, **fields):
        self._log("error", **fields)


_LOGGER_CACHE = {}


def get_logger(name: str):
    if name not in _LOGGER_CACHE:
        _LOGGER_CACHE[name] = _Logger(name)
    return _LOGGER_CACHE[name]


log = get_logger("waystone")

"""
project: Waystone
module: server.py
License: MIT

Server bootstrap and worker entry points.

Exposes helpers to start the Socket.IO server (with the world scheduler as a
background task) or a standalone scheduler worker, plus the startup chores
shared by both: logging setup, default GameConfig rows and lightweight column
migrations for older SQLite databases.
"""

import json
import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler

from sqlalchemy import inspect, text

from waystone import create_app, db, socketio
from waystone.logging_utils import log


def start_server(host="0.0.0.0", port=5000, debug: bool = False):  # pragma: no cover (integration / runtime only)
    """Start the Socket.IO server; the scheduler runs as a background task.

    Set WAYSTONE_SCHEDULER=0 to serve the read-only API without ticking the
    world (e.g. when a separate ``worker`` process owns the scheduler).
    """
    app = create_app()
    _configure_logging(app)
    stop = threading.Event()
    if app.config.get("SCHEDULER_ENABLED"):
        socketio.start_background_task(_scheduler_task, app, stop)
    try:
        print(f"[INFO] Starting Socket.IO server on {host}:{port} (async_mode={socketio.async_mode})")
        socketio.run(app, host=host, port=port, debug=debug, use_reloader=False, allow_unsafe_werkzeug=True)
    except KeyboardInterrupt:
        print("\n[INFO] Server stopped by user (Ctrl+C)")
        sys.exit(0)
    finally:
        stop.set()


def _scheduler_task(app, stop: threading.Event):  # pragma: no cover (runtime only)
    from waystone.services.scheduler import build_default_driver

    with app.app_context():
        build_default_driver().run(stop, sleep=socketio.sleep)


def start_worker(once: bool = False, stop: threading.Event = None):
    """Run the scheduler in the foreground. ``once`` runs a single tick and returns its report."""
    from waystone.services.scheduler import build_default_driver

    app = create_app()
    _configure_logging(app)
    with app.app_context():
        driver = build_default_driver()
        if once:
            return driver.tick()
        stop = stop or threading.Event()
        try:
            driver.run(stop)
        except KeyboardInterrupt:
            print("\n[INFO] Worker stopped by user (Ctrl+C)")
        return None


def _configure_logging(app):
    """Configure logging to both console and a rotating file in instance/.

    The file path will be instance/app.log. Retains a few backups to avoid growth.
    """
    log_dir = app.instance_path
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        pass
    log_path = os.path.join(log_dir, "app.log")

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(fmt)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(fmt)

    # Avoid duplicate handlers if reconfigured
    for h in list(root.handlers):
        root.removeHandler(h)

    root.addHandler(file_handler)
    root.addHandler(console)


def _seed_game_config():
    """Insert default engine tunables (regen, boss, travel, scheduler) if missing.

    Existing rows are never overwritten, so edits made with ``config-set``
    survive restarts. Safe to call multiple times.
    """
    from waystone.game_config import DEFAULT_ROWS
    from waystone.models import GameConfig

    existing = {row.key for row in GameConfig.query.all()}
    created = 0
    for key, value in DEFAULT_ROWS.items():
        if key not in existing:
            db.session.add(GameConfig(key=key, value=json.dumps(value, sort_keys=True)))
            created += 1
    if created:
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


# Columns added after the first release; older databases get them via ALTER TABLE.
_ADDED_COLUMNS = [
    ("player", "last_arrival_at", "BIGINT NOT NULL DEFAULT 0"),
    ("player", "locations_visited", "INTEGER NOT NULL DEFAULT 0"),
    ("player", "gems", "INTEGER NOT NULL DEFAULT 0"),
    ("player", "regen_effects", "TEXT NOT NULL DEFAULT '{}'"),
    ("location", "last_encounter_at", "BIGINT"),
    ("boss_encounter", "active_slot", "INTEGER"),
    ("cooldown_setting", "holder", "VARCHAR(64)"),
]


def _run_migrations():
    """Very lightweight migration helper for SQLite.

    Adds missing columns using ALTER TABLE if needed. SQLite cannot add a
    UNIQUE column, so ``boss_encounter.active_slot`` gets a unique index and
    its active rows are backfilled with slots in id order.
    """
    added = []
    for table, column, ddl in _ADDED_COLUMNS:
        inspector = inspect(db.engine)
        if table not in set(inspector.get_table_names()):
            continue
        cols = {c["name"] for c in inspector.get_columns(table)}
        if column in cols:
            continue
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            added.append(f"{table}.{column}")
        except Exception:
            db.session.rollback()
            raise

    if "boss_encounter.active_slot" in added:
        rows = db.session.execute(
            text("SELECT id FROM boss_encounter WHERE active = 1 ORDER BY id")
        ).scalars().all()
        for slot, enc_id in enumerate(rows, start=1):
            db.session.execute(text("UPDATE boss_encounter SET active_slot = :s WHERE id = :i"), {"s": slot, "i": enc_id})
        db.session.execute(
            text("CREATE UNIQUE INDEX IF NOT EXISTS uq_boss_active_slot ON boss_encounter (active_slot)")
        )
        db.session.commit()
    if added:
        log.info(event="migrations_applied", columns=",".join(added))

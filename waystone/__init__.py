"""
project: Waystone
module: __init__.py
License: MIT

Flask application factory and core extensions setup.

This module wires together the Flask app, SQLAlchemy and Flask-SocketIO for
the world engine. Configuration is sourced from environment variables with
reasonable defaults for development. A local `instance/` directory is used
for SQLite and other runtime data.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

# Load .env if present so `DATABASE_URL`, `SPAWN_LOCATION_ID`, etc. can be
# supplied without exporting shell variables during development.
load_dotenv()

db = SQLAlchemy(session_options={"expire_on_commit": False})
socketio = SocketIO()


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: D401
    # SQLite-only pragmas
    module = type(dbapi_connection).__module__
    if "sqlite" not in module:
        return
    # Let SQLAlchemy own BEGIN (see _sqlite_begin) so SAVEPOINTs nest inside one real transaction
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=10000")  # 10 seconds
    finally:
        cursor.close()


@event.listens_for(Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def create_app(overrides: dict | None = None) -> Flask:
    """Build the Flask app, bind extensions and make sure tables exist.

    ``overrides`` is applied after environment configuration; tests use it to
    point ``SQLALCHEMY_DATABASE_URI`` at an in-memory database.
    """
    app = Flask(__name__, instance_relative_config=True)
    try:
        os.makedirs(app.instance_path, exist_ok=True)
    except OSError:
        # Read-only deployments keep their database elsewhere (DATABASE_URL)
        pass

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        db_path = Path(app.instance_path) / "world.db"
        # Use POSIX path for SQLAlchemy URI compatibility across OS
        database_url = f"sqlite:///{db_path.as_posix()}"

    app.config.update(
        SECRET_KEY=os.getenv("SECRET_KEY", "dev-secret-change-me"),
        SQLALCHEMY_DATABASE_URI=database_url,
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        # Designated home/spawn location: never a boss candidate, fallback home for travellers
        SPAWN_LOCATION_ID=os.getenv("SPAWN_LOCATION_ID") or None,
        DEFAULT_LOCATION_ID=os.getenv("DEFAULT_LOCATION_ID") or None,
        TICK_SECONDS=float(os.getenv("WAYSTONE_TICK_SECONDS", "60")),
        SCHEDULER_ENABLED=_env_flag("WAYSTONE_SCHEDULER", "1"),
    )
    if overrides:
        app.config.update(overrides)

    engine_opts = {}
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        engine_opts["connect_args"] = {
            "timeout": 10,  # busy timeout (seconds) for sqlite
            "check_same_thread": False,  # scheduler thread shares the engine
        }
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", engine_opts)

    db.init_app(app)
    socketio.init_app(
        app,
        async_mode=os.getenv("SOCKETIO_ASYNC_MODE") or None,
        cors_allowed_origins=os.getenv("CORS_ALLOWED_ORIGINS", "*"),
        ping_interval=20,
        ping_timeout=10,
    )

    from waystone.routes.world_api import bp_world

    app.register_blueprint(bp_world)

    with app.app_context():
        from waystone import models  # noqa: F401  register tables
        from waystone.server import _run_migrations, _seed_game_config

        db.create_all()
        _run_migrations()
        _seed_game_config()
    return app

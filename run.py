"""Waystone world engine CLI entry point.

Provides subcommands for running the Socket.IO server, the standalone
scheduler worker and a handful of operator actions (single tick, boss status,
manual defeat, capability sweep, regen status, GameConfig get/set).
Accepts configuration via flags and environment variables, with .env loading.

Run `python run.py --help` for details.
"""

import argparse
import json
import os
import signal
import sys
from textwrap import dedent

from colorama import Fore, Style
from colorama import init as _color_init
from dotenv import load_dotenv

_color_init()
# Disable colors if output is not a real terminal (e.g., during pytest capture)
try:
    _COLOR_ENABLED = sys.stdout.isatty()
except (AttributeError, ValueError):  # pragma: no cover - environment dependent
    _COLOR_ENABLED = False

__version__ = "0.4.0"


def parse_args(argv: list[str]) -> argparse.Namespace:
    description = """
    Waystone World Engine

    Run the real-time Flask-SocketIO server (scheduler included), a standalone
    scheduler worker, or one-off maintenance commands against the world
    database. If both CLI flags and environment variables are present, CLI
    flags take precedence.
    """

    epilog = dedent(
        """
        Environment variables:
          HOST                   Bind address for the web server (default: 0.0.0.0)
          PORT                   Port for the web server (default: 5000)
          DATABASE_URL           SQLAlchemy database URI (default: sqlite:///instance/world.db)
          SPAWN_LOCATION_ID      Home location; never a boss candidate
          DEFAULT_LOCATION_ID    Fallback home for travellers with a stale origin
          WAYSTONE_TICK_SECONDS  Scheduler tick interval (default: 60)
          WAYSTONE_SCHEDULER     0 to run the server without the scheduler
          WAYSTONE_LOG_LEVEL     debug|info|warn|error (default: info)

        Examples:
          # Run the server (and scheduler) on the default host and port
          python run.py server

          # Run only the scheduler, one tick, then exit
          python run.py worker --once

          # Inspect and manipulate the boss encounter
          python run.py boss-status
          python run.py record-defeat 12

          # Tune boss tier weights
          python run.py config-set boss '{"tier_weights":{"1":50,"2":25,"3":15,"4":8,"5":2}}'
        """
    )

    parser = argparse.ArgumentParser(
        prog="Waystone",
        description=dedent(description),
        epilog=epilog,
        formatter_class=argparse.RawTextHelpFormatter,
    )

    parser.add_argument(
        "--env-file",
        dest="env_file",
        help="Path to a .env file to load before processing flags",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Waystone World Engine {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # server subcommand
    server_parser = subparsers.add_parser(
        "server",
        help="Run the Socket.IO web server with the world scheduler",
        formatter_class=argparse.RawTextHelpFormatter,
        description="Run the real-time Flask/Socket.IO server",
    )
    server_parser.add_argument(
        "--host",
        default=None,
        help="Host interface to bind (default: env HOST or 0.0.0.0)",
    )
    server_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: env PORT or 5000)",
    )
    server_parser.add_argument(
        "--db",
        dest="db_uri",
        default=None,
        help="Database URI (default: env DATABASE_URL or sqlite:///instance/world.db)",
    )
    server_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode with verbose error pages",
    )
    server_parser.set_defaults(command="server")

    # worker subcommand
    worker_parser = subparsers.add_parser(
        "worker",
        help="Run the world scheduler in the foreground (no web server)",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    worker_parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    worker_parser.add_argument("--db", dest="db_uri", default=None, help="Database URI override")
    worker_parser.set_defaults(command="worker")

    # tick subcommand
    tick_parser = subparsers.add_parser(
        "tick",
        help="Run one scheduler tick (travel, regen, boss) and print the report",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    tick_parser.set_defaults(command="tick")

    # boss-status
    boss_parser = subparsers.add_parser(
        "boss-status",
        help="List active boss encounters",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    boss_parser.set_defaults(command="boss-status")

    # record-defeat
    defeat_parser = subparsers.add_parser(
        "record-defeat",
        help="Mark an active boss encounter as defeated",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    defeat_parser.add_argument("encounter_id", type=int, help="Encounter id")
    defeat_parser.set_defaults(command="record-defeat")

    # sweep-roles
    sweep_parser = subparsers.add_parser(
        "sweep-roles",
        help="Revoke fighting capabilities not backed by an active encounter",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    sweep_parser.set_defaults(command="sweep-roles")

    # regen-status
    regen_parser = subparsers.add_parser(
        "regen-status",
        help="Show a player's vitals and current regeneration rates",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    regen_parser.add_argument("user_id", help="Player user id")
    regen_parser.set_defaults(command="regen-status")

    # config-get
    cfg_get_parser = subparsers.add_parser(
        "config-get",
        help="Print a GameConfig value by key",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    cfg_get_parser.add_argument("key", help="Config key (regen, boss, travel, scheduler)")
    cfg_get_parser.set_defaults(command="config-get")

    # config-set
    cfg_set_parser = subparsers.add_parser(
        "config-set",
        help="Set a GameConfig key to a JSON object",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    cfg_set_parser.add_argument("key", help="Config key")
    cfg_set_parser.add_argument("value", help="JSON object (quote externally)")
    cfg_set_parser.set_defaults(command="config-set")

    # If no subcommand provided, default to server
    if len(argv) == 0:
        argv = ["server"]

    args = parser.parse_args(argv)
    return args


def _paint(color: str, text: str) -> str:
    return f"{color}{text}{Style.RESET_ALL}" if _COLOR_ENABLED else text


def _print_banner(mode: str, host: str, port: int, db_banner: str) -> None:
    title = _paint(Fore.CYAN + Style.BRIGHT, "Waystone World Engine")

    def label(text: str) -> str:
        return _paint(Fore.YELLOW, text)

    def value(val) -> str:
        return _paint(Fore.GREEN, str(val))

    divider = _paint(Fore.MAGENTA, "=" * 40)
    lines = [
        divider,
        f"  {title}",
        divider,
        f"  {label('Mode:'):12} {value(mode.upper())}",
        f"  {label('Database:'):12} {value(db_banner)}",
    ]
    if mode == "server":
        lines += [
            f"  {label('Host:'):12} {value(host)}",
            f"  {label('Port:'):12} {value(port)}",
            f"  {label('Scheduler:'):12} {value('NO' if os.getenv('WAYSTONE_SCHEDULER') == '0' else 'YES')}",
        ]
    lines += [divider, ""]
    print("\n".join(lines))


def _with_app(fn):
    """Build the app and run ``fn()`` inside its context."""
    from waystone import create_app

    app = create_app()
    with app.app_context():
        return fn()


def _boss_manager():
    from waystone.services.boss_service import BossLifecycleManager
    from waystone.services.hooks import DbFightingRoles, SocketIONotifier

    return BossLifecycleManager(roles=DbFightingRoles(), notifier=SocketIONotifier())


def _cmd_tick() -> int:
    from waystone.services.scheduler import build_default_driver

    report = build_default_driver().tick()
    print(f"tick={report.tick} travels={report.completed_travels}", end=" ")
    if report.regen:
        print(f"regen_updated={report.regen.updated} regen_failed={report.regen.failed}", end=" ")
    if report.boss:
        print(f"expired={len(report.boss.expired)} spawned={report.boss.spawned_id} skipped={report.boss.skipped}", end=" ")
    print()
    for phase, err in report.errors.items():
        print(_paint(Fore.RED, f"[ERROR] {phase}: {err}"))
    return 1 if report.errors else 0


def _cmd_boss_status() -> int:
    encounters = _boss_manager().active_encounters()
    if not encounters:
        print("No active boss encounters.")
        return 0
    for enc in encounters:
        print(f"#{enc.id} {enc.name} @ {enc.location_id} tier={enc.tier} hp={enc.hp}/{enc.max_hp} expires_at={enc.expires_at}")
    return 0


def _cmd_record_defeat(encounter_id: int) -> int:
    if _boss_manager().record_defeat(encounter_id):
        print("[OK]")
        return 0
    print("[NOT FOUND] no active encounter with that id")
    return 1


def _cmd_sweep_roles() -> int:
    revoked = _boss_manager().sweep_orphan_capabilities()
    print(f"Revoked {revoked} capabilities.")
    return 0


def _cmd_regen_status(user_id: str) -> int:
    from waystone.services.regen_service import VitalsRegenerator

    status = VitalsRegenerator().get_regen_status(user_id)
    if status is None:
        print("[NOT FOUND]")
        return 1
    print(json.dumps(status, indent=2, sort_keys=True))
    return 0


def _cmd_config_get(key: str) -> int:
    from waystone.models import GameConfig

    val = GameConfig.get(key)
    if val is None:
        print("[NOT FOUND]")
        return 1
    print(val)
    return 0


def _cmd_config_set(key: str, value: str) -> int:
    from waystone.models import GameConfig

    try:
        parsed = json.loads(value)
    except ValueError as exc:
        print(_paint(Fore.RED, f"[ERROR] value is not valid JSON: {exc}"))
        return 1
    if not isinstance(parsed, dict):
        print(_paint(Fore.RED, "[ERROR] value must be a JSON object"))
        return 1
    GameConfig.set(key, json.dumps(parsed, sort_keys=True))
    print("[OK]")
    return 0


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    if getattr(args, "env_file", None):
        load_dotenv(args.env_file)
    else:
        # Load default .env if present (no error if missing)
        load_dotenv()

    env_host = os.getenv("HOST", "0.0.0.0")
    env_port = int(os.getenv("PORT", "5000"))
    env_db = os.getenv("DATABASE_URL")

    host = getattr(args, "host", None) or env_host
    port = int(getattr(args, "port", None) or env_port)
    db_uri_cli = getattr(args, "db_uri", None)

    # Make DATABASE_URL available to the Flask app before it is created
    if db_uri_cli:
        os.environ["DATABASE_URL"] = db_uri_cli
    db_banner = db_uri_cli or env_db or "auto (instance/world.db)"

    mode = (getattr(args, "command", None) or "server").lower()

    from waystone import server
    from waystone.logging_utils import log

    if mode == "server":

        def handle_sigint(sig, frame):
            print("\n[INFO] Shutting down server...")
            sys.exit(0)

        signal.signal(signal.SIGINT, handle_sigint)
        _print_banner(mode, host, port, db_banner)
        debug = bool(getattr(args, "debug", False) or os.getenv("FLASK_DEBUG") == "1")
        log.info(event="listen", host=host, port=port, debug=debug)
        server.start_server(host=host, port=port, debug=debug)
        return 0
    if mode == "worker":
        _print_banner(mode, host, port, db_banner)
        log.info(event="startup", mode=mode, db=db_banner)
        server.start_worker(once=bool(getattr(args, "once", False)))
        return 0
    if mode == "tick":
        return _with_app(_cmd_tick)
    if mode == "boss-status":
        return _with_app(_cmd_boss_status)
    if mode == "record-defeat":
        return _with_app(lambda: _cmd_record_defeat(args.encounter_id))
    if mode == "sweep-roles":
        return _with_app(_cmd_sweep_roles)
    if mode == "regen-status":
        return _with_app(lambda: _cmd_regen_status(args.user_id))
    if mode == "config-get":
        return _with_app(lambda: _cmd_config_get(args.key))
    if mode == "config-set":
        return _with_app(lambda: _cmd_config_set(args.key, args.value))
    print(f"[ERROR] Unknown command: {mode}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))

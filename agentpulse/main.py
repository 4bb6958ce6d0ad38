import argparse
import logging
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentpulse", description="Heartbeat, cron and turn scheduling for chat agents")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8431, help="Port (default: 8431)")
    parser.add_argument("--db", default=None, help="SQLite database path (default: ~/.agentpulse/agentpulse.db)")
    parser.add_argument("--heartbeat-every", default="", help="Override the heartbeat interval for every agent, e.g. 5m")
    parser.add_argument(
        "-r",
        "--rooms",
        default="",
        help="Comma-separated local rooms as <room_id>[=<agent>] (development bridge)",
    )
    parser.add_argument("--default-room", default="", help="Fallback delivery room for the local bridge")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser


def _parse_rooms(raw: str) -> list[dict]:
    rooms = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        room_id, _, agent_id = item.partition("=")
        rooms.append({"room_id": room_id.strip(), "agent_id": agent_id.strip()})
    return rooms


def main():
    args = build_parser().parse_args()
    log = logging.getLogger("agentpulse")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, args.log_level))
    handler.setFormatter(fmt)
    log.addHandler(handler)

    import uvicorn
    from .bridge import create_local_bridge
    from .server.app import create_app
    from .server.runtime import Runtime
    from .server.settings import SettingsStore
    from .sessions.backend import SqliteStateBackend

    db_path = Path(args.db).expanduser() if args.db else None
    settings = SettingsStore(db_path)
    try:
        bridge = create_local_bridge(rooms=_parse_rooms(args.rooms), default_room=args.default_room)
    except ValueError as exc:
        print(f"agentpulse: {exc}", file=sys.stderr)
        sys.exit(2)
    runtime = Runtime(
        settings=settings,
        bridge=bridge,
        backend=SqliteStateBackend(settings.db_path),
        heartbeat_every=args.heartbeat_every,
    )
    app = create_app(runtime=runtime)
    print(f"  Local:   http://localhost:{args.port}")
    print()
    log.info(
        "starting agentpulse db=%s heartbeat_every=%s rooms=%d",
        settings.db_path,
        args.heartbeat_every or "config",
        len(_parse_rooms(args.rooms)),
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)


if __name__ == "__main__":
    main()

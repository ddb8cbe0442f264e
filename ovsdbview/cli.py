"""Command line entry point: inspect OVSDB databases and connection history."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Sequence

from .config import AppConfig, ConnectRequest, EndpointConfig, TunnelConfig, load_config
from .errors import OvsdbViewError
from .history import HistoryRegistry, JsonFileHistoryStore
from .models import DEFAULT_SSH_PORT, ForwarderKind
from .session import SessionManager

LOG = logging.getLogger(__name__)


def parse_args(argv: Sequence[str], config: AppConfig) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ovsdbview", description=__doc__)
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")

    endpoint = argparse.ArgumentParser(add_help=False)
    endpoint.add_argument("--endpoint", required=True, help="OVSDB endpoint, e.g. unix:/var/run/openvswitch/db.sock")
    endpoint.add_argument("--ssh-host", help="SSH host that can reach the endpoint")
    endpoint.add_argument("--ssh-port", type=int, default=DEFAULT_SSH_PORT, help="SSH port")
    endpoint.add_argument("--ssh-user", default="", help="SSH user")
    endpoint.add_argument("--key-file", default="", help="Private key used for every hop")
    endpoint.add_argument(
        "--jump-host",
        action="append",
        default=[],
        help="Jump host as user@host:port; repeat for multiple hops, outermost first",
    )
    endpoint.add_argument(
        "--forwarder",
        choices=[kind.value for kind in ForwarderKind],
        default=ForwarderKind.TCP.value,
        help="Local forwarder type for tunneled endpoints",
    )
    endpoint.add_argument("--database", default=config.default_database, help="Database to open")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("dbs", parents=[endpoint], help="List databases served by the endpoint")
    commands.add_parser("schema", parents=[endpoint], help="Show the database schema")
    table = commands.add_parser("table", parents=[endpoint], help="Dump every row of a table")
    table.add_argument("table", help="Table name")
    commands.add_parser("history", help="List remembered connections")
    delete = commands.add_parser("history-delete", help="Forget a remembered connection")
    delete.add_argument("index", type=int, help="Position shown by 'history'")
    return parser.parse_args(argv)


def build_request(args: argparse.Namespace) -> ConnectRequest:
    tunnel = None
    if args.ssh_host:
        tunnel = TunnelConfig(
            host=args.ssh_host,
            port=args.ssh_port,
            user=args.ssh_user,
            key_file=args.key_file,
            jump_hosts=list(args.jump_host),
            local_forwarder_type=args.forwarder,
        )
    return ConnectRequest(
        endpoints=[EndpointConfig(endpoint=args.endpoint, tunnel=tunnel)],
        database=args.database,
    )


def run(args: argparse.Namespace, manager: SessionManager) -> Any:
    if args.command == "history":
        return [
            {"index": index, **record.to_wire()}
            for index, record in enumerate(manager.history())
        ]
    if args.command == "history-delete":
        manager.delete_history(args.index)
        return {"deleted": args.index}

    session = manager.connect(build_request(args))
    try:
        if args.command == "dbs":
            return manager.list_dbs(session)
        if args.command == "schema":
            return manager.get_schema(session).describe()
        return manager.get_table(session, args.database, args.table)
    finally:
        manager.disconnect(session)


def main(argv: list[str] | None = None) -> int:
    config = load_config()
    args = parse_args(sys.argv[1:] if argv is None else argv, config)
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        history = HistoryRegistry(JsonFileHistoryStore(config.history_path))
        with SessionManager(config=config, history=history) as manager:
            output = run(args, manager)
    except (OvsdbViewError, ValueError) as exc:
        LOG.debug("Command failed", exc_info=exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

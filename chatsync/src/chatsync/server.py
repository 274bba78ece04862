"""chatsync command line: run a store server or simulate client sessions."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, Iterable, TextIO, Tuple

from aiohttp import web

from .auth import LocalAuth
from .client import ChatClient
from .config import load_sync_config_from_env
from .errors import ChatSyncError
from .models import Message
from .store import InMemoryMessageStore, InMemoryProfileStore
from .ws_transport import create_app


def _message_view(message: Message) -> dict:
    return {
        "display_name": message.display_name,
        "body": message.body,
        "kind": message.kind.value,
    }


async def _simulate(frames: Iterable[dict], output: TextIO) -> None:
    config = load_sync_config_from_env()
    store = InMemoryMessageStore()
    profiles = InMemoryProfileStore()
    clients: Dict[str, ChatClient] = {}
    seen: Dict[Tuple[str, str], tuple] = {}

    def client_for(name: str) -> ChatClient:
        if name not in clients:
            clients[name] = ChatClient(
                store=store, feed=store.hub, profiles=profiles, auth=LocalAuth(), config=config
            )
        return clients[name]

    def emit(payload: dict) -> None:
        output.write(json.dumps(payload) + "\n")

    async def settle() -> None:
        for client in clients.values():
            for scope in client.syncs.scopes():
                synchronizer = client.syncs.get(scope)
                if synchronizer is not None:
                    await synchronizer.wait_idle()

    def emit_changes() -> None:
        for name, client in clients.items():
            open_scopes = set(client.syncs.scopes())
            for key in [key for key in seen if key[0] == name and key[1] not in open_scopes]:
                seen.pop(key)
            for scope in sorted(open_scopes):
                synchronizer = client.syncs.get(scope)
                if synchronizer is None:
                    continue
                snapshot = tuple(_message_view(message) for message in synchronizer.snapshot())
                key = (name, scope)
                if key in seen and seen[key] == snapshot:
                    continue
                seen[key] = snapshot
                emit(
                    {
                        "t": "cache",
                        "client": name,
                        "scope": scope,
                        "state": synchronizer.state.value,
                        "messages": list(snapshot),
                    }
                )

    try:
        for frame in frames:
            frame_type = frame.get("t")
            client = client_for(frame["client"])
            try:
                if frame_type == "auth.sign_in":
                    client.auth.sign_in(frame["identity"])
                elif frame_type == "auth.sign_out":
                    client.auth.sign_out()
                elif frame_type == "profile.claim":
                    name = await client.claim_username(frame["name"])
                    emit({"t": "profile", "client": frame["client"], "display_name": name})
                elif frame_type == "scope.open":
                    await client.open_scope(frame["scope"])
                elif frame_type == "scope.close":
                    await client.close_scope(frame["scope"])
                elif frame_type == "message.send":
                    await client.submit(frame["scope"], frame["body"])
                elif frame_type == "clear.mine":
                    await client.clear_mine(frame["scope"])
                elif frame_type == "clear.everyone":
                    await client.clear_everyone(frame["scope"])
                else:
                    raise ValueError(f"unsupported frame type: {frame_type}")
            except ChatSyncError as exc:
                emit({"t": "error", "client": frame["client"], "code": type(exc).__name__, "message": str(exc)})
            await settle()
            emit_changes()
    finally:
        for client in clients.values():
            await client.close()


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Run JSON frames through in-process clients and emit cache changes."""

    asyncio.run(_simulate(frames, output))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="chatsync CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level for chatsync loggers")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Simulate client sessions over an in-memory store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp store server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())

"""Terminal watcher that follows a room through the polling sync client."""

from __future__ import annotations

import argparse
import asyncio
import os
import subprocess
import sys
import time
from typing import Any
from urllib.parse import urlsplit

import httpx

from .api import RoomApiClient
from .crypto import key_from_url
from .sync import DEFAULT_POLL_INTERVAL, SyncClient

# Any code works: unknown rooms report version 0.
PROBE_PATH = "/api/rooms/PROBE0/version"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow a Year of the Challenge room")
    parser.add_argument("--server", default="http://127.0.0.1:8000")
    parser.add_argument("--code", default="", help="room join code")
    parser.add_argument("--invite-url", default="", help="invite link; its #key= fragment supplies the room key")
    parser.add_argument("--key", default="", help="room key when no invite link is given")
    parser.add_argument("--token", default="", help="magic token to watch as a participant")
    parser.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL)
    parser.add_argument("--start-server", action="store_true")
    return parser.parse_args(argv)


def wait_for_server(server_url: str, timeout_s: float = 8.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        try:
            if httpx.get(f"{server_url.rstrip('/')}{PROBE_PATH}", timeout=0.5).is_success:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(0.2)
    return False


def maybe_start_server(server_url: str) -> subprocess.Popen[bytes] | None:
    """Run ``python -m yearchallenge.backend`` bound to the watched server address."""
    parts = urlsplit(server_url)
    env = {
        **os.environ,
        "YEARCHALLENGE_HOST": parts.hostname or "127.0.0.1",
        "YEARCHALLENGE_PORT": str(parts.port or 8000),
    }
    process = subprocess.Popen([sys.executable, "-m", "yearchallenge.backend"], env=env)
    if wait_for_server(server_url):
        return process
    stop_server(process)
    return None


def stop_server(process: subprocess.Popen[bytes], timeout_s: float = 5.0) -> None:
    process.terminate()
    try:
        process.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def room_code_from_invite(invite_url: str) -> str:
    path = invite_url.split("#", maxsplit=1)[0].rstrip("/")
    return path.rsplit("/", maxsplit=1)[-1]


def render_state(state: dict[str, Any]) -> str:
    names = {p["id"]: f"{p['avatar']} {p['name']}" for p in state.get("participants", [])}
    lines = [f"[v{state['version']}] {state['name']} ({state['code']}), phase: {state['phase']}"]
    for participant in state.get("participants", []):
        host = " (host)" if participant["isHost"] else ""
        lines.append(f"  {names[participant['id']]}{host}")
    for challenge in state.get("challenges", []):
        mark = "x" if challenge["isCompleted"] else " "
        target = names.get(challenge["forParticipantId"], "?")
        lines.append(f"  [{mark}] {challenge['text']} -> {target} ({len(challenge['votes'])} votes)")
    return "\n".join(lines)


async def watch(args: argparse.Namespace) -> None:
    api = RoomApiClient.for_server(args.server)
    client = SyncClient(api, interval=args.interval, on_change=lambda state: print(render_state(state), flush=True))
    room_key = key_from_url(args.invite_url) if args.invite_url else (args.key or None)
    try:
        if args.token:
            await client.recover(args.token, room_key=room_key)
        else:
            code = args.code or room_code_from_invite(args.invite_url)
            await client.subscribe(code, room_key=room_key)
        while client.subscribed:
            await asyncio.sleep(3600)
    finally:
        await client.unsubscribe()
        await api.aclose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if not (args.code or args.invite_url or args.token):
        print("Need --code, --invite-url or --token.", file=sys.stderr)
        return 2

    server_process: subprocess.Popen[bytes] | None = None
    if args.start_server:
        server_process = maybe_start_server(args.server)
        if server_process is None:
            print("Could not start the server.", file=sys.stderr)
            return 1
    elif not wait_for_server(args.server):
        print("Server not reachable. Use --start-server or run yearchallenge-api first.", file=sys.stderr)
        return 1

    try:
        asyncio.run(watch(args))
    except KeyboardInterrupt:
        pass
    finally:
        if server_process is not None:
            stop_server(server_process)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

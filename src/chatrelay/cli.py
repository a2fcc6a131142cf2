"""Command line entry points: offline simulation and a remote tail/send client."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import Any, AsyncIterator, Dict, Iterable, List, TextIO

import aiohttp

from .config import RelayConfig, load_config_from_env
from .errors import RelayError
from .feeds import InMemoryChangeFeed, InMemoryPeerBroadcast
from .lifecycle import AppLifecycle, Credentials, backend_token_refresher
from .realtime import RealtimeChangeFeed, RealtimeClient, RealtimePeerBroadcast
from .reconciler import ChannelSource
from .rest_store import RestStore
from .session import ConversationSession
from .store import MESSAGES, InMemoryStore
from .timeline import Message

logger = logging.getLogger(__name__)

SIMULATION_USER_ID = "u_self"
SIMULATION_CONVERSATION_ID = "c1"


def message_record(session: ConversationSession, message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "author_id": message.author_id,
        "author": session.display_name(message.author_id),
        "own": session.is_own(message),
        "body": message.body,
        "created_at": message.created_at.isoformat(),
        "pinned": session.is_pinned(message.id),
        "reactions": [
            {"emoji": summary.emoji, "count": summary.count, "reacted": summary.reacted}
            for summary in session.reactions.visible(message.id, session.user_id, session.config.emojis)
        ],
    }


def _arrival_writer(output: TextIO):
    def write(message: Message, source: ChannelSource) -> None:
        record = {
            "t": "arrival",
            "source": source.value,
            "id": message.id,
            "author_id": message.author_id,
            "body": message.body,
            "created_at": message.created_at.isoformat(),
        }
        output.write(json.dumps(record, ensure_ascii=False) + "\n")

    return write


async def _simulate(frames: Iterable[dict], output: TextIO, config: RelayConfig, user_id: str) -> None:
    change_feed = InMemoryChangeFeed()
    broadcast = InMemoryPeerBroadcast()
    store = InMemoryStore(on_message_insert=change_feed.notify_insert)
    session = ConversationSession(store, config, user_id, change_feed=change_feed, broadcast=broadcast)
    session.reconciler.add_listener(_arrival_writer(output))

    async with session:
        for frame in frames:
            frame_type = frame.get("t")
            if frame_type == "send":
                await session.send(frame["body"])
            elif frame_type == "insert":
                await store.insert(
                    MESSAGES,
                    {
                        "conversation_id": frame.get("conversation_id", config.conversation_id),
                        "author_id": frame["author_id"],
                        "body": frame.get("body"),
                    },
                )
            elif frame_type == "change_feed":
                change_feed.notify_insert(frame["row"])
            elif frame_type == "broadcast":
                await broadcast.publish(config.conversation_id, {"message": frame["message"]})
            elif frame_type == "poll":
                await session.reconciler.poll_once()
            elif frame_type == "react":
                await session.toggle_reaction(str(frame["message_id"]), frame["emoji"])
            elif frame_type == "pin":
                await session.toggle_pin(str(frame["message_id"]))
            elif frame_type == "feed":
                change_feed.connected = bool(frame.get("connected", True))
            else:
                raise ValueError(f"unsupported frame type: {frame_type}")
        await session.wait_for_refresh()
        for message in session.timeline():
            output.write(json.dumps({"t": "message", **message_record(session, message)}, ensure_ascii=False) + "\n")


def simulate(
    frames: Iterable[dict],
    output: TextIO,
    *,
    conversation_id: str = SIMULATION_CONVERSATION_ID,
    user_id: str = SIMULATION_USER_ID,
) -> None:
    """Replay JSON frames through a session over the in-memory store.

    Polling is driven only by explicit ``poll`` frames.
    """

    config = RelayConfig(conversation_id=conversation_id, poll_interval_s=3600.0)
    asyncio.run(_simulate(frames, output, config, user_id))


@contextlib.asynccontextmanager
async def remote_session(config: RelayConfig, user_id: str) -> AsyncIterator[ConversationSession]:
    """Open a session against the configured hosted backend."""

    if config.rest_url is None or config.realtime_url is None:
        raise ValueError("RELAY_BACKEND_URL is required")
    credentials = Credentials(
        api_key=config.api_key,
        access_token=config.access_token,
        refresh_token=config.refresh_token,
    )
    async with aiohttp.ClientSession() as http:
        lifecycle = AppLifecycle(credentials, backend_token_refresher(http, config.backend_url))
        store = RestStore(config.rest_url, credentials, http=http)
        client = RealtimeClient(
            config.realtime_url,
            credentials,
            http=http,
            heartbeat_interval_s=config.heartbeat_interval_s,
        )
        session = ConversationSession(
            store,
            config,
            user_id,
            change_feed=RealtimeChangeFeed(client),
            broadcast=RealtimePeerBroadcast(client),
        )
        await lifecycle.startup()
        try:
            async with session:
                yield session
        finally:
            await client.close()
            await lifecycle.shutdown()


async def _tail(config: RelayConfig, user_id: str, output: TextIO, duration_s: float | None) -> None:
    async with remote_session(config, user_id) as session:
        for message in session.timeline():
            output.write(json.dumps({"t": "message", **message_record(session, message)}, ensure_ascii=False) + "\n")
        output.flush()
        session.reconciler.add_listener(_arrival_writer(output))
        if duration_s is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_s)


async def _send(config: RelayConfig, user_id: str, text: str, output: TextIO) -> None:
    async with remote_session(config, user_id) as session:
        message = await session.send(text)
        output.write(json.dumps({"t": "sent", **message_record(session, message)}, ensure_ascii=False) + "\n")


def _load_frames(handle: TextIO) -> List[dict]:
    """Read frames given as one JSON array, one JSON object, or JSON lines."""

    content = handle.read().strip()
    if not content:
        return []
    try:
        document = json.loads(content)
    except json.JSONDecodeError:
        frames = [json.loads(line) for line in content.splitlines() if line.strip()]
    else:
        frames = document if isinstance(document, list) else [document]
    if not all(isinstance(frame, dict) for frame in frames):
        raise ValueError("every frame must be a JSON object")
    return frames


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatrelay", description="Conversation delivery relay")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("RELAY_LOG_LEVEL", "WARNING"),
        help="Logging level (default: RELAY_LOG_LEVEL or WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay frames through an in-memory session")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r", encoding="utf-8"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--conversation", default=SIMULATION_CONVERSATION_ID)
    simulate_parser.add_argument("--user-id", default=SIMULATION_USER_ID)

    for name, help_text in (("tail", "Print the conversation and follow new arrivals"), ("send", "Send one message")):
        remote_parser = subparsers.add_parser(name, help=help_text)
        remote_parser.add_argument("--conversation", default=None, help="Defaults to RELAY_CONVERSATION_ID")
        remote_parser.add_argument("--user-id", default=os.environ.get("RELAY_USER_ID"), required=False)
        if name == "tail":
            remote_parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
        else:
            remote_parser.add_argument("text", help="Message body")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if args.command != "simulate" and not args.user_id:
        parser.error("--user-id or RELAY_USER_ID is required")
    try:
        if args.command == "simulate":
            if args.file is None:
                frames = _load_frames(sys.stdin)
            else:
                with args.file:
                    frames = _load_frames(args.file)
            simulate(frames, output, conversation_id=args.conversation, user_id=args.user_id)
            return 0
        config = load_config_from_env(args.conversation)
        if args.command == "tail":
            asyncio.run(_tail(config, args.user_id, output, args.duration))
        else:
            asyncio.run(_send(config, args.user_id, args.text, output))
    except (ValueError, RelayError) as exc:
        print(f"chatrelay: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())

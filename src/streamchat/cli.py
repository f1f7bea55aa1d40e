"""Terminal chat client for a running streamchat server."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime
from typing import List, Optional

from .backend import HttpChatBackend
from .client import ChatClient
from .config import configure_logging, load_config
from .session import SessionController
from .store import DiskTranscriptStore
from .titles import TitleSummarizer

HELP = "Commands: /new, /list, /open <id>, /quit"


def _print_fragment(fragment: str) -> None:
    sys.stdout.write(fragment)
    sys.stdout.flush()


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


async def _repl(client: ChatClient) -> None:
    print(HELP)
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        cmd = line.strip()
        if cmd in {"/quit", "/exit"}:
            break
        if cmd == "/new":
            await client.new_conversation()
            print("-- new conversation --")
            continue
        if cmd == "/list":
            for conv in client.conversations():
                print(f"{conv.id}  {_format_ts(conv.updated_at)}  {conv.title}")
            continue
        if cmd.startswith("/open "):
            await client.open_conversation(cmd[len("/open "):].strip())
            for m in client.messages:
                print(f"{m.role}: {m.content}")
            continue

        client.type(line)
        reply = await client.send()
        print()
        if client.error:
            print(client.error)
        elif reply is not None:
            print(f"[{client.session.rate:.1f} tok/s]")

    await client.session.wait_background()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Chat with a streamchat server from the terminal.")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config file.")
    parser.add_argument(
        "--url",
        type=str,
        default=os.environ.get("STREAMCHAT_URL"),
        help="Server base URL (default: model.base_url or http://127.0.0.1:8000)",
    )
    parser.add_argument("--owner", type=str, default=None, help="Owner id for stored conversations.")
    parser.add_argument("--conversation", type=str, default=None, help="Resume a stored conversation.")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    configure_logging(cfg)

    base_url = args.url or cfg.get("model", {}).get("base_url") or "http://127.0.0.1:8000"
    session_cfg = cfg.get("session", {})
    backend = HttpChatBackend(base_url)
    store = DiskTranscriptStore(str(cfg.get("store", {}).get("data_dir", "data")))
    session = SessionController(
        store,
        backend,
        owner_id=args.owner or session_cfg.get("owner_id", "default"),
        summarizer=TitleSummarizer(backend, store),
        placeholder_title=session_cfg.get("placeholder_title", "New conversation"),
        on_fragment=_print_fragment,
    )
    client = ChatClient(session)

    async def run() -> None:
        if args.conversation:
            await client.open_conversation(args.conversation)
        await _repl(client)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

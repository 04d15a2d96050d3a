#!/usr/bin/env python3
"""
threadline CLI — multi-turn chat against a Responses API service.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    chat            repl            Interactive chat with thread switching
    threads         ls, list        List stored threads
    export          dump            Export threads to JSON
    replay          play            Replay a recorded stream offline

Inside `chat`, lines starting with "/" are commands; /help lists them.
Threads keep streaming in the background when you switch away.
"""

import argparse
import asyncio
import base64
import json
import logging
import mimetypes
import sys
from pathlib import Path

from threadline import __version__


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {}) or {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _load(args) -> dict:
    from threadline.config import get_config, load_config

    cfg = load_config(Path(args.config)) if args.config else get_config()
    setup_logging(cfg)
    return cfg


# ---------------------------------------------------------------------------
# Chat REPL
# ---------------------------------------------------------------------------

CHAT_HELP = """
  /stop             stop the reply that is streaming
  /new              start a new chat (a running reply keeps going in the background)
  /temp             start an ephemeral chat that is never saved
  /threads          list threads
  /switch <n>       switch to thread n from /threads
  /delete <n>       delete thread n
  /rename <title>   rename the current thread
  /attach <path>    attach a file or image to the next message
  /retry            retry the last failed reply
  /approve <id>     approve a pending MCP tool call
  /deny <id>        deny a pending MCP tool call
  /usage            token usage for the current thread
  /clear-all        delete every thread
  /quit             exit
"""


class _Printer:
    """Prints foreground message updates as they stream in."""

    def __init__(self):
        self._printed: dict[str, int] = {}

    def __call__(self, message):
        if message.role != "assistant":
            return
        shown = self._printed.get(message.id, 0)
        if len(message.content) > shown:
            sys.stdout.write(message.content[shown:])
            sys.stdout.flush()
            self._printed[message.id] = len(message.content)
        for call in message.tool_calls:
            key = f"{message.id}:{call.id}:{call.status}"
            if key not in self._printed:
                self._printed[key] = 0
                label = call.name or call.type
                if call.status == "pending_approval":
                    print(f"\n  [approval needed] {label}: /approve {call.approval_request_id}")
                else:
                    print(f"\n  [{call.type}] {label}: {call.status}")
        if not message.is_streaming and message.id in self._printed:
            print()


def _read_attachment(path: str):
    from threadline.request import Attachment

    p = Path(path).expanduser()
    mime_type = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
    data = base64.b64encode(p.read_bytes()).decode("ascii")
    return Attachment(name=p.name, mime_type=mime_type, data=data)


def _print_threads(threads):
    if not threads:
        print("  (no threads)")
        return
    for i, thread in enumerate(threads, 1):
        print(f"  {i:>3}. {thread.title}  ({len(thread.messages)} messages, {thread.updated_at[:19]})")


async def _chat(cfg: dict):
    from threadline.backends import make_backend
    from threadline.coordinator import ThreadCoordinator
    from threadline.recording import create_recording_session
    from threadline.request import ChatSettings
    from threadline.storage import store_from_config
    from threadline.titles import TitleGenerator

    settings = ChatSettings.from_config(cfg)
    backend = make_backend(cfg)
    coordinator = ThreadCoordinator(
        backend,
        store_from_config(cfg),
        settings,
        title_generator=TitleGenerator(backend, settings.title_model, settings.deployment_name),
        recorder_factory=lambda: create_recording_session(cfg),
    )
    coordinator.controller.listener = _Printer()
    coordinator.load()

    view = coordinator.snapshot()
    if view.thread_id:
        print(f"  Resuming: {view.title} ({len(view.messages)} messages)")
    print("  Type a message, or /help.")

    listed = []
    staged = []
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue

            if not line.startswith("/"):
                # Replies stream in while you type; /stop ends one early
                if coordinator.send_message(line, staged or None) is None:
                    print("  (a reply is still streaming)")
                else:
                    staged = []
                continue

            cmd, _, arg = line[1:].partition(" ")
            arg = arg.strip()
            if cmd in ("quit", "exit", "q"):
                break
            elif cmd == "help":
                print(CHAT_HELP)
            elif cmd == "stop":
                if not coordinator.stop():
                    print("  Nothing is streaming")
            elif cmd == "new":
                coordinator.new_chat()
                print("  New chat.")
            elif cmd == "temp":
                coordinator.start_ephemeral()
                print("  Ephemeral chat, nothing here is saved.")
            elif cmd in ("threads", "ls"):
                listed = coordinator.list_threads()
                _print_threads(listed)
            elif cmd in ("switch", "delete"):
                try:
                    thread = listed[int(arg) - 1]
                except (ValueError, IndexError):
                    print("  Use a number from /threads")
                    continue
                if cmd == "switch":
                    coordinator.switch_thread(thread.id)
                    view = coordinator.snapshot()
                    print(f"  {view.title} ({len(view.messages)} messages)"
                          + (" (still streaming)" if view.is_streaming else ""))
                else:
                    coordinator.delete_thread(thread.id)
                    print(f"  Deleted {thread.title}")
            elif cmd == "rename":
                view = coordinator.snapshot()
                if not view.thread_id or not coordinator.rename_thread(view.thread_id, arg):
                    print("  Nothing to rename")
            elif cmd == "attach":
                try:
                    staged.append(_read_attachment(arg))
                except OSError as e:
                    print(f"  Cannot attach {arg}: {e}")
                    continue
                print(f"  Attached {staged[-1].name}; it goes with your next message")
            elif cmd == "retry":
                view = coordinator.snapshot()
                failed = next((m for m in reversed(view.messages) if m.is_error), None)
                session = coordinator.retry_message(failed.id) if failed else None
                if session is None:
                    print("  Nothing to retry")
            elif cmd in ("approve", "deny"):
                respond = coordinator.approve if cmd == "approve" else coordinator.deny
                if respond(arg) is None:
                    print("  No pending approval with that id in this thread")
            elif cmd == "usage":
                usage = coordinator.conversation_usage()
                print(f"  {usage.to_dict() if usage else 'no usage yet'}")
            elif cmd == "clear-all":
                coordinator.clear_all_threads()
                print("  All threads deleted.")
            else:
                print(f"  Unknown command /{cmd}; try /help")
    finally:
        await coordinator.aclose()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_chat(args):
    """Interactive chat."""
    cfg = _load(args)
    try:
        asyncio.run(_chat(cfg))
    except KeyboardInterrupt:
        print()


def cmd_threads(args):
    """List stored threads."""
    from threadline.storage import store_from_config

    cfg = _load(args)
    store = store_from_config(cfg)
    threads = store.list_threads()
    if args.limit:
        threads = threads[:args.limit]
    _print_threads(threads)


def cmd_export(args):
    """Export threads to JSON."""
    from threadline.storage import store_from_config

    cfg = _load(args)
    store = store_from_config(cfg)
    data = store.export_threads()
    indent = 2 if args.pretty else None

    with open(args.output, "w") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)

    print(f"  Exported {len(data)} threads to {args.output}")


def cmd_replay(args):
    """Replay a recording through the accumulator and print the result."""
    from threadline.recording import load_recording_file, recording_stats, replay_recording

    recording = load_recording_file(args.file)
    stats = recording_stats(recording)
    state = replay_recording(recording)

    print(f"  Model:    {stats['request_model']}")
    print(f"  Events:   {stats['total_events']} over {stats['duration_ms']}ms")
    if args.verbose:
        for event_type, count in sorted(stats["event_types"].items()):
            print(f"    {count:>5}  {event_type}")
    print(f"  Response: {state.response_id}")
    for call in state.tool_calls:
        print(f"  Tool:     [{call.type}] {call.name or call.id}: {call.status}")
    if state.is_error:
        print(f"  Error:    {state.error}")
    print()
    print(state.content)


def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under several names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main():
    parser = argparse.ArgumentParser(
        prog="threadline",
        description="threadline — multi-turn chat over the Responses API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"threadline {__version__}",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    _add_command(sub, ["chat", "repl"], "Interactive chat", cmd_chat)

    def setup_threads(p):
        p.add_argument("--limit", "-n", type=int, default=None, help="Show at most N threads")

    _add_command(sub, ["threads", "ls", "list"], "List stored threads", cmd_threads, setup_threads)

    def setup_export(p):
        p.add_argument("--output", "-o", default="threads_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["export", "dump"], "Export threads to JSON", cmd_export, setup_export)

    def setup_replay(p):
        p.add_argument("file", help="recording-<id>.jsonl file")
        p.add_argument("--verbose", "-v", action="store_true", help="Show event counts by type")

    _add_command(sub, ["replay", "play"], "Replay a recorded stream offline", cmd_replay, setup_replay)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()

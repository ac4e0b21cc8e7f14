"""CLI entry point for the Voice Scheduler agent.

A terminal chat loop for development: each line you type is one caller
utterance, tool activity is printed as it happens, and the call is
summarized when you quit or the agent ends the conversation.

Usage:
    python -m voice_scheduler.main                       # normal mode (quiet)
    python -m voice_scheduler.main --debug               # debug logging
    python -m voice_scheduler.main --phone 5551234567    # start as a known caller
    python -m voice_scheduler.main --audio call.wav      # first turn from a recording
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from voice_scheduler.agent import TurnEvent, VoiceAgent
from voice_scheduler.config import DATABASE_URL
from voice_scheduler.services.store import BookingStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("voice_scheduler").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_event(event: TurnEvent, state: dict) -> None:
    if event.type == "tool_call_start":
        print(f"  [tool] {event.name}({event.parameters or {}})")
    elif event.type == "tool_call_end":
        print(f"  [tool] {event.name} -> {event.result}")
    elif event.type == "transcript":
        if not state["speaking"]:
            print("\nAgent: ", end="")
            state["speaking"] = True
        print(event.data, end="", flush=True)
    elif event.type == "error":
        print(f"\nAgent: I'm sorry, {event.error}")
    elif event.type == "done":
        if state["speaking"]:
            print("\n")
        state["end_call"] = bool(event.end_call)


async def _run_turn(events) -> bool:
    """Print one turn's events; returns True when the agent ended the call."""
    state = {"speaking": False, "end_call": False}
    async for event in events:
        _print_event(event, state)
    return state["end_call"]


async def _finish(agent: VoiceAgent, session_id: int) -> None:
    try:
        summary = await agent.end_session(session_id)
    except Exception:
        logger.exception("Could not summarize session %s", session_id)
        return
    print("\n" + "-" * 60)
    print(f"  Call summary: {summary.summary}")
    for appt in summary.appointments:
        print(f"    #{appt.id} {appt.date} {appt.time} ({appt.status})")
    print("-" * 60)


async def _chat(args: argparse.Namespace) -> None:
    store = BookingStore.from_url(args.db)
    agent = VoiceAgent(store)

    context = await agent.start_session(args.phone)
    logger.info("Started session %s", context.session_id)

    if args.phone:
        call = await agent.prepare_call_context(args.phone)
        print(f"Agent: {call.greeting}\n")

    if args.audio:
        audio = Path(args.audio).read_bytes()
        if await _run_turn(agent.process_audio(context.session_id, audio, Path(args.audio).name)):
            await _finish(agent, context.session_id)
            return

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if await _run_turn(agent.process_utterance(context.session_id, user_input)):
            break

    await _finish(agent, context.session_id)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Voice Scheduler agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument("--phone", help="Caller phone number to start the session with")
    parser.add_argument("--db", default=DATABASE_URL, help="SQLAlchemy database URL")
    parser.add_argument("--audio", help="Audio file to use as the first utterance")
    args = parser.parse_args()

    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Voice Scheduler - CLI Chat")
    print("=" * 60)
    print("  Type what the caller says and press Enter.")
    print("  Commands: 'quit' to end the call.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat(args))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()

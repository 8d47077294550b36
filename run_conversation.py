from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Dict

from loguru import logger

from dualchat.config import get_settings
from dualchat.llm import CompletionClient
from dualchat.library import ConversationLibrary
from dualchat.manager import ConversationScheduler
from dualchat.states import BotConfig, BotIdentity, ConversationMode, ConversationRecord, GenerationParams, SchedulerState
from dualchat.store import ConversationStore


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    p = argparse.ArgumentParser(description="Run a bot-vs-bot conversation against a local OpenAI-compatible server")
    p.add_argument("--max-turns", type=int, default=6, help="Turns to generate before stopping")
    p.add_argument("--start-with", type=str, choices=["A", "B"], default=None, help="Which bot speaks first (default: alternate from history)")
    p.add_argument("--mode", type=str, choices=["full-auto", "semi-auto"], default="full-auto", help="full-auto loops; semi-auto steps one turn at a time")
    p.add_argument("--base-url", type=str, default=settings.base_url, help="Upstream server root")
    p.add_argument("--gateway-url", type=str, default=settings.gateway_url, help="Gateway root (default: in-process)")
    p.add_argument("--save", action="store_true", help="Persist the conversation into the local store")
    p.add_argument("--resume", type=str, default=None, help="Conversation id from the store to continue (implies --save)")
    p.add_argument("--log-level", type=str, default=settings.log_level)
    for ident in ("a", "b"):
        up = ident.upper()
        p.add_argument(f"--{ident}-name", type=str, default=f"Bot {up}", help=f"Display name for bot {up}")
        p.add_argument(f"--{ident}-model", type=str, default=None, help=f"Model id for bot {up}")
        p.add_argument(f"--{ident}-system", type=str, default=None, help=f"System prompt for bot {up}")
        p.add_argument(f"--{ident}-temperature", type=float, default=0.7)
        p.add_argument(f"--{ident}-top-p", type=float, default=1.0)
        p.add_argument(f"--{ident}-max-tokens", type=int, default=1024, help="0 leaves it unset")
    return p.parse_args()


def bot_from_args(args: argparse.Namespace, ident: str) -> BotConfig:
    name = getattr(args, f"{ident}_name")
    config = BotConfig.default(name)
    if getattr(args, f"{ident}_model"):
        config.model_id = getattr(args, f"{ident}_model")
    if getattr(args, f"{ident}_system") is not None:
        config.system_prompt = getattr(args, f"{ident}_system")
    config.params = GenerationParams(
        temperature=getattr(args, f"{ident}_temperature"),
        top_p=getattr(args, f"{ident}_top_p"),
        max_tokens=getattr(args, f"{ident}_max_tokens"),
    )
    return config


class TokenPrinter:
    """Echoes streamed text to stderr as messages grow."""

    def __init__(self, scheduler: ConversationScheduler) -> None:
        self.scheduler = scheduler
        self._printed: Dict[str, str] = {}

    def __call__(self, event: Dict[str, Any]) -> None:
        kind, msg = event["type"], event["data"]
        if kind == "message_appended":
            name = self.scheduler.record.bot(msg.author).display_name
            sys.stderr.write(f"\n[{name}] ")
            self._printed[msg.id] = ""
        elif kind == "message_updated" and msg.id in self._printed:
            shown = self._printed[msg.id]
            if msg.content.startswith(shown):
                sys.stderr.write(msg.content[len(shown):])
            else:
                # replaced wholesale (fallback or edit)
                sys.stderr.write("\n" + msg.content)
            self._printed[msg.id] = msg.content
        elif kind == "turn_complete":
            sys.stderr.write("\n")
        sys.stderr.flush()


async def main() -> None:
    args = parse_args()
    settings = get_settings()

    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper(), colorize=True, format="{time:HH:mm:ss} | {level} | {message}")

    async with CompletionClient(gateway_url=args.gateway_url, timeout=settings.request_timeout) as client:
        scheduler = ConversationScheduler(client, turn_delay=settings.turn_delay)
        library = None
        if args.save or args.resume:
            library = ConversationLibrary(ConversationStore(settings.store_path), scheduler, save_delay=settings.save_delay)
            library.records = library.store.load()
            if args.resume:
                if library.select(args.resume) is None:
                    logger.error(f"Conversation not found in store: {args.resume}")
                    return
            else:
                library.new_conversation(base_url=args.base_url)
        else:
            scheduler.load(ConversationRecord(base_url=args.base_url))

        if not args.resume:
            scheduler.set_base_url(args.base_url)
            scheduler.update_bot(BotIdentity.A, bot_from_args(args, "a"))
            scheduler.update_bot(BotIdentity.B, bot_from_args(args, "b"))
        if args.start_with and not scheduler.messages:
            scheduler.set_next_speaker(BotIdentity(args.start_with))
        scheduler.set_mode(ConversationMode(args.mode))
        scheduler.subscribe(TokenPrinter(scheduler))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, scheduler.stop)
        except (NotImplementedError, RuntimeError):
            pass

        logger.info(f"Running {args.max_turns} turns | mode={args.mode} base_url={args.base_url}")
        if scheduler.mode is ConversationMode.SEMI_AUTO:
            for _ in range(args.max_turns):
                await scheduler.step()
                if scheduler.state is SchedulerState.STOPPED:
                    break
        else:
            await scheduler.start(max_turns=args.max_turns)

        if library is not None:
            library.save_now()
            library.close()
        print(json.dumps(scheduler.record.to_dict(), ensure_ascii=False, indent=2))


if __name__ == "__main__":
    asyncio.run(main())

# Local developer CLI to talk to the ledger engine without Telegram.
# Useful for deterministic testing: the roster comes from a JSON file and the
# oracle can be replaced by a script of canned responses.
#
#   python cli.py roster.json --as Alice --oracle-script replies.txt
#
# roster.json:
#   {"group": "Trip", "members": [{"name": "Alice", "aliases": ["ali"]}, {"name": "Bob"}],
#    "ghosts": [{"name": "Dave"}], "categories": ["Food", "Other"]}

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger
from tinydb.storages import MemoryStorage

from tallybot.config import get_settings
from tallybot.core.currency import CurrencyNormalizer
from tallybot.core.mentions import MentionResolver
from tallybot.core.orchestrator import LedgerOrchestrator
from tallybot.core.pending import PendingStore
from tallybot.db.repository import LedgerRepository
from tallybot.llm.parser import OracleExtractor, coerce_extraction
from tallybot.models.schemas import (
    Category,
    ExtractionResult,
    Group,
    InboundMessage,
    Participant,
    RosterEntry,
    UnknownExtraction,
)


class ScriptedOracle:
    """Replays raw oracle responses, one per extraction, in file order."""

    def __init__(self, lines: list[str], home_currency: str = "ARS"):
        self.lines = [line for line in lines if line.strip()]
        self.home_currency = home_currency

    async def extract(self, text: str, roster: list[RosterEntry]) -> ExtractionResult:
        if not self.lines:
            logger.warning("Oracle script exhausted")
            return UnknownExtraction(confidence=0.0)
        return coerce_extraction(self.lines.pop(0), self.home_currency)

    async def extract_transfer(self, media: bytes, mime_type: str):
        return None

    async def extract_audio(self, media: bytes, mime_type: str, categories: list[str], today):
        return None


def load_roster(repo: LedgerRepository, path: Path) -> dict[str, Participant]:
    data = json.loads(path.read_text(encoding="utf-8"))
    participants = {}
    for i, member in enumerate(data.get("members", [])):
        participant = repo.add_participant(
            Participant(name=member["name"], aliases=member.get("aliases", []), channel=f"cli:{i}")
        )
        participants[participant.name.lower()] = participant
        for name in data.get("categories", []):
            repo.add_category(Category(owner_id=participant.id, name=name))

    if not participants:
        raise SystemExit("The roster needs at least one member")

    creator = next(iter(participants.values()))
    group = repo.add_group(
        Group(
            name=data.get("group", "Group"),
            members=[p.id for p in participants.values()],
            created_by=creator.id,
        )
    )
    for ghost in data.get("ghosts", []):
        repo.add_ghost(group.id, ghost["name"], ghost.get("aliases", []))
    return participants


def build_orchestrator(repo: LedgerRepository, oracle_script: Path | None, offline: bool) -> LedgerOrchestrator:
    settings = get_settings()
    currency = CurrencyNormalizer(
        home_currency=settings.home_currency,
        urls=settings.rates_urls,
        fallback_rates=settings.fallback_rates,
        ttl_seconds=settings.rates_ttl_seconds,
        timeout_seconds=settings.rates_timeout_seconds,
    )
    if offline:
        currency.prime(settings.fallback_rates)

    if oracle_script:
        oracle = ScriptedOracle(oracle_script.read_text(encoding="utf-8").splitlines(), settings.home_currency)
    elif settings.oracle_enabled:
        oracle = OracleExtractor(
            api_key=settings.openrouter_api_key,
            model=settings.llm_model,
            timeout_seconds=settings.ai_timeout_seconds,
            home_currency=settings.home_currency,
            decimal_separator=settings.decimal_separator,
        )
    else:
        oracle = None

    return LedgerOrchestrator(
        repo=repo,
        pending=PendingStore(ttl_seconds=settings.pending_ttl_seconds),
        resolver=MentionResolver(),
        currency=currency,
        oracle=oracle,
        confidence_threshold=settings.ai_confidence_threshold,
        decimal_separator=settings.decimal_separator,
        home_currency=settings.home_currency,
    )


async def repl(orchestrator: LedgerOrchestrator, participants: dict[str, Participant], sender: Participant) -> None:
    print("Tallybot CLI")
    print("Commands: /as <name> (switch sender), /who (show sender), /exit")
    print("-" * 50)
    print(f"Sending as {sender.name}")

    while True:
        try:
            text = input(f"\n{sender.name}: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nBye!")
            return

        if not text:
            continue

        cmd = text.lower()
        if cmd in {"/exit", "exit", "quit", "/quit"}:
            print("Bye!")
            return
        if cmd.startswith("/as "):
            chosen = participants.get(cmd[4:].strip())
            if chosen is None:
                print(f"No member named {text[4:].strip()}")
            else:
                sender = chosen
                print(f"Sending as {sender.name}")
            continue
        if cmd == "/who":
            print(f"Sending as {sender.name}")
            continue

        replies = await orchestrator.handle_message(InboundMessage(user_id=sender.id, text=text))
        for reply in replies:
            target = "" if reply.participant_id == sender.id else f" (to {orchestrator.repo.get_participant(reply.participant_id).name})"
            print(f"\nBot{target}: {reply.text}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Talk to the ledger engine locally")
    parser.add_argument("roster", type=Path, help="JSON file with the group roster")
    parser.add_argument("--as", dest="sender", help="member name to send as (default: first member)")
    parser.add_argument("--oracle-script", type=Path, help="file with one raw oracle response per line")
    parser.add_argument("--db", help="TinyDB file to use instead of an in-memory store")
    parser.add_argument("--offline", action="store_true", help="use the fallback exchange rates")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level=args.log_level, format="{time:HH:mm:ss} | {level:<7} | {message}")

    repo = LedgerRepository(args.db) if args.db else LedgerRepository(None, storage=MemoryStorage)
    participants = load_roster(repo, args.roster)
    sender = participants.get((args.sender or "").lower()) or next(iter(participants.values()))

    orchestrator = build_orchestrator(repo, args.oracle_script, args.offline)
    try:
        asyncio.run(repl(orchestrator, participants, sender))
    finally:
        repo.close()


if __name__ == "__main__":
    main()

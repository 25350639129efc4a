"""
Oracle scenario script.

Calls OracleExtractor.extract() directly with real-world chat messages and
prints the coerced results in a readable chat-style format. Needs a real
OPENROUTER_API_KEY, so it is run by hand rather than by pytest.

Usage:
    python -m tests.test_scenarios
"""

import asyncio
import sys
from pathlib import Path

from tallybot.config import get_settings
from tallybot.llm.parser import OracleExtractor
from tallybot.models.schemas import ExtractionResult, RosterEntry

SEPARATOR = "=" * 60
LOG_FILE = Path(__file__).parent / "results.log"

ROSTER = [
    RosterEntry(id="u1", name="Alice", aliases=["ali"]),
    RosterEntry(id="u2", name="Bob", aliases=["bobby"]),
    RosterEntry(id="u3", name="Carol"),
    RosterEntry(id="g1", name="Juan"),
]

SCENARIOS = [
    {"name": "Plain expense", "message": "150 pizza"},
    {"name": "Explicit mentions", "message": "1000 taxi @Bob @Carol"},
    {"name": "Natural-language split", "message": "Gasté 50 dólares en la cena con juan"},
    {"name": "Slang thousands", "message": "5 lucas el uber"},
    {"name": "Exclusion", "message": "3000 el asado, todos menos Carol"},
    {"name": "Everyone but me", "message": "2000 regalo para todos menos yo"},
    # ── Adversarial scenarios ───────────────────────────────────────
    {"name": "Unknown person", "message": "200 dinner with Zzyx"},
    {"name": "Payment sent", "message": "Le pagué 5000 a Bob"},
    {"name": "Payment received", "message": "recibí 3k de Carol"},
    {"name": "Command in prose", "message": "who owes what?"},
    {"name": "Greeting", "message": "hola!"},
    {"name": "No amount", "message": "pizza con Bob"},
    {"name": "Foreign currency before number", "message": "USD 30 museum tickets"},
]


def _result_summary(result: ExtractionResult) -> str:
    parts = [f"type={result.type}", f"confidence={result.confidence:.2f}"]
    if result.type == "expense":
        parts += [
            f"amount={result.amount}",
            f"currency={result.currency}",
            f'description="{result.description}"',
            f"split={result.split_among}",
            f"includes_sender={str(result.includes_sender).lower()}",
        ]
        if result.exclude_from_split:
            parts.append(f"exclude={result.exclude_from_split}")
    elif result.type == "payment":
        parts += [f"amount={result.amount}", f"direction={result.direction}", f'person="{result.person}"']
    elif result.type == "command":
        parts.append(f"command={result.command}")
    elif result.type == "unknown" and result.suggestion:
        parts.append(f'suggestion="{result.suggestion}"')
    elif result.type == "error":
        parts.append(f'error="{result.error}"')
    return "[" + ", ".join(parts) + "]"


def _print_and_log(text: str, file):
    """Print to stdout and write to log file."""
    print(text)
    file.write(text + "\n")


async def run_scenario(oracle: OracleExtractor, index: int, scenario: dict, log):
    _print_and_log(f"\n{SEPARATOR}", log)
    _print_and_log(f"SCENARIO {index}: {scenario['name']}", log)
    _print_and_log(SEPARATOR, log)
    _print_and_log(f"\n  User: {scenario['message']}", log)

    result = await oracle.extract(scenario["message"], ROSTER)
    _print_and_log(f"\n  {_result_summary(result)}", log)


async def run_all(oracle: OracleExtractor, log):
    for i, scenario in enumerate(SCENARIOS, 1):
        await run_scenario(oracle, i, scenario, log)


def main():
    settings = get_settings()

    if not settings.openrouter_api_key:
        print("ERROR: OPENROUTER_API_KEY not set. Add it to .env and retry.")
        sys.exit(1)

    oracle = OracleExtractor(
        api_key=settings.openrouter_api_key,
        model=settings.llm_model,
        # Live runs are allowed to be slower than the chat path.
        timeout_seconds=30,
        home_currency=settings.home_currency,
    )

    print(f"Model: {settings.llm_model}")
    print(f"Log:   {LOG_FILE}")

    with open(LOG_FILE, "w") as log:
        _print_and_log(f"Model: {settings.llm_model}", log)
        asyncio.run(run_all(oracle, log))
        _print_and_log(f"\n{SEPARATOR}", log)
        _print_and_log("Done. Review results above or in tests/results.log", log)
        _print_and_log(SEPARATOR, log)


if __name__ == "__main__":
    main()

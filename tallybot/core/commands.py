"""
Command interpreter.

Commands come from a closed set. They are recognised with a leading slash
("/balance") or as a single bare word ("saldo"). Spanish and English names
are both accepted. Unknown slash commands still produce a Command, with
``name`` set to None, so the user gets a pointer to /help instead of a
parse error.
"""

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from loguru import logger

from tallybot.core import responses
from tallybot.core.balances import compute_balances
from tallybot.core.categories import GROUP_CATEGORIES
from tallybot.core.pending import PendingStore
from tallybot.db.repository import LedgerRepository
from tallybot.models.schemas import Expense, Group, Mode, Participant

COMMAND_ALIASES = {
    "help": "help",
    "ayuda": "help",
    "start": "help",
    "balance": "balance",
    "saldo": "balance",
    "balances": "balance",
    "list": "list",
    "lista": "list",
    "group": "group",
    "grupo": "group",
    "groups": "group",
    "grupos": "group",
    "categories": "categories",
    "categorias": "categories",
    "categorías": "categories",
    "summary": "summary",
    "resumen": "summary",
    "mode": "mode",
    "modo": "mode",
}

# Commands that may be written bare with an argument, e.g. "modo personal".
ARGUMENT_COMMANDS = {"mode", "group"}

MODE_WORDS: dict[str, Mode] = {
    "group": "group",
    "groups": "group",
    "grupo": "group",
    "grupos": "group",
    "personal": "personal",
    "finanzas": "personal",
    "finance": "personal",
    "finances": "personal",
}

LIST_LIMIT = 10
TOP_CATEGORIES = 3


@dataclass(frozen=True)
class Command:
    name: str | None
    raw: str
    args: list[str] = field(default_factory=list)


def parse_command(text: str) -> Command | None:
    stripped = (text or "").strip()
    if not stripped:
        return None

    if stripped.startswith("/"):
        parts = stripped[1:].split()
        if not parts:
            return None
        # Telegram appends "@botname" in group chats.
        raw = parts[0].split("@", 1)[0].lower()
        return Command(name=COMMAND_ALIASES.get(raw), raw=raw, args=parts[1:])

    parts = stripped.split()
    raw = parts[0].lower()
    name = COMMAND_ALIASES.get(raw)
    if name is None:
        return None
    if len(parts) == 1:
        return Command(name=name, raw=raw)
    if name in ARGUMENT_COMMANDS and len(parts) == 2:
        return Command(name=name, raw=raw, args=parts[1:])
    return None


def active_group(repo: LedgerRepository, user: Participant) -> tuple[Group | None, list[Group]]:
    """The group a message from ``user`` applies to, plus all of the user's groups.

    The stored active group wins; a user in exactly one group gets that one.
    Otherwise the group is None and the caller has to ask.
    """
    groups = repo.groups_for(user.id)
    for group in groups:
        if group.id == user.active_group_id:
            return group, groups
    if len(groups) == 1:
        return groups[0], groups
    return None, groups


def current_mode(repo: LedgerRepository, user: Participant) -> Mode:
    if user.active_mode:
        return user.active_mode
    return "group" if repo.groups_for(user.id) else "personal"


def _month_start(when: datetime) -> datetime:
    return when.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(month_start: datetime) -> datetime:
    if month_start.month == 1:
        return month_start.replace(year=month_start.year - 1, month=12)
    return month_start.replace(month=month_start.month - 1)


def _next_month_start(month_start: datetime) -> datetime:
    if month_start.month == 12:
        return month_start.replace(year=month_start.year + 1, month=1)
    return month_start.replace(month=month_start.month + 1)


def top_categories(expenses: list[Expense], limit: int = TOP_CATEGORIES) -> list[tuple[str, Decimal]]:
    totals: Counter = Counter()
    for expense in expenses:
        totals[expense.category] += expense.amount
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)[:limit]


class CommandInterpreter:
    def __init__(
        self,
        repo: LedgerRepository,
        pending: PendingStore,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.pending = pending
        self._clock = clock

    def dispatch(self, user: Participant, command: Command) -> str:
        mode = current_mode(self.repo, user)
        logger.info("Command {} from {} ({} mode)", command.name or command.raw, user.id, mode)

        if command.name is None:
            return responses.unknown_command(command.raw)
        if command.name == "help":
            return responses.help_text(mode)
        if command.name == "mode":
            return self.switch_mode(user, command.args, mode)
        if command.name == "group":
            return self.groups(user, command.args)
        if command.name == "categories":
            return self.categories(user, mode)

        if mode == "personal":
            if command.name == "list":
                expenses = self.repo.personal_expenses(user.id)[:LIST_LIMIT]
                return responses.expense_list(expenses, self._clock(), "Last transactions")
            if command.name == "summary":
                return self.summary(user, None)
            return "Balances are shared between group members. Switch with /mode group."

        group, groups = active_group(self.repo, user)
        if group is None:
            return responses.choose_group(groups) if groups else responses.no_group()

        if command.name == "balance":
            return self.balances(group)
        if command.name == "list":
            expenses = self.repo.expenses_for_group(group.id, limit=LIST_LIMIT)
            return responses.expense_list(expenses, self._clock(), f"Last transactions — {group.name}")
        return self.summary(user, group)

    def balances(self, group: Group) -> str:
        roster = self.repo.roster(group)
        names = {entry.id: entry.name for entry in roster}
        balances = compute_balances(
            self.repo.expenses_for_group(group.id),
            self.repo.payments_for_group(group.id),
            group.roster_ids,
            names,
        )
        return responses.balance_report(group, balances)

    def categories(self, user: Participant, mode: Mode) -> str:
        if mode == "group":
            return responses.categories_list(GROUP_CATEGORIES)
        return responses.categories_list([c.name for c in self.repo.categories_for(user.id)])

    def summary(self, user: Participant, group: Group | None) -> str:
        start = _month_start(self._clock())
        previous_start = _previous_month_start(start)
        end = _next_month_start(start)

        if group is None:
            current = self.repo.personal_expenses(user.id, start, end)
            previous = self.repo.personal_expenses(user.id, previous_start, start)
            title = f"Summary — {start:%B %Y}"
        else:
            everything = self.repo.expenses_for_group(group.id)
            current = [e for e in everything if start <= e.created_at < end]
            previous = [e for e in everything if previous_start <= e.created_at < start]
            title = f"Summary — {group.name}, {start:%B %Y}"

        return responses.monthly_summary(
            title,
            sum((e.amount for e in current), Decimal("0")),
            len(current),
            sum((e.amount for e in previous), Decimal("0")),
            top_categories(current),
        )

    def groups(self, user: Participant, args: list[str]) -> str:
        groups = self.repo.groups_for(user.id)
        if not args:
            group, _ = active_group(self.repo, user)
            return responses.group_list(groups, group.id if group else None)

        try:
            index = int(args[0]) - 1
        except ValueError:
            index = -1
        if not 0 <= index < len(groups):
            return f"There's no group {args[0]}.\n\n" + responses.group_list(groups, user.active_group_id)

        group = groups[index]
        self.repo.set_active_group(user.id, group.id)
        # A proposal for the previous group must not be confirmed into the new one.
        self.pending.clear(user.id, mode="group")
        return responses.group_switched(group)

    def switch_mode(self, user: Participant, args: list[str], mode: Mode) -> str:
        if not args:
            return f"You're in *{mode}* mode. Switch with /mode group or /mode personal."
        target = MODE_WORDS.get(args[0].lower())
        if target is None:
            return "Unknown mode. Use /mode group or /mode personal."
        self.repo.set_active_mode(user.id, target)
        self.pending.clear(user.id, mode=mode)
        return responses.mode_switched(target)

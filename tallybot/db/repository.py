from collections import Counter
from contextlib import contextmanager
from datetime import datetime

from loguru import logger
from tinydb import Query, TinyDB

from tallybot.errors import StoreFailure
from tallybot.models.schemas import (
    Category,
    Expense,
    GhostMember,
    Group,
    Participant,
    Payment,
    Recipient,
    RosterEntry,
)


@contextmanager
def _store_errors(action: str):
    try:
        yield
    except (OSError, ValueError, TypeError) as e:
        logger.error("Store failure while {}: {}", action, e)
        raise StoreFailure(f"{action}: {e}") from e


class LedgerRepository:
    """Document-store access: named tables of documents keyed by an ``id`` field."""

    def __init__(self, db_path: str | None = "tallybot.json", **tinydb_kwargs):
        # No path means a storage that takes none, e.g. MemoryStorage.
        self.db = TinyDB(db_path, **tinydb_kwargs) if db_path else TinyDB(**tinydb_kwargs)
        self.participants = self.db.table("participants")
        self.groups = self.db.table("groups")
        self.expenses = self.db.table("expenses")
        self.payments = self.db.table("payments")
        self.categories = self.db.table("categories")

    def close(self) -> None:
        self.db.close()

    # ── Participants ────────────────────────────────────────────────

    def add_participant(self, participant: Participant) -> Participant:
        with _store_errors("adding participant"):
            self.participants.insert(participant.model_dump(mode="json"))
        return participant

    def get_participant(self, participant_id: str) -> Participant | None:
        with _store_errors("reading participant"):
            doc = self.participants.get(Query().id == participant_id)
        return Participant(**doc) if doc else None

    def get_participant_by_channel(self, channel: str) -> Participant | None:
        with _store_errors("reading participant"):
            doc = self.participants.get(Query().channel == channel)
        return Participant(**doc) if doc else None

    def get_or_create_participant(self, channel: str, name: str) -> Participant:
        existing = self.get_participant_by_channel(channel)
        if existing:
            return existing
        participant = Participant(name=name, channel=channel)
        logger.info("Created participant {} for channel {}", participant.id, channel)
        return self.add_participant(participant)

    def update_participant(self, participant_id: str, **fields) -> Participant | None:
        with _store_errors("updating participant"):
            self.participants.update(fields, Query().id == participant_id)
        return self.get_participant(participant_id)

    def set_aliases(self, participant_id: str, aliases: list[str]) -> Participant | None:
        cleaned = list(dict.fromkeys(a.strip() for a in aliases if a.strip()))
        return self.update_participant(participant_id, aliases=cleaned)

    def set_active_group(self, participant_id: str, group_id: str | None) -> Participant | None:
        return self.update_participant(participant_id, active_group_id=group_id)

    def set_active_mode(self, participant_id: str, mode: str) -> Participant | None:
        return self.update_participant(participant_id, active_mode=mode)

    # ── Groups ──────────────────────────────────────────────────────

    def add_group(self, group: Group) -> Group:
        with _store_errors("adding group"):
            self.groups.insert(group.model_dump(mode="json"))
        return group

    def get_group(self, group_id: str) -> Group | None:
        with _store_errors("reading group"):
            doc = self.groups.get(Query().id == group_id)
        return Group(**doc) if doc else None

    def groups_for(self, participant_id: str) -> list[Group]:
        with _store_errors("reading groups"):
            docs = self.groups.search(Query().members.any([participant_id]))
        return [Group(**doc) for doc in docs]

    def add_member(self, group_id: str, participant_id: str) -> Group | None:
        group = self.get_group(group_id)
        if group is None or participant_id in group.members:
            return group
        group.members = group.members + [participant_id]
        with _store_errors("adding member"):
            self.groups.update({"members": group.members}, Query().id == group_id)
        logger.info("Added {} to group {}", participant_id, group_id)
        return group

    def roster(self, group: Group) -> list[RosterEntry]:
        """Members (registered participants) followed by ghost members."""
        entries = []
        for pid in group.members:
            participant = self.get_participant(pid)
            if participant:
                entries.append(
                    RosterEntry(
                        id=participant.id,
                        name=participant.name,
                        aliases=participant.aliases,
                        channel=participant.channel,
                    )
                )
        entries.extend(
            RosterEntry(id=g.id, name=g.name, aliases=g.aliases) for g in group.ghost_members
        )
        return entries

    def add_ghost(self, group_id: str, name: str, aliases: list[str] | None = None) -> GhostMember:
        group = self.get_group(group_id)
        if group is None:
            raise KeyError(group_id)
        ghost = GhostMember(name=name, aliases=aliases or [])
        ghosts = [g.model_dump(mode="json") for g in group.ghost_members] + [ghost.model_dump(mode="json")]
        with _store_errors("adding ghost member"):
            self.groups.update({"ghost_members": ghosts}, Query().id == group_id)
        return ghost

    def claim_ghost(self, group_id: str, ghost_id: str, participant_id: str) -> int:
        """Merge a ghost into a real participant, rewriting every historical reference.

        Everything is read first, then each table is written once: expenses,
        payments, and finally the group. The writes are not one transaction.
        If one fails, the ghost stays on the group and calling this again
        finishes the merge, since rewritten documents no longer mention it.

        Returns the number of expense/payment documents rewritten.
        """
        group = self.get_group(group_id)
        if group is None or all(g.id != ghost_id for g in group.ghost_members):
            raise KeyError(ghost_id)

        def swap(pid: str) -> str:
            return participant_id if pid == ghost_id else pid

        def rewrite_expense(doc: dict) -> None:
            doc["payer_id"] = swap(doc["payer_id"])
            doc["split_among"] = list(dict.fromkeys(swap(pid) for pid in doc.get("split_among", [])))

        def rewrite_payment(doc: dict) -> None:
            doc["payer_id"] = swap(doc["payer_id"])
            doc["payee_id"] = swap(doc["payee_id"])

        with _store_errors("claiming ghost member"):
            expense_ids = [
                doc.doc_id
                for doc in self.expenses.search(Query().group_id == group_id)
                if doc["payer_id"] == ghost_id or ghost_id in doc.get("split_among", [])
            ]
            payment_ids = [
                doc.doc_id
                for doc in self.payments.search(Query().group_id == group_id)
                if ghost_id in (doc["payer_id"], doc["payee_id"])
            ]
            members = group.members if participant_id in group.members else group.members + [participant_id]
            ghosts = [g.model_dump(mode="json") for g in group.ghost_members if g.id != ghost_id]

            if expense_ids:
                self.expenses.update(rewrite_expense, doc_ids=expense_ids)
            if payment_ids:
                self.payments.update(rewrite_payment, doc_ids=payment_ids)
            self.groups.update({"members": members, "ghost_members": ghosts}, Query().id == group_id)
        rewritten = len(expense_ids) + len(payment_ids)

        logger.info("Ghost {} claimed by {} in group {} ({} records)", ghost_id, participant_id, group_id, rewritten)
        return rewritten

    # ── Expenses ────────────────────────────────────────────────────

    def add_expense(self, expense: Expense) -> Expense:
        with _store_errors("adding expense"):
            self.expenses.insert(expense.model_dump(mode="json"))
        logger.info("Stored expense {} ({})", expense.id, expense.group_id or "personal")
        return expense

    def expenses_for_group(self, group_id: str, limit: int | None = None) -> list[Expense]:
        with _store_errors("reading expenses"):
            docs = self.expenses.search(Query().group_id == group_id)
        expenses = sorted((Expense(**doc) for doc in docs), key=lambda e: e.created_at, reverse=True)
        return expenses[:limit] if limit else expenses

    def personal_expenses(
        self,
        owner_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Expense]:
        Ex = Query()
        with _store_errors("reading expenses"):
            docs = self.expenses.search((Ex.payer_id == owner_id) & (Ex.group_id == None))  # noqa: E711
        expenses = [Expense(**doc) for doc in docs]
        if start:
            expenses = [e for e in expenses if e.created_at >= start]
        if end:
            expenses = [e for e in expenses if e.created_at < end]
        return sorted(expenses, key=lambda e: e.created_at, reverse=True)

    def recipient_history(self, owner_id: str, recipient: Recipient) -> tuple[str, str] | None:
        """Most common (title, category) among the last payments to the same recipient."""
        if recipient.name:
            same = lambda r: bool(r) and r.name == recipient.name  # noqa: E731
        elif recipient.account:
            same = lambda r: bool(r) and r.account == recipient.account  # noqa: E731
        else:
            return None

        past = [e for e in self.personal_expenses(owner_id) if same(e.recipient)][:5]
        if not past:
            return None
        title = Counter(e.description for e in past).most_common(1)[0][0]
        category = Counter(e.category for e in past).most_common(1)[0][0]
        return title, category

    # ── Payments ────────────────────────────────────────────────────

    def add_payment(self, payment: Payment) -> Payment:
        with _store_errors("adding payment"):
            self.payments.insert(payment.model_dump(mode="json"))
        logger.info("Stored payment {} in group {}", payment.id, payment.group_id)
        return payment

    def payments_for_group(self, group_id: str) -> list[Payment]:
        with _store_errors("reading payments"):
            docs = self.payments.search(Query().group_id == group_id)
        return sorted((Payment(**doc) for doc in docs), key=lambda p: p.created_at, reverse=True)

    # ── Categories ──────────────────────────────────────────────────

    def categories_for(self, owner_id: str, include_deleted: bool = False) -> list[Category]:
        with _store_errors("reading categories"):
            docs = self.categories.search(Query().owner_id == owner_id)
        categories = [Category(**doc) for doc in docs]
        if not include_deleted:
            categories = [c for c in categories if c.deleted_at is None]
        return sorted(categories, key=lambda c: c.name.lower())

    def add_category(self, category: Category) -> Category:
        with _store_errors("adding category"):
            self.categories.insert(category.model_dump(mode="json"))
        return category

    def soft_delete_category(self, category_id: str) -> bool:
        with _store_errors("deleting category"):
            updated = self.categories.update(
                {"deleted_at": datetime.now().isoformat()}, Query().id == category_id
            )
        return bool(updated)

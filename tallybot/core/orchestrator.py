"""
Ledger orchestrator.

Sequences one inbound message through the engine:

    dedup -> authorisation -> pending reply -> command -> greeting
          -> extraction (oracle, then deterministic) -> validation
          -> mention resolution -> currency -> proposal or commit

Messages from the same user are processed one at a time; different users
run concurrently.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal

from loguru import logger

from tallybot.core import responses
from tallybot.core.categories import match_category
from tallybot.core.commands import CommandInterpreter, active_group, current_mode, parse_command
from tallybot.core.currency import CurrencyNormalizer
from tallybot.core.dedup import MessageDeduplicator
from tallybot.core.mentions import MentionResolver
from tallybot.core.parsing import (
    DEFAULT_CATEGORY,
    categorize_description,
    extract_currency,
    is_greeting,
    is_payment_message,
    parse_expense_text,
    parse_payment_text,
    parse_personal_expense,
)
from tallybot.core.pending import Outcome, PendingStore, classify_reply
from tallybot.db.repository import LedgerRepository
from tallybot.errors import (
    AmountTooLarge,
    ExcludeAllMembers,
    InvalidAmount,
    InvalidDescription,
    InvalidPayment,
    LedgerError,
    LowConfidence,
    ParseFailure,
    UnresolvedMention,
)
from tallybot.llm.parser import OracleExtractor
from tallybot.models.schemas import (
    Expense,
    Group,
    InboundMessage,
    OutboundMessage,
    Participant,
    Payment,
    PendingProposal,
    Recipient,
    RosterEntry,
)

MAX_DESCRIPTION_LENGTH = 500
SUGGESTION_CONFIDENCE = 0.5
# Keeps cent arithmetic on converted amounts and group totals within Decimal precision.
MAX_AMOUNT = Decimal("999999999999.99")
AUDIO_TITLE = "Voice note expense"


def check_amount(amount: Decimal | None) -> None:
    if amount is None or amount <= 0:
        raise InvalidAmount()
    if amount > MAX_AMOUNT:
        raise AmountTooLarge()


def validate_expense(amount: Decimal, description: str) -> None:
    check_amount(amount)
    if not description or not description.strip():
        raise InvalidDescription("The expense needs a description, e.g. \"150 pizza\".")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidDescription(f"The description is too long (max {MAX_DESCRIPTION_LENGTH} characters).")


class LedgerOrchestrator:
    def __init__(
        self,
        repo: LedgerRepository,
        pending: PendingStore,
        resolver: MentionResolver,
        currency: CurrencyNormalizer,
        oracle: OracleExtractor | None = None,
        dedup: MessageDeduplicator | None = None,
        confidence_threshold: float = 0.7,
        decimal_separator: str = ",",
        home_currency: str = "ARS",
        allowed_ids: list[str] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.pending = pending
        self.resolver = resolver
        self.currency = currency
        self.oracle = oracle
        self.dedup = dedup or MessageDeduplicator()
        self.confidence_threshold = confidence_threshold
        self.decimal_separator = decimal_separator
        self.home_currency = home_currency
        self.allowed_ids = set(allowed_ids or [])
        self.clock = clock
        self.commands = CommandInterpreter(repo, pending, clock)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Entry points ────────────────────────────────────────────────

    async def handle_message(self, message: InboundMessage) -> list[OutboundMessage]:
        if self.dedup.is_duplicate(message.message_id):
            logger.info("Duplicate message {} ignored", message.message_id)
            return []

        user = self._authorised_user(message.user_id)
        if user is None:
            return []

        async with self._locks[user.id]:
            try:
                return await self._handle_text(user, message.text.strip())
            except LedgerError as e:
                logger.info("Message from {} rejected: {}", user.id, type(e).__name__)
                return [self._reply(user, e.user_message)]

    async def handle_media(
        self,
        user_id: str,
        media: bytes,
        mime_type: str,
        caption: str | None = None,
        message_id: str | None = None,
    ) -> list[OutboundMessage]:
        """Turn a transfer receipt into a personal-mode proposal."""
        return await self._handle_personal_media(
            user_id,
            message_id,
            "Receipts",
            lambda user: self._propose_transfer(user, media, mime_type, caption),
        )

    async def handle_audio(
        self,
        user_id: str,
        media: bytes,
        mime_type: str,
        message_id: str | None = None,
    ) -> list[OutboundMessage]:
        """Record the personal expense described in a voice note."""
        return await self._handle_personal_media(
            user_id,
            message_id,
            "Voice notes",
            lambda user: self._record_audio(user, media, mime_type),
        )

    async def _handle_personal_media(
        self,
        user_id: str,
        message_id: str | None,
        label: str,
        step: Callable[[Participant], Awaitable[list[OutboundMessage]]],
    ) -> list[OutboundMessage]:
        if self.dedup.is_duplicate(message_id):
            logger.info("Duplicate media message {} ignored", message_id)
            return []

        user = self._authorised_user(user_id)
        if user is None:
            return []

        async with self._locks[user.id]:
            if current_mode(self.repo, user) != "personal":
                return [self._reply(user, f"{label} can only be logged in personal mode. Switch with /mode personal.")]
            if self.oracle is None:
                return [self._reply(user, f"{label} can't be read right now.")]
            try:
                return await step(user)
            except LedgerError as e:
                logger.info("Media from {} rejected: {}", user.id, type(e).__name__)
                return [self._reply(user, e.user_message)]

    # ── Message flow ────────────────────────────────────────────────

    def _authorised_user(self, user_id: str) -> Participant | None:
        user = self.repo.get_participant(user_id)
        if user is None:
            logger.warning("Message from unknown participant {}", user_id)
            return None
        if self.allowed_ids and user.id not in self.allowed_ids and user.channel not in self.allowed_ids:
            logger.warning("Unauthorized participant {} ({})", user.id, user.channel)
            return None
        return user

    def _reply(self, user: Participant, text: str) -> OutboundMessage:
        return OutboundMessage(participant_id=user.id, text=text)

    async def _handle_text(self, user: Participant, text: str) -> list[OutboundMessage]:
        proposal = self.pending.get(user.id)
        if proposal is not None and proposal.kind == "group_choice":
            if text.isdigit():
                return await self._choose_group(user, proposal, int(text))
            self.pending.discard(user.id, Outcome.ABANDONED)
        elif proposal is not None:
            reply = classify_reply(text)
            if reply == "affirm":
                # Removed before committing, so a second "yes" finds nothing.
                self.pending.discard(user.id, Outcome.COMMITTED)
                return self._commit(user, proposal)
            if reply == "deny":
                self.pending.discard(user.id, Outcome.CANCELLED)
                return [self._reply(user, responses.cancelled())]
            self.pending.discard(user.id, Outcome.ABANDONED)

        command = parse_command(text)
        if command is not None:
            return [self._reply(user, self.commands.dispatch(user, command))]

        mode = current_mode(self.repo, user)
        if is_greeting(text):
            return [self._reply(user, responses.welcome(user.name, mode))]

        if mode == "personal":
            return await self._record_personal(user, text)
        return await self._handle_group_text(user, text)

    async def _handle_group_text(self, user: Participant, text: str) -> list[OutboundMessage]:
        group, groups = active_group(self.repo, user)
        if group is None and not groups:
            return [self._reply(user, responses.no_group())]
        if group is None:
            # Held until the user answers with a group number.
            self.pending.propose(
                PendingProposal(
                    user_id=user.id,
                    mode="group",
                    kind="group_choice",
                    payload={"group_ids": [g.id for g in groups]},
                    raw_text=text,
                )
            )
            return [self._reply(user, responses.choose_group(groups))]
        roster = self.repo.roster(group)

        suggestion = None
        fallback_error: LedgerError | None = None
        if self.oracle is not None:
            result = await self.oracle.extract(text, roster)
            confident = result.confidence >= self.confidence_threshold
            if result.type == "expense" and confident:
                return await self._propose_expense(
                    user, group, roster, text,
                    amount=result.amount,
                    currency=result.currency,
                    description=result.description,
                    mentions=result.split_among,
                    includes_sender=result.includes_sender,
                    exclude=result.exclude_from_split,
                    category=categorize_description(result.description),
                    source="oracle",
                )
            if result.type == "payment" and confident:
                return await self._propose_payment(
                    user, group, roster, text,
                    amount=result.amount,
                    currency=result.currency,
                    direction=result.direction,
                    person=result.person,
                )
            if result.type == "command" and confident:
                command = parse_command(f"/{result.command}")
                if command is not None and command.name is not None:
                    return [self._reply(user, self.commands.dispatch(user, command))]
            if result.type == "unknown" and result.suggestion and result.confidence < SUGGESTION_CONFIDENCE:
                suggestion = result.suggestion
            elif result.type in ("expense", "payment"):
                fallback_error = LowConfidence()
            logger.info("Oracle gave {} ({:.2f}), using the deterministic parser", result.type, result.confidence)

        if is_payment_message(text):
            parsed = parse_payment_text(text, self.decimal_separator, self.home_currency)
            if parsed is None:
                raise InvalidPayment("invalid_amount")
            return await self._propose_payment(
                user, group, roster, text,
                amount=parsed.amount,
                currency=parsed.currency,
                direction=parsed.direction,
                person=parsed.mention,
            )

        parsed = parse_expense_text(text, self.decimal_separator, self.home_currency)
        if parsed.needs_review:
            if suggestion:
                return [self._reply(user, suggestion)]
            if fallback_error is not None:
                raise fallback_error
            raise ParseFailure(text)
        return await self._propose_expense(
            user, group, roster, text,
            amount=parsed.amount,
            currency=parsed.currency,
            description=parsed.description,
            mentions=parsed.mentions,
            # Explicit @mentions name exactly who shares the expense.
            includes_sender=not parsed.mentions,
            exclude=[],
            category=parsed.category,
            source="text",
        )

    async def _choose_group(self, user: Participant, proposal: PendingProposal, number: int) -> list[OutboundMessage]:
        """Make the numbered group active and replay the message that was waiting for it."""
        group_ids = proposal.payload["group_ids"]
        if not 1 <= number <= len(group_ids):
            return [self._reply(user, responses.invalid_group_number(len(group_ids)))]

        self.pending.discard(user.id, Outcome.COMMITTED)
        user = self.repo.set_active_group(user.id, group_ids[number - 1]) or user
        logger.info("User {} picked group {} for a waiting message", user.id, user.active_group_id)
        return await self._handle_group_text(user, proposal.raw_text)

    # ── Proposals ───────────────────────────────────────────────────

    def _split_targets(
        self,
        user: Participant,
        group: Group,
        roster: list[RosterEntry],
        mentions: list[str],
        includes_sender: bool,
        exclude: list[str],
    ) -> list[RosterEntry]:
        """Who shares the expense. An empty list means the whole group."""
        if exclude:
            targets = self.resolver.exclude(exclude, roster, group.name)
            if not includes_sender:
                targets = [e for e in targets if e.id != user.id]
        elif mentions:
            resolution = self.resolver.resolve(mentions, roster)
            if resolution.unresolved:
                raise UnresolvedMention(resolution.unresolved, group.name)
            by_id = {e.id: e for e in roster}
            targets = [by_id[pid] for pid in resolution.resolved_ids]
            if includes_sender and user.id not in resolution.resolved_ids and user.id in by_id:
                targets.append(by_id[user.id])
        elif not includes_sender:
            targets = [e for e in roster if e.id != user.id]
        else:
            return []

        if not targets:
            raise ExcludeAllMembers()
        return targets

    async def _propose_expense(
        self,
        user: Participant,
        group: Group,
        roster: list[RosterEntry],
        text: str,
        *,
        amount: Decimal,
        currency: str | None,
        description: str,
        mentions: list[str],
        includes_sender: bool,
        exclude: list[str],
        category: str,
        source: str,
    ) -> list[OutboundMessage]:
        validate_expense(amount, description)
        targets = self._split_targets(user, group, roster, mentions, includes_sender, exclude)

        converted = await self._to_home(amount, currency)
        foreign = bool(currency) and currency != self.home_currency
        payload = {
            "amount": str(converted),
            "original_amount": str(amount) if foreign else None,
            "original_currency": currency if foreign else None,
            "description": description.strip(),
            "category": category or DEFAULT_CATEGORY,
            "split_among": [e.id for e in targets],
            "split_names": [e.name for e in targets],
            "source": source,
        }
        proposal = self.pending.propose(
            PendingProposal(
                user_id=user.id,
                mode="group",
                kind="expense",
                payload=payload,
                raw_text=text,
                group_id=group.id,
                group_name=group.name,
            )
        )
        return [self._reply(user, responses.expense_proposal(proposal.payload, group.name))]

    async def _propose_payment(
        self,
        user: Participant,
        group: Group,
        roster: list[RosterEntry],
        text: str,
        *,
        amount: Decimal,
        currency: str | None,
        direction: str,
        person: str,
    ) -> list[OutboundMessage]:
        if amount is None or amount <= 0:
            raise InvalidPayment("invalid_amount")
        if amount > MAX_AMOUNT:
            raise AmountTooLarge()
        if not person:
            raise InvalidPayment("no_mention")
        counterpart = self.resolver.match(person, roster)
        if counterpart is None:
            raise UnresolvedMention([person], group.name)
        if counterpart.id == user.id:
            raise InvalidPayment("self_payment")

        converted = await self._to_home(amount, currency)
        foreign = bool(currency) and currency != self.home_currency
        payer, payee = (user.id, counterpart.id) if direction == "paid" else (counterpart.id, user.id)
        payload = {
            "amount": str(converted),
            "original_amount": str(amount) if foreign else None,
            "original_currency": currency if foreign else None,
            "direction": direction,
            "payer_id": payer,
            "payee_id": payee,
            "counterpart_id": counterpart.id,
            "counterpart_name": counterpart.name,
        }
        proposal = self.pending.propose(
            PendingProposal(
                user_id=user.id,
                mode="group",
                kind="payment",
                payload=payload,
                raw_text=text,
                group_id=group.id,
                group_name=group.name,
            )
        )
        return [self._reply(user, responses.payment_proposal(proposal.payload, group.name))]

    async def _propose_transfer(
        self,
        user: Participant,
        media: bytes,
        mime_type: str,
        caption: str | None,
    ) -> list[OutboundMessage]:
        transfer = await self.oracle.extract_transfer(media, mime_type)
        if transfer is None:
            return [self._reply(user, "I couldn't read that receipt. Try a clearer image or log it as text.")]
        check_amount(transfer.amount)

        categories = self.repo.categories_for(user.id)
        label = responses.recipient_label(transfer.recipient)
        title, category_hint, needs_review = f"Transfer to {label}", None, True

        history = self.repo.recipient_history(user.id, transfer.recipient)
        if history:
            title, category_hint = history
            needs_review = False

        if caption and caption.strip():
            # Reuse the personal format for "Title #category" captions.
            parsed = parse_personal_expense(f"1 {caption.strip()}", self.decimal_separator)
            if parsed:
                title = parsed.title
                category_hint = parsed.category_hint or category_hint
                needs_review = False

        category = match_category(category_hint, categories)
        payload = {
            "amount": str(transfer.amount),
            "description": title,
            "category": category.name,
            "category_id": category.id or None,
            "recipient": transfer.recipient.model_dump(),
            "date": transfer.date,
            "concept": transfer.concept,
            "needs_review": needs_review,
            "source": "pdf" if mime_type == "application/pdf" else "image",
        }
        proposal = self.pending.propose(
            PendingProposal(user_id=user.id, mode="personal", kind="transfer", payload=payload)
        )
        return [self._reply(user, responses.transfer_proposal(proposal.payload))]

    # ── Commits ─────────────────────────────────────────────────────

    def _commit(self, user: Participant, proposal: PendingProposal) -> list[OutboundMessage]:
        payload = proposal.payload
        if proposal.kind == "expense":
            expense = self.repo.add_expense(
                Expense(
                    payer_id=user.id,
                    payer_name=user.name,
                    amount=Decimal(payload["amount"]),
                    original_amount=Decimal(payload["original_amount"]) if payload.get("original_amount") else None,
                    original_currency=payload.get("original_currency"),
                    description=payload["description"],
                    category=payload["category"],
                    split_among=payload["split_among"],
                    group_id=proposal.group_id,
                    source=payload.get("source", "text"),
                    original_input=proposal.raw_text,
                    created_at=self.clock(),
                )
            )
            return [self._reply(user, responses.expense_receipt(expense, payload.get("split_names", [])))]

        if proposal.kind == "payment":
            self.repo.add_payment(
                Payment(
                    group_id=proposal.group_id,
                    payer_id=payload["payer_id"],
                    payee_id=payload["payee_id"],
                    amount=Decimal(payload["amount"]),
                    recorded_by=user.id,
                    created_at=self.clock(),
                )
            )
            messages = [self._reply(user, responses.payment_receipt(payload))]
            counterpart = self.repo.get_participant(payload["counterpart_id"])
            if counterpart is not None:
                messages.append(
                    OutboundMessage(
                        participant_id=counterpart.id,
                        text=responses.payment_notification(user.name, payload, proposal.group_name),
                    )
                )
            return messages

        expense = self.repo.add_expense(
            Expense(
                payer_id=user.id,
                payer_name=user.name,
                amount=Decimal(payload["amount"]),
                description=payload["description"],
                category=payload["category"],
                category_id=payload.get("category_id"),
                note=payload.get("concept") or "",
                created_at=self._date_or_now(payload.get("date")),
                source=payload.get("source", "image"),
                recipient=Recipient(**payload["recipient"]) if payload.get("recipient") else None,
                needs_review=payload.get("needs_review", False),
            )
        )
        return [self._reply(user, responses.personal_receipt(expense))]

    async def _record_personal(self, user: Participant, text: str) -> list[OutboundMessage]:
        """Personal-mode text is an explicit format, so it is saved without asking."""
        currency, body = None, text
        hit = extract_currency(text, self.home_currency)
        if hit:
            currency, body = hit

        categories = self.repo.categories_for(user.id)
        parsed = parse_personal_expense(body, self.decimal_separator)
        if parsed is None:
            return [self._reply(user, responses.personal_format_help(categories))]
        validate_expense(parsed.amount, parsed.title)

        hint = parsed.category_hint
        if hint is None:
            inferred = categorize_description(parsed.title)
            hint = inferred if inferred != DEFAULT_CATEGORY else None
        category = match_category(hint, categories)

        amount = await self._to_home(parsed.amount, currency)
        expense = self.repo.add_expense(
            Expense(
                payer_id=user.id,
                payer_name=user.name,
                amount=amount,
                original_amount=parsed.amount if currency else None,
                original_currency=currency,
                description=parsed.title,
                category=category.name,
                category_id=category.id or None,
                note=parsed.note,
                original_input=text,
                created_at=self.clock(),
            )
        )
        return [self._reply(user, responses.personal_receipt(expense))]

    async def _record_audio(self, user: Participant, media: bytes, mime_type: str) -> list[OutboundMessage]:
        """Voice notes describe a single expense and are saved without asking."""
        categories = self.repo.categories_for(user.id)
        audio = await self.oracle.extract_audio(media, mime_type, [c.name for c in categories], self.clock().date())
        if audio is None:
            return [self._reply(user, "I couldn't process that voice note. Try again or log it as text.")]
        if audio.amount <= 0:
            return [self._reply(user, responses.audio_without_amount(audio.transcription))]

        title = audio.title or AUDIO_TITLE
        validate_expense(audio.amount, title)
        category = match_category(audio.category, categories)
        expense = self.repo.add_expense(
            Expense(
                payer_id=user.id,
                payer_name=user.name,
                amount=audio.amount,
                description=title,
                category=category.name,
                category_id=category.id or None,
                note=audio.description,
                created_at=self._date_or_now(audio.date),
                source="audio",
                original_input=audio.transcription,
            )
        )
        return [self._reply(user, responses.audio_receipt(expense, audio.transcription))]

    # ── Helpers ─────────────────────────────────────────────────────

    async def _to_home(self, amount: Decimal, currency: str | None) -> Decimal:
        converted = await self.currency.convert(amount, currency)
        if converted > MAX_AMOUNT:
            raise AmountTooLarge()
        return converted

    def _date_or_now(self, value: str | None) -> datetime:
        if value:
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                logger.warning("Ignoring unreadable date {!r}", value)
        return self.clock()

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, computed_field

Mode = Literal["group", "personal"]
Currency = Literal["ARS", "USD", "EUR", "BRL"]


def new_id() -> str:
    return uuid.uuid4().hex


class Participant(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    aliases: list[str] = []
    channel: str | None = None
    active_group_id: str | None = None
    active_mode: Mode | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class GhostMember(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    aliases: list[str] = []


class Group(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    members: list[str] = []
    created_by: str
    ghost_members: list[GhostMember] = []

    @property
    def roster_ids(self) -> list[str]:
        return self.members + [g.id for g in self.ghost_members]


class RosterEntry(BaseModel):
    """A participant or ghost member as seen by the mention resolver."""

    id: str
    name: str
    aliases: list[str] = []
    channel: str | None = None


class Recipient(BaseModel):
    name: str | None = None
    alias: str | None = None
    account: str | None = None
    bank: str | None = None


class Expense(BaseModel):
    id: str = Field(default_factory=new_id)
    payer_id: str
    payer_name: str = ""
    amount: Decimal
    original_amount: Decimal | None = None
    original_currency: str | None = None
    description: str
    category: str = "general"
    category_id: str | None = None
    note: str = ""
    split_among: list[str] = []
    group_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    source: str = "text"
    original_input: str = ""
    recipient: Recipient | None = None
    needs_review: bool = False


class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    group_id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    recorded_by: str
    created_at: datetime = Field(default_factory=datetime.now)


class Category(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str | None = None
    name: str
    color: str | None = None
    deleted_at: datetime | None = None


class Balance(BaseModel):
    participant_id: str
    name: str = ""
    paid: Decimal = Decimal("0")
    share: Decimal = Decimal("0")
    adjustment: Decimal = Decimal("0")

    @computed_field
    @property
    def net(self) -> Decimal:
        return self.paid - self.share + self.adjustment


# ── Oracle extraction results ──────────────────────────────────────


class ExpenseExtraction(BaseModel):
    type: Literal["expense"] = "expense"
    amount: Decimal = Decimal("0")
    currency: Currency = "ARS"
    description: str = ""
    split_among: list[str] = []
    includes_sender: bool = True
    exclude_from_split: list[str] = []
    confidence: float = 0.5


class PaymentExtraction(BaseModel):
    type: Literal["payment"] = "payment"
    amount: Decimal = Decimal("0")
    currency: Currency = "ARS"
    direction: Literal["paid", "received"] = "paid"
    person: str
    confidence: float = 0.5


class CommandExtraction(BaseModel):
    type: Literal["command"] = "command"
    command: str
    confidence: float = 1.0


class UnknownExtraction(BaseModel):
    type: Literal["unknown"] = "unknown"
    confidence: float = 0.0
    suggestion: str | None = None


class ErrorExtraction(BaseModel):
    type: Literal["error"] = "error"
    error: str
    confidence: float = 0.0


ExtractionResult = Annotated[
    ExpenseExtraction
    | PaymentExtraction
    | CommandExtraction
    | UnknownExtraction
    | ErrorExtraction,
    Field(discriminator="type"),
]


class TransferExtraction(BaseModel):
    amount: Decimal = Decimal("0")
    recipient: Recipient = Recipient()
    date: str | None = None
    concept: str | None = None


class AudioExtraction(BaseModel):
    transcription: str = ""
    title: str = ""
    amount: Decimal = Decimal("0")
    description: str = ""
    category: str | None = None
    date: str | None = None


# ── Confirmation state ─────────────────────────────────────────────


class PendingProposal(BaseModel):
    user_id: str
    mode: Mode
    kind: Literal["expense", "payment", "transfer", "group_choice"]
    payload: dict[str, Any]
    raw_text: str = ""
    group_id: str | None = None
    group_name: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


# ── Transport-facing messages ──────────────────────────────────────


class InboundMessage(BaseModel):
    user_id: str
    text: str
    message_id: str | None = None


class OutboundMessage(BaseModel):
    participant_id: str
    text: str


# ── API requests ───────────────────────────────────────────────────


class InjectMessageRequest(BaseModel):
    user_id: str
    text: str
    message_id: str | None = None


class UpdateAliasesRequest(BaseModel):
    aliases: list[str]


class CreateGroupRequest(BaseModel):
    name: str
    created_by: str
    members: list[str] = []


class AddMemberRequest(BaseModel):
    participant_id: str


class AddGhostRequest(BaseModel):
    name: str
    aliases: list[str] = []

import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import BaseModel

from tallybot.core.currency import CurrencyNormalizer
from tallybot.core.dedup import MessageDeduplicator
from tallybot.core.mentions import MentionResolver
from tallybot.core.orchestrator import LedgerOrchestrator
from tallybot.core.pending import PendingStore
from tallybot.db.repository import LedgerRepository
from tallybot.llm.parser import coerce_extraction
from tallybot.models.schemas import AudioExtraction, Group, Participant, TransferExtraction


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeOracle:
    """Returns canned raw responses through the real coercion boundary."""

    def __init__(self, *responses, transfer: TransferExtraction | None = None, audio: AudioExtraction | None = None):
        self.responses = list(responses)
        self.transfer = transfer
        self.audio = audio
        self.calls: list[str] = []

    async def extract(self, text, roster):
        self.calls.append(text)
        raw = self.responses.pop(0) if self.responses else {"type": "unknown", "confidence": 0}
        if isinstance(raw, BaseModel):
            return raw
        if not isinstance(raw, str):
            raw = json.dumps(raw)
        return coerce_extraction(raw, "ARS")

    async def extract_transfer(self, media, mime_type):
        self.calls.append(mime_type)
        return self.transfer

    async def extract_audio(self, media, mime_type, categories, today):
        self.calls.append(mime_type)
        return self.audio


@pytest.fixture
def repo(tmp_path):
    repository = LedgerRepository(str(tmp_path / "ledger.json"))
    yield repository
    repository.close()


@pytest.fixture
def alice(repo):
    return repo.add_participant(Participant(name="Alice", channel="100"))


@pytest.fixture
def bob(repo):
    return repo.add_participant(Participant(name="Bob", channel="200"))


@pytest.fixture
def carol(repo):
    return repo.add_participant(Participant(name="Carol", channel="300"))


@pytest.fixture
def group(repo, alice, bob, carol):
    return repo.add_group(Group(name="Trip", members=[alice.id, bob.id, carol.id], created_by=alice.id))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pending(clock):
    return PendingStore(ttl_seconds=300, clock=clock)


@pytest.fixture
def normalizer():
    currency = CurrencyNormalizer(home_currency="ARS", fallback_rates={"USD": Decimal("850")})
    currency.prime({"USD": Decimal("1000"), "EUR": Decimal("1100")})
    return currency


@pytest.fixture
def make_orchestrator(repo, pending, normalizer, clock):
    def _make(oracle=None, allowed_ids=None):
        return LedgerOrchestrator(
            repo=repo,
            pending=pending,
            resolver=MentionResolver(),
            currency=normalizer,
            oracle=oracle,
            dedup=MessageDeduplicator(),
            allowed_ids=allowed_ids,
            clock=clock,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, group):
    return make_orchestrator()

"""
Confirmation state machine.

Each user has at most one pending proposal:

    NONE -> PROPOSED -> COMMITTED | CANCELLED | ABANDONED | EXPIRED -> NONE

The store is the only owner of that state. Removal is idempotent, so the TTL
sweep and a concurrent confirmation can both try to drop the same proposal.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from loguru import logger

from tallybot.models.schemas import Mode, PendingProposal

AFFIRMATIVE_WORDS = {"si", "sí", "yes", "y", "s", "ok", "dale", "va", "bueno", "listo", "confirmo"}
NEGATIVE_WORDS = {"no", "n", "cancelar", "cancel", "nope", "na", "nel"}


class Outcome(str, Enum):
    COMMITTED = "committed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


def classify_reply(text: str) -> str | None:
    """"affirm", "deny", or None for anything else."""
    word = text.strip().lower().rstrip("!.")
    if word in AFFIRMATIVE_WORDS:
        return "affirm"
    if word in NEGATIVE_WORDS:
        return "deny"
    return None


class PendingStore:
    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], datetime] = datetime.now):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._proposals: dict[str, PendingProposal] = {}

    def __len__(self) -> int:
        return len(self._proposals)

    def _expired(self, proposal: PendingProposal) -> bool:
        return self._clock() - proposal.created_at >= self.ttl

    def propose(self, proposal: PendingProposal) -> PendingProposal:
        """Store ``proposal`` as the user's only pending one, replacing any older."""
        proposal.created_at = self._clock()
        self._proposals[proposal.user_id] = proposal
        logger.info("Proposal stored for user {} ({}, {})", proposal.user_id, proposal.mode, proposal.kind)
        return proposal

    def get(self, user_id: str) -> PendingProposal | None:
        proposal = self._proposals.get(user_id)
        if proposal is None:
            return None
        if self._expired(proposal):
            self.discard(user_id, Outcome.EXPIRED)
            return None
        return proposal

    def discard(self, user_id: str, outcome: Outcome) -> PendingProposal | None:
        proposal = self._proposals.pop(user_id, None)
        if proposal is not None:
            logger.info("Proposal for user {} {}", user_id, outcome.value)
        return proposal

    def clear(self, user_id: str, mode: Mode | None = None) -> bool:
        """Drop the user's proposal, optionally only when it belongs to ``mode``."""
        proposal = self._proposals.get(user_id)
        if proposal is None or (mode is not None and proposal.mode != mode):
            return False
        return self.discard(user_id, Outcome.ABANDONED) is not None

    def sweep(self) -> int:
        """Remove every expired proposal. No one is notified."""
        expired = [uid for uid, p in list(self._proposals.items()) if self._expired(p)]
        for user_id in expired:
            self.discard(user_id, Outcome.EXPIRED)
        return len(expired)


async def run_sweeps(interval_seconds: float, *sweepers: Callable[[], int]) -> None:
    """Call each sweeper every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        for sweep in sweepers:
            try:
                removed = sweep()
            except Exception as e:
                logger.error("Sweep {} failed: {}", getattr(sweep, "__qualname__", sweep), e)
                continue
            if removed:
                logger.debug("{} removed {} entries", getattr(sweep, "__qualname__", sweep), removed)

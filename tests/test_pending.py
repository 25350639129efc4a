import asyncio

import pytest

from tallybot.core.dedup import MessageDeduplicator
from tallybot.core.pending import Outcome, classify_reply, run_sweeps
from tallybot.models.schemas import PendingProposal


def _proposal(user_id="u1", mode="group", kind="expense"):
    return PendingProposal(user_id=user_id, mode=mode, kind=kind, payload={"amount": "150"})


@pytest.mark.parametrize("text", ["si", "Sí", "yes", "OK!", "dale", "y"])
def test_affirmative_replies(text):
    assert classify_reply(text) == "affirm"


@pytest.mark.parametrize("text", ["no", "NO.", "cancel", "cancelar", "n"])
def test_negative_replies(text):
    assert classify_reply(text) == "deny"


@pytest.mark.parametrize("text", ["yes please add it", "150 pizza", ""])
def test_anything_else_is_neither(text):
    assert classify_reply(text) is None


def test_one_proposal_per_user(pending):
    pending.propose(_proposal())
    newer = pending.propose(_proposal(kind="payment"))
    assert len(pending) == 1
    assert pending.get("u1") is newer


def test_proposal_expires_after_ttl(pending, clock):
    pending.propose(_proposal())
    clock.advance(299)
    assert pending.get("u1") is not None
    clock.advance(1)
    assert pending.get("u1") is None
    assert len(pending) == 0


def test_discard_is_idempotent(pending):
    pending.propose(_proposal())
    assert pending.discard("u1", Outcome.COMMITTED) is not None
    assert pending.discard("u1", Outcome.EXPIRED) is None


def test_clear_filters_by_mode(pending):
    pending.propose(_proposal(mode="personal", kind="transfer"))
    assert not pending.clear("u1", mode="group")
    assert pending.get("u1") is not None
    assert pending.clear("u1", mode="personal")
    assert pending.get("u1") is None


def test_sweep_only_removes_expired(pending, clock):
    pending.propose(_proposal("u1"))
    clock.advance(200)
    pending.propose(_proposal("u2"))
    clock.advance(150)
    assert pending.sweep() == 1
    assert pending.get("u1") is None
    assert pending.get("u2") is not None


def test_dedup_remembers_ids_until_swept():
    now = [0.0]
    dedup = MessageDeduplicator(ttl_seconds=3600, clock=lambda: now[0])
    assert not dedup.is_duplicate("m1")
    assert dedup.is_duplicate("m1")
    assert not dedup.is_duplicate(None)
    now[0] = 3601
    assert dedup.sweep() == 1
    assert not dedup.is_duplicate("m1")


async def test_run_sweeps_survives_failing_sweeper():
    calls = []

    def broken():
        calls.append("broken")
        raise RuntimeError("boom")

    def working():
        calls.append("working")
        return 0

    task = asyncio.create_task(run_sweeps(0.01, broken, working))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert calls.count("working") >= 2

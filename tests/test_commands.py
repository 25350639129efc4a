from datetime import datetime
from decimal import Decimal

import pytest

from tallybot.core.commands import CommandInterpreter, active_group, current_mode, parse_command, top_categories
from tallybot.models.schemas import Category, Expense, Group, PendingProposal


@pytest.fixture
def interpreter(repo, pending, clock):
    return CommandInterpreter(repo, pending, clock)


@pytest.mark.parametrize(
    "text, name",
    [
        ("/balance", "balance"),
        ("/saldo", "balance"),
        ("saldo", "balance"),
        ("Lista", "list"),
        ("/ayuda", "help"),
        ("/start", "help"),
        ("/resumen", "summary"),
        ("/balance@tallybot", "balance"),
    ],
)
def test_parse_known_commands(text, name):
    assert parse_command(text).name == name


def test_parse_mode_and_group_arguments():
    assert parse_command("modo personal").args == ["personal"]
    assert parse_command("/group 2").args == ["2"]


def test_unknown_slash_command_is_recognised_as_command():
    command = parse_command("/frobnicate")
    assert command.name is None
    assert command.raw == "frobnicate"


@pytest.mark.parametrize("text", ["150 pizza", "balance is off", "lista de compras", "", "/"])
def test_non_commands(text):
    assert parse_command(text) is None


def test_dispatch_unknown_points_to_help(interpreter, alice, group):
    reply = interpreter.dispatch(alice, parse_command("/frobnicate"))
    assert "/help" in reply


def test_balance_report(repo, interpreter, alice, group):
    repo.add_expense(Expense(payer_id=alice.id, payer_name="Alice", amount=Decimal("150"), description="pizza", group_id=group.id))
    reply = interpreter.dispatch(alice, parse_command("/balance"))
    assert "Alice is owed $100" in reply
    assert "Bob owes $50" in reply
    assert "Carol owes $50" in reply


def test_balance_when_settled(interpreter, alice, group):
    assert "settled up" in interpreter.dispatch(alice, parse_command("saldo"))


def test_list_shows_last_ten(repo, interpreter, alice, group, clock):
    for i in range(12):
        repo.add_expense(
            Expense(payer_id=alice.id, amount=Decimal(i + 1), description=f"item{i}", group_id=group.id, created_at=clock())
        )
    reply = interpreter.dispatch(alice, parse_command("/list"))
    assert reply.count("item") == 10
    assert "today" in reply


def test_summary_compares_with_previous_month(repo, interpreter, alice, group):
    def add(amount, category, when):
        repo.add_expense(
            Expense(payer_id=alice.id, amount=Decimal(amount), description="x", category=category, group_id=group.id, created_at=when)
        )

    add("300", "food", datetime(2026, 3, 2))
    add("100", "transport", datetime(2026, 3, 5))
    add("200", "food", datetime(2026, 2, 20))
    reply = interpreter.dispatch(alice, parse_command("/summary"))
    assert "Total: $400 in 2 expenses" in reply
    assert "+100%" in reply
    assert "1. food — $300" in reply


def test_top_categories_limit():
    expenses = [
        Expense(payer_id="a", amount=Decimal(v), description="x", category=c)
        for v, c in [("5", "a"), ("50", "b"), ("20", "c"), ("1", "d"), ("30", "a")]
    ]
    assert top_categories(expenses) == [("b", Decimal("50")), ("a", Decimal("35")), ("c", Decimal("20"))]


def test_group_switch_clears_pending_group_proposal(repo, interpreter, pending, alice, group):
    other = repo.add_group(Group(name="Flat", members=[alice.id], created_by=alice.id))
    pending.propose(PendingProposal(user_id=alice.id, mode="group", kind="expense", payload={}))

    reply = interpreter.dispatch(alice, parse_command("/group 2"))
    assert "Flat" in reply
    assert repo.get_participant(alice.id).active_group_id == other.id
    assert pending.get(alice.id) is None


def test_group_list_and_bad_index(repo, interpreter, alice, group):
    assert "1. Trip" in interpreter.dispatch(alice, parse_command("/group"))
    assert "There's no group 7" in interpreter.dispatch(alice, parse_command("/group 7"))


def test_active_group_needs_choice_with_several_groups(repo, alice, group):
    repo.add_group(Group(name="Flat", members=[alice.id], created_by=alice.id))
    chosen, groups = active_group(repo, repo.get_participant(alice.id))
    assert chosen is None
    assert len(groups) == 2


def test_mode_switch(repo, interpreter, pending, alice, group):
    assert current_mode(repo, alice) == "group"
    pending.propose(PendingProposal(user_id=alice.id, mode="group", kind="expense", payload={}))

    reply = interpreter.dispatch(alice, parse_command("/mode finanzas"))
    assert "personal" in reply
    refreshed = repo.get_participant(alice.id)
    assert current_mode(repo, refreshed) == "personal"
    assert pending.get(alice.id) is None


def test_personal_categories_and_balance(repo, interpreter, alice):
    repo.add_category(Category(owner_id=alice.id, name="Supermercado"))
    repo.set_active_mode(alice.id, "personal")
    user = repo.get_participant(alice.id)
    assert "Supermercado" in interpreter.dispatch(user, parse_command("/categories"))
    assert "/mode group" in interpreter.dispatch(user, parse_command("/balance"))

from decimal import ROUND_HALF_UP, Decimal

from tallybot.models.schemas import Balance, Expense, Payment

CENT = Decimal("0.01")


def split_evenly(amount: Decimal, participant_ids: list[str]) -> dict[str, Decimal]:
    """Split ``amount`` into cent-exact shares that always add back up to it.

    Leftover cents go to the first participants in id order, so the result
    does not depend on the order of ``participant_ids``.
    """
    cents = int((amount / CENT).to_integral_value(rounding=ROUND_HALF_UP))
    base, remainder = divmod(cents, len(participant_ids))
    lucky = set(sorted(participant_ids)[:remainder])
    return {
        pid: (Decimal(base + (1 if pid in lucky else 0)) * CENT)
        for pid in participant_ids
    }


def split_targets(expense: Expense, member_ids: list[str]) -> list[str]:
    """Explicit split filtered to current members, else the whole membership."""
    members = set(member_ids)
    targets = list(dict.fromkeys(pid for pid in expense.split_among if pid in members))
    return targets or list(member_ids)


def compute_balances(
    expenses: list[Expense],
    payments: list[Payment],
    member_ids: list[str],
    names: dict[str, str] | None = None,
) -> list[Balance]:
    """Net position of everyone in a group, creditors first.

    Payers and payees that have left the group keep their row so the nets
    still add up to zero.
    """
    names = names or {}
    balances: dict[str, Balance] = {}

    def row(pid: str) -> Balance:
        if pid not in balances:
            balances[pid] = Balance(participant_id=pid, name=names.get(pid, ""))
        return balances[pid]

    for pid in member_ids:
        row(pid)

    for expense in expenses:
        amount = expense.amount.quantize(CENT, rounding=ROUND_HALF_UP)
        row(expense.payer_id).paid += amount

        targets = split_targets(expense, member_ids) or [expense.payer_id]
        for pid, share in split_evenly(amount, targets).items():
            row(pid).share += share

    for payment in payments:
        amount = payment.amount.quantize(CENT, rounding=ROUND_HALF_UP)
        # Paying reduces what the payer owes and what the payee is owed.
        row(payment.payer_id).adjustment += amount
        row(payment.payee_id).adjustment -= amount

    return sorted(balances.values(), key=lambda b: b.net, reverse=True)


def has_activity(balances: list[Balance]) -> bool:
    return any(b.paid or b.share or b.adjustment for b in balances)

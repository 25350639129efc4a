from datetime import datetime
from decimal import Decimal

from tallybot.core.balances import has_activity
from tallybot.core.categories import category_emoji
from tallybot.models.schemas import Balance, Category, Expense, Group, Mode, Recipient

CONFIRM_HINT = "Reply *yes* to save it or *no* to cancel."


def format_money(amount: Decimal, currency: str | None = None) -> str:
    """Format an amount: '$1,500' for the home currency, 'USD 50' otherwise."""
    if amount == amount.to_integral_value():
        number = f"{int(amount):,}"
    else:
        number = f"{amount:,.2f}"
    if currency:
        return f"{currency} {number}"
    return f"${number}"


def _original(amount: Decimal | None, currency: str | None) -> str:
    if amount is None or not currency:
        return ""
    return f" ({format_money(amount, currency)})"


def _split_label(names: list[str]) -> str:
    return ", ".join(names) if names else "the whole group"


def expense_proposal(payload: dict, group_name: str | None) -> str:
    amount = Decimal(payload["amount"])
    original_amount = payload.get("original_amount")
    lines = [
        "*New expense*",
        f"{category_emoji(payload['category'])} {payload['description']}",
        f"Amount: {format_money(amount)}"
        + _original(Decimal(original_amount) if original_amount else None, payload.get("original_currency")),
        f"Split among: {_split_label(payload.get('split_names', []))}",
    ]
    if group_name:
        lines.append(f"Group: {group_name}")
    lines.append("")
    lines.append(CONFIRM_HINT)
    return "\n".join(lines)


def expense_receipt(expense: Expense, split_names: list[str]) -> str:
    text = (
        f"✅ Saved: *{expense.description}* — {format_money(expense.amount)}"
        + _original(expense.original_amount, expense.original_currency)
    )
    return text + f"\nSplit among: {_split_label(split_names)}"


def payment_proposal(payload: dict, group_name: str | None) -> str:
    amount = format_money(Decimal(payload["amount"]))
    if payload["direction"] == "paid":
        headline = f"You paid *{payload['counterpart_name']}* {amount}"
    else:
        headline = f"*{payload['counterpart_name']}* paid you {amount}"
    original_amount = payload.get("original_amount")
    headline += _original(Decimal(original_amount) if original_amount else None, payload.get("original_currency"))
    lines = ["*New payment*", headline]
    if group_name:
        lines.append(f"Group: {group_name}")
    lines.append("")
    lines.append(CONFIRM_HINT)
    return "\n".join(lines)


def payment_receipt(payload: dict) -> str:
    amount = format_money(Decimal(payload["amount"]))
    if payload["direction"] == "paid":
        return f"✅ Payment saved: you paid {payload['counterpart_name']} {amount}"
    return f"✅ Payment saved: {payload['counterpart_name']} paid you {amount}"


def payment_notification(sender_name: str, payload: dict, group_name: str | None) -> str:
    amount = format_money(Decimal(payload["amount"]))
    where = f" in {group_name}" if group_name else ""
    if payload["direction"] == "paid":
        return f"💸 {sender_name} recorded that they paid you {amount}{where}."
    return f"💸 {sender_name} recorded that you paid them {amount}{where}."


def recipient_label(recipient: Recipient) -> str:
    return recipient.name or recipient.alias or recipient.account or "unknown recipient"


def transfer_proposal(payload: dict) -> str:
    recipient = Recipient(**(payload.get("recipient") or {}))
    lines = [
        "*Transfer detected*",
        f"To: {recipient_label(recipient)}",
        f"Amount: {format_money(Decimal(payload['amount']))}",
        f"Title: {payload['description']}",
        f"Category: {payload['category']}",
    ]
    if payload.get("date"):
        lines.append(f"Date: {payload['date']}")
    if payload.get("needs_review"):
        lines.append("\n_First transfer to this recipient, check the title and category._")
    lines.append("")
    lines.append(CONFIRM_HINT)
    return "\n".join(lines)


def personal_receipt(expense: Expense) -> str:
    text = (
        f"✅ {format_money(expense.amount)} — *{expense.description}*"
        + _original(expense.original_amount, expense.original_currency)
        + f"\nCategory: {expense.category}"
    )
    if expense.note:
        text += f"\nNote: {expense.note}"
    return text


def audio_receipt(expense: Expense, transcription: str) -> str:
    text = personal_receipt(expense)
    if transcription:
        text = f'_"{transcription}"_\n\n' + text
    return text


def audio_without_amount(transcription: str) -> str:
    text = "I couldn't work out the expense. Say the amount, e.g. \"1500 for groceries\"."
    if transcription:
        text = f'_"{transcription}"_\n\n' + text
    return text


def cancelled() -> str:
    return "Cancelled. Nothing was saved."


def welcome(name: str, mode: Mode) -> str:
    if mode == "personal":
        example = '"$1500 Groceries #super d:weekly shop"'
    else:
        example = '"150 pizza" or "1000 taxi @Bob"'
    return f"Hi {name}! 👋 Send me an expense, e.g. {example}. Send /help for everything else."


def personal_format_help(categories: list[Category]) -> str:
    lines = [
        "I couldn't read that expense.\n",
        "Format: `$<amount> <title> #<category> d:<note>`",
        'e.g. "$1500 Groceries #super d:weekly shop"',
    ]
    if categories:
        lines.append("\nYour categories: " + ", ".join(c.name for c in categories))
    return "\n".join(lines)


def help_text(mode: Mode) -> str:
    if mode == "personal":
        usage = (
            "*Personal mode*\n\n"
            "Log an expense:\n"
            "• $1500 Groceries #super\n"
            "• $800 Coffee #food d:with Ana\n"
            "• Send a transfer receipt (image or PDF)\n"
            "• Send a voice note describing an expense\n"
        )
    else:
        usage = (
            "*Group mode*\n\n"
            "Log a shared expense:\n"
            "• 150 pizza\n"
            "• 1000 taxi @Bob @Carol\n"
            "• 50 usd dinner\n\n"
            "Record a payment:\n"
            "• paid 5000 @Bob\n"
            "• received 3000 @Carol\n"
        )
    return (
        usage
        + "\nCommands:\n"
        "/balance — Who owes whom\n"
        "/list — Last 10 transactions\n"
        "/summary — This month vs last month\n"
        "/categories — Available categories\n"
        "/group — List or switch groups\n"
        "/mode group|personal — Switch mode\n"
        "/help — Show this message"
    )


def unknown_command(raw: str) -> str:
    return f"I don't know the command /{raw}. Send /help to see what I can do."


def balance_report(group: Group, balances: list[Balance]) -> str:
    if not has_activity(balances):
        return f"*{group.name}*\n\nNo expenses yet, everyone is settled up. 🎉"
    if all(b.net == 0 for b in balances):
        return f"*{group.name}*\n\nEveryone is settled up. 🎉"

    lines = [f"*Balances — {group.name}*\n"]
    for balance in balances:
        name = balance.name or balance.participant_id[:6]
        if balance.net > 0:
            lines.append(f"🟢 {name} is owed {format_money(balance.net)}")
        elif balance.net < 0:
            lines.append(f"🔴 {name} owes {format_money(-balance.net)}")
        else:
            lines.append(f"⚪ {name} is even")
    return "\n".join(lines)


def relative_date(when: datetime, now: datetime) -> str:
    days = (now.date() - when.date()).days
    if days == 0:
        return "today"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    return when.strftime("%d/%m")


def expense_list(expenses: list[Expense], now: datetime, title: str) -> str:
    if not expenses:
        return f"*{title}*\n\nNo transactions yet."

    lines = [f"*{title}*\n"]
    for expense in expenses:
        who = f" · {expense.payer_name}" if expense.group_id and expense.payer_name else ""
        lines.append(
            f"{category_emoji(expense.category)} {format_money(expense.amount)} {expense.description}"
            f"{who} · {relative_date(expense.created_at, now)}"
        )
    return "\n".join(lines)


def categories_list(names: list[str]) -> str:
    if not names:
        return "No categories yet."
    return "*Categories*\n\n" + "\n".join(f"{category_emoji(n)} {n}" for n in names)


def monthly_summary(
    title: str,
    total: Decimal,
    count: int,
    previous_total: Decimal,
    top: list[tuple[str, Decimal]],
) -> str:
    lines = [f"*{title}*\n", f"Total: {format_money(total)} in {count} expenses"]
    if previous_total > 0:
        change = (total - previous_total) / previous_total * 100
        arrow = "📈" if change > 0 else "📉"
        lines.append(f"{arrow} {change:+.0f}% vs last month ({format_money(previous_total)})")
    elif total > 0:
        lines.append("No expenses last month to compare with.")
    if top:
        lines.append("\nTop categories:")
        for i, (name, amount) in enumerate(top, 1):
            lines.append(f"{i}. {name} — {format_money(amount)}")
    return "\n".join(lines)


def group_list(groups: list[Group], active_id: str | None) -> str:
    if not groups:
        return "You're not in any group yet."
    lines = ["*Your groups*\n"]
    for i, group in enumerate(groups, 1):
        marker = " ✅" if group.id == active_id else ""
        lines.append(f"{i}. {group.name}{marker}")
    lines.append("\nSwitch with /group <number>.")
    return "\n".join(lines)


def choose_group(groups: list[Group]) -> str:
    lines = ["You're in several groups. Which one is this for?\n"]
    lines.extend(f"{i}. {g.name}" for i, g in enumerate(groups, 1))
    lines.append("\nReply with the number of the group.")
    return "\n".join(lines)


def invalid_group_number(count: int) -> str:
    return f"⚠️ That's not one of the groups. Reply with a number between 1 and {count}."


def no_group() -> str:
    return (
        "You're not in any group yet. Ask a group admin to add you, "
        "or switch to personal mode with /mode personal."
    )


def group_switched(group: Group) -> str:
    return f"Active group: *{group.name}*"


def mode_switched(mode: Mode) -> str:
    if mode == "personal":
        return "Switched to *personal* mode. Expenses are now yours alone."
    return "Switched to *group* mode. Expenses are now shared with your group."

"""Error taxonomy for the ledger engine.

Every error carries a plain-language ``user_message`` so the orchestrator can
answer the user without leaking internals.
"""


class LedgerError(Exception):
    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail


class ParseFailure(LedgerError):
    user_message = (
        "I couldn't understand that message.\n\n"
        "Try something like:\n"
        '• "150 pizza"\n'
        '• "1500 taxi @Bob"\n'
        '• "20 usd dinner with Carol"\n\n'
        "Send /help for more."
    )


class LowConfidence(LedgerError):
    user_message = "I'm not sure what you meant. Could you rephrase?"


class UnresolvedMention(LedgerError):
    def __init__(self, names: list[str], group_name: str | None = None):
        super().__init__(f"unresolved: {', '.join(names)}")
        self.names = names
        self.group_name = group_name

    @property
    def user_message(self) -> str:
        header = (
            "I couldn't find this person in the group:"
            if len(self.names) == 1
            else "I couldn't find these people in the group:"
        )
        lines = [f"*{header}*"]
        lines.extend(f"• {name}" for name in self.names)
        if self.group_name:
            lines.append(f"\nCurrent group: *{self.group_name}*")
        lines.append(
            "\nCheck the spelling, switch groups with /group, "
            "or send the expense again with the right names."
        )
        return "\n".join(lines)


class InvalidAmount(LedgerError):
    user_message = "The amount must be greater than zero."


class AmountTooLarge(InvalidAmount):
    user_message = "That amount is too large to record. Check the number and try again."


class InvalidDescription(LedgerError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def user_message(self) -> str:
        return self.reason


class InvalidPayment(LedgerError):
    REASONS = {
        "invalid_amount": "The payment amount must be a positive number.",
        "invalid_mention": "I couldn't find that person in this group.",
        "no_mention": "Tell me who you paid, e.g. \"paid 5000 @Maria\".",
        "self_payment": "You can't record a payment to yourself.",
    }

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def user_message(self) -> str:
        return self.REASONS.get(self.reason, "I couldn't process that payment.")


class ExternalTimeout(LedgerError):
    user_message = "The service took too long to answer."


class StoreFailure(LedgerError):
    user_message = (
        "*Couldn't save that.*\n\n"
        "Something went wrong while storing it. Nothing was recorded, please try again."
    )


class ExcludeAllMembers(LedgerError):
    user_message = (
        "You can't exclude the whole group. "
        "At least one person has to share the expense."
    )

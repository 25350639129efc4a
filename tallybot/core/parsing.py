"""
Deterministic message parsing.

Regex/pattern extraction of amount, description, currency and @mentions.
This is the guaranteed-available path: it never calls out and is used when
the oracle is disabled, times out, or is not confident enough.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

NUMBER = r"\d+(?:[.,]\d+)*"

_MENTION_RE = re.compile(r"@([A-Za-z0-9_À-ɏ]+)")
_SHAPE_RE = re.compile(rf"^\$?\s*({NUMBER})\s+(.+)$", re.DOTALL)
_PERSONAL_RE = re.compile(r"^\$?\s*([\d.,]+)\s+(.+)$", re.DOTALL)
_HASHTAG_RE = re.compile(r"#(\S+)")
_NOTE_RE = re.compile(r"d:(.+?)(?=#|$)", re.IGNORECASE | re.DOTALL)

CURRENCY_WORDS = {
    "usd": "USD", "dollar": "USD", "dollars": "USD", "dolar": "USD", "dolares": "USD",
    "dólar": "USD", "dólares": "USD",
    "eur": "EUR", "euro": "EUR", "euros": "EUR",
    "brl": "BRL", "real": "BRL", "reais": "BRL", "reales": "BRL",
    "ars": "ARS", "peso": "ARS", "pesos": "ARS",
}
# Longest first so "dollars" wins over "dollar".
_CURRENCY_ALT = "|".join(sorted(CURRENCY_WORDS, key=len, reverse=True))
_CURRENCY_AFTER_RE = re.compile(rf"({NUMBER})\s*({_CURRENCY_ALT})\b", re.IGNORECASE)
_CURRENCY_BEFORE_RE = re.compile(rf"\b({_CURRENCY_ALT})\s*({NUMBER})", re.IGNORECASE)
_CURRENCY_WORD_RE = re.compile(rf"\b({_CURRENCY_ALT})\b", re.IGNORECASE)

CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "food": [
        "lunch", "almuerzo", "dinner", "cena", "breakfast", "desayuno", "comida",
        "restaurant", "restaurante", "pizza", "burger", "coffee", "café", "beer",
        "cerveza", "birra", "drink", "bebida", "snack", "groceries", "supermercado",
        "market", "mercado", "morfi",
    ],
    "transport": [
        "taxi", "uber", "cabify", "bus", "colectivo", "bondi", "train", "tren",
        "metro", "subte", "subway", "flight", "vuelo", "car", "auto", "rental",
        "alquiler", "gas", "nafta", "parking", "estacionamiento",
    ],
    "accommodation": [
        "hotel", "airbnb", "hostel", "alojamiento", "lodging", "rent", "house",
        "casa", "apartment", "apartamento", "depto",
    ],
    "entertainment": [
        "ticket", "entrada", "show", "espectaculo", "museum", "museo", "tour",
        "excursion", "excursión", "activity", "actividad", "game", "juego",
        "movie", "cine", "theater", "teatro", "club", "bar", "disco", "party",
        "fiesta", "boliche",
    ],
}
DEFAULT_CATEGORY = "general"

PAID_PREFIXES = ("le pagué", "le pague", "pagué", "pague", "i paid", "paid")
RECEIVED_PREFIXES = ("me pagó", "me pago", "recibí", "recibi", "received", "got")

GREETINGS = {
    "hi", "hello", "hey", "hola", "buenas", "buen dia", "buen día", "buenos dias",
    "buenos días", "good morning", "que tal", "qué tal",
}


@dataclass(frozen=True)
class ParsedExpense:
    amount: Decimal
    description: str
    currency: str | None = None
    mentions: list[str] = field(default_factory=list)
    category: str = DEFAULT_CATEGORY
    needs_review: bool = False


@dataclass(frozen=True)
class ParsedPayment:
    direction: str
    amount: Decimal
    mention: str
    currency: str | None = None


@dataclass(frozen=True)
class PersonalExpense:
    amount: Decimal
    title: str
    category_hint: str | None
    note: str


def parse_amount(raw: str, decimal_separator: str = ",") -> Decimal | None:
    """Parse a number written with either separator; None when unparsable or not positive."""
    if not raw:
        return None
    text = raw.strip()
    thousands = "." if decimal_separator == "," else ","

    if decimal_separator in text and thousands in text:
        text = text.replace(thousands, "").replace(decimal_separator, ".")
    elif thousands in text:
        groups = text.split(thousands)
        if all(len(g) == 3 for g in groups[1:]):
            text = "".join(groups)
        else:
            text = text.replace(thousands, ".")
    elif decimal_separator in text:
        text = text.replace(decimal_separator, ".")

    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def extract_mentions(text: str) -> tuple[list[str], str]:
    """Pull out @name tokens; returns (mentions, text without them)."""
    mentions: list[str] = []

    def _collect(match: re.Match) -> str:
        mentions.append(match.group(1))
        return ""

    cleaned = _MENTION_RE.sub(_collect, text)
    return mentions, " ".join(cleaned.split())


def extract_currency(text: str, home_currency: str = "ARS") -> tuple[str, str] | None:
    """Find a currency word next to a number.

    Returns (currency code, text with the currency word removed), or None when
    there is none or it names the home currency.
    """
    match = _CURRENCY_AFTER_RE.search(text)
    word_group = 2
    if not match:
        match = _CURRENCY_BEFORE_RE.search(text)
        word_group = 1
    if not match:
        return None

    word = match.group(word_group)
    code = CURRENCY_WORDS.get(word.lower(), word.upper())
    start, end = match.span(word_group)
    remaining = " ".join((text[:start] + " " + text[end:]).split())
    if code == home_currency:
        return None
    return code, remaining


def strip_currency_words(description: str) -> str:
    return " ".join(_CURRENCY_WORD_RE.sub("", description).split())


def categorize_description(description: str) -> str:
    lower = description.lower()
    for category, words in CATEGORY_KEYWORDS.items():
        for word in words:
            if word in lower:
                return category
    return DEFAULT_CATEGORY


def parse_expense_text(
    text: str,
    decimal_separator: str = ",",
    home_currency: str = "ARS",
) -> ParsedExpense:
    """Parse "<number> <description>" with optional currency word and @mentions."""
    mentions, clean = extract_mentions(text.strip())

    currency = None
    hit = extract_currency(clean, home_currency)
    if hit:
        currency, clean = hit

    match = _SHAPE_RE.match(clean)
    if not match:
        return ParsedExpense(
            amount=Decimal("0"), description=text.strip(), mentions=mentions, needs_review=True
        )

    amount = parse_amount(match.group(1), decimal_separator)
    if amount is None:
        return ParsedExpense(
            amount=Decimal("0"), description=text.strip(), mentions=mentions, needs_review=True
        )

    description = strip_currency_words(match.group(2))
    return ParsedExpense(
        amount=amount,
        description=description,
        currency=currency,
        mentions=mentions,
        category=categorize_description(description),
    )


def payment_direction(text: str) -> str | None:
    lower = text.strip().lower()
    if lower.startswith(PAID_PREFIXES):
        return "paid"
    if lower.startswith(RECEIVED_PREFIXES):
        return "received"
    return None


def is_payment_message(text: str) -> bool:
    return payment_direction(text) is not None and bool(_MENTION_RE.search(text))


def parse_payment_text(
    text: str,
    decimal_separator: str = ",",
    home_currency: str = "ARS",
) -> ParsedPayment | None:
    """Parse "paid 5000 @Maria" / "recibí 3000 @Juan". Exactly one mention is required."""
    direction = payment_direction(text)
    if direction is None:
        return None

    mentions, clean = extract_mentions(text)
    if len(mentions) != 1:
        return None

    currency = None
    hit = extract_currency(clean, home_currency)
    if hit:
        currency, clean = hit

    number = re.search(NUMBER, clean)
    if not number:
        return None
    amount = parse_amount(number.group(0), decimal_separator)
    if amount is None:
        return None
    return ParsedPayment(direction=direction, amount=amount, mention=mentions[0], currency=currency)


def parse_personal_expense(text: str, decimal_separator: str = ",") -> PersonalExpense | None:
    """Parse the personal format "$<amount> <title> #<category> d:<note>"."""
    match = _PERSONAL_RE.match(text.strip())
    if not match:
        return None

    amount = parse_amount(match.group(1), decimal_separator)
    if amount is None:
        return None

    rest = match.group(2).strip()
    category_hint = None
    tag = _HASHTAG_RE.search(rest)
    if tag:
        category_hint = tag.group(1).lower()
        rest = _HASHTAG_RE.sub("", rest, count=1).strip()

    note = ""
    note_match = _NOTE_RE.search(rest)
    if note_match:
        note = note_match.group(1).strip()
        rest = _NOTE_RE.sub("", rest, count=1).strip()

    title = " ".join(rest.split())
    if not title:
        return None
    return PersonalExpense(
        amount=amount,
        title=title[0].upper() + title[1:],
        category_hint=category_hint,
        note=note,
    )


def is_greeting(text: str) -> bool:
    normalized = re.sub(r"[!¡?¿.,]", "", text).strip().lower()
    return normalized in GREETINGS

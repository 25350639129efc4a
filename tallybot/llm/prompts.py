from tallybot.models.schemas import RosterEntry

MAX_ROSTER_ENTRIES = 40
MAX_ALIASES_PER_ENTRY = 5


def format_roster(roster: list[RosterEntry]) -> str:
    if not roster:
        return "No registered members"
    lines = []
    for entry in roster[:MAX_ROSTER_ENTRIES]:
        aliases = [a for a in entry.aliases if a][:MAX_ALIASES_PER_ENTRY]
        lines.append(f"- {entry.name} (aliases: {', '.join(aliases)})" if aliases else f"- {entry.name}")
    return "\n".join(lines)


def build_extraction_prompt(roster: list[RosterEntry], home_currency: str = "ARS") -> str:
    return (
        "You extract shared-expense and payment information from chat messages "
        "written in Spanish (often Argentine slang) or English.\n\n"
        f"GROUP MEMBERS (for identifying mentions):\n{format_roster(roster)}\n\n"
        f"HOME CURRENCY: {home_currency}\n\n"
        + EXTRACTION_RULES
    )


EXTRACTION_RULES = """\
MESSAGE TYPES:
1. "expense": the sender paid for something to be shared.
   e.g. "Gasté 150 en pizza", "50 dólares la cena", "5 lucas el taxi", "150 pizza"
2. "payment": the sender gave money to, or received money from, ONE person.
   e.g. "Le pagué 5000 a María", "Recibí 3k de Juan", "paid Bob 200"
3. "command": the sender wants a bot command (balance, list, group, help, categories, summary).
   e.g. "/balance", "show me the balance", "quién debe?"
4. "unknown": greetings, questions, anything ambiguous.

SLANG DICTIONARY:
- lucas, luquitas, k: thousands (5 lucas = 5000, 5k = 5000)
- mangos, pe, pes: pesos
- guita, plata: money
- morfi: food; birra: beer; bondi: bus

CURRENCY RULES:
- Default to the home currency.
- "dólares", "dol", "usd", "dollars" -> USD
- "euros", "eur" -> EUR
- "reales", "reais", "brl" -> BRL
- "pesos", "mangos", "pe" -> ARS
- Only ARS, USD, EUR or BRL are valid.

MENTION RULES:
- List EVERY person named in the message in splitAmong, even if they are not group members.
- Use the name exactly as written. "@" is optional.

SPLIT RULES (includesSender):
1. Nobody mentioned: splitAmong [], includesSender true (whole group).
2. Natural language ("con Juan", "with Ana and Pedro", "entre Juan y yo"): includesSender true.
3. Explicit @mentions or "para Juan" / "solo Juan" / "for Juan": includesSender false.
4. The sender names themselves ("conmigo", "and me"): includesSender true.

EXCLUSION RULES:
- "todos menos Juan", "everyone except Juan", "entre todos sin Juan":
  excludeFromSplit ["Juan"], splitAmong [], includesSender true.
- "todos menos yo", "everyone but me": excludeFromSplit [], splitAmong [], includesSender false.

RESPONSE FORMAT (a single JSON object, nothing else):
expense: {"type":"expense","amount":<number>,"currency":"ARS|USD|EUR|BRL","description":"<text>","splitAmong":["<name>"],"includesSender":true,"excludeFromSplit":["<name>"],"confidence":<0..1>}
payment: {"type":"payment","amount":<number>,"currency":"ARS|USD|EUR|BRL","direction":"paid|received","person":"<name>","confidence":<0..1>}
command: {"type":"command","command":"<command without />","confidence":1.0}
unknown: {"type":"unknown","confidence":<0..1>,"suggestion":"<short hint for the user>"}

CONFIDENCE:
- 0.95-1.0 explicit amount and description
- 0.8-0.94 clear but uses slang
- 0.7-0.79 understandable but somewhat ambiguous
- below 0.7 too ambiguous, better to ask

EXAMPLES:
"150 pizza"
{"type":"expense","amount":150,"currency":"ARS","description":"pizza","splitAmong":[],"includesSender":true,"excludeFromSplit":[],"confidence":0.95}
"USD 50 cena @Juan @Maria"
{"type":"expense","amount":50,"currency":"USD","description":"cena","splitAmong":["Juan","Maria"],"includesSender":false,"excludeFromSplit":[],"confidence":0.98}
"Gasté 50 dólares en la cena con juan"
{"type":"expense","amount":50,"currency":"USD","description":"cena","splitAmong":["juan"],"includesSender":true,"excludeFromSplit":[],"confidence":0.9}
"5 lucas el uber, todos menos Pedro"
{"type":"expense","amount":5000,"currency":"ARS","description":"uber","splitAmong":[],"includesSender":true,"excludeFromSplit":["Pedro"],"confidence":0.9}
"Le pagué 5000 a María"
{"type":"payment","amount":5000,"currency":"ARS","direction":"paid","person":"María","confidence":0.95}
"hola!"
{"type":"unknown","confidence":0.9,"suggestion":"Tell me what you paid, e.g. \\"150 pizza\\""}

Return ONLY valid JSON. No markdown, no code fences, no explanation text.\
"""


TRANSFER_PROMPT = """\
You read bank transfer receipts (images or PDFs) and extract the transfer data.

Return a single JSON object:
{
  "amount": <number>,
  "recipientName": "<name or null>",
  "recipientAccount": "<account number / CBU / IBAN or null>",
  "recipientAlias": "<account alias or null>",
  "recipientBank": "<bank or null>",
  "date": "<YYYY-MM-DD or null>",
  "concept": "<transfer concept/reference or null>"
}

Amounts use "." for thousands and "," for decimals on Argentine receipts; return a plain number.
Return ONLY valid JSON. No markdown, no code fences, no explanation text.\
"""


def build_audio_prompt(categories: list[str], today: str) -> str:
    category_line = f"The user's categories: {', '.join(categories)}\n" if categories else ""
    return f"""\
You transcribe short voice notes in which a person describes something they bought.
Today is {today}.

Return a single JSON object:
{{
  "transcription": "<full transcription>",
  "title": "<short title for the expense, max 30 characters>",
  "totalAmount": <number, 0 if no amount is said>,
  "description": "<short extra detail or empty>",
  "category": "<best matching category or null>",
  "date": "<YYYY-MM-DD or null>"
}}

{category_line}Resolve relative dates ("yesterday", "on Tuesday", "the 5th") against today.
Return ONLY valid JSON. No markdown, no code fences, no explanation text.\
"""

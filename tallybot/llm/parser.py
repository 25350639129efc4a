import asyncio
import base64
import json
import math
import re
import time
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from loguru import logger
from openai import AsyncOpenAI
from pydantic import ValidationError

from tallybot.core.parsing import parse_amount
from tallybot.errors import ExternalTimeout
from tallybot.llm.prompts import TRANSFER_PROMPT, build_audio_prompt, build_extraction_prompt
from tallybot.models.schemas import (
    AudioExtraction,
    CommandExtraction,
    ErrorExtraction,
    ExpenseExtraction,
    ExtractionResult,
    PaymentExtraction,
    Recipient,
    RosterEntry,
    TransferExtraction,
    UnknownExtraction,
)

VALID_CURRENCIES = {"ARS", "USD", "EUR", "BRL"}
MAX_TITLE_LENGTH = 30

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


# ── Untrusted text -> trusted values ────────────────────────────────


def load_json_object(text: str) -> dict | None:
    """Parse the single JSON object in ``text``, tolerating code fences and chatter."""
    raw = (text or "").strip()
    candidates = [raw]
    fenced = _FENCE_RE.search(raw)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _amount(value: Any, decimal_separator: str = ",") -> Decimal:
    if isinstance(value, bool) or value is None:
        return Decimal("0")
    if isinstance(value, str):
        # Same rules as typed amounts, e.g. "1.500,50" with a "," separator.
        return parse_amount(value.strip().lstrip("$").strip(), decimal_separator) or Decimal("0")
    if not isinstance(value, (int, float)):
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def _currency(value: Any, home_currency: str) -> str:
    code = value.strip().upper() if isinstance(value, str) else ""
    return code if code in VALID_CURRENCIES else home_currency


def _confidence(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(1.0, max(0.0, number))


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _names(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _flag(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return default


def _field(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def coerce_extraction(raw: str, home_currency: str = "ARS", decimal_separator: str = ",") -> ExtractionResult:
    """Turn raw oracle text into a trusted extraction result.

    This is the only place oracle output becomes a domain value. Anything that
    cannot be coerced ends up as ``unknown`` with confidence 0.
    """
    data = load_json_object(raw)
    if data is None or not isinstance(data.get("type"), str):
        logger.warning("Oracle response without a usable type discriminator")
        return UnknownExtraction(confidence=0.0)

    kind = data["type"].strip().lower()
    home = home_currency if home_currency in VALID_CURRENCIES else "ARS"
    try:
        if kind == "expense":
            return ExpenseExtraction(
                amount=_amount(data.get("amount"), decimal_separator),
                currency=_currency(data.get("currency"), home),
                description=_text(data.get("description")),
                split_among=_names(_field(data, "splitAmong", "split_among")),
                includes_sender=_flag(_field(data, "includesSender", "includes_sender"), True),
                exclude_from_split=_names(_field(data, "excludeFromSplit", "exclude_from_split")),
                confidence=_confidence(data.get("confidence"), 0.5),
            )
        if kind == "payment":
            person = _text(data.get("person"))
            if not person:
                raise ValueError("payment without counterpart")
            return PaymentExtraction(
                amount=_amount(data.get("amount"), decimal_separator),
                currency=_currency(data.get("currency"), home),
                direction="received" if data.get("direction") == "received" else "paid",
                person=person,
                confidence=_confidence(data.get("confidence"), 0.5),
            )
        if kind == "command":
            command = _text(data.get("command")).lstrip("/")
            if not command:
                raise ValueError("command without name")
            return CommandExtraction(
                command=command.lower(),
                confidence=_confidence(data.get("confidence"), 1.0),
            )
        suggestion = _text(data.get("suggestion")) or None
        return UnknownExtraction(
            confidence=_confidence(data.get("confidence"), 0.3),
            suggestion=suggestion,
        )
    except (ValueError, ValidationError) as e:
        logger.warning("Oracle {} response failed coercion: {}", kind, e)
        return UnknownExtraction(confidence=0.0)


def coerce_transfer(raw: str, decimal_separator: str = ",") -> TransferExtraction | None:
    data = load_json_object(raw)
    if data is None:
        return None
    return TransferExtraction(
        amount=_amount(data.get("amount"), decimal_separator),
        recipient=Recipient(
            name=_text(data.get("recipientName")) or None,
            alias=_text(data.get("recipientAlias")) or None,
            account=_text(_field(data, "recipientAccount", "recipientCBU")) or None,
            bank=_text(data.get("recipientBank")) or None,
        ),
        date=_text(data.get("date")) or None,
        concept=_text(data.get("concept")) or None,
    )


def coerce_audio(raw: str, decimal_separator: str = ",") -> AudioExtraction | None:
    data = load_json_object(raw)
    if data is None:
        return None
    return AudioExtraction(
        transcription=_text(data.get("transcription")),
        title=_text(data.get("title"))[:MAX_TITLE_LENGTH],
        amount=_amount(_field(data, "totalAmount", "amount"), decimal_separator),
        description=_text(data.get("description")),
        category=_text(data.get("category")) or None,
        date=_text(data.get("date")) or None,
    )


# ── Oracle client ──────────────────────────────────────────────────

AUDIO_FORMATS = {"audio/ogg": "ogg", "audio/mpeg": "mp3", "audio/mp3": "mp3", "audio/wav": "wav", "audio/x-wav": "wav"}


class OracleExtractor:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 5.0,
        home_currency: str = "ARS",
        decimal_separator: str = ",",
        client: AsyncOpenAI | None = None,
    ):
        self.client = client or AsyncOpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
        )
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.home_currency = home_currency
        self.decimal_separator = decimal_separator

    async def _complete(self, messages: list[dict]) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=0.1,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExternalTimeout(f"no answer within {self.timeout_seconds}s") from e
        if not response.choices:
            raise ValueError("oracle response has no choices")
        return (response.choices[0].message.content or "").strip()

    async def _complete_media(self, messages: list[dict], what: str) -> str | None:
        """Like ``_complete`` but any failure is logged and gives None."""
        try:
            return await self._complete(messages)
        except ExternalTimeout as e:
            logger.warning("Oracle {} timed out: {}", what, e)
        except Exception as e:
            logger.error("Oracle {} failed: {}", what, e)
        return None

    async def extract(self, text: str, roster: list[RosterEntry]) -> ExtractionResult:
        messages = [
            {"role": "system", "content": build_extraction_prompt(roster, self.home_currency)},
            {"role": "user", "content": f'User message: "{text}"'},
        ]
        started = time.monotonic()
        try:
            raw = await self._complete(messages)
        except ExternalTimeout as e:
            logger.warning("Oracle timed out: {}", e)
            return ErrorExtraction(error="timeout")
        except Exception as e:
            logger.error("Oracle request failed: {}", e)
            return ErrorExtraction(error=str(e) or type(e).__name__)

        logger.debug("Oracle raw response: {}", raw)
        result = coerce_extraction(raw, self.home_currency, self.decimal_separator)
        logger.info(
            "Oracle result {} (confidence {:.2f}) in {}ms",
            result.type,
            result.confidence,
            int((time.monotonic() - started) * 1000),
        )
        return result

    async def extract_transfer(self, media: bytes, mime_type: str) -> TransferExtraction | None:
        encoded = base64.b64encode(media).decode("ascii")
        data_url = f"data:{mime_type};base64,{encoded}"
        if mime_type == "application/pdf":
            part = {"type": "file", "file": {"filename": "receipt.pdf", "file_data": data_url}}
        else:
            part = {"type": "image_url", "image_url": {"url": data_url}}

        messages = [
            {"role": "system", "content": TRANSFER_PROMPT},
            {"role": "user", "content": [{"type": "text", "text": "Extract the transfer data."}, part]},
        ]
        raw = await self._complete_media(messages, "transfer extraction")
        if raw is None:
            return None

        transfer = coerce_transfer(raw, self.decimal_separator)
        if transfer is None:
            logger.warning("Oracle transfer response was not JSON")
        return transfer

    async def extract_audio(
        self,
        media: bytes,
        mime_type: str,
        categories: list[str],
        today: date,
    ) -> AudioExtraction | None:
        """Transcribe a voice note and pull the expense it describes out of it."""
        base_type = mime_type.split(";")[0].strip().lower()
        part = {
            "type": "input_audio",
            "input_audio": {
                "data": base64.b64encode(media).decode("ascii"),
                "format": AUDIO_FORMATS.get(base_type, "ogg"),
            },
        }
        messages = [
            {"role": "system", "content": build_audio_prompt(categories, today.isoformat())},
            {"role": "user", "content": [{"type": "text", "text": "Transcribe this voice note."}, part]},
        ]
        raw = await self._complete_media(messages, "audio transcription")
        if raw is None:
            return None

        audio = coerce_audio(raw, self.decimal_separator)
        if audio is None:
            logger.warning("Oracle audio response was not JSON")
        return audio

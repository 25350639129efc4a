from tallybot.config import get_settings
from tallybot.core.currency import CurrencyNormalizer
from tallybot.core.dedup import MessageDeduplicator
from tallybot.core.mentions import MentionResolver
from tallybot.core.orchestrator import LedgerOrchestrator
from tallybot.core.pending import PendingStore
from tallybot.db.repository import LedgerRepository
from tallybot.llm.parser import OracleExtractor

settings = get_settings()

repo = LedgerRepository(settings.db_path)
pending = PendingStore(ttl_seconds=settings.pending_ttl_seconds)
dedup = MessageDeduplicator(ttl_seconds=settings.dedup_ttl_seconds)
currency = CurrencyNormalizer(
    home_currency=settings.home_currency,
    urls=settings.rates_urls,
    fallback_rates=settings.fallback_rates,
    ttl_seconds=settings.rates_ttl_seconds,
    timeout_seconds=settings.rates_timeout_seconds,
)
oracle = (
    OracleExtractor(
        api_key=settings.openrouter_api_key,
        model=settings.llm_model,
        timeout_seconds=settings.ai_timeout_seconds,
        home_currency=settings.home_currency,
        decimal_separator=settings.decimal_separator,
    )
    if settings.oracle_enabled
    else None
)
orchestrator = LedgerOrchestrator(
    repo=repo,
    pending=pending,
    resolver=MentionResolver(),
    currency=currency,
    oracle=oracle,
    dedup=dedup,
    confidence_threshold=settings.ai_confidence_threshold,
    decimal_separator=settings.decimal_separator,
    home_currency=settings.home_currency,
    allowed_ids=settings.allowed_user_ids,
)

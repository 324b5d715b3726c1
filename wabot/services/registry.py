"""Process-wide service instances, created on first use."""

from typing import List, Optional

from wabot.config import settings
from wabot.database import SessionLocal
from wabot.logging_config import get_logger
from wabot.services.cache import DurableStore, MemoryTier, RedisCacheStore, SqlCacheStore, TwoTierCache
from wabot.services.classifier import SemanticClassifier
from wabot.services.fallback_classifier import GenerativeFallbackClassifier
from wabot.services.faq_service import FaqMatcher, build_airtable_source
from wabot.services.handlers import (
    AssistantHandler,
    CalendarGateway,
    CalendarHandler,
    CancelCommandHandler,
    CrmGateway,
    DomainActionHandler,
    FaqHandler,
    FollowUpHandler,
    NullCalendarGateway,
    NullCrmGateway,
    build_default_actions,
)
from wabot.services.llm import OpenAIEmbeddingProvider, OpenAIProvider
from wabot.services.pipeline import IntakePipeline
from wabot.services.retry import RetryPolicy
from wabot.services.whatsapp_service import WhatsAppClient

logger = get_logger("registry")

INTENT_NAMESPACE = "intent"
FAQ_QUERY_NAMESPACE = "faq_query_embedding"

_llm_provider = None
_embedding_provider = None
_durable_store = None
_durable_store_resolved = False
_intent_cache = None
_faq_query_cache = None
_semantic_classifier = None
_faq_matcher = None
_whatsapp_client = None
_pipeline = None
_calendar_gateway: CalendarGateway = NullCalendarGateway()
_crm_gateway: CrmGateway = NullCrmGateway()


def embeddings_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        name="embeddings",
        max_attempts=settings.retry_max_attempts,
        backoff_seconds=tuple(settings.retry_backoff_seconds),
    )


def generative_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        name="generative",
        max_attempts=max(1, settings.retry_max_attempts - 1),
        backoff_seconds=tuple(settings.retry_backoff_seconds),
    )


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.fast_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    return _llm_provider


def get_embedding_provider() -> OpenAIEmbeddingProvider:
    global _embedding_provider
    if _embedding_provider is None:
        _embedding_provider = OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.embedding_timeout_seconds,
            batch_limit=settings.embedding_batch_limit,
            dimensions=settings.embedding_dimensions,
        )
    return _embedding_provider


def get_durable_store() -> Optional[DurableStore]:
    """Redis when configured (``auto`` or ``redis``), else the SQL table; ``none`` disables."""
    global _durable_store, _durable_store_resolved
    if _durable_store_resolved:
        return _durable_store

    backend = (settings.cache_backend or "auto").strip().lower()
    if backend == "none":
        _durable_store = None
    elif backend == "redis" or (backend == "auto" and settings.redis_url):
        if not settings.redis_url:
            raise ValueError("CACHE_BACKEND=redis requires REDIS_URL")
        _durable_store = RedisCacheStore.from_url(settings.redis_url)
    else:
        _durable_store = SqlCacheStore(SessionLocal)
    _durable_store_resolved = True
    logger.info(f"Durable cache backend: {type(_durable_store).__name__ if _durable_store else 'none'}")
    return _durable_store


def _build_cache(namespace: str, memory_ttl_seconds: int, durable_ttl_seconds: int) -> TwoTierCache:
    return TwoTierCache(
        namespace=namespace,
        memory=MemoryTier(ttl_seconds=memory_ttl_seconds, max_entries=settings.cache_max_entries),
        durable=get_durable_store(),
        durable_ttl_seconds=durable_ttl_seconds,
    )


def get_intent_cache() -> TwoTierCache:
    global _intent_cache
    if _intent_cache is None:
        _intent_cache = _build_cache(
            INTENT_NAMESPACE, settings.cache_memory_ttl_seconds, settings.cache_durable_ttl_seconds
        )
    return _intent_cache


def get_faq_query_cache() -> TwoTierCache:
    global _faq_query_cache
    if _faq_query_cache is None:
        _faq_query_cache = _build_cache(
            FAQ_QUERY_NAMESPACE, settings.faq_query_cache_ttl_seconds, settings.cache_durable_ttl_seconds
        )
    return _faq_query_cache


def get_caches() -> List[TwoTierCache]:
    return [get_intent_cache(), get_faq_query_cache()]


def get_semantic_classifier() -> SemanticClassifier:
    global _semantic_classifier
    if _semantic_classifier is None:
        fallback = GenerativeFallbackClassifier(
            get_llm_provider(),
            model=settings.classifier_model,
            retry_policy=generative_retry_policy(),
            timeout_seconds=settings.classifier_timeout_seconds,
        )
        _semantic_classifier = SemanticClassifier(
            get_embedding_provider(),
            get_intent_cache(),
            fallback,
            retry_policy=embeddings_retry_policy(),
        )
    return _semantic_classifier


def get_faq_matcher() -> FaqMatcher:
    global _faq_matcher
    if _faq_matcher is None:
        _faq_matcher = FaqMatcher(
            get_embedding_provider(),
            get_faq_query_cache(),
            build_airtable_source(),
            thresholds=settings.faq_thresholds,
            keyword_floor=settings.faq_keyword_floor,
            retry_policy=embeddings_retry_policy(),
        )
    return _faq_matcher


def get_whatsapp_client() -> WhatsAppClient:
    global _whatsapp_client
    if _whatsapp_client is None:
        _whatsapp_client = WhatsAppClient(
            access_token=settings.whatsapp_access_token,
            api_base=settings.whatsapp_api_base,
            timeout_seconds=settings.whatsapp_timeout_seconds,
        )
    return _whatsapp_client


def set_gateways(calendar: Optional[CalendarGateway] = None, crm: Optional[CrmGateway] = None) -> None:
    """Install calendar/CRM integrations; resets the pipeline so they take effect."""
    global _calendar_gateway, _crm_gateway, _pipeline
    if calendar is not None:
        _calendar_gateway = calendar
    if crm is not None:
        _crm_gateway = crm
    _pipeline = None


def build_handlers() -> list:
    return [
        CancelCommandHandler(_calendar_gateway),
        FollowUpHandler(_calendar_gateway),
        CalendarHandler(_calendar_gateway, confirmation_ttl_seconds=settings.confirmation_ttl_seconds),
        DomainActionHandler(get_semantic_classifier(), build_default_actions(_crm_gateway)),
        FaqHandler(get_faq_matcher()),
        AssistantHandler(
            get_llm_provider(),
            model=settings.fast_model,
            history_messages=settings.history_messages,
            timeout_seconds=settings.llm_timeout_seconds,
        ),
    ]


def get_pipeline() -> IntakePipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = IntakePipeline(SessionLocal, build_handlers(), get_whatsapp_client())
    return _pipeline


def reset() -> None:
    """Drop every cached instance (tests)."""
    global _llm_provider, _embedding_provider, _durable_store, _durable_store_resolved
    global _intent_cache, _faq_query_cache, _semantic_classifier, _faq_matcher, _whatsapp_client, _pipeline
    for cache in (_intent_cache, _faq_query_cache):
        if cache is not None:
            cache.shutdown()
    _llm_provider = None
    _embedding_provider = None
    _durable_store = None
    _durable_store_resolved = False
    _intent_cache = None
    _faq_query_cache = None
    _semantic_classifier = None
    _faq_matcher = None
    _whatsapp_client = None
    _pipeline = None

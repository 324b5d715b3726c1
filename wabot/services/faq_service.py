"""FAQ matching: stored embeddings, then the live FAQ source, then keywords."""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence
from uuid import UUID

import httpx
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from wabot.config import settings
from wabot.logging_config import get_logger, log_timing
from wabot.models import Business, FaqEmbedding
from wabot.services.cache import TwoTierCache, content_hash
from wabot.services.errors import UpstreamUnavailableError
from wabot.services.llm.base import EmbeddingProvider, chunked
from wabot.services.result import Result
from wabot.services.retry import RetryPolicy, call_with_retry
from wabot.services.similarity import best_match

logger = get_logger("faq_service")

KEYWORD_WEIGHTS = {"exact": 0.4, "partial": 0.3, "proper_noun": 0.15, "pattern": 0.15}
QUESTION_PATTERN_WORDS = {
    "what",
    "when",
    "where",
    "who",
    "why",
    "how",
    "which",
    "can",
    "does",
    "price",
    "cost",
    "much",
    "many",
    "difference",
    "compare",
    "versus",
    "vs",
    "better",
    "cheaper",
    "best",
}
_WORD_RE = re.compile(r"[\w']+", re.UNICODE)
_SENTENCE_RE = re.compile(r"[.!?\n]+")
# Function words and interrogatives carry no topic; they never count as overlap.
STOP_WORDS = {
    "the",
    "and",
    "for",
    "are",
    "you",
    "your",
    "our",
    "with",
    "this",
    "that",
    "have",
    "has",
    "was",
    "were",
    "will",
    "from",
    "about",
    "there",
    "any",
    "what",
    "when",
    "where",
    "who",
    "why",
    "how",
    "which",
    "can",
    "does",
    "did",
    "could",
    "would",
}


class MatchType(str, Enum):
    SEMANTIC_CACHED = "semantic_cached"
    SEMANTIC_LIVE = "semantic_live"
    KEYWORD_FALLBACK = "keyword_fallback"


@dataclass
class FaqEntry:
    id: str
    question: str
    answer: str
    business_id: Optional[UUID] = None
    embedding: Optional[List[float]] = None


@dataclass
class FaqMatch:
    entry: FaqEntry
    score: float
    match_type: MatchType
    threshold: Optional[float] = None

    @property
    def answer(self) -> str:
        return self.entry.answer


# ---------------------------------------------------------------------------
# Keyword scoring
# ---------------------------------------------------------------------------


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _words(text: str) -> list[str]:
    words = (word.lower() for word in _WORD_RE.findall(text or "") if len(word) > 2)
    return [word for word in words if word not in STOP_WORDS]


def _proper_tokens(text: str) -> list[str]:
    """Capitalized or all-caps tokens; a sentence's first word counts only when all caps."""
    tokens = []
    for sentence in _SENTENCE_RE.split(text or ""):
        for position, word in enumerate(_WORD_RE.findall(sentence)):
            if len(word) < 2 or word.lower() in STOP_WORDS:
                continue
            if word.isupper() or (position > 0 and word[0].isupper()):
                tokens.append(word.lower())
    return tokens


def _pattern_words(text: str) -> set[str]:
    return {word.lower() for word in _WORD_RE.findall(text or "")} & QUESTION_PATTERN_WORDS


def keyword_score(query: str, question: str) -> float:
    """Blend of four lexical signals, each in [0, 1]."""
    query_words = _words(query)
    faq_words = _words(question)
    signals = {"exact": 0.0, "partial": 0.0, "proper_noun": 0.0, "pattern": 0.0}

    if query_words and faq_words:
        faq_set = set(faq_words)
        denominator = max(len(query_words), len(faq_words))
        exact = sum(1 for word in query_words if word in faq_set)
        partial = sum(1 for word in query_words if any(word in other or other in word for other in faq_words))
        signals["exact"] = exact / denominator
        signals["partial"] = partial / denominator

    query_proper = _proper_tokens(query)
    faq_proper = _proper_tokens(question)
    if query_proper and faq_proper:
        total = 0.0
        for token in query_proper:
            total += max(
                1.0 - levenshtein_distance(token, other) / max(len(token), len(other)) for other in faq_proper
            )
        signals["proper_noun"] = total / len(query_proper)

    # Shared question shape only counts alongside shared content words
    query_patterns = _pattern_words(query)
    faq_patterns = _pattern_words(question)
    if signals["exact"] > 0 and (query_patterns or faq_patterns):
        signals["pattern"] = len(query_patterns & faq_patterns) / len(query_patterns | faq_patterns)

    return sum(KEYWORD_WEIGHTS[name] * value for name, value in signals.items())


def keyword_search(query: str, entries: Sequence[FaqEntry], floor: float) -> Optional[FaqMatch]:
    best: Optional[FaqMatch] = None
    for entry in entries:
        score = keyword_score(query, entry.question)
        if score > floor and (best is None or score > best.score):
            best = FaqMatch(entry=entry, score=score, match_type=MatchType.KEYWORD_FALLBACK, threshold=floor)
    return best


# ---------------------------------------------------------------------------
# FAQ sources
# ---------------------------------------------------------------------------


class FaqSource(ABC):
    @abstractmethod
    def is_configured(self, business: Business) -> bool:
        pass

    @abstractmethod
    def fetch(self, business: Business) -> List[FaqEntry]:
        """Return the live FAQ set. Raises UpstreamUnavailableError."""
        pass


class AirtableFaqSource(FaqSource):
    """Reads ``Question``/``Answer`` records from a per-business Airtable table.

    ``business.config["faq_source"]`` holds ``base_id``, ``table_name`` and
    ``access_token``.
    """

    def __init__(self, api_base: str = "https://api.airtable.com/v0", timeout_seconds: float = 10.0):
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def is_configured(self, business: Business) -> bool:
        config = business.faq_source
        return bool(config.get("base_id") and config.get("table_name") and config.get("access_token"))

    def fetch(self, business: Business) -> List[FaqEntry]:
        if not self.is_configured(business):
            return []
        config = business.faq_source
        url = f"{self.api_base}/{config['base_id']}/{config['table_name']}"
        headers = {"Authorization": f"Bearer {config['access_token']}"}

        entries: List[FaqEntry] = []
        params: dict = {}
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                while True:
                    response = client.get(url, headers=headers, params=params)
                    if response.status_code != 200:
                        raise UpstreamUnavailableError(
                            f"Airtable API error: {response.status_code}", dependency="faq_source"
                        )
                    data = response.json()
                    for record in data.get("records", []):
                        fields = record.get("fields") or {}
                        question = (fields.get("Question") or "").strip()
                        answer = (fields.get("Answer") or "").strip()
                        if question and answer:
                            entries.append(
                                FaqEntry(id=record["id"], question=question, answer=answer, business_id=business.id)
                            )
                    offset = data.get("offset")
                    if not offset:
                        break
                    params = {"offset": offset}
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Airtable request failed: {exc}", dependency="faq_source") from exc

        logger.info(f"Fetched {len(entries)} FAQs", extra={"context": {"business_id": str(business.id)}})
        return entries


# ---------------------------------------------------------------------------
# Stored embeddings
# ---------------------------------------------------------------------------


def store_faq_embeddings(
    db: Session,
    embeddings: EmbeddingProvider,
    business_id: UUID,
    entries: Sequence[FaqEntry],
) -> int:
    """Upsert embeddings for ``entries``; computes the missing vectors in batches."""
    missing = [entry for entry in entries if not entry.embedding]
    for batch in chunked(missing, embeddings.batch_limit):
        vectors = embeddings.embed_batch([entry.question for entry in batch])
        for entry, vector in zip(batch, vectors):
            entry.embedding = vector

    now = datetime.now(timezone.utc)
    for entry in entries:
        stmt = insert(FaqEmbedding.__table__).values(
            business_id=business_id,
            faq_id=entry.id,
            question=entry.question,
            answer=entry.answer,
            embedding=entry.embedding,
            source="airtable",
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["business_id", "faq_id"],
            set_={
                "question": stmt.excluded.question,
                "answer": stmt.excluded.answer,
                "embedding": stmt.excluded.embedding,
                "updated_at": now,
            },
        )
        db.execute(stmt)
    db.commit()
    return len(entries)


def load_stored_entries(db: Session, business_id: UUID) -> List[FaqEntry]:
    rows = db.query(FaqEmbedding).filter(FaqEmbedding.business_id == business_id).all()
    return [
        FaqEntry(
            id=row.faq_id,
            question=row.question,
            answer=row.answer or "",
            business_id=row.business_id,
            embedding=row.embedding,
        )
        for row in rows
    ]


class FaqMatcher:
    def __init__(
        self,
        embeddings: EmbeddingProvider,
        query_cache: TwoTierCache,
        source: FaqSource,
        thresholds: Sequence[float] = (0.65, 0.55, 0.45),
        keyword_floor: float = 0.2,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.embeddings = embeddings
        self.query_cache = query_cache
        self.source = source
        self.thresholds = sorted(thresholds, reverse=True)
        self.keyword_floor = keyword_floor
        self.retry_policy = retry_policy or RetryPolicy(name="embeddings")

    def _query_vector(self, question: str) -> Optional[List[float]]:
        key = content_hash(question)
        cached = self.query_cache.get(key)
        if cached is not None:
            return cached["embedding"]
        try:
            vector = call_with_retry(
                self.retry_policy, lambda: self.embeddings.embed(question), context={"stage": "faq_embed"}
            )
        except UpstreamUnavailableError as exc:
            logger.warning(f"FAQ query embedding unavailable: {exc}")
            return None
        self.query_cache.put(key, {"embedding": vector})
        return vector

    def _semantic(
        self, query_vector: List[float], entries: Sequence[FaqEntry], match_type: MatchType
    ) -> Optional[FaqMatch]:
        match = best_match(query_vector, ((entry, entry.embedding, 1.0) for entry in entries))
        if match is None:
            return None
        for threshold in self.thresholds:
            if match.score >= threshold:
                return FaqMatch(entry=match.item, score=match.score, match_type=match_type, threshold=threshold)
        return None

    def _fetch_live(self, db: Session, business: Business) -> List[FaqEntry]:
        try:
            entries = self.source.fetch(business)
        except UpstreamUnavailableError as exc:
            logger.warning(f"FAQ source unavailable: {exc}", extra={"context": {"business_id": str(business.id)}})
            return []
        if not entries:
            return entries
        try:
            store_faq_embeddings(db, self.embeddings, business.id, entries)
        except UpstreamUnavailableError as exc:
            logger.warning(f"Could not embed live FAQs: {exc}", extra={"context": {"business_id": str(business.id)}})
        return entries

    def search(self, db: Session, business_id: UUID, question: str) -> Optional[FaqMatch]:
        """Best FAQ for ``question`` or None. Never raises for a missing match."""
        start = time.monotonic()
        match = self._search(db, business_id, question)
        log_timing(
            logger,
            "faq_search",
            (time.monotonic() - start) * 1000,
            {
                "business_id": str(business_id),
                "match_type": match.match_type.value if match else None,
                "score": round(match.score, 4) if match else None,
            },
        )
        return match

    def _search(self, db: Session, business_id: UUID, question: str) -> Optional[FaqMatch]:
        if not question or not question.strip():
            return None

        query_vector = self._query_vector(question)
        stored = load_stored_entries(db, business_id)
        if query_vector is not None and stored:
            match = self._semantic(query_vector, stored, MatchType.SEMANTIC_CACHED)
            if match:
                return match

        business = db.query(Business).filter(Business.id == business_id).first()
        live: List[FaqEntry] = []
        if business is not None and self.source.is_configured(business):
            live = self._fetch_live(db, business)
        if query_vector is not None and live:
            match = self._semantic(query_vector, live, MatchType.SEMANTIC_LIVE)
            if match:
                return match

        return keyword_search(question, live or stored, self.keyword_floor)

    def refresh(self, db: Session, business_id: UUID) -> Result[int]:
        return refresh_faq_embeddings(db, self.embeddings, self.source, business_id)

    def stats(self, db: Session, business_id: UUID) -> dict:
        return faq_stats(db, self.source, business_id)


def refresh_faq_embeddings(
    db: Session,
    embeddings: EmbeddingProvider,
    source: FaqSource,
    business_id: UUID,
) -> Result[int]:
    """Replace the stored embeddings of a business with the current FAQ set."""
    business = db.query(Business).filter(Business.id == business_id).first()
    if business is None:
        return Result.failure("Business not found", code="not_found")
    if not source.is_configured(business):
        return Result.failure("FAQ source is not configured", code="not_configured")

    try:
        entries = source.fetch(business)
        for batch in chunked(entries, embeddings.batch_limit):
            vectors = embeddings.embed_batch([entry.question for entry in batch])
            for entry, vector in zip(batch, vectors):
                entry.embedding = vector
    except UpstreamUnavailableError as exc:
        logger.error(f"FAQ refresh failed: {exc}", extra={"context": {"business_id": str(business_id)}})
        return Result.unavailable(exc)

    db.query(FaqEmbedding).filter(FaqEmbedding.business_id == business_id).delete(synchronize_session=False)
    count = store_faq_embeddings(db, embeddings, business_id, entries)
    logger.info(f"Refreshed {count} FAQ embeddings", extra={"context": {"business_id": str(business_id)}})
    return Result.success(count)


def faq_stats(db: Session, source: FaqSource, business_id: UUID) -> dict:
    embedding_count = (
        db.query(func.count(FaqEmbedding.id)).filter(FaqEmbedding.business_id == business_id).scalar() or 0
    )
    business = db.query(Business).filter(Business.id == business_id).first()
    if business is None or not source.is_configured(business):
        return {"connected": False, "faq_count": 0, "embedding_count": embedding_count}

    config = business.faq_source
    stats = {
        "connected": True,
        "base_id": config.get("base_id"),
        "table_name": config.get("table_name"),
        "faq_count": 0,
        "embedding_count": embedding_count,
    }
    try:
        stats["faq_count"] = len(source.fetch(business))
    except UpstreamUnavailableError as exc:
        stats["connected"] = False
        stats["error"] = str(exc)
    return stats


def build_airtable_source() -> AirtableFaqSource:
    return AirtableFaqSource(api_base=settings.airtable_api_base, timeout_seconds=settings.airtable_timeout_seconds)

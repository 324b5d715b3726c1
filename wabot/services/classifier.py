import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from wabot.logging_config import get_logger, log_timing
from wabot.services.cache import TwoTierCache, content_hash, normalize_text
from wabot.services.errors import UpstreamUnavailableError
from wabot.services.fallback_classifier import GenerativeFallbackClassifier
from wabot.services.llm.base import EmbeddingProvider
from wabot.services.retry import RetryPolicy, call_with_retry
from wabot.services.similarity import best_match, clamp_confidence

logger = get_logger("classifier")


class ClassificationMethod(str, Enum):
    CACHE = "cache"
    EMBEDDING = "embedding"
    GENERATIVE_FALLBACK = "generative-fallback"


@dataclass(frozen=True)
class Example:
    text: str
    embedding: Optional[tuple[float, ...]] = None
    weight: float = 1.0


@dataclass(frozen=True)
class Label:
    name: str
    description: str = ""
    threshold: float = 0.75
    examples: tuple[Example, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ClassificationResult:
    label: str
    confidence: float
    method: ClassificationMethod
    latency_ms: float = 0.0
    # False when no dependency could produce a real verdict
    upstream_ok: bool = True


class SemanticClassifier:
    """Embed, compare against weighted examples, threshold, fall back.

    Results are cached by the hash of the normalized text. A cached result is
    returned with ``method=cache`` whatever produced it originally.
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        cache: TwoTierCache,
        fallback: GenerativeFallbackClassifier,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=None,
    ):
        self.embeddings = embeddings
        self.cache = cache
        self.fallback = fallback
        self.retry_policy = retry_policy or RetryPolicy(name="embeddings")
        self._sleep = sleep

    def _embed(self, text: str) -> list[float]:
        retry_kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return call_with_retry(
            self.retry_policy,
            lambda: self.embeddings.embed(text),
            context={"stage": "classify_embed"},
            **retry_kwargs,
        )

    def classify(self, text: str, labels: Sequence[Label]) -> ClassificationResult:
        if not normalize_text(text):
            raise ValueError("Cannot classify empty text")

        start = time.monotonic()
        key = content_hash(text)

        cached = self.cache.get(key)
        if cached is not None:
            result = ClassificationResult(
                label=cached["label"],
                confidence=float(cached["confidence"]),
                method=ClassificationMethod.CACHE,
                latency_ms=(time.monotonic() - start) * 1000,
            )
            log_timing(logger, "classify", result.latency_ms, {"method": result.method.value, "label": result.label})
            return result

        result = self._classify_uncached(text, labels, start)
        log_timing(
            logger,
            "classify",
            result.latency_ms,
            {"method": result.method.value, "label": result.label, "confidence": result.confidence},
        )
        return result

    def _classify_uncached(self, text: str, labels: Sequence[Label], start: float) -> ClassificationResult:
        key = content_hash(text)
        query_vector = None

        if labels:
            try:
                query_vector = self._embed(text)
            except UpstreamUnavailableError as exc:
                logger.warning(f"Embedding unavailable, using generative fallback: {exc}")

            if query_vector is not None:
                candidates = (
                    (label, example.embedding, example.weight) for label in labels for example in label.examples
                )
                match = best_match(query_vector, candidates)
                if match is not None and match.score >= match.item.threshold:
                    result = ClassificationResult(
                        label=match.item.name,
                        confidence=clamp_confidence(match.score),
                        method=ClassificationMethod.EMBEDDING,
                        latency_ms=(time.monotonic() - start) * 1000,
                    )
                    self._store(key, result, query_vector)
                    return result
                if match is not None:
                    logger.debug(f"Best match {match.item.name} scored {match.score:.3f}, below threshold")

        verdict = self.fallback.classify_with_model(text, labels)
        result = ClassificationResult(
            label=verdict.label,
            confidence=clamp_confidence(verdict.confidence),
            method=ClassificationMethod.GENERATIVE_FALLBACK,
            latency_ms=(time.monotonic() - start) * 1000,
            upstream_ok=verdict.upstream_ok,
        )
        if verdict.upstream_ok:
            self._store(key, result, query_vector)
        return result

    def _store(self, key: str, result: ClassificationResult, query_vector: Optional[list[float]]) -> None:
        self.cache.put(
            key,
            {
                "label": result.label,
                "confidence": result.confidence,
                "source": result.method.value,
                "embedding": query_vector,
            },
        )

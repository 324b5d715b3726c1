from typing import List, Optional

import httpx

from wabot.logging_config import get_logger
from wabot.services.errors import ClassificationUnavailableError, UpstreamUnavailableError
from wabot.services.llm.base import EmbeddingProvider, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 20.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"
        self.timeout_seconds = timeout_seconds

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI."""

        model = model or self.default_model

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"OpenAI request failed: {exc}", dependency="llm") from exc

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise UpstreamUnavailableError(
                f"OpenAI API error: {response.status_code} - {response.text}", dependency="llm"
            )

        try:
            data = response.json()
            content = ""
            if data.get("choices") and len(data["choices"]) > 0:
                message = data["choices"][0].get("message") or {}
                content = message.get("content") or ""
        except (ValueError, AttributeError, TypeError) as exc:
            raise UpstreamUnavailableError(f"Unreadable OpenAI response: {exc}", dependency="llm") from exc
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 10.0,
        batch_limit: int = 96,
        dimensions: Optional[int] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.url = f"{base_url.rstrip('/')}/embeddings"
        self.timeout_seconds = timeout_seconds
        self.batch_limit = batch_limit
        self.dimensions = dimensions

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if len(texts) > self.batch_limit:
            raise ValueError(f"Batch of {len(texts)} exceeds limit {self.batch_limit}")
        cleaned = []
        for text in texts:
            if not text or not text.strip():
                raise ValueError("Cannot embed empty text")
            cleaned.append(text.strip())

        payload: dict = {"model": self.model, "input": cleaned}
        if self.dimensions:
            payload["dimensions"] = self.dimensions

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ClassificationUnavailableError(f"Embedding request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"OpenAI embeddings error: {response.text}")
            raise ClassificationUnavailableError(f"Embedding API error: {response.status_code}")

        try:
            data = response.json().get("data") or []
            ordered = sorted(data, key=lambda item: item.get("index", 0))
            vectors = [list(item["embedding"]) for item in ordered]
        except (ValueError, AttributeError, KeyError, TypeError) as exc:
            raise ClassificationUnavailableError(f"Unreadable embedding response: {exc}") from exc
        if len(vectors) != len(cleaned) or not all(vectors):
            raise ClassificationUnavailableError(
                f"Embedding API returned {len(vectors)} vectors for {len(cleaned)} inputs"
            )
        return vectors

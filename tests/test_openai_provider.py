from unittest.mock import MagicMock, patch

import httpx
import pytest

from wabot.services.errors import ClassificationUnavailableError, UpstreamUnavailableError
from wabot.services.llm.openai_provider import OpenAIEmbeddingProvider, OpenAIProvider


def _client_returning(status_code=200, body=None, json_error=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = str(body)
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = body
    http_client = MagicMock()
    http_client.__enter__.return_value = http_client
    http_client.post.return_value = response
    return http_client


class TestChatCompletions:
    def test_returns_content(self):
        body = {"model": "gpt-4o-mini", "choices": [{"message": {"content": "Hi!"}}], "usage": {"total_tokens": 5}}
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=_client_returning(body=body)):
            response = OpenAIProvider("key").generate([{"role": "user", "content": "hello"}])

        assert response.content == "Hi!"
        assert response.usage == {"total_tokens": 5}

    def test_non_json_body_is_upstream_error(self):
        client = _client_returning(json_error=ValueError("Expecting value"))
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=client):
            with pytest.raises(UpstreamUnavailableError):
                OpenAIProvider("key").generate([{"role": "user", "content": "hello"}])

    def test_transport_error(self):
        client = MagicMock()
        client.__enter__.return_value = client
        client.post.side_effect = httpx.ReadTimeout("slow")
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=client):
            with pytest.raises(UpstreamUnavailableError) as excinfo:
                OpenAIProvider("key").generate([{"role": "user", "content": "hello"}])
        assert excinfo.value.dependency == "llm"


class TestEmbeddings:
    def test_orders_by_index(self):
        body = {"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]}
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=_client_returning(body=body)):
            vectors = OpenAIEmbeddingProvider("key").embed_batch(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]

    def test_item_without_embedding(self):
        body = {"data": [{"index": 0}]}
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=_client_returning(body=body)):
            with pytest.raises(ClassificationUnavailableError):
                OpenAIEmbeddingProvider("key").embed("hello")

    def test_non_json_body(self):
        client = _client_returning(json_error=ValueError("Expecting value"))
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=client):
            with pytest.raises(ClassificationUnavailableError):
                OpenAIEmbeddingProvider("key").embed("hello")

    def test_count_mismatch(self):
        body = {"data": [{"index": 0, "embedding": [1.0]}]}
        with patch("wabot.services.llm.openai_provider.httpx.Client", return_value=_client_returning(body=body)):
            with pytest.raises(ClassificationUnavailableError):
                OpenAIEmbeddingProvider("key").embed_batch(["a", "b"])

    def test_empty_text_rejected(self):
        with pytest.raises(ValueError):
            OpenAIEmbeddingProvider("key").embed("   ")

from fakes import FakeLLM

from wabot.services.classifier import Example, Label
from wabot.services.fallback_classifier import (
    GenerativeFallbackClassifier,
    build_prompt,
    parse_verdict,
    safe_parse_json,
)
from wabot.services.retry import RetryPolicy

ALLOWED = {"greeting", "thanks"}


class TestSafeParseJson:
    def test_plain_object(self):
        assert safe_parse_json('{"label": "thanks"}') == {"label": "thanks"}

    def test_strips_code_fences(self):
        raw = '```json\n{"label": "greeting", "confidence": 0.9}\n```'
        assert safe_parse_json(raw) == {"label": "greeting", "confidence": 0.9}

    def test_object_embedded_in_prose(self):
        assert safe_parse_json('Sure! {"label": "thanks"} hope that helps') == {"label": "thanks"}

    def test_garbage(self):
        assert safe_parse_json("no json here") is None
        assert safe_parse_json("") is None
        assert safe_parse_json("[1, 2]") is None


class TestParseVerdict:
    def test_valid(self):
        verdict = parse_verdict('{"label": "thanks", "confidence": 0.83}', ALLOWED)
        assert verdict.label == "thanks"
        assert verdict.confidence == 0.83

    def test_missing_confidence_defaults(self):
        verdict = parse_verdict('{"label": "thanks"}', ALLOWED)
        assert verdict.confidence == 0.7

    def test_unknown_label_becomes_general(self):
        verdict = parse_verdict('{"label": "weather", "confidence": 0.99}', ALLOWED)
        assert verdict.label == "general"
        assert verdict.confidence == 0.5

    def test_general_is_always_allowed(self):
        verdict = parse_verdict('{"label": "general", "confidence": 0.4}', ALLOWED)
        assert verdict.label == "general"
        assert verdict.confidence == 0.4

    def test_confidence_clamped(self):
        assert parse_verdict('{"label": "thanks", "confidence": 7}', ALLOWED).confidence == 1.0

    def test_accepts_intent_key(self):
        assert parse_verdict('{"intent": "greeting", "confidence": 0.9}', ALLOWED).label == "greeting"


class TestPrompt:
    def test_lists_labels_and_examples(self):
        labels = [
            Label(name="greeting", description="Customer says hello", examples=(Example(text="Hi there"),)),
            Label(name="order_status", examples=(Example(text="Where is my order"),)),
        ]
        prompt = build_prompt(labels)
        assert "- greeting: Customer says hello" in prompt
        assert "- order_status: order status" in prompt
        assert '"Hi there" -> greeting' in prompt
        assert '"label"' in prompt


class TestClassifyWithModel:
    def test_low_temperature_and_user_text(self):
        llm = FakeLLM(['{"label": "greeting", "confidence": 0.9}'])
        fallback = GenerativeFallbackClassifier(llm)
        labels = [Label(name="greeting", examples=(Example(text="hello"),))]

        verdict = fallback.classify_with_model("hey you", labels)

        assert verdict.label == "greeting"
        assert verdict.upstream_ok is True
        messages = llm.calls[0]
        assert messages[-1] == {"role": "user", "content": "hey you"}

    def test_upstream_failure_after_retries(self):
        llm = FakeLLM()
        llm.down = True
        fallback = GenerativeFallbackClassifier(
            llm, retry_policy=RetryPolicy(name="generative", max_attempts=2), sleep=lambda _: None
        )
        labels = [Label(name="greeting", examples=(Example(text="hello"),))]

        verdict = fallback.classify_with_model("hey", labels)

        assert verdict.label == "general"
        assert verdict.confidence == 0.5
        assert verdict.upstream_ok is False
        assert len(llm.calls) == 2

    def test_no_labels_skips_model(self):
        llm = FakeLLM()
        verdict = GenerativeFallbackClassifier(llm).classify_with_model("hey", [])
        assert verdict.label == "general"
        assert llm.calls == []

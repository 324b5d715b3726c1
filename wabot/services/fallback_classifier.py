import json
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from wabot.logging_config import get_logger
from wabot.services.errors import UpstreamUnavailableError
from wabot.services.llm.base import LLMProvider
from wabot.services.retry import RetryPolicy, call_with_retry

logger = get_logger("fallback_classifier")

GENERAL_LABEL = "general"
PARSE_FAILURE_CONFIDENCE = 0.5
MISSING_CONFIDENCE = 0.7
MAX_FEW_SHOT_EXAMPLES = 8

CLASSIFY_PROMPT = """You classify customer messages for a business WhatsApp assistant.
Pick exactly one label from the list below. If none fits, use "general".

Labels:
{labels}

Examples:
{examples}

Reply with ONLY one JSON object: {{"label": "<label>", "confidence": <number between 0 and 1>}}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class FallbackVerdict:
    label: str
    confidence: float
    # False when the model was unreachable; such verdicts must not be cached.
    upstream_ok: bool = True


def safe_parse_json(raw: str) -> Optional[dict]:
    """Parse a JSON object out of a model reply, tolerating code fences."""
    if not raw:
        return None
    cleaned = _FENCE_RE.sub("", raw.strip()).strip()
    try:
        data = json.loads(cleaned)
    except ValueError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def build_prompt(labels: Sequence) -> str:
    label_lines = []
    example_lines = []
    for label in labels:
        description = label.description or label.name.replace("_", " ")
        label_lines.append(f"- {label.name}: {description}")
        for example in label.examples[:2]:
            if len(example_lines) >= MAX_FEW_SHOT_EXAMPLES:
                break
            example_lines.append(f'"{example.text}" -> {label.name}')
    return CLASSIFY_PROMPT.format(
        labels="\n".join(label_lines),
        examples="\n".join(example_lines) or "(none)",
    )


def parse_verdict(raw: str, allowed: set[str]) -> FallbackVerdict:
    data = safe_parse_json(raw)
    if data is None:
        logger.warning(f"Fallback reply is not JSON: {raw[:200] if raw else 'EMPTY'}")
        return FallbackVerdict(GENERAL_LABEL, PARSE_FAILURE_CONFIDENCE)

    label = data.get("label")
    if label is None:
        label = data.get("intent")
    if not isinstance(label, str) or label.strip() not in allowed | {GENERAL_LABEL}:
        logger.warning(f"Fallback returned unknown label: {label!r}")
        return FallbackVerdict(GENERAL_LABEL, PARSE_FAILURE_CONFIDENCE)
    label = label.strip()

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = MISSING_CONFIDENCE
    confidence = max(0.0, min(1.0, float(confidence)))
    return FallbackVerdict(label, confidence)


class GenerativeFallbackClassifier:
    """Asks a chat model to pick one of the active labels."""

    def __init__(
        self,
        llm: LLMProvider,
        model: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_seconds: Optional[float] = None,
        sleep=None,
    ):
        self.llm = llm
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy(name="generative", max_attempts=2)
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep

    def classify_with_model(self, text: str, labels: Sequence) -> FallbackVerdict:
        if not labels:
            return FallbackVerdict(GENERAL_LABEL, PARSE_FAILURE_CONFIDENCE)

        messages = [
            {"role": "system", "content": build_prompt(labels)},
            {"role": "user", "content": text},
        ]

        def _call():
            return self.llm.generate(
                messages,
                model=self.model,
                temperature=0.1,
                max_tokens=60,
                timeout_seconds=self.timeout_seconds,
            )

        retry_kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            response = call_with_retry(self.retry_policy, _call, context={"stage": "fallback"}, **retry_kwargs)
        except UpstreamUnavailableError as exc:
            logger.error(f"Generative fallback unavailable: {exc}")
            return FallbackVerdict(GENERAL_LABEL, PARSE_FAILURE_CONFIDENCE, upstream_ok=False)

        return parse_verdict(response.content, {label.name for label in labels})

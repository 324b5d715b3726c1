"""Ordered reply handlers. Each returns a reply or None to let the next one try."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from wabot.logging_config import get_logger
from wabot.models import Business, Conversation
from wabot.services.classifier import ClassificationResult, SemanticClassifier
from wabot.services.conversation_service import (
    clear_pending_confirmation,
    get_pending_confirmation,
    get_recent_messages,
    set_pending_confirmation,
)
from wabot.services.faq_service import FaqMatcher
from wabot.services.intent_service import load_active_labels
from wabot.services.llm.base import LLMProvider

logger = get_logger("handlers")

CANCEL_COMMANDS = {"cancel", "cancelled", "stop booking"}
YES_PHRASES = {"yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "confirm", "correct", "please do", "go ahead"}
NO_PHRASES = {"no", "n", "nope", "nah", "not now", "don't", "dont", "no thanks"}

BOOK_ACTION = "book_appointment"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful WhatsApp assistant for a business. Answer briefly and politely. "
    "If you do not know something, say so and offer to help with something else."
)

_BOOKING_RE = re.compile(
    r"\b(book|booking|schedule|appointment|reserve|reservation|set up a meeting|arrange a meeting)\b", re.IGNORECASE
)
_AVAILABILITY_RE = re.compile(
    r"\b(available|availability|free slots?|open slots?|any slots?|are you free|do you have time)\b", re.IGNORECASE
)
_DAY_RE = re.compile(
    r"\b(today|tomorrow|tonight|next week|this week|(?:next |this )?"
    r"(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday))\b",
    re.IGNORECASE,
)
_TIME_RE = re.compile(
    r"\b((?:at )?\d{1,2}(?::\d{2})?\s*(?:am|pm)|at \d{1,2}(?::\d{2})?|noon|morning|afternoon|evening)\b", re.IGNORECASE
)


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def extract_when(text: str) -> Optional[str]:
    """Raw date/time phrase ("tomorrow at 3pm"); parsing it is the calendar's job."""
    parts = [match.group(0) for match in _DAY_RE.finditer(text)]
    parts += [match.group(0) for match in _TIME_RE.finditer(text)]
    if not parts:
        return None
    return " ".join(parts)


@dataclass
class MessageContext:
    db: Session
    business: Business
    conversation: Conversation
    message_id: str
    sender: str
    text: str
    classification: Optional[ClassificationResult] = None


@dataclass
class HandlerReply:
    text: str
    intent: Optional[str] = None
    confidence: Optional[float] = None
    metadata: dict = field(default_factory=dict)


class Handler(ABC):
    name: str = "handler"

    @abstractmethod
    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        pass


# === GATEWAYS ===


class CalendarGateway(ABC):
    """Calendar provider for a business. Date arithmetic lives behind this seam."""

    @abstractmethod
    def is_connected(self, business: Business) -> bool:
        pass

    @abstractmethod
    def book_appointment(self, business: Business, phone_number: str, when: str, summary: str) -> Optional[dict]:
        """Book and return the booking (must carry an ``id``), or None when declined."""
        pass

    @abstractmethod
    def cancel_booking(self, business: Business, booking: dict) -> bool:
        pass

    @abstractmethod
    def check_availability(self, business: Business, when: Optional[str]) -> Optional[str]:
        pass


class NullCalendarGateway(CalendarGateway):
    def is_connected(self, business: Business) -> bool:
        return False

    def book_appointment(self, business: Business, phone_number: str, when: str, summary: str) -> Optional[dict]:
        return None

    def cancel_booking(self, business: Business, booking: dict) -> bool:
        return False

    def check_availability(self, business: Business, when: Optional[str]) -> Optional[str]:
        return None


class CrmGateway(ABC):
    """HubSpot, Odoo or Salesforce operations keyed by label name."""

    @abstractmethod
    def execute(self, business: Business, action: str, text: str, sender: str) -> Optional[str]:
        pass


class NullCrmGateway(CrmGateway):
    def execute(self, business: Business, action: str, text: str, sender: str) -> Optional[str]:
        return None


# === HANDLERS ===


class CancelCommandHandler(Handler):
    name = "cancel_command"

    def __init__(self, calendar: CalendarGateway):
        self.calendar = calendar

    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        if normalize_for_matching(ctx.text) not in CANCEL_COMMANDS:
            return None

        pending = clear_pending_confirmation(ctx.db, ctx.conversation)
        booking = (ctx.conversation.context or {}).get("calendar_booking")
        if booking:
            cancelled = self.calendar.cancel_booking(ctx.business, booking)
            context = dict(ctx.conversation.context or {})
            context.pop("calendar_booking", None)
            ctx.conversation.context = context
            ctx.db.flush()
            if cancelled:
                return HandlerReply("Your booking has been cancelled.", intent="cancel")
            return HandlerReply("I couldn't cancel the booking automatically. We'll follow up shortly.", intent="cancel")
        if pending:
            return HandlerReply("Okay, I've cancelled that.", intent="cancel")
        return HandlerReply("There is nothing to cancel right now.", intent="cancel")


class FollowUpHandler(Handler):
    name = "follow_up"

    def __init__(self, calendar: CalendarGateway):
        self.calendar = calendar

    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        pending = get_pending_confirmation(ctx.conversation)
        if not pending:
            return None

        answer = normalize_for_matching(ctx.text)
        if answer in NO_PHRASES:
            clear_pending_confirmation(ctx.db, ctx.conversation)
            return HandlerReply("No problem, I won't book it. Anything else I can help with?", intent="decline")
        if answer not in YES_PHRASES:
            return None

        clear_pending_confirmation(ctx.db, ctx.conversation)
        if pending.get("action") != BOOK_ACTION:
            logger.warning(f"Unknown pending action: {pending.get('action')}")
            return None

        data = pending.get("data") or {}
        booking = self.calendar.book_appointment(
            ctx.business, ctx.sender, data.get("when", ""), data.get("summary", "Appointment")
        )
        if not booking:
            return HandlerReply("Sorry, I couldn't book that slot. Could you suggest another time?", intent=BOOK_ACTION)

        context = dict(ctx.conversation.context or {})
        context["calendar_booking"] = booking
        ctx.conversation.context = context
        ctx.db.flush()
        return HandlerReply(f"Done! You're booked for {data.get('when')}.", intent=BOOK_ACTION, metadata={"booking": booking})


class CalendarHandler(Handler):
    name = "calendar"

    def __init__(self, calendar: CalendarGateway, confirmation_ttl_seconds: int = 600):
        self.calendar = calendar
        self.confirmation_ttl_seconds = confirmation_ttl_seconds

    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        if not self.calendar.is_connected(ctx.business):
            return None

        when = extract_when(ctx.text)
        if _BOOKING_RE.search(ctx.text) and when:
            set_pending_confirmation(
                ctx.db,
                ctx.conversation,
                BOOK_ACTION,
                {"when": when, "summary": ctx.text[:200]},
                self.confirmation_ttl_seconds,
            )
            return HandlerReply(
                f"Shall I book an appointment for {when}? Please reply yes or no.",
                intent=BOOK_ACTION,
            )

        if _AVAILABILITY_RE.search(ctx.text):
            answer = self.calendar.check_availability(ctx.business, when)
            if answer:
                return HandlerReply(answer, intent="check_availability")
        return None


DomainAction = Callable[[MessageContext, ClassificationResult], Optional[str]]

CANNED_REPLIES = {
    "greeting": "Hello! How can I help you today?",
    "goodbye": "Goodbye! Message us any time.",
    "thanks": "You're welcome! Anything else I can help with?",
}
CRM_PREFIXES = ("hubspot_", "odoo_", "salesforce_")


def canned_reply(label: str) -> DomainAction:
    def _reply(ctx: MessageContext, result: ClassificationResult) -> Optional[str]:
        overrides = (ctx.business.config or {}).get("canned_replies") or {}
        return overrides.get(label) or CANNED_REPLIES[label]

    return _reply


def crm_action(crm: CrmGateway) -> DomainAction:
    def _execute(ctx: MessageContext, result: ClassificationResult) -> Optional[str]:
        return crm.execute(ctx.business, result.label, ctx.text, ctx.sender)

    return _execute


class DomainActionRegistry:
    """Maps classifier labels to actions: exact names first, then prefixes."""

    def __init__(self):
        self._exact: Dict[str, DomainAction] = {}
        self._prefixes: List[tuple[str, DomainAction]] = []

    def register(self, label: str, action: DomainAction) -> None:
        self._exact[label] = action

    def register_prefix(self, prefix: str, action: DomainAction) -> None:
        self._prefixes.append((prefix, action))

    def resolve(self, label: str) -> Optional[DomainAction]:
        if label in self._exact:
            return self._exact[label]
        for prefix, action in self._prefixes:
            if label.startswith(prefix):
                return action
        return None


def build_default_actions(crm: CrmGateway) -> DomainActionRegistry:
    registry = DomainActionRegistry()
    for label in CANNED_REPLIES:
        registry.register(label, canned_reply(label))
    for prefix in CRM_PREFIXES:
        registry.register_prefix(prefix, crm_action(crm))
    return registry


class DomainActionHandler(Handler):
    name = "domain_action"

    def __init__(
        self,
        classifier: SemanticClassifier,
        actions: DomainActionRegistry,
        labels_loader: Callable[[Session], list] = load_active_labels,
    ):
        self.classifier = classifier
        self.actions = actions
        self.labels_loader = labels_loader

    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        labels = self.labels_loader(ctx.db)
        result = self.classifier.classify(ctx.text, labels)
        ctx.classification = result
        if not result.upstream_ok:
            logger.warning(
                "Classification unavailable, skipping domain actions",
                extra={"context": {"message_id": ctx.message_id, "business_id": str(ctx.business.id)}},
            )
            return None

        action = self.actions.resolve(result.label)
        if action is None:
            return None
        reply = action(ctx, result)
        if not reply:
            return None
        return HandlerReply(
            reply,
            intent=result.label,
            confidence=result.confidence,
            metadata={"method": result.method.value},
        )


class FaqHandler(Handler):
    name = "faq"

    def __init__(self, matcher: FaqMatcher):
        self.matcher = matcher

    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        match = self.matcher.search(ctx.db, ctx.business.id, ctx.text)
        if match is None or not match.answer:
            return None
        return HandlerReply(
            match.answer,
            intent="faq",
            confidence=min(1.0, max(0.0, match.score)),
            metadata={"faq_id": match.entry.id, "match_type": match.match_type.value},
        )


class AssistantHandler(Handler):
    name = "assistant"

    def __init__(
        self,
        llm: LLMProvider,
        model: Optional[str] = None,
        history_messages: int = 6,
        timeout_seconds: Optional[float] = None,
    ):
        self.llm = llm
        self.model = model
        self.history_messages = history_messages
        self.timeout_seconds = timeout_seconds

    def _build_messages(self, ctx: MessageContext) -> List[dict]:
        system_prompt = ctx.business.tone_prompt or DEFAULT_SYSTEM_PROMPT
        messages = [{"role": "system", "content": system_prompt}]
        history = get_recent_messages(ctx.db, ctx.conversation.id, limit=self.history_messages)
        for message in history:
            if message.role in ("user", "assistant") and message.content:
                messages.append({"role": message.role, "content": message.content})
        if len(messages) == 1 or messages[-1] != {"role": "user", "content": ctx.text}:
            messages.append({"role": "user", "content": ctx.text})
        return messages

    def handle(self, ctx: MessageContext) -> Optional[HandlerReply]:
        response = self.llm.generate(
            self._build_messages(ctx),
            model=self.model,
            temperature=0.7,
            max_tokens=400,
            timeout_seconds=self.timeout_seconds,
        )
        content = (response.content or "").strip()
        if not content:
            return None
        return HandlerReply(content, intent="assistant")

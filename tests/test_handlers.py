from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch
from uuid import uuid4

import pytest

from wabot.services.classifier import ClassificationMethod, ClassificationResult
from wabot.services.conversation_service import PENDING_KEY, get_pending_confirmation, set_pending_confirmation
from wabot.services.faq_service import FaqEntry, FaqMatch, MatchType
from wabot.services.handlers import (
    AssistantHandler,
    CalendarGateway,
    CalendarHandler,
    CancelCommandHandler,
    DomainActionHandler,
    FaqHandler,
    FollowUpHandler,
    MessageContext,
    NullCalendarGateway,
    build_default_actions,
    extract_when,
    normalize_for_matching,
)
from wabot.services.llm.base import LLMResponse


class RecordingCalendar(CalendarGateway):
    def __init__(self, booking=None, availability=None, cancelled=True):
        self.booking = booking if booking is not None else {"id": "evt-1"}
        self.availability = availability
        self.cancelled = cancelled
        self.booked = []
        self.cancelled_bookings = []

    def is_connected(self, business):
        return True

    def book_appointment(self, business, phone_number, when, summary):
        self.booked.append((phone_number, when, summary))
        return self.booking

    def cancel_booking(self, business, booking):
        self.cancelled_bookings.append(booking)
        return self.cancelled

    def check_availability(self, business, when):
        return self.availability


@pytest.fixture
def ctx(business, db_session):
    def _make(text, context=None):
        conversation = SimpleNamespace(id=uuid4(), business_id=business.id, context=dict(context or {}))
        return MessageContext(
            db=db_session,
            business=business,
            conversation=conversation,
            message_id="wamid.1",
            sender="15551234567",
            text=text,
        )

    return _make


class TestTextHelpers:
    def test_normalize_for_matching(self):
        assert normalize_for_matching("  Yes!! ") == "yes"
        assert normalize_for_matching("Stop   Booking.") == "stop booking"

    def test_extract_when(self):
        assert extract_when("Can I book tomorrow at 3pm?") == "tomorrow at 3pm"
        assert extract_when("book for next friday 10:30 am") == "next friday 10:30 am"
        assert extract_when("hello") is None


class TestCancelCommand:
    def test_ignores_other_text(self, ctx):
        assert CancelCommandHandler(NullCalendarGateway()).handle(ctx("please cancel my order")) is None

    def test_clears_pending_confirmation(self, ctx):
        message = ctx("Cancel", {PENDING_KEY: {"action": "book_appointment"}})

        reply = CancelCommandHandler(NullCalendarGateway()).handle(message)

        assert reply.text == "Okay, I've cancelled that."
        assert PENDING_KEY not in message.conversation.context

    def test_cancels_existing_booking(self, ctx):
        calendar = RecordingCalendar()
        message = ctx("stop booking", {"calendar_booking": {"id": "evt-9"}})

        reply = CancelCommandHandler(calendar).handle(message)

        assert reply.text == "Your booking has been cancelled."
        assert calendar.cancelled_bookings == [{"id": "evt-9"}]
        assert "calendar_booking" not in message.conversation.context

    def test_nothing_to_cancel(self, ctx):
        reply = CancelCommandHandler(NullCalendarGateway()).handle(ctx("cancelled"))
        assert reply.text == "There is nothing to cancel right now."


class TestPendingConfirmation:
    def test_expired_confirmation_is_ignored(self, db_session):
        conversation = SimpleNamespace(context={})
        past = datetime.now(timezone.utc) - timedelta(minutes=30)
        set_pending_confirmation(db_session, conversation, "book_appointment", {}, ttl_seconds=600, now=past)

        assert get_pending_confirmation(conversation) is None
        assert get_pending_confirmation(conversation, now=past + timedelta(minutes=5)) is not None


class TestFollowUp:
    def _pending_ctx(self, ctx, db_session, text):
        message = ctx(text)
        set_pending_confirmation(
            db_session,
            message.conversation,
            "book_appointment",
            {"when": "tomorrow at 3pm", "summary": "Book a haircut tomorrow at 3pm"},
            ttl_seconds=600,
        )
        return message

    def test_declines_without_pending(self, ctx):
        assert FollowUpHandler(RecordingCalendar()).handle(ctx("yes")) is None

    def test_yes_books_through_gateway(self, ctx, db_session):
        calendar = RecordingCalendar(booking={"id": "evt-1"})
        message = self._pending_ctx(ctx, db_session, "Yes!")

        reply = FollowUpHandler(calendar).handle(message)

        assert reply.text == "Done! You're booked for tomorrow at 3pm."
        assert calendar.booked == [("15551234567", "tomorrow at 3pm", "Book a haircut tomorrow at 3pm")]
        assert message.conversation.context["calendar_booking"] == {"id": "evt-1"}
        assert PENDING_KEY not in message.conversation.context

    def test_no_clears_pending(self, ctx, db_session):
        calendar = RecordingCalendar()
        message = self._pending_ctx(ctx, db_session, "no")

        reply = FollowUpHandler(calendar).handle(message)

        assert "won't book" in reply.text
        assert calendar.booked == []
        assert PENDING_KEY not in message.conversation.context

    def test_unrelated_answer_declines_and_keeps_pending(self, ctx, db_session):
        message = self._pending_ctx(ctx, db_session, "what are your prices?")

        assert FollowUpHandler(RecordingCalendar()).handle(message) is None
        assert PENDING_KEY in message.conversation.context


class TestCalendar:
    def test_disconnected_calendar_declines(self, ctx):
        assert CalendarHandler(NullCalendarGateway()).handle(ctx("book tomorrow at 3pm")) is None

    def test_booking_asks_for_confirmation(self, ctx):
        message = ctx("Can I book an appointment tomorrow at 3pm?")

        reply = CalendarHandler(RecordingCalendar(), confirmation_ttl_seconds=600).handle(message)

        assert reply.text == "Shall I book an appointment for tomorrow at 3pm? Please reply yes or no."
        pending = message.conversation.context[PENDING_KEY]
        assert pending["action"] == "book_appointment"
        assert pending["data"]["when"] == "tomorrow at 3pm"

    def test_booking_without_time_declines(self, ctx):
        assert CalendarHandler(RecordingCalendar()).handle(ctx("how do I book?")) is None

    def test_availability(self, ctx):
        calendar = RecordingCalendar(availability="We have slots at 10am and 2pm tomorrow.")
        reply = CalendarHandler(calendar).handle(ctx("Are you available tomorrow?"))
        assert reply.text == "We have slots at 10am and 2pm tomorrow."


class TestDomainAction:
    def _handler(self, label, crm=None, confidence=0.93):
        classifier = Mock()
        classifier.classify.return_value = ClassificationResult(
            label=label, confidence=confidence, method=ClassificationMethod.EMBEDDING
        )
        actions = build_default_actions(crm or Mock(execute=Mock(return_value=None)))
        return DomainActionHandler(classifier, actions, labels_loader=lambda db: ["labels"]), classifier

    def test_canned_greeting(self, ctx):
        handler, classifier = self._handler("greeting")
        message = ctx("hello there")

        reply = handler.handle(message)

        assert reply.text == "Hello! How can I help you today?"
        assert reply.intent == "greeting"
        assert reply.metadata == {"method": "embedding"}
        classifier.classify.assert_called_once_with("hello there", ["labels"])
        assert message.classification.label == "greeting"

    def test_business_can_override_canned_reply(self, ctx, business):
        business.config = {"canned_replies": {"thanks": "Anytime!"}}
        handler, _ = self._handler("thanks")
        assert handler.handle(ctx("thanks")).text == "Anytime!"

    def test_crm_prefix_routes_to_gateway(self, ctx, business):
        crm = Mock()
        crm.execute.return_value = "Your order #42 has shipped."
        handler, _ = self._handler("odoo_order_status", crm=crm)

        reply = handler.handle(ctx("where is my order"))

        assert reply.text == "Your order #42 has shipped."
        crm.execute.assert_called_once_with(business, "odoo_order_status", "where is my order", "15551234567")

    def test_unmapped_label_declines(self, ctx):
        handler, _ = self._handler("general", confidence=0.5)
        assert handler.handle(ctx("tell me a joke")) is None

    def test_classification_outage_declines(self, ctx):
        classifier = Mock()
        classifier.classify.return_value = ClassificationResult(
            label="general", confidence=0.5, method=ClassificationMethod.GENERATIVE_FALLBACK, upstream_ok=False
        )
        actions = build_default_actions(Mock())
        actions.register("general", lambda ctx, result: "should not be used")
        message = ctx("hello")

        assert DomainActionHandler(classifier, actions, labels_loader=lambda db: []).handle(message) is None
        assert message.classification.upstream_ok is False

    def test_crm_decline(self, ctx):
        handler, _ = self._handler("hubspot_create_contact")
        assert handler.handle(ctx("call me back")) is None


class TestFaqHandler:
    def test_returns_answer(self, ctx):
        matcher = Mock()
        matcher.search.return_value = FaqMatch(
            entry=FaqEntry(id="rec1", question="Opening hours", answer="9 to 5"),
            score=0.71,
            match_type=MatchType.SEMANTIC_CACHED,
            threshold=0.65,
        )

        reply = FaqHandler(matcher).handle(ctx("when do you open"))

        assert reply.text == "9 to 5"
        assert reply.metadata == {"faq_id": "rec1", "match_type": "semantic_cached"}

    def test_no_match_declines(self, ctx):
        matcher = Mock()
        matcher.search.return_value = None
        assert FaqHandler(matcher).handle(ctx("anything")) is None


class TestAssistant:
    def test_uses_tone_and_history(self, ctx, business):
        business.tone_prompt = "You are Luna, the cheerful salon assistant."
        history = [
            SimpleNamespace(role="user", content="hi"),
            SimpleNamespace(role="assistant", content="Hello!"),
            SimpleNamespace(role="user", content="do you do nails?"),
        ]
        llm = Mock()
        llm.generate.return_value = LLMResponse(content="Yes, we do manicures.", model="m")

        with patch("wabot.services.handlers.get_recent_messages", return_value=history):
            reply = AssistantHandler(llm, history_messages=6).handle(ctx("do you do nails?"))

        assert reply.text == "Yes, we do manicures."
        messages = llm.generate.call_args.args[0]
        assert messages[0] == {"role": "system", "content": "You are Luna, the cheerful salon assistant."}
        assert messages[-1] == {"role": "user", "content": "do you do nails?"}
        assert len(messages) == 4

    def test_empty_completion_declines(self, ctx):
        llm = Mock()
        llm.generate.return_value = LLMResponse(content="  ", model="m")
        with patch("wabot.services.handlers.get_recent_messages", return_value=[]):
            assert AssistantHandler(llm).handle(ctx("hi")) is None

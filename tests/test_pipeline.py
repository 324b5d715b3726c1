import threading
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import Mock, patch
from uuid import uuid4

import pytest
from fakes import make_payload

from wabot.services.errors import InvalidPayloadError
from wabot.services.handlers import Handler, HandlerReply
from wabot.services.pipeline import APOLOGY_TEXT, IntakePipeline, parse_inbound_message
from wabot.services.result import Result


class StaticHandler(Handler):
    def __init__(self, name, reply=None, error=None):
        self.name = name
        self.reply = reply
        self.error = error
        self.calls = 0

    def handle(self, ctx):
        self.calls += 1
        if self.error:
            raise self.error
        return HandlerReply(self.reply) if self.reply else None


class InMemoryDedup:
    def __init__(self):
        self.seen = set()
        self.lock = threading.Lock()

    def __call__(self, db, business_id, message_id):
        with self.lock:
            if (business_id, message_id) in self.seen:
                return False
            self.seen.add((business_id, message_id))
            return True


@pytest.fixture
def sender():
    sender = Mock()
    sender.send_text_message.return_value = Result.success("wamid.out")
    return sender


@pytest.fixture
def pipeline_env(business):
    conversation = SimpleNamespace(id=uuid4(), business_id=business.id, context={})
    dedup = InMemoryDedup()
    with patch("wabot.services.pipeline.get_active_business", return_value=business), patch(
        "wabot.services.pipeline.claim_message", side_effect=dedup
    ), patch("wabot.services.pipeline.get_or_create_conversation", return_value=conversation), patch(
        "wabot.services.pipeline.save_message"
    ) as save_message:
        yield SimpleNamespace(business=business, conversation=conversation, save_message=save_message)


def _pipeline(handlers, sender):
    return IntakePipeline(lambda: Mock(), handlers, sender)


class TestParseInboundMessage:
    def test_text_message(self):
        inbound = parse_inbound_message(make_payload(message_id="wamid.7", text=" hello "))
        assert inbound.message_id == "wamid.7"
        assert inbound.sender == "15551234567"
        assert inbound.phone_number_id == "1000001"
        assert inbound.text == "hello"

    def test_status_only_delivery_is_skipped(self):
        payload = make_payload()
        value = payload["entry"][0]["changes"][0]["value"]
        value["messages"] = []
        value["statuses"] = [{"id": "wamid.1", "status": "delivered"}]
        assert parse_inbound_message(payload) is None

    def test_non_text_message_is_skipped(self):
        payload = make_payload()
        message = payload["entry"][0]["changes"][0]["value"]["messages"][0]
        message["type"] = "image"
        message.pop("text")
        assert parse_inbound_message(payload) is None

    def test_wrong_object_is_invalid(self):
        payload = make_payload()
        payload["object"] = "page"
        with pytest.raises(InvalidPayloadError):
            parse_inbound_message(payload)

    def test_missing_metadata_is_invalid(self):
        payload = make_payload()
        del payload["entry"][0]["changes"][0]["value"]["metadata"]
        with pytest.raises(InvalidPayloadError):
            parse_inbound_message(payload)

    def test_non_dict_is_invalid(self):
        with pytest.raises(InvalidPayloadError):
            parse_inbound_message(["not", "a", "dict"])


class TestHandlerChain:
    def test_first_reply_wins(self, pipeline_env, sender):
        first = StaticHandler("cancel_command")
        second = StaticHandler("faq", reply="We open at 9.")
        third = StaticHandler("assistant", reply="unused")

        outcome = _pipeline([first, second, third], sender).handle_inbound_message(make_payload())

        assert outcome.status == "processed"
        assert outcome.handler == "faq"
        assert outcome.reply == "We open at 9."
        assert third.calls == 0
        sender.send_text_message.assert_called_once_with("1000001", "15551234567", "We open at 9.")

    def test_handler_exception_is_a_decline(self, pipeline_env, sender, caplog):
        broken = StaticHandler("domain_action", error=RuntimeError("boom"))
        faq = StaticHandler("faq", reply="Answer")

        outcome = _pipeline([broken, faq], sender).handle_inbound_message(make_payload(message_id="wamid.err"))

        assert outcome.handler == "faq"
        records = [r for r in caplog.records if "Handler domain_action failed" in r.getMessage()]
        assert records
        assert records[0].context["message_id"] == "wamid.err"
        assert records[0].context["handler"] == "domain_action"
        assert records[0].context["business_id"] == str(pipeline_env.business.id)

    def test_all_handlers_fail_sends_apology(self, pipeline_env, sender):
        handlers = [StaticHandler("a", error=RuntimeError("x")), StaticHandler("b")]

        outcome = _pipeline(handlers, sender).handle_inbound_message(make_payload())

        assert outcome.handler == "apology"
        sender.send_text_message.assert_called_once_with("1000001", "15551234567", APOLOGY_TEXT)

    def test_send_failure_still_acknowledged(self, pipeline_env, sender):
        sender.send_text_message.return_value = Result.failure("WhatsApp API error: 500", "send_failed")

        outcome = _pipeline([StaticHandler("faq", reply="Hi")], sender).handle_inbound_message(make_payload())

        assert outcome.status == "processed"
        assert outcome.sent is False
        sender.send_text_message.assert_called_once()

    def test_inbound_and_outbound_are_stored(self, pipeline_env, sender):
        _pipeline([StaticHandler("faq", reply="Hi")], sender).handle_inbound_message(make_payload(text="hours?"))

        calls = pipeline_env.save_message.call_args_list
        assert len(calls) == 2
        assert calls[0].args[2:4] == ("user", "hours?")
        assert calls[0].kwargs["provider_message_id"] == "wamid.1"
        assert calls[1].args[2:4] == ("assistant", "Hi")
        assert calls[1].kwargs["handler"] == "faq"
        assert calls[1].kwargs["provider_message_id"] == "wamid.out"


    def test_outbound_store_failure_still_acknowledged(self, pipeline_env, sender):
        pipeline_env.save_message.side_effect = [None, RuntimeError("database went away")]
        db = Mock()

        outcome = IntakePipeline(lambda: db, [StaticHandler("faq", reply="Hi")], sender).handle_inbound_message(
            make_payload()
        )

        assert outcome.status == "processed"
        assert outcome.sent is True
        sender.send_text_message.assert_called_once()
        db.rollback.assert_called_once()
        db.close.assert_called_once()

    def test_sender_exception_still_acknowledged(self, pipeline_env, sender):
        sender.send_text_message.side_effect = ValueError("Expecting value")

        outcome = _pipeline([StaticHandler("faq", reply="Hi")], sender).handle_inbound_message(make_payload())

        assert outcome.status == "processed"
        assert outcome.sent is False
        assert pipeline_env.save_message.call_args.kwargs["metadata"]["send_ok"] is False

class TestDeduplication:
    def test_same_message_twice_sends_once(self, pipeline_env, sender):
        handler = StaticHandler("faq", reply="Hi")
        pipeline = _pipeline([handler], sender)

        first = pipeline.handle_inbound_message(make_payload(message_id="wamid.dup"))
        second = pipeline.handle_inbound_message(make_payload(message_id="wamid.dup"))

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert handler.calls == 1
        assert sender.send_text_message.call_count == 1

    def test_concurrent_duplicates_pass_chain_once(self, pipeline_env, sender):
        handler = StaticHandler("faq", reply="Hi")
        pipeline = _pipeline([handler], sender)

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(
                pool.map(pipeline.handle_inbound_message, [make_payload(message_id="wamid.race")] * 2)
            )

        assert sorted(outcome.status for outcome in outcomes) == ["duplicate", "processed"]
        assert handler.calls == 1
        assert sender.send_text_message.call_count == 1


class TestSkips:
    def test_unknown_business_is_skipped(self, sender):
        with patch("wabot.services.pipeline.get_active_business", return_value=None), patch(
            "wabot.services.pipeline.claim_message"
        ) as claim:
            outcome = _pipeline([StaticHandler("faq", reply="Hi")], sender).handle_inbound_message(make_payload())

        assert outcome.status == "skipped"
        claim.assert_not_called()
        sender.send_text_message.assert_not_called()

    def test_status_delivery_is_skipped_without_db(self, sender):
        payload = make_payload()
        payload["entry"][0]["changes"][0]["value"]["messages"] = []
        factory = Mock()

        outcome = IntakePipeline(factory, [], sender).handle_inbound_message(payload)

        assert outcome.status == "skipped"
        factory.assert_not_called()

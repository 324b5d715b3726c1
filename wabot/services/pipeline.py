import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from pydantic import ValidationError

from wabot.logging_config import bound_context, get_logger, log_timing
from wabot.schemas.webhook import InboundMessage, WhatsAppWebhookPayload
from wabot.services.conversation_service import get_active_business, get_or_create_conversation, save_message
from wabot.services.dedup_service import claim_message
from wabot.services.errors import InvalidPayloadError
from wabot.services.handlers import Handler, HandlerReply, MessageContext
from wabot.services.result import Result
from wabot.services.whatsapp_service import WhatsAppClient

logger = get_logger("pipeline")

APOLOGY_TEXT = "Sorry, something went wrong on our side. Please try again in a moment."


@dataclass
class PipelineOutcome:
    status: str  # processed, duplicate, skipped
    message_id: Optional[str] = None
    handler: Optional[str] = None
    sent: bool = False
    reply: Optional[str] = None


def parse_inbound_message(raw_payload: dict) -> Optional[InboundMessage]:
    """First text message of a WhatsApp Cloud delivery.

    Returns None for status-only or non-text deliveries. Raises
    InvalidPayloadError when the payload does not have the expected shape.
    """
    if not isinstance(raw_payload, dict):
        raise InvalidPayloadError("Payload must be a JSON object")
    try:
        payload = WhatsAppWebhookPayload.model_validate(raw_payload)
    except ValidationError as e:
        raise InvalidPayloadError(f"Malformed webhook payload: {e.error_count()} errors") from e

    if payload.object != "whatsapp_business_account":
        raise InvalidPayloadError(f"Unexpected webhook object: {payload.object}")

    for entry in payload.entry:
        for change in entry.changes:
            value = change.value
            for message in value.messages:
                if message.type != "text" or not message.text or not message.text.body.strip():
                    continue
                return InboundMessage(
                    phone_number_id=value.metadata.phone_number_id,
                    message_id=message.id,
                    sender=message.from_,
                    text=message.text.body.strip(),
                    timestamp=message.timestamp,
                )
    return None


class IntakePipeline:
    """Dedup, run the handler chain, send exactly one reply."""

    def __init__(
        self,
        session_factory: Callable,
        handlers: List[Handler],
        sender: WhatsAppClient,
        apology_text: str = APOLOGY_TEXT,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.sender = sender
        self.apology_text = apology_text

    def handle_inbound_message(self, raw_payload: dict) -> PipelineOutcome:
        inbound = parse_inbound_message(raw_payload)
        if inbound is None:
            return PipelineOutcome(status="skipped")

        db = self.session_factory()
        try:
            with bound_context(message_id=inbound.message_id, phone_number_id=inbound.phone_number_id):
                return self._process(db, inbound)
        finally:
            db.close()

    def _process(self, db, inbound: InboundMessage) -> PipelineOutcome:
        start = time.monotonic()
        log_context = {"message_id": inbound.message_id, "phone_number_id": inbound.phone_number_id}

        business = get_active_business(db, inbound.phone_number_id)
        if business is None:
            logger.info("No active business for phone_number_id, skipping", extra={"context": log_context})
            return PipelineOutcome(status="skipped", message_id=inbound.message_id)
        log_context["business_id"] = str(business.id)

        if not claim_message(db, business.id, inbound.message_id):
            return PipelineOutcome(status="duplicate", message_id=inbound.message_id)

        conversation = get_or_create_conversation(db, business.id, inbound.sender)
        save_message(db, conversation, "user", inbound.text, provider_message_id=inbound.message_id)
        db.commit()

        ctx = MessageContext(
            db=db,
            business=business,
            conversation=conversation,
            message_id=inbound.message_id,
            sender=inbound.sender,
            text=inbound.text,
        )
        reply, handler_name = self._run_handlers(ctx, log_context)
        if reply is None:
            reply, handler_name = HandlerReply(self.apology_text), "apology"
        log_timing(logger, "handlers", (time.monotonic() - start) * 1000, {**log_context, "handler": handler_name})

        send_result = self._send(inbound, reply, handler_name, log_context)
        self._store_outbound(db, conversation, ctx, reply, handler_name, send_result, log_context)

        log_timing(logger, "inbound_total", (time.monotonic() - start) * 1000, {**log_context, "handler": handler_name})
        return PipelineOutcome(
            status="processed",
            message_id=inbound.message_id,
            handler=handler_name,
            sent=send_result.ok,
            reply=reply.text,
        )

    def _send(self, inbound: InboundMessage, reply: HandlerReply, handler_name: str, log_context: dict) -> Result:
        try:
            send_result = self.sender.send_text_message(inbound.phone_number_id, inbound.sender, reply.text)
        except Exception as e:
            send_result = Result.failure(str(e), "send_error")
            logger.error(
                f"Outbound send raised: {e}",
                exc_info=True,
                extra={"context": {**log_context, "handler": handler_name}},
            )
            return send_result
        if not send_result.ok:
            logger.error(
                f"Outbound send failed: {send_result.error}",
                extra={"context": {**log_context, "handler": handler_name, "error_code": send_result.error_code}},
            )
        return send_result

    def _store_outbound(
        self,
        db,
        conversation,
        ctx: MessageContext,
        reply: HandlerReply,
        handler_name: str,
        send_result: Result,
        log_context: dict,
    ) -> None:
        """Persist the reply. A failure here is logged; the delivery is still acknowledged."""
        metadata = dict(reply.metadata)
        metadata["send_ok"] = send_result.ok
        if ctx.classification is not None:
            metadata.setdefault("classification_method", ctx.classification.method.value)
        try:
            save_message(
                db,
                conversation,
                "assistant",
                reply.text,
                provider_message_id=send_result.value if send_result.ok else None,
                handler=handler_name,
                intent=reply.intent,
                confidence=reply.confidence,
                metadata=metadata,
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                f"Failed to store outbound message: {e}",
                exc_info=True,
                extra={"context": {**log_context, "handler": handler_name, "send_ok": send_result.ok}},
            )

    def _run_handlers(self, ctx: MessageContext, log_context: dict) -> tuple[Optional[HandlerReply], Optional[str]]:
        for handler in self.handlers:
            try:
                reply = handler.handle(ctx)
            except Exception as e:
                ctx.db.rollback()
                logger.error(
                    f"Handler {handler.name} failed: {e}",
                    exc_info=True,
                    extra={"context": {**log_context, "handler": handler.name}},
                )
                continue
            if reply is not None and reply.text:
                return reply, handler.name
        return None, None

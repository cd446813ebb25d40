"""Side-effecting flow actions: external option lists and ticket creation.

Every external failure turns into an apologetic bot message with the reset
instruction, so a conversation never gets stuck on an unreachable system.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import Contact, Conversation, Ticket
from chatdesk.services import ticketing_client
from chatdesk.services.alert_service import alert_error
from chatdesk.services.flow_engine import MESSAGE_SEPARATOR, FlowEngine, FlowResult

logger = get_logger("action_executor")

MSG_OPTIONS_UNAVAILABLE = "❌ Não foi possível carregar as opções no momento.\n\nDigite 0 para voltar ao menu ou falar com um atendente."
MSG_TICKET_FAILED = "❌ Erro ao registrar o chamado. Por favor, tente novamente.\n\nDigite 0 para voltar ao menu."
MSG_UNKNOWN_ACTION = "❌ Não foi possível concluir esta etapa.\n\nDigite 0 para voltar ao menu."


def generate_local_reference(now_ms: Optional[int] = None) -> str:
    """Fallback ticket number: CH- plus the last 8 digits of the epoch milliseconds."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"CH-{str(now_ms)[-8:]}"


def _combine(before: str, after: FlowResult) -> FlowResult:
    parts = [text for text in (before, after.response_text) if text]
    after.response_text = MESSAGE_SEPARATOR.join(parts)
    return after


def _ticket_fields(data: dict, contact: Optional[Contact]) -> dict:
    fields = {key: value for key, value in data.items() if not isinstance(value, (list, dict))}
    if contact is not None and contact.phone:
        fields.setdefault("telefone", contact.phone)
    return fields


async def _fetch_options(engine: FlowEngine, result: FlowResult) -> FlowResult:
    request = result.external_call
    if not request.resource:
        logger.warning(f"fetch_options action {request.node_id} has no resource")
        return _combine(result.response_text, engine.fail_action(result.new_state, MSG_OPTIONS_UNAVAILABLE))

    fetched = await ticketing_client.fetch_options(request.resource, request.options_key)
    if not fetched.ok:
        logger.warning(
            f"Dynamic options unavailable: {fetched.error}",
            extra={"context": {"node_id": request.node_id, "code": fetched.error_code}},
        )
        return _combine(result.response_text, engine.fail_action(result.new_state, MSG_OPTIONS_UNAVAILABLE))

    return _combine(result.response_text, engine.inject_options(result.new_state, request, fetched.value))


async def _create_ticket(
    db: Session,
    engine: FlowEngine,
    result: FlowResult,
    conversation: Conversation,
    contact: Optional[Contact],
) -> FlowResult:
    request = result.external_call
    fields = _ticket_fields(request.data, contact)

    submitted = await ticketing_client.create_ticket(fields)
    external_reference = submitted.value if submitted.ok else None
    if not submitted.ok:
        logger.warning(f"External ticket creation failed, using local reference: {submitted.error}")
    elif not external_reference:
        logger.warning("Ticketing response had no reference, using local reference")
    reference = external_reference or generate_local_reference()

    try:
        ticket = Ticket(
            company_id=conversation.company_id,
            conversation_id=conversation.id,
            contact_id=contact.id if contact is not None else None,
            reference=reference,
            external_reference=external_reference,
            source="external" if external_reference else "local",
            fields=fields,
            status="open",
            created_at=datetime.now(timezone.utc),
        )
        db.add(ticket)
        db.flush()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Failed to persist ticket {reference}: {e}",
            extra={"context": {"conversation_id": str(conversation.id)}},
        )
        alert_error("Ticket could not be recorded", {"reference": reference, "conversation_id": str(conversation.id)})
        return _combine(result.response_text, engine.fail_action(result.new_state, MSG_TICKET_FAILED))

    logger.info(
        f"Ticket {reference} created",
        extra={"context": {"conversation_id": str(conversation.id), "source": ticket.source}},
    )
    return _combine(
        result.response_text,
        engine.complete_action(result.new_state, request, {"ticket_reference": reference}),
    )


async def execute_external_call(
    db: Session,
    engine: FlowEngine,
    result: FlowResult,
    conversation: Conversation,
    contact: Optional[Contact] = None,
) -> FlowResult:
    """Perform the result's external call and return the combined turn result."""
    request = result.external_call
    if request is None:
        return result

    if request.action == "fetch_options":
        return await _fetch_options(engine, result)
    if request.action == "create_ticket":
        return await _create_ticket(db, engine, result, conversation, contact)

    logger.error(f"Unknown external action {request.action} on node {request.node_id}")
    return _combine(result.response_text, engine.fail_action(result.new_state, MSG_UNKNOWN_ACTION))

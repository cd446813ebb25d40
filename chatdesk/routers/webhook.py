from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from fastapi.responses import FileResponse
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from chatdesk.config import settings
from chatdesk.database import get_db
from chatdesk.logging_config import get_logger
from chatdesk.models import Contact, Conversation, WhatsAppInstance
from chatdesk.schemas.webhook import EventOutcome, InboundMessage, WebhookEnvelope, WebhookResponse
from chatdesk.services.action_executor import execute_external_call
from chatdesk.services.alert_service import alert_critical, alert_error
from chatdesk.services.conversation_service import (
    get_flow_state,
    get_or_create_conversation,
    is_bot_muted,
    save_flow_state,
    transfer_to_human,
)
from chatdesk.services.flow_engine import FlowEngine
from chatdesk.services.flow_service import load_flow_graph
from chatdesk.services.gateway_service import get_instance_api_key, send_bot_response
from chatdesk.services.identity_service import refresh_contact_avatar, resolve_contact
from chatdesk.services.media_service import (
    LocalMediaStorage,
    build_attachment,
    fetch_media,
    store_media,
    verify_signed_media_path,
)
from chatdesk.services.message_service import (
    build_inbound_message_id,
    has_recent_bot_reply,
    is_duplicate_message,
    save_bot_message,
    save_inbound_message,
)
from chatdesk.services.webhook_decoder import (
    EVENT_CONNECTION_UPDATE,
    EVENT_MESSAGES_UPSERT,
    MalformedPayloadError,
    decode_envelope,
    normalize_event_type,
    parse_inbound_message,
)

logger = get_logger("webhook")

router = APIRouter()

# An action's continuation may itself be an action (e.g. create ticket, then list options)
MAX_CHAINED_ACTIONS = 3


@router.get("/media/{media_path:path}")
async def serve_media(media_path: str, expires: Optional[int] = None, sig: Optional[str] = None):
    """Serve relocated media via signed URLs."""
    normalized_path = (media_path or "").strip().lstrip("/")
    if not normalized_path:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing media path")
    if not verify_signed_media_path(normalized_path, expires, sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")

    target_path = LocalMediaStorage().resolve(normalized_path)
    if target_path is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path")
    if not target_path.exists() or not target_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    return FileResponse(target_path)


def _resolve_company_id(db: Session, instance_name: str) -> Optional[UUID]:
    instance = db.query(WhatsAppInstance).filter(WhatsAppInstance.instance_name == instance_name).first()
    if instance and instance.company_id:
        return instance.company_id
    if settings.default_company_id:
        return UUID(settings.default_company_id)
    return None


async def _run_bot(
    db: Session,
    conversation: Conversation,
    contact: Contact,
    inbound: InboundMessage,
) -> Optional[str]:
    """One flow turn for the inbound message. Returns the text sent, if any."""
    if is_bot_muted(conversation):
        logger.info(f"Conversation {conversation.id} is with an operator, bot skipped")
        return None

    if has_recent_bot_reply(db, conversation.id, settings.anti_flood_window_seconds):
        logger.info(
            "Bot replied moments ago, skipping turn",
            extra={"context": {"conversation_id": str(conversation.id), "message_id": inbound.message_id}},
        )
        return None

    loaded = load_flow_graph(db, conversation.company_id, conversation.channel)
    if loaded is None:
        return None
    bot, graph = loaded

    engine = FlowEngine(graph, settings.flow_reset_tokens)
    result = engine.process(get_flow_state(conversation), inbound.text)

    hops = 0
    while result.external_call is not None and hops < MAX_CHAINED_ACTIONS:
        result = await execute_external_call(db, engine, result, conversation, contact)
        hops += 1
    if result.external_call is not None:
        logger.warning(f"Stopped after {hops} chained actions at node {result.external_call.node_id}")

    if result.should_handoff:
        transfer_to_human(db, conversation)
    save_flow_state(db, conversation, result.new_state)
    db.commit()

    if not result.response_text:
        return None

    save_bot_message(
        db,
        conversation.id,
        result.response_text,
        {"bot_id": str(bot.id), "bot_name": bot.name, "graph_version": graph.version},
    )
    db.commit()

    send_bot_response(db, inbound.instance, contact, inbound.remote_jid, result.response_text)
    return result.response_text


async def _process_message_event(
    db: Session,
    envelope: WebhookEnvelope,
    item: dict,
    background_tasks: BackgroundTasks,
) -> EventOutcome:
    inbound = parse_inbound_message(item, envelope.instance)
    if inbound is None:
        return EventOutcome(status="skipped", detail="not an inbound direct message")

    external_id = build_inbound_message_id(inbound.message_id, inbound.remote_jid, inbound.timestamp, inbound.text)
    if is_duplicate_message(db, external_id):
        logger.info(f"Duplicate message ignored: {external_id}")
        return EventOutcome(status="duplicate", message_id=external_id)

    company_id = _resolve_company_id(db, envelope.instance)
    if company_id is None:
        logger.warning(f"No company for instance {envelope.instance}, message dropped")
        return EventOutcome(status="skipped", message_id=external_id, detail="unknown instance")

    # Download before the identity writes so no row locks are held across gateway I/O
    fetched = None
    if inbound.media is not None:
        api_key = get_instance_api_key(db, inbound.instance)
        fetched = await fetch_media(inbound, api_key=api_key)

    resolved = resolve_contact(db, company_id, inbound.remote_jid, inbound.push_name, inbound.alt_jid)
    contact = resolved.contact
    conversation = get_or_create_conversation(db, company_id, contact.id, settings.default_channel)
    conversation_id = str(conversation.id)

    relocated = None
    if fetched is not None:
        relocated = store_media(fetched, inbound, company_id, conversation.id)

    message = save_inbound_message(
        db,
        conversation.id,
        inbound.text,
        external_id,
        attachment=build_attachment(inbound, relocated),
        message_metadata={"instance": inbound.instance, "remote_jid": inbound.remote_jid, "push_name": inbound.push_name},
    )
    if message is None:
        # Lost the race against a concurrent delivery of the same message
        db.rollback()
        return EventOutcome(status="duplicate", message_id=external_id)
    db.commit()

    logger.info(
        "Inbound message stored",
        extra={
            "context": {
                "message_id": external_id,
                "conversation_id": conversation_id,
                "contact_id": str(contact.id),
                "matched_by": resolved.matched_by,
            }
        },
    )

    if resolved.needs_avatar:
        background_tasks.add_task(refresh_contact_avatar, contact.id, inbound.instance, inbound.remote_jid)

    # The message is committed: a redelivery would be deduplicated, so a failed turn is
    # reported and alerted here instead of failing the event
    try:
        bot_response = await _run_bot(db, conversation, contact, inbound)
    except Exception as exc:
        db.rollback()
        logger.error(
            "Bot turn failed",
            extra={"context": {"message_id": external_id, "conversation_id": conversation_id, "error": str(exc)}},
            exc_info=True,
        )
        alert_error(
            "Bot turn failed",
            {"instance": inbound.instance, "conversation_id": conversation_id, "error": str(exc)[:300]},
        )
        return EventOutcome(
            status="processed",
            message_id=external_id,
            conversation_id=conversation_id,
            detail="bot turn failed",
        )

    return EventOutcome(
        status="processed",
        message_id=external_id,
        conversation_id=conversation_id,
        bot_response=bot_response,
    )


async def _process_connection_update(
    db: Session,
    envelope: WebhookEnvelope,
    item: dict,
    background_tasks: BackgroundTasks,
) -> EventOutcome:
    state = str(item.get("state") or item.get("status") or "unknown")
    now = datetime.now(timezone.utc)
    stmt = (
        insert(WhatsAppInstance)
        .values(id=uuid4(), instance_name=envelope.instance, status=state, updated_at=now)
        .on_conflict_do_update(index_elements=["instance_name"], set_={"status": state, "updated_at": now})
    )
    db.execute(stmt)
    db.commit()
    logger.info(f"Instance {envelope.instance} connection state: {state}")
    return EventOutcome(status="processed", detail=f"connection {state}")


EVENT_HANDLERS = {
    EVENT_MESSAGES_UPSERT: _process_message_event,
    EVENT_CONNECTION_UPDATE: _process_connection_update,
}


async def _handle_evolution_request(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session,
    path_event: Optional[str] = None,
) -> WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except ValueError as exc:
        logger.warning("Webhook payload is not valid JSON", extra={"context": {"error": str(exc)}})
        response.status_code = status.HTTP_400_BAD_REQUEST
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if path_event and isinstance(payload, dict) and not payload.get("event"):
        payload = {**payload, "event": path_event}

    try:
        envelope, items = decode_envelope(payload)
    except MalformedPayloadError as exc:
        logger.warning(f"Malformed webhook payload: {exc}")
        response.status_code = status.HTTP_400_BAD_REQUEST
        return WebhookResponse(success=False, message=str(exc))

    event_type = normalize_event_type(envelope.event)
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Ignoring event {envelope.event} from {envelope.instance}")
        return WebhookResponse(success=True, message="Event ignored", event=event_type)

    logger.info(f"Webhook received: event={event_type}, instance={envelope.instance}, items={len(items)}")

    results: list[EventOutcome] = []
    for index, item in enumerate(items):
        try:
            outcome = await handler(db, envelope, item, background_tasks)
        except Exception as exc:
            db.rollback()
            logger.error(
                "Webhook event failed",
                extra={
                    "context": {
                        "event": event_type,
                        "instance": envelope.instance,
                        "item": index,
                        "error": str(exc),
                    }
                },
                exc_info=True,
            )
            alert_critical(
                "Webhook event failed",
                {"event": event_type, "instance": envelope.instance, "error": str(exc)[:300]},
            )
            outcome = EventOutcome(status="failed", detail=type(exc).__name__)
        results.append(outcome)

    failed = sum(1 for outcome in results if outcome.status == "failed")
    if failed:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return WebhookResponse(
            success=False,
            message=f"{failed} of {len(results)} events failed",
            event=event_type,
            results=results,
        )
    return WebhookResponse(success=True, message=f"Processed {len(results)} events", event=event_type, results=results)


@router.post("/webhook/evolution", response_model=WebhookResponse)
async def handle_evolution_webhook(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Evolution gateway webhook (single URL for all events)."""
    return await _handle_evolution_request(request, response, background_tasks, db)


@router.post("/webhook/evolution/{event}", response_model=WebhookResponse)
async def handle_evolution_webhook_by_event(
    event: str,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Evolution gateway webhook with "webhook by events" enabled (event in the path)."""
    return await _handle_evolution_request(request, response, background_tasks, db, path_event=event)


@router.options("/webhook/evolution")
@router.options("/webhook/evolution/{event}")
async def evolution_webhook_preflight():
    return Response(status_code=status.HTTP_200_OK, headers={"Allow": "POST, OPTIONS"})

from typing import Optional

import httpx
from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.logging_config import get_logger
from chatdesk.models import Contact, WhatsAppInstance
from chatdesk.services.alert_service import alert_critical
from chatdesk.services.identity_service import to_gateway_address

logger = get_logger("gateway_service")


def get_instance_api_key(db: Session, instance_name: str) -> Optional[str]:
    """Instance-scoped API key, falling back to the global gateway key."""
    instance = db.query(WhatsAppInstance).filter(WhatsAppInstance.instance_name == instance_name).first()
    if instance and instance.api_key:
        return instance.api_key
    return settings.evolution_api_key


def _gateway_url(path: str, instance_name: str) -> str:
    return f"{settings.evolution_api_url.rstrip('/')}/{path}/{instance_name}"


def send_whatsapp_text(instance_name: str, number: str, text: str, *, api_key: Optional[str]) -> bool:
    """Send a text message via the gateway sendText endpoint."""
    if not api_key:
        logger.error("Gateway API key is missing (EVOLUTION_API_KEY not set)")
        alert_critical("WhatsApp send failed", {"number": number, "error": "missing_api_key"})
        return False

    if not instance_name or not text:
        logger.warning(f"send_whatsapp_text: missing instance={instance_name} or text")
        return False

    try:
        with httpx.Client(timeout=settings.http_timeout_seconds) as client:
            response = client.post(
                _gateway_url("message/sendText", instance_name),
                json={"number": number, "text": text},
                headers={"apikey": api_key},
            )
            logger.info(
                f"Gateway response: status={response.status_code}, number={number}, body={response.text[:200]}"
            )
            return response.is_success
    except Exception as e:
        logger.error(f"Error sending WhatsApp message: {e}")
        alert_critical("WhatsApp send failed", {"number": number, "error": str(e)})
        return False


async def fetch_media_base64(instance_name: str, envelope: dict, *, api_key: Optional[str]) -> Optional[dict]:
    """Ask the gateway to decrypt a media message; returns its JSON ({"base64", "mimetype", ...})."""
    if not api_key:
        logger.warning("Media fetch skipped: gateway API key is missing")
        return None

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        response = await client.post(
            _gateway_url("chat/getBase64FromMediaMessage", instance_name),
            json={"message": envelope, "convertToMp4": False},
            headers={"apikey": api_key},
        )
        response.raise_for_status()
        payload = response.json()
    return payload if isinstance(payload, dict) else None


def fetch_profile_picture_url(instance_name: str, number: str, *, api_key: Optional[str]) -> Optional[str]:
    if not api_key:
        return None

    with httpx.Client(timeout=settings.http_timeout_seconds) as client:
        response = client.post(
            _gateway_url("chat/fetchProfilePictureUrl", instance_name),
            json={"number": number},
            headers={"apikey": api_key},
        )
        response.raise_for_status()
        payload = response.json()

    if not isinstance(payload, dict):
        return None
    for key in ("profilePictureUrl", "picture", "imgUrl", "url"):
        value = payload.get(key)
        if isinstance(value, str) and value.startswith("http"):
            return value
    return None


def resolve_recipient(contact: Optional[Contact], inbound_remote_jid: str) -> str:
    """Prefer the contact's canonical phone over the raw inbound address."""
    if contact is not None and contact.phone:
        return to_gateway_address(contact.phone)
    return inbound_remote_jid


def send_bot_response(
    db: Session,
    instance_name: str,
    contact: Optional[Contact],
    inbound_remote_jid: str,
    message: str,
) -> bool:
    """Send bot response to the WhatsApp contact. Failures are logged, never raised."""
    recipient = resolve_recipient(contact, inbound_remote_jid)
    try:
        api_key = get_instance_api_key(db, instance_name)
    except Exception as e:
        logger.error(f"Failed to resolve gateway key for instance {instance_name}: {e}")
        return False

    ok = send_whatsapp_text(instance_name, recipient, message, api_key=api_key)
    if not ok:
        logger.warning(f"Failed to deliver via gateway: number={recipient}, instance={instance_name}")
    else:
        logger.info(f"Delivered via gateway: number={recipient}")
    return ok

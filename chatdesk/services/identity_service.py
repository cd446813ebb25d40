"""Map a gateway sender address to exactly one Contact per company.

WhatsApp delivers two families of addresses: ordinary ones
(``5511999990000@s.whatsapp.net`` / ``@c.us``) that carry the phone number,
and opaque pseudonymous ones (``...@lid``) that never do. The same person can
show up under both, so resolution tries several keys before creating a row,
and backfills the phone once a trustworthy one is observed.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from chatdesk.database import SessionLocal
from chatdesk.logging_config import get_logger
from chatdesk.models import Contact

logger = get_logger("identity_service")

ORDINARY_SUFFIXES = ("@s.whatsapp.net", "@c.us")
OPAQUE_SUFFIX = "@lid"
DEFAULT_CONTACT_NAME = "Sem Nome"

_PHONE_IN_NAME = re.compile(r"\d{10,15}")


@dataclass
class ResolvedContact:
    contact: Contact
    created: bool
    matched_by: str  # phone, remote_jid, name_phone, created
    needs_avatar: bool


def is_opaque_address(remote_jid: Optional[str]) -> bool:
    return bool(remote_jid) and remote_jid.strip().lower().endswith(OPAQUE_SUFFIX)


def extract_phone(remote_jid: Optional[str]) -> Optional[str]:
    """Digits of an ordinary address; None for opaque or unrecognized ones."""
    if not remote_jid or is_opaque_address(remote_jid):
        return None
    address = remote_jid.strip()
    for suffix in ORDINARY_SUFFIXES:
        if address.endswith(suffix):
            address = address[: -len(suffix)]
            break
    else:
        if "@" in address:
            return None
    # Multi-device addresses look like 5511999990000:12@s.whatsapp.net
    address = address.split(":", 1)[0]
    digits = re.sub(r"\D", "", address)
    if 8 <= len(digits) <= 15:
        return digits
    return None


def to_gateway_address(phone: str) -> str:
    return f"{phone}@s.whatsapp.net"


def trustworthy_phone(remote_jid: str, alt_jid: Optional[str] = None) -> Optional[str]:
    """Phone of the sender address, or of the alternate address the gateway supplied."""
    phone = extract_phone(remote_jid)
    if phone:
        return phone
    if alt_jid:
        return extract_phone(alt_jid)
    return None


def phone_from_display_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    match = _PHONE_IN_NAME.search(re.sub(r"[\s\-\(\)\+]", "", name))
    return match.group(0) if match else None


def _find_by_phone(db: Session, company_id: UUID, phone: str) -> Optional[Contact]:
    return db.query(Contact).filter(Contact.company_id == company_id, Contact.phone == phone).first()


def _find_by_remote_jid(db: Session, company_id: UUID, remote_jid: str) -> Optional[Contact]:
    return (
        db.query(Contact)
        .filter(Contact.company_id == company_id, Contact.remote_jid == remote_jid)
        .order_by(Contact.created_at.desc())
        .first()
    )


def _find_by_name(db: Session, company_id: UUID, name: str, *, with_phone: bool) -> Optional[Contact]:
    query = db.query(Contact).filter(
        Contact.company_id == company_id,
        func.lower(Contact.name) == name.strip().lower(),
    )
    if with_phone:
        query = query.filter(Contact.phone.isnot(None))
    else:
        query = query.filter(or_(Contact.phone.is_(None), Contact.phone == ""))
    return query.order_by(Contact.created_at.desc()).first()


def _find_by_name_and_phone(
    db: Session,
    company_id: UUID,
    display_name: str,
    phone: Optional[str],
) -> Optional[Contact]:
    if phone:
        # Ordinary sender: claim an opaque-only contact created under the same name
        return _find_by_name(db, company_id, display_name, with_phone=False)

    embedded = phone_from_display_name(display_name)
    if embedded:
        contact = _find_by_phone(db, company_id, embedded)
        if contact:
            return contact
    return _find_by_name(db, company_id, display_name, with_phone=True)


def _refresh_contact(
    contact: Contact,
    *,
    phone: Optional[str],
    display_name: Optional[str],
    remote_jid: str,
) -> None:
    changed = False
    if phone and not contact.phone:
        logger.info(
            "Backfilling contact phone",
            extra={"context": {"contact_id": str(contact.id), "remote_jid": remote_jid}},
        )
        contact.phone = phone
        changed = True
    if display_name and display_name != contact.name:
        contact.name = display_name
        changed = True
    if remote_jid and remote_jid != contact.remote_jid:
        contact.remote_jid = remote_jid
        changed = True
    if changed:
        contact.updated_at = datetime.now(timezone.utc)


def _create_contact(
    db: Session,
    company_id: UUID,
    *,
    phone: Optional[str],
    name: str,
    remote_jid: str,
) -> tuple[Contact, bool]:
    now = datetime.now(timezone.utc)
    stmt = (
        insert(Contact)
        .values(
            id=uuid.uuid4(),
            company_id=company_id,
            phone=phone,
            name=name,
            remote_jid=remote_jid,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing()
        .returning(Contact.id)
    )
    new_id = db.execute(stmt).scalar_one_or_none()
    if new_id is not None:
        return db.get(Contact, new_id), True

    # A concurrent delivery inserted the same phone (or, without one, the same address) first
    contact = _find_by_phone(db, company_id, phone) if phone else None
    if contact is None:
        contact = _find_by_remote_jid(db, company_id, remote_jid)
    if contact is None:
        raise RuntimeError(f"Contact insert conflicted but no row found for {remote_jid}")
    return contact, False


def resolve_contact(
    db: Session,
    company_id: UUID,
    remote_jid: str,
    display_name: Optional[str] = None,
    alt_jid: Optional[str] = None,
) -> ResolvedContact:
    """Find or create the contact behind a sender address.

    Order: exact phone, exact remote_jid, name + phone compound match, create.
    Database errors propagate to the caller.
    """
    phone = trustworthy_phone(remote_jid, alt_jid)

    contact = None
    matched_by = ""
    if phone:
        contact = _find_by_phone(db, company_id, phone)
        matched_by = "phone"
    if contact is None:
        contact = _find_by_remote_jid(db, company_id, remote_jid)
        matched_by = "remote_jid"
    if contact is None and display_name:
        contact = _find_by_name_and_phone(db, company_id, display_name, phone)
        matched_by = "name_phone"

    if contact is not None:
        _refresh_contact(contact, phone=phone, display_name=display_name, remote_jid=remote_jid)
        db.flush()
        logger.debug(f"Contact {contact.id} matched by {matched_by}")
        return ResolvedContact(contact=contact, created=False, matched_by=matched_by, needs_avatar=not contact.avatar_url)

    name = display_name or phone or DEFAULT_CONTACT_NAME
    contact, created = _create_contact(db, company_id, phone=phone, name=name, remote_jid=remote_jid)
    if created:
        logger.info(
            "Created contact",
            extra={"context": {"contact_id": str(contact.id), "company_id": str(company_id), "has_phone": bool(phone)}},
        )
        return ResolvedContact(contact=contact, created=True, matched_by="created", needs_avatar=True)

    _refresh_contact(contact, phone=phone, display_name=display_name, remote_jid=remote_jid)
    db.flush()
    matched_by = "phone" if phone else "remote_jid"
    return ResolvedContact(contact=contact, created=False, matched_by=matched_by, needs_avatar=not contact.avatar_url)


def refresh_contact_avatar(contact_id: UUID, instance_name: str, remote_jid: str) -> None:
    """Background task: store the sender's profile picture URL. Best effort."""
    from chatdesk.services.gateway_service import fetch_profile_picture_url, get_instance_api_key

    db = SessionLocal()
    try:
        contact = db.get(Contact, contact_id)
        if contact is None or contact.avatar_url:
            return
        number = to_gateway_address(contact.phone) if contact.phone else remote_jid
        url = fetch_profile_picture_url(instance_name, number, api_key=get_instance_api_key(db, instance_name))
        if not url:
            logger.debug(f"No profile picture for contact {contact_id}")
            return
        contact.avatar_url = url
        contact.updated_at = datetime.now(timezone.utc)
        db.commit()
        logger.info(f"Stored avatar for contact {contact_id}")
    except Exception as e:
        db.rollback()
        logger.warning(f"Avatar refresh failed for contact {contact_id}: {e}")
    finally:
        db.close()

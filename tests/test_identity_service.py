from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

from chatdesk.models import Contact
from chatdesk.services.identity_service import (
    extract_phone,
    is_opaque_address,
    phone_from_display_name,
    refresh_contact_avatar,
    resolve_contact,
    to_gateway_address,
    trustworthy_phone,
)

COMPANY_ID = uuid4()


def _contact(**kwargs):
    defaults = {"id": uuid4(), "phone": None, "name": None, "remote_jid": None, "avatar_url": None, "updated_at": None}
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


class TestAddressHelpers:
    @pytest.mark.parametrize(
        "jid,expected",
        [
            ("5511999990000@s.whatsapp.net", "5511999990000"),
            ("5511999990000@c.us", "5511999990000"),
            ("5511999990000:12@s.whatsapp.net", "5511999990000"),
            ("5511999990000", "5511999990000"),
            ("123456789012345@lid", None),
            ("120363000000@g.us", None),
            ("123@s.whatsapp.net", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_phone(self, jid, expected):
        assert extract_phone(jid) == expected

    def test_opaque_detection_is_case_insensitive(self):
        assert is_opaque_address("98765@LID") is True
        assert is_opaque_address("5511999990000@s.whatsapp.net") is False

    def test_trustworthy_phone_prefers_sender_address(self):
        assert trustworthy_phone("5511999990000@s.whatsapp.net", "5511888880000@s.whatsapp.net") == "5511999990000"

    def test_trustworthy_phone_from_alternate(self):
        assert trustworthy_phone("98765@lid", "5511888880000@s.whatsapp.net") == "5511888880000"

    def test_opaque_without_alternate_has_no_phone(self):
        assert trustworthy_phone("98765@lid") is None

    def test_phone_from_display_name(self):
        assert phone_from_display_name("Cliente +55 (11) 99999-0000") == "5511999990000"
        assert phone_from_display_name("Maria") is None

    def test_gateway_address(self):
        assert to_gateway_address("5511999990000") == "5511999990000@s.whatsapp.net"


class TestResolveContact:
    @patch("chatdesk.services.identity_service._find_by_phone")
    def test_phone_match_refreshes_name_and_address(self, mock_find_by_phone, db_session):
        existing = _contact(phone="5511999990000", name="Maria", remote_jid="old@s.whatsapp.net", avatar_url="http://a")
        mock_find_by_phone.return_value = existing

        resolved = resolve_contact(db_session, COMPANY_ID, "5511999990000@s.whatsapp.net", "Maria Souza")

        assert resolved.contact is existing
        assert resolved.matched_by == "phone"
        assert resolved.created is False
        assert resolved.needs_avatar is False
        assert existing.name == "Maria Souza"
        assert existing.remote_jid == "5511999990000@s.whatsapp.net"
        db_session.flush.assert_called_once()

    @patch("chatdesk.services.identity_service._create_contact")
    @patch("chatdesk.services.identity_service._find_by_remote_jid")
    @patch("chatdesk.services.identity_service._find_by_phone")
    def test_opaque_contact_backfilled_by_alternate_phone(
        self, mock_find_by_phone, mock_find_by_jid, mock_create, db_session
    ):
        opaque_only = _contact(name="João", remote_jid="98765@lid")
        mock_find_by_phone.return_value = None
        mock_find_by_jid.return_value = opaque_only

        resolved = resolve_contact(
            db_session, COMPANY_ID, "98765@lid", "João", alt_jid="5511888880000@s.whatsapp.net"
        )

        assert resolved.contact is opaque_only
        assert resolved.matched_by == "remote_jid"
        assert opaque_only.phone == "5511888880000"
        mock_create.assert_not_called()

    @patch("chatdesk.services.identity_service._create_contact")
    @patch("chatdesk.services.identity_service._find_by_name")
    @patch("chatdesk.services.identity_service._find_by_remote_jid")
    @patch("chatdesk.services.identity_service._find_by_phone")
    def test_ordinary_sender_claims_same_named_opaque_contact(
        self, mock_find_by_phone, mock_find_by_jid, mock_find_by_name, mock_create, db_session
    ):
        opaque_only = _contact(name="João", remote_jid="98765@lid")
        mock_find_by_phone.return_value = None
        mock_find_by_jid.return_value = None
        mock_find_by_name.return_value = opaque_only

        resolved = resolve_contact(db_session, COMPANY_ID, "5511888880000@s.whatsapp.net", "João")

        assert resolved.matched_by == "name_phone"
        assert opaque_only.phone == "5511888880000"
        assert opaque_only.remote_jid == "5511888880000@s.whatsapp.net"
        mock_find_by_name.assert_called_once_with(db_session, COMPANY_ID, "João", with_phone=False)
        mock_create.assert_not_called()

    @patch("chatdesk.services.identity_service._find_by_name")
    @patch("chatdesk.services.identity_service._find_by_remote_jid")
    @patch("chatdesk.services.identity_service._find_by_phone")
    def test_opaque_sender_matches_phone_in_display_name(
        self, mock_find_by_phone, mock_find_by_jid, mock_find_by_name, db_session
    ):
        known = _contact(phone="5511777770000", name="Ana 5511777770000")
        mock_find_by_phone.return_value = known
        mock_find_by_jid.return_value = None

        resolved = resolve_contact(db_session, COMPANY_ID, "55555@lid", "Ana 5511777770000")

        assert resolved.contact is known
        assert resolved.matched_by == "name_phone"
        assert known.phone == "5511777770000"
        mock_find_by_phone.assert_called_once_with(db_session, COMPANY_ID, "5511777770000")
        mock_find_by_name.assert_not_called()

    @patch("chatdesk.services.identity_service._create_contact")
    @patch("chatdesk.services.identity_service._find_by_name")
    @patch("chatdesk.services.identity_service._find_by_remote_jid")
    def test_opaque_sender_never_gets_phone(self, mock_find_by_jid, mock_find_by_name, mock_create, db_session):
        created = _contact(name="Sem Nome", remote_jid="55555@lid")
        mock_find_by_jid.return_value = None
        mock_find_by_name.return_value = None
        mock_create.return_value = (created, True)

        resolved = resolve_contact(db_session, COMPANY_ID, "55555@lid", None)

        assert resolved.created is True
        assert resolved.needs_avatar is True
        mock_create.assert_called_once_with(
            db_session, COMPANY_ID, phone=None, name="Sem Nome", remote_jid="55555@lid"
        )

    @patch("chatdesk.services.identity_service._find_by_name", return_value=None)
    @patch("chatdesk.services.identity_service._find_by_remote_jid")
    @patch("chatdesk.services.identity_service._find_by_phone")
    def test_insert_conflict_rereads_existing_row(self, mock_find_by_phone, mock_find_by_jid, mock_find_by_name, db_session):
        winner = _contact(phone="5511999990000", name="Maria")
        # Not found before the insert, found after the conflicting insert
        mock_find_by_phone.side_effect = [None, winner]
        mock_find_by_jid.return_value = None
        db_session.execute.return_value.scalar_one_or_none.return_value = None

        resolved = resolve_contact(db_session, COMPANY_ID, "5511999990000@s.whatsapp.net", "Maria")

        assert resolved.contact is winner
        assert resolved.created is False
        db_session.get.assert_not_called()

    @patch("chatdesk.services.identity_service._find_by_phone")
    @patch("chatdesk.services.identity_service._find_by_remote_jid")
    def test_opaque_insert_conflict_rereads_by_address(self, mock_find_by_jid, mock_find_by_phone, db_session):
        winner = _contact(name="Sem Nome", remote_jid="55555@lid", avatar_url="https://pps.whatsapp.net/p.jpg")
        # Concurrent delivery from the same @lid sender won the insert
        mock_find_by_jid.side_effect = [None, winner]
        db_session.execute.return_value.scalar_one_or_none.return_value = None

        resolved = resolve_contact(db_session, COMPANY_ID, "55555@lid", None)

        assert resolved.contact is winner
        assert resolved.created is False
        assert resolved.matched_by == "remote_jid"
        assert resolved.needs_avatar is False
        assert winner.phone is None
        assert mock_find_by_jid.call_count == 2
        mock_find_by_phone.assert_not_called()
        db_session.get.assert_not_called()

    def test_opaque_contacts_are_unique_per_address(self):
        index = next(i for i in Contact.__table__.indexes if i.name == "uq_contacts_company_remote_jid_no_phone")

        assert index.unique is True
        assert [column.name for column in index.columns] == ["company_id", "remote_jid"]
        assert str(index.dialect_options["postgresql"]["where"]) == "phone IS NULL"

    def test_database_errors_propagate(self, db_session):
        db_session.query.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError):
            resolve_contact(db_session, COMPANY_ID, "5511999990000@s.whatsapp.net", "Maria")


class TestRefreshContactAvatar:
    @patch("chatdesk.services.gateway_service.get_instance_api_key", return_value="key")
    @patch("chatdesk.services.gateway_service.fetch_profile_picture_url", return_value="https://pps.whatsapp.net/p.jpg")
    @patch("chatdesk.services.identity_service.SessionLocal")
    def test_stores_avatar_url(self, mock_session_local, mock_fetch, mock_key):
        db = MagicMock()
        contact = _contact(phone="5511999990000")
        db.get.return_value = contact
        mock_session_local.return_value = db

        refresh_contact_avatar(contact.id, "support", "5511999990000@s.whatsapp.net")

        assert contact.avatar_url == "https://pps.whatsapp.net/p.jpg"
        mock_fetch.assert_called_once_with("support", "5511999990000@s.whatsapp.net", api_key="key")
        db.commit.assert_called_once()
        db.close.assert_called_once()

    @patch("chatdesk.services.gateway_service.get_instance_api_key", return_value="key")
    @patch("chatdesk.services.gateway_service.fetch_profile_picture_url", side_effect=Exception("timeout"))
    @patch("chatdesk.services.identity_service.SessionLocal")
    def test_failure_is_logged_only(self, mock_session_local, mock_fetch, mock_key):
        db = MagicMock()
        contact = _contact(remote_jid="55555@lid")
        db.get.return_value = contact
        mock_session_local.return_value = db

        refresh_contact_avatar(contact.id, "support", "55555@lid")

        assert contact.avatar_url is None
        db.rollback.assert_called_once()
        db.close.assert_called_once()

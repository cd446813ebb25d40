import pytest

from chatdesk.services.webhook_decoder import (
    EVENT_CONNECTION_UPDATE,
    EVENT_MESSAGES_UPSERT,
    MalformedPayloadError,
    decode_envelope,
    extract_message_text,
    is_ignored_jid,
    normalize_event_type,
    parse_inbound_message,
)


def _message_item(remote_jid="5511999990000@s.whatsapp.net", message=None, **overrides):
    item = {
        "key": {"remoteJid": remote_jid, "fromMe": False, "id": "3EB0A1B2C3"},
        "pushName": "Maria Souza",
        "message": message if message is not None else {"conversation": "Olá"},
        "messageTimestamp": 1717000000,
    }
    item.update(overrides)
    return item


class TestNormalizeEventType:
    @pytest.mark.parametrize(
        "raw",
        ["messages.upsert", "MESSAGES_UPSERT", "Messages-Upsert", " messages_upsert "],
    )
    def test_message_upsert_variants(self, raw):
        assert normalize_event_type(raw) == EVENT_MESSAGES_UPSERT

    def test_connection_update(self):
        assert normalize_event_type("connection.update") == EVENT_CONNECTION_UPDATE


class TestDecodeEnvelope:
    def test_single_object_becomes_list(self):
        envelope, items = decode_envelope({"event": "messages.upsert", "instance": "support", "data": {"a": 1}})
        assert envelope.instance == "support"
        assert items == [{"a": 1}]

    def test_array_data(self):
        _, items = decode_envelope({"event": "messages.upsert", "instance": "support", "data": [{"a": 1}, {"b": 2}]})
        assert len(items) == 2

    def test_missing_data_yields_no_items(self):
        _, items = decode_envelope({"event": "messages.upsert", "instance": "support"})
        assert items == []

    def test_non_object_items_dropped(self):
        _, items = decode_envelope({"event": "messages.upsert", "instance": "support", "data": [{"a": 1}, "junk", 3]})
        assert items == [{"a": 1}]

    @pytest.mark.parametrize(
        "payload",
        [
            {"instance": "support", "data": {}},
            {"event": "", "instance": "support"},
            {"event": "messages.upsert", "instance": "  "},
            {"event": "messages.upsert"},
            ["not", "an", "object"],
            None,
        ],
    )
    def test_malformed_payloads_raise(self, payload):
        with pytest.raises(MalformedPayloadError):
            decode_envelope(payload)


class TestExtractMessageText:
    def test_plain_conversation(self):
        assert extract_message_text({"conversation": "Bom dia"}) == "Bom dia"

    def test_extended_text(self):
        assert extract_message_text({"extendedTextMessage": {"text": "link aqui"}}) == "link aqui"


class TestParseInboundMessage:
    def test_ordinary_text_message(self):
        inbound = parse_inbound_message(_message_item(), "support")

        assert inbound.message_id == "3EB0A1B2C3"
        assert inbound.remote_jid == "5511999990000@s.whatsapp.net"
        assert inbound.push_name == "Maria Souza"
        assert inbound.text == "Olá"
        assert inbound.timestamp == 1717000000
        assert inbound.media is None

    def test_from_me_skipped(self):
        item = _message_item()
        item["key"]["fromMe"] = True
        assert parse_inbound_message(item, "support") is None

    def test_group_message_skipped(self):
        assert parse_inbound_message(_message_item(remote_jid="120363000000@g.us"), "support") is None

    def test_missing_key_skipped(self):
        assert parse_inbound_message({"message": {"conversation": "oi"}}, "support") is None

    def test_opaque_sender_keeps_alternate_address(self):
        item = _message_item(remote_jid="123456789012345@lid")
        item["key"]["senderPn"] = "5511988887777@s.whatsapp.net"

        inbound = parse_inbound_message(item, "support")

        assert inbound.remote_jid == "123456789012345@lid"
        assert inbound.alt_jid == "5511988887777@s.whatsapp.net"

    def test_image_with_caption(self):
        message = {"imageMessage": {"mimetype": "image/jpeg", "url": "https://mmg.whatsapp.net/x", "caption": "pneu furado"}}
        inbound = parse_inbound_message(_message_item(message=message), "support")

        assert inbound.media.media_type == "image"
        assert inbound.media.mime_type == "image/jpeg"
        assert inbound.text == "pneu furado"
        assert inbound.raw["message"] == message

    def test_audio_placeholder(self):
        inbound = parse_inbound_message(_message_item(message={"audioMessage": {"mimetype": "audio/ogg"}}), "support")
        assert inbound.text == "[Áudio]"

    def test_document_placeholder_includes_file_name(self):
        message = {"documentMessage": {"mimetype": "application/pdf", "fileName": "nota.pdf"}}
        inbound = parse_inbound_message(_message_item(message=message), "support")
        assert inbound.text == "[Documento] nota.pdf"

    def test_wrapped_document_keeps_original_envelope(self):
        inner = {"documentMessage": {"mimetype": "application/pdf", "fileName": "os.pdf", "caption": "segue"}}
        message = {"documentWithCaptionMessage": {"message": inner}}

        inbound = parse_inbound_message(_message_item(message=message), "support")

        assert inbound.media.file_name == "os.pdf"
        assert inbound.text == "segue"
        assert inbound.raw["message"] == message

    def test_location(self):
        message = {"locationMessage": {"degreesLatitude": -23.55, "degreesLongitude": -46.63, "name": "Garagem"}}
        inbound = parse_inbound_message(_message_item(message=message), "support")

        assert inbound.text == "[Localização]"
        assert inbound.location.latitude == -23.55

    def test_unsupported_message(self):
        inbound = parse_inbound_message(_message_item(message={"pollCreationMessage": {}}), "support")
        assert inbound.text == "[Mensagem não suportada]"

    def test_timestamp_object_form(self):
        inbound = parse_inbound_message(_message_item(messageTimestamp={"low": 1717000001, "high": 0}), "support")
        assert inbound.timestamp == 1717000001


class TestIgnoredJid:
    def test_status_broadcast(self):
        assert is_ignored_jid("status@broadcast") is True

    def test_direct_chat(self):
        assert is_ignored_jid("5511999990000@s.whatsapp.net") is False

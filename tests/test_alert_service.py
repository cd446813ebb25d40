from unittest.mock import MagicMock, Mock, patch

from chatdesk.config import settings
from chatdesk.services.alert_service import alert_critical, alert_error, format_alert, send_alert


def _telegram_client(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_client.post.return_value = Mock(status_code=status_code)
    return mock_client


class TestFormatAlert:
    def test_level_emoji(self):
        assert format_alert("ERROR", "Ticket lost").startswith("❌ *ERROR*")
        assert format_alert("CRITICAL", "Send failed").startswith("🔥 *CRITICAL*")

    def test_context_block(self):
        text = format_alert("CRITICAL", "Webhook event failed", {"instance": "support-01", "event": "MESSAGES_UPSERT"})

        assert "  instance: support-01" in text
        assert "  event: MESSAGES_UPSERT" in text

    def test_long_context_values_truncated(self):
        text = format_alert("ERROR", "x", {"error": "e" * 1000})
        assert "e" * 300 in text
        assert "e" * 301 not in text


class TestSendAlert:
    @patch.object(settings, "alert_bot_token", None)
    @patch.object(settings, "alert_chat_id", None)
    @patch("chatdesk.services.alert_service.httpx.Client")
    def test_returns_false_when_not_configured(self, mock_client_class):
        assert send_alert("ERROR", "Test message") is False
        mock_client_class.assert_not_called()

    @patch.object(settings, "alert_bot_token", "test-token")
    @patch.object(settings, "alert_chat_id", "test-chat")
    @patch("chatdesk.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = _telegram_client(mock_client_class)

        result = send_alert("CRITICAL", "WhatsApp send failed", {"number": "5511999990000"})

        assert result is True
        url = mock_client.post.call_args[0][0]
        json_data = mock_client.post.call_args[1]["json"]
        assert url == "https://api.telegram.org/bottest-token/sendMessage"
        assert json_data["chat_id"] == "test-chat"
        assert "5511999990000" in json_data["text"]

    @patch.object(settings, "alert_bot_token", "test-token")
    @patch.object(settings, "alert_chat_id", "test-chat")
    @patch("chatdesk.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        _telegram_client(mock_client_class, status_code=400)

        assert send_alert("ERROR", "Test message") is False

    @patch.object(settings, "alert_bot_token", "test-token")
    @patch.object(settings, "alert_chat_id", "test-chat")
    @patch("chatdesk.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = Exception("Network error")

        assert send_alert("ERROR", "Test message") is False


class TestAlertShortcuts:
    @patch("chatdesk.services.alert_service.send_alert", return_value=True)
    def test_alert_error(self, mock_send):
        assert alert_error("Ticket lost", {"reference": "CH-1"}) is True
        mock_send.assert_called_once_with("ERROR", "Ticket lost", {"reference": "CH-1"})

    @patch("chatdesk.services.alert_service.send_alert", return_value=True)
    def test_alert_critical(self, mock_send):
        assert alert_critical("Webhook event failed") is True
        mock_send.assert_called_once_with("CRITICAL", "Webhook event failed", None)

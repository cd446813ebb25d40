from types import SimpleNamespace
from unittest.mock import patch
from uuid import uuid4

from chatdesk.services.flow_service import load_flow_graph

COMPANY_ID = uuid4()


def _bot(flows, version=2):
    return SimpleNamespace(id=uuid4(), name="Suporte", version=version, flows=flows)


class TestLoadFlowGraph:
    @patch("chatdesk.services.flow_service.get_published_bot")
    def test_published_bot_graph(self, mock_get_bot, db_session, support_flow):
        bot = _bot(support_flow, version=5)
        mock_get_bot.return_value = bot

        loaded = load_flow_graph(db_session, COMPANY_ID, "whatsapp")

        assert loaded is not None
        loaded_bot, graph = loaded
        assert loaded_bot is bot
        assert graph.version == 5
        assert graph.start_node_id == "start-1"
        mock_get_bot.assert_called_once_with(db_session, COMPANY_ID, "whatsapp")

    @patch("chatdesk.services.flow_service.get_published_bot", return_value=None)
    def test_no_published_bot(self, mock_get_bot, db_session):
        assert load_flow_graph(db_session, COMPANY_ID, "whatsapp") is None

    @patch("chatdesk.services.flow_service.get_published_bot")
    def test_invalid_graph_is_not_loaded(self, mock_get_bot, db_session):
        mock_get_bot.return_value = _bot({"nodes": [{"id": "m", "type": "message", "data": {}}], "edges": []})

        assert load_flow_graph(db_session, COMPANY_ID, "whatsapp") is None

    @patch("chatdesk.services.flow_service.get_published_bot")
    def test_empty_flows_is_not_loaded(self, mock_get_bot, db_session):
        mock_get_bot.return_value = _bot(None)

        assert load_flow_graph(db_session, COMPANY_ID, "whatsapp") is None

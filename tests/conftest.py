from unittest.mock import Mock

import pytest

from chatdesk.schemas.flow import FlowGraph


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


def _node(node_id, node_type, **data):
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": {"label": node_id, **data}}


def _edge(source, target, label=None):
    edge = {"id": f"{source}->{target}", "source": source, "target": target}
    if label:
        edge["label"] = label
    return edge


@pytest.fixture
def support_flow():
    """Authored support flow: main menu, ticket opening with a dynamic plate list, handoff."""
    return {
        "nodes": [
            _node("start-1", "start", message="Olá! Bem-vindo ao suporte."),
            _node("menu-1", "question", question="Como podemos ajudar?", options=["Abrir Chamado", "Falar com Atendente"]),
            _node(
                "chamado-inicio",
                "action",
                actionType="api",
                apiAction="fetch_options",
                resource="placas",
                optionsKey="placas",
                targetNodeId="chamado-placa",
                message="📋 Buscando informações...",
            ),
            _node("chamado-placa", "question", question="📋 Selecione uma placa:", field="placa"),
            _node("chamado-descricao", "action", actionType="input", action="Descreva o problema:", field="descricao"),
            _node("chamado-criar", "action", actionType="api", apiAction="create_ticket", message="✅ Criando chamado..."),
            _node("chamado-sucesso", "end", message="Chamado {ticket_reference} aberto para a placa {placa}."),
            _node("atendente", "action", actionType="transfer", message="Transferindo para um atendente..."),
        ],
        "edges": [
            _edge("start-1", "menu-1"),
            _edge("menu-1", "chamado-inicio", "Abrir Chamado"),
            _edge("menu-1", "atendente", "Falar com Atendente"),
            _edge("chamado-inicio", "chamado-placa"),
            _edge("chamado-placa", "chamado-descricao"),
            _edge("chamado-descricao", "chamado-criar"),
            _edge("chamado-criar", "chamado-sucesso"),
        ],
    }


@pytest.fixture
def support_graph(support_flow):
    return FlowGraph.from_authored(support_flow, version=3)

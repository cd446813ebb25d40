"""Bot flow graph and persisted flow state schemas.

Graphs are authored externally by the flow builder as ``{"nodes": [...],
"edges": [...]}`` where each node carries its payload under ``data``. They are
parsed into a tagged union of node types plus an adjacency map.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

FLOW_STATE_SCHEMA_VERSION = 1

NODE_TYPES = {"start", "message", "question", "action", "end"}


class FlowNodeBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    label: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flatten_authored_data(cls, value: Any) -> Any:
        if isinstance(value, dict) and isinstance(value.get("data"), dict):
            flattened = dict(value["data"])
            flattened.update({k: v for k, v in value.items() if k != "data"})
            return flattened
        return value


class StartNode(FlowNodeBase):
    type: Literal["start"] = "start"
    message: str = "Olá! Bem-vindo!"


class MessageNode(FlowNodeBase):
    type: Literal["message"] = "message"
    message: str = ""


class QuestionNode(FlowNodeBase):
    type: Literal["question"] = "question"
    question: str = ""
    options: list[str] = Field(default_factory=list)
    field: Optional[str] = None
    # 1-based option number -> target node id, for branches edges can't express
    option_targets: dict[int, str] = Field(default_factory=dict, alias="optionTargets")

    @property
    def collect_key(self) -> str:
        return self.field or self.id


class ActionNode(FlowNodeBase):
    type: Literal["action"] = "action"
    # transfer, input or api; anything else (or nothing) just advances
    action_type: Optional[str] = Field(default=None, alias="actionType")
    # Prompt for "input", holding message for "transfer"; free-form label otherwise
    prompt: str = Field(default="", alias="action")
    message: str = ""
    field: Optional[str] = None
    api_action: Optional[str] = Field(default=None, alias="apiAction")
    resource: Optional[str] = None
    options_key: Optional[str] = Field(default=None, alias="optionsKey")
    target_node_id: Optional[str] = Field(default=None, alias="targetNodeId")

    @property
    def collect_key(self) -> str:
        return self.field or self.id


class EndNode(FlowNodeBase):
    type: Literal["end"] = "end"
    message: str = "Conversa encerrada."


FlowNode = Annotated[
    Union[StartNode, MessageNode, QuestionNode, ActionNode, EndNode],
    Field(discriminator="type"),
]


class FlowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    source: str
    target: str
    label: Optional[str] = None


class FlowGraph(BaseModel):
    nodes: list[FlowNode]
    edges: list[FlowEdge] = Field(default_factory=list)
    version: int = 1

    _index: dict[str, Any] = PrivateAttr(default_factory=dict)
    _adjacency: dict[str, list[tuple[str, Optional[str]]]] = PrivateAttr(default_factory=dict)
    _start_id: str = PrivateAttr(default="")

    @model_validator(mode="before")
    @classmethod
    def _coerce_unknown_node_types(cls, value: Any) -> Any:
        # Builder-only types (e.g. "condition") have no runtime behavior: pass through.
        if not isinstance(value, dict):
            return value
        nodes = []
        for node in value.get("nodes") or []:
            if isinstance(node, dict) and node.get("type") not in NODE_TYPES:
                node = {**node, "type": "message", "data": {"label": (node.get("data") or {}).get("label", "")}}
            nodes.append(node)
        return {**value, "nodes": nodes}

    def model_post_init(self, __context: Any) -> None:
        for node in self.nodes:
            if node.id in self._index:
                raise ValueError(f"Duplicate node id: {node.id}")
            self._index[node.id] = node
            self._adjacency[node.id] = []

        starts = [node.id for node in self.nodes if node.type == "start"]
        if not starts:
            raise ValueError("Flow graph has no start node")
        self._start_id = starts[0]

        for edge in self.edges:
            if edge.source in self._index and edge.target in self._index:
                self._adjacency[edge.source].append((edge.target, edge.label))

    @classmethod
    def from_authored(cls, flows: dict, version: int = 1) -> "FlowGraph":
        return cls.model_validate({**(flows or {}), "version": version})

    @property
    def start_node_id(self) -> str:
        return self._start_id

    @property
    def start_node(self) -> StartNode:
        return self._index[self._start_id]

    def get(self, node_id: Optional[str]):
        if not node_id:
            return None
        return self._index.get(node_id)

    def successors(self, node_id: str) -> list[tuple[str, Optional[str]]]:
        return list(self._adjacency.get(node_id, []))

    def __len__(self) -> int:
        return len(self.nodes)


class ConversationFlowState(BaseModel):
    """Flow position embedded in ``Conversation.metadata["flow_state"]``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: int = FLOW_STATE_SCHEMA_VERSION
    graph_version: Optional[int] = None
    current_node_id: str = Field(alias="currentNodeId")
    collected_data: dict[str, Any] = Field(default_factory=dict, alias="collectedData")
    waiting_for_input: Optional[str] = Field(default=None, alias="waitingForInput")
    dynamic_options: dict[str, list[str]] = Field(default_factory=dict)

    @classmethod
    def initial(cls, graph: FlowGraph) -> "ConversationFlowState":
        return cls(current_node_id=graph.start_node_id, graph_version=graph.version)

    def to_metadata(self) -> dict:
        return self.model_dump(mode="json")

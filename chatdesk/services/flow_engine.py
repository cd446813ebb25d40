"""Interpreter for authored bot flow graphs.

One call to ``FlowEngine.process`` is one conversational turn: it takes the
persisted ``ConversationFlowState`` and the user's text, and returns the text
to send, the next state and any side effect the caller must perform (handoff
to a human, or an external call whose result is fed back through
``inject_options`` / ``complete_action`` / ``fail_action``).

The engine is pure: it never touches the database or the network, and the
input state is never mutated.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from chatdesk.logging_config import get_logger
from chatdesk.schemas.flow import (
    FLOW_STATE_SCHEMA_VERSION,
    ActionNode,
    ConversationFlowState,
    EndNode,
    FlowGraph,
    MessageNode,
    QuestionNode,
    StartNode,
)

logger = get_logger("flow_engine")

DEFAULT_RESET_TOKENS = ("0", "menu", "voltar")

OPTION_PROMPT = "Digite o número da opção desejada:"
RESTART_NOTICE = "Desculpe, ocorreu um erro. Vou te levar ao menu principal."
DEFAULT_INPUT_PROMPT = "Por favor, forneça a informação solicitada:"
DEFAULT_TRANSFER_MESSAGE = "👤 Conectando você a um atendente...\n\n⏳ Aguarde um momento."
MESSAGE_SEPARATOR = "\n\n"
# Action sub-types with runtime behavior; other actions only advance
RUNTIME_ACTION_TYPES = ("transfer", "input", "api")

_PLACEHOLDER = re.compile(r"\{([A-Za-z0-9_\-\.]+)\}")


class GraphIntegrityError(Exception):
    """The graph can't be walked from the current position (dangling edge, cycle, ...)."""


@dataclass
class ExternalCallRequest:
    action: str  # fetch_options, create_ticket
    node_id: str
    target_node_id: Optional[str] = None
    resource: Optional[str] = None
    options_key: Optional[str] = None
    data: dict = field(default_factory=dict)


@dataclass
class FlowResult:
    response_text: str
    new_state: ConversationFlowState
    should_handoff: bool = False
    external_call: Optional[ExternalCallRequest] = None


def interpolate(template: str, data: dict) -> str:
    """Replace ``{field}`` with collected values; unknown fields render empty."""

    def _replace(match: re.Match) -> str:
        value = data.get(match.group(1))
        if value is None or isinstance(value, (list, dict)):
            return ""
        return str(value)

    return _PLACEHOLDER.sub(_replace, template or "")


def render_options(question: str, options: Iterable[str]) -> str:
    options = list(options)
    if not options:
        return question
    numbered = "\n".join(f"{idx}. {option}" for idx, option in enumerate(options, start=1))
    return f"{question}{MESSAGE_SEPARATOR}{numbered}{MESSAGE_SEPARATOR}{OPTION_PROMPT}"


def parse_option_index(text: str, option_count: int) -> Optional[int]:
    """1-based option number typed by the user, or None when it isn't a valid choice."""
    candidate = (text or "").strip().rstrip(".)")
    # ASCII digits only: str.isdigit also accepts superscripts that int() rejects
    if not (candidate.isascii() and candidate.isdecimal()):
        return None
    index = int(candidate)
    if 1 <= index <= option_count:
        return index
    return None


class FlowEngine:
    def __init__(self, graph: FlowGraph, reset_tokens: Iterable[str] = DEFAULT_RESET_TOKENS):
        self.graph = graph
        self.reset_tokens = {token.strip().lower() for token in reset_tokens if token and token.strip()}

    def initial_state(self) -> ConversationFlowState:
        return ConversationFlowState.initial(self.graph)

    def is_reset_token(self, text: str) -> bool:
        return (text or "").strip().lower() in self.reset_tokens

    # Turn processing

    def process(self, state: Optional[ConversationFlowState], text: str) -> FlowResult:
        user_input = (text or "").strip()

        if self.is_reset_token(user_input):
            logger.debug("Reset token received, restarting flow")
            return self._restart()

        if state is None:
            state = self.initial_state()
        else:
            state = state.model_copy(deep=True)

        if not self._reconcile(state):
            return self._restart(notice=RESTART_NOTICE)

        try:
            return self._step(state, user_input)
        except GraphIntegrityError as e:
            logger.warning(
                f"Flow graph integrity error, restarting: {e}",
                extra={"context": {"node_id": state.current_node_id, "graph_version": self.graph.version}},
            )
            return self._restart(notice=RESTART_NOTICE)

    def _reconcile(self, state: ConversationFlowState) -> bool:
        """Align a stored state with the current graph. False means it must be reset."""
        if state.schema_version != FLOW_STATE_SCHEMA_VERSION:
            logger.info(f"Unknown flow state schema version {state.schema_version}")
            return False

        node = self.graph.get(state.current_node_id)
        if node is None:
            logger.info(f"Stored node {state.current_node_id} no longer exists in graph v{self.graph.version}")
            return False

        if state.graph_version != self.graph.version:
            logger.info(
                f"Migrating flow state from graph v{state.graph_version} to v{self.graph.version}",
                extra={"context": {"node_id": state.current_node_id}},
            )
            state.graph_version = self.graph.version

        if state.waiting_for_input:
            if not (isinstance(node, ActionNode) and node.action_type == "input"):
                return False
            if node.collect_key != state.waiting_for_input:
                state.waiting_for_input = node.collect_key
        return True

    def _step(self, state: ConversationFlowState, user_input: str) -> FlowResult:
        node = self.graph.get(state.current_node_id)

        if state.waiting_for_input:
            state.collected_data[state.waiting_for_input] = user_input
            state.waiting_for_input = None
            return self._run(state, self._single_successor(node.id))

        if isinstance(node, QuestionNode):
            return self._answer_question(state, node, user_input)

        # Parked at start, or at an action whose external call failed: run it again
        return self._run(state, node.id)

    def _answer_question(self, state: ConversationFlowState, node: QuestionNode, user_input: str) -> FlowResult:
        dynamic = state.dynamic_options.get(node.id)
        options = dynamic if dynamic is not None else node.options

        if not options:
            state.collected_data[node.collect_key] = user_input
            return self._run(state, self._single_successor(node.id))

        index = parse_option_index(user_input, len(options))
        if index is None:
            return FlowResult(response_text=self._render_question(state, node), new_state=state)

        state.collected_data[node.collect_key] = options[index - 1]
        if dynamic is not None:
            state.dynamic_options.pop(node.id, None)
            target = self._single_successor(node.id)
        else:
            target = self._option_target(node, index)
        return self._run(state, target)

    def _option_target(self, node: QuestionNode, index: int) -> str:
        """Override table, then edge label, then edge position, then the sole edge."""
        override = node.option_targets.get(index)
        if override and self.graph.get(override) is not None:
            return override

        successors = self.graph.successors(node.id)
        if not successors:
            raise GraphIntegrityError(f"Question {node.id} has no outgoing edges")

        chosen = node.options[index - 1].strip().lower()
        for target, label in successors:
            if label and label.strip().lower() == chosen:
                return target
        if index <= len(successors):
            return successors[index - 1][0]
        return successors[0][0]

    def _single_successor(self, node_id: str) -> str:
        successors = self.graph.successors(node_id)
        if not successors:
            raise GraphIntegrityError(f"Node {node_id} has no outgoing edge")
        return successors[0][0]

    def _next_or_none(self, node_id: str) -> Optional[str]:
        successors = self.graph.successors(node_id)
        return successors[0][0] if successors else None

    @staticmethod
    def _is_pass_through(node) -> bool:
        return isinstance(node, ActionNode) and node.action_type not in RUNTIME_ACTION_TYPES

    # Graph walk

    def _run(
        self,
        state: ConversationFlowState,
        node_id: Optional[str],
        outputs: Optional[list[str]] = None,
    ) -> FlowResult:
        """Auto-advance from node_id until a node that suspends the turn."""
        outputs = outputs if outputs is not None else []
        steps = 0

        while True:
            steps += 1
            if steps > len(self.graph) + 1:
                raise GraphIntegrityError(f"Cycle detected while advancing from {state.current_node_id}")

            node = self.graph.get(node_id)
            if node is None:
                raise GraphIntegrityError(f"Edge points to missing node {node_id}")
            state.current_node_id = node.id

            if isinstance(node, (StartNode, MessageNode)) or self._is_pass_through(node):
                self._emit(outputs, interpolate(node.message, state.collected_data))
                node_id = self._next_or_none(node.id)
                if node_id is None:
                    if not isinstance(node, StartNode):
                        self._reset_in_place(state)
                    return self._result(outputs, state)
                continue

            if isinstance(node, QuestionNode):
                self._emit(outputs, self._render_question(state, node))
                return self._result(outputs, state)

            if isinstance(node, EndNode):
                self._emit(outputs, interpolate(node.message, state.collected_data))
                self._reset_in_place(state)
                return self._result(outputs, state)

            return self._run_action(state, node, outputs)

    def _run_action(self, state: ConversationFlowState, node: ActionNode, outputs: list[str]) -> FlowResult:
        if node.action_type == "transfer":
            self._emit(outputs, interpolate(node.message or node.prompt, state.collected_data) or DEFAULT_TRANSFER_MESSAGE)
            self._reset_in_place(state)
            return self._result(outputs, state, should_handoff=True)

        if node.action_type == "input":
            self._emit(outputs, interpolate(node.prompt, state.collected_data) or DEFAULT_INPUT_PROMPT)
            state.waiting_for_input = node.collect_key
            return self._result(outputs, state)

        if not node.api_action:
            raise GraphIntegrityError(f"API action {node.id} has no apiAction configured")

        self._emit(outputs, interpolate(node.message, state.collected_data))
        request = ExternalCallRequest(
            action=node.api_action,
            node_id=node.id,
            target_node_id=node.target_node_id or self._next_or_none(node.id),
            resource=node.resource,
            options_key=node.options_key,
            data=dict(state.collected_data),
        )
        return self._result(outputs, state, external_call=request)

    def _render_question(self, state: ConversationFlowState, node: QuestionNode) -> str:
        dynamic = state.dynamic_options.get(node.id)
        options = dynamic if dynamic is not None else node.options
        return render_options(interpolate(node.question, state.collected_data), options)

    def _reset_in_place(self, state: ConversationFlowState) -> None:
        state.current_node_id = self.graph.start_node_id
        state.graph_version = self.graph.version
        state.collected_data = {}
        state.waiting_for_input = None
        state.dynamic_options = {}

    def _restart(self, notice: Optional[str] = None) -> FlowResult:
        state = self.initial_state()
        outputs = [notice] if notice else []
        try:
            return self._run(state, state.current_node_id, outputs)
        except GraphIntegrityError as e:
            # The start node itself can't be walked; park there with only the notice
            logger.error(f"Flow graph cannot be restarted: {e}")
            return self._result([notice or RESTART_NOTICE], self.initial_state())

    @staticmethod
    def _emit(outputs: list[str], text: Optional[str]) -> None:
        if text and text.strip():
            outputs.append(text.strip())

    @staticmethod
    def _result(outputs: list[str], state: ConversationFlowState, **kwargs: Any) -> FlowResult:
        return FlowResult(response_text=MESSAGE_SEPARATOR.join(outputs), new_state=state, **kwargs)

    # Resuming after an external call

    def inject_options(
        self,
        state: ConversationFlowState,
        request: ExternalCallRequest,
        options: list[str],
    ) -> FlowResult:
        """Re-enter the flow at the request's target question with the fetched options."""
        state = state.model_copy(deep=True)
        target = self.graph.get(request.target_node_id)
        if not isinstance(target, QuestionNode):
            logger.warning(f"Options target {request.target_node_id} is not a question node")
            return self._restart(notice=RESTART_NOTICE)

        state.dynamic_options[target.id] = list(options)
        if request.options_key:
            state.collected_data[request.options_key] = list(options)
        state.current_node_id = target.id
        return self._result([self._render_question(state, target)], state)

    def complete_action(
        self,
        state: ConversationFlowState,
        request: ExternalCallRequest,
        data: Optional[dict] = None,
    ) -> FlowResult:
        """Merge the call's result into collected data and continue past the action."""
        state = state.model_copy(deep=True)
        state.collected_data.update(data or {})
        try:
            if not request.target_node_id:
                raise GraphIntegrityError(f"Action {request.node_id} has no successor")
            return self._run(state, request.target_node_id)
        except GraphIntegrityError as e:
            logger.warning(f"Cannot continue after action {request.node_id}: {e}")
            return self._restart(notice=RESTART_NOTICE)

    def fail_action(self, state: ConversationFlowState, message: str) -> FlowResult:
        """Stay parked at the action; the next message retries it, a reset token escapes."""
        return FlowResult(response_text=message, new_state=state.model_copy(deep=True))

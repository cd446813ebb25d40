from chatdesk.schemas.flow import ConversationFlowState, FlowGraph
from chatdesk.schemas.webhook import EventOutcome, InboundMessage, WebhookEnvelope, WebhookResponse

__all__ = [
    "ConversationFlowState",
    "FlowGraph",
    "InboundMessage",
    "WebhookEnvelope",
    "WebhookResponse",
    "EventOutcome",
]

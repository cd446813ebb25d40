from chatdesk.services.conversation_service import (
    get_flow_state,
    get_or_create_conversation,
    save_flow_state,
    transfer_to_human,
)
from chatdesk.services.flow_engine import (
    ExternalCallRequest,
    FlowEngine,
    FlowResult,
    GraphIntegrityError,
)
from chatdesk.services.identity_service import ResolvedContact, resolve_contact
from chatdesk.services.message_service import (
    build_inbound_message_id,
    has_recent_bot_reply,
    is_duplicate_message,
    save_bot_message,
    save_inbound_message,
)
from chatdesk.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    can_transition,
    hand_off,
    transition,
)

from enum import Enum


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"


# resolved is terminal: a new message after resolution opens a new conversation
VALID_TRANSITIONS = {
    ConversationStatus.OPEN: [ConversationStatus.PENDING, ConversationStatus.RESOLVED],
    ConversationStatus.PENDING: [ConversationStatus.OPEN, ConversationStatus.RESOLVED],
    ConversationStatus.RESOLVED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ConversationStatus, to_status: ConversationStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: ConversationStatus, to_status: ConversationStatus) -> bool:
    """Check if transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def transition(from_status: ConversationStatus, to_status: ConversationStatus) -> ConversationStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def hand_off(current: ConversationStatus) -> ConversationStatus:
    """Bot gives up the conversation; it waits for a human operator."""
    return transition(current, ConversationStatus.PENDING)


from chatdesk.models.bot_flow import BotFlow
from chatdesk.models.company import Company
from chatdesk.models.contact import Contact
from chatdesk.models.conversation import Conversation
from chatdesk.models.message import Message
from chatdesk.models.operator import Operator
from chatdesk.models.ticket import Ticket
from chatdesk.models.whatsapp_instance import WhatsAppInstance

__all__ = [
    "Company",
    "WhatsAppInstance",
    "Contact",
    "Conversation",
    "Message",
    "Operator",
    "BotFlow",
    "Ticket",
]

from typing import Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import BotFlow
from chatdesk.schemas.flow import FlowGraph

logger = get_logger("flow_service")


def get_published_bot(db: Session, company_id: UUID, channel: str) -> Optional[BotFlow]:
    """Latest published bot of the company serving the channel."""
    return (
        db.query(BotFlow)
        .filter(
            BotFlow.company_id == company_id,
            BotFlow.status == "published",
            BotFlow.channels.contains([channel]),
        )
        .order_by(BotFlow.updated_at.desc().nullslast(), BotFlow.version.desc())
        .first()
    )


def load_flow_graph(db: Session, company_id: UUID, channel: str) -> Optional[tuple[BotFlow, FlowGraph]]:
    bot = get_published_bot(db, company_id, channel)
    if bot is None:
        logger.info(f"No published bot for company {company_id} on channel {channel}")
        return None

    try:
        graph = FlowGraph.from_authored(bot.flows or {}, version=bot.version or 1)
    except (ValidationError, ValueError) as e:
        logger.error(
            f"Bot flow {bot.id} is not a valid graph: {e}",
            extra={"context": {"bot_id": str(bot.id), "version": bot.version}},
        )
        return None
    return bot, graph

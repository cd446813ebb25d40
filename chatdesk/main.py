from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.database import get_db
from chatdesk.logging_config import setup_logging
from chatdesk.models import Contact, Conversation, Message, Ticket
from chatdesk.routers import webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="Chatdesk API",
    description="WhatsApp message ingestion and bot flow engine",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "contacts": db.query(Contact).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "tickets": db.query(Ticket).count(),
    }

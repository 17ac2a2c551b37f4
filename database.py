from datetime import datetime as dt, timezone

from sqlalchemy import create_engine, Column, String, Text, Integer, DateTime, ForeignKey, Index
from sqlalchemy.orm import sessionmaker, declarative_base

from config import DATABASE_URL


# ================================
# DATABASE MODELS (Transcript Store)
# ================================
Base = declarative_base()

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
ESCALATED = "escalated"
NO_ACTION = "no_action"

TERMINAL_STATUSES = (COMPLETED, ESCALATED, NO_ACTION)
CONVERSATION_STATUSES = (IN_PROGRESS,) + TERMINAL_STATUSES

SPEAKERS = ("ai", "customer")


def utcnow() -> dt:
    """Current UTC time. Columns hold UTC without an offset; the API adds it back."""
    return dt.now(timezone.utc).replace(tzinfo=None)


class Conversation(Base):
    """One phone call's lifecycle record"""
    __tablename__ = "conversations"

    id = Column(String(100), primary_key=True)
    call_sid = Column(String(100), nullable=True, unique=True)  # Twilio CallSid, dedup key

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Caller details
    customer_phone = Column(String(50), nullable=False)
    customer_name = Column(String(255), nullable=True)  # filled in by enrichment

    # Rolling summary; the messages table is the full transcript
    transcript = Column(Text, nullable=True)

    # Outcome
    status = Column(String(50), default=IN_PROGRESS, nullable=False)
    duration_seconds = Column(Integer, default=0, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    ended_reason = Column(String(100), nullable=True)  # Twilio CallStatus

    __table_args__ = (
        Index("ix_conversations_created_at", "created_at"),
    )


class Message(Base):
    """One utterance in a conversation"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(100), ForeignKey("conversations.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    speaker = Column(String(20), nullable=False)  # ai, customer
    message_text = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )


# Database connection
engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create tables if they don't exist"""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Dependency for FastAPI"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

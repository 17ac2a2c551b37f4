import uuid
from contextlib import contextmanager
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import logger, CALL_IN_PROGRESS_TRANSCRIPT
from database import Conversation, Message, IN_PROGRESS, SPEAKERS, utcnow


class StoreUnavailable(Exception):
    """The database rejected or could not run a write/read"""


class ConversationNotFound(LookupError):
    """No conversation with the given id"""


class TranscriptValidationError(ValueError):
    """Payload failed validation before reaching the database"""


# ----------------------------
# Helper Functions
# ----------------------------
def generate_conversation_id() -> str:
    """Generate unique conversation ID"""
    return f"conv_{uuid.uuid4().hex[:16]}"


@contextmanager
def store_errors(db: Session):
    """Roll back and re-raise database failures as StoreUnavailable"""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreUnavailable(str(e)) from e


def _require_conversation(db: Session, conversation_id: str) -> Conversation:
    conversation = db.query(Conversation).filter(
        Conversation.id == conversation_id
    ).first()
    if not conversation:
        raise ConversationNotFound(conversation_id)
    return conversation


# ----------------------------
# Conversations
# ----------------------------
def create_conversation(db: Session, customer_phone: str, call_sid: Optional[str] = None) -> Tuple[Conversation, bool]:
    """
    Insert a new in-progress conversation, or return the one already recorded
    for ``call_sid``. Returns ``(conversation, created)``.
    """
    if not customer_phone or not customer_phone.strip():
        raise TranscriptValidationError("customer_phone is required")

    with store_errors(db):
        if call_sid:
            existing = db.query(Conversation).filter(Conversation.call_sid == call_sid).first()
            if existing:
                logger.info(f"🔁 Webhook retry for {call_sid}, reusing conversation {existing.id}")
                return existing, False

        conversation = Conversation(
            id=generate_conversation_id(),
            call_sid=call_sid or None,
            customer_phone=customer_phone,
            transcript=CALL_IN_PROGRESS_TRANSCRIPT,
            duration_seconds=0,
            status=IN_PROGRESS,
        )
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent webhook for the same CallSid won the insert
            db.rollback()
            existing = None
            if call_sid:
                existing = db.query(Conversation).filter(Conversation.call_sid == call_sid).first()
            if not existing:
                raise
            return existing, False

        db.refresh(conversation)
        return conversation, True


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    with store_errors(db):
        return _require_conversation(db, conversation_id)


def list_conversations(
    db: Session,
    limit: int,
    offset: int = 0,
    status: Optional[str] = None,
) -> Tuple[List[Conversation], int]:
    """Newest first, one bounded page plus the total count"""
    with store_errors(db):
        query = db.query(Conversation)
        if status:
            query = query.filter(Conversation.status == status)

        total = query.count()
        conversations = query.order_by(
            Conversation.created_at.desc(), Conversation.id.desc()
        ).offset(offset).limit(limit).all()
        return conversations, total


def update_conversation_details(
    db: Session,
    conversation_id: str,
    transcript: Optional[str] = None,
    customer_name: Optional[str] = None,
) -> Conversation:
    """
    Column-scoped updates of the advisory fields. The summary is only written
    while the call is in progress; the name can be enriched at any time.
    Neither write touches ``status`` or ``duration_seconds``.
    """
    with store_errors(db):
        _require_conversation(db, conversation_id)

        if transcript is not None:
            updated = db.query(Conversation).filter(
                Conversation.id == conversation_id,
                Conversation.status == IN_PROGRESS,
            ).update({Conversation.transcript: transcript}, synchronize_session=False)
            if not updated:
                logger.info(f"⏭️ Summary update ignored, {conversation_id} is already finalized")

        if customer_name is not None:
            db.query(Conversation).filter(
                Conversation.id == conversation_id
            ).update({Conversation.customer_name: customer_name}, synchronize_session=False)

        db.commit()
        return _require_conversation(db, conversation_id)


# ----------------------------
# Messages
# ----------------------------
def append_message(db: Session, conversation_id: str, speaker: str, message_text: str) -> Message:
    """
    Append one utterance. ``created_at`` is the arrival time, clamped so it
    never sorts before the previous message of the same conversation.
    """
    if speaker not in SPEAKERS:
        raise TranscriptValidationError(f"speaker must be one of {', '.join(SPEAKERS)}")
    if not message_text or not message_text.strip():
        raise TranscriptValidationError("message_text must not be empty")

    with store_errors(db):
        _require_conversation(db, conversation_id)

        now = utcnow()
        last_created_at = db.query(func.max(Message.created_at)).filter(
            Message.conversation_id == conversation_id
        ).scalar()
        if last_created_at and last_created_at > now:
            now = last_created_at

        message = Message(
            conversation_id=conversation_id,
            created_at=now,
            speaker=speaker,
            message_text=message_text,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return message


def list_messages(db: Session, conversation_id: str) -> List[Message]:
    """Transcript of one conversation, oldest first"""
    with store_errors(db):
        _require_conversation(db, conversation_id)
        return db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.asc(), Message.id.asc()).all()

"""
Conversation state machine.

    in_progress -> completed | escalated | no_action

The three outcomes are terminal. ``duration_seconds`` stays 0 until the
terminal write, which sets it together with ``status`` in one UPDATE guarded
by ``status = 'in_progress'``.
"""
from datetime import datetime as dt
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from config import logger
from database import Conversation, IN_PROGRESS, TERMINAL_STATUSES, utcnow
from transcript_store import (
    store_errors, get_conversation, TranscriptValidationError
)

# Twilio CallStatus values that mean the call leg is over
CALL_ENDED_STATUSES = {"completed", "failed", "busy", "no-answer", "canceled"}


class InvalidTransition(Exception):
    """Requested status change is not allowed from the current state"""

    def __init__(self, conversation_id: str, current: Optional[str], requested: str):
        self.conversation_id = conversation_id
        self.current = current
        self.requested = requested
        if current is None:
            super().__init__(f"{conversation_id}: {requested} is not a terminal status")
        else:
            super().__init__(f"{conversation_id}: cannot move from {current} to {requested}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def compute_duration(started_at: dt, ended_at: dt) -> int:
    """Whole seconds between call start and end, never negative"""
    return max(0, int((ended_at - started_at).total_seconds()))


def finalize_conversation(
    db: Session,
    conversation_id: str,
    status: str,
    duration_seconds: Optional[int] = None,
    transcript: Optional[str] = None,
) -> Tuple[Conversation, bool]:
    """
    Move a conversation to a terminal status.

    Returns ``(conversation, changed)``. Repeating the transition a
    conversation already made is a no-op; any other change out of a
    terminal status raises InvalidTransition.
    """
    if not is_terminal(status):
        raise InvalidTransition(conversation_id, None, status)
    if duration_seconds is not None and duration_seconds < 0:
        raise TranscriptValidationError("duration_seconds must be non-negative")

    with store_errors(db):
        conversation = get_conversation(db, conversation_id)
        if is_terminal(conversation.status):
            return _already_final(conversation, status)

        ended_at = conversation.ended_at or utcnow()
        if duration_seconds is None:
            duration_seconds = compute_duration(conversation.created_at, ended_at)

        values = {
            Conversation.status: status,
            Conversation.duration_seconds: duration_seconds,
            Conversation.ended_at: ended_at,
        }
        if transcript is not None:
            values[Conversation.transcript] = transcript

        updated = db.query(Conversation).filter(
            Conversation.id == conversation_id,
            Conversation.status == IN_PROGRESS,
        ).update(values, synchronize_session=False)
        db.commit()

        conversation = get_conversation(db, conversation_id)
        if not updated:
            # Another terminal report landed between the read and the update
            return _already_final(conversation, status)

    logger.info(f"✅ Conversation {conversation_id} ended: {status} ({duration_seconds}s)")
    return conversation, True


def _already_final(conversation: Conversation, requested: str) -> Tuple[Conversation, bool]:
    if conversation.status == requested:
        logger.info(f"🔁 Repeated {requested} report for {conversation.id}")
        return conversation, False
    logger.warning(
        f"⚠️ Rejected {requested} for {conversation.id}: already {conversation.status}"
    )
    raise InvalidTransition(conversation.id, conversation.status, requested)


def record_call_ended(db: Session, call_sid: str, reason: str) -> Optional[Conversation]:
    """
    Stamp when the telephony leg ended. Leaves ``status`` and
    ``duration_seconds`` to the terminal report.
    """
    with store_errors(db):
        conversation = db.query(Conversation).filter(Conversation.call_sid == call_sid).first()
        if not conversation:
            logger.warning(f"⚠️ Conversation not found for call end: {call_sid}")
            return None

        if conversation.ended_at is None:
            db.query(Conversation).filter(
                Conversation.id == conversation.id,
                Conversation.ended_at.is_(None),
            ).update(
                {Conversation.ended_at: utcnow(), Conversation.ended_reason: reason},
                synchronize_session=False,
            )
            db.commit()
            conversation = get_conversation(db, conversation.id)
            logger.info(f"📞 Call leg ended: {call_sid} - reason: {reason}")

        return conversation

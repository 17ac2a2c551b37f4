from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ================================
# PYDANTIC MODELS (API Requests)
# ================================
Speaker = Literal["ai", "customer"]
TerminalStatus = Literal["completed", "escalated", "no_action"]
ConversationStatus = Literal["in_progress", "completed", "escalated", "no_action"]


class MessageEvent(BaseModel):
    """One utterance reported by the voice agent session"""
    conversation_id: str = Field(..., min_length=1, description="Conversation the message belongs to")
    speaker: Speaker
    message_text: str = Field(..., min_length=1)

    # Optional updates to the advisory conversation fields
    transcript: Optional[str] = Field(None, description="Rolling summary for list views")
    customer_name: Optional[str] = None

    @field_validator("message_text")
    @classmethod
    def message_text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message_text must not be blank")
        return v


class StatusReport(BaseModel):
    """Terminal outcome of a call"""
    conversation_id: str = Field(..., min_length=1)
    status: TerminalStatus
    duration_seconds: Optional[int] = Field(
        None, ge=0, description="Omit to derive from call start and end"
    )
    transcript: Optional[str] = Field(None, description="Final summary")


class ConversationUpdate(BaseModel):
    """External enrichment of a conversation"""
    customer_name: Optional[str] = None
    transcript: Optional[str] = None


# ================================
# PYDANTIC MODELS (API Responses)
# ================================
def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: str
    created_at: datetime
    speaker: Speaker
    message_text: str

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    call_sid: Optional[str] = None
    created_at: datetime
    customer_phone: str
    customer_name: Optional[str] = None
    transcript: Optional[str] = None
    duration_seconds: int
    status: ConversationStatus
    ended_at: Optional[datetime] = None
    ended_reason: Optional[str] = None

    @field_validator("created_at", "ended_at")
    @classmethod
    def timestamps_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class ConversationListResponse(BaseModel):
    conversations: List[ConversationResponse]
    total: int
    page_size: int
    offset: int


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: List[MessageResponse]

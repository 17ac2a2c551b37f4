# main.py
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException, Depends, Security, Query
from fastapi.responses import PlainTextResponse
from fastapi.security import APIKeyHeader
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import (
    logger, API_KEY_HEADER_NAME, API_KEYS, DASHBOARD_PAGE_SIZE, MAX_PAGE_SIZE,
)
from database import get_db, init_db
from models import (
    MessageEvent, StatusReport, ConversationUpdate, ConversationStatus,
    MessageResponse, ConversationResponse, ConversationListResponse, MessageListResponse,
)
from transcript_store import (
    StoreUnavailable, ConversationNotFound, TranscriptValidationError,
    append_message, get_conversation, list_conversations, list_messages,
    update_conversation_details,
)
from lifecycle import InvalidTransition, CALL_ENDED_STATUSES, finalize_conversation, record_call_ended
from call_handlers import handle_inbound_call
from webhooks import dispatch_event, conversation_event_data


# API Key Authentication
API_KEY_HEADER = APIKeyHeader(name=API_KEY_HEADER_NAME, auto_error=False)


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)):
    """Verify API key - returns None if no API_KEYS configured (dev mode)"""
    # If no API keys configured, allow all requests (dev mode)
    if not API_KEYS or API_KEYS == ['']:
        return None

    if not api_key or api_key not in API_KEYS:
        raise HTTPException(status_code=401, detail="Invalid API key")

    return api_key


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("🚀 Transcript store ready")
    yield


# FastAPI app
# ----------------------------
app = FastAPI(
    title="Call Bridge - Voice Agent Call Intake",
    description="Twilio call intake, voice agent bridging and conversation transcripts",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _not_found(conversation_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


def _unavailable(e: StoreUnavailable) -> HTTPException:
    logger.error(f"❌ Transcript store unavailable: {e}")
    return HTTPException(status_code=503, detail="Transcript store unavailable")


# ================================
# TELEPHONY WEBHOOKS
# ================================

@app.post("/voice/inbound", tags=["Telephony"])
@app.get("/voice/inbound", tags=["Telephony"])
@app.post("/api/voice", tags=["Telephony"])
async def voice_inbound(request: Request, db: Session = Depends(get_db)):
    """Handle incoming calls - log the conversation and connect the voice agent"""
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    return handle_inbound_call(params, db)


@app.post("/voice/status", tags=["Telephony"])
async def voice_status(request: Request, db: Session = Depends(get_db)):
    """Twilio status callback - stamps when the call leg ended"""
    form = await request.form()
    call_sid = form.get("CallSid")
    call_status = form.get("CallStatus")

    logger.info(f"📞 Call status update: {call_sid} -> {call_status}")

    if call_status in CALL_ENDED_STATUSES and call_sid:
        try:
            record_call_ended(db, call_sid, call_status)
        except StoreUnavailable as e:
            logger.error(f"❌ Failed to record call end for {call_sid}: {e}")

    return PlainTextResponse("OK")


# ================================
# TRANSCRIPT INGESTION API
# ================================

def _apply_advisory_update(db: Session, event: MessageEvent):
    """Summary and name are advisory; the stored message stands even if they fail"""
    try:
        update_conversation_details(
            db,
            event.conversation_id,
            transcript=event.transcript,
            customer_name=event.customer_name,
        )
    except StoreUnavailable as e:
        logger.warning(f"⚠️ Summary update failed for {event.conversation_id}, message kept: {e}")


@app.post(
    "/v1/conversations/messages",
    tags=["Transcript Ingestion"],
    response_model=MessageResponse,
    status_code=201,
)
async def ingest_message(
    event: MessageEvent,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Append one message to a conversation's transcript, in arrival order"""
    try:
        message = MessageResponse.model_validate(
            append_message(db, event.conversation_id, event.speaker, event.message_text)
        )
        if event.transcript is not None or event.customer_name is not None:
            _apply_advisory_update(db, event)
    except ConversationNotFound:
        logger.warning(f"⚠️ Message for unknown conversation rejected: {event.conversation_id}")
        raise _not_found(event.conversation_id)
    except TranscriptValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)

    return message


@app.post(
    "/v1/conversations/status",
    tags=["Transcript Ingestion"],
    response_model=ConversationResponse,
)
async def report_status(
    report: StatusReport,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Record the terminal outcome of a call"""
    try:
        conversation, changed = finalize_conversation(
            db,
            report.conversation_id,
            report.status,
            duration_seconds=report.duration_seconds,
            transcript=report.transcript,
        )
    except ConversationNotFound:
        raise _not_found(report.conversation_id)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TranscriptValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)

    if changed:
        dispatch_event("conversation.ended", conversation_event_data(conversation))

    return conversation


@app.patch(
    "/v1/conversations/{conversation_id}",
    tags=["Conversations"],
    response_model=ConversationResponse,
)
async def update_conversation(
    conversation_id: str,
    update: ConversationUpdate,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Enrich a conversation with a caller name or a new summary"""
    try:
        return update_conversation_details(
            db,
            conversation_id,
            transcript=update.transcript,
            customer_name=update.customer_name,
        )
    except ConversationNotFound:
        raise _not_found(conversation_id)
    except StoreUnavailable as e:
        raise _unavailable(e)


# ================================
# CONVERSATION RETRIEVAL API
# ================================

@app.get("/v1/conversations", tags=["Conversations"], response_model=ConversationListResponse)
async def get_conversations(
    status: Optional[ConversationStatus] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(DASHBOARD_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """List conversations, newest first"""
    try:
        conversations, total = list_conversations(db, limit=limit, offset=offset, status=status)
    except StoreUnavailable as e:
        raise _unavailable(e)

    return {
        "conversations": [ConversationResponse.model_validate(c) for c in conversations],
        "total": total,
        "page_size": limit,
        "offset": offset,
    }


@app.get("/v1/conversations/{conversation_id}", tags=["Conversations"], response_model=ConversationResponse)
async def get_conversation_detail(
    conversation_id: str,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        return get_conversation(db, conversation_id)
    except ConversationNotFound:
        raise _not_found(conversation_id)
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.get(
    "/v1/conversations/{conversation_id}/messages",
    tags=["Conversations"],
    response_model=MessageListResponse,
)
async def get_conversation_messages(
    conversation_id: str,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Full transcript, oldest message first"""
    try:
        messages = list_messages(db, conversation_id)
    except ConversationNotFound:
        raise _not_found(conversation_id)
    except StoreUnavailable as e:
        raise _unavailable(e)

    return {
        "conversation_id": conversation_id,
        "messages": [MessageResponse.model_validate(m) for m in messages],
    }


@app.get("/health")
async def health(db: Session = Depends(get_db)):
    """Health check"""
    health_data = {"status": "ok", "database": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"❌ Health check database error: {e}")
        health_data.update({"status": "degraded", "database": "unavailable"})
    return health_data


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser()
    parser.add_argument("mode", choices=["server", "init-db"], nargs="?", default="server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", default=9001, type=int)
    args = parser.parse_args()

    if args.mode == "init-db":
        init_db()
        logger.info("✅ Tables created")
    else:
        logger.info("🚀 Starting server on %s:%s", args.host, args.port)
        uvicorn.run("main:app",
                    host=args.host,
                    port=args.port,
                    reload=False,
                    timeout_keep_alive=60,
                    timeout_graceful_shutdown=30,
                    )

from typing import Mapping, Optional
from urllib.parse import urlencode

from fastapi.responses import Response
from sqlalchemy.orm import Session
from twilio.twiml.voice_response import VoiceResponse, Connect

from config import (
    logger, ELEVENLABS_AGENT_ID, ELEVENLABS_API_KEY, VOICE_AGENT_WS_URL,
    FALLBACK_VOICE, FALLBACK_MESSAGE,
)
from transcript_store import create_conversation
from webhooks import dispatch_event, conversation_event_data


class VoiceAgentNotConfigured(RuntimeError):
    pass


# ----------------------------
# TwiML builders
# ----------------------------
def voice_agent_stream_url() -> str:
    if not ELEVENLABS_AGENT_ID or not ELEVENLABS_API_KEY:
        raise VoiceAgentNotConfigured("ELEVENLABS_AGENT_ID and ELEVENLABS_API_KEY must be set")
    return f"{VOICE_AGENT_WS_URL}?{urlencode({'agent_id': ELEVENLABS_AGENT_ID})}"


def build_stream_response(conversation_id: Optional[str] = None) -> VoiceResponse:
    """Bridge the call audio to the voice agent over a bidirectional stream"""
    response = VoiceResponse()

    connect = Connect()
    stream = connect.stream(url=voice_agent_stream_url())
    stream.parameter(name="authorization", value=f"Bearer {ELEVENLABS_API_KEY}")
    if conversation_id:
        # Lets the agent session tag its transcript events
        stream.parameter(name="conversation_id", value=conversation_id)
    response.append(connect)

    return response


def build_fallback_response() -> VoiceResponse:
    response = VoiceResponse()
    response.say(FALLBACK_MESSAGE, voice=FALLBACK_VOICE)
    response.hangup()
    return response


def twiml_response(twiml: VoiceResponse) -> Response:
    return Response(content=str(twiml), media_type="text/xml")


# ----------------------------
# Inbound call webhook
# ----------------------------
def handle_inbound_call(params: Mapping[str, str], db: Session) -> Response:
    """
    Log the call and hand it to the voice agent.

    A failed database write never fails the call: the stream response is
    returned without a conversation id. Only a failure to build the stream
    response falls back to the spoken apology.
    """
    from_number = params.get("From", "")
    to_number = params.get("To", "")
    call_sid = params.get("CallSid", "")

    logger.info(f"📞 Inbound call: from={from_number}, to={to_number}, call_sid={call_sid}")

    conversation_id = None
    try:
        conversation, created = create_conversation(db, from_number, call_sid or None)
        conversation_id = conversation.id
        if created:
            logger.info(f"✅ Call logged to database: {conversation_id}")
            dispatch_event("conversation.created", conversation_event_data(conversation))
    except Exception as e:
        logger.error(f"❌ Database error for call {call_sid}: {e}")

    try:
        twiml = build_stream_response(conversation_id)
    except Exception:
        logger.exception(f"❌ Error handling call {call_sid}")
        twiml = build_fallback_response()

    return twiml_response(twiml)

import xml.etree.ElementTree as ET
from urllib.parse import urlparse, parse_qs

import call_handlers as call_handlers_module
from database import Conversation
from transcript_store import StoreUnavailable


def _stream(response):
    root = ET.fromstring(response.text)
    return root.find("./Connect/Stream")


def _stream_params(stream):
    return {p.get("name"): p.get("value") for p in stream.findall("Parameter")}


def test_inbound_call_creates_conversation_and_connects_agent(inbound_call, db):
    response = inbound_call(from_number="+441234567890", call_sid="CA123")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")

    stream = _stream(response)
    assert stream is not None
    url = urlparse(stream.get("url"))
    assert url.scheme == "wss"
    assert url.netloc == "api.elevenlabs.io"
    assert url.path == "/v1/convai/conversation"
    assert parse_qs(url.query) == {"agent_id": ["agent_test123"]}

    params = _stream_params(stream)
    assert params["authorization"] == "Bearer sk_test_key"

    conversation = db.query(Conversation).filter(Conversation.call_sid == "CA123").one()
    assert conversation.customer_phone == "+441234567890"
    assert conversation.status == "in_progress"
    assert conversation.duration_seconds == 0
    assert conversation.transcript == "Call in progress..."
    assert params["conversation_id"] == conversation.id


def test_inbound_call_retry_with_same_call_sid_reuses_conversation(inbound_call, db):
    first = inbound_call(call_sid="CA-retry")
    second = inbound_call(call_sid="CA-retry")

    assert _stream_params(_stream(first))["conversation_id"] == _stream_params(_stream(second))["conversation_id"]
    assert db.query(Conversation).filter(Conversation.call_sid == "CA-retry").count() == 1


def test_inbound_call_without_call_sid_always_creates(inbound_call, db):
    inbound_call(call_sid="")
    inbound_call(call_sid="")

    assert db.query(Conversation).count() == 2


def test_inbound_call_accepts_query_params_on_get(client, db):
    response = client.get("/voice/inbound", params={"From": "+15551230000", "CallSid": "CA-get"})

    assert response.status_code == 200
    assert _stream(response) is not None
    assert db.query(Conversation).filter(Conversation.call_sid == "CA-get").count() == 1


def test_legacy_voice_route_is_handled(client, db):
    response = client.post("/api/voice", data={"From": "+15551230000", "CallSid": "CA-legacy"})

    assert response.status_code == 200
    assert _stream(response) is not None


def test_store_failure_still_connects_the_call(inbound_call, monkeypatch, db):
    def broken_create(*args, **kwargs):
        raise StoreUnavailable("database is down")

    monkeypatch.setattr(call_handlers_module, "create_conversation", broken_create)

    response = inbound_call(call_sid="CA-down")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    stream = _stream(response)
    assert stream is not None
    params = _stream_params(stream)
    assert params["authorization"] == "Bearer sk_test_key"
    assert "conversation_id" not in params
    assert db.query(Conversation).count() == 0


def test_missing_caller_number_still_connects_the_call(client, db):
    response = client.post("/voice/inbound", data={"CallSid": "CA-nofrom"})

    assert response.status_code == 200
    assert _stream(response) is not None
    assert db.query(Conversation).count() == 0


def test_unconfigured_agent_plays_apology_and_hangs_up(inbound_call, monkeypatch):
    monkeypatch.setattr(call_handlers_module, "ELEVENLABS_AGENT_ID", None)

    response = inbound_call(call_sid="CA-noagent")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    root = ET.fromstring(response.text)
    assert root.find("Connect") is None
    say = root.find("Say")
    assert say is not None
    assert say.get("voice") == "Google.en-GB-Standard-A"
    assert "technical difficulties" in say.text
    assert root.find("Hangup") is not None


def test_fallback_response_shape():
    root = ET.fromstring(str(call_handlers_module.build_fallback_response()))

    assert [child.tag for child in root] == ["Say", "Hangup"]


def test_stream_response_without_conversation_id():
    stream = ET.fromstring(str(call_handlers_module.build_stream_response())).find("./Connect/Stream")

    assert _stream_params(stream) == {"authorization": "Bearer sk_test_key"}

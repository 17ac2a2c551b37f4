import os
import logging
from logging.handlers import RotatingFileHandler

from dotenv import load_dotenv

load_dotenv()

# ----------------------------
# Environment and configuration
# ----------------------------
ELEVENLABS_AGENT_ID = os.getenv("ELEVENLABS_AGENT_ID")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
VOICE_AGENT_WS_URL = os.getenv("VOICE_AGENT_WS_URL", "wss://api.elevenlabs.io/v1/convai/conversation")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./conversations.db")

# Spoken when the stream response cannot be built
FALLBACK_VOICE = os.getenv("FALLBACK_VOICE", "Google.en-GB-Standard-A")
FALLBACK_MESSAGE = os.getenv(
    "FALLBACK_MESSAGE",
    "We apologize, but we are experiencing technical difficulties. Please try again later."
)

# Summary written when the call is first logged
CALL_IN_PROGRESS_TRANSCRIPT = "Call in progress..."

DASHBOARD_PAGE_SIZE = int(os.getenv("DASHBOARD_PAGE_SIZE", "10"))
MAX_PAGE_SIZE = 100

# API Key Authentication
API_KEY_HEADER_NAME = "xi-api-key"
API_KEYS = os.getenv("API_KEYS", "").split(",") if os.getenv("API_KEYS") else []

# Lifecycle event receivers
EVENT_WEBHOOK_URLS = [u.strip() for u in os.getenv("EVENT_WEBHOOK_URLS", "").split(",") if u.strip()]

# Lifecycle events
WEBHOOK_EVENTS = [
    "conversation.created",
    "conversation.ended",
]

# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "server.log")

def setup_logger():
    """Setup and return logger instance"""
    logger = logging.getLogger("callbridge")
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    if logger.handlers:
        return logger

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    try:
        fh = RotatingFileHandler(LOG_FILE, maxBytes=5_000_000, backupCount=2)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        logger.warning("Could not open log file %s, logging to stderr only", LOG_FILE)

    return logger

logger = setup_logger()

REQUIRE_ENV = [ELEVENLABS_AGENT_ID, ELEVENLABS_API_KEY]
if not all(REQUIRE_ENV):
    # Calls are still answered, with the fallback apology
    logger.warning("Missing voice agent env: ELEVENLABS_AGENT_ID, ELEVENLABS_API_KEY")

# webhooks.py
import asyncio
from datetime import datetime as dt, timezone
from typing import Dict, List, Optional, Set

import httpx

from config import logger, EVENT_WEBHOOK_URLS, WEBHOOK_EVENTS
from models import ConversationResponse

# Pending deliveries; held so the event loop does not drop them mid-flight
_pending_deliveries: Set[asyncio.Task] = set()


async def send_webhook(webhook_url: str, event: str, data: Dict) -> bool:
    """Send one lifecycle event to a receiver (fire-and-forget)"""
    try:
        # Webhook URL must be absolute (http:// or https://)
        if not webhook_url.startswith(("http://", "https://")):
            logger.error(f"❌ Invalid webhook URL: {webhook_url} - must start with http:// or https://")
            return False

        async with httpx.AsyncClient() as client:
            payload = {
                "event": event,
                "timestamp": dt.now(timezone.utc).isoformat(),
                "data": data
            }
            response = await client.post(webhook_url, json=payload, timeout=10)
            logger.info(f"📤 Webhook sent: {event} to {webhook_url} (status: {response.status_code})")
            return response.is_success
    except httpx.HTTPError as e:
        logger.error(f"❌ Webhook failed: {event} to {webhook_url} - {e}")
        return False


def conversation_event_data(conversation) -> Dict:
    return ConversationResponse.model_validate(conversation).model_dump(mode="json")


def dispatch_event(event: str, data: Dict, urls: Optional[List[str]] = None) -> List[asyncio.Task]:
    """Schedule delivery to every configured receiver without waiting on it"""
    if event not in WEBHOOK_EVENTS:
        raise ValueError(f"Unknown webhook event: {event}")

    urls = EVENT_WEBHOOK_URLS if urls is None else urls
    tasks = []
    for url in urls:
        task = asyncio.create_task(send_webhook(url, event, data))
        _pending_deliveries.add(task)
        task.add_done_callback(_pending_deliveries.discard)
        tasks.append(task)
    return tasks

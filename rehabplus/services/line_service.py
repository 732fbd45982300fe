# rehabplus/services/line_service.py
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from . import notification_settings

logger = logging.getLogger(__name__)

LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"


class LineService:
    """LINE Messaging API push notifications"""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def push_message(self, access_token: str, target_id: str, text: str) -> bool:
        payload = {"to": target_id, "messages": [{"type": "text", "text": text}]}
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(LINE_PUSH_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"LINE push failed: {e}")
            return False
        if response.status_code != 200:
            logger.error(f"LINE push failed: status {response.status_code} {response.text[:200]}")
            return False
        return True

    async def notify(self, db: Session, event: str, message: str) -> bool:
        """Push a notification when LINE and this event are enabled"""
        settings = notification_settings.get_settings_model(db, "line")
        if settings is None or not settings.enabled:
            logger.debug("LINE notifications disabled")
            return False
        if not notification_settings.event_enabled(settings, event):
            logger.debug(f"LINE event {event} disabled")
            return False
        if not settings.access_token or not settings.target_id:
            logger.warning("LINE notification skipped: access token or target id missing")
            return False
        sent = await self.push_message(settings.access_token, settings.target_id, message)
        if sent:
            logger.info(f"LINE notification sent for {event}")
        return sent

    async def send_test(self, db: Session, message: Optional[str] = None) -> bool:
        settings = notification_settings.get_settings_model(db, "line")
        if settings is None or not settings.access_token or not settings.target_id:
            return False
        return await self.push_message(settings.access_token, settings.target_id,
                                       message or "RehabPlus test notification")


line_service = LineService()

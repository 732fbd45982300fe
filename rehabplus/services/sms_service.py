# rehabplus/services/sms_service.py
import logging
import re
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from . import notification_settings

logger = logging.getLogger(__name__)

SMS_URL = "https://api-v2.thaibulksms.com/sms"
CREDIT_URL = "https://api-v2.thaibulksms.com/credit"


def clean_phone(phone: Optional[str]) -> str:
    return re.sub(r"[\s\-()]", "", phone or "")


def render_template(template: str, values: Dict[str, Any]) -> str:
    """Replace {placeholder} tokens; unknown placeholders are left as they are"""
    def replace(match):
        key = match.group(1)
        return str(values[key]) if key in values and values[key] is not None else match.group(0)

    return re.sub(r"\{(\w+)\}", replace, template)


class SmsService:
    """Thai Bulk SMS gateway"""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    async def _send(self, api_key: str, api_secret: str, msisdn: str, message: str, sender: str) -> bool:
        data = {"msisdn": msisdn, "message": message, "sender": sender or "RehabPlus"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(SMS_URL, data=data, auth=(api_key, api_secret),
                                             headers={"accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error(f"SMS send failed: {e}")
            return False
        if response.status_code != 200:
            logger.error(f"SMS send failed: status {response.status_code} {response.text[:200]}")
            return False
        try:
            body = response.json()
        except ValueError:
            body = {}
        logger.info(f"SMS sent; remaining credit {body.get('remaining_credit')}, "
                    f"bad numbers {body.get('bad_phone_number_list')}")
        return True

    async def notify(self, db: Session, event: str, message: str) -> bool:
        """Send to the configured staff recipients when SMS and this event are enabled"""
        settings = notification_settings.get_settings_model(db, "sms")
        if settings is None or not settings.enabled:
            logger.debug("SMS notifications disabled")
            return False
        if not notification_settings.event_enabled(settings, event):
            logger.debug(f"SMS event {event} disabled")
            return False
        if not settings.api_key or not settings.api_secret or not settings.recipients:
            logger.warning("SMS notification skipped: credentials or recipients missing")
            return False
        return await self._send(settings.api_key, settings.api_secret, ",".join(settings.recipients),
                                message, settings.sender)

    async def send_patient_sms(self, db: Session, phone: Optional[str], message: str) -> bool:
        settings = notification_settings.get_settings_model(db, "sms")
        if settings is None or not settings.enabled:
            return False
        if not settings.api_key or not settings.api_secret:
            logger.warning("Patient SMS skipped: credentials missing")
            return False
        phone = clean_phone(phone)
        if not phone:
            return False
        return await self._send(settings.api_key, settings.api_secret, phone, message, settings.sender)

    async def send_test(self, db: Session, recipient: Optional[str] = None, message: Optional[str] = None) -> bool:
        settings = notification_settings.get_settings_model(db, "sms")
        if settings is None or not settings.api_key or not settings.api_secret:
            return False
        msisdn = clean_phone(recipient) or ",".join(settings.recipients)
        if not msisdn:
            return False
        return await self._send(settings.api_key, settings.api_secret, msisdn,
                                message or "RehabPlus test SMS", settings.sender)

    async def get_credit(self, db: Session, sms_type: Optional[str] = None) -> Dict[str, Any]:
        """Remaining credit; raises ValueError when credentials are missing"""
        settings = notification_settings.get_settings_model(db, "sms")
        if settings is None or not settings.api_key or not settings.api_secret:
            raise ValueError("API credentials not configured")
        sms_type = sms_type or settings.sms_type
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(CREDIT_URL, params={"force": sms_type},
                                        auth=(settings.api_key, settings.api_secret),
                                        headers={"accept": "application/json"})
        response.raise_for_status()
        credits = response.json().get("remaining_credit") or {}
        return {"credit": credits.get(sms_type, 0), "sms_type": sms_type, "all_credits": credits}


sms_service = SmsService()

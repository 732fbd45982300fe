# rehabplus/routers/notifications.py
"""Admin pages for integration settings: SMTP, LINE, SMS, Google Calendar, SMS template and theme."""
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db
from ..services import notification_settings
from ..services.calendar_service import calendar_service
from ..services.email_service import email_service
from ..services.line_service import line_service
from ..services.sms_service import sms_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Notification settings"],
    dependencies=[Depends(security.require_admin)],
)

# URL segment -> stored setting_type
CHANNELS = {
    "smtp": "smtp",
    "line": "line",
    "sms": "sms",
    "google-calendar": "google_calendar",
}


def _setting_type(channel: str) -> str:
    setting_type = CHANNELS.get(channel)
    if setting_type is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown notification channel '{channel}'")
    return setting_type


@router.get("/notification/sms/credit")
async def read_sms_credit(sms_type: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        return {"success": True, **await sms_service.get_credit(db, sms_type)}
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except httpx.HTTPError as e:
        logger.error(f"SMS credit check failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not reach the SMS provider")


@router.get("/notification/{channel}")
def read_notification_settings(channel: str, db: Session = Depends(get_db)):
    return notification_settings.get_masked(db, _setting_type(channel))


@router.post("/notification/{channel}")
def save_notification_settings(
    channel: str,
    request: Request,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    setting_type = _setting_type(channel)
    try:
        settings = notification_settings.SETTING_SCHEMAS[setting_type].model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
    saved = notification_settings.save_settings(db, setting_type, settings, current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="NOTIFICATION_SETTINGS",
                          details=setting_type, request=request)
    return {"success": True, "settings": saved}


@router.post("/notification/{channel}/test")
async def test_notification_channel(
    channel: str,
    payload: schemas.TestMessageRequest = Body(default_factory=schemas.TestMessageRequest),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    setting_type = _setting_type(channel)
    if setting_type == "smtp":
        result = await email_service.send_test(db, payload.recipient or current_user.email)
        return result
    if setting_type == "line":
        sent = await line_service.send_test(db, payload.message)
        return {"success": sent, "message": "Test message sent" if sent else "LINE is not configured or the push failed"}
    if setting_type == "sms":
        sent = await sms_service.send_test(db, payload.recipient, payload.message)
        return {"success": sent, "message": "Test SMS sent" if sent else "SMS is not configured or the send failed"}
    return await calendar_service.test_connection(db)


@router.get("/sms-template")
def read_sms_template(db: Session = Depends(get_db)):
    return {"template": notification_settings.get_sms_template(db)}


@router.post("/sms-template")
def save_sms_template(
    payload: schemas.SmsTemplateSettings,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    notification_settings.save_settings(db, "sms_template", payload, current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="NOTIFICATION_SETTINGS",
                          details="sms_template", request=request)
    return {"success": True, "template": payload.template}


@router.get("/theme-settings")
def read_theme_settings(db: Session = Depends(get_db)):
    return notification_settings.get_theme(db).model_dump()


@router.post("/theme-settings")
def save_theme_settings(
    payload: schemas.ThemeSettings,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    notification_settings.save_settings(db, "theme", payload, current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="NOTIFICATION_SETTINGS",
                          details="theme", request=request)
    return {"success": True, "theme": payload.model_dump()}

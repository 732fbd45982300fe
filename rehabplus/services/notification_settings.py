# rehabplus/services/notification_settings.py
"""Per-tenant integration settings stored as JSON rows, with encrypted secrets."""
import json
import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..security import encryption_service

logger = logging.getLogger(__name__)

SETTING_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "smtp": schemas.SmtpSettings,
    "line": schemas.LineSettings,
    "sms": schemas.SmsSettings,
    "google_calendar": schemas.GoogleCalendarSettings,
    "sms_template": schemas.SmsTemplateSettings,
    "theme": schemas.ThemeSettings,
}

# JSON keys (by alias) that are stored encrypted
SECRET_FIELDS = {
    "smtp": ("password",),
    "line": ("accessToken",),
    "sms": ("apiKey", "apiSecret"),
    "google_calendar": ("privateKey",),
}

MASK = "********"

DEFAULT_SMS_TEMPLATE = (
    "{clinicName}: Dear {patientName}, your appointment is on {date} "
    "{startTime}-{endTime} with {ptName} ({appointmentType})."
)


def _row(db: Session, setting_type: str) -> Optional[models.NotificationSetting]:
    return db.query(models.NotificationSetting).filter(models.NotificationSetting.setting_type == setting_type).first()


def _decode(raw: Optional[str], setting_type: str) -> Dict[str, Any]:
    value: Any = raw or "{}"
    for _ in range(2):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Malformed {setting_type} settings ignored")
            return {}
    return value if isinstance(value, dict) else {}


def load_raw(db: Session, setting_type: str) -> Dict[str, Any]:
    """Stored values with secrets decrypted"""
    row = _row(db, setting_type)
    if row is None:
        return {}
    data = _decode(row.setting_value, setting_type)
    for key in SECRET_FIELDS.get(setting_type, ()):
        if data.get(key):
            data[key] = encryption_service.decrypt(data[key])
    return data


def get_settings_model(db: Session, setting_type: str) -> Optional[BaseModel]:
    """Typed settings, or the defaults when nothing valid is stored"""
    schema = SETTING_SCHEMAS[setting_type]
    data = load_raw(db, setting_type)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid stored {setting_type} settings: {e.error_count()} errors")
        try:
            return schema()
        except ValidationError:
            return None


def save_settings(db: Session, setting_type: str, settings: BaseModel, user_id: Optional[int]) -> Dict[str, Any]:
    """Persist settings; a blank secret keeps the stored one"""
    data = settings.model_dump(by_alias=True, mode="json")
    row = _row(db, setting_type)
    stored = _decode(row.setting_value, setting_type) if row else {}
    for key in SECRET_FIELDS.get(setting_type, ()):
        value = data.get(key)
        if not value or value == MASK:
            data[key] = stored.get(key)
        else:
            data[key] = encryption_service.encrypt(value)

    if row is None:
        row = models.NotificationSetting(setting_type=setting_type)
        db.add(row)
    row.setting_value = json.dumps(data)
    row.updated_by = user_id
    db.commit()
    logger.info(f"Saved {setting_type} settings (user {user_id})")
    return masked(setting_type, data)


def masked(setting_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(data)
    for key in SECRET_FIELDS.get(setting_type, ()):
        result[key] = MASK if result.get(key) else ""
    return result


def get_masked(db: Session, setting_type: str) -> Dict[str, Any]:
    model = get_settings_model(db, setting_type)
    data = model.model_dump(by_alias=True, mode="json") if model is not None else {}
    return masked(setting_type, data)


def event_enabled(settings: Any, event: str) -> bool:
    events = getattr(settings, "event_notifications", None)
    return bool(events is not None and getattr(events, event, False))


def get_sms_template(db: Session) -> str:
    model = get_settings_model(db, "sms_template")
    return model.template if model is not None else DEFAULT_SMS_TEMPLATE


def get_theme(db: Session) -> schemas.ThemeSettings:
    return get_settings_model(db, "theme") or schemas.ThemeSettings()

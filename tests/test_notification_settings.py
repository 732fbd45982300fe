# tests/test_notification_settings.py
from datetime import date, datetime

from rehabplus.services import notification_settings
from rehabplus.services.email_service import generate_ics
from rehabplus.services.sms_service import clean_phone, render_template

LINE = {"enabled": True, "accessToken": "line-secret-token", "targetId": "U123",
        "eventNotifications": {"newAppointment": True, "appointmentCancelled": False}}


def test_line_settings_are_masked_and_encrypted(client, db, admin_headers):
    saved = client.post("/api/admin/notification/line", headers=admin_headers, json=LINE).json()
    assert saved["settings"]["accessToken"] == notification_settings.MASK

    stored = notification_settings.load_raw(db, "line")
    assert stored["accessToken"] == "line-secret-token"

    read = client.get("/api/admin/notification/line", headers=admin_headers).json()
    assert read["accessToken"] == notification_settings.MASK
    assert read["eventNotifications"]["appointmentCancelled"] is False


def test_blank_secret_keeps_the_stored_one(client, db, admin_headers):
    client.post("/api/admin/notification/line", headers=admin_headers, json=LINE)
    client.post("/api/admin/notification/line", headers=admin_headers,
                json={**LINE, "accessToken": "", "targetId": "U999"})
    db.expire_all()
    stored = notification_settings.load_raw(db, "line")
    assert stored["accessToken"] == "line-secret-token"
    assert stored["targetId"] == "U999"


def test_invalid_settings_are_rejected(client, admin_headers):
    response = client.post("/api/admin/notification/smtp", headers=admin_headers, json={"secure": "starttls"})
    assert response.status_code == 400
    assert response.json()["error"].startswith("secure")


def test_unknown_channel(client, admin_headers):
    assert client.get("/api/admin/notification/fax", headers=admin_headers).status_code == 404


def test_settings_are_admin_only(client, pt_headers):
    assert client.get("/api/admin/notification/line", headers=pt_headers).status_code == 403


def test_theme_defaults_and_update(client, admin_headers):
    assert client.get("/api/admin/theme-settings", headers=admin_headers).json()["app_name"] == "RehabPlus"
    bad = client.post("/api/admin/theme-settings", headers=admin_headers, json={"primary_color": "blue"})
    assert bad.status_code == 400
    client.post("/api/admin/theme-settings", headers=admin_headers, json={"app_name": "Rehab North"})
    assert client.get("/api/admin/theme-settings", headers=admin_headers).json()["app_name"] == "Rehab North"


def test_sms_template_falls_back_to_default(client, admin_headers):
    template = client.get("/api/admin/sms-template", headers=admin_headers).json()["template"]
    assert template == notification_settings.DEFAULT_SMS_TEMPLATE


def test_render_template_keeps_unknown_placeholders():
    text = render_template("Hi {patientName}, see you {date} {unknown}", {"patientName": "Malee", "date": "1 Jan"})
    assert text == "Hi Malee, see you 1 Jan {unknown}"


def test_clean_phone():
    assert clean_phone("(081) 234-5678") == "0812345678"
    assert clean_phone(None) == ""


def test_generate_ics():
    appointment = {"id": 42, "appointment_date": date(2026, 5, 4), "start_time": "09:00", "end_time": "10:00",
                   "clinic_name": "RehabPlus Main", "pt_name": "Pat Tester"}
    ics = generate_ics(appointment, now=datetime(2026, 5, 1, 12, 0))
    lines = ics.split("\r\n")
    assert lines[0] == "BEGIN:VCALENDAR"
    assert "UID:appointment-42@rehabplus.com" in lines
    assert "DTSTART:20260504T090000" in lines
    assert "DTEND:20260504T100000" in lines
    assert "\n" not in ics.replace("\r\n", "")

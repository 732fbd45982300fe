# rehabplus/services/email_service.py
import asyncio
import base64
import logging
import smtplib
import ssl
from datetime import date, datetime, time
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jinja2
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail
from sqlalchemy.orm import Session

from ..config import get_settings
from . import notification_settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"
ICS_CONTENT_TYPE = "text/calendar; charset=utf-8; method=REQUEST"


def _ics_datetime(day: Any, at: Any) -> str:
    if isinstance(day, str):
        day = date.fromisoformat(day)
    if isinstance(at, str):
        at = time.fromisoformat(at if len(at) > 5 else f"{at}:00")
    return datetime.combine(day, at).strftime("%Y%m%dT%H%M%S")


def generate_ics(appointment: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """iCalendar (RFC 5545) invite for one appointment, CRLF line endings"""
    now = now or datetime.now()
    clinic_name = appointment.get("clinic_name") or ""
    description = "\\n".join(filter(None, [
        f"Appointment at {clinic_name}",
        f"Therapist: {appointment.get('pt_name') or 'To be assigned'}",
        f"Reason: {appointment['reason']}" if appointment.get("reason") else "",
    ]))
    location = ", ".join(filter(None, [clinic_name, appointment.get("clinic_address")]))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//RehabPlus//Appointment System//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:REQUEST",
        "BEGIN:VEVENT",
        f"UID:appointment-{appointment['id']}@rehabplus.com",
        f"DTSTAMP:{now.strftime('%Y%m%dT%H%M%S')}",
        f"DTSTART:{_ics_datetime(appointment['appointment_date'], appointment['start_time'])}",
        f"DTEND:{_ics_datetime(appointment['appointment_date'], appointment['end_time'])}",
        f"SUMMARY:Appointment at {clinic_name}",
        f"DESCRIPTION:{description}",
        f"LOCATION:{location}",
        "STATUS:CONFIRMED",
        "SEQUENCE:0",
        "PRIORITY:5",
        "BEGIN:VALARM",
        "TRIGGER:-PT30M",
        "DESCRIPTION:Appointment reminder",
        "ACTION:DISPLAY",
        "END:VALARM",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines)


class EmailService:
    """Outgoing e-mail through the tenant's SMTP server, or SendGrid when configured"""

    def __init__(self):
        settings = get_settings()
        self.sendgrid_api_key = settings.sendgrid_api_key
        self.sender_email = settings.sender_email
        self.sg = SendGridAPIClient(api_key=self.sendgrid_api_key) if settings.sendgrid_enabled else None
        self.template_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=jinja2.select_autoescape(["html"]),
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        return self.template_env.get_template(f"{template_name}.html").render(**context)

    @staticmethod
    def _smtp_send(smtp: Any, message: EmailMessage) -> None:
        port = int(smtp.port or 587)
        if smtp.secure == "ssl":
            server = smtplib.SMTP_SSL(smtp.host, port, context=ssl.create_default_context(), timeout=20)
        else:
            server = smtplib.SMTP(smtp.host, port, timeout=20)
        with server:
            if smtp.secure == "tls":
                server.starttls(context=ssl.create_default_context())
            if smtp.user:
                server.login(smtp.user, smtp.password or "")
            server.send_message(message)

    async def send_email(
        self,
        db: Session,
        to_email: str,
        subject: str,
        html_content: str,
        attachments: Optional[List[Tuple[str, str, str]]] = None,
    ) -> Dict[str, Any]:
        """Send one message; attachments are (filename, content, content_type)"""
        smtp = notification_settings.get_settings_model(db, "smtp")
        try:
            if smtp is not None and smtp.enabled and smtp.host:
                message = EmailMessage()
                message["Subject"] = subject
                message["From"] = formataddr((smtp.from_name or "RehabPlus", smtp.from_email or smtp.user or self.sender_email))
                message["To"] = to_email
                message.set_content("This message requires an HTML capable mail client.")
                message.add_alternative(html_content, subtype="html")
                for filename, content, content_type in attachments or []:
                    maintype, subtype = content_type.split(";")[0].split("/")
                    message.add_attachment(content.encode("utf-8"), maintype=maintype, subtype=subtype, filename=filename)
                await asyncio.to_thread(self._smtp_send, smtp, message)
            elif self.sg is not None:
                mail = Mail(from_email=self.sender_email, to_emails=to_email, subject=subject, html_content=html_content)
                for filename, content, content_type in attachments or []:
                    mail.add_attachment(Attachment(
                        FileContent(base64.b64encode(content.encode("utf-8")).decode()),
                        FileName(filename),
                        FileType(content_type.split(";")[0]),
                        Disposition("attachment"),
                    ))
                await asyncio.to_thread(self.sg.send, mail)
            else:
                return {"success": False, "message": "Email service not configured"}
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {to_email} failed: {e}")
            return {"success": False, "message": f"Failed to send email: {e}"}
        except Exception as e:
            # SendGrid raises python_http_client errors
            logger.error(f"Email send to {to_email} failed: {e}")
            return {"success": False, "message": f"Failed to send email: {e}"}
        logger.info(f"Email '{subject}' sent to {to_email}")
        return {"success": True, "message": "Email sent successfully"}

    async def send_appointment_confirmation(self, db: Session, appointment: Dict[str, Any], to_email: str) -> Dict[str, Any]:
        if not to_email or "@" not in to_email:
            return {"success": False, "message": "No valid recipient email"}
        day = appointment["appointment_date"]
        if isinstance(day, str):
            day = date.fromisoformat(day)
        date_str = day.strftime("%A, %B %d, %Y")
        html = self.render("appointment_confirmation", {"appointment": appointment, "date_str": date_str})
        return await self.send_email(
            db, to_email, f"Appointment Confirmation - {date_str}", html,
            attachments=[("appointment.ics", generate_ics(appointment), ICS_CONTENT_TYPE)],
        )

    async def send_test(self, db: Session, to_email: str) -> Dict[str, Any]:
        html = self.render("test_email", {"sent_at": datetime.now().strftime("%Y-%m-%d %H:%M:%S")})
        return await self.send_email(db, to_email, "RehabPlus SMTP test", html)


email_service = EmailService()

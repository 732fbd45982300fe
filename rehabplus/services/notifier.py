# rehabplus/services/notifier.py
"""Post-commit notification dispatch; failures are logged and never reach the caller."""
import logging
from datetime import date
from typing import Any, Dict

from ..database import SessionLocal
from .line_service import line_service
from .sms_service import sms_service

logger = logging.getLogger(__name__)


def _fmt_date(value: Any) -> str:
    if isinstance(value, str):
        value = date.fromisoformat(value)
    return value.strftime("%d/%m/%Y") if value else ""


def new_appointment_message(appt: Dict[str, Any]) -> str:
    return (
        "New Appointment Created\n\n"
        f"Appointment ID: {appt['id']}\n"
        f"Patient: {appt.get('patient_name') or 'N/A'}\n"
        f"Physiotherapist: {appt.get('pt_name') or ''}\n"
        f"Clinic: {appt.get('clinic_name') or ''}\n"
        f"Date: {_fmt_date(appt['appointment_date'])}\n"
        f"Time: {appt['start_time']} - {appt['end_time']}"
    )


def rescheduled_message(appt: Dict[str, Any]) -> str:
    return (
        "Appointment Rescheduled\n\n"
        f"Appointment ID: {appt['id']}\n"
        f"Patient: {appt.get('patient_name') or 'N/A'}\n"
        f"Physiotherapist: {appt.get('pt_name') or ''}\n"
        f"Clinic: {appt.get('clinic_name') or ''}\n"
        f"New Date: {_fmt_date(appt['appointment_date'])}\n"
        f"New Time: {appt['start_time']} - {appt['end_time']}"
    )


def cancelled_message(appt: Dict[str, Any], pn_synced: bool = False) -> str:
    lines = [
        "Appointment Cancelled\n",
        f"Appointment ID: {appt['id']}",
        f"Patient: {appt.get('patient_name') or 'N/A'}",
        f"Physiotherapist: {appt.get('pt_name') or ''}",
        f"Clinic: {appt.get('clinic_name') or ''}",
        f"Date: {_fmt_date(appt['appointment_date'])}",
        f"Time: {appt['start_time']} - {appt['end_time']}",
    ]
    if appt.get("cancellation_reason"):
        lines.append(f"Reason: {appt['cancellation_reason']}")
    if pn_synced:
        lines.append("Linked PN Case also cancelled")
    return "\n".join(lines)


def new_patient_message(patient: Dict[str, Any]) -> str:
    return (
        "New Patient Registered\n\n"
        f"HN: {patient.get('hn')}\n"
        f"Name: {patient.get('first_name')} {patient.get('last_name')}\n"
        f"Clinic: {patient.get('clinic_name') or ''}\n"
        f"Diagnosis: {patient.get('diagnosis') or ''}"
    )


def payment_received_message(bill: Dict[str, Any]) -> str:
    return (
        "Payment Received\n\n"
        f"Bill: {bill.get('bill_code')}\n"
        f"Patient: {bill.get('patient_name') or 'N/A'}\n"
        f"Amount: {bill.get('total_amount', 0):,.2f} THB\n"
        f"Method: {bill.get('payment_method') or '-'}"
    )


async def notify_event(event: str, message: str) -> Dict[str, bool]:
    """LINE and SMS fan-out for one event, in its own session"""
    result = {"line": False, "sms": False}
    db = SessionLocal()
    try:
        result["line"] = await line_service.notify(db, event, message)
        result["sms"] = await sms_service.notify(db, event, message)
    except Exception as e:
        logger.error(f"Notification dispatch for {event} failed: {e}", exc_info=True)
    finally:
        db.close()
    return result

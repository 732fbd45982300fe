# rehabplus/routers/appointments.py
import logging
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security, workflow
from ..database import atomic, get_db
from ..errors import CRUDError, NotFoundError
from ..services import notification_settings, notifier
from ..services.calendar_service import calendar_service
from ..services.email_service import email_service
from ..services.sms_service import render_template, sms_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def get_accessible_appointment(db: Session, user: models.User, appointment_id: int) -> models.Appointment:
    appt = crud.get_appointment(db, appointment_id)
    if not appt:
        raise NotFoundError("Appointment not found")
    security.ensure_clinic_access(db, user, appt.clinic_id)
    return appt


@router.get("")
def read_appointments(
    pt_id: Optional[int] = None,
    clinic_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return crud.list_appointments(
        db, security.get_accessible_clinic_ids(db, current_user),
        pt_id=pt_id, clinic_id=clinic_id, start_date=start_date, end_date=end_date,
        status=status_filter, patient_id=patient_id,
    )


@router.get("/check-conflict")
def check_conflict(
    pt_id: int,
    appointment_date: date = Query(..., alias="date"),
    start_time: time = Query(...),
    end_time: time = Query(...),
    exclude_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    conflicts = crud.find_conflicts(db, pt_id, appointment_date, start_time, end_time, exclude_id)
    return {
        "has_conflict": bool(conflicts),
        "conflicts": [
            {"id": c.id, "patient_name": c.display_name,
             "start_time": c.start_time.strftime("%H:%M"), "end_time": c.end_time.strftime("%H:%M")}
            for c in conflicts
        ],
    }


@router.get("/available-slots")
def read_available_slots(
    pt_id: int,
    appointment_date: date = Query(..., alias="date"),
    duration: int = 30,
    db: Session = Depends(get_db),
):
    return crud.available_slots(db, pt_id, appointment_date, duration)


@router.get("/{appointment_id}")
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return crud.appointment_to_dict(get_accessible_appointment(db, current_user, appointment_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    appointment: schemas.AppointmentCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    security.ensure_clinic_access(db, current_user, appointment.clinic_id)
    with atomic(db):
        appt = crud.create_appointment(db, appointment, created_by=current_user.id)
    appt_dict = crud.appointment_to_dict(appt)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="APPOINTMENT", entity_id=appt.id,
                          request=request, new_values=appointment.model_dump())
    background_tasks.add_task(notifier.notify_event, "newAppointment", notifier.new_appointment_message(appt_dict))

    event_id = await calendar_service.create_event(db, appt_dict)
    if event_id:
        appt.calendar_event_id = event_id
        db.commit()

    email_result = None
    if appointment.send_email and appt_dict.get("patient_email"):
        email_result = await email_service.send_appointment_confirmation(db, appt_dict, appt_dict["patient_email"])

    return {
        "success": True,
        "appointment_id": appt.id,
        "pn_case_id": appt.pn_case_id,
        "calendar_event_id": event_id,
        "email": email_result,
    }


@router.put("/{appointment_id}")
async def update_appointment(
    appointment_id: int,
    update: schemas.AppointmentUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    appt = get_accessible_appointment(db, current_user, appointment_id)
    old_values = crud.appointment_to_dict(appt)
    with atomic(db):
        old_status = appt.status
        rescheduled = crud.apply_appointment_update(db, appt, update, current_user.id)
        pn_synced = workflow.sync_appointment_status(db, appt, old_status, update, current_user)

    appt_dict = crud.appointment_to_dict(appt)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="APPOINTMENT", entity_id=appt.id,
                          request=request,
                          old_values={k: old_values[k] for k in ("status", "appointment_date", "start_time", "end_time", "pt_id")},
                          new_values=update.model_dump(exclude_unset=True))
    if rescheduled:
        background_tasks.add_task(notifier.notify_event, "appointmentRescheduled", notifier.rescheduled_message(appt_dict))
        if appt.calendar_event_id:
            await calendar_service.update_event(db, appt.calendar_event_id, appt_dict)
    return {"success": True, "appointment": appt_dict, "rescheduled": rescheduled, "pn_synced": pn_synced}


@router.delete("/{appointment_id}")
async def cancel_appointment(
    appointment_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: Optional[schemas.AppointmentCancel] = Body(None),
    reason: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    appt = get_accessible_appointment(db, current_user, appointment_id)
    cancel_reason = (payload.reason if payload else None) or reason
    with atomic(db):
        pn_synced = workflow.cancel_appointment(db, appt, cancel_reason, current_user)

    appt_dict = crud.appointment_to_dict(appt)
    crud.create_audit_log(user_id=current_user.id, action="CANCEL", entity_type="APPOINTMENT", entity_id=appt.id,
                          details=appt.cancellation_reason, request=request)
    background_tasks.add_task(notifier.notify_event, "appointmentCancelled",
                              notifier.cancelled_message(appt_dict, pn_synced))

    if appt.calendar_event_id:
        await calendar_service.delete_event(db, appt.calendar_event_id)
        appt.calendar_event_id = None
        db.commit()

    message = "Appointment cancelled"
    if pn_synced:
        message += " and linked PN case cancelled"
    return {"success": True, "message": message, "pn_synced": pn_synced}


@router.post("/{appointment_id}/complete")
def complete_appointment(
    appointment_id: int,
    request: Request,
    completion: schemas.AppointmentCompletion = Body(default_factory=schemas.AppointmentCompletion),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    appt = get_accessible_appointment(db, current_user, appointment_id)
    with atomic(db):
        result = workflow.complete_appointment(db, appt, completion, current_user)
    crud.create_audit_log(user_id=current_user.id, action="COMPLETE", entity_type="APPOINTMENT", entity_id=appt.id,
                          request=request, new_values=result)
    return {"success": True, **result}


@router.post("/{appointment_id}/send-patient-sms")
async def send_patient_sms(
    appointment_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    appt = get_accessible_appointment(db, current_user, appointment_id)
    appt_dict = crud.appointment_to_dict(appt)
    phone = appt_dict.get("patient_phone")
    if not phone:
        raise CRUDError("The patient has no phone number on file")

    message = render_template(notification_settings.get_sms_template(db), {
        "clinicName": appt_dict.get("clinic_name") or "",
        "patientName": appt_dict.get("patient_name") or "",
        "date": appt.appointment_date.strftime("%d/%m/%Y"),
        "startTime": appt_dict["start_time"],
        "endTime": appt_dict["end_time"],
        "ptName": appt_dict.get("pt_name") or "",
        "appointmentType": appt_dict.get("appointment_type") or "",
    })
    sent = await sms_service.send_patient_sms(db, phone, message)
    if not sent:
        raise CRUDError("SMS could not be sent; check the SMS settings")
    crud.create_audit_log(user_id=current_user.id, action="SEND_SMS", entity_type="APPOINTMENT", entity_id=appt.id,
                          request=request)
    return {"success": True, "message": message}

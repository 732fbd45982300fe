# rehabplus/workflow.py
"""PN case state machine, course session ledger and appointment completion.

None of the functions here commit. Routers run them inside
``database.atomic`` so that a status change, the course ledger rows, the
appointment sync and the history row land in one transaction.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .errors import NotFoundError, PermissionDeniedError, WorkflowError

logger = logging.getLogger(__name__)

PN = models.PNStatus

TRANSITIONS = {
    PN.PENDING: {PN.ACCEPTED, PN.CANCELLED},
    PN.ACCEPTED: {PN.PENDING, PN.IN_PROGRESS, PN.COMPLETED, PN.CANCELLED},
    PN.IN_PROGRESS: {PN.COMPLETED, PN.CANCELLED},
    PN.COMPLETED: set(),
    PN.CANCELLED: set(),
}

ASSESSMENT_FIELDS = ("pt_diagnosis", "pt_chief_complaint", "pt_present_history", "pt_pain_score")
SOAP_FIELDS = ("subjective", "objective", "assessment", "plan")
DEFAULT_CANCEL_REASON = "Cancelled from Dashboard"
INITIAL_ASSESSMENT = "initial assessment"
BODY_CHECK = "body check"


def can_transition(old: models.PNStatus, new: models.PNStatus) -> bool:
    return new in TRANSITIONS.get(old, set())


# ==================== COURSE LEDGER ====================

def _ledger_query(db: Session, pn_id: Optional[int], appointment_id: Optional[int]):
    query = db.query(models.CourseUsageHistory.course_id, models.CourseUsageHistory.action_type,
                     func.count(models.CourseUsageHistory.id))
    if pn_id is not None:
        query = query.filter(models.CourseUsageHistory.pn_id == pn_id)
    else:
        query = query.filter(models.CourseUsageHistory.pn_id.is_(None),
                             models.CourseUsageHistory.appointment_id == appointment_id)
    return query.filter(models.CourseUsageHistory.action_type.in_(
        [models.CourseAction.USE, models.CourseAction.RETURN]
    )).group_by(models.CourseUsageHistory.course_id, models.CourseUsageHistory.action_type)


def outstanding_courses(db: Session, pn_id: Optional[int] = None, appointment_id: Optional[int] = None) -> List[int]:
    """Course ids with more USE than RETURN rows for this case or appointment"""
    balance: Dict[int, int] = {}
    for course_id, action, count in _ledger_query(db, pn_id, appointment_id):
        delta = count if action == models.CourseAction.USE else -count
        balance[course_id] = balance.get(course_id, 0) + delta
    return [course_id for course_id, n in balance.items() if n > 0]


def _lock_course(db: Session, course_id: int) -> models.Course:
    course = db.query(models.Course).filter(models.Course.id == course_id).with_for_update().first()
    if not course:
        raise NotFoundError("Course not found")
    return course


def debit_course_session(
    db: Session,
    course_id: int,
    user_id: Optional[int],
    pn_id: Optional[int] = None,
    appointment_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> bool:
    """Use one session; returns False when one is already debited for this key"""
    course = _lock_course(db, course_id)
    if course_id in outstanding_courses(db, pn_id, appointment_id):
        return False
    if course.status != models.CourseStatus.ACTIVE or course.remaining_sessions <= 0:
        raise WorkflowError(f"Course {course.course_code} has no remaining sessions")
    course.used_sessions += 1
    course.remaining_sessions -= 1
    if course.remaining_sessions == 0:
        course.status = models.CourseStatus.COMPLETED
    db.add(models.CourseUsageHistory(
        course_id=course.id, pn_id=pn_id, appointment_id=appointment_id, sessions_used=1,
        usage_date=date.today(), action_type=models.CourseAction.USE,
        notes=notes or "Session used", created_by=user_id,
    ))
    db.flush()
    logger.info(f"Debited course {course.course_code} (pn={pn_id}, appointment={appointment_id}), {course.remaining_sessions} left")
    return True


def return_course_session(
    db: Session,
    course_id: int,
    user_id: Optional[int],
    pn_id: Optional[int] = None,
    appointment_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> bool:
    course = _lock_course(db, course_id)
    if course_id not in outstanding_courses(db, pn_id, appointment_id):
        return False
    course.used_sessions = max(0, course.used_sessions - 1)
    course.remaining_sessions += 1
    if course.status == models.CourseStatus.COMPLETED:
        course.status = models.CourseStatus.ACTIVE
    db.add(models.CourseUsageHistory(
        course_id=course.id, pn_id=pn_id, appointment_id=appointment_id, sessions_used=1,
        usage_date=date.today(), action_type=models.CourseAction.RETURN,
        notes=notes or "Session returned", created_by=user_id,
    ))
    db.flush()
    logger.info(f"Returned session to course {course.course_code} (pn={pn_id}, appointment={appointment_id})")
    return True


def _return_all(db: Session, user_id: Optional[int], notes: str,
                pn_id: Optional[int] = None, appointment_id: Optional[int] = None) -> bool:
    returned = False
    for course_id in outstanding_courses(db, pn_id, appointment_id):
        returned = return_course_session(db, course_id, user_id, pn_id, appointment_id, notes) or returned
    return returned


def linked_appointments(db: Session, pn_id: int) -> List[models.Appointment]:
    return db.query(models.Appointment).filter(models.Appointment.pn_case_id == pn_id).order_by(
        models.Appointment.appointment_date.desc(), models.Appointment.start_time.desc()).all()


def effective_course_id(db: Session, pn: models.PNCase) -> Optional[int]:
    for appt in linked_appointments(db, pn.id):
        if appt.course_id:
            return appt.course_id
    return pn.course_id


# ==================== PN TRANSITIONS ====================

def requires_assessment(pn: models.PNCase) -> bool:
    return not (crud.is_main_clinic(pn.source_clinic) or crud.is_main_clinic(pn.target_clinic))


def _missing_fields(values: Any, names) -> List[str]:
    missing = []
    for name in names:
        value = getattr(values, name, None) if values is not None else None
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def _record_history(db: Session, pn: models.PNCase, old: Optional[models.PNStatus], new: models.PNStatus,
                    user_id: Optional[int], reason: Optional[str], is_reversal: bool = False) -> None:
    db.add(models.PNStatusHistory(
        pn_id=pn.id,
        old_status=old.value if old else None,
        new_status=new.value,
        changed_by=user_id,
        change_reason=reason,
        is_reversal=is_reversal,
    ))


def _accept(db: Session, pn: models.PNCase, user_id: int, assessment: Optional[schemas.PTAssessment],
            body_annotation_id: Optional[int], skip_assessment: bool = False) -> bool:
    if requires_assessment(pn) and not skip_assessment:
        missing = _missing_fields(assessment, ASSESSMENT_FIELDS)
        if missing:
            raise WorkflowError("PT assessment is required for cases outside the main clinic", required_fields=missing)
    if assessment is not None:
        for name in ASSESSMENT_FIELDS:
            value = getattr(assessment, name, None)
            if value is not None:
                setattr(pn, name, value)
    if body_annotation_id:
        if not crud.get_body_annotation(db, body_annotation_id):
            raise NotFoundError("Body annotation not found")
        pn.body_annotation_id = body_annotation_id
    pn.accepted_at = datetime.now()
    pn.status = PN.ACCEPTED

    appointments = linked_appointments(db, pn.id)
    for appt in appointments:
        if appt.status != models.AppointmentStatus.CANCELLED:
            appt.status = models.AppointmentStatus.COMPLETED

    course_id = effective_course_id(db, pn)
    if not course_id:
        return False
    appointment_id = appointments[0].id if appointments else None
    return debit_course_session(db, course_id, user_id, pn_id=pn.id, appointment_id=appointment_id,
                                notes=f"Session used for {pn.pn_code}")


def _back_to_pending(db: Session, pn: models.PNCase, user_id: int) -> bool:
    for name in ASSESSMENT_FIELDS:
        setattr(pn, name, None)
    pn.accepted_at = None
    pn.status = PN.PENDING
    for appt in linked_appointments(db, pn.id):
        if appt.status == models.AppointmentStatus.COMPLETED:
            appt.status = models.AppointmentStatus.SCHEDULED
    return _return_all(db, user_id, f"Session returned: {pn.pn_code} back to PENDING", pn_id=pn.id)


def _complete(db: Session, pn: models.PNCase, user_id: int, soap: Optional[schemas.SoapNotes]) -> None:
    missing = _missing_fields(soap, SOAP_FIELDS)
    if missing:
        raise WorkflowError("SOAP notes are required to complete a case",
                            required_fields=[f"soap_notes.{m}" for m in missing])
    db.add(models.PNSoapNote(
        pn_id=pn.id,
        subjective=soap.subjective,
        objective=soap.objective,
        assessment=soap.assessment,
        plan=soap.plan,
        notes=soap.notes,
        created_by=user_id,
    ))
    pn.completed_at = datetime.now()
    pn.status = PN.COMPLETED
    for appt in linked_appointments(db, pn.id):
        if appt.status != models.AppointmentStatus.CANCELLED:
            appt.status = models.AppointmentStatus.COMPLETED


def _cancel(db: Session, pn: models.PNCase, user_id: int, reason: Optional[str]) -> bool:
    reason = reason or DEFAULT_CANCEL_REASON
    now = datetime.now()
    pn.status = PN.CANCELLED
    pn.cancelled_at = now
    pn.cancellation_reason = reason
    for appt in linked_appointments(db, pn.id):
        if appt.status != models.AppointmentStatus.CANCELLED:
            appt.status = models.AppointmentStatus.CANCELLED
            appt.cancellation_reason = appt.cancellation_reason or reason
            appt.cancelled_at = now
            appt.cancelled_by = user_id
    return _return_all(db, user_id, f"Session returned: {pn.pn_code} cancelled", pn_id=pn.id)


def change_pn_status(db: Session, pn: models.PNCase, update: schemas.PNStatusUpdate, user: models.User,
                     skip_assessment: bool = False) -> Dict[str, Any]:
    """Apply one transition from the table with all its side effects"""
    old, new = pn.status, update.status
    if not can_transition(old, new):
        raise WorkflowError(f"Invalid status transition from {old.value} to {new.value}")

    course_debited = session_returned = False
    if new == PN.ACCEPTED:
        course_debited = _accept(db, pn, user.id, update, update.body_annotation_id, skip_assessment)
    elif new == PN.PENDING:
        session_returned = _back_to_pending(db, pn, user.id)
    elif new == PN.IN_PROGRESS:
        pn.status = PN.IN_PROGRESS
    elif new == PN.COMPLETED:
        _complete(db, pn, user.id, update.soap_notes)
    elif new == PN.CANCELLED:
        session_returned = _cancel(db, pn, user.id, update.cancellation_reason or update.reason)

    _record_history(db, pn, old, new, user.id, update.reason or update.cancellation_reason)
    db.flush()
    logger.info(f"PN {pn.pn_code}: {old.value} -> {new.value} by user {user.id}")
    return {
        "old_status": old.value,
        "new_status": new.value,
        "course_debited": course_debited,
        "session_returned": session_returned,
    }


def reverse_pn_status(db: Session, pn: models.PNCase, reason: str, user: models.User) -> Dict[str, Any]:
    """COMPLETED -> ACCEPTED; the only way out of COMPLETED"""
    if user.role != models.UserRole.ADMIN:
        raise PermissionDeniedError("Only administrators can reverse a case status")
    if not reason or not reason.strip():
        raise WorkflowError("A reason is required", required_fields=["reason"])
    if pn.status != PN.COMPLETED:
        raise WorkflowError("Only COMPLETED cases can be reversed")
    pn.status = PN.ACCEPTED
    pn.completed_at = None
    pn.is_reversed = True
    pn.last_reversal_reason = reason
    pn.last_reversed_at = datetime.now()
    _record_history(db, pn, PN.COMPLETED, PN.ACCEPTED, user.id, reason, is_reversal=True)
    db.flush()
    logger.info(f"PN {pn.pn_code} reversed to ACCEPTED by user {user.id}")
    return {"old_status": PN.COMPLETED.value, "new_status": PN.ACCEPTED.value}


# ==================== APPOINTMENTS ====================

def _status_update(status: models.PNStatus, assessment: Optional[schemas.PTAssessment] = None,
                   **extra) -> schemas.PNStatusUpdate:
    data = assessment.model_dump(include=set(ASSESSMENT_FIELDS)) if assessment is not None else {}
    data.update({k: v for k, v in extra.items() if v is not None})
    return schemas.PNStatusUpdate(status=status, **data)


def complete_appointment(db: Session, appt: models.Appointment, completion: schemas.AppointmentCompletion,
                         user: models.User) -> Dict[str, Any]:
    """Complete an appointment and accept its PN case in the same transaction"""
    if appt.status == models.AppointmentStatus.CANCELLED:
        raise WorkflowError("Cannot complete a cancelled appointment")
    result = {"appointment_id": appt.id, "pn_status": None, "body_annotation_id": None,
              "bodycheck_id": None, "course_debited": False}

    pn = appt.pn_case
    if pn is None:
        appt.status = models.AppointmentStatus.COMPLETED
        if appt.course_id:
            result["course_debited"] = debit_course_session(
                db, appt.course_id, user.id, appointment_id=appt.id, notes=f"Session used for appointment {appt.id}")
        db.flush()
        return result

    if pn.status == PN.CANCELLED:
        raise WorkflowError("The linked PN case is cancelled")
    if pn.status != PN.PENDING:
        appt.status = models.AppointmentStatus.COMPLETED
        course_id = effective_course_id(db, pn)
        if course_id and pn.status == PN.ACCEPTED:
            result["course_debited"] = debit_course_session(db, course_id, user.id, pn_id=pn.id, appointment_id=appt.id)
        result["pn_status"] = pn.status.value
        db.flush()
        return result

    appt_type = (appt.appointment_type or "").strip().lower()
    main_clinic = crud.is_main_clinic(appt.clinic)
    annotation_id = completion.body_annotation_id
    skip_assessment = False

    if main_clinic and appt_type == INITIAL_ASSESSMENT:
        if completion.body_annotation is None and not annotation_id:
            raise WorkflowError("A body annotation is required for an initial assessment",
                                required_fields=["body_annotation"])
        if completion.body_annotation is not None:
            annotation = crud.create_body_annotation(
                db, completion.body_annotation.model_copy(update={"entity_type": "pn_case"}),
                user.id, entity_id=pn.id, commit=False)
            annotation_id = annotation.id
    elif appt_type == BODY_CHECK:
        bodycheck = models.Bodycheck(pn_id=pn.id, patient_id=appt.patient_id, appointment_id=appt.id,
                                     findings=completion.bodycheck_findings or {}, created_by=user.id)
        db.add(bodycheck)
        db.flush()
        result["bodycheck_id"] = bodycheck.id
        skip_assessment = True

    outcome = change_pn_status(
        db, pn, _status_update(PN.ACCEPTED, completion.assessment, body_annotation_id=annotation_id,
                               reason=f"Appointment {appt.id} completed"),
        user, skip_assessment=skip_assessment,
    )
    appt.status = models.AppointmentStatus.COMPLETED
    if annotation_id:
        appt.body_annotation_id = annotation_id
    db.flush()
    result.update(pn_status=pn.status.value, body_annotation_id=annotation_id,
                  course_debited=outcome["course_debited"])
    return result


def sync_appointment_status(db: Session, appt: models.Appointment, old_status: models.AppointmentStatus,
                            update: schemas.AppointmentUpdate, user: models.User) -> bool:
    """Carry an appointment status change over to its PN case and course.

    Returns True when the linked PN case changed.
    """
    new_status = appt.status
    if new_status == old_status:
        return False
    pn = appt.pn_case

    if new_status == models.AppointmentStatus.SCHEDULED and old_status == models.AppointmentStatus.COMPLETED:
        if user.role != models.UserRole.ADMIN:
            raise PermissionDeniedError("Only administrators can reopen a completed appointment")

    if pn is None:
        if appt.course_id and new_status == models.AppointmentStatus.COMPLETED:
            debit_course_session(db, appt.course_id, user.id, appointment_id=appt.id)
        elif new_status in (models.AppointmentStatus.SCHEDULED, models.AppointmentStatus.CANCELLED):
            _return_all(db, user.id, f"Session returned for appointment {appt.id}", appointment_id=appt.id)
        return False

    if pn.status == PN.COMPLETED:
        raise WorkflowError(f"PN case {pn.pn_code} is already COMPLETED")
    if pn.status == PN.CANCELLED:
        return False

    if new_status == models.AppointmentStatus.COMPLETED:
        if pn.status == PN.PENDING:
            change_pn_status(db, pn, _status_update(PN.ACCEPTED, update, reason=f"Appointment {appt.id} completed"), user)
            return True
        course_id = effective_course_id(db, pn)
        if course_id and pn.status == PN.ACCEPTED:
            debit_course_session(db, course_id, user.id, pn_id=pn.id, appointment_id=appt.id)
        return False

    if new_status == models.AppointmentStatus.SCHEDULED and old_status == models.AppointmentStatus.COMPLETED:
        if pn.status == PN.ACCEPTED:
            change_pn_status(db, pn, _status_update(PN.PENDING, reason=f"Appointment {appt.id} reopened"), user)
            return True
        return False

    if new_status == models.AppointmentStatus.CANCELLED:
        reason = appt.cancellation_reason or update.cancellation_reason
        change_pn_status(db, pn, _status_update(PN.CANCELLED, cancellation_reason=reason), user)
        return True
    return False


def cancel_appointment(db: Session, appt: models.Appointment, reason: Optional[str], user: models.User) -> bool:
    """Soft-cancel; returns True when the linked PN case was cancelled too"""
    if appt.status == models.AppointmentStatus.CANCELLED:
        raise WorkflowError("Appointment is already cancelled")
    old_status = appt.status
    appt.status = models.AppointmentStatus.CANCELLED
    appt.cancellation_reason = reason or DEFAULT_CANCEL_REASON
    appt.cancelled_at = datetime.now()
    appt.cancelled_by = user.id
    pn = appt.pn_case
    if pn is not None and pn.status in (PN.PENDING, PN.ACCEPTED, PN.IN_PROGRESS):
        change_pn_status(db, pn, _status_update(PN.CANCELLED, cancellation_reason=appt.cancellation_reason), user)
        return True
    if pn is None:
        _return_all(db, user.id, f"Session returned for appointment {appt.id}", appointment_id=appt.id)
    logger.debug(f"Appointment {appt.id} cancelled from {old_status.value}")
    return False

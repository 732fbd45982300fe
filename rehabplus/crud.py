# rehabplus/crud.py
import logging
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from . import identifiers, models, schemas
from .compliance_logger import compliance_logger
from .config import get_settings
from .errors import ConflictError, CRUDError, NotFoundError, PermissionDeniedError, WorkflowError
from .security import get_client_ip, get_password_hash

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
SLOT_DAY_START = time(8, 0)
SLOT_DAY_END = time(20, 0)


def money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def as_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def _month_bounds(day: date):
    start = day.replace(day=1)
    end = (start + timedelta(days=32)).replace(day=1)
    return start, end


# ==================== AUDIT ====================

def create_audit_log(
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    details: Optional[str] = None,
    request=None,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
) -> None:
    """Record an audit event; never raises"""
    try:
        compliance_logger.log_event(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            old_values=old_values,
            new_values=new_values,
            ip_address=get_client_ip(request) if request is not None else None,
            user_agent=request.headers.get("user-agent") if request is not None else None,
        )
    except Exception as e:
        logger.error(f"Failed to log audit event {action} {entity_type}: {e}")


# ==================== CLINICS ====================

def get_clinic(db: Session, clinic_id: int) -> Optional[models.Clinic]:
    return db.get(models.Clinic, clinic_id)


def get_clinic_by_code(db: Session, code: str) -> Optional[models.Clinic]:
    return db.query(models.Clinic).filter(models.Clinic.code == code).first()


def get_main_clinic(db: Session) -> Optional[models.Clinic]:
    return get_clinic_by_code(db, get_settings().default_clinic_code)


def is_main_clinic(clinic: Optional[models.Clinic]) -> bool:
    return bool(clinic) and clinic.code == get_settings().default_clinic_code


def list_clinics(db: Session, clinic_ids: Optional[List[int]] = None, include_inactive: bool = False) -> List[models.Clinic]:
    query = db.query(models.Clinic)
    if clinic_ids is not None:
        query = query.filter(models.Clinic.id.in_(clinic_ids))
    if not include_inactive:
        query = query.filter(models.Clinic.active.is_(True))
    return query.order_by(models.Clinic.code).all()


def create_clinic(db: Session, clinic: schemas.ClinicCreate) -> models.Clinic:
    if get_clinic_by_code(db, clinic.code):
        raise ConflictError(f"Clinic code {clinic.code} already exists")
    db_clinic = models.Clinic(**clinic.model_dump())
    try:
        db.add(db_clinic)
        db.commit()
        db.refresh(db_clinic)
        return db_clinic
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating clinic: {e}")
        raise CRUDError("Could not create clinic")


def update_clinic(db: Session, clinic_id: int, clinic_update: schemas.ClinicUpdate) -> models.Clinic:
    db_clinic = get_clinic(db, clinic_id)
    if not db_clinic:
        raise NotFoundError("Clinic not found")
    for key, value in clinic_update.model_dump(exclude_unset=True).items():
        setattr(db_clinic, key, value)
    db.commit()
    db.refresh(db_clinic)
    return db_clinic


def set_clinic_active(db: Session, clinic_id: int, active: bool) -> models.Clinic:
    db_clinic = get_clinic(db, clinic_id)
    if not db_clinic:
        raise NotFoundError("Clinic not found")
    db_clinic.active = active
    db.commit()
    return db_clinic


def clinic_details(db: Session, clinic_id: int) -> Dict[str, Any]:
    db_clinic = get_clinic(db, clinic_id)
    if not db_clinic:
        raise NotFoundError("Clinic not found")
    return {
        "clinic": schemas.ClinicResponse.model_validate(db_clinic).model_dump(),
        "patient_count": db.query(func.count(models.Patient.id)).filter(models.Patient.clinic_id == clinic_id).scalar(),
        "user_count": db.query(func.count(models.User.id)).filter(models.User.clinic_id == clinic_id).scalar(),
        "pn_case_count": db.query(func.count(models.PNCase.id)).filter(
            or_(models.PNCase.source_clinic_id == clinic_id, models.PNCase.target_clinic_id == clinic_id)
        ).scalar(),
        "appointment_count": db.query(func.count(models.Appointment.id)).filter(models.Appointment.clinic_id == clinic_id).scalar(),
    }


# ==================== USERS ====================

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.get(models.User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(func.lower(models.User.email) == (email or "").strip().lower()).first()


def user_to_dict(user: models.User, include_grants: bool = True) -> Dict[str, Any]:
    data = schemas.UserResponse.model_validate(user).model_dump()
    data["role"] = user.role.value
    data["name"] = user.full_name
    data["clinic_code"] = user.clinic.code if user.clinic else None
    data["clinic_name"] = user.clinic.name if user.clinic else None
    if include_grants:
        data["clinic_grants"] = [
            {"clinic_id": g.clinic_id, "clinic_code": g.clinic.code, "clinic_name": g.clinic.name}
            for g in user.grants
        ]
    return data


def list_users(db: Session, role: Optional[str] = None, clinic_id: Optional[int] = None) -> List[models.User]:
    query = db.query(models.User).options(joinedload(models.User.clinic))
    if role:
        query = query.filter(models.User.role == role)
    if clinic_id:
        query = query.filter(models.User.clinic_id == clinic_id)
    return query.order_by(models.User.first_name, models.User.last_name).all()


def create_user(db: Session, user: schemas.UserCreate) -> models.User:
    if get_user_by_email(db, user.email):
        raise ConflictError("Email already registered")
    if user.clinic_id and not get_clinic(db, user.clinic_id):
        raise NotFoundError("Clinic not found")
    db_user = models.User(
        email=user.email.lower(),
        password_hash=get_password_hash(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
        clinic_id=user.clinic_id,
        phone=user.phone,
        license_number=user.license_number,
        active=True,
    )
    try:
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        logger.info(f"Created user {db_user.id} ({db_user.role.value})")
        return db_user
    except IntegrityError:
        db.rollback()
        raise ConflictError("Email already registered")


def update_user(db: Session, user_id: int, user_update: schemas.UserUpdate) -> models.User:
    db_user = get_user(db, user_id)
    if not db_user:
        raise NotFoundError("User not found")
    update_data = user_update.model_dump(exclude_unset=True)
    if "email" in update_data and update_data["email"]:
        existing = get_user_by_email(db, update_data["email"])
        if existing and existing.id != user_id:
            raise ConflictError("Email already registered")
        update_data["email"] = update_data["email"].lower()
    if update_data.get("password"):
        db_user.password_hash = get_password_hash(update_data.pop("password"))
    update_data.pop("password", None)
    for key, value in update_data.items():
        setattr(db_user, key, value)
    db.commit()
    db.refresh(db_user)
    return db_user


def set_user_active(db: Session, user_id: int, active: bool, acting_user_id: int) -> models.User:
    if user_id == acting_user_id and not active:
        raise CRUDError("You cannot deactivate your own account")
    db_user = get_user(db, user_id)
    if not db_user:
        raise NotFoundError("User not found")
    db_user.active = active
    db.commit()
    return db_user


def add_clinic_grant(db: Session, user_id: int, clinic_id: int, granted_by: int) -> models.UserClinicGrant:
    if not get_user(db, user_id):
        raise NotFoundError("User not found")
    if not get_clinic(db, clinic_id):
        raise NotFoundError("Clinic not found")
    existing = db.query(models.UserClinicGrant).filter_by(user_id=user_id, clinic_id=clinic_id).first()
    if existing:
        raise ConflictError("Grant already exists")
    grant = models.UserClinicGrant(user_id=user_id, clinic_id=clinic_id, granted_by=granted_by)
    db.add(grant)
    db.commit()
    db.refresh(grant)
    return grant


def remove_clinic_grant(db: Session, user_id: int, clinic_id: int) -> None:
    grant = db.query(models.UserClinicGrant).filter_by(user_id=user_id, clinic_id=clinic_id).first()
    if not grant:
        raise NotFoundError("Grant not found")
    db.delete(grant)
    db.commit()


# ==================== PATIENTS ====================

def get_patient(db: Session, patient_id: int) -> Optional[models.Patient]:
    return db.get(models.Patient, patient_id)


def find_patient_by_pid(db: Session, pid: str) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.pid == identifiers.normalize_thai_id(pid)).first()


def find_patient_by_passport(db: Session, passport_no: str) -> Optional[models.Patient]:
    cleaned = passport_no.replace(" ", "").upper()
    return db.query(models.Patient).filter(func.upper(models.Patient.passport_no) == cleaned).first()


def patient_to_dict(patient: models.Patient) -> Dict[str, Any]:
    data = schemas.PatientResponse.model_validate(patient).model_dump()
    data["clinic_code"] = patient.clinic.code if patient.clinic else None
    data["clinic_name"] = patient.clinic.name if patient.clinic else None
    data["full_name"] = patient.full_name
    return data


def _patient_scope(query, clinic_ids: Optional[List[int]]):
    if clinic_ids is not None:
        query = query.filter(models.Patient.clinic_id.in_(clinic_ids))
    return query


def list_patients(
    db: Session,
    clinic_ids: Optional[List[int]],
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    clinic_id: Optional[int] = None,
) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    query = _patient_scope(db.query(models.Patient).options(joinedload(models.Patient.clinic)), clinic_ids)
    if clinic_id:
        query = query.filter(models.Patient.clinic_id == clinic_id)
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(
            models.Patient.hn.ilike(term),
            models.Patient.pt_number.ilike(term),
            models.Patient.first_name.ilike(term),
            models.Patient.last_name.ilike(term),
            models.Patient.diagnosis.ilike(term),
        ))
    total = query.count()
    patients = query.order_by(models.Patient.created_at.desc(), models.Patient.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "patients": [patient_to_dict(p) for p in patients],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0},
    }


def search_patients(db: Session, clinic_ids: Optional[List[int]], q: str) -> List[Dict[str, Any]]:
    q = (q or "").strip()
    if len(q) < 2:
        return []
    term = f"%{q}%"
    query = _patient_scope(db.query(models.Patient), clinic_ids).filter(or_(
        models.Patient.hn.ilike(term),
        models.Patient.first_name.ilike(term),
        models.Patient.last_name.ilike(term),
        models.Patient.pid.ilike(term),
        models.Patient.phone.ilike(term),
    ))
    return [
        {"id": p.id, "hn": p.hn, "pt_number": p.pt_number, "first_name": p.first_name, "last_name": p.last_name,
         "dob": p.dob, "phone": p.phone, "clinic_id": p.clinic_id}
        for p in query.order_by(models.Patient.first_name).limit(20).all()
    ]


def _validate_identity(pid: Optional[str], passport_no: Optional[str]) -> Optional[str]:
    if pid:
        if not identifiers.validate_thai_id(pid):
            raise CRUDError("Invalid Thai national ID")
        pid = identifiers.normalize_thai_id(pid)
    if passport_no and not identifiers.validate_passport(passport_no):
        raise CRUDError("Invalid passport number")
    return pid


def create_patient(db: Session, patient: schemas.PatientCreate, clinic_id: int, created_by: int) -> models.Patient:
    """Register a patient; the PTHN is issued inside the same transaction"""
    pid = _validate_identity(patient.pid, patient.passport_no)
    if pid and find_patient_by_pid(db, pid):
        raise ConflictError("A patient with this national ID already exists")
    if not get_clinic(db, clinic_id):
        raise NotFoundError("Clinic not found")

    data = patient.model_dump(exclude={"clinic_id"})
    data["pid"] = pid
    if data.get("passport_no"):
        data["passport_no"] = data["passport_no"].replace(" ", "").upper()
    try:
        hn = identifiers.generate_pthn(db)
        db_patient = models.Patient(
            **data,
            hn=hn,
            pt_number=identifiers.generate_pt_number(),
            clinic_id=clinic_id,
            created_by=created_by,
        )
        db.add(db_patient)
        db.commit()
        db.refresh(db_patient)
        logger.info(f"Registered patient {db_patient.id} as {hn}")
        return db_patient
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Patient registration conflict: {e}")
        raise ConflictError("A patient with this identifier already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating patient: {e}")
        raise CRUDError("Could not create patient")


def update_patient(db: Session, patient_id: int, patient_update: schemas.PatientUpdate) -> models.Patient:
    db_patient = get_patient(db, patient_id)
    if not db_patient:
        raise NotFoundError("Patient not found")
    update_data = patient_update.model_dump(exclude_unset=True)
    if not update_data:
        raise CRUDError("No fields to update")
    if "pid" in update_data or "passport_no" in update_data:
        pid = _validate_identity(update_data.get("pid"), update_data.get("passport_no"))
        if "pid" in update_data:
            if pid:
                existing = find_patient_by_pid(db, pid)
                if existing and existing.id != patient_id:
                    raise ConflictError("A patient with this national ID already exists")
            update_data["pid"] = pid
    for key, value in update_data.items():
        setattr(db_patient, key, value)
    try:
        db.commit()
        db.refresh(db_patient)
        return db_patient
    except IntegrityError:
        db.rollback()
        raise ConflictError("A patient with this identifier already exists")


def delete_patient(db: Session, patient_id: int) -> None:
    db_patient = get_patient(db, patient_id)
    if not db_patient:
        raise NotFoundError("Patient not found")
    pn_count = db.query(func.count(models.PNCase.id)).filter(models.PNCase.patient_id == patient_id).scalar()
    if pn_count:
        raise CRUDError("Cannot delete patient with existing PN cases")
    db.query(models.Appointment).filter(models.Appointment.patient_id == patient_id).delete(synchronize_session=False)
    db.delete(db_patient)
    db.commit()


# ==================== BODY ANNOTATIONS ====================

def create_body_annotation(
    db: Session,
    annotation: schemas.BodyAnnotationCreate,
    created_by: int,
    entity_id: Optional[int] = None,
    commit: bool = True,
) -> models.BodyAnnotation:
    data = annotation.model_dump()
    if entity_id is not None:
        data["entity_id"] = entity_id
    if data.get("entity_id") is None:
        raise CRUDError("entity_id is required")
    db_annotation = models.BodyAnnotation(**data, created_by=created_by)
    db.add(db_annotation)
    if commit:
        db.commit()
        db.refresh(db_annotation)
    else:
        db.flush()
    return db_annotation


def get_body_annotation(db: Session, annotation_id: int) -> Optional[models.BodyAnnotation]:
    return db.get(models.BodyAnnotation, annotation_id)


def list_body_annotations(db: Session, entity_type: Optional[str], entity_id: Optional[int]) -> List[models.BodyAnnotation]:
    query = db.query(models.BodyAnnotation)
    if entity_type:
        query = query.filter(models.BodyAnnotation.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(models.BodyAnnotation.entity_id == entity_id)
    return query.order_by(models.BodyAnnotation.created_at.desc(), models.BodyAnnotation.id.desc()).all()


def update_body_annotation(db: Session, annotation_id: int, update: schemas.BodyAnnotationUpdate) -> models.BodyAnnotation:
    db_annotation = get_body_annotation(db, annotation_id)
    if not db_annotation:
        raise NotFoundError("Body annotation not found")
    for key, value in update.model_dump(exclude_unset=True).items():
        setattr(db_annotation, key, value)
    db.commit()
    db.refresh(db_annotation)
    return db_annotation


def delete_body_annotation(db: Session, annotation_id: int) -> None:
    db_annotation = get_body_annotation(db, annotation_id)
    if not db_annotation:
        raise NotFoundError("Body annotation not found")
    db.query(models.PNCase).filter(models.PNCase.body_annotation_id == annotation_id).update(
        {models.PNCase.body_annotation_id: None}, synchronize_session=False)
    db.query(models.Appointment).filter(models.Appointment.body_annotation_id == annotation_id).update(
        {models.Appointment.body_annotation_id: None}, synchronize_session=False)
    db.delete(db_annotation)
    db.commit()


def annotation_to_dict(annotation: models.BodyAnnotation) -> Dict[str, Any]:
    return {
        "id": annotation.id,
        "entity_type": annotation.entity_type,
        "entity_id": annotation.entity_id,
        "strokes_json": annotation.strokes_json,
        "image_width": annotation.image_width,
        "image_height": annotation.image_height,
        "constant_pain": annotation.constant_pain,
        "intermittent_pain": annotation.intermittent_pain,
        "pain_type": annotation.pain_type,
        "aggravation": annotation.aggravation,
        "easing_factor": annotation.easing_factor,
        "severity": annotation.severity,
        "notes": annotation.notes,
        "created_by": annotation.created_by,
        "created_at": annotation.created_at,
    }


# ==================== APPOINTMENTS ====================

def get_appointment(db: Session, appointment_id: int) -> Optional[models.Appointment]:
    return db.get(models.Appointment, appointment_id)


def find_conflicts(
    db: Session,
    pt_id: int,
    appointment_date: date,
    start_time: time,
    end_time: time,
    exclude_id: Optional[int] = None,
) -> List[models.Appointment]:
    """Non-cancelled appointments of the same PT that overlap [start, end)"""
    query = db.query(models.Appointment).filter(
        models.Appointment.pt_id == pt_id,
        models.Appointment.appointment_date == appointment_date,
        models.Appointment.status != models.AppointmentStatus.CANCELLED,
        models.Appointment.start_time < end_time,
        models.Appointment.end_time > start_time,
    )
    if exclude_id:
        query = query.filter(models.Appointment.id != exclude_id)
    return query.order_by(models.Appointment.start_time).all()


def available_slots(db: Session, pt_id: int, appointment_date: date, duration: int = 30) -> List[Dict[str, Any]]:
    duration = max(15, duration)
    booked = find_conflicts(db, pt_id, appointment_date, SLOT_DAY_START, SLOT_DAY_END)
    slots = []
    cursor = datetime.combine(appointment_date, SLOT_DAY_START)
    day_end = datetime.combine(appointment_date, SLOT_DAY_END)
    while cursor + timedelta(minutes=duration) <= day_end:
        start, end = cursor.time(), (cursor + timedelta(minutes=duration)).time()
        taken = any(a.start_time < end and a.end_time > start for a in booked)
        slots.append({"start_time": start.strftime("%H:%M"), "end_time": end.strftime("%H:%M"), "available": not taken})
        cursor += timedelta(minutes=30)
    return slots


def appointment_to_dict(appt: models.Appointment) -> Dict[str, Any]:
    patient = appt.patient
    course = appt.course
    return {
        "id": appt.id,
        "booking_type": appt.booking_type.value,
        "patient_id": appt.patient_id,
        "patient_name": appt.display_name,
        "patient_hn": patient.hn if patient else None,
        "patient_phone": patient.phone if patient else appt.walk_in_phone,
        "patient_email": patient.email if patient else appt.walk_in_email,
        "walk_in_name": appt.walk_in_name,
        "walk_in_email": appt.walk_in_email,
        "walk_in_phone": appt.walk_in_phone,
        "walk_in_display_id": identifiers.walk_in_display_id(appt.id) if appt.booking_type == models.BookingType.WALK_IN else None,
        "pt_id": appt.pt_id,
        "pt_name": appt.pt.full_name if appt.pt else None,
        "clinic_id": appt.clinic_id,
        "clinic_code": appt.clinic.code if appt.clinic else None,
        "clinic_name": appt.clinic.name if appt.clinic else None,
        "clinic_email": appt.clinic.email if appt.clinic else None,
        "clinic_address": appt.clinic.address if appt.clinic else None,
        "appointment_date": appt.appointment_date,
        "start_time": appt.start_time.strftime("%H:%M"),
        "end_time": appt.end_time.strftime("%H:%M"),
        "status": appt.status.value,
        "appointment_type": appt.appointment_type,
        "reason": appt.reason,
        "notes": appt.notes,
        "pn_case_id": appt.pn_case_id,
        "pn_code": appt.pn_case.pn_code if appt.pn_case else None,
        "pn_status": appt.pn_case.status.value if appt.pn_case else None,
        "course_id": appt.course_id,
        "course_code": course.course_code if course else None,
        "course_name": course.course_name if course else None,
        "course_remaining_sessions": course.remaining_sessions if course else None,
        "body_annotation_id": appt.body_annotation_id,
        "calendar_event_id": appt.calendar_event_id,
        "cancellation_reason": appt.cancellation_reason,
        "cancelled_at": appt.cancelled_at,
    }


def list_appointments(
    db: Session,
    clinic_ids: Optional[List[int]],
    pt_id: Optional[int] = None,
    clinic_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[str] = None,
    patient_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    query = db.query(models.Appointment).options(
        joinedload(models.Appointment.patient),
        joinedload(models.Appointment.pt),
        joinedload(models.Appointment.clinic),
        joinedload(models.Appointment.course),
        joinedload(models.Appointment.pn_case),
    )
    if clinic_ids is not None:
        query = query.filter(models.Appointment.clinic_id.in_(clinic_ids))
    if pt_id:
        query = query.filter(models.Appointment.pt_id == pt_id)
    if clinic_id:
        query = query.filter(models.Appointment.clinic_id == clinic_id)
    if patient_id:
        query = query.filter(models.Appointment.patient_id == patient_id)
    if start_date:
        query = query.filter(models.Appointment.appointment_date >= start_date)
    if end_date:
        query = query.filter(models.Appointment.appointment_date <= end_date)
    if status:
        query = query.filter(models.Appointment.status == status.upper())
    else:
        query = query.filter(models.Appointment.status != models.AppointmentStatus.CANCELLED)
    appointments = query.order_by(models.Appointment.appointment_date, models.Appointment.start_time).all()
    return [appointment_to_dict(a) for a in appointments]


def _check_slot(db: Session, pt_id: int, appointment_date: date, start_time: time, end_time: time,
                exclude_id: Optional[int] = None) -> None:
    if end_time <= start_time:
        raise CRUDError("end_time must be after start_time")
    conflicts = find_conflicts(db, pt_id, appointment_date, start_time, end_time, exclude_id)
    if conflicts:
        c = conflicts[0]
        raise ConflictError(
            f"Time slot conflicts with appointment {c.id} "
            f"({c.start_time.strftime('%H:%M')}-{c.end_time.strftime('%H:%M')})"
        )


def _check_course(db: Session, course_id: Optional[int], patient_id: Optional[int], on_date: date) -> None:
    if not course_id:
        return
    course = get_course(db, course_id)
    if not course or not patient_id or not is_course_linkable(db, course, patient_id, on_date):
        raise CRUDError("Course is not available for this patient")


def create_appointment(db: Session, appointment: schemas.AppointmentCreate, created_by: int) -> models.Appointment:
    """Book an appointment (and its PENDING PN case when requested); the caller commits"""
    pt = get_user(db, appointment.pt_id)
    if not pt or not pt.active:
        raise NotFoundError("Physiotherapist not found")
    if not get_clinic(db, appointment.clinic_id):
        raise NotFoundError("Clinic not found")

    patient = None
    if appointment.booking_type == models.BookingType.OLD_PATIENT:
        patient = get_patient(db, appointment.patient_id)
        if not patient:
            raise NotFoundError("Patient not found")

    _check_slot(db, appointment.pt_id, appointment.appointment_date, appointment.start_time, appointment.end_time)
    _check_course(db, appointment.course_id, patient.id if patient else None, appointment.appointment_date)

    pn_case_id = appointment.pn_case_id
    if pn_case_id:
        pn = get_pn_case(db, pn_case_id)
        if not pn or (patient and pn.patient_id != patient.id):
            raise NotFoundError("PN case not found for this patient")
    elif appointment.auto_create_pn and patient is not None:
        pn = create_pn_case(
            db, patient,
            target_clinic_id=appointment.clinic_id,
            diagnosis=appointment.pn_diagnosis or patient.diagnosis,
            purpose=appointment.pn_purpose or appointment.appointment_type or "Physiotherapy",
            created_by=created_by,
            course_id=appointment.course_id,
            notes=f"Created from appointment on {appointment.appointment_date.isoformat()}",
        )
        pn_case_id = pn.id

    walk_in = appointment.booking_type == models.BookingType.WALK_IN
    db_appt = models.Appointment(
        booking_type=appointment.booking_type,
        patient_id=patient.id if patient else None,
        walk_in_name=appointment.walk_in_name.strip() if walk_in else None,
        walk_in_email=appointment.walk_in_email if walk_in else None,
        walk_in_phone=appointment.walk_in_phone if walk_in else None,
        pt_id=appointment.pt_id,
        clinic_id=appointment.clinic_id,
        appointment_date=appointment.appointment_date,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        status=models.AppointmentStatus.SCHEDULED,
        appointment_type=appointment.appointment_type,
        reason=appointment.reason,
        notes=appointment.notes,
        pn_case_id=pn_case_id,
        course_id=appointment.course_id,
        created_by=created_by,
    )
    db.add(db_appt)
    db.flush()
    logger.info(f"Booked appointment {db_appt.id} for PT {db_appt.pt_id} on {db_appt.appointment_date}")
    return db_appt


APPOINTMENT_EDITABLE_FIELDS = (
    "booking_type", "patient_id", "walk_in_name", "walk_in_email", "walk_in_phone", "pt_id",
    "appointment_date", "start_time", "end_time", "appointment_type", "reason", "notes", "course_id",
)


def apply_appointment_update(db: Session, appt: models.Appointment, update: schemas.AppointmentUpdate,
                             user_id: int) -> bool:
    """Apply edits to an appointment; returns True when it was rescheduled. The caller commits."""
    data = update.model_dump(exclude_unset=True)
    changes = {k: v for k, v in data.items() if k in APPOINTMENT_EDITABLE_FIELDS}
    if not changes and "status" not in data:
        raise CRUDError("No fields to update")

    new_date = changes.get("appointment_date", appt.appointment_date)
    new_start = changes.get("start_time", appt.start_time)
    new_end = changes.get("end_time", appt.end_time)
    new_pt = changes.get("pt_id", appt.pt_id)
    rescheduled = (new_date, new_start, new_end, new_pt) != (appt.appointment_date, appt.start_time, appt.end_time, appt.pt_id)
    if rescheduled:
        _check_slot(db, new_pt, new_date, new_start, new_end, exclude_id=appt.id)

    booking_type = changes.get("booking_type", appt.booking_type)
    if booking_type == models.BookingType.OLD_PATIENT:
        patient_id = changes.get("patient_id", appt.patient_id)
        if not patient_id or not get_patient(db, patient_id):
            raise CRUDError("patient_id is required for OLD_PATIENT bookings")
    elif not (changes.get("walk_in_name", appt.walk_in_name) or "").strip():
        raise CRUDError("walk_in_name is required for WALK_IN bookings")

    if "course_id" in changes and changes["course_id"] != appt.course_id:
        _check_course(db, changes["course_id"], changes.get("patient_id", appt.patient_id), new_date)

    for key, value in changes.items():
        setattr(appt, key, value)

    if update.status is not None and update.status != appt.status:
        appt.status = update.status
        if update.status == models.AppointmentStatus.CANCELLED:
            appt.cancellation_reason = update.cancellation_reason or appt.cancellation_reason
            appt.cancelled_at = datetime.now()
            appt.cancelled_by = user_id
    db.flush()
    return rescheduled


# ==================== PN CASES ====================

def get_pn_case(db: Session, pn_id: int) -> Optional[models.PNCase]:
    return db.get(models.PNCase, pn_id)


def create_pn_case(
    db: Session,
    patient: models.Patient,
    target_clinic_id: int,
    diagnosis: str,
    purpose: str,
    created_by: int,
    course_id: Optional[int] = None,
    chief_complaint: Optional[str] = None,
    referring_doctor: Optional[str] = None,
    notes: Optional[str] = None,
) -> models.PNCase:
    """Add a PENDING case to the session; the caller commits"""
    pn = models.PNCase(
        pn_code=identifiers.generate_pn_code(db),
        patient_id=patient.id,
        diagnosis=diagnosis,
        purpose=purpose,
        chief_complaint=chief_complaint,
        status=models.PNStatus.PENDING,
        source_clinic_id=patient.clinic_id,
        target_clinic_id=target_clinic_id,
        course_id=course_id,
        referring_doctor=referring_doctor,
        notes=notes,
        created_by=created_by,
    )
    db.add(pn)
    db.flush()
    db.add(models.PNStatusHistory(pn_id=pn.id, old_status=None, new_status=models.PNStatus.PENDING.value,
                                  changed_by=created_by, change_reason="Case created"))
    return pn


def pn_to_dict(pn: models.PNCase) -> Dict[str, Any]:
    patient = pn.patient
    course = pn.course
    return {
        "id": pn.id,
        "pn_code": pn.pn_code,
        "patient_id": pn.patient_id,
        "patient_name": patient.full_name if patient else None,
        "patient_hn": patient.hn if patient else None,
        "diagnosis": pn.diagnosis,
        "purpose": pn.purpose,
        "chief_complaint": pn.chief_complaint,
        "status": pn.status.value,
        "source_clinic_id": pn.source_clinic_id,
        "source_clinic_code": pn.source_clinic.code if pn.source_clinic else None,
        "target_clinic_id": pn.target_clinic_id,
        "target_clinic_code": pn.target_clinic.code if pn.target_clinic else None,
        "course_id": pn.course_id,
        "course_code": course.course_code if course else None,
        "course_remaining_sessions": course.remaining_sessions if course else None,
        "body_annotation_id": pn.body_annotation_id,
        "bill_id": pn.bill_id,
        "referring_doctor": pn.referring_doctor,
        "notes": pn.notes,
        "pt_diagnosis": pn.pt_diagnosis,
        "pt_chief_complaint": pn.pt_chief_complaint,
        "pt_present_history": pn.pt_present_history,
        "pt_pain_score": pn.pt_pain_score,
        "accepted_at": pn.accepted_at,
        "completed_at": pn.completed_at,
        "cancelled_at": pn.cancelled_at,
        "cancellation_reason": pn.cancellation_reason,
        "is_reversed": pn.is_reversed,
        "last_reversal_reason": pn.last_reversal_reason,
        "created_at": pn.created_at,
    }


def _pn_scope(query, clinic_ids: Optional[List[int]]):
    if clinic_ids is not None:
        query = query.filter(or_(
            models.PNCase.source_clinic_id.in_(clinic_ids),
            models.PNCase.target_clinic_id.in_(clinic_ids),
        ))
    return query


def pn_statistics(db: Session, clinic_ids: Optional[List[int]], today: Optional[date] = None) -> Dict[str, int]:
    today = today or date.today()
    month_start, month_end = _month_bounds(today)
    base = _pn_scope(db.query(models.PNCase), clinic_ids)

    def count(*criteria):
        return base.filter(*criteria).count()

    return {
        "total": count(models.PNCase.status != models.PNStatus.CANCELLED),
        "waiting": count(models.PNCase.status == models.PNStatus.PENDING),
        "accepted": count(models.PNCase.status == models.PNStatus.ACCEPTED),
        "completed": count(models.PNCase.status == models.PNStatus.COMPLETED),
        "this_month": count(models.PNCase.created_at >= datetime.combine(month_start, time.min),
                            models.PNCase.created_at < datetime.combine(month_end, time.min)),
    }


def list_pn_cases(
    db: Session,
    clinic_ids: Optional[List[int]],
    status: Optional[str] = None,
    clinic_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    search: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    query = _pn_scope(db.query(models.PNCase).join(models.Patient, models.PNCase.patient_id == models.Patient.id), clinic_ids)
    if status:
        query = query.filter(models.PNCase.status == status.upper())
    if clinic_id:
        query = query.filter(or_(models.PNCase.source_clinic_id == clinic_id, models.PNCase.target_clinic_id == clinic_id))
    if patient_id:
        query = query.filter(models.PNCase.patient_id == patient_id)
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(
            models.PNCase.pn_code.ilike(term),
            models.PNCase.diagnosis.ilike(term),
            models.Patient.hn.ilike(term),
            models.Patient.first_name.ilike(term),
            models.Patient.last_name.ilike(term),
        ))
    if from_date:
        query = query.filter(models.PNCase.created_at >= datetime.combine(from_date, time.min))
    if to_date:
        query = query.filter(models.PNCase.created_at < datetime.combine(to_date + timedelta(days=1), time.min))
    total = query.count()
    cases = query.order_by(models.PNCase.created_at.desc(), models.PNCase.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "cases": [pn_to_dict(pn) for pn in cases],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0},
        "statistics": pn_statistics(db, clinic_ids),
    }


def update_pn_case(db: Session, pn_id: int, update: schemas.PNCaseUpdate) -> models.PNCase:
    pn = get_pn_case(db, pn_id)
    if not pn:
        raise NotFoundError("PN case not found")
    if pn.status in (models.PNStatus.COMPLETED, models.PNStatus.CANCELLED):
        raise WorkflowError(f"Cannot edit a {pn.status.value} case")
    data = update.model_dump(exclude_unset=True)
    if "course_id" in data and data["course_id"]:
        course = get_course(db, data["course_id"])
        if not course or not is_course_linkable(db, course, pn.patient_id):
            raise CRUDError("Course is not available for this patient")
    for key, value in data.items():
        setattr(pn, key, value)
    db.commit()
    db.refresh(pn)
    return pn


def delete_pn_case(db: Session, pn_id: int) -> None:
    """Delete a PENDING case and everything hanging off it in one transaction.

    Course ledger rows and bills outlive the case; they only lose the link to it.
    """
    pn = get_pn_case(db, pn_id)
    if not pn:
        raise NotFoundError("PN case not found")
    if pn.status != models.PNStatus.PENDING:
        raise WorkflowError("Only PENDING cases can be deleted")
    appointment_ids = [row.id for row in db.query(models.Appointment.id).filter(models.Appointment.pn_case_id == pn_id)]
    try:
        for model, column in ((models.CourseUsageHistory, "pn_id"), (models.Bill, "pn_case_id")):
            db.query(model).filter(getattr(model, column) == pn_id).update({column: None}, synchronize_session=False)
        db.query(models.Bodycheck).filter(models.Bodycheck.pn_id == pn_id).delete(synchronize_session=False)
        if appointment_ids:
            for model in (models.CourseUsageHistory, models.Bill):
                db.query(model).filter(model.appointment_id.in_(appointment_ids)).update(
                    {"appointment_id": None}, synchronize_session=False)
            db.query(models.Bodycheck).filter(models.Bodycheck.appointment_id.in_(appointment_ids)).delete(
                synchronize_session=False)
        db.query(models.BodyAnnotation).filter(
            models.BodyAnnotation.entity_type == "pn_case", models.BodyAnnotation.entity_id == pn_id,
        ).delete(synchronize_session=False)
        for model in (models.PNStatusHistory, models.PNVisit, models.PNSoapNote, models.PNAttachment, models.PTCertificate):
            db.query(model).filter(model.pn_id == pn_id).delete(synchronize_session=False)
        db.query(models.Appointment).filter(models.Appointment.pn_case_id == pn_id).delete(synchronize_session=False)
        db.delete(pn)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting PN case {pn_id}: {e}")
        raise CRUDError("Could not delete PN case")


def visit_to_dict(visit: models.PNVisit) -> Dict[str, Any]:
    return {"id": visit.id, "pn_id": visit.pn_id, "visit_no": visit.visit_no, "visit_date": visit.visit_date,
            "status": visit.status, "chief_complaint": visit.chief_complaint, "subjective": visit.subjective,
            "objective": visit.objective, "assessment": visit.assessment, "plan": visit.plan,
            "treatment_provided": visit.treatment_provided, "therapist_id": visit.therapist_id}


def list_pn_visits(db: Session, pn_id: int) -> List[models.PNVisit]:
    return db.query(models.PNVisit).filter(models.PNVisit.pn_id == pn_id).order_by(models.PNVisit.visit_no).all()


def create_pn_visit(db: Session, pn_id: int, visit: schemas.PNVisitCreate, user_id: int) -> models.PNVisit:
    """Visits are numbered 1, 2, 3... per case"""
    data = visit.model_dump()
    data["therapist_id"] = data["therapist_id"] or user_id
    if not get_user(db, data["therapist_id"]):
        raise NotFoundError("Therapist not found")
    visit_no = (db.query(func.max(models.PNVisit.visit_no)).filter(models.PNVisit.pn_id == pn_id).scalar() or 0) + 1
    db_visit = models.PNVisit(pn_id=pn_id, visit_no=visit_no, **data)
    db.add(db_visit)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Another visit was recorded at the same time, please retry")
    db.refresh(db_visit)
    return db_visit


def pn_detail(db: Session, pn: models.PNCase) -> Dict[str, Any]:
    data = pn_to_dict(pn)
    data["patient"] = patient_to_dict(pn.patient) if pn.patient else None
    data["visits"] = [visit_to_dict(v) for v in list_pn_visits(db, pn.id)]
    data["reports"] = [certificate_to_dict(c) for c in list_certificates(db, pn.id)]
    data["soap_notes"] = [soap_to_dict(s) for s in list_soap_notes(db, pn.id)]
    data["attachments"] = [attachment_to_dict(a) for a in list_attachments(db, pn.id)]
    data["status_history"] = [
        {"old_status": h.old_status, "new_status": h.new_status, "changed_by": h.changed_by,
         "change_reason": h.change_reason, "is_reversal": h.is_reversal, "created_at": h.created_at}
        for h in db.query(models.PNStatusHistory).filter(models.PNStatusHistory.pn_id == pn.id).order_by(models.PNStatusHistory.id)
    ]
    data["appointments"] = [
        appointment_to_dict(a)
        for a in db.query(models.Appointment).filter(models.Appointment.pn_case_id == pn.id).order_by(models.Appointment.appointment_date)
    ]
    return data


def pn_timeline(db: Session, pn: models.PNCase) -> List[Dict[str, Any]]:
    events = [{"type": "CASE_CREATED", "timestamp": pn.created_at, "title": f"Case {pn.pn_code} created",
               "details": pn.diagnosis}]
    for h in db.query(models.PNStatusHistory).filter(models.PNStatusHistory.pn_id == pn.id):
        if h.old_status is None:
            continue
        events.append({"type": "STATUS_CHANGE", "timestamp": h.created_at,
                       "title": f"{h.old_status} -> {h.new_status}", "details": h.change_reason,
                       "is_reversal": h.is_reversal})
    for a in db.query(models.Appointment).filter(models.Appointment.pn_case_id == pn.id):
        events.append({"type": "APPOINTMENT", "timestamp": datetime.combine(a.appointment_date, a.start_time),
                       "title": f"Appointment {a.status.value}", "details": a.appointment_type})
    for v in list_pn_visits(db, pn.id):
        events.append({"type": "VISIT", "timestamp": datetime.combine(v.visit_date, time.min),
                       "title": f"Visit #{v.visit_no}", "details": v.treatment_provided})
    return sorted(events, key=lambda e: e["timestamp"] or datetime.min)


def list_soap_notes(db: Session, pn_id: int) -> List[models.PNSoapNote]:
    return db.query(models.PNSoapNote).filter(models.PNSoapNote.pn_id == pn_id).order_by(models.PNSoapNote.timestamp.desc()).all()


def soap_to_dict(note: models.PNSoapNote) -> Dict[str, Any]:
    return {"id": note.id, "subjective": note.subjective, "objective": note.objective, "assessment": note.assessment,
            "plan": note.plan, "notes": note.notes, "timestamp": note.timestamp, "created_by": note.created_by}


# --- Attachments ---

def create_attachment(db: Session, pn_id: int, file_name: str, file_path: str, mime_type: Optional[str],
                      file_size: int, uploaded_by: int) -> models.PNAttachment:
    attachment = models.PNAttachment(pn_id=pn_id, file_name=file_name, file_path=file_path, mime_type=mime_type,
                                     file_size=file_size, uploaded_by=uploaded_by)
    db.add(attachment)
    db.commit()
    db.refresh(attachment)
    return attachment


def attachment_to_dict(attachment: models.PNAttachment) -> Dict[str, Any]:
    return {"id": attachment.id, "pn_id": attachment.pn_id, "file_name": attachment.file_name,
            "mime_type": attachment.mime_type, "file_size": attachment.file_size,
            "uploaded_by": attachment.uploaded_by, "created_at": attachment.created_at}


def list_attachments(db: Session, pn_id: int) -> List[models.PNAttachment]:
    return db.query(models.PNAttachment).filter(models.PNAttachment.pn_id == pn_id).order_by(models.PNAttachment.id).all()


def delete_attachment(db: Session, attachment_id: int) -> str:
    """Remove the row and return the stored file path"""
    attachment = db.get(models.PNAttachment, attachment_id)
    if not attachment:
        raise NotFoundError("Attachment not found")
    path = attachment.file_path
    db.delete(attachment)
    db.commit()
    return path


# --- Certificates ---

def list_certificates(db: Session, pn_id: int) -> List[models.PTCertificate]:
    return db.query(models.PTCertificate).filter(models.PTCertificate.pn_id == pn_id).order_by(models.PTCertificate.id.desc()).all()


def certificate_to_dict(cert: models.PTCertificate) -> Dict[str, Any]:
    return {"id": cert.id, "pn_id": cert.pn_id, "certificate_type": cert.certificate_type.value,
            "certificate_data": cert.certificate_data, "created_by": cert.created_by, "created_at": cert.created_at}


def create_certificate(db: Session, pn: models.PNCase, certificate: schemas.CertificateCreate, created_by: int) -> models.PTCertificate:
    if pn.status != models.PNStatus.COMPLETED:
        raise WorkflowError("Certificates can only be issued for COMPLETED cases")
    db_cert = models.PTCertificate(pn_id=pn.id, certificate_type=certificate.certificate_type,
                                   certificate_data=certificate.certificate_data, created_by=created_by)
    db.add(db_cert)
    db.commit()
    db.refresh(db_cert)
    return db_cert


def update_certificate(db: Session, certificate_id: int, update: schemas.CertificateUpdate) -> models.PTCertificate:
    db_cert = db.get(models.PTCertificate, certificate_id)
    if not db_cert:
        raise NotFoundError("Certificate not found")
    db_cert.certificate_data = update.certificate_data
    db.commit()
    db.refresh(db_cert)
    return db_cert


# --- Dashboard ---

def dashboard_summary(db: Session, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    month_start, month_end = _month_bounds(today)
    prev_start, _ = _month_bounds(month_start - timedelta(days=1))

    def paid_between(start: datetime, end: datetime):
        count, amount = db.query(func.count(models.Bill.id), func.coalesce(func.sum(models.Bill.total_amount), 0)).filter(
            models.Bill.payment_status == models.PaymentStatus.PAID,
            models.Bill.payment_date >= start,
            models.Bill.payment_date < end,
        ).one()
        return {"count": count, "amount": float(amount or 0)}

    main_clinic = get_main_clinic(db)
    main_id = main_clinic.id if main_clinic else None

    def new_patients(start: date, end: date) -> int:
        return db.query(func.count(models.Patient.id)).filter(
            models.Patient.clinic_id == main_id,
            models.Patient.created_at >= datetime.combine(start, time.min),
            models.Patient.created_at < datetime.combine(end, time.min),
        ).scalar()

    this_month = new_patients(month_start, month_end)
    last_month = new_patients(prev_start, month_start)
    return {
        "bills_paid": paid_between(datetime.combine(month_start, time.min), datetime.combine(month_end, time.min)),
        "bills_today": paid_between(datetime.combine(today, time.min), datetime.combine(today + timedelta(days=1), time.min)),
        "patients_this_month": {
            "count": this_month,
            "change": this_month - last_month,
            "month": today.month,
            "year": today.year,
            "clinic": get_settings().default_clinic_code,
        },
        "total_patients": {
            "count": db.query(func.count(models.Patient.id)).filter(models.Patient.clinic_id == main_id).scalar(),
            "clinic": get_settings().default_clinic_code,
        },
    }


# ==================== COURSES ====================

def list_course_templates(db: Session, active_only: bool = False) -> List[models.CourseTemplate]:
    query = db.query(models.CourseTemplate)
    if active_only:
        query = query.filter(models.CourseTemplate.active.is_(True))
    return query.order_by(models.CourseTemplate.template_name).all()


def get_course_template(db: Session, template_id: int) -> Optional[models.CourseTemplate]:
    return db.get(models.CourseTemplate, template_id)


def template_to_dict(t: models.CourseTemplate) -> Dict[str, Any]:
    return {"id": t.id, "template_name": t.template_name, "description": t.description,
            "total_sessions": t.total_sessions, "default_price": as_float(t.default_price),
            "validity_days": t.validity_days, "active": t.active}


def create_course_template(db: Session, template: schemas.CourseTemplateCreate) -> models.CourseTemplate:
    db_template = models.CourseTemplate(**template.model_dump())
    db.add(db_template)
    db.commit()
    db.refresh(db_template)
    return db_template


def update_course_template(db: Session, template_id: int, update: schemas.CourseTemplateUpdate) -> models.CourseTemplate:
    db_template = get_course_template(db, template_id)
    if not db_template:
        raise NotFoundError("Course template not found")
    for key, value in update.model_dump(exclude_unset=True).items():
        setattr(db_template, key, value)
    db.commit()
    db.refresh(db_template)
    return db_template


def get_course(db: Session, course_id: int) -> Optional[models.Course]:
    return db.get(models.Course, course_id)


def course_to_dict(course: models.Course, include_details: bool = False, db: Optional[Session] = None) -> Dict[str, Any]:
    data = {
        "id": course.id,
        "course_code": course.course_code,
        "template_id": course.template_id,
        "patient_id": course.patient_id,
        "patient_name": course.patient.full_name if course.patient else None,
        "patient_hn": course.patient.hn if course.patient else None,
        "clinic_id": course.clinic_id,
        "course_name": course.course_name,
        "total_sessions": course.total_sessions,
        "used_sessions": course.used_sessions,
        "remaining_sessions": course.remaining_sessions,
        "course_price": as_float(course.course_price),
        "purchase_date": course.purchase_date,
        "expiry_date": course.expiry_date,
        "status": course.status.value,
        "bill_id": course.bill_id,
        "notes": course.notes,
    }
    if include_details and db is not None:
        data["shared_users"] = [shared_user_to_dict(s) for s in course.shared_users]
        data["usage_history"] = [usage_to_dict(u) for u in list_course_usage(db, course.id)]
    return data


def list_courses(
    db: Session,
    clinic_ids: Optional[List[int]],
    patient_id: Optional[int] = None,
    clinic_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[models.Course]:
    query = db.query(models.Course).options(joinedload(models.Course.patient))
    if clinic_ids is not None:
        query = query.filter(models.Course.clinic_id.in_(clinic_ids))
    if patient_id:
        query = query.filter(models.Course.patient_id == patient_id)
    if clinic_id:
        query = query.filter(models.Course.clinic_id == clinic_id)
    if status:
        query = query.filter(models.Course.status == status.upper())
    return query.order_by(models.Course.purchase_date.desc(), models.Course.id.desc()).all()


def purchase_course(
    db: Session,
    purchase: schemas.CoursePurchase,
    created_by: int,
    commit: bool = True,
) -> models.Course:
    template = get_course_template(db, purchase.template_id)
    if not template or not template.active:
        raise NotFoundError("Course template not found or inactive")
    if not get_patient(db, purchase.patient_id):
        raise NotFoundError("Patient not found")
    purchase_date = purchase.purchase_date or date.today()
    expiry = purchase_date + timedelta(days=template.validity_days) if template.validity_days else None
    course = models.Course(
        course_code=identifiers.generate_course_code(db),
        template_id=template.id,
        patient_id=purchase.patient_id,
        clinic_id=purchase.clinic_id,
        course_name=template.template_name,
        total_sessions=template.total_sessions,
        used_sessions=0,
        remaining_sessions=template.total_sessions,
        course_price=purchase.course_price if purchase.course_price is not None else template.default_price,
        purchase_date=purchase_date,
        expiry_date=expiry,
        status=models.CourseStatus.ACTIVE,
        bill_id=purchase.bill_id,
        notes=purchase.notes,
        created_by=created_by,
    )
    db.add(course)
    db.flush()
    db.add(models.CourseUsageHistory(
        course_id=course.id, bill_id=purchase.bill_id, sessions_used=0, usage_date=purchase_date,
        action_type=models.CourseAction.PURCHASE, notes=f"Purchased {template.template_name}", created_by=created_by,
    ))
    if commit:
        db.commit()
        db.refresh(course)
    return course


def is_course_linkable(db: Session, course: models.Course, patient_id: int, on_date: Optional[date] = None) -> bool:
    """Owned by or actively shared with the patient, ACTIVE, not used up, not expired"""
    on_date = on_date or date.today()
    if course.status != models.CourseStatus.ACTIVE or course.remaining_sessions <= 0:
        return False
    if course.expiry_date and course.expiry_date < on_date:
        return False
    if course.patient_id == patient_id:
        return True
    return db.query(models.CourseSharedUser).filter_by(course_id=course.id, patient_id=patient_id, is_active=True).first() is not None


def get_linkable_courses(db: Session, patient_id: int, on_date: Optional[date] = None) -> List[Dict[str, Any]]:
    on_date = on_date or date.today()
    shared_ids = [s.course_id for s in db.query(models.CourseSharedUser).filter_by(patient_id=patient_id, is_active=True)]
    query = db.query(models.Course).filter(
        or_(models.Course.patient_id == patient_id, models.Course.id.in_(shared_ids)),
        models.Course.status == models.CourseStatus.ACTIVE,
        models.Course.remaining_sessions > 0,
        or_(models.Course.expiry_date.is_(None), models.Course.expiry_date >= on_date),
    )
    courses = []
    for course in query.order_by(models.Course.purchase_date):
        data = course_to_dict(course)
        data["is_shared"] = course.patient_id != patient_id
        courses.append(data)
    return courses


def shared_user_to_dict(shared: models.CourseSharedUser) -> Dict[str, Any]:
    return {"id": shared.id, "course_id": shared.course_id, "patient_id": shared.patient_id,
            "patient_name": shared.patient.full_name if shared.patient else None,
            "patient_hn": shared.patient.hn if shared.patient else None,
            "notes": shared.notes, "is_active": shared.is_active, "created_at": shared.created_at}


def add_shared_user(db: Session, course_id: int, shared: schemas.SharedUserCreate, shared_by: int) -> models.CourseSharedUser:
    course = get_course(db, course_id)
    if not course:
        raise NotFoundError("Course not found")
    if course.patient_id == shared.patient_id:
        raise CRUDError("The course owner cannot be added as a shared user")
    if not get_patient(db, shared.patient_id):
        raise NotFoundError("Patient not found")
    existing = db.query(models.CourseSharedUser).filter_by(course_id=course_id, patient_id=shared.patient_id).first()
    if existing:
        raise ConflictError("Patient already shares this course")
    db_shared = models.CourseSharedUser(course_id=course_id, patient_id=shared.patient_id, notes=shared.notes, shared_by=shared_by)
    db.add(db_shared)
    db.commit()
    db.refresh(db_shared)
    return db_shared


def set_shared_user_active(db: Session, shared_id: int, active: bool) -> models.CourseSharedUser:
    db_shared = db.get(models.CourseSharedUser, shared_id)
    if not db_shared:
        raise NotFoundError("Shared user not found")
    db_shared.is_active = active
    db.commit()
    return db_shared


def list_course_usage(db: Session, course_id: int) -> List[models.CourseUsageHistory]:
    return db.query(models.CourseUsageHistory).filter(models.CourseUsageHistory.course_id == course_id).order_by(
        models.CourseUsageHistory.id).all()


def usage_to_dict(usage: models.CourseUsageHistory) -> Dict[str, Any]:
    return {"id": usage.id, "course_id": usage.course_id, "bill_id": usage.bill_id, "pn_id": usage.pn_id,
            "appointment_id": usage.appointment_id, "sessions_used": usage.sessions_used,
            "usage_date": usage.usage_date, "action_type": usage.action_type.value, "notes": usage.notes,
            "created_by": usage.created_by, "created_at": usage.created_at}


def adjust_course_sessions(db: Session, course_id: int, sessions: int, notes: Optional[str], created_by: int) -> models.Course:
    course = db.query(models.Course).filter(models.Course.id == course_id).with_for_update().first()
    if not course:
        raise NotFoundError("Course not found")
    if course.remaining_sessions + sessions < 0:
        raise CRUDError("Adjustment would make remaining sessions negative")
    course.total_sessions += sessions
    course.remaining_sessions += sessions
    if course.remaining_sessions == 0:
        course.status = models.CourseStatus.COMPLETED
    elif course.status == models.CourseStatus.COMPLETED:
        course.status = models.CourseStatus.ACTIVE
    db.add(models.CourseUsageHistory(course_id=course.id, sessions_used=sessions, usage_date=date.today(),
                                     action_type=models.CourseAction.ADJUST, notes=notes, created_by=created_by))
    db.commit()
    db.refresh(course)
    return course


# ==================== BILLS ====================

def list_services(db: Session) -> List[Dict[str, Any]]:
    return [
        {"id": s.id, "service_code": s.service_code, "service_name": s.service_name,
         "description": s.description, "default_price": as_float(s.default_price)}
        for s in db.query(models.Service).filter(models.Service.active.is_(True)).order_by(models.Service.service_name)
    ]


def get_bill(db: Session, bill_id: int) -> Optional[models.Bill]:
    return db.get(models.Bill, bill_id)


def bill_to_dict(bill: models.Bill, include_items: bool = True) -> Dict[str, Any]:
    data = {
        "id": bill.id,
        "bill_code": bill.bill_code,
        "patient_id": bill.patient_id,
        "patient_name": bill.patient.full_name if bill.patient else bill.walk_in_name,
        "patient_hn": bill.patient.hn if bill.patient else None,
        "clinic_id": bill.clinic_id,
        "clinic_name": bill.clinic.name if bill.clinic else None,
        "pn_case_id": bill.pn_case_id,
        "appointment_id": bill.appointment_id,
        "bill_date": bill.bill_date,
        "due_date": bill.due_date,
        "subtotal": as_float(bill.subtotal),
        "discount": as_float(bill.discount),
        "tax": as_float(bill.tax),
        "total_amount": as_float(bill.total_amount),
        "payment_status": bill.payment_status.value,
        "payment_method": bill.payment_method,
        "payment_date": bill.payment_date,
        "notes": bill.notes,
        "created_at": bill.created_at,
    }
    if include_items:
        data["items"] = [
            {"id": i.id, "service_id": i.service_id, "service_name": i.service_name, "quantity": i.quantity,
             "unit_price": as_float(i.unit_price), "total_price": as_float(i.total_price), "notes": i.notes}
            for i in bill.items
        ]
    return data


def _apply_bill_items(bill: models.Bill, items: List[schemas.BillItemIn]) -> None:
    bill.items = [
        models.BillItem(
            service_id=item.service_id,
            service_name=item.service_name,
            quantity=item.quantity,
            unit_price=money(item.unit_price),
            total_price=money(item.total_price if item.total_price is not None else item.unit_price * item.quantity),
            notes=item.notes,
        )
        for item in items
    ]


def _recalculate_bill(bill: models.Bill) -> None:
    bill.subtotal = money(sum((money(i.total_price) for i in bill.items), Decimal("0")))
    bill.total_amount = max(Decimal("0.00"), money(bill.subtotal) - money(bill.discount) + money(bill.tax))


def list_bills(
    db: Session,
    clinic_ids: Optional[List[int]],
    clinic_id: Optional[int] = None,
    payment_status: Optional[str] = None,
    patient_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
) -> List[Dict[str, Any]]:
    query = db.query(models.Bill).options(joinedload(models.Bill.patient), joinedload(models.Bill.clinic))
    if clinic_ids is not None:
        query = query.filter(models.Bill.clinic_id.in_(clinic_ids))
    if clinic_id:
        query = query.filter(models.Bill.clinic_id == clinic_id)
    if payment_status:
        query = query.filter(models.Bill.payment_status == payment_status.upper())
    if patient_id:
        query = query.filter(models.Bill.patient_id == patient_id)
    if from_date:
        query = query.filter(models.Bill.bill_date >= from_date)
    if to_date:
        query = query.filter(models.Bill.bill_date <= to_date)
    return [bill_to_dict(b, include_items=False) for b in query.order_by(models.Bill.bill_date.desc(), models.Bill.id.desc())]


def create_bill(db: Session, bill: schemas.BillCreate, created_by: int) -> models.Bill:
    """Create a bill with its items (and an optional course purchase) in one transaction"""
    db_bill = models.Bill(
        bill_code=identifiers.generate_bill_code(db),
        patient_id=bill.patient_id,
        walk_in_name=bill.walk_in_name,
        clinic_id=bill.clinic_id,
        pn_case_id=bill.pn_case_id,
        appointment_id=bill.appointment_id,
        bill_date=bill.bill_date or date.today(),
        due_date=bill.due_date,
        discount=money(bill.discount),
        tax=money(bill.tax),
        payment_status=models.PaymentStatus.UNPAID,
        payment_method=bill.payment_method,
        notes=bill.notes,
        created_by=created_by,
    )
    try:
        _apply_bill_items(db_bill, bill.items)
        _recalculate_bill(db_bill)
        db.add(db_bill)
        db.flush()
        if bill.pn_case_id:
            pn = get_pn_case(db, bill.pn_case_id)
            if pn:
                pn.bill_id = db_bill.id
        if bill.course_template_id:
            if not bill.patient_id:
                raise CRUDError("A course can only be sold to a registered patient")
            purchase_course(db, schemas.CoursePurchase(
                template_id=bill.course_template_id, patient_id=bill.patient_id, clinic_id=bill.clinic_id,
                purchase_date=db_bill.bill_date, bill_id=db_bill.id,
            ), created_by, commit=False)
        db.commit()
        db.refresh(db_bill)
        return db_bill
    except CRUDError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating bill: {e}")
        raise CRUDError("Could not create bill")


def update_bill(db: Session, bill_id: int, update: schemas.BillUpdate) -> models.Bill:
    db_bill = get_bill(db, bill_id)
    if not db_bill:
        raise NotFoundError("Bill not found")
    if db_bill.payment_status == models.PaymentStatus.PAID and update.items is not None:
        raise CRUDError("Items of a paid bill cannot be changed")
    data = update.model_dump(exclude_unset=True, exclude={"items"})
    for key, value in data.items():
        setattr(db_bill, key, money(value) if key in ("discount", "tax") else value)
    if update.items is not None:
        _apply_bill_items(db_bill, update.items)
    _recalculate_bill(db_bill)
    db.commit()
    db.refresh(db_bill)
    return db_bill


def set_payment_status(db: Session, bill: models.Bill, update: schemas.PaymentStatusUpdate) -> models.Bill:
    """Change the payment status; the caller commits"""
    bill.payment_status = update.payment_status
    if update.payment_method:
        bill.payment_method = update.payment_method
    if update.payment_status == models.PaymentStatus.PAID:
        bill.payment_date = update.payment_date or bill.payment_date or datetime.now()
    elif update.payment_status in (models.PaymentStatus.UNPAID, models.PaymentStatus.CANCELLED):
        bill.payment_date = None
    return bill


def delete_bill(db: Session, bill_id: int) -> None:
    db_bill = get_bill(db, bill_id)
    if not db_bill:
        raise NotFoundError("Bill not found")
    db.query(models.PNCase).filter(models.PNCase.bill_id == bill_id).update({models.PNCase.bill_id: None}, synchronize_session=False)
    db.delete(db_bill)
    db.commit()


# ==================== EXPENSES ====================

def list_expense_categories(db: Session) -> List[models.ExpenseCategory]:
    return db.query(models.ExpenseCategory).order_by(models.ExpenseCategory.name).all()


def create_expense_category(db: Session, category: schemas.ExpenseCategoryCreate) -> models.ExpenseCategory:
    if db.query(models.ExpenseCategory).filter(func.lower(models.ExpenseCategory.name) == category.name.lower()).first():
        raise ConflictError("Category already exists")
    db_category = models.ExpenseCategory(**category.model_dump())
    db.add(db_category)
    db.commit()
    db.refresh(db_category)
    return db_category


def expense_to_dict(expense: models.Expense) -> Dict[str, Any]:
    return {"id": expense.id, "category_id": expense.category_id,
            "category_name": expense.category.name if expense.category else None,
            "amount": as_float(expense.amount), "description": expense.description,
            "expense_date": expense.expense_date, "receipt_number": expense.receipt_number,
            "created_by": expense.created_by, "created_at": expense.created_at}


def list_expenses(db: Session, category_id: Optional[int] = None, year: Optional[int] = None, month: Optional[int] = None) -> List[models.Expense]:
    query = db.query(models.Expense).options(joinedload(models.Expense.category))
    if category_id:
        query = query.filter(models.Expense.category_id == category_id)
    if year and month:
        start, end = _month_bounds(date(year, month, 1))
        query = query.filter(models.Expense.expense_date >= start, models.Expense.expense_date < end)
    elif year:
        query = query.filter(models.Expense.expense_date >= date(year, 1, 1), models.Expense.expense_date < date(year + 1, 1, 1))
    return query.order_by(models.Expense.expense_date.desc(), models.Expense.id.desc()).all()


def create_expense(db: Session, expense: schemas.ExpenseCreate, created_by: int) -> models.Expense:
    if not db.get(models.ExpenseCategory, expense.category_id):
        raise NotFoundError("Expense category not found")
    db_expense = models.Expense(**expense.model_dump(), created_by=created_by)
    db.add(db_expense)
    db.commit()
    db.refresh(db_expense)
    return db_expense


def update_expense(db: Session, expense_id: int, update: schemas.ExpenseUpdate) -> models.Expense:
    db_expense = db.get(models.Expense, expense_id)
    if not db_expense:
        raise NotFoundError("Expense not found")
    data = update.model_dump(exclude_unset=True)
    if data.get("category_id") and not db.get(models.ExpenseCategory, data["category_id"]):
        raise NotFoundError("Expense category not found")
    for key, value in data.items():
        setattr(db_expense, key, value)
    db.commit()
    db.refresh(db_expense)
    return db_expense


def delete_expense(db: Session, expense_id: int) -> None:
    db_expense = db.get(models.Expense, expense_id)
    if not db_expense:
        raise NotFoundError("Expense not found")
    db.delete(db_expense)
    db.commit()


def expense_summary(db: Session, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    month_start, month_end = _month_bounds(today)
    year_start, year_end = date(today.year, 1, 1), date(today.year + 1, 1, 1)

    def expenses(start: date, end: date) -> float:
        return float(db.query(func.coalesce(func.sum(models.Expense.amount), 0)).filter(
            models.Expense.expense_date >= start, models.Expense.expense_date < end).scalar() or 0)

    def income(start: date, end: date) -> float:
        return float(db.query(func.coalesce(func.sum(models.Bill.total_amount), 0)).filter(
            models.Bill.payment_status == models.PaymentStatus.PAID,
            models.Bill.payment_date.isnot(None),
            models.Bill.payment_date >= datetime.combine(start, time.min),
            models.Bill.payment_date < datetime.combine(end, time.min),
        ).scalar() or 0)

    month_expense, year_expense = expenses(month_start, month_end), expenses(year_start, year_end)
    month_income, year_income = income(month_start, month_end), income(year_start, year_end)
    return {
        "month": {"expenses": month_expense, "income": month_income, "net": month_income - month_expense},
        "year": {"expenses": year_expense, "income": year_income, "net": year_income - year_expense},
        "by_category": [
            {"category": name, "amount": float(amount or 0)}
            for name, amount in db.query(models.ExpenseCategory.name, func.sum(models.Expense.amount))
            .join(models.Expense, models.Expense.category_id == models.ExpenseCategory.id)
            .filter(models.Expense.expense_date >= month_start, models.Expense.expense_date < month_end)
            .group_by(models.ExpenseCategory.name)
        ],
    }


# ==================== AUDIT LOG QUERIES ====================

def list_audit_logs(
    db: Session,
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    action: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.AuditLog]:
    query = db.query(models.AuditLog)
    if user_id:
        query = query.filter(models.AuditLog.user_id == user_id)
    if entity_type:
        query = query.filter(models.AuditLog.entity_type == entity_type.upper())
    if action:
        query = query.filter(models.AuditLog.action == action.upper())
    if from_date:
        query = query.filter(models.AuditLog.timestamp >= datetime.combine(from_date, time.min))
    if to_date:
        query = query.filter(models.AuditLog.timestamp < datetime.combine(to_date + timedelta(days=1), time.min))
    return query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()).offset(skip).limit(min(limit, 500)).all()

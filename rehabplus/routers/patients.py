# rehabplus/routers/patients.py
import csv
import io
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import crud, identifiers, models, schemas, security
from ..database import get_db
from ..errors import CRUDError, NotFoundError
from ..services import notifier

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

CSV_COLUMNS = [
    "pid", "passport_no", "title", "first_name", "last_name", "dob", "gender", "phone", "email", "address",
    "emergency_contact", "emergency_phone", "diagnosis", "rehab_goal", "body_area", "frequency",
    "expected_duration", "doctor_note", "precaution", "contraindication", "medical_history", "clinic_id",
]
CSV_SAMPLE_ROW = [
    "1234567890121", "", "Mr.", "John", "Doe", "1990-01-15", "Male", "0812345678", "john@example.com",
    "123 Main St", "Jane Doe", "0898765432", "Back pain", "Improve mobility", "Lower back", "3 times/week",
    "6 weeks", "Avoid heavy lifting", "None", "Heart condition", "Previous surgery in 2020", "1",
]


def _target_clinic(db: Session, user: models.User, requested: Optional[int]) -> int:
    """CLINIC users always register into their own clinic"""
    if user.role == models.UserRole.CLINIC:
        return user.clinic_id
    if not requested:
        raise CRUDError("clinic_id is required", required_fields=["clinic_id"])
    security.ensure_clinic_access(db, user, requested)
    return requested


def _get_accessible_patient(db: Session, user: models.User, patient_id: int) -> models.Patient:
    patient = crud.get_patient(db, patient_id)
    if not patient:
        raise NotFoundError("Patient not found")
    security.ensure_clinic_access(db, user, patient.clinic_id)
    return patient


@router.get("")
def read_patients(
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    clinic_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if current_user.role == models.UserRole.CLINIC:
        clinic_ids = [current_user.clinic_id]
    else:
        clinic_ids = security.get_accessible_clinic_ids(db, current_user)
    return crud.list_patients(db, clinic_ids, page=page, limit=limit, search=search, clinic_id=clinic_id)


@router.get("/search")
def search_patients(q: str = "", db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return crud.search_patients(db, security.get_accessible_clinic_ids(db, current_user), q)


@router.post("/check-id")
def check_patient_id(payload: schemas.IdCheckRequest, db: Session = Depends(get_db)):
    """Validate a Thai ID or passport number and look for an existing record"""
    if payload.pid:
        if not identifiers.validate_thai_id(payload.pid):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Thai national ID")
        existing = crud.find_patient_by_pid(db, payload.pid)
    else:
        if not identifiers.validate_passport(payload.passport_no):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid passport number")
        existing = crud.find_patient_by_passport(db, payload.passport_no)
    if existing:
        return {"exists": True, "patient": crud.patient_to_dict(existing)}
    return {"exists": False, "next_pthn": identifiers.preview_next_pthn(db)}


@router.get("/csv/template")
def download_csv_template():
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    writer.writerow(CSV_SAMPLE_ROW)
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=patients_template.csv"},
    )


@router.post("/csv/import")
async def import_patients_csv(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    raw = await file.read()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="CSV file must be UTF-8 encoded")

    imported, errors = 0, []
    # row 1 is the header
    for row_number, row in enumerate(csv.DictReader(io.StringIO(text)), start=2):
        row = {k.strip(): (v or "").strip() for k, v in row.items() if k}
        if not row.get("first_name") and not row.get("last_name"):
            continue
        try:
            patient = schemas.PatientCreate(**{k: v for k, v in row.items() if k in CSV_COLUMNS and v != ""})
            clinic_id = _target_clinic(db, current_user, patient.clinic_id)
            db_patient = crud.create_patient(db, patient, clinic_id, created_by=current_user.id)
            imported += 1
            logger.debug(f"CSV row {row_number} imported as {db_patient.hn}")
        except ValidationError as e:
            first = e.errors()[0]
            errors.append({"row": row_number, "error": f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}"})
        except CRUDError as e:
            errors.append({"row": row_number, "error": e.message})
        except HTTPException as e:
            errors.append({"row": row_number, "error": e.detail})

    crud.create_audit_log(user_id=current_user.id, action="IMPORT", entity_type="PATIENT",
                          details=f"Imported {imported} patients from {file.filename}", request=request)
    return {"imported": imported, "failed": len(errors), "errors": errors}


@router.get("/{patient_id}")
def read_patient(patient_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return crud.patient_to_dict(_get_accessible_patient(db, current_user, patient_id))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_patient(
    patient: schemas.PatientCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    clinic_id = _target_clinic(db, current_user, patient.clinic_id)
    db_patient = crud.create_patient(db, patient, clinic_id, created_by=current_user.id)
    patient_dict = crud.patient_to_dict(db_patient)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="PATIENT", entity_id=db_patient.id,
                          details=f"Registered {db_patient.hn}", request=request,
                          new_values=patient.model_dump(exclude={"pid", "passport_no", "ssn"}))
    background_tasks.add_task(notifier.notify_event, "newPatient", notifier.new_patient_message(patient_dict))
    return {"success": True, "patient_id": db_patient.id, "hn": db_patient.hn, "pt_number": db_patient.pt_number}


@router.put("/{patient_id}")
def update_patient(
    patient_id: int,
    payload: schemas.PatientUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    patient = _get_accessible_patient(db, current_user, patient_id)
    changes = payload.model_dump(exclude_unset=True)
    old_values = {k: getattr(patient, k) for k in changes}
    updated = crud.update_patient(db, patient_id, payload)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="PATIENT", entity_id=patient_id,
                          request=request, old_values=old_values, new_values=changes)
    return {"success": True, "patient": crud.patient_to_dict(updated)}


@router.delete("/{patient_id}")
def delete_patient(
    patient_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    patient = _get_accessible_patient(db, current_user, patient_id)
    hn = patient.hn
    crud.delete_patient(db, patient_id)
    crud.create_audit_log(user_id=current_user.id, action="DELETE", entity_type="PATIENT", entity_id=patient_id,
                          details=f"Deleted {hn}", request=request)
    return {"success": True, "message": "Patient deleted"}

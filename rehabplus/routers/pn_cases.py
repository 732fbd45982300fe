# rehabplus/routers/pn_cases.py
import logging
import os
import uuid
from datetime import date
from typing import Optional

import aiofiles
from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security, workflow
from ..config import get_settings
from ..database import atomic, get_db
from ..errors import CRUDError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/pn",
    tags=["PN Cases"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ALLOWED_UPLOAD_TYPES = {"application/pdf", "image/jpeg", "image/png", "image/gif", "image/webp"}


def get_accessible_pn(db: Session, user: models.User, pn_id: int) -> models.PNCase:
    pn = crud.get_pn_case(db, pn_id)
    if not pn:
        raise NotFoundError("PN case not found")
    clinic_ids = security.get_accessible_clinic_ids(db, user)
    if clinic_ids is not None and pn.source_clinic_id not in clinic_ids and pn.target_clinic_id not in clinic_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied to this PN case")
    return pn


@router.get("/dashboard/summary")
def read_dashboard_summary(db: Session = Depends(get_db)):
    return crud.dashboard_summary(db)


@router.get("")
def read_pn_cases(
    status_filter: Optional[str] = Query(None, alias="status"),
    clinic_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    search: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return crud.list_pn_cases(
        db, security.get_accessible_clinic_ids(db, current_user),
        status=status_filter, clinic_id=clinic_id, patient_id=patient_id, search=search,
        from_date=from_date, to_date=to_date, page=page, limit=limit,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_pn_case(
    payload: schemas.PNCaseCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    patient = crud.get_patient(db, payload.patient_id)
    if not patient:
        raise NotFoundError("Patient not found")
    security.ensure_clinic_access(db, current_user, patient.clinic_id)

    if current_user.role == models.UserRole.CLINIC:
        target_clinic_id = current_user.clinic_id
    elif payload.target_clinic_id:
        target_clinic_id = payload.target_clinic_id
    else:
        raise CRUDError("target_clinic_id is required", required_fields=["target_clinic_id"])
    if not crud.get_clinic(db, target_clinic_id):
        raise NotFoundError("Target clinic not found")

    if payload.course_id:
        course = crud.get_course(db, payload.course_id)
        if not course or not crud.is_course_linkable(db, course, patient.id):
            raise CRUDError("Course is not available for this patient")

    with atomic(db):
        pn = crud.create_pn_case(
            db, patient, target_clinic_id,
            diagnosis=payload.diagnosis, purpose=payload.purpose, created_by=current_user.id,
            course_id=payload.course_id, chief_complaint=payload.chief_complaint,
            referring_doctor=payload.referring_doctor, notes=payload.notes,
        )
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="PN_CASE", entity_id=pn.id,
                          details=f"Created {pn.pn_code}", request=request, new_values=payload.model_dump())
    return {"success": True, "pn_id": pn.id, "pn_code": pn.pn_code}


@router.put("/{pn_id}")
def update_pn_case(
    pn_id: int,
    payload: schemas.PNCaseUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    get_accessible_pn(db, current_user, pn_id)
    pn = crud.update_pn_case(db, pn_id, payload)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="PN_CASE", entity_id=pn_id,
                          request=request, new_values=payload.model_dump(exclude_unset=True))
    return {"success": True, "pn_case": crud.pn_to_dict(pn)}


@router.patch("/{pn_id}/status")
def update_pn_status(
    pn_id: int,
    payload: schemas.PNStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    pn = get_accessible_pn(db, current_user, pn_id)
    with atomic(db):
        outcome = workflow.change_pn_status(db, pn, payload, current_user)
    crud.create_audit_log(user_id=current_user.id, action="STATUS_CHANGE", entity_type="PN_CASE", entity_id=pn_id,
                          request=request, old_values={"status": outcome["old_status"]},
                          new_values={"status": outcome["new_status"]})
    return {"success": True, **outcome}


@router.post("/{pn_id}/reverse-status")
def reverse_pn_status(
    pn_id: int,
    payload: schemas.ReverseStatusRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    pn = get_accessible_pn(db, current_user, pn_id)
    with atomic(db):
        outcome = workflow.reverse_pn_status(db, pn, payload.reason, current_user)
    crud.create_audit_log(user_id=current_user.id, action="REVERSE_STATUS", entity_type="PN_CASE", entity_id=pn_id,
                          details=payload.reason, request=request,
                          old_values={"status": outcome["old_status"]}, new_values={"status": outcome["new_status"]})
    return {"success": True, **outcome}


@router.get("/{pn_id}/soap-notes")
def read_soap_notes(pn_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    get_accessible_pn(db, current_user, pn_id)
    return [crud.soap_to_dict(n) for n in crud.list_soap_notes(db, pn_id)]


@router.post("/{pn_id}/certificate", status_code=status.HTTP_201_CREATED)
def create_certificate(
    pn_id: int,
    payload: schemas.CertificateCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    pn = get_accessible_pn(db, current_user, pn_id)
    cert = crud.create_certificate(db, pn, payload, created_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="CERTIFICATE", entity_id=cert.id,
                          details=f"{payload.certificate_type.value} certificate for {pn.pn_code}", request=request)
    return {"success": True, "certificate_id": cert.id}


@router.get("/{pn_id}/certificates")
def read_certificates(pn_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    get_accessible_pn(db, current_user, pn_id)
    return [crud.certificate_to_dict(c) for c in crud.list_certificates(db, pn_id)]


@router.put("/certificates/{certificate_id}")
def update_certificate(
    certificate_id: int,
    payload: schemas.CertificateUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin_or_pt),
):
    cert = crud.update_certificate(db, certificate_id, payload)
    return {"success": True, "certificate": crud.certificate_to_dict(cert)}


@router.post("/{pn_id}/visit", status_code=status.HTTP_201_CREATED)
def create_visit(
    pn_id: int,
    visit: schemas.PNVisitCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    get_accessible_pn(db, current_user, pn_id)
    db_visit = crud.create_pn_visit(db, pn_id, visit, current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="VISIT", entity_id=db_visit.id,
                          request=request, new_values=visit.model_dump())
    return {"success": True, "visit_id": db_visit.id, "visit_no": db_visit.visit_no}


@router.post("/{pn_id}/upload", status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    pn_id: int,
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    get_accessible_pn(db, current_user, pn_id)
    if file.content_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only PDF and image files are allowed")
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is too large (max 10 MB)")

    upload_dir = os.path.join(get_settings().upload_dir, "pn", str(pn_id))
    os.makedirs(upload_dir, exist_ok=True)
    _, ext = os.path.splitext(file.filename or "")
    file_path = os.path.join(upload_dir, f"{uuid.uuid4().hex}{ext.lower()}")
    async with aiofiles.open(file_path, "wb") as f:
        await f.write(content)

    attachment = crud.create_attachment(db, pn_id, file.filename or os.path.basename(file_path), file_path,
                                        file.content_type, len(content), uploaded_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="UPLOAD", entity_type="PN_CASE", entity_id=pn_id,
                          details=attachment.file_name, request=request)
    return {"success": True, "attachment": crud.attachment_to_dict(attachment)}


@router.get("/{pn_id}/attachments")
def read_attachments(pn_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    get_accessible_pn(db, current_user, pn_id)
    return [crud.attachment_to_dict(a) for a in crud.list_attachments(db, pn_id)]


@router.get("/attachments/{attachment_id}/download")
def download_attachment(
    attachment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    attachment = db.get(models.PNAttachment, attachment_id)
    if not attachment:
        raise NotFoundError("Attachment not found")
    get_accessible_pn(db, current_user, attachment.pn_id)
    if not os.path.isfile(attachment.file_path):
        logger.warning(f"Attachment {attachment_id} has no file at {attachment.file_path}")
        raise NotFoundError("Attachment file not found")
    return FileResponse(attachment.file_path, media_type=attachment.mime_type, filename=attachment.file_name)


@router.delete("/attachments/{attachment_id}")
def delete_attachment(
    attachment_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    attachment = db.get(models.PNAttachment, attachment_id)
    if not attachment:
        raise NotFoundError("Attachment not found")
    get_accessible_pn(db, current_user, attachment.pn_id)
    path = crud.delete_attachment(db, attachment_id)
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.warning(f"Attachment file {path} was already missing")
    crud.create_audit_log(user_id=current_user.id, action="DELETE", entity_type="ATTACHMENT", entity_id=attachment_id,
                          request=request)
    return {"success": True}


@router.delete("/{pn_id}")
def delete_pn_case(
    pn_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    pn = get_accessible_pn(db, current_user, pn_id)
    pn_code = pn.pn_code
    crud.delete_pn_case(db, pn_id)
    crud.create_audit_log(user_id=current_user.id, action="DELETE", entity_type="PN_CASE", entity_id=pn_id,
                          details=f"Deleted {pn_code}", request=request)
    return {"success": True, "message": "PN case deleted"}


@router.get("/{pn_id}/timeline")
def read_pn_timeline(pn_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    pn = get_accessible_pn(db, current_user, pn_id)
    return crud.pn_timeline(db, pn)


@router.get("/{pn_id}")
def read_pn_case(pn_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    pn = get_accessible_pn(db, current_user, pn_id)
    return crud.pn_detail(db, pn)

# rehabplus/routers/users.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db
from ..errors import NotFoundError

router = APIRouter(
    tags=["Administration"],
    dependencies=[Depends(security.get_current_user)],
)


def _clinic_dict(clinic: models.Clinic) -> dict:
    data = schemas.ClinicResponse.model_validate(clinic).model_dump()
    data["is_main"] = crud.is_main_clinic(clinic)
    return data


# --- Clinics ---

@router.get("/clinics")
def read_clinics(db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    """Active clinics the caller may work with"""
    clinic_ids = security.get_accessible_clinic_ids(db, current_user)
    return [_clinic_dict(c) for c in crud.list_clinics(db, clinic_ids)]


@router.get("/admin/clinics", dependencies=[Depends(security.require_admin)])
def read_all_clinics(db: Session = Depends(get_db)):
    return [_clinic_dict(c) for c in crud.list_clinics(db, include_inactive=True)]


@router.post("/clinics", status_code=status.HTTP_201_CREATED)
def create_clinic(
    clinic: schemas.ClinicCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_clinic = crud.create_clinic(db, clinic)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="CLINIC", entity_id=db_clinic.id,
                          request=request, new_values=clinic.model_dump())
    return {"success": True, "clinic": _clinic_dict(db_clinic)}


@router.put("/clinics/{clinic_id}")
def update_clinic(
    clinic_id: int,
    clinic: schemas.ClinicUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_clinic = crud.update_clinic(db, clinic_id, clinic)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="CLINIC", entity_id=clinic_id,
                          request=request, new_values=clinic.model_dump(exclude_unset=True))
    return {"success": True, "clinic": _clinic_dict(db_clinic)}


@router.patch("/clinics/{clinic_id}/status")
def set_clinic_status(
    clinic_id: int,
    payload: schemas.StatusToggle,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_clinic = crud.set_clinic_active(db, clinic_id, payload.active)
    crud.create_audit_log(user_id=current_user.id, action="ACTIVATE" if payload.active else "DEACTIVATE",
                          entity_type="CLINIC", entity_id=clinic_id, request=request)
    return {"success": True, "clinic": _clinic_dict(db_clinic)}


@router.get("/clinics/{clinic_id}/details")
def read_clinic_details(
    clinic_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    security.ensure_clinic_access(db, current_user, clinic_id)
    return crud.clinic_details(db, clinic_id)


# --- Users ---

@router.get("/users", dependencies=[Depends(security.require_admin)])
def read_users(role: Optional[str] = None, clinic_id: Optional[int] = None, db: Session = Depends(get_db)):
    return [crud.user_to_dict(u) for u in crud.list_users(db, role=role.upper() if role else None, clinic_id=clinic_id)]


@router.post("/users", status_code=status.HTTP_201_CREATED)
def create_user(
    user: schemas.UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_user = crud.create_user(db, user)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="USER", entity_id=db_user.id,
                          request=request, new_values=user.model_dump(exclude={"password"}))
    return {"success": True, "user_id": db_user.id, "user": crud.user_to_dict(db_user)}


@router.put("/users/{user_id}")
def update_user(
    user_id: int,
    user: schemas.UserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_user = crud.update_user(db, user_id, user)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="USER", entity_id=user_id,
                          request=request, new_values=user.model_dump(exclude_unset=True, exclude={"password"}))
    return {"success": True, "user": crud.user_to_dict(db_user)}


@router.patch("/users/{user_id}/status")
def set_user_status(
    user_id: int,
    payload: schemas.StatusToggle,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_user = crud.set_user_active(db, user_id, payload.active, acting_user_id=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="ACTIVATE" if payload.active else "DEACTIVATE",
                          entity_type="USER", entity_id=user_id, request=request)
    return {"success": True, "user": crud.user_to_dict(db_user)}


@router.get("/users/{user_id}/grants", dependencies=[Depends(security.require_admin)])
def read_user_grants(user_id: int, db: Session = Depends(get_db)):
    db_user = crud.get_user(db, user_id)
    if not db_user:
        raise NotFoundError("User not found")
    return crud.user_to_dict(db_user)["clinic_grants"]


@router.post("/grants", status_code=status.HTTP_201_CREATED)
def create_grant(
    grant: schemas.GrantCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_grant = crud.add_clinic_grant(db, grant.user_id, grant.clinic_id, granted_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="GRANT", entity_type="USER", entity_id=grant.user_id,
                          request=request, new_values=grant.model_dump())
    return {"success": True, "grant_id": db_grant.id}


@router.delete("/grants/{user_id}/{clinic_id}")
def delete_grant(
    user_id: int,
    clinic_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    crud.remove_clinic_grant(db, user_id, clinic_id)
    crud.create_audit_log(user_id=current_user.id, action="REVOKE", entity_type="USER", entity_id=user_id,
                          request=request, old_values={"clinic_id": clinic_id})
    return {"success": True}


# --- Audit logs ---

@router.get("/logs", dependencies=[Depends(security.require_admin)])
def read_audit_logs(
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    action: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    return [
        {"id": log.id, "user_id": log.user_id, "action": log.action, "entity_type": log.entity_type,
         "entity_id": log.entity_id, "details": log.details, "old_values": log.old_values,
         "new_values": log.new_values, "ip_address": log.ip_address, "user_agent": log.user_agent,
         "timestamp": log.timestamp}
        for log in crud.list_audit_logs(db, user_id, entity_type, action, from_date, to_date, skip, limit)
    ]

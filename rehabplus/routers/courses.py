# rehabplus/routers/courses.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db
from ..errors import NotFoundError

logger = logging.getLogger(__name__)

templates_router = APIRouter(
    prefix="/course-templates",
    tags=["Courses"],
    dependencies=[Depends(security.get_current_user)],
)

router = APIRouter(
    prefix="/courses",
    tags=["Courses"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _empty_when_missing(db: Session, read, what: str):
    """Run a list read; a deployment without the course tables gets []"""
    try:
        return read()
    except (OperationalError, ProgrammingError) as e:
        db.rollback()
        logger.warning(f"Course tables unavailable while reading {what}: {e}")
        return []


def _get_course(db: Session, user: models.User, course_id: int) -> models.Course:
    course = crud.get_course(db, course_id)
    if not course:
        raise NotFoundError("Course not found")
    security.ensure_clinic_access(db, user, course.clinic_id)
    return course


# --- Templates ---

@templates_router.get("")
def read_course_templates(active: bool = False, db: Session = Depends(get_db)):
    return _empty_when_missing(
        db, lambda: [crud.template_to_dict(t) for t in crud.list_course_templates(db, active_only=active)],
        "course templates")


@templates_router.get("/{template_id}")
def read_course_template(template_id: int, db: Session = Depends(get_db)):
    template = crud.get_course_template(db, template_id)
    if not template:
        raise NotFoundError("Course template not found")
    return crud.template_to_dict(template)


@templates_router.post("", status_code=status.HTTP_201_CREATED)
def create_course_template(
    template: schemas.CourseTemplateCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_template = crud.create_course_template(db, template)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="COURSE_TEMPLATE",
                          entity_id=db_template.id, request=request, new_values=template.model_dump())
    return {"success": True, "template_id": db_template.id}


@templates_router.put("/{template_id}")
def update_course_template(
    template_id: int,
    update: schemas.CourseTemplateUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_template = crud.update_course_template(db, template_id, update)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="COURSE_TEMPLATE",
                          entity_id=template_id, request=request, new_values=update.model_dump(exclude_unset=True))
    return {"success": True, "template": crud.template_to_dict(db_template)}


@templates_router.delete("/{template_id}")
def delete_course_template(
    template_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    crud.update_course_template(db, template_id, schemas.CourseTemplateUpdate(active=False))
    crud.create_audit_log(user_id=current_user.id, action="DEACTIVATE", entity_type="COURSE_TEMPLATE",
                          entity_id=template_id, request=request)
    return {"success": True}


# --- Courses ---

@router.get("")
def read_courses(
    patient_id: Optional[int] = None,
    clinic_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    clinic_ids = security.get_accessible_clinic_ids(db, current_user)
    return _empty_when_missing(
        db, lambda: [crud.course_to_dict(c) for c in crud.list_courses(db, clinic_ids, patient_id, clinic_id, status_filter)],
        "courses")


@router.get("/patient/{patient_id}/active")
def read_linkable_courses(patient_id: int, db: Session = Depends(get_db)):
    return _empty_when_missing(db, lambda: crud.get_linkable_courses(db, patient_id), "linkable courses")


@router.post("", status_code=status.HTTP_201_CREATED)
def purchase_course(
    purchase: schemas.CoursePurchase,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    security.ensure_clinic_access(db, current_user, purchase.clinic_id)
    course = crud.purchase_course(db, purchase, created_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="PURCHASE", entity_type="COURSE", entity_id=course.id,
                          details=course.course_code, request=request, new_values=purchase.model_dump())
    return {"success": True, "course_id": course.id, "course_code": course.course_code}


@router.delete("/shared-users/{shared_id}")
def deactivate_shared_user(
    shared_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    shared = crud.set_shared_user_active(db, shared_id, False)
    crud.create_audit_log(user_id=current_user.id, action="DEACTIVATE", entity_type="COURSE_SHARED_USER",
                          entity_id=shared_id, details=f"course {shared.course_id}", request=request)
    return {"success": True}


@router.post("/shared-users/{shared_id}/reactivate")
def reactivate_shared_user(
    shared_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    shared = crud.set_shared_user_active(db, shared_id, True)
    crud.create_audit_log(user_id=current_user.id, action="ACTIVATE", entity_type="COURSE_SHARED_USER",
                          entity_id=shared_id, details=f"course {shared.course_id}", request=request)
    return {"success": True, "shared_user": crud.shared_user_to_dict(shared)}


@router.get("/{course_id}")
def read_course(course_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return crud.course_to_dict(_get_course(db, current_user, course_id), include_details=True, db=db)


@router.get("/{course_id}/shared-users")
def read_shared_users(course_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    course = _get_course(db, current_user, course_id)
    return [crud.shared_user_to_dict(s) for s in course.shared_users]


@router.post("/{course_id}/shared-users", status_code=status.HTTP_201_CREATED)
def add_shared_user(
    course_id: int,
    shared: schemas.SharedUserCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    _get_course(db, current_user, course_id)
    db_shared = crud.add_shared_user(db, course_id, shared, shared_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="SHARE", entity_type="COURSE", entity_id=course_id,
                          request=request, new_values=shared.model_dump())
    return {"success": True, "shared_user": crud.shared_user_to_dict(db_shared)}


@router.get("/{course_id}/usage-history")
def read_usage_history(course_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    _get_course(db, current_user, course_id)
    return [crud.usage_to_dict(u) for u in crud.list_course_usage(db, course_id)]


@router.post("/{course_id}/adjust")
def adjust_course(
    course_id: int,
    adjust: schemas.CourseAdjust,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    course = crud.adjust_course_sessions(db, course_id, adjust.sessions, adjust.notes, created_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="ADJUST", entity_type="COURSE", entity_id=course_id,
                          details=adjust.notes, request=request, new_values={"sessions": adjust.sessions})
    return {"success": True, "course": crud.course_to_dict(course)}

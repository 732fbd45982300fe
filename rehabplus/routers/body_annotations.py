# rehabplus/routers/body_annotations.py
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db
from ..errors import NotFoundError

router = APIRouter(
    prefix="/body-annotations",
    tags=["Body annotations"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_body_annotation(
    annotation: schemas.BodyAnnotationCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    db_annotation = crud.create_body_annotation(db, annotation, created_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="BODY_ANNOTATION",
                          entity_id=db_annotation.id, details=f"{annotation.entity_type} {db_annotation.entity_id}",
                          request=request)
    return {"success": True, "annotation_id": db_annotation.id}


@router.get("")
def read_body_annotations(entity_type: Optional[str] = None, entity_id: Optional[int] = None, db: Session = Depends(get_db)):
    return [crud.annotation_to_dict(a) for a in crud.list_body_annotations(db, entity_type, entity_id)]


@router.get("/{annotation_id}")
def read_body_annotation(annotation_id: int, db: Session = Depends(get_db)):
    annotation = crud.get_body_annotation(db, annotation_id)
    if not annotation:
        raise NotFoundError("Body annotation not found")
    return crud.annotation_to_dict(annotation)


@router.put("/{annotation_id}")
def update_body_annotation(
    annotation_id: int,
    update: schemas.BodyAnnotationUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    annotation = crud.update_body_annotation(db, annotation_id, update)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="BODY_ANNOTATION",
                          entity_id=annotation_id, request=request)
    return {"success": True, "annotation": crud.annotation_to_dict(annotation)}


@router.delete("/{annotation_id}")
def delete_body_annotation(
    annotation_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    crud.delete_body_annotation(db, annotation_id)
    crud.create_audit_log(user_id=current_user.id, action="DELETE", entity_type="BODY_ANNOTATION",
                          entity_id=annotation_id, request=request)
    return {"success": True}

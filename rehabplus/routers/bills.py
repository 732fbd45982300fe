# rehabplus/routers/bills.py
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, loyalty, models, schemas, security
from ..database import atomic, get_db
from ..errors import NotFoundError
from ..services import notifier

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/bills",
    tags=["Billing"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _get_bill(db: Session, user: models.User, bill_id: int) -> models.Bill:
    bill = crud.get_bill(db, bill_id)
    if not bill:
        raise NotFoundError("Bill not found")
    security.ensure_clinic_access(db, user, bill.clinic_id)
    return bill


@router.get("")
def read_bills(
    clinic_id: Optional[int] = None,
    payment_status: Optional[str] = None,
    patient_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return crud.list_bills(db, security.get_accessible_clinic_ids(db, current_user), clinic_id=clinic_id,
                           payment_status=payment_status, patient_id=patient_id, from_date=from_date, to_date=to_date)


@router.get("/services")
def read_services(db: Session = Depends(get_db)):
    return crud.list_services(db)


@router.get("/{bill_id}")
def read_bill(bill_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return crud.bill_to_dict(_get_bill(db, current_user, bill_id))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_bill(
    bill: schemas.BillCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    security.ensure_clinic_access(db, current_user, bill.clinic_id)
    db_bill = crud.create_bill(db, bill, created_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="BILL", entity_id=db_bill.id,
                          details=f"{db_bill.bill_code} total {db_bill.total_amount}", request=request)
    return {"success": True, "bill_id": db_bill.id, "bill_code": db_bill.bill_code,
            "total_amount": crud.as_float(db_bill.total_amount)}


@router.put("/{bill_id}")
def update_bill(
    bill_id: int,
    update: schemas.BillUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    _get_bill(db, current_user, bill_id)
    db_bill = crud.update_bill(db, bill_id, update)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="BILL", entity_id=bill_id,
                          request=request, new_values=update.model_dump(exclude_unset=True))
    return {"success": True, "bill": crud.bill_to_dict(db_bill)}


@router.put("/{bill_id}/payment-status")
def update_payment_status(
    bill_id: int,
    update: schemas.PaymentStatusUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    bill = _get_bill(db, current_user, bill_id)
    old_status = bill.payment_status
    points = 0
    with atomic(db):
        crud.set_payment_status(db, bill, update)
        if update.payment_status == models.PaymentStatus.PAID:
            points = loyalty.earn_points_for_bill(db, bill, user_id=current_user.id)

    bill_dict = crud.bill_to_dict(bill, include_items=False)
    crud.create_audit_log(user_id=current_user.id, action="PAYMENT_STATUS", entity_type="BILL", entity_id=bill_id,
                          request=request, old_values={"payment_status": old_status.value},
                          new_values={"payment_status": update.payment_status.value})
    if update.payment_status == models.PaymentStatus.PAID and old_status != models.PaymentStatus.PAID:
        background_tasks.add_task(notifier.notify_event, "paymentReceived", notifier.payment_received_message(bill_dict))
    return {"success": True, "bill": bill_dict, "points_earned": points}


@router.delete("/{bill_id}")
def delete_bill(
    bill_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    bill = _get_bill(db, current_user, bill_id)
    bill_code = bill.bill_code
    crud.delete_bill(db, bill_id)
    crud.create_audit_log(user_id=current_user.id, action="DELETE", entity_type="BILL", entity_id=bill_id,
                          details=f"Deleted {bill_code}", request=request)
    return {"success": True}

# rehabplus/routers/expenses.py
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db

router = APIRouter(
    prefix="/expenses",
    tags=["Expenses"],
    dependencies=[Depends(security.require_admin)],
    responses={404: {"description": "Not found"}},
)


@router.get("")
def read_expenses(
    category_id: Optional[int] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return [crud.expense_to_dict(e) for e in crud.list_expenses(db, category_id, year, month)]


@router.get("/summary")
def read_expense_summary(db: Session = Depends(get_db)):
    return crud.expense_summary(db)


@router.get("/categories")
def read_expense_categories(db: Session = Depends(get_db)):
    return [{"id": c.id, "name": c.name, "description": c.description} for c in crud.list_expense_categories(db)]


@router.post("/categories", status_code=status.HTTP_201_CREATED)
def create_expense_category(
    category: schemas.ExpenseCategoryCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_category = crud.create_expense_category(db, category)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="EXPENSE_CATEGORY",
                          entity_id=db_category.id, details=db_category.name, request=request)
    return {"success": True, "category_id": db_category.id}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_expense(
    expense: schemas.ExpenseCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_expense = crud.create_expense(db, expense, created_by=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="EXPENSE", entity_id=db_expense.id,
                          request=request, new_values=expense.model_dump())
    return {"success": True, "expense": crud.expense_to_dict(db_expense)}


@router.put("/{expense_id}")
def update_expense(
    expense_id: int,
    update: schemas.ExpenseUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_expense = crud.update_expense(db, expense_id, update)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="EXPENSE", entity_id=expense_id,
                          request=request, new_values=update.model_dump(exclude_unset=True))
    return {"success": True, "expense": crud.expense_to_dict(db_expense)}


@router.delete("/{expense_id}")
def delete_expense(
    expense_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    crud.delete_expense(db, expense_id)
    crud.create_audit_log(user_id=current_user.id, action="DELETE", entity_type="EXPENSE", entity_id=expense_id,
                          request=request)
    return {"success": True}

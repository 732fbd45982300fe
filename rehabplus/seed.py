# rehabplus/seed.py
import logging

from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .database import SessionLocal
from .loyalty import seed_tier_rules
from .security import get_password_hash

logger = logging.getLogger(__name__)

DEFAULT_EXPENSE_CATEGORIES = ("Rent", "Utilities", "Salaries", "Equipment", "Supplies", "Marketing", "Other")


def ensure_default_clinic(db: Session) -> models.Clinic:
    settings = get_settings()
    clinic = db.query(models.Clinic).filter(models.Clinic.code == settings.default_clinic_code).first()
    if clinic is None:
        clinic = models.Clinic(code=settings.default_clinic_code, name=settings.default_clinic_name, active=True)
        db.add(clinic)
        db.commit()
        db.refresh(clinic)
        logger.info(f"Created default clinic {clinic.code}")
    return clinic


def ensure_admin(db: Session, clinic: models.Clinic) -> None:
    settings = get_settings()
    if not settings.admin_email or not settings.admin_password:
        return
    email = settings.admin_email.lower()
    user = db.query(models.User).filter(models.User.email == email).first()
    if user:
        return
    db.add(models.User(
        email=email,
        password_hash=get_password_hash(settings.admin_password),
        first_name="System",
        last_name="Administrator",
        role=models.UserRole.ADMIN,
        clinic_id=clinic.id,
        active=True,
    ))
    db.commit()
    logger.info(f"Created admin account {email}")


def ensure_expense_categories(db: Session) -> None:
    if db.query(models.ExpenseCategory).first():
        return
    for name in DEFAULT_EXPENSE_CATEGORIES:
        db.add(models.ExpenseCategory(name=name))
    db.commit()


def seed_database(db: Session = None) -> None:
    """Idempotent startup seeding"""
    own_session = db is None
    db = db or SessionLocal()
    try:
        clinic = ensure_default_clinic(db)
        seed_tier_rules(db)
        ensure_expense_categories(db)
        ensure_admin(db, clinic)
    finally:
        if own_session:
            db.close()

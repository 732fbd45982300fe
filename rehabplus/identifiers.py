"""Patient and case identifiers: Thai ID / passport validation and code sequences."""
import logging
import re
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import SequenceExhaustedError

logger = logging.getLogger(__name__)

MAX_SEQUENCE = 9999
_PASSPORT_RE = re.compile(r"^[A-Z0-9]{6,20}$", re.IGNORECASE)


def normalize_thai_id(pid: Optional[str]) -> str:
    return re.sub(r"[\s-]", "", pid or "")


def validate_thai_id(pid: Optional[str]) -> bool:
    """Mod-11 checksum over the first 12 digits must equal the 13th"""
    digits = normalize_thai_id(pid)
    if len(digits) != 13 or not digits.isdigit():
        return False
    total = sum(int(digits[i]) * (13 - i) for i in range(12))
    checksum = (11 - total % 11) % 10
    return checksum == int(digits[12])


def validate_passport(passport_no: Optional[str]) -> bool:
    cleaned = re.sub(r"\s", "", passport_no or "")
    return bool(_PASSPORT_RE.match(cleaned))


def format_pthn(year: int, sequence: int) -> str:
    return f"PT{year % 100:02d}{sequence:04d}"


def _locked_sequence(db: Session, year: int):
    return db.query(models.PTHNSequence).filter(models.PTHNSequence.year == year).with_for_update()


def _create_sequence_row(db: Session, year: int) -> models.PTHNSequence:
    """Insert the year's counter row, or lock the one a concurrent registration just created"""
    try:
        with db.begin_nested():
            row = models.PTHNSequence(year=year, last_sequence=0)
            db.add(row)
            db.flush()
        return row
    except IntegrityError:
        logger.warning(f"PTHN counter for {year} was created concurrently, retrying")
    return _locked_sequence(db, year).one()


def generate_pthn(db: Session, now: Optional[datetime] = None) -> str:
    """Issue the next PTHN for the current year.

    Runs in the caller's transaction. The per-year counter row is locked with
    SELECT ... FOR UPDATE so concurrent registrations never share a number.
    The first registration of a year inserts the row inside a savepoint; if
    another session wins that insert, the locked SELECT is retried once.
    The caller commits; on any error the transaction is rolled back here.
    """
    year = (now or datetime.now()).year
    try:
        row = _locked_sequence(db, year).first() or _create_sequence_row(db, year)
        if row.last_sequence + 1 > MAX_SEQUENCE:
            raise SequenceExhaustedError(f"PTHN sequence for {year} exceeded {MAX_SEQUENCE}")
        row.last_sequence += 1
        db.flush()
        return format_pthn(year, row.last_sequence)
    except (SQLAlchemyError, SequenceExhaustedError):
        db.rollback()
        logger.error(f"PTHN generation failed for {year}", exc_info=True)
        raise


def preview_next_pthn(db: Session, now: Optional[datetime] = None) -> str:
    """Next PTHN without reserving it"""
    year = (now or datetime.now()).year
    row = db.get(models.PTHNSequence, year)
    return format_pthn(year, (row.last_sequence if row else 0) + 1)


def generate_pt_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"PT{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8].upper()}"


def _next_monthly_code(db: Session, column, prefix: str, now: Optional[datetime]) -> str:
    now = now or datetime.now()
    year_prefix = f"{prefix}{now:%y}"
    codes = db.query(column).filter(column.like(f"{year_prefix}%")).all()
    last = max((int(code[-4:]) for (code,) in codes if code[-4:].isdigit()), default=0)
    if last + 1 > MAX_SEQUENCE:
        raise SequenceExhaustedError(f"{prefix} code sequence for {now.year} exceeded {MAX_SEQUENCE}")
    return f"{year_prefix}{now:%m}{last + 1:04d}"


def generate_pn_code(db: Session, now: Optional[datetime] = None) -> str:
    """PN<YY><MM><NNNN>; the sequence runs across the whole year"""
    return _next_monthly_code(db, models.PNCase.pn_code, "PN", now)


def generate_course_code(db: Session, now: Optional[datetime] = None) -> str:
    return _next_monthly_code(db, models.Course.course_code, "CRS", now)


def generate_bill_code(db: Session, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    prefix = f"BILL{now:%Y%m%d}"
    count = db.query(func.count(models.Bill.id)).filter(models.Bill.bill_code.like(f"{prefix}%")).scalar() or 0
    return f"{prefix}{count + 1:04d}"


def walk_in_display_id(appointment_id: int) -> str:
    return f"W{appointment_id:06d}"

# tests/test_identifiers.py
from datetime import datetime

import pytest
from sqlalchemy import false

from rehabplus import crud, identifiers, models
from rehabplus.database import SessionLocal
from rehabplus.errors import SequenceExhaustedError

from conftest import OTHER_THAI_ID, VALID_THAI_ID


@pytest.mark.parametrize("pid", [VALID_THAI_ID, OTHER_THAI_ID, "1-2345-67890-12-1", "1 2345 67890 12 1"])
def test_valid_thai_ids(pid):
    assert identifiers.validate_thai_id(pid)


@pytest.mark.parametrize("pid", ["1234567890122", "123456789012", "12345678901234", "12345678901a1", "", None])
def test_invalid_thai_ids(pid):
    assert not identifiers.validate_thai_id(pid)


def test_passport_validation():
    assert identifiers.validate_passport("AA1234567")
    assert identifiers.validate_passport("aa 123 456")
    assert not identifiers.validate_passport("A12")
    assert not identifiers.validate_passport("AB-123456")
    assert not identifiers.validate_passport(None)


def test_pthn_format_uses_two_digit_year():
    assert identifiers.format_pthn(2025, 1) == "PT250001"
    assert identifiers.format_pthn(2031, 9999) == "PT319999"


def test_pthn_sequence_increments_per_year(db):
    jan = datetime(2025, 1, 10)
    assert identifiers.preview_next_pthn(db, jan) == "PT250001"
    assert identifiers.generate_pthn(db, jan) == "PT250001"
    assert identifiers.generate_pthn(db, jan) == "PT250002"
    db.commit()
    assert identifiers.preview_next_pthn(db, jan) == "PT250003"
    # a new year starts again at 1
    assert identifiers.generate_pthn(db, datetime(2026, 1, 1)) == "PT260001"


def test_pthn_sequence_exhausted(db):
    db.add(models.PTHNSequence(year=2025, last_sequence=9999))
    db.commit()
    with pytest.raises(SequenceExhaustedError):
        identifiers.generate_pthn(db, datetime(2025, 6, 1))


def test_first_pthn_of_the_year_survives_a_concurrent_insert(db, monkeypatch):
    real_query = identifiers._locked_sequence
    raced = []

    def racing_query(session, year):
        query = real_query(session, year)
        if raced:
            return query
        # another registration creates the year's counter between our SELECT and INSERT
        raced.append(year)
        other = SessionLocal()
        other.add(models.PTHNSequence(year=year, last_sequence=7))
        other.commit()
        other.close()
        return query.filter(false())

    monkeypatch.setattr(identifiers, "_locked_sequence", racing_query)
    assert identifiers.generate_pthn(db, datetime(2025, 3, 1)) == "PT250008"
    db.commit()
    assert db.get(models.PTHNSequence, 2025).last_sequence == 8


def test_pn_code_continues_the_sequence(db, patient, clinics, admin_user):
    now = datetime.now()
    first = crud.create_pn_case(db, patient, clinics[0].id, "Dx", "Rehab", admin_user.id)
    db.commit()
    assert first.pn_code == f"PN{now:%y}{now:%m}0001"
    assert identifiers.generate_pn_code(db, now) == f"PN{now:%y}{now:%m}0002"


def test_walk_in_display_id():
    assert identifiers.walk_in_display_id(42) == "W000042"


def test_pt_number_is_unique_and_timestamped():
    now = datetime(2025, 2, 3, 4, 5, 6)
    a = identifiers.generate_pt_number(now)
    b = identifiers.generate_pt_number(now)
    assert a.startswith("PT20250203040506-")
    assert a != b

# tests/conftest.py
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rehabplus.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-rehabplus-suite-0123456789")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-rehabplus-suite-0123")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEFAULT_CLINIC_CODE", "CL001")

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

from rehabplus import crud, models, schemas, security
from rehabplus.database import SessionLocal, create_tables, drop_tables, engine
from rehabplus.main import fastapi_app
from rehabplus.services import notifier
from rehabplus.services.thai_card import thai_card_cache

VALID_THAI_ID = "1234567890121"
OTHER_THAI_ID = "1101700203450"
PASSWORD = "Password123!"


@pytest.fixture(scope="session", autouse=True)
def database_file():
    yield
    engine.dispose()
    if os.path.exists("test_rehabplus.db"):
        os.remove("test_rehabplus.db")


@pytest.fixture(autouse=True)
def reset_state(monkeypatch):
    drop_tables()
    create_tables()
    monkeypatch.setattr(security, "login_tracker", security.LoginAttemptTracker())
    thai_card_cache.clear()
    yield


@pytest.fixture
def foreign_keys():
    """SQLite only checks foreign keys when asked to, per connection"""
    def enable(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    event.listen(engine, "connect", enable)
    engine.dispose()
    yield
    event.remove(engine, "connect", enable)
    engine.dispose()


@pytest.fixture
def notifications(monkeypatch):
    """Captures post-commit notifications instead of dispatching them"""
    sent = []

    async def fake_notify(event, message):
        sent.append((event, message))
        return {"line": False, "sms": False}

    monkeypatch.setattr(notifier, "notify_event", fake_notify)
    return sent


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(fastapi_app)


@pytest.fixture
def clinics(db):
    main = models.Clinic(code="CL001", name="RehabPlus Main", email="main@rehabplus.local", active=True)
    branch = models.Clinic(code="CL002", name="RehabPlus Branch", active=True)
    db.add_all([main, branch])
    db.commit()
    return main, branch


def _make_user(db, email, role, clinic_id, first_name):
    user = models.User(
        email=email,
        password_hash=security.get_password_hash(PASSWORD),
        first_name=first_name,
        last_name="Tester",
        role=role,
        clinic_id=clinic_id,
        active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db, clinics):
    return _make_user(db, "admin@rehabplus.local", models.UserRole.ADMIN, clinics[0].id, "Ada")


@pytest.fixture
def pt_user(db, clinics):
    return _make_user(db, "pt@rehabplus.local", models.UserRole.PT, clinics[0].id, "Pat")


@pytest.fixture
def clinic_user(db, clinics):
    return _make_user(db, "front@branch.local", models.UserRole.CLINIC, clinics[1].id, "Front")


def auth_headers(user):
    return {"Authorization": f"Bearer {security.create_user_token(user)}"}


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture
def pt_headers(pt_user):
    return auth_headers(pt_user)


@pytest.fixture
def clinic_headers(clinic_user):
    return auth_headers(clinic_user)


def make_patient(db, clinic_id, created_by, pid=None, **overrides):
    data = {
        "first_name": "Somchai",
        "last_name": "Jaidee",
        "dob": date(1985, 3, 1),
        "diagnosis": "Low back pain",
        "phone": "0812345678",
        "email": "somchai@example.com",
        "pid": pid,
    }
    data.update(overrides)
    return crud.create_patient(db, schemas.PatientCreate(**data), clinic_id, created_by)


@pytest.fixture
def patient(db, clinics, admin_user):
    return make_patient(db, clinics[0].id, admin_user.id, pid=VALID_THAI_ID)


@pytest.fixture
def course_template(db):
    template = models.CourseTemplate(template_name="10 Session Pack", total_sessions=10,
                                     default_price=5000, validity_days=180, active=True)
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


@pytest.fixture
def course(db, clinics, patient, course_template, admin_user):
    return crud.purchase_course(
        db,
        schemas.CoursePurchase(template_id=course_template.id, patient_id=patient.id, clinic_id=clinics[0].id),
        admin_user.id,
    )

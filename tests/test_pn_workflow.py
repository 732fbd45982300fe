# tests/test_pn_workflow.py
from datetime import date, time

import pytest

from rehabplus import crud, models, schemas, workflow
from rehabplus.config import get_settings
from rehabplus.errors import PermissionDeniedError, WorkflowError

from conftest import make_patient

SOAP = {"subjective": "Pain 3/10", "objective": "ROM improved", "assessment": "Improving", "plan": "Continue"}
ASSESSMENT = {"pt_diagnosis": "Lumbar strain", "pt_chief_complaint": "Back pain",
              "pt_present_history": "Two weeks", "pt_pain_score": 6}


def _case(db, patient, clinic_id, user, course_id=None):
    pn = crud.create_pn_case(db, patient, clinic_id, "Back pain", "Rehab", user.id, course_id=course_id)
    db.commit()
    return pn


def _ledger(db, course_id):
    return [u.action_type for u in crud.list_course_usage(db, course_id)]


def test_transition_table():
    PN = models.PNStatus
    assert workflow.can_transition(PN.PENDING, PN.ACCEPTED)
    assert workflow.can_transition(PN.ACCEPTED, PN.PENDING)
    assert workflow.can_transition(PN.IN_PROGRESS, PN.COMPLETED)
    assert not workflow.can_transition(PN.PENDING, PN.COMPLETED)
    assert not workflow.can_transition(PN.COMPLETED, PN.ACCEPTED)
    assert not workflow.can_transition(PN.CANCELLED, PN.PENDING)


def test_accept_at_main_clinic_debits_course_once(db, clinics, patient, course, admin_user):
    pn = _case(db, patient, clinics[0].id, admin_user, course_id=course.id)

    outcome = workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    db.commit()
    assert outcome["course_debited"] is True
    db.refresh(course)
    assert (course.used_sessions, course.remaining_sessions) == (1, 9)

    # a repeated debit for the same case is a no-op
    assert workflow.debit_course_session(db, course.id, admin_user.id, pn_id=pn.id) is False
    assert _ledger(db, course.id) == [models.CourseAction.PURCHASE, models.CourseAction.USE]


def test_back_to_pending_returns_the_session_and_clears_assessment(db, clinics, patient, course, admin_user):
    pn = _case(db, patient, clinics[0].id, admin_user, course_id=course.id)
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED", **ASSESSMENT), admin_user)
    db.commit()
    assert pn.pt_diagnosis == "Lumbar strain"

    outcome = workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="PENDING"), admin_user)
    db.commit()
    db.refresh(course)
    assert outcome["session_returned"] is True
    assert pn.pt_diagnosis is None and pn.accepted_at is None
    assert course.remaining_sessions == 10
    assert workflow.outstanding_courses(db, pn_id=pn.id) == []

    # accepting again takes a fresh session
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    db.commit()
    db.refresh(course)
    assert course.remaining_sessions == 9


def test_non_main_clinic_needs_assessment(db, clinics, admin_user):
    branch_patient = make_patient(db, clinics[1].id, admin_user.id)
    pn = _case(db, branch_patient, clinics[1].id, admin_user)

    with pytest.raises(WorkflowError) as exc:
        workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED", pt_diagnosis="x"), admin_user)
    assert exc.value.required_fields == ["pt_chief_complaint", "pt_present_history", "pt_pain_score"]
    db.rollback()

    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED", **ASSESSMENT), admin_user)
    db.commit()
    assert pn.status == models.PNStatus.ACCEPTED
    assert pn.pt_pain_score == 6


def test_case_touching_main_clinic_skips_assessment(db, clinics, patient, admin_user):
    pn = _case(db, patient, clinics[1].id, admin_user)
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    assert pn.status == models.PNStatus.ACCEPTED


def test_complete_requires_soap(db, clinics, patient, admin_user):
    pn = _case(db, patient, clinics[0].id, admin_user)
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    db.commit()

    with pytest.raises(WorkflowError) as exc:
        workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="COMPLETED"), admin_user)
    assert exc.value.required_fields == [f"soap_notes.{f}" for f in workflow.SOAP_FIELDS]
    db.rollback()

    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="COMPLETED", soap_notes=SOAP), admin_user)
    db.commit()
    assert pn.status == models.PNStatus.COMPLETED
    assert [n.plan for n in crud.list_soap_notes(db, pn.id)] == ["Continue"]


def test_cancel_returns_session_and_cancels_appointments(db, clinics, patient, course, admin_user, pt_user):
    pn = _case(db, patient, clinics[0].id, admin_user, course_id=course.id)
    appt = models.Appointment(patient_id=patient.id, pt_id=pt_user.id, clinic_id=clinics[0].id,
                              appointment_date=date.today(), start_time=time(9), end_time=time(10),
                              pn_case_id=pn.id, status=models.AppointmentStatus.SCHEDULED)
    db.add(appt)
    db.commit()
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    db.commit()

    outcome = workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="CANCELLED"), admin_user)
    db.commit()
    db.refresh(course)
    db.refresh(appt)
    assert outcome["session_returned"] is True
    assert course.remaining_sessions == 10
    assert pn.cancellation_reason == workflow.DEFAULT_CANCEL_REASON
    assert appt.status == models.AppointmentStatus.CANCELLED


def test_reverse_is_admin_only_and_needs_reason(db, clinics, patient, admin_user, pt_user):
    pn = _case(db, patient, clinics[0].id, admin_user)
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="COMPLETED", soap_notes=SOAP), admin_user)
    db.commit()

    with pytest.raises(PermissionDeniedError):
        workflow.reverse_pn_status(db, pn, "typo", pt_user)
    with pytest.raises(WorkflowError):
        workflow.reverse_pn_status(db, pn, "  ", admin_user)

    workflow.reverse_pn_status(db, pn, "Closed by mistake", admin_user)
    db.commit()
    assert pn.status == models.PNStatus.ACCEPTED
    assert pn.is_reversed is True
    history = db.query(models.PNStatusHistory).filter_by(pn_id=pn.id, is_reversal=True).one()
    assert history.change_reason == "Closed by mistake"


def test_status_api_rejects_invalid_transition(client, db, clinics, patient, admin_user, admin_headers):
    pn = _case(db, patient, clinics[0].id, admin_user)
    response = client.patch(f"/api/pn/{pn.id}/status", headers=admin_headers, json={"status": "COMPLETED"})
    assert response.status_code == 400
    assert "Invalid status transition" in response.json()["error"]


def test_status_api_reports_missing_soap_fields(client, db, clinics, patient, admin_user, admin_headers):
    pn = _case(db, patient, clinics[0].id, admin_user)
    client.patch(f"/api/pn/{pn.id}/status", headers=admin_headers, json={"status": "ACCEPTED"})
    response = client.patch(f"/api/pn/{pn.id}/status", headers=admin_headers, json={"status": "COMPLETED"})
    assert response.status_code == 400
    assert response.json()["required_fields"] == ["soap_notes.subjective", "soap_notes.objective",
                                                   "soap_notes.assessment", "soap_notes.plan"]


def test_clinic_user_cannot_change_status(client, db, clinics, patient, admin_user, clinic_headers):
    pn = _case(db, patient, clinics[1].id, admin_user)
    response = client.patch(f"/api/pn/{pn.id}/status", headers=clinic_headers, json={"status": "ACCEPTED"})
    assert response.status_code == 403


def test_create_case_api_and_timeline(client, clinics, patient, admin_headers):
    response = client.post("/api/pn", headers=admin_headers, json={
        "patient_id": patient.id, "diagnosis": "Neck pain", "purpose": "Rehab", "target_clinic_id": clinics[0].id,
    })
    assert response.status_code == 201
    pn_id = response.json()["pn_id"]
    assert response.json()["pn_code"].startswith("PN")

    timeline = client.get(f"/api/pn/{pn_id}/timeline", headers=admin_headers).json()
    assert len(timeline) >= 1


def test_status_api_lists_only_the_missing_soap_fields(client, db, clinics, patient, admin_user, admin_headers):
    pn = _case(db, patient, clinics[0].id, admin_user)
    client.patch(f"/api/pn/{pn.id}/status", headers=admin_headers, json={"status": "ACCEPTED"})
    response = client.patch(f"/api/pn/{pn.id}/status", headers=admin_headers, json={
        "status": "COMPLETED", "soap_notes": {"subjective": "Pain 2/10", "plan": "  "},
    })
    assert response.status_code == 400
    assert response.json()["required_fields"] == ["soap_notes.objective", "soap_notes.assessment",
                                                   "soap_notes.plan"]
    db.refresh(pn)
    assert pn.status == models.PNStatus.ACCEPTED


def test_delete_case_keeps_ledger_and_bills(foreign_keys, client, db, clinics, patient, course, admin_user,
                                            admin_headers):
    pn = _case(db, patient, clinics[0].id, admin_user, course_id=course.id)
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="ACCEPTED"), admin_user)
    db.commit()
    workflow.change_pn_status(db, pn, schemas.PNStatusUpdate(status="PENDING"), admin_user)
    bill = models.Bill(bill_code="BILL-T1", patient_id=patient.id, clinic_id=clinics[0].id, pn_case_id=pn.id,
                       bill_date=date.today())
    db.add(bill)
    db.commit()
    pn_id = pn.id

    response = client.delete(f"/api/pn/{pn_id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["success"] is True

    db.expire_all()
    assert db.get(models.PNCase, pn_id) is None
    assert db.get(models.Bill, bill.id).pn_case_id is None
    assert _ledger(db, course.id) == [models.CourseAction.PURCHASE, models.CourseAction.USE, models.CourseAction.RETURN]
    assert db.get(models.Course, course.id).remaining_sessions == 10


def test_visits_are_numbered_per_case(client, db, clinics, patient, admin_user, pt_user, admin_headers):
    pn = _case(db, patient, clinics[0].id, admin_user)
    url = f"/api/pn/{pn.id}/visit"

    first = client.post(url, headers=admin_headers, json={"visit_date": "2026-01-05", "status": "COMPLETED",
                                                          "treatment_provided": "Ultrasound"})
    assert first.status_code == 201
    assert first.json()["visit_no"] == 1
    second = client.post(url, headers=admin_headers, json={"visit_date": "2026-01-12", "therapist_id": pt_user.id})
    assert second.json()["visit_no"] == 2
    assert client.post(url, headers=admin_headers, json={"visit_date": "2026-01-19", "status": "DONE"}).status_code == 400

    detail = client.get(f"/api/pn/{pn.id}", headers=admin_headers).json()
    assert [(v["visit_no"], v["status"], v["therapist_id"]) for v in detail["visits"]] == [
        (1, "COMPLETED", admin_user.id), (2, "SCHEDULED", pt_user.id)]

    timeline = client.get(f"/api/pn/{pn.id}/timeline", headers=admin_headers).json()
    assert [e["title"] for e in timeline if e["type"] == "VISIT"] == ["Visit #1", "Visit #2"]


def test_attachment_download(client, db, clinics, patient, admin_user, admin_headers, clinic_headers,
                             monkeypatch, tmp_path):
    monkeypatch.setattr(get_settings(), "upload_dir", str(tmp_path))
    pn = _case(db, patient, clinics[0].id, admin_user)

    uploaded = client.post(f"/api/pn/{pn.id}/upload", headers=admin_headers,
                           files={"file": ("xray.png", b"\x89PNG fake image", "image/png")})
    assert uploaded.status_code == 201
    attachment_id = uploaded.json()["attachment"]["id"]

    url = f"/api/pn/attachments/{attachment_id}/download"
    response = client.get(url, headers=admin_headers)
    assert response.status_code == 200
    assert response.content == b"\x89PNG fake image"
    assert response.headers["content-type"] == "image/png"
    assert "xray.png" in response.headers["content-disposition"]

    # the case lives at the main clinic only
    assert client.get(url, headers=clinic_headers).status_code == 403
    assert client.get("/api/pn/attachments/999/download", headers=admin_headers).status_code == 404

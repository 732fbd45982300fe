# tests/test_appointments_api.py
from datetime import date, timedelta

import pytest

from rehabplus import models
from rehabplus.services.calendar_service import calendar_service

DAY = (date.today() + timedelta(days=1)).isoformat()


@pytest.fixture
def booking(clinics, patient, pt_user):
    return {
        "booking_type": "OLD_PATIENT",
        "patient_id": patient.id,
        "pt_id": pt_user.id,
        "clinic_id": clinics[0].id,
        "appointment_date": DAY,
        "start_time": "09:00",
        "end_time": "10:00",
        "appointment_type": "Follow up",
    }


def _book(client, headers, payload, **overrides):
    return client.post("/api/appointments", headers=headers, json={**payload, **overrides})


def test_create_appointment(client, booking, admin_headers, notifications):
    response = _book(client, admin_headers, booking)
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["pn_case_id"] is None
    assert data["calendar_event_id"] is None
    assert [event for event, _ in notifications] == ["newAppointment"]

    appt = client.get(f"/api/appointments/{data['appointment_id']}", headers=admin_headers).json()
    assert appt["status"] == "SCHEDULED"
    assert appt["start_time"] == "09:00"
    assert appt["patient_name"] == "Somchai Jaidee"


def test_overlapping_booking_is_a_conflict(client, booking, admin_headers, notifications):
    assert _book(client, admin_headers, booking).status_code == 201

    overlap = _book(client, admin_headers, booking, start_time="09:30", end_time="10:30")
    assert overlap.status_code == 409
    # back-to-back is fine
    assert _book(client, admin_headers, booking, start_time="10:00", end_time="10:30").status_code == 201


def test_cancelled_appointments_free_the_slot(client, booking, admin_headers, notifications):
    appointment_id = _book(client, admin_headers, booking).json()["appointment_id"]
    client.delete(f"/api/appointments/{appointment_id}", headers=admin_headers)
    assert _book(client, admin_headers, booking).status_code == 201


def test_end_before_start_is_rejected(client, booking, admin_headers):
    response = _book(client, admin_headers, booking, start_time="10:00", end_time="09:00")
    assert response.status_code == 400


def test_walk_in_needs_a_name(client, booking, admin_headers, notifications):
    walk_in = {**booking, "booking_type": "walk_in", "patient_id": None}
    assert _book(client, admin_headers, walk_in).status_code == 400

    response = _book(client, admin_headers, walk_in, walk_in_name="Guest", walk_in_phone="")
    assert response.status_code == 201
    appt = client.get(f"/api/appointments/{response.json()['appointment_id']}", headers=admin_headers).json()
    assert appt["walk_in_display_id"] == f"W{response.json()['appointment_id']:06d}"
    assert appt["walk_in_phone"] is None


def test_clinic_user_cannot_book(client, booking, clinic_headers):
    assert _book(client, clinic_headers, booking).status_code == 403


def test_check_conflict_and_slots(client, booking, pt_user, admin_headers, notifications):
    _book(client, admin_headers, booking)
    params = {"pt_id": pt_user.id, "date": DAY, "start_time": "09:45", "end_time": "11:00"}
    result = client.get("/api/appointments/check-conflict", params=params, headers=admin_headers).json()
    assert result["has_conflict"] is True
    assert result["conflicts"][0]["start_time"] == "09:00"

    slots = client.get("/api/appointments/available-slots", params={"pt_id": pt_user.id, "date": DAY},
                       headers=admin_headers).json()
    taken = {s["start_time"] for s in slots if not s["available"]}
    assert taken == {"09:00", "09:30"}


def test_auto_created_case_is_accepted_on_completion(client, db, booking, admin_headers, notifications):
    created = _book(client, admin_headers, booking, auto_create_pn=True, pn_purpose="Back rehab").json()
    assert created["pn_case_id"] is not None

    response = client.post(f"/api/appointments/{created['appointment_id']}/complete", headers=admin_headers, json={})
    assert response.status_code == 200
    assert response.json()["pn_status"] == "ACCEPTED"

    pn = db.get(models.PNCase, created["pn_case_id"])
    assert pn.status == models.PNStatus.ACCEPTED
    assert db.get(models.Appointment, created["appointment_id"]).status == models.AppointmentStatus.COMPLETED


def test_initial_assessment_needs_a_body_annotation(client, db, booking, admin_headers, notifications):
    created = _book(client, admin_headers, booking, auto_create_pn=True, appointment_type="Initial Assessment").json()
    url = f"/api/appointments/{created['appointment_id']}/complete"

    missing = client.post(url, headers=admin_headers, json={})
    assert missing.status_code == 400
    assert missing.json()["required_fields"] == ["body_annotation"]

    annotation = {"strokes_json": [{"points": [[1, 2], [3, 4]], "color": "#ff0000"}], "severity": 7}
    done = client.post(url, headers=admin_headers, json={"body_annotation": annotation}).json()
    assert done["pn_status"] == "ACCEPTED"
    saved = db.get(models.BodyAnnotation, done["body_annotation_id"])
    assert saved.entity_type == "pn_case"
    assert saved.entity_id == created["pn_case_id"]


def test_body_check_records_findings(client, db, booking, admin_headers, notifications):
    created = _book(client, admin_headers, booking, auto_create_pn=True, appointment_type="Body Check").json()
    done = client.post(f"/api/appointments/{created['appointment_id']}/complete", headers=admin_headers,
                       json={"bodycheck_findings": {"posture": "forward head"}}).json()
    assert done["bodycheck_id"] is not None
    assert db.get(models.Bodycheck, done["bodycheck_id"]).findings == {"posture": "forward head"}


def test_course_session_debited_and_returned(client, db, booking, course, admin_headers, notifications):
    created = _book(client, admin_headers, booking, course_id=course.id).json()
    appointment_id = created["appointment_id"]

    done = client.post(f"/api/appointments/{appointment_id}/complete", headers=admin_headers, json={}).json()
    assert done["course_debited"] is True
    db.refresh(course)
    assert course.remaining_sessions == 9

    # reopening as admin gives the session back
    client.put(f"/api/appointments/{appointment_id}", headers=admin_headers, json={"status": "SCHEDULED"})
    db.refresh(course)
    assert course.remaining_sessions == 10


def test_pt_cannot_reopen_completed_appointment(client, booking, admin_headers, pt_headers, notifications):
    appointment_id = _book(client, admin_headers, booking).json()["appointment_id"]
    client.post(f"/api/appointments/{appointment_id}/complete", headers=admin_headers, json={})
    response = client.put(f"/api/appointments/{appointment_id}", headers=pt_headers, json={"status": "SCHEDULED"})
    assert response.status_code == 403


def test_cancel_syncs_linked_case(client, db, booking, admin_headers, notifications):
    created = _book(client, admin_headers, booking, auto_create_pn=True).json()
    response = client.request("DELETE", f"/api/appointments/{created['appointment_id']}", headers=admin_headers,
                              json={"reason": "Patient sick"})
    data = response.json()
    assert data["pn_synced"] is True
    assert "linked PN case cancelled" in data["message"]

    pn = db.get(models.PNCase, created["pn_case_id"])
    assert pn.status == models.PNStatus.CANCELLED
    assert pn.cancellation_reason == "Patient sick"
    assert notifications[-1][0] == "appointmentCancelled"

    again = client.delete(f"/api/appointments/{created['appointment_id']}", headers=admin_headers)
    assert again.status_code == 400


def test_reschedule_updates_calendar_and_notifies(client, db, booking, admin_headers, notifications, monkeypatch):
    calls = []

    async def fake_create(db, appt):
        return "evt-123"

    async def fake_update(db, event_id, appt):
        calls.append((event_id, appt["start_time"]))
        return True

    monkeypatch.setattr(calendar_service, "create_event", fake_create)
    monkeypatch.setattr(calendar_service, "update_event", fake_update)

    created = _book(client, admin_headers, booking).json()
    assert created["calendar_event_id"] == "evt-123"

    response = client.put(f"/api/appointments/{created['appointment_id']}", headers=admin_headers,
                          json={"start_time": "13:00", "end_time": "14:00"})
    assert response.json()["rescheduled"] is True
    assert calls == [("evt-123", "13:00")]
    assert [event for event, _ in notifications] == ["newAppointment", "appointmentRescheduled"]


def test_list_hides_cancelled_by_default(client, booking, admin_headers, notifications):
    keep = _book(client, admin_headers, booking).json()["appointment_id"]
    drop = _book(client, admin_headers, booking, start_time="11:00", end_time="12:00").json()["appointment_id"]
    client.delete(f"/api/appointments/{drop}", headers=admin_headers)

    assert [a["id"] for a in client.get("/api/appointments", headers=admin_headers).json()] == [keep]
    cancelled = client.get("/api/appointments", params={"status": "cancelled"}, headers=admin_headers).json()
    assert [a["id"] for a in cancelled] == [drop]


def test_send_patient_sms_without_provider_fails(client, booking, admin_headers, notifications):
    appointment_id = _book(client, admin_headers, booking).json()["appointment_id"]
    response = client.post(f"/api/appointments/{appointment_id}/send-patient-sms", headers=admin_headers)
    assert response.status_code == 400

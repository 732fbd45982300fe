# tests/test_courses.py
from datetime import date, datetime

from rehabplus import models

from conftest import OTHER_THAI_ID, make_patient


def test_templates_are_admin_managed(client, admin_headers, pt_headers):
    template = {"template_name": "5 Session Pack", "total_sessions": 5, "default_price": "2800", "validity_days": 90}
    assert client.post("/api/course-templates", headers=pt_headers, json=template).status_code == 403

    created = client.post("/api/course-templates", headers=admin_headers, json=template)
    assert created.status_code == 201
    template_id = created.json()["template_id"]

    updated = client.put(f"/api/course-templates/{template_id}", headers=admin_headers, json={"default_price": "2500"})
    assert updated.json()["template"]["default_price"] == 2500.0

    client.delete(f"/api/course-templates/{template_id}", headers=admin_headers)
    active = client.get("/api/course-templates", params={"active": True}, headers=pt_headers).json()
    assert template_id not in [t["id"] for t in active]


def test_purchase_course(client, db, clinics, patient, course_template, admin_headers):
    response = client.post("/api/courses", headers=admin_headers, json={
        "template_id": course_template.id, "patient_id": patient.id, "clinic_id": clinics[0].id,
    })
    assert response.status_code == 201
    data = response.json()
    assert data["course_code"] == f"CRS{datetime.now():%y%m}0001"

    course = client.get(f"/api/courses/{data['course_id']}", headers=admin_headers).json()
    assert course["remaining_sessions"] == 10
    assert course["course_price"] == 5000.0
    assert course["expiry_date"] is not None
    assert [u["action_type"] for u in course["usage_history"]] == ["PURCHASE"]


def test_purchase_needs_an_active_template(client, clinics, patient, course_template, admin_headers):
    client.delete(f"/api/course-templates/{course_template.id}", headers=admin_headers)
    response = client.post("/api/courses", headers=admin_headers, json={
        "template_id": course_template.id, "patient_id": patient.id, "clinic_id": clinics[0].id,
    })
    assert response.status_code == 404


def test_shared_users(client, db, clinics, patient, course, admin_user, admin_headers):
    relative = make_patient(db, clinics[0].id, admin_user.id, pid=OTHER_THAI_ID, first_name="Suda")
    url = f"/api/courses/{course.id}/shared-users"

    owner = client.post(url, headers=admin_headers, json={"patient_id": patient.id})
    assert owner.status_code == 400

    added = client.post(url, headers=admin_headers, json={"patient_id": relative.id, "notes": "Wife"})
    assert added.status_code == 201
    shared_id = added.json()["shared_user"]["id"]
    assert client.post(url, headers=admin_headers, json={"patient_id": relative.id}).status_code == 409

    linkable = client.get(f"/api/courses/patient/{relative.id}/active", headers=admin_headers).json()
    assert [(c["id"], c["is_shared"]) for c in linkable] == [(course.id, True)]

    client.delete(f"/api/courses/shared-users/{shared_id}", headers=admin_headers)
    assert client.get(f"/api/courses/patient/{relative.id}/active", headers=admin_headers).json() == []

    reactivated = client.post(f"/api/courses/shared-users/{shared_id}/reactivate", headers=admin_headers).json()
    assert reactivated["shared_user"]["is_active"] is True


def test_adjust_sessions(client, db, course, admin_headers, pt_headers):
    url = f"/api/courses/{course.id}/adjust"
    assert client.post(url, headers=pt_headers, json={"sessions": 2}).status_code == 403
    assert client.post(url, headers=admin_headers, json={"sessions": 0}).status_code == 400
    assert client.post(url, headers=admin_headers, json={"sessions": -11}).status_code == 400

    data = client.post(url, headers=admin_headers, json={"sessions": -10, "notes": "Refunded"}).json()
    assert data["course"]["remaining_sessions"] == 0
    assert data["course"]["status"] == "COMPLETED"

    history = client.get(f"/api/courses/{course.id}/usage-history", headers=admin_headers).json()
    assert [h["action_type"] for h in history] == ["PURCHASE", "ADJUST"]


def test_expired_course_is_not_linkable(client, db, patient, course, admin_headers):
    course.expiry_date = date(2000, 1, 1)
    db.commit()
    assert client.get(f"/api/courses/patient/{patient.id}/active", headers=admin_headers).json() == []


def test_clinic_user_cannot_read_other_clinic_course(client, course, clinic_headers):
    assert client.get(f"/api/courses/{course.id}", headers=clinic_headers).status_code == 403


def test_list_courses_by_status(client, db, course, admin_headers):
    assert [c["id"] for c in client.get("/api/courses", params={"status": "active"}, headers=admin_headers).json()] == [course.id]
    course.status = models.CourseStatus.EXPIRED
    db.commit()
    assert client.get("/api/courses", params={"status": "active"}, headers=admin_headers).json() == []

# tests/test_patients_api.py
from datetime import datetime

from rehabplus import crud, models

from conftest import OTHER_THAI_ID, VALID_THAI_ID, make_patient

NEW_PATIENT = {
    "first_name": "Malee",
    "last_name": "Sukjai",
    "dob": "1990-07-12",
    "diagnosis": "Frozen shoulder",
    "pid": "1-1017-00203-45-0",
    "phone": "0899999999",
}


def test_register_patient_issues_pthn(client, clinics, admin_headers, notifications):
    response = client.post("/api/patients", headers=admin_headers, json={**NEW_PATIENT, "clinic_id": clinics[0].id})
    assert response.status_code == 201
    data = response.json()
    assert data["hn"] == f"PT{datetime.now():%y}0001"
    assert data["pt_number"].startswith("PT")

    patient = client.get(f"/api/patients/{data['patient_id']}", headers=admin_headers).json()
    assert patient["pid"] == OTHER_THAI_ID
    assert patient["clinic_code"] == "CL001"
    assert [event for event, _ in notifications] == ["newPatient"]


def test_register_rejects_bad_thai_id(client, clinics, admin_headers):
    response = client.post("/api/patients", headers=admin_headers,
                           json={**NEW_PATIENT, "pid": "1234567890122", "clinic_id": clinics[0].id})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid Thai national ID"}


def test_register_rejects_duplicate_thai_id(client, clinics, patient, admin_headers):
    response = client.post("/api/patients", headers=admin_headers,
                           json={**NEW_PATIENT, "pid": VALID_THAI_ID, "clinic_id": clinics[0].id})
    assert response.status_code == 409


def test_admin_must_choose_a_clinic(client, clinics, admin_headers):
    response = client.post("/api/patients", headers=admin_headers, json=NEW_PATIENT)
    assert response.status_code == 400
    assert response.json()["required_fields"] == ["clinic_id"]


def test_clinic_user_registers_into_own_clinic(client, clinics, clinic_headers, notifications):
    response = client.post("/api/patients", headers=clinic_headers, json={**NEW_PATIENT, "clinic_id": clinics[0].id})
    assert response.status_code == 201
    patient = client.get(f"/api/patients/{response.json()['patient_id']}", headers=clinic_headers).json()
    assert patient["clinic_id"] == clinics[1].id


def test_missing_required_field_is_a_400(client, clinics, admin_headers):
    payload = {k: v for k, v in NEW_PATIENT.items() if k != "diagnosis"}
    response = client.post("/api/patients", headers=admin_headers, json={**payload, "clinic_id": clinics[0].id})
    assert response.status_code == 400
    assert "diagnosis" in response.json()["error"]


def test_clinic_user_only_sees_own_clinic(client, db, clinics, admin_user, patient, clinic_headers, admin_headers):
    make_patient(db, clinics[1].id, admin_user.id, first_name="Branch")

    own = client.get("/api/patients", headers=clinic_headers).json()
    assert [p["first_name"] for p in own["patients"]] == ["Branch"]
    assert own["pagination"]["total"] == 1

    assert client.get(f"/api/patients/{patient.id}", headers=clinic_headers).status_code == 403
    assert client.get("/api/patients", headers=admin_headers).json()["pagination"]["total"] == 2


def test_search_needs_two_characters(client, patient, admin_headers):
    assert client.get("/api/patients/search", params={"q": "S"}, headers=admin_headers).json() == []
    found = client.get("/api/patients/search", params={"q": "somch"}, headers=admin_headers).json()
    assert [p["id"] for p in found] == [patient.id]


def test_check_id(client, patient, admin_headers):
    existing = client.post("/api/patients/check-id", headers=admin_headers, json={"pid": VALID_THAI_ID}).json()
    assert existing["exists"] is True
    assert existing["patient"]["id"] == patient.id

    fresh = client.post("/api/patients/check-id", headers=admin_headers, json={"pid": OTHER_THAI_ID}).json()
    assert fresh == {"exists": False, "next_pthn": f"PT{datetime.now():%y}0002"}

    bad = client.post("/api/patients/check-id", headers=admin_headers, json={"passport_no": "X1"})
    assert bad.status_code == 400


def test_update_patient(client, patient, admin_headers):
    response = client.put(f"/api/patients/{patient.id}", headers=admin_headers, json={"phone": "0800000000"})
    assert response.json()["patient"]["phone"] == "0800000000"
    assert client.put(f"/api/patients/{patient.id}", headers=admin_headers, json={}).status_code == 400


def test_delete_patient_requires_admin_and_no_cases(client, db, clinics, patient, admin_user, pt_headers, admin_headers):
    assert client.delete(f"/api/patients/{patient.id}", headers=pt_headers).status_code == 403

    other = make_patient(db, clinics[0].id, admin_user.id, first_name="Temp")
    assert client.delete(f"/api/patients/{other.id}", headers=admin_headers).json()["success"] is True

    crud.create_pn_case(db, patient, clinics[0].id, "Dx", "Rehab", admin_user.id)
    db.commit()
    response = client.delete(f"/api/patients/{patient.id}", headers=admin_headers)
    assert response.status_code == 400
    assert db.get(models.Patient, patient.id) is not None


def test_csv_import_reports_row_errors(client, clinics, admin_headers):
    csv_text = (
        "first_name,last_name,dob,diagnosis,pid,clinic_id\n"
        f"Anan,Dee,1980-01-01,Knee pain,,{clinics[0].id}\n"
        f"Bad,Id,1980-01-01,Knee pain,1234567890122,{clinics[0].id}\n"
        f"No,Dob,,Knee pain,,{clinics[0].id}\n"
    )
    response = client.post("/api/patients/csv/import", headers=admin_headers,
                           files={"file": ("patients.csv", csv_text, "text/csv")})
    data = response.json()
    assert data["imported"] == 1
    assert data["failed"] == 2
    assert [e["row"] for e in data["errors"]] == [3, 4]


def test_csv_template(client, admin_headers):
    response = client.get("/api/patients/csv/template", headers=admin_headers)
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.splitlines()[0].startswith("pid,passport_no,title,first_name")

# tests/test_admin_api.py
from datetime import date

from rehabplus import crud


def test_body_annotation_lifecycle(client, db, clinics, patient, admin_user, admin_headers):
    pn = crud.create_pn_case(db, patient, clinics[0].id, "Shoulder pain", "Rehab", admin_user.id)
    db.commit()

    created = client.post("/api/body-annotations", headers=admin_headers, json={
        "entity_id": pn.id, "strokes_json": '[{"points": [[1, 1]], "color": "#000"}]', "severity": 4,
    })
    assert created.status_code == 201
    annotation_id = created.json()["annotation_id"]

    saved = client.get(f"/api/body-annotations/{annotation_id}", headers=admin_headers).json()
    assert saved["entity_type"] == "pn_case"
    assert saved["strokes_json"] == [{"points": [[1, 1]], "color": "#000"}]

    listed = client.get("/api/body-annotations", params={"entity_type": "pn_case", "entity_id": pn.id},
                        headers=admin_headers).json()
    assert [a["id"] for a in listed] == [annotation_id]

    updated = client.put(f"/api/body-annotations/{annotation_id}", headers=admin_headers,
                         json={"severity": 8, "notes": "Worse at night"})
    assert updated.json()["annotation"]["severity"] == 8

    assert client.delete(f"/api/body-annotations/{annotation_id}", headers=admin_headers).json()["success"] is True
    assert client.get(f"/api/body-annotations/{annotation_id}", headers=admin_headers).status_code == 404


def test_body_annotation_validation(client, admin_headers):
    assert client.post("/api/body-annotations", headers=admin_headers, json={"severity": 3}).status_code == 400
    response = client.post("/api/body-annotations", headers=admin_headers, json={"entity_id": 1, "severity": 11})
    assert response.status_code == 400


def test_expenses_are_admin_only(client, pt_headers):
    assert client.get("/api/expenses", headers=pt_headers).status_code == 403


def test_expense_bookkeeping(client, admin_headers):
    category = client.post("/api/expenses/categories", headers=admin_headers, json={"name": "Rent"})
    assert category.status_code == 201
    category_id = category.json()["category_id"]
    assert client.post("/api/expenses/categories", headers=admin_headers, json={"name": "Rent"}).status_code == 409

    created = client.post("/api/expenses", headers=admin_headers, json={
        "category_id": category_id, "amount": "15000", "expense_date": date.today().isoformat(),
    })
    assert created.status_code == 201
    expense = created.json()["expense"]
    assert expense["category_name"] == "Rent"

    updated = client.put(f"/api/expenses/{expense['id']}", headers=admin_headers, json={"amount": "12000"})
    assert updated.json()["expense"]["amount"] == 12000.0

    summary = client.get("/api/expenses/summary", headers=admin_headers).json()
    assert summary["month"]["expenses"] == 12000.0
    assert summary["month"]["net"] == -12000.0
    assert summary["by_category"] == [{"category": "Rent", "amount": 12000.0}]

    client.delete(f"/api/expenses/{expense['id']}", headers=admin_headers)
    assert client.get("/api/expenses", headers=admin_headers).json() == []


def test_create_user_and_grants(client, db, clinics, admin_headers):
    created = client.post("/api/users", headers=admin_headers, json={
        "email": "New.PT@rehabplus.com", "password": "physio-pass-1", "first_name": "Niran",
        "last_name": "Boonmee", "role": "PT",
    })
    assert created.status_code == 201
    user_id = created.json()["user_id"]
    assert created.json()["user"]["email"] == "new.pt@rehabplus.com"

    duplicate = client.post("/api/users", headers=admin_headers, json={
        "email": "new.pt@rehabplus.com", "password": "physio-pass-1", "first_name": "A", "last_name": "B", "role": "PT",
    })
    assert duplicate.status_code == 409

    grant = client.post("/api/grants", headers=admin_headers, json={"user_id": user_id, "clinic_id": clinics[1].id})
    assert grant.status_code == 201
    grants = client.get(f"/api/users/{user_id}/grants", headers=admin_headers).json()
    assert [g["clinic_code"] for g in grants] == [clinics[1].code]

    client.delete(f"/api/grants/{user_id}/{clinics[1].id}", headers=admin_headers)
    assert client.get(f"/api/users/{user_id}/grants", headers=admin_headers).json() == []


def test_clinic_user_needs_a_clinic(client, admin_headers):
    response = client.post("/api/users", headers=admin_headers, json={
        "email": "desk@rehabplus.com", "password": "desk-pass-1", "first_name": "Desk", "last_name": "User",
        "role": "CLINIC",
    })
    assert response.status_code == 400


def test_admin_cannot_deactivate_self(client, db, admin_user, pt_user, admin_headers):
    own = client.patch(f"/api/users/{admin_user.id}/status", headers=admin_headers, json={"active": False})
    assert own.status_code == 400

    other = client.patch(f"/api/users/{pt_user.id}/status", headers=admin_headers, json={"active": False})
    assert other.json()["user"]["active"] is False
    db.refresh(pt_user)
    assert pt_user.active is False


def test_user_management_requires_admin(client, pt_headers):
    assert client.get("/api/users", headers=pt_headers).status_code == 403
    assert client.get("/api/logs", headers=pt_headers).status_code == 403


def test_clinic_list_is_scoped(client, clinics, clinic_headers, admin_headers):
    assert [c["id"] for c in client.get("/api/clinics", headers=clinic_headers).json()] == [clinics[1].id]
    assert len(client.get("/api/clinics", headers=admin_headers).json()) == len(clinics)
    codes = {c["code"] for c in client.get("/api/admin/clinics", headers=admin_headers).json()}
    assert codes == {"CL001", "CL002"}

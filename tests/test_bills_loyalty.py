# tests/test_bills_loyalty.py
from decimal import Decimal

import pytest

from rehabplus import loyalty, models


@pytest.fixture
def tier_rules(db):
    loyalty.seed_tier_rules(db)
    return loyalty.get_tier_rules(db)


def _bill(client, headers, clinic_id, patient_id, **overrides):
    payload = {
        "patient_id": patient_id,
        "clinic_id": clinic_id,
        "discount": "100",
        "items": [
            {"service_name": "Physiotherapy session", "quantity": 2, "unit_price": "1200"},
            {"service_name": "Hot pack", "unit_price": "300"},
        ],
    }
    payload.update(overrides)
    return client.post("/api/bills", headers=headers, json=payload)


def test_tier_for_spending(tier_rules):
    assert loyalty.tier_for_spending(tier_rules, Decimal("0")) == models.LoyaltyTier.BRONZE
    assert loyalty.tier_for_spending(tier_rules, Decimal("19999.99")) == models.LoyaltyTier.BRONZE
    assert loyalty.tier_for_spending(tier_rules, Decimal("20000")) == models.LoyaltyTier.SILVER
    assert loyalty.tier_for_spending(tier_rules, Decimal("150000")) == models.LoyaltyTier.PLATINUM


def test_points_are_rounded_down():
    assert loyalty.points_for_amount(Decimal("2499"), Decimal("1")) == 24
    assert loyalty.points_for_amount(Decimal("2500"), Decimal("1.5")) == 37


def test_seeding_tier_rules_is_idempotent(db, tier_rules):
    assert len(tier_rules) == 4
    assert loyalty.seed_tier_rules(db) == 0


def test_create_bill_totals(client, clinics, patient, admin_headers):
    response = _bill(client, admin_headers, clinics[0].id, patient.id)
    assert response.status_code == 201
    data = response.json()
    assert data["total_amount"] == 2600.0
    assert data["bill_code"].startswith("BILL")

    bill = client.get(f"/api/bills/{data['bill_id']}", headers=admin_headers).json()
    assert bill["subtotal"] == 2700.0
    assert bill["payment_status"] == "UNPAID"
    assert [i["total_price"] for i in bill["items"]] == [2400.0, 300.0]


def test_bill_needs_patient_or_walk_in(client, clinics, admin_headers):
    response = _bill(client, admin_headers, clinics[0].id, None)
    assert response.status_code == 400
    assert _bill(client, admin_headers, clinics[0].id, None, walk_in_name="Guest").status_code == 201


def test_bill_with_course_purchase(client, db, clinics, patient, course_template, admin_headers):
    response = _bill(client, admin_headers, clinics[0].id, patient.id, course_template_id=course_template.id)
    bill_id = response.json()["bill_id"]
    course = db.query(models.Course).filter_by(patient_id=patient.id).one()
    assert course.bill_id == bill_id
    assert course.remaining_sessions == 10


def test_paid_bill_earns_points_once(client, db, clinics, patient, tier_rules, admin_headers, notifications):
    bill_id = _bill(client, admin_headers, clinics[0].id, patient.id).json()["bill_id"]
    url = f"/api/bills/{bill_id}/payment-status"

    paid = client.put(url, headers=admin_headers, json={"payment_status": "PAID", "payment_method": "cash"}).json()
    assert paid["points_earned"] == 26
    assert paid["bill"]["payment_date"] is not None
    assert [event for event, _ in notifications] == ["paymentReceived"]
    assert "2,600.00 THB" in notifications[0][1]

    # flipping back and forth never credits the bill twice
    client.put(url, headers=admin_headers, json={"payment_status": "UNPAID"})
    again = client.put(url, headers=admin_headers, json={"payment_status": "PAID"}).json()
    assert again["points_earned"] == 0

    member = db.query(models.LoyaltyMember).filter_by(patient_id=patient.id).one()
    assert member.available_points == 26
    assert member.lifetime_spending == Decimal("2600.00")


def test_spending_moves_member_up_a_tier(client, db, clinics, patient, tier_rules, admin_headers, notifications):
    items = [{"service_name": "Rehab package", "unit_price": "25000"}]
    bill_id = _bill(client, admin_headers, clinics[0].id, patient.id, discount="0", items=items).json()["bill_id"]
    client.put(f"/api/bills/{bill_id}/payment-status", headers=admin_headers, json={"payment_status": "PAID"})

    member = db.query(models.LoyaltyMember).filter_by(patient_id=patient.id).one()
    assert member.membership_tier == models.LoyaltyTier.SILVER
    # earned at the rate of the tier held when paying
    assert member.total_points == 250


def test_paid_bill_items_are_locked(client, clinics, patient, tier_rules, admin_headers, notifications):
    bill_id = _bill(client, admin_headers, clinics[0].id, patient.id).json()["bill_id"]
    client.put(f"/api/bills/{bill_id}/payment-status", headers=admin_headers, json={"payment_status": "PAID"})
    response = client.put(f"/api/bills/{bill_id}", headers=admin_headers,
                          json={"items": [{"service_name": "Other", "unit_price": "1"}]})
    assert response.status_code == 400


def test_redeem_gift_card(client, db, patient, tier_rules, admin_headers):
    member = loyalty.get_or_create_member(db, patient.id)
    member.available_points = 120
    member.total_points = 120
    db.commit()
    catalog_id = client.post("/api/loyalty/gift-cards/catalog", headers=admin_headers, json={
        "name": "500 baht voucher", "points_required": 100, "gift_card_value": "500", "stock_quantity": 1,
    }).json()["catalog_id"]

    redeemed = client.post(f"/api/loyalty/members/{member.id}/redeem-gift-card", headers=admin_headers,
                           json={"catalog_id": catalog_id})
    assert redeemed.status_code == 200
    assert redeemed.json()["gift_card_code"].startswith("GC-")
    assert redeemed.json()["value"] == 500.0

    db.refresh(member)
    assert member.available_points == 20
    # out of stock now
    again = client.post(f"/api/loyalty/members/{member.id}/redeem-gift-card", headers=admin_headers,
                        json={"catalog_id": catalog_id})
    assert again.status_code == 409


def test_redeem_needs_enough_points(client, db, patient, tier_rules, admin_headers):
    member = loyalty.get_or_create_member(db, patient.id)
    db.commit()
    catalog_id = client.post("/api/loyalty/gift-cards/catalog", headers=admin_headers, json={
        "name": "Voucher", "points_required": 100, "gift_card_value": "500",
    }).json()["catalog_id"]
    response = client.post(f"/api/loyalty/members/{member.id}/redeem-gift-card", headers=admin_headers,
                           json={"catalog_id": catalog_id})
    assert response.status_code == 400
    assert response.json() == {"error": "Insufficient points"}


def test_adjust_points_cannot_go_negative(client, db, patient, admin_headers):
    member = loyalty.get_or_create_member(db, patient.id)
    db.commit()
    url = f"/api/loyalty/members/{member.id}/adjust-points"
    assert client.post(url, headers=admin_headers, json={"points": -1}).status_code == 400
    data = client.post(url, headers=admin_headers, json={"points": 50, "description": "Welcome"}).json()
    assert data["member"]["available_points"] == 50

    transactions = client.get(f"/api/loyalty/members/{member.id}/transactions", headers=admin_headers).json()
    assert [t["transaction_type"] for t in transactions] == ["ADJUST"]


def test_sync_credits_paid_bills(client, db, clinics, patient, tier_rules, admin_headers):
    bill_id = _bill(client, admin_headers, clinics[0].id, patient.id).json()["bill_id"]
    bill = db.get(models.Bill, bill_id)
    bill.payment_status = models.PaymentStatus.PAID
    db.commit()

    result = client.post("/api/loyalty/sync-all-patients", headers=admin_headers).json()
    assert result["bills_processed"] == 1
    assert result["members_created"] == 1
    assert result["points_awarded"] == 26
    assert client.post("/api/loyalty/sync-all-patients", headers=admin_headers).json()["bills_processed"] == 0

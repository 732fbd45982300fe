# tests/test_thai_card.py
from rehabplus.services.thai_card import ThaiCardCache

CARD = {"citizenId": "1234567890121", "firstNameTH": "สมชาย", "lastNameTH": "ใจดี", "birthDate": "25280301"}


def test_payload_is_handed_out_once():
    cache = ThaiCardCache()
    cache.store(CARD)
    assert cache.consume() == CARD
    assert cache.consume() is None


def test_stale_payload_is_discarded():
    now = [1000.0]
    cache = ThaiCardCache(ttl_seconds=30, clock=lambda: now[0])
    cache.store(CARD)
    now[0] += 31
    assert cache.consume() is None


def test_newer_read_replaces_older():
    cache = ThaiCardCache()
    cache.store(CARD)
    cache.store({**CARD, "citizenId": "1101700203450"})
    assert cache.consume()["citizenId"] == "1101700203450"


def test_reader_endpoint_needs_no_login(client, admin_headers):
    assert client.post("/api/thai_card", json=CARD).json() == {"success": True}
    assert client.get("/api/thai_card").status_code == 401
    assert client.get("/api/thai_card", headers=admin_headers).json() == {"data": CARD}
    assert client.get("/api/thai_card", headers=admin_headers).json() == {"data": None}

# tests/test_two_factor_api.py
import pyotp

from rehabplus import models, security

from conftest import PASSWORD


def _enable(client, headers):
    setup = client.post("/api/2fa/setup", headers=headers).json()
    secret = setup["secret"]
    response = client.post("/api/2fa/enable", headers=headers,
                           json={"secret": secret, "token": pyotp.TOTP(secret).now()})
    assert response.status_code == 200
    return secret, response.json()["backup_codes"]


def test_setup_stores_nothing(client, db, pt_user, pt_headers):
    setup = client.post("/api/2fa/setup", headers=pt_headers).json()
    assert setup["otpauth_url"].startswith("otpauth://totp/")
    assert setup["qr_code"].startswith("data:image/png;base64,")
    assert len(setup["backup_codes"]) == security.SecurityConfig.MFA_BACKUP_CODES_COUNT

    db.refresh(pt_user)
    assert pt_user.totp_enabled is False
    assert pt_user.totp_secret is None


def test_enable_needs_a_valid_code(client, db, pt_user, pt_headers):
    secret = client.post("/api/2fa/setup", headers=pt_headers).json()["secret"]
    bad = client.post("/api/2fa/enable", headers=pt_headers, json={"secret": secret, "token": "000000"})
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid verification code"}
    db.refresh(pt_user)
    assert pt_user.totp_enabled is False


def test_enable_then_login_requires_code(client, db, pt_user, pt_headers):
    secret, backup_codes = _enable(client, pt_headers)

    db.refresh(pt_user)
    assert pt_user.totp_enabled is True
    # the seed is kept encrypted
    assert pt_user.totp_secret != secret
    assert security.encryption_service.decrypt(pt_user.totp_secret) == secret

    status = client.get("/api/2fa/status", headers=pt_headers).json()
    assert status["enabled"] is True
    assert status["backup_codes_remaining"] == len(backup_codes)

    assert client.post("/api/2fa/setup", headers=pt_headers).status_code == 400
    login = client.post("/api/auth/login", json={"email": pt_user.email, "password": PASSWORD}).json()
    assert login["requires_2fa"] is True


def test_verify_route(client, pt_user, pt_headers):
    secret, _ = _enable(client, pt_headers)
    ok = client.post("/api/2fa/verify", json={"userId": pt_user.id, "token": pyotp.TOTP(secret).now()})
    assert ok.json() == {"success": True, "verified": True}
    assert client.post("/api/2fa/verify", json={"userId": pt_user.id, "token": "000000"}).status_code == 400


def test_regenerate_backup_codes(client, db, pt_user, pt_headers):
    secret, old_codes = _enable(client, pt_headers)
    url = "/api/2fa/regenerate-backup-codes"
    assert client.post(url, headers=pt_headers, json={"token": "000000"}).status_code == 400

    new_codes = client.post(url, headers=pt_headers, json={"token": pyotp.TOTP(secret).now()}).json()["backup_codes"]
    assert set(new_codes).isdisjoint(old_codes)
    db.refresh(pt_user)
    assert pt_user.totp_backup_codes == [security.mfa_service.hash_backup_code(c) for c in new_codes]


def test_disable_needs_password(client, db, pt_user, pt_headers):
    _enable(client, pt_headers)
    assert client.post("/api/2fa/disable", headers=pt_headers, json={"password": "wrong"}).status_code == 400

    assert client.post("/api/2fa/disable", headers=pt_headers, json={"password": PASSWORD}).json()["success"] is True
    user = db.get(models.User, pt_user.id)
    db.refresh(user)
    assert user.totp_enabled is False
    assert user.totp_secret is None and user.totp_backup_codes is None
    assert client.post("/api/2fa/disable", headers=pt_headers, json={"password": PASSWORD}).status_code == 400


def test_routes_require_sign_in(client):
    assert client.post("/api/2fa/setup").status_code == 401
    assert client.get("/api/2fa/status").status_code == 401

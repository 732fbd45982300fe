# tests/test_security.py
import pyotp

from rehabplus import security


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_lockout_after_max_attempts():
    clock = FakeClock()
    tracker = security.LoginAttemptTracker(max_attempts=3, window_minutes=15, lockout_minutes=30, clock=clock)

    assert tracker.record_failed_attempt("User@Example.com")["locked"] is False
    assert tracker.get_remaining_attempts("user@example.com") == 2
    tracker.record_failed_attempt("user@example.com")
    result = tracker.record_failed_attempt("user@example.com")

    assert result["locked"] is True
    assert result["remaining_minutes"] == 30
    lock = tracker.is_locked("USER@example.com")
    assert lock["locked"] is True
    assert lock["remaining_minutes"] == 30


def test_lockout_expires():
    clock = FakeClock()
    tracker = security.LoginAttemptTracker(max_attempts=2, lockout_minutes=30, clock=clock)
    tracker.record_failed_attempt("a@b.c")
    tracker.record_failed_attempt("a@b.c")
    clock.advance(29 * 60)
    assert tracker.is_locked("a@b.c")["locked"] is True
    clock.advance(2 * 60)
    assert tracker.is_locked("a@b.c") == {"locked": False}
    assert tracker.get_remaining_attempts("a@b.c") == 2


def test_attempts_outside_window_are_forgotten():
    clock = FakeClock()
    tracker = security.LoginAttemptTracker(max_attempts=3, window_minutes=15, clock=clock)
    tracker.record_failed_attempt("a@b.c")
    tracker.record_failed_attempt("a@b.c")
    clock.advance(16 * 60)
    assert tracker.get_remaining_attempts("a@b.c") == 3
    assert tracker.record_failed_attempt("a@b.c")["locked"] is False


def test_clear_and_cleanup():
    clock = FakeClock()
    tracker = security.LoginAttemptTracker(max_attempts=5, window_minutes=15, clock=clock)
    tracker.record_failed_attempt("one@x.y")
    tracker.record_failed_attempt("two@x.y")
    tracker.clear_attempts("one@x.y")
    assert tracker.get_remaining_attempts("one@x.y") == 5

    clock.advance(20 * 60)
    assert tracker.cleanup() == 1
    assert tracker.store.keys() == set()


def test_backup_codes_format_and_single_use():
    mfa = security.MFAService()
    codes = mfa.generate_backup_codes()
    assert len(codes) == 10
    assert all(len(c) == 9 and c[4] == "-" for c in codes)

    hashed = [mfa.hash_backup_code(c) for c in codes]
    remaining = mfa.consume_backup_code(hashed, codes[0].lower().replace("-", ""))
    assert remaining is not None
    assert len(remaining) == 9
    assert mfa.consume_backup_code(remaining, codes[0]) is None


def test_verify_totp():
    mfa = security.MFAService()
    secret = pyotp.random_base32()
    assert mfa.verify_totp(secret, pyotp.TOTP(secret).now())
    assert not mfa.verify_totp(secret, "")
    assert not mfa.verify_totp("", "123456")


def test_generate_secret_returns_qr_data_url():
    secret, uri, qr = security.MFAService().generate_secret("pt@rehabplus.local")
    assert uri.startswith("otpauth://totp/")
    assert "RehabPlus" in uri
    assert qr.startswith("data:image/png;base64,")
    assert len(secret) >= 16


def test_encryption_round_trip_and_passthrough():
    service = security.EncryptionService("x" * 32)
    token = service.encrypt("line-access-token")
    assert token != "line-access-token"
    assert service.decrypt(token) == "line-access-token"
    assert service.encrypt("") == ""
    assert service.decrypt("") == ""
    # values stored before encryption was enabled come back unchanged
    assert service.decrypt("plain-value") == "plain-value"


def test_tokens_are_typed():
    token = security.create_state_token(7, "link")
    assert security.verify_token(token) is None
    assert security.verify_token(token, token_type="state")["purpose"] == "link"
    assert security.verify_token("garbage") is None


def test_password_hashing():
    hashed = security.get_password_hash("Password123!")
    assert security.verify_password("Password123!", hashed)
    assert not security.verify_password("wrong", hashed)

import base64
import hashlib
import json
import logging
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional, Set

import pyotp
import qrcode
import redis
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .database import get_db

security_logger = logging.getLogger("security")

# argon2 for new hashes; bcrypt hashes from older accounts still verify
pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    deprecated="auto",
)

AUTH_COOKIE_NAME = "authToken"
bearer_scheme = HTTPBearer(auto_error=False)


class SecurityConfig:
    """Security policy constants"""
    MIN_PASSWORD_LENGTH = 8

    # Account lockout policies
    MAX_LOGIN_ATTEMPTS = 5
    ATTEMPT_WINDOW_MINUTES = 15
    LOCKOUT_DURATION_MINUTES = 30

    # TOTP
    MFA_BACKUP_CODES_COUNT = 10
    MFA_ISSUER = "RehabPlus"


class EncryptionService:
    """Encrypts integration secrets and TOTP seeds at rest"""

    _SALT = b"rehabplus-settings"

    def __init__(self, key_material: Optional[str] = None):
        key_material = key_material or get_settings().encryption_key
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self._SALT,
            iterations=390000,
        )
        self.fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(key_material.encode())))

    def encrypt(self, data: str) -> str:
        if not data:
            return ""
        return self.fernet.encrypt(data.encode()).decode()

    def decrypt(self, encrypted_data: str) -> str:
        """Decrypt a value; values that were never encrypted are returned as-is"""
        if not encrypted_data:
            return ""
        try:
            return self.fernet.decrypt(encrypted_data.encode()).decode()
        except InvalidToken:
            security_logger.warning("Stored secret is not encrypted with the current key")
            return encrypted_data

    @staticmethod
    def hash_for_lookup(data: str) -> str:
        """One-way hash for values that are only ever compared"""
        if not data:
            return ""
        return hashlib.sha256(data.strip().upper().encode()).hexdigest()


# --- Login lockout ---

class InMemoryAttemptStore:
    """Process-local attempt and lockout storage"""

    def __init__(self):
        self._lock = threading.Lock()
        self.attempts: Dict[str, List[float]] = {}
        self.lockouts: Dict[str, float] = {}

    def get_attempts(self, key: str) -> List[float]:
        with self._lock:
            return list(self.attempts.get(key, []))

    def set_attempts(self, key: str, attempts: List[float], ttl_seconds: int) -> None:
        with self._lock:
            if attempts:
                self.attempts[key] = attempts
            else:
                self.attempts.pop(key, None)

    def get_lockout(self, key: str) -> Optional[float]:
        with self._lock:
            return self.lockouts.get(key)

    def set_lockout(self, key: str, until: float) -> None:
        with self._lock:
            self.lockouts[key] = until

    def clear(self, key: str) -> None:
        with self._lock:
            self.attempts.pop(key, None)
            self.lockouts.pop(key, None)

    def keys(self) -> Set[str]:
        with self._lock:
            return set(self.attempts) | set(self.lockouts)


class RedisAttemptStore:
    """Attempt storage shared between worker processes"""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    def get_attempts(self, key: str) -> List[float]:
        raw = self.client.get(f"login_attempts:{key}")
        return json.loads(raw) if raw else []

    def set_attempts(self, key: str, attempts: List[float], ttl_seconds: int) -> None:
        if attempts:
            self.client.setex(f"login_attempts:{key}", ttl_seconds, json.dumps(attempts))
        else:
            self.client.delete(f"login_attempts:{key}")

    def get_lockout(self, key: str) -> Optional[float]:
        raw = self.client.get(f"login_lockout:{key}")
        return float(raw) if raw else None

    def set_lockout(self, key: str, until: float) -> None:
        ttl = max(1, int(until - time.time()))
        self.client.setex(f"login_lockout:{key}", ttl, str(until))

    def clear(self, key: str) -> None:
        self.client.delete(f"login_attempts:{key}", f"login_lockout:{key}")

    def keys(self) -> Set[str]:
        # Redis expires entries on its own
        return set()


class LoginAttemptTracker:
    """Sliding-window failed login tracker with temporary lockout"""

    def __init__(
        self,
        store=None,
        max_attempts: int = SecurityConfig.MAX_LOGIN_ATTEMPTS,
        window_minutes: int = SecurityConfig.ATTEMPT_WINDOW_MINUTES,
        lockout_minutes: int = SecurityConfig.LOCKOUT_DURATION_MINUTES,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or InMemoryAttemptStore()
        self.max_attempts = max_attempts
        self.window_seconds = window_minutes * 60
        self.lockout_seconds = lockout_minutes * 60
        self.clock = clock

    @staticmethod
    def _normalize(key: str) -> str:
        return (key or "").strip().lower()

    def _recent_attempts(self, key: str, now: float) -> List[float]:
        return [t for t in self.store.get_attempts(key) if now - t < self.window_seconds]

    def is_locked(self, key: str) -> Dict[str, Any]:
        key = self._normalize(key)
        now = self.clock()
        until = self.store.get_lockout(key)
        if until is None:
            return {"locked": False}
        if until <= now:
            self.store.clear(key)
            return {"locked": False}
        return {
            "locked": True,
            "unlock_time": datetime.fromtimestamp(until, tz=timezone.utc).isoformat(),
            "remaining_minutes": max(1, int(-(-(until - now) // 60))),
        }

    def record_failed_attempt(self, key: str) -> Dict[str, Any]:
        key = self._normalize(key)
        now = self.clock()
        attempts = self._recent_attempts(key, now)
        attempts.append(now)
        self.store.set_attempts(key, attempts, self.window_seconds)

        if len(attempts) >= self.max_attempts:
            until = now + self.lockout_seconds
            self.store.set_lockout(key, until)
            security_logger.warning(f"Account {key} locked after {len(attempts)} failed login attempts")
            return {
                "locked": True,
                "unlock_time": datetime.fromtimestamp(until, tz=timezone.utc).isoformat(),
                "remaining_minutes": self.lockout_seconds // 60,
            }
        return {"locked": False, "attempts": len(attempts)}

    def get_remaining_attempts(self, key: str) -> int:
        key = self._normalize(key)
        return max(0, self.max_attempts - len(self._recent_attempts(key, self.clock())))

    def clear_attempts(self, key: str) -> None:
        self.store.clear(self._normalize(key))

    def cleanup(self) -> int:
        """Drop stale attempt lists and expired locks; returns how many keys were removed"""
        now = self.clock()
        removed = 0
        for key in self.store.keys():
            until = self.store.get_lockout(key)
            if until is not None and until > now:
                continue
            if until is not None or not self._recent_attempts(key, now):
                self.store.clear(key)
                removed += 1
        return removed


def _build_login_tracker() -> LoginAttemptTracker:
    settings = get_settings()
    if settings.redis_enabled:
        try:
            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            client.ping()
            security_logger.info("Login attempt tracker using Redis")
            return LoginAttemptTracker(store=RedisAttemptStore(client))
        except redis.RedisError as e:
            security_logger.warning(f"Redis not available ({e}), using in-memory login tracker")
    return LoginAttemptTracker()


# --- TOTP ---

class MFAService:
    """TOTP two-factor authentication"""

    def generate_secret(self, email: str) -> tuple[str, str, str]:
        """Return (secret, otpauth uri, QR code data URL)"""
        secret = pyotp.random_base32()
        totp_uri = pyotp.totp.TOTP(secret).provisioning_uri(email, issuer_name=SecurityConfig.MFA_ISSUER)

        qr = qrcode.QRCode(version=1, box_size=10, border=4)
        qr.add_data(totp_uri)
        qr.make(fit=True)
        qr_image = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        qr_image.save(buffer, format="PNG")
        qr_code = "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()
        return secret, totp_uri, qr_code

    def generate_backup_codes(self) -> List[str]:
        codes = []
        for _ in range(SecurityConfig.MFA_BACKUP_CODES_COUNT):
            raw = secrets.token_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    @staticmethod
    def hash_backup_code(code: str) -> str:
        return hashlib.sha256(code.replace("-", "").strip().upper().encode()).hexdigest()

    def verify_totp(self, secret: str, token: str) -> bool:
        if not secret or not token:
            return False
        return pyotp.TOTP(secret).verify(str(token).strip(), valid_window=1)

    def consume_backup_code(self, hashed_codes: List[str], code: str) -> Optional[List[str]]:
        """Return the remaining hashes when `code` matches one, else None"""
        hashed = self.hash_backup_code(code or "")
        if hashed in (hashed_codes or []):
            return [c for c in hashed_codes if c != hashed]
        return None


# Initialize services
encryption_service = EncryptionService()
login_tracker = _build_login_tracker()
mfa_service = MFAService()


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # Unknown hash formats are treated as a non-match
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(hours=settings.access_token_expire_hours))

    to_encode.setdefault("type", "access")
    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def create_user_token(user: models.User) -> str:
    return create_access_token({
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "clinic_id": user.clinic_id,
    })


def create_state_token(user_id: Optional[int], purpose: str) -> str:
    """Short-lived signed OAuth state"""
    return create_access_token({"id": user_id, "purpose": purpose, "type": "state"}, timedelta(minutes=10))


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload


def set_auth_cookie(response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        max_age=settings.access_token_expire_hours * 3600,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(AUTH_COOKIE_NAME, httponly=True, samesite="lax")


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = None) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(AUTH_COOKIE_NAME)


def get_user_from_token(db: Session, token: Optional[str]) -> Optional[models.User]:
    """Resolve an active user from a token, or None"""
    if not token:
        return None
    payload = verify_token(token)
    if not payload or not payload.get("id"):
        return None
    user = db.get(models.User, payload["id"])
    if not user or not user.active:
        return None
    return user


# Dependencies for FastAPI
async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """Authenticate from the Bearer header or the authToken cookie"""
    token = extract_token(request, credentials)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Access token required")

    payload = verify_token(token)
    if not payload or not payload.get("id"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired token")

    user = db.get(models.User, payload["id"])
    if not user or not user.active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    request.state.user = user
    return user


def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role.value not in allowed_roles:
            security_logger.info(f"User {current_user.id} denied; requires one of {allowed_roles}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return role_dependency


require_admin = require_role("ADMIN")
require_admin_or_pt = require_role("ADMIN", "PT")


def get_accessible_clinic_ids(db: Session, user: models.User) -> Optional[List[int]]:
    """Clinic ids a user may see; None means every clinic (ADMIN)"""
    if user.role == models.UserRole.ADMIN:
        return None
    clinic_ids = {g.clinic_id for g in db.query(models.UserClinicGrant).filter(models.UserClinicGrant.user_id == user.id)}
    if user.clinic_id:
        clinic_ids.add(user.clinic_id)
    return sorted(clinic_ids)


def can_access_clinic(db: Session, user: models.User, clinic_id: Optional[int]) -> bool:
    accessible = get_accessible_clinic_ids(db, user)
    return accessible is None or clinic_id in accessible


def ensure_clinic_access(db: Session, user: models.User, clinic_id: Optional[int]) -> None:
    if not can_access_clinic(db, user, clinic_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied to this clinic")

# rehabplus/routers/auth.py
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter

logger = logging.getLogger(__name__)
security_logger = security.security_logger

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"],
)


def _locked_response(lock: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": f"Account temporarily locked. Try again in {lock.get('remaining_minutes')} minutes.",
            "remaining_minutes": lock.get("remaining_minutes"),
            "unlock_time": lock.get("unlock_time"),
        },
    )


def _failed_login(email: str, request: Request, user_id=None) -> JSONResponse:
    result = security.login_tracker.record_failed_attempt(email)
    security_logger.warning(f"Failed login for {email} from {security.get_client_ip(request)}")
    crud.create_audit_log(user_id=user_id, action="LOGIN_FAILED", entity_type="AUTH", details=email, request=request)
    if result["locked"]:
        return _locked_response(result)
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={
            "error": "Invalid credentials",
            "remaining_attempts": security.login_tracker.get_remaining_attempts(email),
        },
    )


def complete_login(db: Session, user: models.User, request: Request) -> JSONResponse:
    """Issue the session for an authenticated user"""
    security.login_tracker.clear_attempts(user.email)
    user.last_login = datetime.now()
    db.commit()
    db.refresh(user)
    token = security.create_user_token(user)
    response = JSONResponse(content={
        "success": True,
        "token": token,
        "user": jsonable_user(user),
    })
    security.set_auth_cookie(response, token)
    crud.create_audit_log(user_id=user.id, action="LOGIN", entity_type="AUTH", entity_id=user.id,
                          details=f"User {user.email} logged in", request=request)
    logger.info(f"User {user.id} logged in")
    return response


def jsonable_user(user: models.User) -> dict:
    return jsonable_encoder(crud.user_to_dict(user))


@router.post("/login")
@limiter.limit(lambda: get_settings().login_rate_limit)
def login(request: Request, credentials: schemas.LoginRequest, db: Session = Depends(get_db)):
    email = credentials.email.strip().lower()
    lock = security.login_tracker.is_locked(email)
    if lock["locked"]:
        security_logger.warning(f"Login attempt for locked account {email}")
        return _locked_response(lock)

    user = crud.get_user_by_email(db, email)
    if not user or not user.active or not security.verify_password(credentials.password, user.password_hash):
        return _failed_login(email, request, user.id if user else None)

    if user.totp_enabled:
        return {"requires_2fa": True, "user_id": user.id, "email": user.email}
    return complete_login(db, user, request)


@router.post("/login/verify-2fa")
@limiter.limit(lambda: get_settings().login_rate_limit)
def login_verify_2fa(request: Request, payload: schemas.LoginVerify2FA, db: Session = Depends(get_db)):
    user = crud.get_user(db, payload.user_id)
    if not user or not user.active or not user.totp_enabled:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    lock = security.login_tracker.is_locked(user.email)
    if lock["locked"]:
        return _locked_response(lock)

    secret = security.encryption_service.decrypt(user.totp_secret)
    if security.mfa_service.verify_totp(secret, payload.token):
        user.last_totp_verified_at = datetime.now()
        return complete_login(db, user, request)

    remaining = security.mfa_service.consume_backup_code(user.totp_backup_codes or [], payload.token)
    if remaining is not None:
        user.totp_backup_codes = remaining
        security_logger.info(f"User {user.id} signed in with a backup code ({len(remaining)} left)")
        return complete_login(db, user, request)

    security_logger.warning(f"Invalid 2FA code for user {user.id}")
    return _failed_login(user.email, request, user.id)


@router.post("/logout")
def logout(request: Request, db: Session = Depends(get_db)):
    user = security.get_user_from_token(db, security.extract_token(request))
    response = JSONResponse(content={"success": True, "message": "Logged out"})
    security.clear_auth_cookie(response)
    if user:
        crud.create_audit_log(user_id=user.id, action="LOGOUT", entity_type="AUTH", entity_id=user.id, request=request)
    return response


@router.get("/me")
def read_me(current_user: models.User = Depends(security.get_current_user)):
    return crud.user_to_dict(current_user)


@router.post("/change-password")
def change_password(
    payload: schemas.ChangePasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if not security.verify_password(payload.current_password, current_user.password_hash):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    if payload.current_password == payload.new_password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="New password must be different from the current password")
    current_user.password_hash = security.get_password_hash(payload.new_password)
    db.commit()
    crud.create_audit_log(user_id=current_user.id, action="PASSWORD_CHANGE", entity_type="USER",
                          entity_id=current_user.id, request=request)
    return {"success": True, "message": "Password changed successfully"}


@router.put("/update-profile")
def update_profile(
    payload: schemas.ProfileUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    data = payload.model_dump(exclude_unset=True)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    if data.get("email"):
        data["email"] = data["email"].lower()
        existing = crud.get_user_by_email(db, data["email"])
        if existing and existing.id != current_user.id:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
    old_values = {k: getattr(current_user, k) for k in data}
    for key, value in data.items():
        setattr(current_user, key, value)
    db.commit()
    db.refresh(current_user)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="USER", entity_id=current_user.id,
                          details="Profile updated", request=request, old_values=old_values, new_values=data)
    return {"success": True, "user": crud.user_to_dict(current_user)}

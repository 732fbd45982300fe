# rehabplus/routers/two_factor.py
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db

security_logger = security.security_logger

router = APIRouter(
    prefix="/2fa",
    tags=["Two-factor authentication"],
)


@router.post("/setup")
def setup_2fa(current_user: models.User = Depends(security.get_current_user)):
    """Generate a secret, QR code and backup codes; nothing is stored until /enable"""
    if current_user.totp_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="2FA is already enabled")
    secret, uri, qr_code = security.mfa_service.generate_secret(current_user.email)
    return {
        "secret": secret,
        "otpauth_url": uri,
        "qr_code": qr_code,
        "backup_codes": security.mfa_service.generate_backup_codes(),
    }


@router.post("/enable")
def enable_2fa(
    payload: schemas.TwoFactorEnable,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if current_user.totp_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="2FA is already enabled")
    if not security.mfa_service.verify_totp(payload.secret, payload.token):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid verification code")
    backup_codes = security.mfa_service.generate_backup_codes()
    current_user.totp_secret = security.encryption_service.encrypt(payload.secret)
    current_user.totp_backup_codes = [security.mfa_service.hash_backup_code(c) for c in backup_codes]
    current_user.totp_enabled = True
    current_user.totp_enabled_at = datetime.now()
    db.commit()
    security_logger.info(f"2FA enabled for user {current_user.id}")
    crud.create_audit_log(user_id=current_user.id, action="2FA_ENABLE", entity_type="USER",
                          entity_id=current_user.id, request=request)
    return {"success": True, "backup_codes": backup_codes}


@router.post("/verify")
def verify_2fa(payload: schemas.TwoFactorVerify, db: Session = Depends(get_db)):
    user = crud.get_user(db, payload.user_id)
    if not user or not user.totp_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="2FA is not enabled for this user")
    secret = security.encryption_service.decrypt(user.totp_secret)
    if not security.mfa_service.verify_totp(secret, payload.token):
        security_logger.warning(f"2FA verification failed for user {user.id}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid verification code")
    user.last_totp_verified_at = datetime.now()
    db.commit()
    return {"success": True, "verified": True}


@router.post("/disable")
def disable_2fa(
    payload: schemas.TwoFactorDisable,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if not current_user.totp_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="2FA is not enabled")
    if not security.verify_password(payload.password, current_user.password_hash):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password is incorrect")
    current_user.totp_enabled = False
    current_user.totp_secret = None
    current_user.totp_backup_codes = None
    current_user.totp_enabled_at = None
    db.commit()
    security_logger.info(f"2FA disabled for user {current_user.id}")
    crud.create_audit_log(user_id=current_user.id, action="2FA_DISABLE", entity_type="USER",
                          entity_id=current_user.id, request=request)
    return {"success": True}


@router.get("/status")
def status_2fa(current_user: models.User = Depends(security.get_current_user)):
    return {
        "enabled": bool(current_user.totp_enabled),
        "enabled_at": current_user.totp_enabled_at,
        "backup_codes_remaining": len(current_user.totp_backup_codes or []),
    }


@router.post("/regenerate-backup-codes")
def regenerate_backup_codes(
    payload: schemas.TwoFactorToken,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if not current_user.totp_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="2FA is not enabled")
    secret = security.encryption_service.decrypt(current_user.totp_secret)
    if not security.mfa_service.verify_totp(secret, payload.token):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid verification code")
    backup_codes = security.mfa_service.generate_backup_codes()
    current_user.totp_backup_codes = [security.mfa_service.hash_backup_code(c) for c in backup_codes]
    db.commit()
    return {"success": True, "backup_codes": backup_codes}

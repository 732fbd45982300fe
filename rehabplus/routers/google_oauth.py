# rehabplus/routers/google_oauth.py
"""Link a Google account to a staff user, and sign in with a linked one."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from sqlalchemy.orm import Session

from .. import crud, models, security
from ..config import get_settings
from ..database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/google",
    tags=["Google OAuth"],
)

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]
LINK_PURPOSE = "link"
SIGNIN_PURPOSE = "signin"


def _flow(redirect_uri: str) -> Flow:
    settings = get_settings()
    if not settings.google_oauth_enabled:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Google sign-in is not configured")
    client_config = {
        "web": {
            "client_id": settings.google_oauth_client_id,
            "client_secret": settings.google_oauth_client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": [redirect_uri],
        }
    }
    return Flow.from_client_config(client_config, scopes=SCOPES, redirect_uri=redirect_uri)


def _authorization_url(redirect_uri: str, state: str) -> str:
    url, _ = _flow(redirect_uri).authorization_url(access_type="offline", prompt="select_account", state=state)
    return url


def _google_identity(redirect_uri: str, code: str) -> dict:
    """Exchange the code and return the verified ID token claims"""
    flow = _flow(redirect_uri)
    flow.fetch_token(code=code)
    return id_token.verify_oauth2_token(
        flow.credentials.id_token,
        google_requests.Request(),
        get_settings().google_oauth_client_id,
    )


def _state_user_id(state: Optional[str], purpose: str) -> Optional[int]:
    payload = security.verify_token(state or "", token_type="state")
    if not payload or payload.get("purpose") != purpose:
        return None
    return payload.get("id") or 0


@router.get("/auth-url")
def google_auth_url(current_user: models.User = Depends(security.get_current_user)):
    settings = get_settings()
    state = security.create_state_token(current_user.id, LINK_PURPOSE)
    return {"authUrl": _authorization_url(settings.google_oauth_redirect_uri, state)}


@router.get("/callback")
def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
):
    if not code:
        return RedirectResponse("/dashboard?error=google_auth_failed", status_code=status.HTTP_302_FOUND)
    user_id = _state_user_id(state, LINK_PURPOSE)
    user = crud.get_user(db, user_id) if user_id else None
    if user is None:
        return RedirectResponse("/dashboard?error=invalid_state", status_code=status.HTTP_302_FOUND)

    try:
        claims = _google_identity(get_settings().google_oauth_redirect_uri, code)
    except (OAuth2Error, GoogleAuthError, ValueError) as e:
        logger.error(f"Google link callback failed for user {user.id}: {e}")
        return RedirectResponse("/dashboard?error=google_auth_failed", status_code=status.HTTP_302_FOUND)

    google_id = claims["sub"]
    taken = db.query(models.User).filter(models.User.google_id == google_id, models.User.id != user.id).first()
    if taken:
        return RedirectResponse("/dashboard?error=google_account_already_linked", status_code=status.HTTP_302_FOUND)

    user.google_id = google_id
    user.google_email = claims.get("email")
    user.google_linked_at = datetime.now()
    db.commit()
    logger.info(f"Google account {user.google_email} linked to user {user.id}")
    crud.create_audit_log(user_id=user.id, action="GOOGLE_LINK", entity_type="USER", entity_id=user.id,
                          details=user.google_email, request=request)
    return RedirectResponse("/dashboard?success=google_connected", status_code=status.HTTP_302_FOUND)


@router.post("/disconnect")
def google_disconnect(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    current_user.google_id = None
    current_user.google_email = None
    current_user.google_linked_at = None
    db.commit()
    crud.create_audit_log(user_id=current_user.id, action="GOOGLE_UNLINK", entity_type="USER",
                          entity_id=current_user.id, request=request)
    return {"success": True, "message": "Google account disconnected successfully"}


@router.get("/status")
def google_status(current_user: models.User = Depends(security.get_current_user)):
    return {
        "connected": current_user.google_id is not None,
        "googleEmail": current_user.google_email,
        "connectedAt": current_user.google_linked_at,
    }


@router.get("/signin-url")
def google_signin_url():
    settings = get_settings()
    state = security.create_state_token(None, SIGNIN_PURPOSE)
    return {"authUrl": _authorization_url(settings.google_signin_redirect_uri, state)}


@router.get("/signin-callback")
def google_signin_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_db),
):
    if not code:
        return RedirectResponse("/login?error=google_signin_failed", status_code=status.HTTP_302_FOUND)
    if _state_user_id(state, SIGNIN_PURPOSE) is None:
        return RedirectResponse("/login?error=invalid_state", status_code=status.HTTP_302_FOUND)

    try:
        claims = _google_identity(get_settings().google_signin_redirect_uri, code)
    except (OAuth2Error, GoogleAuthError, ValueError) as e:
        logger.error(f"Google sign-in callback failed: {e}")
        return RedirectResponse("/login?error=google_signin_failed", status_code=status.HTTP_302_FOUND)

    google_id, google_email = claims["sub"], (claims.get("email") or "").lower()
    user = db.query(models.User).filter(models.User.google_id == google_id, models.User.active.is_(True)).first()
    if user is None and google_email:
        user = db.query(models.User).filter(
            models.User.google_email == google_email, models.User.active.is_(True)).first()
    if user is None:
        security.security_logger.warning(f"Google sign-in for unlinked account {google_email}")
        return RedirectResponse("/login?error=google_account_not_linked", status_code=status.HTTP_302_FOUND)

    user.google_id = user.google_id or google_id
    user.last_login = datetime.now()
    db.commit()
    token = security.create_user_token(user)
    response = RedirectResponse("/dashboard", status_code=status.HTTP_302_FOUND)
    security.set_auth_cookie(response, token)
    crud.create_audit_log(user_id=user.id, action="LOGIN", entity_type="AUTH", entity_id=user.id,
                          details="Signed in with Google", request=request)
    return response

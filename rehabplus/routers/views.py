# rehabplus/routers/views.py
"""Server-rendered pages; each one carries the tenant theme."""
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from .. import crud, models, security
from ..database import get_db
from ..services import notification_settings

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATE_DIR))

router = APIRouter(tags=["Pages"], include_in_schema=False)


def _page_user(request: Request, db: Session) -> Optional[models.User]:
    return security.get_user_from_token(db, security.extract_token(request))


def _render(request: Request, db: Session, name: str, user: Optional[models.User] = None, **context):
    return templates.TemplateResponse(request, name, {
        "theme": notification_settings.get_theme(db),
        "user": crud.user_to_dict(user, include_grants=False) if user else None,
        **context,
    })


def _protected(page: str, title: str, admin_only: bool = False):
    def view(request: Request, db: Session = Depends(get_db)):
        user = _page_user(request, db)
        if user is None:
            return RedirectResponse("/login", status_code=status.HTTP_302_FOUND)
        if admin_only and user.role != models.UserRole.ADMIN:
            return RedirectResponse("/dashboard", status_code=status.HTTP_302_FOUND)
        return _render(request, db, f"{page}.html", user=user, title=title)
    view.__name__ = f"{page}_page"
    return view


@router.get("/")
def index():
    return RedirectResponse("/dashboard", status_code=status.HTTP_302_FOUND)


@router.get("/login")
def login_page(request: Request, error: Optional[str] = None, db: Session = Depends(get_db)):
    if _page_user(request, db) is not None:
        return RedirectResponse("/dashboard", status_code=status.HTTP_302_FOUND)
    return _render(request, db, "login.html", title="Sign in", error=error)


router.add_api_route("/dashboard", _protected("dashboard", "Dashboard"), methods=["GET"])
router.add_api_route("/patients", _protected("patients", "Patients"), methods=["GET"])
router.add_api_route("/appointments", _protected("appointments", "Appointments"), methods=["GET"])
router.add_api_route("/admin/settings", _protected("admin_settings", "Settings", admin_only=True), methods=["GET"])

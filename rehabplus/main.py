# rehabplus/main.py
import logging

import socketio
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .errors import CRUDError
from .limiter import limiter
from .routers import (
    appointments, auth, bills, body_annotations, chat, courses, expenses, google_oauth, health,
    loyalty, notifications, patients, pn_cases, thai_card, two_factor, users, views,
)
from .seed import seed_database
from .services.chat_server import sio

setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

fastapi_app = FastAPI(title=settings.app_name, version=settings.app_version)
fastapi_app.state.limiter = limiter
fastapi_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@fastapi_app.on_event("startup")
def on_startup():
    create_tables()
    seed_database()
    logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")


fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@fastapi_app.exception_handler(CRUDError)
async def crud_error_handler(request: Request, exc: CRUDError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@fastapi_app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@fastapi_app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": f"{location}: {message}" if location else message},
    )


@fastapi_app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal server error"})


fastapi_app.include_router(auth.router, prefix="/api")
fastapi_app.include_router(two_factor.router, prefix="/api")
fastapi_app.include_router(google_oauth.router, prefix="/api")
fastapi_app.include_router(users.router, prefix="/api")
fastapi_app.include_router(patients.router, prefix="/api")
fastapi_app.include_router(pn_cases.router, prefix="/api")
fastapi_app.include_router(appointments.router, prefix="/api")
fastapi_app.include_router(body_annotations.router, prefix="/api")
fastapi_app.include_router(courses.templates_router, prefix="/api")
fastapi_app.include_router(courses.router, prefix="/api")
fastapi_app.include_router(bills.router, prefix="/api")
fastapi_app.include_router(loyalty.router, prefix="/api")
fastapi_app.include_router(chat.router, prefix="/api")
fastapi_app.include_router(notifications.router, prefix="/api")
fastapi_app.include_router(expenses.router, prefix="/api")
fastapi_app.include_router(thai_card.router, prefix="/api")
fastapi_app.include_router(health.router, prefix="/api")
fastapi_app.include_router(views.router)

# Socket.IO handles /socket.io/; everything else goes to FastAPI
app = socketio.ASGIApp(sio, other_asgi_app=fastapi_app, socketio_path="socket.io")


if __name__ == "__main__":
    uvicorn.run("rehabplus.main:app", host="0.0.0.0", port=8000, reload=settings.debug)

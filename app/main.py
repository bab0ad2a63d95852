import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import appointments, notifications, slots
from app.core.config import settings, _ENV_FILE
from app.core.db import async_session_maker
from app.core.errors import ClinicError, ConflictError
from app.services.reminder_service import ReminderScheduler

if os.getenv("ENV") != "production":
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    scheduler = None
    if settings.reminders_enabled:
        scheduler = ReminderScheduler(async_session_maker)
        scheduler.start()
    else:
        logger.warning("Appointment reminders disabled (REMINDERS_ENABLED=false)")
    app.state.reminder_scheduler = scheduler
    if not settings.email_enabled:
        logger.warning("Email: NOT configured. Set SMTP_HOST, SMTP_USER, SMTP_PASSWORD and FROM_EMAIL in %s", _ENV_FILE)
    if not settings.sms_enabled:
        logger.info("SMS: Twilio not configured, reminders go out by email only")
    yield
    if scheduler:
        await scheduler.stop()


app = FastAPI(
    title="MediFlow API",
    description="Clinic backend: appointment booking, lifecycle and reminders",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# slots first: "/appointments/available-slots" must not match "/appointments/{appointment_id}"
app.include_router(slots.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(ClinicError)
async def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    content: dict = {"detail": exc.detail, **exc.extra}
    if isinstance(exc, ConflictError):
        conflicting = exc.conflicting_appointment
        content["conflicting_appointment"] = conflicting.model_dump(mode="json") if conflicting else None
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    origin = request.headers.get("origin")
    headers = _cors_headers(origin)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception: %s", exc)
    detail = f"{type(exc).__name__}: {str(exc)}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
        headers=headers,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from .background.context import BackgroundServices
from .background.diagnostics import TaskDiagnostics
from .background.orchestrator import RetryPolicy, TaskOrchestrator
from .background.status_store import StatusStore
from .config import (
    ALLOWED_ORIGINS,
    BACKGROUND_BUDGET_SECONDS,
    EMAIL_FROM_ADDRESS,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    MAX_CONCURRENT_TASK_SETS,
    RESEND_API_KEY,
    SHUTDOWN_GRACE_SECONDS,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USE_TLS,
    SMTP_USERNAME,
    TASK_MAX_ATTEMPTS,
    TASK_RETENTION_SECONDS,
    TASK_RETRY_BACKOFF_SECONDS,
    TASK_SWEEP_INTERVAL_SECONDS,
)
from .database import Base, SessionLocal
from .domain.booking.errors import BookingError
from .domain.booking.recorder import AppointmentRecorder
from .domain.booking.router import router as booking_router
from .email_service import MailSender
from .routes.monitoring import router as monitoring_router
from .services.availability_service import AvailabilityService
from .services.email_composer import GeminiEmailComposer
from .services.google_calendar_service import GoogleCalendarService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_background_services(session_factory: sessionmaker) -> BackgroundServices:
    """Production collaborators for the background tasks"""
    return BackgroundServices(
        calendar=GoogleCalendarService(
            GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, timeout=EXTERNAL_CALL_TIMEOUT_SECONDS
        ),
        composer=GeminiEmailComposer(GEMINI_API_KEY, model=GEMINI_MODEL, timeout=EXTERNAL_CALL_TIMEOUT_SECONDS),
        mailer=MailSender(
            EMAIL_FROM_ADDRESS,
            resend_api_key=RESEND_API_KEY,
            smtp_host=SMTP_HOST,
            smtp_port=SMTP_PORT,
            smtp_username=SMTP_USERNAME,
            smtp_password=SMTP_PASSWORD,
            smtp_use_tls=SMTP_USE_TLS,
        ),
        recorder=AppointmentRecorder(session_factory),
    )


def create_app(
    services: Optional[BackgroundServices] = None,
    session_factory: sessionmaker = SessionLocal,
    store: Optional[StatusStore] = None,
    retry_policy: Optional[RetryPolicy] = None,
    call_timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
    budget_seconds: float = BACKGROUND_BUDGET_SECONDS,
    max_concurrent: int = MAX_CONCURRENT_TASK_SETS,
    sweep_interval: float = TASK_SWEEP_INTERVAL_SECONDS,
    shutdown_grace: float = SHUTDOWN_GRACE_SECONDS,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        Base.metadata.create_all(bind=session_factory.kw["bind"], checkfirst=True)
        logger.info("Database tables created successfully")

        status_store = store or StatusStore(retention_seconds=TASK_RETENTION_SECONDS)
        orchestrator = TaskOrchestrator(
            status_store,
            services or build_background_services(session_factory),
            call_timeout=call_timeout,
            budget_seconds=budget_seconds,
            max_concurrent=max_concurrent,
            retry_policy=retry_policy
            or RetryPolicy(max_attempts=TASK_MAX_ATTEMPTS, backoff_seconds=TASK_RETRY_BACKOFF_SECONDS),
            sweep_interval=sweep_interval,
        )
        app.state.orchestrator = orchestrator
        app.state.diagnostics = TaskDiagnostics(status_store)
        app.state.availability = AvailabilityService()
        await orchestrator.start()

        yield

        logger.info("Application shutting down...")
        await orchestrator.shutdown(shutdown_grace)

    app = FastAPI(title="Next Scheduler API", version="1.0.0", lifespan=lifespan)

    @app.exception_handler(BookingError)
    async def booking_exception_handler(request: Request, exc: BookingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} - {exc.code}: {exc.detail}")
        else:
            logger.warning(f"{request.method} {request.url.path} - {exc.code}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_errors(exc), "code": "invalid_request"},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(booking_router)
    app.include_router(monitoring_router)

    @app.get("/health")
    def health():
        orchestrator = getattr(app.state, "orchestrator", None)
        return {"status": "healthy", "backgroundTaskSets": orchestrator.in_flight if orchestrator else 0}

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances that JSONResponse cannot serialize
    return [{key: value for key, value in error.items() if key != "ctx"} for error in exc.errors()]


app = create_app()

"""FastAPI entrypoint for the essay exam service."""

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, select
from starlette.middleware.sessions import SessionMiddleware

from essay_exams.ai.grader import get_grader
from essay_exams.auth_utils import hash_password
from essay_exams.config import get_settings
from essay_exams.database import create_db_and_tables, engine
from essay_exams.errors import ExamPlatformError
from essay_exams.models import User
from essay_exams.routers import admin as admin_router_module
from essay_exams.routers import attempts as attempts_router_module
from essay_exams.routers import auth as auth_router_module
from essay_exams.routers import classrooms as classrooms_router_module
from essay_exams.routers import exams as exams_router_module
from essay_exams.routers import problems as problems_router_module
from essay_exams.services.attempts import sweep_forever

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Essay Exams")


@app.exception_handler(ExamPlatformError)
async def platform_error_handler(request: Request, exc: ExamPlatformError):
    """Map domain errors raised by the services to JSON responses."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Session middleware for simple cookie-based authentication
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)

# Routers
app.include_router(auth_router_module.router, prefix="/auth", tags=["auth"])
app.include_router(admin_router_module.router, prefix="/admin", tags=["admin"])
app.include_router(classrooms_router_module.router, prefix="/classrooms", tags=["classrooms"])
app.include_router(problems_router_module.router, tags=["problems"])
app.include_router(exams_router_module.router, prefix="/exams", tags=["exams"])
app.include_router(attempts_router_module.router, prefix="/attempts", tags=["attempts"])


@app.get("/")
def home():
    return {"status": "ok", "gemini_configured": bool(settings.gemini_api_key)}


def seed_admin(session: Session) -> None:
    """Create the configured admin account when no admin exists yet."""
    existing_admin = session.exec(select(User).where(User.role == "admin")).first()
    if existing_admin:
        return
    admin_user = User(
        username=settings.seed_admin_username,
        display_name="System Admin",
        password_hash=hash_password(settings.seed_admin_password),
        role="admin",
    )
    session.add(admin_user)
    session.commit()
    logger.info("Seeded default admin user: %s", settings.seed_admin_username)


@app.on_event("startup")
async def on_startup():
    """Initialize database schema, seed the admin and start the overdue sweep."""
    create_db_and_tables()
    with Session(engine) as session:
        seed_admin(session)

    if settings.attempt_sweep_seconds > 0:
        app.state.sweeper = asyncio.create_task(
            sweep_forever(lambda: Session(engine), get_grader, settings.attempt_sweep_seconds)
        )
        logger.info("Overdue attempt sweep every %ss", settings.attempt_sweep_seconds)


@app.on_event("shutdown")
async def on_shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()

# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import logging
from datetime import datetime

import sentry_sdk
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from studybuddy.database import engine, Base, get_db
from studybuddy.routers import auth, chat, files, quiz, user
from studybuddy.services.ai_service import (
    AIAuthError,
    AIQuotaError,
    AIServiceError,
    AITimeoutError,
    ai_service,
)
from studybuddy.services.file_analysis import UPLOAD_DIR
from studybuddy.services.session_resolver import degradation_log

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# Initialize Sentry for error monitoring
sentry_dsn = os.getenv("SENTRY_DSN")
if sentry_dsn:
    sentry_sdk.init(
        dsn=sentry_dsn,
        traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
        environment=ENVIRONMENT,
    )

# Create database tables
Base.metadata.create_all(bind=engine)

tags_metadata = [
    {
        "name": "authentication",
        "description": "User registration, login, logout and current-user lookup.",
    },
    {
        "name": "chat",
        "description": "Tutoring chat with selectable personalities, text or voice input.",
    },
    {
        "name": "quiz",
        "description": "AI-generated quizzes, submission scoring and result history.",
    },
    {
        "name": "files",
        "description": "Study material upload, AI analysis and quiz-from-file generation.",
    },
    {
        "name": "user",
        "description": "Settings, dashboard statistics, profile, activity and feedback.",
    },
]

app = FastAPI(
    title="AI Study Buddy API",
    description="""
## AI Study Buddy

Chat tutoring, AI-generated quizzes and file analysis for students.

Every endpoint works without an account. Guests are served from an in-memory
store; signed-in users are persisted to the database. When the AI provider is
over quota, chat answers with canned text, quizzes come from a practice bank
and file summaries are computed heuristically.
    """,
    version="1.0.0",
    openapi_tags=tags_metadata,
)

# SECURITY: Explicitly list allowed origins - no wildcards
ALLOWED_ORIGINS = [
    "http://localhost:3000",  # React dev server
]

# Allow additional origins from environment (for preview deploys)
extra_origins = os.getenv("CORS_ALLOWED_ORIGINS", "")
if extra_origins:
    ALLOWED_ORIGINS.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept"],
)

# Include routers
app.include_router(auth.router)  # Authentication
app.include_router(chat.router)  # AI chat
app.include_router(quiz.router)  # Quizzes
app.include_router(files.router)  # Uploads & analysis
app.include_router(user.router)  # Settings, stats, profile

# Uploaded artifacts are served back by stored name
os.makedirs(UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")


# ==================== Error Handling ====================

def _error(status_code: int, message: str, detail: str = None) -> JSONResponse:
    body = {"error": message, "detail": message}
    if detail and ENVIRONMENT == "development":
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": message, "detail": message},
    )


@app.exception_handler(AIAuthError)
async def ai_auth_exception_handler(request: Request, exc: AIAuthError):
    logger.error(f"AI provider rejected credentials on {request.url.path}: {exc}")
    return _error(401, "Invalid AI service API key")


@app.exception_handler(AIQuotaError)
async def ai_quota_exception_handler(request: Request, exc: AIQuotaError):
    logger.warning(f"AI provider over quota on {request.url.path}: {exc}")
    return _error(429, "AI service quota exceeded. Please try again later.")


@app.exception_handler(AITimeoutError)
async def ai_timeout_exception_handler(request: Request, exc: AITimeoutError):
    logger.error(f"AI provider timed out on {request.url.path}: {exc}")
    return _error(500, "AI service did not respond in time", str(exc))


@app.exception_handler(AIServiceError)
async def ai_service_exception_handler(request: Request, exc: AIServiceError):
    logger.error(f"AI service error on {request.url.path}: {exc}")
    return _error(500, "AI service error", str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    sentry_sdk.capture_exception(exc)
    return _error(500, "Internal server error", str(exc))


# ==================== Health ====================

@app.get("/")
def root():
    return {
        "message": "AI Study Buddy API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Health check database probe failed: {e}")
        database = "unavailable"

    return {
        "status": "OK",
        "message": "AI Study Buddy server is running",
        "timestamp": datetime.utcnow().isoformat(),
        "database": database,
        "aiService": ai_service.get_status()["circuit_breaker"]["state"],
        "persistenceDegraded": degradation_log.count,
    }

"""
User Router
Settings, dashboard statistics, profile, client activity logging and feedback.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from studybuddy.database import get_db
from studybuddy.dependencies.auth import get_current_user_optional
from studybuddy.models.models import ActivityType, Feedback, Personality, User, isoformat
from studybuddy.services.activity_service import record_activity
from studybuddy.services.session_resolver import persist
from studybuddy.services.stats_service import stats_service
from studybuddy.utils.guest_store import GuestStore, get_guest_store

router = APIRouter(prefix="/api/user", tags=["user"])
logger = logging.getLogger(__name__)


DEFAULT_SETTINGS = {
    "language": "en",
    "aiPersonality": Personality.FRIENDLY.value,
    "progressTracking": True,
    "notifications": True,
    "autoSave": True,
    "voiceEnabled": True,
    "studyReminders": True,
    "difficulty": "adaptive",
    "theme": "light",
}

ALLOWED_LANGUAGES = ("en", "hi", "ta", "te", "es", "fr", "de")
ALLOWED_PERSONALITIES = tuple(p.value for p in Personality)
ALLOWED_DIFFICULTIES = ("adaptive", "beginner", "intermediate", "advanced")
ALLOWED_THEMES = ("light", "dark", "system")


# ==================== Request Models ====================

class SettingsRequest(BaseModel):
    language: Optional[str] = None
    ai_personality: Optional[str] = Field(None, alias="aiPersonality")
    progress_tracking: Optional[bool] = Field(None, alias="progressTracking")
    notifications: Optional[bool] = None
    auto_save: Optional[bool] = Field(None, alias="autoSave")
    voice_enabled: Optional[bool] = Field(None, alias="voiceEnabled")
    study_reminders: Optional[bool] = Field(None, alias="studyReminders")
    difficulty: Optional[str] = None
    theme: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "allow"


class ActivityRequest(BaseModel):
    activity_type: ActivityType = Field(..., alias="activityType")
    data: Dict[str, Any] = Field(default_factory=dict)
    duration: Optional[int] = Field(None, ge=0)

    class Config:
        populate_by_name = True


class FeedbackRequest(BaseModel):
    type: str = "general"
    message: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)


def validate_settings(settings: Dict[str, Any]) -> Optional[str]:
    """Returns an error message for the first out-of-range option, or None."""
    checks = (
        ("language", ALLOWED_LANGUAGES, "Invalid language"),
        ("aiPersonality", ALLOWED_PERSONALITIES, "Invalid AI personality"),
        ("difficulty", ALLOWED_DIFFICULTIES, "Invalid difficulty level"),
        ("theme", ALLOWED_THEMES, "Invalid theme"),
    )
    for key, allowed, message in checks:
        if key in settings and settings[key] not in allowed:
            return message
    return None


# ==================== Settings ====================

@router.get("/settings")
def get_settings(
    current_user: Optional[User] = Depends(get_current_user_optional)
):
    """Saved preferences over the defaults; guests always get the defaults."""
    if current_user is None:
        return dict(DEFAULT_SETTINGS)
    return {**DEFAULT_SETTINGS, **(current_user.preferences or {})}


@router.post("/settings")
def update_settings(
    request: SettingsRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db)
):
    settings = request.model_dump(by_alias=True, exclude_none=True)

    error_msg = validate_settings(settings)
    if error_msg:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error_msg)

    if current_user is None:
        return {
            "message": "Settings updated for this session (not saved permanently)",
            "settings": {**DEFAULT_SETTINGS, **settings},
            "warning": "Register an account to save your preferences permanently",
        }

    # JSON columns need a new object to register the change
    current_user.preferences = {**(current_user.preferences or {}), **settings}
    error = persist(db, current_user)
    if error:
        logger.error(f"Saving settings for user {current_user.id} failed: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save settings to database"
        )

    return {
        "message": "Settings updated successfully",
        "settings": {**DEFAULT_SETTINGS, **current_user.preferences},
    }


# ==================== Stats & Profile ====================

@router.get("/stats")
def get_stats(
    tz: Optional[str] = Query(None, description="IANA time zone for day boundaries"),
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Dashboard statistics. Guests get an all-zero payload with isGuest = true.
    """
    return stats_service.compute_stats(db, store, current_user, tz_name=tz)


@router.get("/profile")
def get_profile(
    current_user: Optional[User] = Depends(get_current_user_optional)
):
    if current_user is None:
        return {
            "id": None,
            "name": "Guest",
            "email": None,
            "avatar": None,
            "joinedAt": None,
            "preferences": dict(DEFAULT_SETTINGS),
            "subscription": "free",
            "isGuest": True,
        }

    full_name = " ".join(n for n in (current_user.first_name, current_user.last_name) if n)
    return {
        "id": current_user.id,
        "username": current_user.username,
        "name": full_name or current_user.username,
        "email": current_user.email,
        "avatar": None,
        "joinedAt": isoformat(current_user.created_at),
        "preferences": {**DEFAULT_SETTINGS, **(current_user.preferences or {})},
        "subscription": "free",
        "isGuest": False,
    }


# ==================== Activity & Feedback ====================

@router.post("/activity")
def log_activity(
    request: ActivityRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db)
):
    """
    Record a client-side activity. Worth no points; guests are acknowledged
    without anything being stored.
    """
    if current_user is None:
        return {
            "message": "Activity noted for this session (not saved)",
            "activity": {
                "activityType": request.activity_type.value,
                "details": request.data,
                "duration": request.duration,
                "points": 0,
            },
            "persisted": False,
        }

    activity = record_activity(
        db, current_user.id, request.activity_type,
        points=0,
        details=request.data,
        duration=request.duration
    )
    if activity is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to log activity"
        )

    return {
        "message": "Activity logged successfully",
        "activity": activity.to_dict(),
        "persisted": True,
    }


@router.post("/feedback")
def submit_feedback(
    request: FeedbackRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db)
):
    if not request.message or not request.message.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Feedback message is required"
        )

    feedback = Feedback(
        user_id=current_user.id if current_user else None,
        feedback_type=request.type or "general",
        message=request.message.strip(),
        rating=request.rating
    )
    error = persist(db, feedback)
    if error:
        logger.error(f"Saving feedback failed: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to submit feedback"
        )

    logger.info(f"Feedback {feedback.id} received ({feedback.feedback_type})")
    return {
        "message": "Thank you for your feedback!",
        "feedbackId": feedback.id,
    }

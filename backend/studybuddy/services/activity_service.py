"""
Gamification activity log.

Activities are append-only and only recorded for authenticated users. They
are usually committed in the same transaction as the record that earned
them, so `build_activity` does not touch the session.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from studybuddy.models.models import ActivityType, StudyActivity
from studybuddy.services.session_resolver import persist, round_half_up

logger = logging.getLogger(__name__)

# Points per action
CHAT_MESSAGE_POINTS = 5
VOICE_CHAT_POINTS = 7
QUIZ_GENERATED_POINTS = 10
FILE_UPLOAD_POINTS = 15
MIN_QUIZ_COMPLETED_POINTS = 5


def quiz_completed_points(percentage: int) -> int:
    """max(5, round(score / 10)): a perfect score is worth 10 points."""
    return max(MIN_QUIZ_COMPLETED_POINTS, round_half_up(percentage / 10))


def build_activity(
    user_id: str,
    activity_type: ActivityType,
    points: int = 0,
    details: Optional[Dict[str, Any]] = None,
    duration: Optional[int] = None
) -> StudyActivity:
    return StudyActivity(
        user_id=user_id,
        activity_type=activity_type.value,
        details=details or {},
        duration=duration,
        points=points
    )


def record_activity(
    db: Session,
    user_id: str,
    activity_type: ActivityType,
    points: int = 0,
    details: Optional[Dict[str, Any]] = None,
    duration: Optional[int] = None
) -> Optional[StudyActivity]:
    """
    Persist a standalone activity entry.

    Returns None if the write failed; a lost activity only costs points, so
    the failure is logged and not raised.
    """
    activity = build_activity(user_id, activity_type, points, details, duration)
    error = persist(db, activity)
    if error:
        logger.warning(f"Activity {activity_type.value} for user {user_id} not recorded: {error}")
        return None
    return activity

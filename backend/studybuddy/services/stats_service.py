"""
Statistics Aggregator.
Derives dashboard metrics (streak, weekly progress, points, achievements)
from the activity log, quiz results, conversations and uploads.
"""

import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from studybuddy.models.models import (
    ActivityType,
    Conversation,
    QuizResult,
    StudyActivity,
    User,
)
from studybuddy.services.file_analysis import count_files
from studybuddy.services.session_resolver import normalize_score, reconcile_list, round_half_up
from studybuddy.utils.guest_store import GuestStore

logger = logging.getLogger(__name__)

MINUTES_PER_ACTIVITY = 15
RECENT_DAYS = 30
WEEK_DAYS = 7
FAVORITE_SUBJECT_COUNT = 3
DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

GUEST_STATS = {
    "totalConversations": 0,
    "totalQuizzes": 0,
    "totalFilesUploaded": 0,
    "averageQuizScore": 0,
    "studyStreak": 0,
    "totalStudyTime": 0,
    "favoriteSubjects": [],
    "weeklyProgress": [],
    "recentAchievements": [],
    "totalPoints": 0,
    "isGuest": True,
}


def resolve_timezone(tz_name: Optional[str]):
    """IANA zone for day boundaries; UTC when missing or unknown."""
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.info(f"Unknown time zone '{tz_name}', using UTC")
        return timezone.utc


def local_date(value: datetime, tz) -> date:
    """Calendar date of a naive-UTC timestamp in `tz`."""
    return value.replace(tzinfo=timezone.utc).astimezone(tz).date()


def window_start(today: date, tz, days: int) -> datetime:
    """Naive-UTC instant at which the local day `days - 1` before `today` begins."""
    first_day = today - timedelta(days=days - 1)
    return datetime.combine(first_day, time.min, tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


class StatsService:
    """
    Computes the /user/stats payload.

    A streak is the number of consecutive calendar days, ending today, with
    at least one activity. No activity today means a streak of 0.
    """

    def compute_streak(self, activity_days: Iterable[date], today: date) -> int:
        days = set(activity_days)
        streak = 0
        current = today
        while current in days:
            streak += 1
            current -= timedelta(days=1)
        return streak

    def weekly_progress(self, activities: List[StudyActivity], today: date, tz) -> List[Dict[str, Any]]:
        """Last 7 days, oldest first: completed quizzes and estimated minutes."""
        per_day: Dict[date, List[StudyActivity]] = {}
        for activity in activities:
            per_day.setdefault(local_date(activity.created_at, tz), []).append(activity)

        progress = []
        for offset in range(WEEK_DAYS - 1, -1, -1):
            day = today - timedelta(days=offset)
            day_activities = per_day.get(day, [])
            progress.append({
                "day": DAY_NAMES[day.weekday()],
                "date": day.isoformat(),
                "quizzes": sum(
                    1 for a in day_activities if a.activity_type == ActivityType.QUIZ_COMPLETED.value
                ),
                "studyTime": len(day_activities) * MINUTES_PER_ACTIVITY,
            })
        return progress

    def average_score(self, results: List[Any]) -> int:
        if not results:
            return 0
        return round_half_up(sum(normalize_score(r.score) for r in results) / len(results))

    def achievements(
        self,
        total_quizzes: int,
        average_score: int,
        streak: int,
        total_files: int,
        now: datetime
    ) -> List[Dict[str, Any]]:
        """Threshold badges; derived on every call, never stored."""
        earned_at = now.isoformat()
        badges = []
        if total_quizzes >= 5:
            badges.append({"title": "Quiz Explorer", "description": "Completed 5 quizzes", "earnedAt": earned_at})
        if average_score >= 80:
            badges.append({"title": "High Achiever", "description": "80%+ average score", "earnedAt": earned_at})
        if streak >= 3:
            badges.append({"title": "Study Streak", "description": f"{streak} days in a row!", "earnedAt": earned_at})
        if total_files >= 3:
            badges.append({"title": "File Analyzer", "description": "Analyzed 3+ files", "earnedAt": earned_at})
        return badges

    def favorite_subjects(self, results: Iterable[Any]) -> List[str]:
        """Most frequent quiz topics, ties in first-seen order."""
        topics = Counter()
        for result in results:
            snapshot = result.quiz_snapshot if isinstance(result, QuizResult) else result.quiz
            topic = (snapshot or {}).get("topic")
            if topic:
                topics[topic] += 1
        return [topic for topic, _ in topics.most_common(FAVORITE_SUBJECT_COUNT)]

    def compute_stats(
        self,
        db: Session,
        store: GuestStore,
        user: Optional[User],
        tz_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Lifetime conversation and quiz totals, plus points, study time, streak
        and achievements over the last RECENT_DAYS local calendar days.
        """
        if user is None:
            return dict(GUEST_STATS)

        user_id = user.id
        now = now or datetime.utcnow()
        tz = resolve_timezone(tz_name)
        today = local_date(now, tz)
        since = window_start(today, tz, RECENT_DAYS)

        conversation_ids = {
            row.id for row in db.query(Conversation.id).filter(Conversation.user_id == user_id).all()
        }
        conversation_ids.update(c.id for c in store.conversations.owned_by(user_id))

        results = reconcile_list(
            db.query(QuizResult).filter(QuizResult.user_id == user_id).all(),
            store.quiz_results.owned_by(user_id),
            sort_key=lambda r: r.completed_at
        )
        recent_activities = db.query(StudyActivity).filter(
            StudyActivity.user_id == user_id,
            StudyActivity.created_at >= since
        ).order_by(StudyActivity.created_at.desc()).all()

        total_quizzes = len(results)
        average_score = self.average_score(results)
        streak = self.compute_streak((local_date(a.created_at, tz) for a in recent_activities), today)

        recent_results = [r for r in results if r.completed_at >= since]
        achievements = self.achievements(
            len(recent_results),
            self.average_score(recent_results),
            streak,
            count_files(db, store, user_id, since=since),
            now
        )

        return {
            "totalConversations": len(conversation_ids),
            "totalQuizzes": total_quizzes,
            "totalFilesUploaded": count_files(db, store, user_id),
            "averageQuizScore": average_score,
            "studyStreak": streak,
            "totalStudyTime": len(recent_activities) * MINUTES_PER_ACTIVITY,
            "favoriteSubjects": self.favorite_subjects(results),
            "weeklyProgress": self.weekly_progress(recent_activities, today, tz),
            "recentAchievements": achievements,
            "totalPoints": sum(a.points or 0 for a in recent_activities),
            "isGuest": False,
        }


# Global service instance
stats_service = StatsService()

"""
Quiz Router

Generate quizzes on a topic, take them, and review past results.
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from studybuddy.database import get_db
from studybuddy.dependencies.auth import get_current_user_optional
from studybuddy.models.models import Difficulty, User
from studybuddy.services import quiz_engine
from studybuddy.utils.guest_store import GuestStore, get_guest_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quiz", tags=["quiz"])


# ============================================================================
# Request Models
# ============================================================================

class GenerateQuizRequest(BaseModel):
    topic: str = Field(..., min_length=1, max_length=200)
    difficulty: Difficulty = Difficulty.MEDIUM
    question_count: int = Field(5, ge=1, le=50, alias="questionCount")
    question_type: str = Field(quiz_engine.DEFAULT_QUESTION_TYPE, alias="questionType")
    context: str = ""

    class Config:
        populate_by_name = True


class SubmitQuizRequest(BaseModel):
    answers: List[Any]
    time_spent: Optional[int] = Field(None, ge=0, alias="timeSpent")

    class Config:
        populate_by_name = True


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/generate")
def generate_quiz(
    request: GenerateQuizRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Generate a quiz with the AI service.

    When the provider is over quota a practice quiz from the built-in bank
    is returned instead, flagged with isAIGenerated = false.
    """
    try:
        outcome = quiz_engine.generate(
            db, store, current_user,
            topic=request.topic,
            difficulty=request.difficulty.value,
            question_count=request.question_count,
            question_type=request.question_type,
            context=request.context
        )
    except quiz_engine.QuizFormatError as e:
        logger.error(f"Quiz generation for '{request.topic}' failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to generate quiz: {e}")

    quiz = outcome.quiz.to_dict()
    return {
        "quizId": quiz["id"],
        "quiz": quiz,
        "message": outcome.message,
        "isAIGenerated": outcome.is_ai_generated,
    }


@router.get("/history")
def get_quiz_history(
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    results, average = quiz_engine.history(db, store, current_user)
    return {
        "results": results,
        "totalQuizzes": len(results),
        "averageScore": average,
    }


@router.get("/results/{result_id}")
def get_quiz_result(
    result_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    result = quiz_engine.get_result(db, store, current_user, result_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Quiz result not found")
    return {"resultId": result.id, **result.to_dict()}


@router.get("/{quiz_id}")
def get_quiz(
    quiz_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    quiz = quiz_engine.get_quiz(db, store, current_user, quiz_id)
    if quiz is None:
        raise HTTPException(status_code=404, detail="Quiz not found")
    return quiz.to_dict()


@router.post("/{quiz_id}/submit")
def submit_quiz(
    quiz_id: str,
    request: SubmitQuizRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Score a submission. Missing or invalid answers count as incorrect.
    """
    result = quiz_engine.submit(
        db, store, current_user,
        quiz_id=quiz_id,
        answers=request.answers,
        time_spent=request.time_spent
    )
    if result is None:
        raise HTTPException(status_code=404, detail="Quiz not found")
    return {"resultId": result.id, **result.to_dict()}

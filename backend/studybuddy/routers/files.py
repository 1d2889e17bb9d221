"""
Study Buddy - File Upload and Analysis API

Upload study material for an AI summary, turn an analysis into a quiz,
and manage past uploads.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from studybuddy.database import get_db
from studybuddy.dependencies.auth import get_current_user_optional
from studybuddy.models.models import Difficulty, User
from studybuddy.services import file_analysis
from studybuddy.services.quiz_engine import QuizFormatError
from studybuddy.utils.guest_store import GuestStore, get_guest_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["files"])


class FileQuizRequest(BaseModel):
    difficulty: Difficulty = Difficulty.MEDIUM
    question_count: int = Field(5, ge=1, le=50, alias="questionCount")

    class Config:
        populate_by_name = True


# ============================================================================
# Upload Endpoints
# ============================================================================

@router.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Upload a document or image for analysis.

    Supported file types: TXT, MD, CSV, PDF, DOC, DOCX, PPT, PPTX, JPG, PNG, GIF
    Maximum size: 10MB

    Only text formats are read; other formats are acknowledged with a
    placeholder explaining that their content cannot be extracted.
    """
    # One byte past the cap is enough for the size check to reject it
    content = await file.read(file_analysis.MAX_UPLOAD_BYTES + 1)

    try:
        outcome = await run_in_threadpool(
            file_analysis.analyze_upload,
            db, store, current_user,
            file.filename or "unknown",
            file.content_type or "application/octet-stream",
            content
        )
    except file_analysis.InvalidUploadError as e:
        raise HTTPException(status_code=400, detail=str(e))

    analysis = outcome.analysis.to_dict()
    return {
        "analysisId": analysis["id"],
        "fileName": analysis["fileName"],
        "fileSize": analysis["fileSize"],
        "mimeType": analysis["mimeType"],
        "fileUrl": analysis["fileUrl"],
        "analysis": analysis["analysis"],
        "uploadedAt": analysis["uploadedAt"],
        "message": outcome.message,
        "isAIGenerated": outcome.is_ai_generated,
    }


@router.get("/analysis/{analysis_id}")
def get_analysis(
    analysis_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    analysis = file_analysis.get_analysis(db, store, current_user, analysis_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return analysis.to_dict()


@router.post("/generate-quiz/{analysis_id}")
def generate_quiz_from_file(
    analysis_id: str,
    request: Optional[FileQuizRequest] = None,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Build a quiz from the text stored with an analysis.

    No practice-bank fallback here: quota errors surface as 429.
    """
    request = request or FileQuizRequest()
    try:
        generated = file_analysis.quiz_from_analysis(
            db, store, current_user, analysis_id,
            difficulty=request.difficulty.value,
            question_count=request.question_count
        )
    except QuizFormatError as e:
        logger.error(f"Quiz from file {analysis_id} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to generate quiz from file: {e}")

    if generated is None:
        raise HTTPException(status_code=404, detail="Analysis not found")

    quiz, analysis = generated
    quiz_data = quiz.to_dict()
    return {
        "quizId": quiz_data["id"],
        "quiz": quiz_data,
        "sourceFile": analysis.file_name,
        "message": "Quiz generated from file successfully",
    }


@router.get("/history")
def get_file_history(
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    files = file_analysis.file_history(db, store, current_user)
    return {
        "files": files,
        "totalFiles": len(files),
    }


@router.delete("/{analysis_id}")
def delete_file(
    analysis_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Delete the stored file and its analysis.
    """
    if not file_analysis.delete_analysis(db, store, current_user, analysis_id):
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {
        "message": "File and analysis deleted successfully",
        "analysisId": analysis_id,
    }

"""
File Analysis Pipeline.

Uploaded study material is written to UPLOAD_DIR, its text is extracted and
summarised by the AI service, and the analysis can later seed a quiz.

Only plain text, markdown and CSV are actually read; PDFs, Word documents,
images and slide decks get an explanatory placeholder instead of their text.
"""

import logging
import os
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from studybuddy.models.guest import GuestFileAnalysis
from studybuddy.models.models import (
    ActivityType,
    FileAnalysis,
    ProcessingStatus,
    User,
    generate_record_id,
)
from studybuddy.services.activity_service import FILE_UPLOAD_POINTS, build_activity
from studybuddy.services.ai_service import AIQuotaError, ai_service
from studybuddy.services.quiz_engine import QuizRecord, parse_quiz_response, save_quiz
from studybuddy.services.session_resolver import (
    StoreKind,
    discard,
    persist,
    reconcile_list,
    report_degraded,
    resolve_store,
)
from studybuddy.utils.guest_store import GuestStore

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

PROMPT_TEXT_LIMIT = 3000
STORED_TEXT_LIMIT = 5000
SUMMARY_LIMIT = 500
PREVIEW_LIMIT = 200

ALLOWED_EXTENSIONS = {
    ".jpeg", ".jpg", ".png", ".gif", ".pdf", ".txt", ".doc", ".docx",
    ".md", ".csv", ".ppt", ".pptx",
}
ALLOWED_MIME_PATTERN = re.compile(
    r"image/|application/pdf|text/plain|text/markdown|text/csv|application/msword|"
    r"application/vnd\.openxmlformats-officedocument\.wordprocessingml\.document|"
    r"application/vnd\.ms-powerpoint|"
    r"application/vnd\.openxmlformats-officedocument\.presentationml\.presentation"
)

READABLE_MIME_TYPES = ("text/plain", "text/markdown", "text/csv")
WORD_MIME_TYPES = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
)
SLIDE_MIME_TYPES = (
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
)

UPLOADED_MESSAGE = "File uploaded and analyzed successfully"
FALLBACK_MESSAGE = "File uploaded successfully. AI analysis temporarily unavailable, basic analysis provided."

AnalysisRecord = Union[FileAnalysis, GuestFileAnalysis]


class InvalidUploadError(ValueError):
    """The upload is empty, too large, or of a type we do not accept."""
    pass


# ============================================================================
# TEXT EXTRACTION
# ============================================================================

PDF_PLACEHOLDER = """📄 PDF Document Content

This PDF file has been uploaded successfully.

⚠️ PDF text extraction is not available. For complete analysis:
1. Convert your PDF to plain text (.txt) format
2. Use an online PDF-to-text converter
3. Copy and paste the text content into a .txt file and re-upload"""

WORD_PLACEHOLDER = """📄 Word Document Content

This Microsoft Word document has been uploaded successfully.

⚠️ Word document parsing is not available. For complete analysis:
1. Save your document as plain text (.txt) format
2. Copy the content and create a new .txt file
3. Re-upload the text version for full AI analysis"""

IMAGE_PLACEHOLDER = """📸 Image Content

This image file has been uploaded successfully.

⚠️ Text recognition (OCR) is not available. For text analysis:
1. Manually transcribe any text from the image
2. Create a .txt file with the transcribed content
3. Upload the text file for AI analysis"""

SLIDES_PLACEHOLDER = """📊 Presentation Content

This PowerPoint presentation has been uploaded successfully.

⚠️ Presentation text extraction is not available. For complete analysis:
1. Export your slides as plain text
2. Copy slide content to a .txt file
3. Upload the text version for AI analysis"""


def extract_text(file_path: str, mime_type: str) -> str:
    """Read text formats verbatim; return a placeholder for everything else."""
    if any(kind in mime_type for kind in READABLE_MIME_TYPES):
        with open(file_path, "r", encoding="utf-8", errors="replace") as f:
            return f.read()
    if "application/pdf" in mime_type:
        return PDF_PLACEHOLDER
    if any(kind in mime_type for kind in WORD_MIME_TYPES):
        return WORD_PLACEHOLDER
    if "image/" in mime_type:
        return IMAGE_PLACEHOLDER
    if any(kind in mime_type for kind in SLIDE_MIME_TYPES):
        return SLIDES_PLACEHOLDER
    return f"File content extraction for {mime_type} files is not available."


# ============================================================================
# ANALYSIS
# ============================================================================

MATH_KEYWORDS = ("equation", "formula", "calculate", "solve", "algebra", "geometry", "calculus", "mathematics", "math")
SCIENCE_KEYWORDS = ("experiment", "hypothesis", "theory", "research", "biology", "chemistry", "physics", "science")
HISTORY_KEYWORDS = ("history", "historical", "century", "ancient", "civilization", "war", "revolution")

FORMULA_PATTERN = re.compile(r"[=+\-*/^()]")
NUMBER_PATTERN = re.compile(r"\d+")
LIST_PATTERN = re.compile(r"[-*•]\s|\d+\.\s")


def build_analysis_prompt(text: str) -> str:
    excerpt = text[:PROMPT_TEXT_LIMIT] + (" ...(truncated)" if len(text) > PROMPT_TEXT_LIMIT else "")
    return f"""Analyze the following educational content and provide a comprehensive summary:

Content: {excerpt}

Please provide:
1. A clear summary of the main concepts
2. Key points that students should focus on
3. Important definitions or formulas
4. Study recommendations
5. Suggested quiz topics

Format your response in a structured, educational manner that helps students learn effectively."""


def detect_subjects(text: str) -> List[str]:
    lowered = text.lower()
    subjects = []
    if any(keyword in lowered for keyword in MATH_KEYWORDS):
        subjects.append("Mathematics")
    if any(keyword in lowered for keyword in SCIENCE_KEYWORDS):
        subjects.append("Science")
    if any(keyword in lowered for keyword in HISTORY_KEYWORDS):
        subjects.append("History")
    return subjects


def fallback_analysis(file_name: str, text: str) -> str:
    """Heuristic report built from surface statistics of the text."""
    word_count = len(text.split())
    line_count = len(text.split("\n"))
    has_formulas = bool(FORMULA_PATTERN.search(text))
    has_numbers = bool(NUMBER_PATTERN.search(text))
    has_lists = bool(LIST_PATTERN.search(text))
    subject = ", ".join(detect_subjects(text)) or "General Studies"

    observations = []
    if has_formulas:
        observations.append("• Contains mathematical formulas or equations")
    if has_numbers:
        observations.append("• Includes numerical data and calculations")
    if has_lists:
        observations.append("• Well-organized with lists and bullet points")
    if not observations:
        observations.append("• Mostly continuous prose")

    recommendations = [
        "1. Review the main concepts and key terms",
        "2. Create summary notes of important points",
        "3. Practice any problems or exercises mentioned",
    ]
    if has_formulas:
        recommendations.append(f"{len(recommendations) + 1}. Work through mathematical examples step by step")
    if has_lists:
        recommendations.append(f"{len(recommendations) + 1}. Use the existing structure for organized review")

    return "\n".join([
        "📄 File Analysis Report",
        "",
        "📋 DOCUMENT SUMMARY:",
        f"• File: {file_name}",
        f"• Content Length: {len(text)} characters ({word_count} words)",
        f"• Structure: {line_count} lines",
        f"• Subject Area: {subject}",
        "",
        "🔍 CONTENT ANALYSIS:",
        *observations,
        "",
        "📚 STUDY RECOMMENDATIONS:",
        *recommendations,
        "",
        "💡 SUGGESTED LEARNING ACTIVITIES:",
        "• Create flashcards for key terms and concepts",
        "• Summarize each major section in your own words",
        "• Generate practice questions based on the content",
        "• Discuss the material with study partners",
        "",
        "⚠️ Note: This is a basic analysis. AI-powered detailed analysis is temporarily unavailable.",
    ])


def summarize(analysis: str) -> str:
    return analysis[:SUMMARY_LIMIT] + ("..." if len(analysis) > SUMMARY_LIMIT else "")


# ============================================================================
# UPLOAD
# ============================================================================

def validate_upload(file_name: str, mime_type: str, size: int) -> None:
    """
    Raises:
        InvalidUploadError: empty, over-size, or disallowed extension / MIME type
    """
    if size == 0:
        raise InvalidUploadError("Empty file uploaded")
    if size > MAX_UPLOAD_BYTES:
        raise InvalidUploadError(
            f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)}MB"
        )

    extension = os.path.splitext(file_name)[1].lower()
    if extension not in ALLOWED_EXTENSIONS or not ALLOWED_MIME_PATTERN.search(mime_type or ""):
        raise InvalidUploadError(
            f"Invalid file type. Received: {mime_type}. Only images, PDFs, text documents, "
            "presentations, and spreadsheets are allowed."
        )


def store_artifact(file_name: str, content: bytes) -> Tuple[str, str]:
    """Write the upload under UPLOAD_DIR; returns (stored name, path)."""
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    extension = os.path.splitext(file_name)[1].lower()
    stored_name = f"file-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{extension}"
    file_path = os.path.join(UPLOAD_DIR, stored_name)
    with open(file_path, "wb") as f:
        f.write(content)
    return stored_name, file_path


def remove_artifact(file_path: str) -> None:
    """Delete a stored upload; a file that is already gone is fine."""
    try:
        os.remove(file_path)
    except FileNotFoundError:
        logger.debug(f"Artifact already removed: {file_path}")


@dataclass
class UploadOutcome:
    analysis: AnalysisRecord
    is_ai_generated: bool
    message: str


def analyze_upload(
    db: Session,
    store: GuestStore,
    user: Optional[User],
    file_name: str,
    mime_type: str,
    content: bytes
) -> UploadOutcome:
    """
    Validate, store, extract, summarise and record an upload.

    Raises:
        InvalidUploadError: rejected upload (nothing is stored)
        AIAuthError, AIServiceError: provider failures other than quota/overload;
            the stored artifact is removed first
    """
    validate_upload(file_name, mime_type, len(content))
    stored_name, file_path = store_artifact(file_name, content)

    try:
        text = extract_text(file_path, mime_type)
        try:
            analysis = ai_service.generate_text(build_analysis_prompt(text))
            is_ai_generated = True
        except AIQuotaError as e:
            logger.info(f"AI provider overloaded ({e}), generating fallback analysis for '{file_name}'")
            analysis = fallback_analysis(file_name, text)
            is_ai_generated = False
    except Exception:
        remove_artifact(file_path)
        raise

    analysis_id = generate_record_id()
    guest_record = GuestFileAnalysis(
        id=analysis_id,
        file_name=file_name,
        stored_name=stored_name,
        file_path=file_path,
        file_size=len(content),
        mime_type=mime_type,
        analysis=analysis,
        extracted_text=text[:STORED_TEXT_LIMIT],
        summary=summarize(analysis),
        is_ai_generated=is_ai_generated,
    )
    message = UPLOADED_MESSAGE if is_ai_generated else FALLBACK_MESSAGE

    if resolve_store(user) == StoreKind.EPHEMERAL:
        store.file_analyses.set(analysis_id, guest_record)
        return UploadOutcome(guest_record, is_ai_generated, message)

    user_id = user.id
    record = FileAnalysis(
        id=analysis_id,
        user_id=user_id,
        file_name=file_name,
        stored_name=stored_name,
        file_path=file_path,
        file_size=len(content),
        mime_type=mime_type,
        analysis=analysis,
        extracted_text=text[:STORED_TEXT_LIMIT],
        summary=summarize(analysis),
        processing_status=ProcessingStatus.COMPLETED.value,
        is_ai_generated=is_ai_generated,
    )
    activity = build_activity(
        user_id,
        ActivityType.FILE_UPLOAD,
        points=FILE_UPLOAD_POINTS,
        details={
            "fileName": file_name,
            "fileSize": len(content),
            "fileType": mime_type,
            "isAIGenerated": is_ai_generated,
        }
    )

    error = persist(db, record, activity)
    if error:
        guest_record.owner_id = user_id
        store.file_analyses.set(analysis_id, guest_record)
        report_degraded("file_analysis", analysis_id, user_id, error)
        return UploadOutcome(guest_record, is_ai_generated, message)

    return UploadOutcome(record, is_ai_generated, message)


# ============================================================================
# LOOKUP / QUIZ / HISTORY / DELETE
# ============================================================================

def get_analysis(db: Session, store: GuestStore, user: Optional[User], analysis_id: str) -> Optional[AnalysisRecord]:
    """Owner-scoped database lookup first, then memory."""
    owner_id = user.id if user is not None else None
    if owner_id is not None:
        record = db.query(FileAnalysis).filter(
            FileAnalysis.id == analysis_id,
            FileAnalysis.user_id == owner_id
        ).first()
        if record is not None:
            return record

    record = store.file_analyses.get(analysis_id)
    if record is not None and record.owner_id in (None, owner_id):
        return record
    return None


def build_file_quiz_prompt(file_name: str, text: str, difficulty: str, question_count: int) -> str:
    return f"""Create a {difficulty} level multiple choice quiz with {question_count} questions based on this educational content:

Content: {text}

Format the response as a JSON object with this structure:
{{
  "title": "Quiz about [filename]",
  "topic": "Main topic from the file",
  "difficulty": "{difficulty}",
  "questions": [
    {{
      "question": "Question text",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correct": 0,
      "explanation": "Explanation of why this answer is correct"
    }}
  ]
}}

Base the questions directly on the content from the file: {file_name}

Respond with ONLY the JSON object, no additional text."""


def quiz_from_analysis(
    db: Session,
    store: GuestStore,
    user: Optional[User],
    analysis_id: str,
    difficulty: str = "medium",
    question_count: int = 5
) -> Optional[Tuple[QuizRecord, AnalysisRecord]]:
    """
    Generate and store a quiz from a stored analysis; None if it is unknown.

    There is no fallback bank here: provider and parse errors propagate.
    """
    analysis = get_analysis(db, store, user, analysis_id)
    if analysis is None:
        return None

    prompt = build_file_quiz_prompt(analysis.file_name, analysis.extracted_text or "", difficulty, question_count)
    data = parse_quiz_response(ai_service.generate_text(prompt), analysis.file_name, difficulty)
    quiz, _ = save_quiz(
        db, store, user, data,
        is_ai_generated=True,
        source={"sourceFile": analysis.file_name, "analysisId": analysis_id}
    )
    return quiz, analysis


def _history_entry(record: AnalysisRecord) -> dict:
    uploaded_at = record.created_at if isinstance(record, FileAnalysis) else record.uploaded_at
    preview = record.summary or record.analysis or ""
    return {
        "id": record.id,
        "fileName": record.file_name,
        "fileSize": record.file_size,
        "mimeType": record.mime_type,
        "uploadedAt": uploaded_at.isoformat() if uploaded_at else None,
        "analysisPreview": (preview[:PREVIEW_LIMIT] + ("..." if len(preview) > PREVIEW_LIMIT else "")) or "No preview available",
        "isAIGenerated": bool(record.is_ai_generated),
    }


def _uploaded_at(record: AnalysisRecord) -> datetime:
    value = record.created_at if isinstance(record, FileAnalysis) else record.uploaded_at
    return value or datetime.min


def file_history(db: Session, store: GuestStore, user: Optional[User]) -> List[dict]:
    """Uploads most recent first. Guests only see owner-less memory records."""
    if resolve_store(user) == StoreKind.EPHEMERAL:
        records = sorted(store.file_analyses.owned_by(None), key=_uploaded_at, reverse=True)
    else:
        user_id = user.id
        stored = db.query(FileAnalysis).filter(FileAnalysis.user_id == user_id).all()
        records = reconcile_list(stored, store.file_analyses.owned_by(user_id), sort_key=_uploaded_at)
    return [_history_entry(record) for record in records]


def count_files(db: Session, store: GuestStore, user_id: str, since: Optional[datetime] = None) -> int:
    """Uploads for a user across both stores, optionally only those at or after `since`."""
    query = db.query(FileAnalysis.id).filter(FileAnalysis.user_id == user_id)
    if since is not None:
        query = query.filter(FileAnalysis.created_at >= since)
    stored_ids = {row.id for row in query.all()}
    stored_ids.update(
        record.id for record in store.file_analyses.owned_by(user_id)
        if since is None or record.uploaded_at >= since
    )
    return len(stored_ids)


def delete_analysis(db: Session, store: GuestStore, user: Optional[User], analysis_id: str) -> bool:
    """Remove the artifact and the record; False if no visible record exists."""
    analysis = get_analysis(db, store, user, analysis_id)
    if analysis is None:
        return False

    remove_artifact(analysis.file_path)

    if isinstance(analysis, FileAnalysis):
        error = discard(db, analysis)
        if error:
            report_degraded("file_analysis", analysis_id, analysis.user_id, error)
    else:
        store.file_analyses.delete(analysis_id)

    logger.info(f"Deleted file analysis {analysis_id}")
    return True

from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum
import random
import string
import time
import uuid
from studybuddy.database import Base


def generate_uuid():
    return str(uuid.uuid4())


_BASE36 = string.digits + string.ascii_lowercase


def generate_record_id() -> str:
    """
    Identifier for quizzes, quiz results and file analyses.

    Epoch milliseconds followed by nine random base36 characters. Unique
    with high probability, not guaranteed.
    """
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"{int(time.time() * 1000)}{suffix}"


def isoformat(value):
    return value.isoformat() if value else None


class Personality(str, Enum):
    FRIENDLY = "friendly"
    PROFESSIONAL = "professional"
    CASUAL = "casual"
    MOTIVATIONAL = "motivational"
    PATIENT = "patient"
    ENTHUSIASTIC = "enthusiastic"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class ActivityType(str, Enum):
    CHAT_MESSAGE = "chat_message"
    VOICE_CHAT = "voice_chat"
    QUIZ_GENERATED = "quiz_generated"
    QUIZ_COMPLETED = "quiz_completed"
    FILE_UPLOAD = "file_upload"
    STUDY_SESSION = "study_session"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)

    # Free-form bags: language, AI personality, theme... / last login etc.
    preferences = Column(JSON, nullable=True)
    study_stats = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    conversations = relationship("Conversation", back_populates="user")
    quizzes = relationship("Quiz", back_populates="user")
    quiz_results = relationship("QuizResult", back_populates="user")
    file_analyses = relationship("FileAnalysis", back_populates="user")
    activities = relationship("StudyActivity", back_populates="user")

    def to_dict(self) -> dict:
        """Public representation; never includes the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "preferences": self.preferences or {},
            "studyStats": self.study_stats or {},
            "createdAt": isoformat(self.created_at),
        }


class Conversation(Base):
    """A chat thread; the id is chosen by the client."""
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=True)
    personality = Column(String, default=Personality.FRIENDLY.value)
    message_count = Column(Integer, default=0)
    last_message_at = Column(DateTime, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.created_at",
        cascade="all, delete-orphan",
    )


class Message(Base):
    """Immutable chat message, ordered by creation time within its conversation"""
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=generate_uuid)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(String, nullable=False)  # "user" or "assistant"
    content = Column(Text, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "metadata": self.meta or {},
            "timestamp": isoformat(self.created_at),
        }


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(String, primary_key=True, default=generate_record_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    topic = Column(String, nullable=False)
    difficulty = Column(String, default=Difficulty.MEDIUM.value)
    question_type = Column(String, default="multiple-choice")
    questions = Column(JSON, nullable=False)  # [{question, options[4], correct, explanation}]
    total_questions = Column(Integer, nullable=False)
    times_taken = Column(Integer, default=0)
    is_ai_generated = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="quizzes")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "topic": self.topic,
            "difficulty": self.difficulty,
            "questionType": self.question_type,
            "totalQuestions": self.total_questions,
            "questions": self.questions or [],
            "timesTaken": self.times_taken or 0,
            "isAIGenerated": bool(self.is_ai_generated),
            "createdAt": isoformat(self.created_at),
        }


class QuizResult(Base):
    """
    One submission of a quiz. Stores the integer percentage in `score`;
    the per-question breakdown and a snapshot of the quiz header are kept
    so the result stays readable if the quiz row disappears.
    """
    __tablename__ = "quiz_results"

    id = Column(String, primary_key=True, default=generate_record_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    quiz_id = Column(String, ForeignKey("quizzes.id"), nullable=False, index=True)
    answers = Column(JSON, nullable=False)
    score = Column(Integer, nullable=False)  # 0-100
    correct_answers = Column(Integer, nullable=False, default=0)
    total_questions = Column(Integer, nullable=False)
    time_spent = Column(Integer, nullable=True)  # seconds
    results = Column(JSON, nullable=True)
    quiz_snapshot = Column(JSON, nullable=True)  # {title, topic, difficulty}
    completed_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="quiz_results")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quizId": self.quiz_id,
            "answers": self.answers or [],
            "results": self.results or [],
            "score": {
                "correct": self.correct_answers or 0,
                "total": self.total_questions,
                "percentage": self.score,
            },
            "timeSpent": self.time_spent or 0,
            "completedAt": isoformat(self.completed_at),
            "quiz": self.quiz_snapshot or {},
        }


class FileAnalysis(Base):
    __tablename__ = "file_analyses"

    id = Column(String, primary_key=True, default=generate_record_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    file_name = Column(String, nullable=False)  # Original client filename
    stored_name = Column(String, nullable=False)  # Name on disk under UPLOAD_DIR
    file_path = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    mime_type = Column(String, nullable=False)
    analysis = Column(Text, nullable=False)
    extracted_text = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    processing_status = Column(String, default=ProcessingStatus.PENDING.value)
    is_ai_generated = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="file_analyses")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "fileUrl": f"/uploads/{self.stored_name}",
            "uploadedAt": isoformat(self.created_at),
            "analysis": self.analysis,
            "textContent": self.extracted_text or "",
            "summary": self.summary,
            "processingStatus": self.processing_status,
            "isAIGenerated": bool(self.is_ai_generated),
        }


class StudyActivity(Base):
    """Append-only gamification log"""
    __tablename__ = "study_activities"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    activity_type = Column(String, nullable=False, index=True)
    details = Column(JSON, nullable=True)
    duration = Column(Integer, nullable=True)  # seconds
    points = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="activities")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "activityType": self.activity_type,
            "details": self.details or {},
            "duration": self.duration,
            "points": self.points or 0,
            "createdAt": isoformat(self.created_at),
        }


class Feedback(Base):
    __tablename__ = "feedback"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    feedback_type = Column(String, default="general")
    message = Column(Text, nullable=False)
    rating = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

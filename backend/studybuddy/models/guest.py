"""
In-memory record types held by the guest store.

They mirror the ORM rows closely enough that `to_dict()` yields the same
JSON shape, but they are not ORM objects: no foreign keys, no durability.
`owner_id` is None for guests and set to the user id when an authenticated
write was degraded to memory.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from studybuddy.models.models import ProcessingStatus, isoformat


@dataclass
class GuestMessage:
    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": None,
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
            "timestamp": isoformat(self.timestamp),
        }


@dataclass
class GuestConversation:
    id: str
    owner_id: Optional[str] = None
    personality: str = "friendly"
    title: Optional[str] = None
    messages: List[GuestMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def last_message_at(self) -> datetime:
        if self.messages:
            return self.messages[-1].timestamp
        return self.created_at


@dataclass
class GuestQuiz:
    id: str
    title: str
    topic: str
    difficulty: str
    questions: List[Dict[str, Any]]
    owner_id: Optional[str] = None
    question_type: str = "multiple-choice"
    is_ai_generated: bool = True
    times_taken: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "topic": self.topic,
            "difficulty": self.difficulty,
            "questionType": self.question_type,
            "totalQuestions": self.total_questions,
            "questions": self.questions,
            "timesTaken": self.times_taken,
            "isAIGenerated": self.is_ai_generated,
            "createdAt": isoformat(self.created_at),
        }


@dataclass
class GuestQuizResult:
    """Keeps the nested score shape: {"correct", "total", "percentage"}."""
    id: str
    quiz_id: str
    answers: List[Any]
    results: List[Dict[str, Any]]
    score: Dict[str, int]
    owner_id: Optional[str] = None
    time_spent: int = 0
    quiz: Dict[str, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quizId": self.quiz_id,
            "answers": self.answers,
            "results": self.results,
            "score": dict(self.score),
            "timeSpent": self.time_spent,
            "completedAt": isoformat(self.completed_at),
            "quiz": self.quiz,
        }


@dataclass
class GuestFileAnalysis:
    id: str
    file_name: str
    stored_name: str
    file_path: str
    file_size: int
    mime_type: str
    analysis: str
    extracted_text: str = ""
    summary: Optional[str] = None
    owner_id: Optional[str] = None
    is_ai_generated: bool = True
    processing_status: str = ProcessingStatus.COMPLETED.value
    uploaded_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "fileUrl": f"/uploads/{self.stored_name}",
            "uploadedAt": isoformat(self.uploaded_at),
            "analysis": self.analysis,
            "textContent": self.extracted_text,
            "summary": self.summary,
            "processingStatus": self.processing_status,
            "isAIGenerated": self.is_ai_generated,
        }

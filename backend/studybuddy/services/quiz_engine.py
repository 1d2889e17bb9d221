"""
Quiz Engine.

Generates multiple-choice quizzes through the AI service, scores submitted
answer sets, and lists a user's results with their average score.

When the provider is over quota or overloaded, generation switches to a small
built-in question bank; every other provider or parse failure surfaces to the
caller.
"""

import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from studybuddy.models.guest import GuestQuiz, GuestQuizResult
from studybuddy.models.models import (
    ActivityType,
    Quiz,
    QuizResult,
    User,
    generate_record_id,
)
from studybuddy.services.activity_service import (
    QUIZ_GENERATED_POINTS,
    build_activity,
    quiz_completed_points,
)
from studybuddy.services.ai_service import AIQuotaError, ai_service
from studybuddy.services.session_resolver import (
    StoreKind,
    normalize_score,
    persist,
    reconcile_list,
    report_degraded,
    resolve_store,
    round_half_up,
)
from studybuddy.utils.guest_store import GuestStore

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_TYPE = "multiple-choice"
NO_ANSWER_TEXT = "No answer"

GENERATED_MESSAGE = "Quiz generated successfully"
FALLBACK_MESSAGE = "AI service temporarily unavailable. Generated practice quiz"
DEGRADED_SUFFIX = " (using fallback storage)"

QuizRecord = Union[Quiz, GuestQuiz]
ResultRecord = Union[QuizResult, GuestQuizResult]


class QuizFormatError(ValueError):
    """The provider's reply is not a usable quiz document."""
    pass


# ============================================================================
# FALLBACK QUESTION BANK
# ============================================================================

FALLBACK_QUESTIONS: Dict[str, List[Dict[str, Any]]] = {
    "mathematics": [
        {
            "question": "What is 15 + 27?",
            "options": ["40", "42", "45", "48"],
            "correct": 1,
            "explanation": "15 + 27 = 42"
        },
        {
            "question": "What is 8 × 7?",
            "options": ["54", "56", "58", "60"],
            "correct": 1,
            "explanation": "8 × 7 = 56"
        },
        {
            "question": "What is 144 ÷ 12?",
            "options": ["10", "12", "14", "16"],
            "correct": 1,
            "explanation": "144 ÷ 12 = 12"
        },
    ],
    "science": [
        {
            "question": "What is the chemical symbol for water?",
            "options": ["H2O", "CO2", "O2", "H2"],
            "correct": 0,
            "explanation": "Water is H2O - two hydrogen atoms bonded to one oxygen atom"
        },
        {
            "question": "What planet is closest to the Sun?",
            "options": ["Venus", "Mercury", "Earth", "Mars"],
            "correct": 1,
            "explanation": "Mercury is the closest planet to the Sun"
        },
    ],
    "general": [
        {
            "question": "Which of the following is a prime number?",
            "options": ["15", "21", "17", "25"],
            "correct": 2,
            "explanation": "17 is a prime number as it's only divisible by 1 and itself"
        },
        {
            "question": "What is the capital of France?",
            "options": ["London", "Berlin", "Madrid", "Paris"],
            "correct": 3,
            "explanation": "Paris is the capital city of France"
        },
    ],
}

# Checked in order; first match wins
BANK_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("mathematics", ("math", "arithmetic", "number")),
    ("science", ("science", "chemistry", "physics", "biology")),
]


def select_bank(topic: str) -> str:
    topic_lower = topic.lower()
    for bank, keywords in BANK_KEYWORDS:
        if any(keyword in topic_lower for keyword in keywords):
            return bank
    return "general"


def fallback_quiz(
    topic: str,
    difficulty: str,
    question_count: int,
    rng: Optional[random.Random] = None
) -> Dict[str, Any]:
    """
    Practice quiz from the built-in bank.

    Questions are sampled without replacement first; if more are requested
    than the bank holds, the rest are drawn with replacement.
    """
    rng = rng or random
    bank = FALLBACK_QUESTIONS[select_bank(topic)]

    selected = rng.sample(bank, min(question_count, len(bank)))
    while len(selected) < question_count:
        selected.append(rng.choice(bank))

    return {
        "title": f"Practice Quiz: {topic}",
        "topic": topic,
        "difficulty": difficulty,
        "questions": [dict(question) for question in selected],
    }


# ============================================================================
# GENERATION
# ============================================================================

def build_quiz_prompt(
    topic: str,
    difficulty: str,
    question_count: int,
    question_type: str = DEFAULT_QUESTION_TYPE,
    context: str = ""
) -> str:
    context_line = f"Additional context: {context}\n\n" if context else ""
    return f"""Create a {difficulty} level {question_type} quiz about "{topic}" with {question_count} questions.

{context_line}Format the response as a JSON object with this structure:
{{
  "title": "Quiz title",
  "topic": "{topic}",
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

Make sure:
- Questions are educational and accurate
- Options are plausible but only one is correct
- Explanations are clear and helpful
- Difficulty matches the requested level
- All questions are about the specified topic
- Respond with ONLY the JSON object, no additional text"""


def strip_code_fences(text: str) -> str:
    return text.replace("```json", "").replace("```", "").strip()


def parse_quiz_response(text: str, topic: str = "", difficulty: str = "medium") -> Dict[str, Any]:
    """
    Parse the provider's JSON quiz document.

    Raises:
        QuizFormatError: if the reply is not JSON or has no usable questions
    """
    try:
        data = json.loads(strip_code_fences(text or ""))
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse AI quiz response: {e}. Response: {(text or '')[:500]}")
        raise QuizFormatError("Invalid AI response format") from e

    if not isinstance(data, dict):
        raise QuizFormatError("Invalid AI response format")

    questions = data.get("questions")
    if not isinstance(questions, list) or not questions:
        raise QuizFormatError("AI response contains no questions")
    for question in questions:
        if not isinstance(question, dict) or not isinstance(question.get("options"), list):
            raise QuizFormatError("AI response contains a malformed question")

    return {
        "title": data.get("title") or f"{topic} Quiz",
        "topic": data.get("topic") or topic,
        "difficulty": data.get("difficulty") or difficulty,
        "questions": questions,
    }


@dataclass
class QuizOutcome:
    quiz: QuizRecord
    is_ai_generated: bool
    message: str


def generate(
    db: Session,
    store: GuestStore,
    user: Optional[User],
    topic: str,
    difficulty: str = "medium",
    question_count: int = 5,
    question_type: str = DEFAULT_QUESTION_TYPE,
    context: str = ""
) -> QuizOutcome:
    """
    Generate and store a quiz.

    Raises:
        QuizFormatError: unparsable provider reply
        AIAuthError, AIServiceError: provider failures other than quota/overload
    """
    prompt = build_quiz_prompt(topic, difficulty, question_count, question_type, context)
    try:
        data = parse_quiz_response(ai_service.generate_text(prompt), topic, difficulty)
        is_ai_generated = True
    except AIQuotaError as e:
        logger.info(f"AI provider overloaded ({e}), generating fallback quiz for '{topic}'")
        data = fallback_quiz(topic, difficulty, question_count)
        is_ai_generated = False

    quiz, degraded = save_quiz(db, store, user, data, question_type, is_ai_generated)
    message = GENERATED_MESSAGE if is_ai_generated else FALLBACK_MESSAGE
    if degraded:
        message += DEGRADED_SUFFIX
    return QuizOutcome(quiz=quiz, is_ai_generated=is_ai_generated, message=message)


def save_quiz(
    db: Session,
    store: GuestStore,
    user: Optional[User],
    data: Dict[str, Any],
    question_type: str = DEFAULT_QUESTION_TYPE,
    is_ai_generated: bool = True,
    source: Optional[Dict[str, Any]] = None
) -> Tuple[QuizRecord, bool]:
    """
    Store a parsed quiz for `user` (or the guest session).

    Returns the stored record and whether the database write was degraded
    to memory.
    """
    quiz_id = generate_record_id()
    guest_quiz = GuestQuiz(
        id=quiz_id,
        title=data["title"],
        topic=data["topic"],
        difficulty=data["difficulty"],
        questions=data["questions"],
        question_type=question_type,
        is_ai_generated=is_ai_generated,
    )

    if resolve_store(user) == StoreKind.EPHEMERAL:
        store.quizzes.set(quiz_id, guest_quiz)
        return guest_quiz, False

    user_id = user.id
    quiz = Quiz(
        id=quiz_id,
        user_id=user_id,
        title=data["title"],
        topic=data["topic"],
        difficulty=data["difficulty"],
        question_type=question_type,
        questions=data["questions"],
        total_questions=len(data["questions"]),
        is_ai_generated=is_ai_generated,
    )
    details = {
        "topic": data["topic"],
        "difficulty": data["difficulty"],
        "questionCount": len(data["questions"]),
        "isAIGenerated": is_ai_generated,
    }
    if source:
        details.update(source)
    activity = build_activity(
        user_id,
        ActivityType.QUIZ_GENERATED,
        points=QUIZ_GENERATED_POINTS,
        details=details
    )

    error = persist(db, quiz, activity)
    if error:
        guest_quiz.owner_id = user_id
        store.quizzes.set(quiz_id, guest_quiz)
        report_degraded("quiz", quiz_id, user_id, error)
        return guest_quiz, True

    return quiz, False


# ============================================================================
# LOOKUP
# ============================================================================

def _visible(record, owner_id: Optional[str]) -> bool:
    """Guest records are shared; degraded records belong to their owner only."""
    return record is not None and record.owner_id in (None, owner_id)


def get_quiz(db: Session, store: GuestStore, user: Optional[User], quiz_id: str) -> Optional[QuizRecord]:
    """Owner-scoped database lookup first, then memory."""
    owner_id = user.id if user is not None else None
    if owner_id is not None:
        quiz = db.query(Quiz).filter(Quiz.id == quiz_id, Quiz.user_id == owner_id).first()
        if quiz is not None:
            return quiz

    quiz = store.quizzes.get(quiz_id)
    return quiz if _visible(quiz, owner_id) else None


def get_result(db: Session, store: GuestStore, user: Optional[User], result_id: str) -> Optional[ResultRecord]:
    owner_id = user.id if user is not None else None
    if owner_id is not None:
        result = db.query(QuizResult).filter(
            QuizResult.id == result_id,
            QuizResult.user_id == owner_id
        ).first()
        if result is not None:
            return result

    result = store.quiz_results.get(result_id)
    return result if _visible(result, owner_id) else None


# ============================================================================
# SCORING
# ============================================================================

def _as_index(value: Any) -> Optional[int]:
    """Option index for ints and integral floats; None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def score_submission(questions: List[Dict[str, Any]], answers: List[Any]) -> Tuple[List[Dict[str, Any]], int, int]:
    """
    Score `answers` against the answer key.

    An answer is correct only if it names the same option index as the question's
    `correct` value; 1.0 counts as 1. Missing, out-of-range or non-integer answers are
    incorrect, never an error.

    Returns (per-question breakdown, correct count, percentage).
    """
    results = []
    correct_count = 0

    for index, question in enumerate(questions):
        options = question.get("options") or []
        correct = question.get("correct")
        answer = answers[index] if index < len(answers) else None

        answer_index = _as_index(answer)
        correct_index = _as_index(correct)
        is_correct = answer_index is not None and answer_index == correct_index
        if is_correct:
            correct_count += 1

        results.append({
            "questionIndex": index,
            "question": question.get("question"),
            "userAnswer": answer,
            "correctAnswer": correct,
            "isCorrect": is_correct,
            "explanation": question.get("explanation"),
            "userAnswerText": options[answer_index] if answer_index is not None and 0 <= answer_index < len(options) else NO_ANSWER_TEXT,
            "correctAnswerText": options[correct_index] if correct_index is not None and 0 <= correct_index < len(options) else None,
        })

    total = len(questions)
    percentage = round_half_up(100 * correct_count / total) if total else 0
    return results, correct_count, percentage


def submit(
    db: Session,
    store: GuestStore,
    user: Optional[User],
    quiz_id: str,
    answers: List[Any],
    time_spent: Optional[int] = None
) -> Optional[ResultRecord]:
    """Score and store a submission; None if the quiz is unknown."""
    quiz = get_quiz(db, store, user, quiz_id)
    if quiz is None:
        return None

    questions = list(quiz.questions or [])
    results, correct_count, percentage = score_submission(questions, answers)
    total = len(questions)
    snapshot = {"title": quiz.title, "topic": quiz.topic, "difficulty": quiz.difficulty}
    result_id = generate_record_id()
    completed_at = datetime.utcnow()

    guest_result = GuestQuizResult(
        id=result_id,
        quiz_id=quiz_id,
        answers=answers,
        results=results,
        score={"correct": correct_count, "total": total, "percentage": percentage},
        time_spent=time_spent or 0,
        quiz=snapshot,
        completed_at=completed_at,
    )

    if resolve_store(user) == StoreKind.EPHEMERAL:
        quiz.times_taken += 1
        store.quiz_results.set(result_id, guest_result)
        return guest_result

    user_id = user.id
    result = QuizResult(
        id=result_id,
        user_id=user_id,
        quiz_id=quiz_id,
        answers=answers,
        score=percentage,
        correct_answers=correct_count,
        total_questions=total,
        time_spent=time_spent or 0,
        results=results,
        quiz_snapshot=snapshot,
        completed_at=completed_at,
    )
    activity = build_activity(
        user_id,
        ActivityType.QUIZ_COMPLETED,
        points=quiz_completed_points(percentage),
        details={
            "topic": quiz.topic,
            "title": quiz.title,
            "score": percentage,
            "correctAnswers": correct_count,
            "totalQuestions": total,
        }
    )

    if not isinstance(quiz, Quiz):
        # A memory-only quiz cannot be referenced by a database row
        quiz.times_taken += 1
        guest_result.owner_id = user_id
        store.quiz_results.set(result_id, guest_result)
        error = persist(db, activity)
        if error:
            logger.warning(f"Activity for quiz result {result_id} not recorded: {error}")
        return guest_result

    quiz.times_taken = (quiz.times_taken or 0) + 1
    error = persist(db, result, activity)
    if error:
        guest_result.owner_id = user_id
        store.quiz_results.set(result_id, guest_result)
        report_degraded("quiz_result", result_id, user_id, error)
        return guest_result

    return result


def history(db: Session, store: GuestStore, user: Optional[User]) -> Tuple[List[dict], int]:
    """
    Results most recent first, plus the average percentage (0 if none).

    Memory results keep a nested score and database rows a flat one;
    both go through normalize_score before averaging.
    """
    if resolve_store(user) == StoreKind.EPHEMERAL:
        records = sorted(store.quiz_results.owned_by(None), key=lambda r: r.completed_at, reverse=True)
    else:
        user_id = user.id
        stored = db.query(QuizResult).filter(QuizResult.user_id == user_id).all()
        records = reconcile_list(stored, store.quiz_results.owned_by(user_id), sort_key=lambda r: r.completed_at)

    average = (
        round_half_up(sum(normalize_score(r.score) for r in records) / len(records))
        if records else 0
    )
    return [r.to_dict() for r in records], average

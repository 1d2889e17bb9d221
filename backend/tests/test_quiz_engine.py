"""
Unit tests for the quiz engine: scoring, fallback bank and response parsing.
"""

import json
import random

import pytest

from studybuddy.services import quiz_engine
from studybuddy.services.activity_service import quiz_completed_points
from studybuddy.services.ai_service import AIAuthError, AIQuotaError, CircuitBreakerOpenError
from studybuddy.services.quiz_engine import QuizFormatError


TWO_QUESTIONS = [
    {"question": "2 + 2?", "options": ["3", "4", "5", "6"], "correct": 1, "explanation": "2 + 2 = 4"},
    {"question": "Capital of Italy?", "options": ["Rome", "Milan", "Turin", "Naples"], "correct": 0},
]


class TestScoring:
    """Tests for score_submission"""

    @pytest.mark.unit
    def test_all_correct(self):
        results, correct, percentage = quiz_engine.score_submission(TWO_QUESTIONS, [1, 0])
        assert correct == 2
        assert percentage == 100
        assert all(r["isCorrect"] for r in results)
        assert results[0]["userAnswerText"] == "4"
        assert results[1]["correctAnswerText"] == "Rome"

    @pytest.mark.unit
    def test_short_answer_list(self):
        """Missing answers are incorrect, not an error"""
        results, correct, percentage = quiz_engine.score_submission(TWO_QUESTIONS, [1])
        assert correct == 1
        assert percentage == 50
        assert results[1]["userAnswer"] is None
        assert results[1]["userAnswerText"] == quiz_engine.NO_ANSWER_TEXT

    @pytest.mark.unit
    @pytest.mark.parametrize("answer", ["1", 1.5, True, None, -1, 9, [1]])
    def test_non_index_answers_are_incorrect(self, answer):
        results, correct, _ = quiz_engine.score_submission(TWO_QUESTIONS[:1], [answer])
        assert correct == 0
        assert results[0]["isCorrect"] is False

    @pytest.mark.unit
    def test_integral_float_answer_counts(self):
        """1.0 from a JSON client is the same answer as 1"""
        results, correct, _ = quiz_engine.score_submission(TWO_QUESTIONS[:1], [1.0])
        assert correct == 1
        assert results[0]["isCorrect"] is True
        assert results[0]["userAnswerText"] == "4"

    @pytest.mark.unit
    def test_out_of_range_answer_text(self):
        results, _, _ = quiz_engine.score_submission(TWO_QUESTIONS[:1], [7])
        assert results[0]["userAnswerText"] == quiz_engine.NO_ANSWER_TEXT

    @pytest.mark.unit
    def test_rounding_is_half_up(self):
        questions = [dict(TWO_QUESTIONS[0]) for _ in range(8)]
        _, correct, percentage = quiz_engine.score_submission(questions, [1])
        assert correct == 1
        assert percentage == 13  # 12.5 rounds up

    @pytest.mark.unit
    def test_empty_quiz_scores_zero(self):
        results, correct, percentage = quiz_engine.score_submission([], [0, 1])
        assert results == []
        assert (correct, percentage) == (0, 0)

    @pytest.mark.unit
    @pytest.mark.parametrize("percentage,points", [(0, 5), (40, 5), (55, 6), (100, 10)])
    def test_completion_points(self, percentage, points):
        assert quiz_completed_points(percentage) == points


class TestFallbackBank:

    @pytest.mark.unit
    @pytest.mark.parametrize("topic,bank", [
        ("Mathematics", "mathematics"),
        ("basic arithmetic", "mathematics"),
        ("Organic Chemistry", "science"),
        ("World History", "general"),
    ])
    def test_bank_selection(self, topic, bank):
        assert quiz_engine.select_bank(topic) == bank

    @pytest.mark.unit
    def test_samples_without_replacement_first(self):
        quiz = quiz_engine.fallback_quiz("math", "easy", 3, rng=random.Random(7))
        questions = [q["question"] for q in quiz["questions"]]
        assert len(set(questions)) == 3

    @pytest.mark.unit
    def test_pads_with_replacement(self):
        quiz = quiz_engine.fallback_quiz("physics", "hard", 5, rng=random.Random(1))
        bank = [q["question"] for q in quiz_engine.FALLBACK_QUESTIONS["science"]]
        assert len(quiz["questions"]) == 5
        assert all(q["question"] in bank for q in quiz["questions"])
        assert quiz["title"] == "Practice Quiz: physics"

    @pytest.mark.unit
    def test_fallback_questions_are_copies(self):
        quiz = quiz_engine.fallback_quiz("math", "easy", 1)
        quiz["questions"][0]["question"] = "changed"
        assert all(q["question"] != "changed" for q in quiz_engine.FALLBACK_QUESTIONS["mathematics"])


class TestParsing:

    @pytest.mark.unit
    def test_parses_fenced_json(self):
        body = {"title": "Cells", "topic": "Biology", "difficulty": "easy", "questions": TWO_QUESTIONS}
        parsed = quiz_engine.parse_quiz_response(f"```json\n{json.dumps(body)}\n```", "Biology", "easy")
        assert parsed["title"] == "Cells"
        assert len(parsed["questions"]) == 2

    @pytest.mark.unit
    def test_defaults_missing_header_fields(self):
        parsed = quiz_engine.parse_quiz_response(json.dumps({"questions": TWO_QUESTIONS}), "Algebra", "hard")
        assert parsed["title"] == "Algebra Quiz"
        assert parsed["topic"] == "Algebra"
        assert parsed["difficulty"] == "hard"

    @pytest.mark.unit
    @pytest.mark.parametrize("text", [
        "Sure! Here is your quiz.",
        "[]",
        json.dumps({"title": "x", "questions": []}),
        json.dumps({"questions": [{"question": "no options"}]}),
    ])
    def test_rejects_unusable_replies(self, text):
        with pytest.raises(QuizFormatError):
            quiz_engine.parse_quiz_response(text, "topic")


class TestGenerate:
    """generate() with the AI service mocked"""

    @pytest.mark.unit
    def test_scenario_overload_uses_mathematics_bank(self, db, guest_store, mock_ai):
        mock_ai.side_effect = AIQuotaError("model overloaded")

        outcome = quiz_engine.generate(db, guest_store, None, topic="Mathematics", difficulty="easy", question_count=2)

        assert outcome.is_ai_generated is False
        assert outcome.message == quiz_engine.FALLBACK_MESSAGE
        bank = [q["question"] for q in quiz_engine.FALLBACK_QUESTIONS["mathematics"]]
        assert len(outcome.quiz.questions) == 2
        assert all(q["question"] in bank for q in outcome.quiz.questions)

    @pytest.mark.unit
    def test_open_circuit_uses_bank(self, db, guest_store, mock_ai):
        mock_ai.side_effect = CircuitBreakerOpenError("circuit open")
        outcome = quiz_engine.generate(db, guest_store, None, topic="science", question_count=1)
        assert outcome.is_ai_generated is False

    @pytest.mark.unit
    def test_auth_error_propagates(self, db, guest_store, mock_ai):
        mock_ai.side_effect = AIAuthError("invalid api key")
        with pytest.raises(AIAuthError):
            quiz_engine.generate(db, guest_store, None, topic="science")
        assert len(guest_store.quizzes) == 0

    @pytest.mark.unit
    def test_guest_quiz_stored_in_memory(self, db, guest_store, mock_ai):
        mock_ai.return_value = json.dumps({"title": "T", "topic": "t", "difficulty": "easy", "questions": TWO_QUESTIONS})

        outcome = quiz_engine.generate(db, guest_store, None, topic="t", difficulty="easy", question_count=2)

        assert outcome.is_ai_generated is True
        assert guest_store.quizzes.get(outcome.quiz.id) is outcome.quiz
        assert outcome.quiz.owner_id is None

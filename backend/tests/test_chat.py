"""
Tests for the chat router and conversation service.

Tests cover:
- Guest conversations in memory
- Authenticated conversations in the database
- Fallback replies when the AI provider fails or times out
- Degraded writes when the database refuses a commit
"""

import pytest
from unittest.mock import patch

from studybuddy.models.guest import GuestConversation, GuestMessage
from studybuddy.models.models import Conversation, Message, Personality, StudyActivity
from studybuddy.services import conversation_service
from studybuddy.services.ai_service import AIAuthError, AIQuotaError, AITimeoutError
from studybuddy.services.session_resolver import degradation_log


def send(client, text, conversation_id="conv-1", headers=None, **extra):
    return client.post(
        "/api/chat/message",
        json={"message": text, "conversationId": conversation_id, **extra},
        headers=headers or {}
    )


class TestGuestChat:
    """Guest conversations live in the guest store"""

    @pytest.mark.api
    def test_guest_round_trip(self, client, guest_store, mock_ai):
        """A guest message and reply are both kept, oldest first"""
        mock_ai.return_value = "Photosynthesis turns light into chemical energy."

        response = send(client, "What is photosynthesis?", "g-1")
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Photosynthesis turns light into chemical energy."
        assert data["conversationId"] == "g-1"
        assert data["isFallback"] is False

        history = client.get("/api/chat/history/g-1").json()
        assert history["messageCount"] == 2
        assert [m["role"] for m in history["messages"]] == ["user", "assistant"]
        assert history["messages"][0]["content"] == "What is photosynthesis?"
        assert "g-1" in guest_store.conversations

    @pytest.mark.api
    def test_guest_history_is_bounded(self, client, guest_store, mock_ai):
        for i in range(30):
            send(client, f"question {i}", "g-long")

        conversation = guest_store.conversations.get(conversation_service.memory_key(None, "g-long"))
        assert len(conversation.messages) == conversation_service.GUEST_HISTORY_LIMIT
        assert conversation.messages[-1].role == "assistant"

    @pytest.mark.api
    def test_guest_conversation_list(self, client, mock_ai):
        send(client, "First topic question", "g-a")
        send(client, "Second topic question", "g-b")

        data = client.get("/api/chat/conversations").json()
        assert data["total"] == 2
        assert data["conversations"][0]["id"] == "g-b"
        assert data["conversations"][1]["title"] == "First topic question"
        assert data["conversations"][0]["lastMessageRole"] == "assistant"

    @pytest.mark.api
    def test_unknown_conversation_is_empty(self, client):
        data = client.get("/api/chat/history/never-used").json()
        assert data["messages"] == []
        assert data["messageCount"] == 0


class TestAuthenticatedChat:
    """Authenticated conversations are persisted"""

    @pytest.mark.api
    def test_conversation_created_on_first_message(self, client, db, test_user, auth_headers, mock_ai):
        mock_ai.return_value = "Hello there!"

        response = send(client, "Hi, can you help me study for my biology exam tomorrow?", "c-1", auth_headers)
        assert response.status_code == 200

        conversation = db.query(Conversation).filter(Conversation.id == "c-1").first()
        assert conversation is not None
        assert conversation.user_id == test_user.id
        assert conversation.message_count == 2
        assert conversation.title == "Hi, can you help me study for my biology exam tomo..."

        activities = db.query(StudyActivity).filter(StudyActivity.user_id == test_user.id).all()
        assert len(activities) == 1
        assert activities[0].activity_type == "chat_message"
        assert activities[0].points == 5

    @pytest.mark.api
    def test_voice_message_worth_more_points(self, client, db, test_user, auth_headers, mock_ai):
        response = client.post(
            "/api/chat/voice",
            json={"transcript": "explain gravity", "conversationId": "v-1"},
            headers=auth_headers
        )
        assert response.status_code == 200

        activity = db.query(StudyActivity).filter(StudyActivity.user_id == test_user.id).one()
        assert activity.activity_type == "voice_chat"
        assert activity.points == 7
        prompt = mock_ai.call_args[0][0]
        assert conversation_service.VOICE_NOTE in prompt

    @pytest.mark.integration
    def test_two_message_history(self, client, db, test_user, auth_headers, mock_ai):
        """Two exchanges give four messages in order and a count of 4"""
        mock_ai.side_effect = ["Reply one", "Reply two"]

        send(client, "First", "c-2", auth_headers)
        send(client, "Second", "c-2", auth_headers)

        history = client.get("/api/chat/history/c-2", headers=auth_headers).json()
        assert [m["content"] for m in history["messages"]] == ["First", "Reply one", "Second", "Reply two"]

        conversation = db.query(Conversation).filter(Conversation.id == "c-2").one()
        assert conversation.message_count == 4

        prompt = mock_ai.call_args[0][0]
        assert "User: First" in prompt
        assert "Assistant: Reply one" in prompt

    @pytest.mark.api
    def test_clear_history_is_idempotent(self, client, db, test_user, auth_headers, mock_ai):
        send(client, "Remember this", "c-3", auth_headers)

        first = client.delete("/api/chat/history/c-3", headers=auth_headers)
        second = client.delete("/api/chat/history/c-3", headers=auth_headers)
        assert first.status_code == 200
        assert second.status_code == 200

        assert db.query(Conversation).filter(Conversation.id == "c-3").first() is None
        assert db.query(Message).filter(Message.conversation_id == "c-3").count() == 0
        assert client.get("/api/chat/history/c-3", headers=auth_headers).json()["messages"] == []

    @pytest.mark.api
    def test_other_users_history_not_visible(self, client, auth_headers, mock_ai):
        send(client, "Private question", "c-4", auth_headers)

        guest_view = client.get("/api/chat/history/c-4").json()
        assert guest_view["messages"] == []


class TestFallbackReplies:
    """Provider trouble never fails a chat request"""

    @pytest.mark.api
    @pytest.mark.parametrize("error", [
        AIQuotaError("quota exceeded"),
        AIAuthError("invalid api key"),
        AITimeoutError("no reply within 10 seconds"),
    ])
    def test_provider_error_gives_fallback(self, client, mock_ai, error):
        mock_ai.side_effect = error

        response = send(client, "Help!", "f-1", personality="casual")
        assert response.status_code == 200
        data = response.json()
        assert data["isFallback"] is True
        assert data["message"].startswith(conversation_service.FALLBACK_RESPONSES[Personality.CASUAL])

    @pytest.mark.unit
    def test_slow_provider_is_abandoned(self, mock_openai):
        """A reply slower than the bounded wait becomes a fallback"""
        import threading

        release = threading.Event()

        def slow_completion(*args, **kwargs):
            release.wait(5)
            return mock_openai.chat.completions.create.return_value

        mock_openai.chat.completions.create.side_effect = slow_completion
        with patch.object(conversation_service, "CHAT_RESPONSE_TIMEOUT", 0.1):
            text, is_fallback = conversation_service.generate_reply("prompt", Personality.PATIENT)
        release.set()

        assert is_fallback is True
        assert text == conversation_service.fallback_response(Personality.PATIENT)

    @pytest.mark.unit
    def test_unknown_personality_uses_friendly(self):
        assert conversation_service.normalize_personality("grumpy") == Personality.FRIENDLY
        assert conversation_service.normalize_personality(None) == Personality.FRIENDLY


class TestDegradedWrites:
    """A failed commit moves the conversation to memory under the owner's key"""

    @pytest.mark.integration
    def test_failed_commit_keeps_conversation_in_memory(
        self, client, db, guest_store, test_user, auth_headers, mock_ai, failing_commit
    ):
        mock_ai.return_value = "Still here"

        response = send(client, "Will this be saved?", "d-1", auth_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Still here"

        key = conversation_service.memory_key(test_user.id, "d-1")
        stored = guest_store.conversations.get(key)
        assert stored is not None
        assert stored.owner_id == test_user.id
        assert len(stored.messages) == 2

        assert degradation_log.count == 1
        event = degradation_log.events()[0]
        assert event.resource_kind == "conversation"
        assert event.record_id == "d-1"

    @pytest.mark.integration
    def test_degraded_conversation_is_listed_and_continued(
        self, client, db, guest_store, test_user, auth_headers, mock_ai
    ):
        guest_store.conversations.set(
            conversation_service.memory_key(test_user.id, "d-2"),
            GuestConversation(
                id="d-2",
                owner_id=test_user.id,
                title="Stranded thread",
                messages=[
                    GuestMessage("user", "Earlier question"),
                    GuestMessage("assistant", "Earlier answer"),
                ]
            )
        )
        send(client, "Saved thread", "c-5", auth_headers)

        listing = client.get("/api/chat/conversations", headers=auth_headers).json()
        assert {c["id"] for c in listing["conversations"]} == {"c-5", "d-2"}

        send(client, "Follow up", "d-2", auth_headers)
        history = client.get("/api/chat/history/d-2", headers=auth_headers).json()
        assert history["messageCount"] == 4
        assert db.query(Conversation).filter(Conversation.id == "d-2").first() is None

    @pytest.mark.integration
    def test_degraded_thread_hidden_from_guests(self, client, guest_store, test_user):
        guest_store.conversations.set(
            conversation_service.memory_key(test_user.id, "d-3"),
            GuestConversation(id="d-3", owner_id=test_user.id, messages=[GuestMessage("user", "secret")])
        )

        assert client.get("/api/chat/conversations").json()["total"] == 0
        assert client.get("/api/chat/history/d-3").json()["messages"] == []

    @pytest.mark.integration
    def test_guest_cannot_address_degraded_thread_by_owner_prefix(
        self, client, guest_store, test_user, mock_ai
    ):
        guest_store.conversations.set(
            conversation_service.memory_key(test_user.id, "d-9"),
            GuestConversation(
                id="d-9",
                owner_id=test_user.id,
                messages=[GuestMessage("user", "my private question")]
            )
        )
        crafted_id = f"{test_user.id}:d-9"

        assert client.get(f"/api/chat/history/{crafted_id}").json()["messages"] == []

        send(client, "let me in", crafted_id)
        prompt = mock_ai.call_args[0][0]
        assert "my private question" not in prompt

        degraded = guest_store.conversations.get(conversation_service.memory_key(test_user.id, "d-9"))
        assert [m.content for m in degraded.messages] == ["my private question"]

    @pytest.mark.unit
    def test_lookup_rejects_record_owned_by_someone_else(self, guest_store, test_user):
        guest_store.conversations.set(
            conversation_service.memory_key(None, "shared"),
            GuestConversation(id="shared", owner_id=test_user.id)
        )
        assert conversation_service.load_history(None, guest_store, None, "shared") == []

    @pytest.mark.integration
    def test_clear_survives_failed_commit(
        self, client, db, guest_store, test_user, auth_headers, failing_commit
    ):
        db.add(Conversation(id="c-9", user_id=test_user.id, title="Doomed"))
        db.flush()
        guest_store.conversations.set(
            conversation_service.memory_key(test_user.id, "c-9"),
            GuestConversation(id="c-9", owner_id=test_user.id, messages=[GuestMessage("user", "hi")])
        )

        response = client.delete("/api/chat/history/c-9", headers=auth_headers)
        assert response.status_code == 200
        assert guest_store.conversations.get(conversation_service.memory_key(test_user.id, "c-9")) is None
        assert degradation_log.count == 1
        assert degradation_log.events()[0].record_id == "c-9"


class TestPromptBuilding:

    @pytest.mark.unit
    def test_prompt_keeps_last_ten_messages(self):
        history = [("user", f"message {i}") for i in range(15)]
        prompt = conversation_service.build_prompt(Personality.FRIENDLY, history, "message 14")

        assert "message 4\n" not in prompt
        assert "User: message 5" in prompt
        assert prompt.endswith("Assistant:")

    @pytest.mark.unit
    def test_prompt_includes_context(self):
        prompt = conversation_service.build_prompt(
            Personality.PROFESSIONAL, [("user", "hi")], "hi", context="Chapter 3: Cells"
        )
        assert "Additional context: Chapter 3: Cells" in prompt
        assert conversation_service.PERSONALITY_PROMPTS[Personality.PROFESSIONAL] in prompt

"""
Conversation Manager.

Chat threads are created lazily on the first message to a conversation id.
Authenticated threads live in the database; guest threads live in the
GuestStore. A thread whose database write failed is copied to the GuestStore
under the owner's key and served from there afterwards.

`send_message` never raises for provider trouble: a timeout or provider
error is answered with a personality-specific canned reply.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from studybuddy.models.guest import GuestConversation, GuestMessage
from studybuddy.models.models import (
    ActivityType,
    Conversation,
    Message,
    MessageRole,
    Personality,
    User,
    isoformat,
)
from studybuddy.services.activity_service import (
    CHAT_MESSAGE_POINTS,
    VOICE_CHAT_POINTS,
    build_activity,
)
from studybuddy.services.ai_service import AIServiceError, ai_service
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

CHAT_RESPONSE_TIMEOUT = float(os.getenv("CHAT_RESPONSE_TIMEOUT", "10"))
GUEST_HISTORY_LIMIT = int(os.getenv("GUEST_HISTORY_LIMIT", "50"))
PROMPT_HISTORY_MESSAGES = 10
TITLE_LENGTH = 50
PREVIEW_LENGTH = 100

PERSONALITY_PROMPTS = {
    Personality.FRIENDLY: (
        "You are a friendly and encouraging AI study buddy. Be warm, supportive, and use "
        "emojis appropriately. Always encourage the student and make learning fun."
    ),
    Personality.PROFESSIONAL: (
        "You are a professional and formal AI tutor. Provide clear, structured explanations "
        "with proper academic language. Be thorough and precise in your responses."
    ),
    Personality.CASUAL: (
        "You are a casual, Gen Z AI study buddy. Use modern slang, be relatable, and make "
        "learning feel like chatting with a friend. Keep it real and engaging!"
    ),
    Personality.MOTIVATIONAL: (
        "You are a motivational AI coach. Be energetic, inspiring, and push the student to "
        "excel. Use motivational language and help build confidence."
    ),
    Personality.PATIENT: (
        "You are a patient and calm AI tutor. Take time to explain concepts slowly and "
        "clearly. Be understanding if the student struggles and provide gentle guidance."
    ),
    Personality.ENTHUSIASTIC: (
        "You are an enthusiastic and energetic AI teacher. Show excitement about every "
        "topic, use exclamation points, and make everything sound amazing and interesting!"
    ),
}

FALLBACK_RESPONSES = {
    Personality.FRIENDLY: (
        "I'm sorry, I'm having some technical difficulties right now, but I'm here to help! 😊 "
        "Could you please try asking your question again in a moment?"
    ),
    Personality.PROFESSIONAL: (
        "I apologize, but I'm currently experiencing technical issues. Please try your request "
        "again shortly, and I'll be happy to assist you with your studies."
    ),
    Personality.CASUAL: (
        "Oops! Something went wrong on my end 😅 Give me a sec and try again - "
        "I'll be right back to help you out!"
    ),
    Personality.MOTIVATIONAL: (
        "Don't worry! Even the best systems need a moment to recharge! 💪 "
        "Try again in a moment and let's crush those study goals together!"
    ),
    Personality.PATIENT: (
        "I understand this might be frustrating, but I'm experiencing some technical "
        "difficulties. Please be patient and try again in a moment. I'm here to help you learn."
    ),
    Personality.ENTHUSIASTIC: (
        "Oh no! My circuits got a bit tangled! 🤖✨ But don't let that stop your learning "
        "momentum! Try again in just a moment!"
    ),
}

FALLBACK_NOTE = "\n\n*Note: This is a fallback response due to temporary AI service issues.*"
VOICE_NOTE = "This message was received via voice input."


@dataclass
class ChatReply:
    message: str
    conversation_id: str
    timestamp: datetime
    is_fallback: bool = False


def normalize_personality(personality: Optional[str]) -> Personality:
    """Unknown or missing personalities fall back to friendly."""
    try:
        return Personality(personality)
    except ValueError:
        return Personality.FRIENDLY


def truncate(text: str, length: int) -> str:
    return text[:length] + ("..." if len(text) > length else "")


def fallback_response(personality: Personality) -> str:
    return FALLBACK_RESPONSES[personality] + FALLBACK_NOTE


def build_prompt(
    personality: Personality,
    history: List[tuple],
    message: str,
    context: str = "",
    voice: bool = False
) -> str:
    """
    Personality preamble, optional context, the last few turns and the new message.

    `history` is a list of (role, content) pairs, oldest first, already
    including the new user message.
    """
    sections = [PERSONALITY_PROMPTS[personality]]
    if voice:
        sections.append(VOICE_NOTE)
    if context:
        sections.append(f"Additional context: {context}")

    recent = history[-PROMPT_HISTORY_MESSAGES:]
    lines = [
        f"{'User' if role == MessageRole.USER.value else 'Assistant'}: {content}"
        for role, content in recent
    ]
    sections.append("Conversation history:\n" + "\n".join(lines))
    sections.append(f"User: {message}")
    sections.append("Assistant:")
    return "\n\n".join(sections)


def generate_reply(prompt: str, personality: Personality) -> tuple:
    """Return (text, is_fallback); provider failures become the canned reply."""
    try:
        return ai_service.generate_text(prompt, timeout=CHAT_RESPONSE_TIMEOUT), False
    except AIServiceError as e:
        logger.warning(f"Chat reply falling back ({type(e).__name__}): {e}")
        return fallback_response(personality), True


def memory_key(owner_id: Optional[str], conversation_id: str) -> Tuple[Optional[str], str]:
    """Guest threads sit under (None, id); degraded threads under (owner, id)."""
    return (owner_id, conversation_id)


def _memory_thread(store: GuestStore, owner_id: Optional[str], conversation_id: str) -> Optional[GuestConversation]:
    conversation = store.conversations.get(memory_key(owner_id, conversation_id))
    if conversation is None or conversation.owner_id != owner_id:
        return None
    return conversation


def _next_timestamp(after: datetime) -> datetime:
    now = datetime.utcnow()
    return now if now > after else after + timedelta(microseconds=1)


# ============================================================================
# OPERATIONS
# ============================================================================

def send_message(
    db: Session,
    store: GuestStore,
    user: Optional[User],
    conversation_id: str,
    text: str,
    personality: Optional[str] = None,
    context: str = "",
    voice: bool = False
) -> ChatReply:
    personality = normalize_personality(personality)

    if resolve_store(user) == StoreKind.PERSISTENT:
        user_id = user.id
        degraded = _memory_thread(store, user_id, conversation_id)
        if degraded is not None:
            return _send_in_memory(store, degraded, text, personality, context, voice)
        return _send_persistent(db, store, user_id, conversation_id, text, personality, context, voice)

    conversation = _memory_thread(store, None, conversation_id)
    if conversation is None:
        conversation = GuestConversation(id=conversation_id, personality=personality.value)
    return _send_in_memory(store, conversation, text, personality, context, voice)


def _send_in_memory(
    store: GuestStore,
    conversation: GuestConversation,
    text: str,
    personality: Personality,
    context: str,
    voice: bool
) -> ChatReply:
    user_message = GuestMessage(role=MessageRole.USER.value, content=text)
    conversation.messages.append(user_message)
    if conversation.title is None and conversation.owner_id is not None:
        conversation.title = truncate(text, TITLE_LENGTH)

    history = [(m.role, m.content) for m in conversation.messages]
    reply, is_fallback = generate_reply(build_prompt(personality, history, text, context, voice), personality)

    assistant_message = GuestMessage(
        role=MessageRole.ASSISTANT.value,
        content=reply,
        timestamp=_next_timestamp(user_message.timestamp),
        metadata={"fallback": True} if is_fallback else {}
    )
    conversation.messages.append(assistant_message)
    if conversation.owner_id is None:
        conversation.messages = conversation.messages[-GUEST_HISTORY_LIMIT:]
    store.conversations.set(memory_key(conversation.owner_id, conversation.id), conversation)

    return ChatReply(reply, conversation.id, assistant_message.timestamp, is_fallback)


def _send_persistent(
    db: Session,
    store: GuestStore,
    user_id: str,
    conversation_id: str,
    text: str,
    personality: Personality,
    context: str,
    voice: bool
) -> ChatReply:
    conversation = db.query(Conversation).filter(
        Conversation.id == conversation_id,
        Conversation.user_id == user_id
    ).first()

    previous = []
    if conversation is None:
        conversation = Conversation(
            id=conversation_id,
            user_id=user_id,
            personality=personality.value,
            title=truncate(text, TITLE_LENGTH),
            message_count=0
        )
    else:
        previous = [(m.role, m.content, m.created_at, m.meta) for m in conversation.messages]

    sent_at = datetime.utcnow()
    history = [(role, content) for role, content, _, _ in previous] + [(MessageRole.USER.value, text)]
    reply, is_fallback = generate_reply(build_prompt(personality, history, text, context, voice), personality)
    replied_at = _next_timestamp(sent_at)
    reply_meta = {"fallback": True} if is_fallback else {}

    conversation.message_count = (conversation.message_count or 0) + 2
    conversation.last_message_at = replied_at
    user_message = Message(
        conversation_id=conversation_id,
        role=MessageRole.USER.value,
        content=text,
        created_at=sent_at
    )
    assistant_message = Message(
        conversation_id=conversation_id,
        role=MessageRole.ASSISTANT.value,
        content=reply,
        meta=reply_meta,
        created_at=replied_at
    )
    activity = build_activity(
        user_id,
        ActivityType.VOICE_CHAT if voice else ActivityType.CHAT_MESSAGE,
        points=VOICE_CHAT_POINTS if voice else CHAT_MESSAGE_POINTS,
        details={
            "messageLength": len(text),
            "responseLength": len(reply),
            "personality": personality.value
        }
    )

    error = persist(db, conversation, user_message, assistant_message, activity)
    if error:
        title = truncate(history[0][1], TITLE_LENGTH)
        messages = [GuestMessage(role, content, created_at, meta or {}) for role, content, created_at, meta in previous]
        messages.append(GuestMessage(MessageRole.USER.value, text, sent_at))
        messages.append(GuestMessage(MessageRole.ASSISTANT.value, reply, replied_at, reply_meta))
        store.conversations.set(
            memory_key(user_id, conversation_id),
            GuestConversation(
                id=conversation_id,
                owner_id=user_id,
                personality=personality.value,
                title=title,
                messages=messages,
                created_at=sent_at
            )
        )
        report_degraded("conversation", conversation_id, user_id, error)

    return ChatReply(reply, conversation_id, replied_at, is_fallback)


def load_history(db: Session, store: GuestStore, user: Optional[User], conversation_id: str) -> List[dict]:
    """Messages oldest first; an unknown conversation is just empty."""
    owner_id = user.id if user is not None else None

    conversation = _memory_thread(store, owner_id, conversation_id)
    if conversation is not None:
        return [m.to_dict() for m in conversation.messages]

    if resolve_store(user) == StoreKind.EPHEMERAL:
        return []

    messages = db.query(Message).join(Conversation).filter(
        Conversation.id == conversation_id,
        Conversation.user_id == owner_id
    ).order_by(Message.created_at.asc()).all()
    return [m.to_dict() for m in messages]


def clear_history(db: Session, store: GuestStore, user: Optional[User], conversation_id: str) -> None:
    """Delete the thread from whichever store holds it. Idempotent."""
    owner_id = user.id if user is not None else None
    store.conversations.delete(memory_key(owner_id, conversation_id))

    if resolve_store(user) == StoreKind.EPHEMERAL:
        return

    conversation = db.query(Conversation).filter(
        Conversation.id == conversation_id,
        Conversation.user_id == owner_id
    ).first()
    if conversation is not None:
        # delete-orphan cascade removes the messages before the thread
        error = discard(db, conversation)
        if error:
            report_degraded("conversation", conversation_id, owner_id, error)
            return
        logger.info(f"Cleared conversation {conversation_id} for user {owner_id}")


def _summary(conversation_id, title, personality, messages, last_message_at) -> dict:
    last = messages[-1] if messages else None
    return {
        "id": conversation_id,
        "title": title,
        "personality": personality,
        "messageCount": len(messages),
        "lastMessageAt": isoformat(last_message_at),
        "lastMessage": truncate(last.content, PREVIEW_LENGTH) if last else "No messages yet",
        "lastMessageRole": last.role if last else None,
    }


def list_conversations(db: Session, store: GuestStore, user: Optional[User]) -> List[dict]:
    """Threads ordered by last message, most recent first, with a preview."""
    if resolve_store(user) == StoreKind.EPHEMERAL:
        guest_threads = sorted(
            store.conversations.owned_by(None),
            key=lambda c: c.last_message_at,
            reverse=True
        )
        summaries = []
        for conversation in guest_threads:
            first_user = next(
                (m.content for m in conversation.messages if m.role == MessageRole.USER.value),
                "New conversation"
            )
            summaries.append(_summary(
                conversation.id,
                truncate(first_user, TITLE_LENGTH),
                conversation.personality,
                conversation.messages,
                conversation.last_message_at
            ))
        return summaries

    user_id = user.id
    stored = db.query(Conversation).filter(Conversation.user_id == user_id).all()
    merged = reconcile_list(
        stored,
        store.conversations.owned_by(user_id),
        sort_key=lambda c: c.last_message_at or c.created_at or datetime.min
    )
    return [
        _summary(c.id, c.title, c.personality, list(c.messages), c.last_message_at)
        for c in merged
    ]

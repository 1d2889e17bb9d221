"""
AI Chat Router

Tutoring chat with a selectable personality. Works for guests (memory) and
authenticated users (database). Provider trouble never fails a request:
the reply degrades to a canned fallback message.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
from pydantic import BaseModel, Field
import logging

logger = logging.getLogger(__name__)

from studybuddy.database import get_db
from studybuddy.models.models import User, isoformat
from studybuddy.dependencies.auth import get_current_user_optional
from studybuddy.services import conversation_service
from studybuddy.utils.guest_store import GuestStore, get_guest_store

router = APIRouter(prefix="/api/chat", tags=["chat"])


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1, alias="conversationId")
    personality: Optional[str] = None
    context: str = ""

    class Config:
        populate_by_name = True


class VoiceChatRequest(BaseModel):
    transcript: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1, alias="conversationId")
    personality: Optional[str] = None

    class Config:
        populate_by_name = True


def _reply_payload(reply: conversation_service.ChatReply) -> dict:
    return {
        "message": reply.message,
        "conversationId": reply.conversation_id,
        "timestamp": isoformat(reply.timestamp),
        "isFallback": reply.is_fallback,
    }


@router.post("/message")
def send_message(
    request: ChatRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Send a message and get the assistant's reply.

    The conversation is created on its first message; its title is the
    first 50 characters of that message.
    """
    reply = conversation_service.send_message(
        db, store, current_user,
        conversation_id=request.conversation_id,
        text=request.message,
        personality=request.personality,
        context=request.context
    )
    return _reply_payload(reply)


@router.post("/voice")
def send_voice_message(
    request: VoiceChatRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """
    Same flow as /message for a speech-to-text transcript; worth more points.
    """
    reply = conversation_service.send_message(
        db, store, current_user,
        conversation_id=request.conversation_id,
        text=request.transcript,
        personality=request.personality,
        voice=True
    )
    return _reply_payload(reply)


@router.get("/history/{conversation_id}")
def get_history(
    conversation_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    """Messages oldest first; unknown conversations return an empty list."""
    messages = conversation_service.load_history(db, store, current_user, conversation_id)
    return {
        "conversationId": conversation_id,
        "messages": messages,
        "messageCount": len(messages),
    }


@router.delete("/history/{conversation_id}")
def clear_history(
    conversation_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    conversation_service.clear_history(db, store, current_user, conversation_id)
    return {
        "message": "Conversation history cleared",
        "conversationId": conversation_id,
    }


@router.get("/conversations")
def list_conversations(
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
    store: GuestStore = Depends(get_guest_store)
):
    conversations = conversation_service.list_conversations(db, store, current_user)
    return {
        "conversations": conversations,
        "total": len(conversations),
    }

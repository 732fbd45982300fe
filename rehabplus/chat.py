# rehabplus/chat.py
"""Conversation and message storage shared by the REST router and the socket server."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import CRUDError, NotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)

TYPING_TTL_SECONDS = 5


def ordered_pair(a: int, b: int):
    return (a, b) if a < b else (b, a)


def get_conversation(db: Session, conversation_id: int) -> Optional[models.ChatConversation]:
    return db.get(models.ChatConversation, conversation_id)


def get_participant_conversation(db: Session, conversation_id: int, user_id: int) -> models.ChatConversation:
    conversation = get_conversation(db, conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    if user_id not in (conversation.user1_id, conversation.user2_id):
        raise PermissionDeniedError("Not a participant in this conversation")
    return conversation


def get_or_create_conversation(db: Session, user_id: int, other_user_id: int) -> models.ChatConversation:
    """One conversation per unordered pair of users"""
    if user_id == other_user_id:
        raise CRUDError("Cannot start a conversation with yourself")
    other = db.get(models.User, other_user_id)
    if not other or not other.active:
        raise NotFoundError("User not found")
    user1_id, user2_id = ordered_pair(user_id, other_user_id)
    query = db.query(models.ChatConversation).filter_by(user1_id=user1_id, user2_id=user2_id)
    conversation = query.first()
    if conversation:
        return conversation
    conversation = models.ChatConversation(user1_id=user1_id, user2_id=user2_id)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by the other participant
        db.rollback()
        return query.one()
    db.refresh(conversation)
    return conversation


def message_to_dict(message: models.ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "recipient_id": message.recipient_id,
        "message": message.message,
        "read_at": message.read_at.isoformat() if message.read_at else None,
        "created_at": message.created_at.isoformat() if message.created_at else None,
        "is_read": message.read_at is not None,
    }


def list_conversations(db: Session, user_id: int) -> List[Dict[str, Any]]:
    conversations = db.query(models.ChatConversation).filter(
        or_(models.ChatConversation.user1_id == user_id, models.ChatConversation.user2_id == user_id)
    ).order_by(models.ChatConversation.last_message_at.desc(), models.ChatConversation.id.desc()).all()
    results = []
    for conv in conversations:
        other = db.get(models.User, conv.other_user_id(user_id))
        last = db.query(models.ChatMessage).filter(models.ChatMessage.conversation_id == conv.id).order_by(
            models.ChatMessage.created_at.desc(), models.ChatMessage.id.desc()).first()
        unread = db.query(func.count(models.ChatMessage.id)).filter(
            models.ChatMessage.conversation_id == conv.id,
            models.ChatMessage.recipient_id == user_id,
            models.ChatMessage.read_at.is_(None),
        ).scalar()
        results.append({
            "id": conv.id,
            "other_user": {
                "id": other.id, "name": other.full_name, "email": other.email, "role": other.role.value,
            } if other else None,
            "last_message": last.message if last else None,
            "last_message_at": conv.last_message_at.isoformat() if conv.last_message_at else None,
            "unread_count": unread,
        })
    return results


def list_messages(db: Session, conversation_id: int, user_id: int, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    """Messages oldest first; marks the caller's unread messages as read"""
    get_participant_conversation(db, conversation_id, user_id)
    limit = max(1, min(limit, 200))
    newest = db.query(models.ChatMessage).filter(models.ChatMessage.conversation_id == conversation_id).order_by(
        models.ChatMessage.created_at.desc(), models.ChatMessage.id.desc()).offset(max(0, offset)).limit(limit).all()
    mark_read(db, conversation_id, user_id)
    return [message_to_dict(m) for m in reversed(newest)]


def send_message(db: Session, sender_id: int, recipient_id: int, text: str,
                 conversation_id: Optional[int] = None) -> models.ChatMessage:
    text = (text or "").strip()
    if not text:
        raise CRUDError("Message cannot be empty")
    if conversation_id:
        conversation = get_participant_conversation(db, conversation_id, sender_id)
        if recipient_id not in (conversation.user1_id, conversation.user2_id) or recipient_id == sender_id:
            raise CRUDError("Recipient is not part of this conversation")
    else:
        conversation = get_or_create_conversation(db, sender_id, recipient_id)
    now = datetime.now()
    message = models.ChatMessage(conversation_id=conversation.id, sender_id=sender_id, recipient_id=recipient_id,
                                 message=text, created_at=now)
    conversation.last_message_at = now
    db.add(message)
    db.query(models.ChatTypingStatus).filter_by(conversation_id=conversation.id, user_id=sender_id).delete()
    db.commit()
    db.refresh(message)
    return message


def mark_read(db: Session, conversation_id: int, user_id: int) -> int:
    updated = db.query(models.ChatMessage).filter(
        models.ChatMessage.conversation_id == conversation_id,
        models.ChatMessage.recipient_id == user_id,
        models.ChatMessage.read_at.is_(None),
    ).update({models.ChatMessage.read_at: datetime.now()}, synchronize_session=False)
    db.commit()
    return updated


def delete_conversation(db: Session, conversation_id: int, user_id: int) -> None:
    conversation = get_participant_conversation(db, conversation_id, user_id)
    db.query(models.ChatTypingStatus).filter_by(conversation_id=conversation.id).delete()
    db.query(models.ChatMessage).filter_by(conversation_id=conversation.id).delete()
    db.delete(conversation)
    db.commit()


def search_users(db: Session, user_id: int, search: Optional[str] = None) -> List[Dict[str, Any]]:
    query = db.query(models.User).filter(models.User.id != user_id, models.User.active.is_(True))
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(models.User.first_name.ilike(term), models.User.last_name.ilike(term),
                                 models.User.email.ilike(term)))
    return [
        {"id": u.id, "name": u.full_name, "email": u.email, "role": u.role.value, "clinic_id": u.clinic_id}
        for u in query.order_by(models.User.first_name, models.User.last_name).limit(50)
    ]


def set_typing(db: Session, conversation_id: int, user_id: int, is_typing: bool) -> None:
    get_participant_conversation(db, conversation_id, user_id)
    row = db.query(models.ChatTypingStatus).filter_by(conversation_id=conversation_id, user_id=user_id).first()
    if is_typing:
        if row:
            row.last_typing_at = datetime.now()
        else:
            db.add(models.ChatTypingStatus(conversation_id=conversation_id, user_id=user_id, last_typing_at=datetime.now()))
    elif row:
        db.delete(row)
    db.commit()


def typing_users(db: Session, conversation_id: int, user_id: int, now: Optional[datetime] = None) -> List[int]:
    """Other participants who typed within the last few seconds"""
    get_participant_conversation(db, conversation_id, user_id)
    cutoff = (now or datetime.now()) - timedelta(seconds=TYPING_TTL_SECONDS)
    return [
        row.user_id
        for row in db.query(models.ChatTypingStatus).filter(
            models.ChatTypingStatus.conversation_id == conversation_id,
            models.ChatTypingStatus.user_id != user_id,
            models.ChatTypingStatus.last_typing_at >= cutoff,
        )
    ]

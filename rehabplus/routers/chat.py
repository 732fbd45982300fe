# rehabplus/routers/chat.py
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import chat, models, schemas, security
from ..database import get_db
from ..services.chat_server import online_users, sio, user_room

router = APIRouter(
    prefix="/chat",
    tags=["Chat"],
    dependencies=[Depends(security.get_current_user)],
)


@router.get("/conversations")
def read_conversations(db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return chat.list_conversations(db, current_user.id)


@router.get("/messages/{conversation_id}")
def read_messages(
    conversation_id: int,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return chat.list_messages(db, conversation_id, current_user.id, limit=limit, offset=offset)


@router.post("/messages")
async def post_message(
    payload: schemas.ChatMessageCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    message = chat.send_message(db, current_user.id, payload.recipient_id, payload.message,
                                conversation_id=payload.conversation_id)
    data = chat.message_to_dict(message)
    if payload.recipient_id in online_users:
        await sio.emit("new_message", data, room=user_room(payload.recipient_id))
    return {"success": True, "message": data}


@router.post("/conversation")
def open_conversation(
    payload: schemas.ConversationCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    conversation = chat.get_or_create_conversation(db, current_user.id, payload.other_user_id)
    return {"success": True, "conversation_id": conversation.id}


@router.get("/users")
def read_chat_users(
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    return chat.search_users(db, current_user.id, search)


@router.delete("/conversation/{conversation_id}")
def delete_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    chat.delete_conversation(db, conversation_id, current_user.id)
    return {"success": True}


@router.post("/typing")
def update_typing(
    payload: schemas.TypingUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    chat.set_typing(db, payload.conversation_id, current_user.id, payload.is_typing)
    return {"success": True}


@router.get("/typing/{conversation_id}")
def read_typing(conversation_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    return {"typing_users": chat.typing_users(db, conversation_id, current_user.id)}

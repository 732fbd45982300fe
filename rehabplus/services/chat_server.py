# rehabplus/services/chat_server.py
"""Socket.IO server for two-party chat between staff users.

Identity comes from the ``authToken`` cookie sent with the handshake, or a
token passed in the ``auth`` payload or the ``authenticate`` event; a bare
``userId`` is never trusted. Once authenticated, the server keeps an
in-process map of user id to socket id and places every socket in a
``user:<id>`` room.
"""
import logging
from typing import Any, Dict, Optional

import socketio
from starlette.requests import cookie_parser

from .. import chat, models, security
from ..config import get_settings
from ..database import SessionLocal
from ..errors import CRUDError

logger = logging.getLogger(__name__)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=get_settings().cors_origins,
    ping_timeout=60,
    ping_interval=25,
)

# user_id -> sid
online_users: Dict[int, str] = {}


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def handshake_token(environ: Dict[str, Any], auth: Optional[Dict[str, Any]] = None) -> Optional[str]:
    if isinstance(auth, dict) and auth.get("token"):
        return auth["token"]
    return cookie_parser(environ.get("HTTP_COOKIE", "")).get(security.AUTH_COOKIE_NAME)


def _resolve_user(db, handshake_user_id: Optional[int], data: Dict[str, Any]) -> Optional[models.User]:
    if data.get("token"):
        user = security.get_user_from_token(db, data["token"])
    elif handshake_user_id is not None:
        user = db.get(models.User, handshake_user_id)
        user = user if user and user.active else None
    else:
        return None
    claimed = data.get("userId")
    if user is not None and claimed is not None and str(claimed) != str(user.id):
        logger.warning(f"Socket claimed user {claimed} but is signed in as {user.id}")
        return None
    return user


async def _current_user_id(sid: str) -> Optional[int]:
    session = await sio.get_session(sid)
    return session.get("user_id") if session else None


@sio.event
async def connect(sid, environ, auth=None):
    token = handshake_token(environ, auth)
    if not token:
        logger.debug(f"Socket {sid} connected without credentials")
        return
    db = SessionLocal()
    try:
        user = security.get_user_from_token(db, token)
    finally:
        db.close()
    if user is not None:
        await sio.save_session(sid, {"handshake_user_id": user.id})
    logger.debug(f"Socket {sid} connected as {user.id if user else 'nobody'}")


@sio.event
async def authenticate(sid, data):
    data = data or {}
    session = await sio.get_session(sid) or {}
    db = SessionLocal()
    try:
        user = _resolve_user(db, session.get("handshake_user_id"), data)
        if user is None:
            await sio.emit("auth_error", {"message": "Authentication required"}, to=sid)
            return
        domain = data.get("domain") or "default"
        await sio.save_session(sid, {**session, "user_id": user.id, "role": user.role.value, "domain": domain})
        online_users[user.id] = sid
        await sio.enter_room(sid, user_room(user.id))
        await sio.enter_room(sid, f"domain:{domain}")
        logger.info(f"User {user.id} authenticated on socket {sid} from {domain}")

        await sio.emit("authenticated", {"userId": user.id, "connectedUsers": list(online_users)}, to=sid)
        await sio.emit("user_online", {"userId": user.id, "domain": domain})
        await sio.emit("conversations_loaded", chat.list_conversations(db, user.id), to=sid)
    finally:
        db.close()


@sio.event
async def send_message(sid, data):
    data = data or {}
    user_id = await _current_user_id(sid)
    if user_id is None:
        await sio.emit("error", {"message": "Not authenticated"}, to=sid)
        return
    db = SessionLocal()
    try:
        message = chat.send_message(
            db, user_id, int(data.get("recipientId") or 0), data.get("message") or "",
            conversation_id=data.get("conversationId"),
        )
        payload = chat.message_to_dict(message)
    except (CRUDError, TypeError, ValueError) as e:
        await sio.emit("error", {"message": getattr(e, "message", str(e))}, to=sid)
        return
    finally:
        db.close()

    await sio.emit("message_sent", payload, to=sid)
    if payload["recipient_id"] in online_users:
        await sio.emit("new_message", payload, room=user_room(payload["recipient_id"]))


@sio.event
async def mark_read(sid, data):
    data = data or {}
    user_id = await _current_user_id(sid)
    if user_id is None:
        await sio.emit("error", {"message": "Not authenticated"}, to=sid)
        return
    conversation_id = data.get("conversationId")
    db = SessionLocal()
    try:
        chat.get_participant_conversation(db, conversation_id, user_id)
        count = chat.mark_read(db, conversation_id, user_id)
    except CRUDError as e:
        await sio.emit("error", {"message": e.message}, to=sid)
        return
    finally:
        db.close()
    await sio.emit("messages_marked_read", {"conversationId": conversation_id, "count": count}, to=sid)


@sio.event
async def typing(sid, data):
    data = data or {}
    user_id = await _current_user_id(sid)
    recipient_id = data.get("recipientId")
    if user_id is None or recipient_id is None:
        return
    await sio.emit(
        "user_typing",
        {"userId": user_id, "isTyping": bool(data.get("isTyping"))},
        room=user_room(int(recipient_id)),
    )


@sio.event
async def disconnect(sid):
    user_id = None
    for uid, user_sid in list(online_users.items()):
        if user_sid == sid:
            user_id = uid
            del online_users[uid]
    if user_id is not None:
        logger.info(f"User {user_id} disconnected")
        await sio.emit("user_offline", {"userId": user_id})

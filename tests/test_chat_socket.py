# tests/test_chat_socket.py
import pytest

from rehabplus import security
from rehabplus.services import chat_server


class FakeSocketServer:
    """Records what the handlers emit instead of talking to real sockets"""

    def __init__(self):
        self.sessions = {}
        self.rooms = {}
        self.emitted = []

    async def emit(self, event, data=None, to=None, room=None, **kwargs):
        self.emitted.append((event, data, to or room))

    async def get_session(self, sid):
        return self.sessions.setdefault(sid, {})

    async def save_session(self, sid, session):
        self.sessions[sid] = session

    async def enter_room(self, sid, room):
        self.rooms.setdefault(sid, set()).add(room)

    def events(self, name):
        return [(data, target) for event, data, target in self.emitted if event == name]


@pytest.fixture
def sockets(monkeypatch):
    fake = FakeSocketServer()
    for name in ("emit", "get_session", "save_session", "enter_room"):
        monkeypatch.setattr(chat_server.sio, name, getattr(fake, name))
    monkeypatch.setattr(chat_server, "online_users", {})
    return fake


def _cookie(user):
    return {"HTTP_COOKIE": f"theme=dark; {security.AUTH_COOKIE_NAME}={security.create_user_token(user)}"}


async def _sign_in(sid, user):
    await chat_server.connect(sid, _cookie(user))
    await chat_server.authenticate(sid, {"domain": "clinic"})


async def test_authenticate_from_handshake_cookie(sockets, admin_user):
    await _sign_in("sid-a", admin_user)

    assert chat_server.online_users == {admin_user.id: "sid-a"}
    assert sockets.rooms["sid-a"] == {f"user:{admin_user.id}", "domain:clinic"}
    assert sockets.events("authenticated") == [({"userId": admin_user.id, "connectedUsers": [admin_user.id]}, "sid-a")]
    assert sockets.events("user_online") == [({"userId": admin_user.id, "domain": "clinic"}, None)]
    assert sockets.events("conversations_loaded") == [([], "sid-a")]


async def test_token_in_auth_payload(sockets, pt_user):
    await chat_server.connect("sid-p", {}, {"token": security.create_user_token(pt_user)})
    await chat_server.authenticate("sid-p", {})
    assert chat_server.online_users == {pt_user.id: "sid-p"}


async def test_bare_user_id_is_not_trusted(sockets, admin_user):
    await chat_server.connect("sid-x", {})
    await chat_server.authenticate("sid-x", {"userId": admin_user.id})

    assert sockets.events("auth_error") == [({"message": "Authentication required"}, "sid-x")]
    assert chat_server.online_users == {}
    assert sockets.events("conversations_loaded") == []


async def test_claiming_someone_else_is_rejected(sockets, admin_user, pt_user):
    await chat_server.connect("sid-p", _cookie(pt_user))
    await chat_server.authenticate("sid-p", {"userId": admin_user.id})
    assert [data for data, _ in sockets.events("auth_error")] == [{"message": "Authentication required"}]
    assert chat_server.online_users == {}


async def test_invalid_token_is_rejected(sockets):
    await chat_server.connect("sid-x", {"HTTP_COOKIE": f"{security.AUTH_COOKIE_NAME}=not-a-token"})
    await chat_server.authenticate("sid-x", {"token": "still-not-a-token"})
    assert len(sockets.events("auth_error")) == 1


async def test_send_message_reaches_online_recipient(sockets, admin_user, pt_user):
    await _sign_in("sid-a", admin_user)
    await _sign_in("sid-p", pt_user)

    await chat_server.send_message("sid-a", {"recipientId": pt_user.id, "message": " Lunch? "})

    [(sent, target)] = sockets.events("message_sent")
    assert target == "sid-a"
    assert sent["message"] == "Lunch?"
    assert sockets.events("new_message") == [(sent, f"user:{pt_user.id}")]

    await chat_server.mark_read("sid-p", {"conversationId": sent["conversation_id"]})
    assert sockets.events("messages_marked_read") == [
        ({"conversationId": sent["conversation_id"], "count": 1}, "sid-p")]


async def test_offline_recipient_only_gets_the_stored_message(sockets, admin_user, pt_user):
    await _sign_in("sid-a", admin_user)
    await chat_server.send_message("sid-a", {"recipientId": pt_user.id, "message": "See you tomorrow"})
    assert len(sockets.events("message_sent")) == 1
    assert sockets.events("new_message") == []


async def test_unauthenticated_socket_cannot_send(sockets, pt_user):
    await chat_server.connect("sid-x", {})
    await chat_server.send_message("sid-x", {"recipientId": pt_user.id, "message": "hi"})
    assert sockets.events("error") == [({"message": "Not authenticated"}, "sid-x")]


async def test_empty_message_is_an_error(sockets, admin_user, pt_user):
    await _sign_in("sid-a", admin_user)
    await chat_server.send_message("sid-a", {"recipientId": pt_user.id, "message": "   "})
    assert sockets.events("error") == [({"message": "Message cannot be empty"}, "sid-a")]


async def test_mark_read_outside_conversation(sockets, admin_user, pt_user, clinic_user):
    await _sign_in("sid-a", admin_user)
    await chat_server.send_message("sid-a", {"recipientId": pt_user.id, "message": "Private"})
    conversation_id = sockets.events("message_sent")[0][0]["conversation_id"]

    await _sign_in("sid-c", clinic_user)
    await chat_server.mark_read("sid-c", {"conversationId": conversation_id})
    assert [target for _, target in sockets.events("error")] == ["sid-c"]


async def test_typing_goes_to_the_recipient_room(sockets, admin_user, pt_user):
    await _sign_in("sid-a", admin_user)
    await chat_server.typing("sid-a", {"recipientId": pt_user.id, "isTyping": True})
    assert sockets.events("user_typing") == [({"userId": admin_user.id, "isTyping": True}, f"user:{pt_user.id}")]


async def test_disconnect_clears_presence(sockets, admin_user, pt_user):
    await _sign_in("sid-a", admin_user)
    await _sign_in("sid-p", pt_user)

    await chat_server.disconnect("sid-a")
    assert chat_server.online_users == {pt_user.id: "sid-p"}
    assert sockets.events("user_offline") == [({"userId": admin_user.id}, None)]

    # a socket that never authenticated leaves no trace
    await chat_server.disconnect("sid-unknown")
    assert len(sockets.events("user_offline")) == 1

# tests/test_chat.py
from rehabplus import chat


def _open(client, headers, other_user_id):
    return client.post("/api/chat/conversation", headers=headers, json={"otherUserId": other_user_id})


def test_conversation_is_reused_for_the_same_pair(client, admin_user, pt_user, admin_headers, pt_headers):
    first = _open(client, admin_headers, pt_user.id).json()["conversation_id"]
    assert _open(client, pt_headers, admin_user.id).json()["conversation_id"] == first
    assert _open(client, admin_headers, admin_user.id).status_code == 400


def test_messages_are_marked_read_by_the_recipient(client, admin_user, pt_user, admin_headers, pt_headers):
    conversation_id = _open(client, admin_headers, pt_user.id).json()["conversation_id"]
    sent = client.post("/api/chat/messages", headers=admin_headers, json={
        "conversationId": conversation_id, "recipientId": pt_user.id, "message": "  Room 2 is free  ",
    }).json()
    assert sent["message"]["message"] == "Room 2 is free"
    assert sent["message"]["is_read"] is False

    inbox = client.get("/api/chat/conversations", headers=pt_headers).json()
    assert inbox[0]["unread_count"] == 1
    assert inbox[0]["other_user"]["id"] == admin_user.id

    messages = client.get(f"/api/chat/messages/{conversation_id}", headers=pt_headers).json()
    assert [m["message"] for m in messages] == ["Room 2 is free"]
    assert client.get("/api/chat/conversations", headers=pt_headers).json()[0]["unread_count"] == 0


def test_messages_are_returned_oldest_first(db, admin_user, pt_user):
    for text in ("one", "two", "three"):
        chat.send_message(db, admin_user.id, pt_user.id, text)
    conversation = chat.get_or_create_conversation(db, admin_user.id, pt_user.id)
    assert [m["message"] for m in chat.list_messages(db, conversation.id, pt_user.id, limit=2)] == ["two", "three"]


def test_outsiders_cannot_read_a_conversation(client, admin_user, pt_user, admin_headers, clinic_headers):
    conversation_id = _open(client, admin_headers, pt_user.id).json()["conversation_id"]
    assert client.get(f"/api/chat/messages/{conversation_id}", headers=clinic_headers).status_code == 403
    assert client.delete(f"/api/chat/conversation/{conversation_id}", headers=clinic_headers).status_code == 403


def test_typing_indicator(client, admin_user, pt_user, admin_headers, pt_headers):
    conversation_id = _open(client, admin_headers, pt_user.id).json()["conversation_id"]
    client.post("/api/chat/typing", headers=admin_headers, json={"conversationId": conversation_id, "isTyping": True})
    assert client.get(f"/api/chat/typing/{conversation_id}", headers=pt_headers).json() == {"typing_users": [admin_user.id]}
    # own typing is not reported back
    assert client.get(f"/api/chat/typing/{conversation_id}", headers=admin_headers).json() == {"typing_users": []}

    client.post("/api/chat/typing", headers=admin_headers, json={"conversationId": conversation_id, "isTyping": False})
    assert client.get(f"/api/chat/typing/{conversation_id}", headers=pt_headers).json() == {"typing_users": []}


def test_user_search_excludes_self(client, admin_user, pt_user, clinic_user, admin_headers):
    users = client.get("/api/chat/users", headers=admin_headers).json()
    assert admin_user.id not in [u["id"] for u in users]
    found = client.get("/api/chat/users", params={"search": "front"}, headers=admin_headers).json()
    assert [u["id"] for u in found] == [clinic_user.id]

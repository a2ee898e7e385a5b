import logging
from datetime import date

import pytest

import app_config
import models_sqlalchemy as models
from auth_security import TokenClaims
from cache_layer import CacheService
from chat_service import ChatService, sanitize_file_name, system_message_text
from conftest import book, create_property, stay


@pytest.fixture()
def conversation(client, owner, guest):
    listing = create_property(client, owner["headers"])
    book(client, guest["headers"], listing["id"], *stay())
    return client.get("/api/conversations", headers=guest["headers"]).json()["data"][0]


def _send(client, headers, conversation_id, content):
    return client.post(f"/api/conversations/{conversation_id}/messages", json={"content": content}, headers=headers)


def _unread(client, headers, conversation_id):
    r = client.get(f"/api/conversations/{conversation_id}/unread-count", headers=headers)
    assert r.status_code == 200
    return r.json()["data"]["unread_count"]


# ---------- CONVERSATIONS ----------

def test_open_conversation_reuses_existing(client, guest, conversation):
    r = client.post("/api/conversations", json={"booking_id": conversation["booking_id"]}, headers=guest["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["id"] == conversation["id"]


def test_open_conversation_creates_when_missing(client, guest, conversation, db_session):
    db_session.query(models.Message).delete()
    db_session.query(models.Conversation).delete()
    db_session.commit()

    r = client.post("/api/conversations", json={"booking_id": conversation["booking_id"]}, headers=guest["headers"])
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["booking_id"] == conversation["booking_id"]
    assert data["unread_count"] == 0
    assert data["last_message"] is None


def test_open_conversation_for_foreign_booking(client, other_guest, conversation):
    r = client.post(
        "/api/conversations", json={"booking_id": conversation["booking_id"]}, headers=other_guest["headers"]
    )
    assert r.status_code == 403


def test_get_or_create_is_idempotent(db_session, cache, conversation):
    chat = ChatService(db_session, cache)
    booking = db_session.get(models.Booking, conversation["booking_id"])
    first, created_first = chat.get_or_create_for_booking(booking)
    second, created_second = chat.get_or_create_for_booking(booking)
    assert first.id == second.id == conversation["id"]
    assert not created_first and not created_second
    assert db_session.query(models.Conversation).count() == 1


def test_conversation_detail_access(client, owner, guest, other_guest, admin, conversation):
    url = f"/api/conversations/{conversation['id']}"
    r = client.get(url, headers=owner["headers"])
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["client"]["full_name"] == "Gina Guest"
    assert data["owner"]["full_name"] == "Olivia Owner"
    assert data["booking_start_date"] == stay()[0]
    assert client.get(url, headers=admin["headers"]).status_code == 200
    assert client.get(url, headers=other_guest["headers"]).status_code == 403
    assert client.get("/api/conversations/missing", headers=owner["headers"]).status_code == 404


def test_conversation_list_role_filter(client, owner, guest, conversation):
    assert len(client.get("/api/conversations", headers=owner["headers"]).json()["data"]) == 1
    r = client.get("/api/conversations", params={"role": "client"}, headers=owner["headers"])
    assert r.json()["data"] == []
    assert r.json()["pagination"]["total"] == 0


def test_admin_lists_every_conversation(client, admin, conversation):
    r = client.get("/api/conversations", headers=admin["headers"])
    assert [c["id"] for c in r.json()["data"]] == [conversation["id"]]


def test_conversation_list_cache_invalidated_by_new_message(client, owner, conversation):
    client.get("/api/conversations", headers=owner["headers"])
    assert client.get("/api/conversations", headers=owner["headers"]).headers["X-Cache-Status"] == "HIT"
    _send(client, owner["headers"], conversation["id"], "Bonjour !")
    r = client.get("/api/conversations", headers=owner["headers"])
    assert r.headers["X-Cache-Status"] == "MISS"
    assert r.json()["data"][0]["last_message"]["content"] == "Bonjour !"


# ---------- MESSAGES ----------

def test_send_message_updates_conversation(client, guest, conversation):
    r = _send(client, guest["headers"], conversation["id"], "  Is parking included?  ")
    assert r.status_code == 201
    message = r.json()["data"]
    assert message["content"] == "Is parking included?"
    assert message["message_type"] == "user"
    assert message["is_read"] is False

    detail = client.get(f"/api/conversations/{conversation['id']}", headers=guest["headers"]).json()["data"]
    assert detail["last_message"]["id"] == message["id"]
    assert detail["last_message_at"] is not None


def test_message_content_validation(client, guest, conversation):
    assert _send(client, guest["headers"], conversation["id"], "   ").status_code == 400
    assert _send(client, guest["headers"], conversation["id"], "x" * 5001).status_code == 400
    assert _send(client, guest["headers"], conversation["id"], "x" * 5000).status_code == 201


def test_only_participants_can_send(client, other_guest, admin, conversation):
    assert _send(client, other_guest["headers"], conversation["id"], "hello").status_code == 403
    assert _send(client, admin["headers"], conversation["id"], "hello").status_code == 403


def test_messages_are_paginated_chronologically(client, guest, owner, conversation):
    for text in ("one", "two", "three"):
        _send(client, guest["headers"], conversation["id"], text)

    url = f"/api/conversations/{conversation['id']}/messages"
    everything = client.get(url, headers=owner["headers"]).json()
    contents = [m["content"] for m in everything["data"]]
    assert contents[-3:] == ["one", "two", "three"]
    assert everything["pagination"]["total"] == 4

    latest = client.get(url, params={"page": 1, "limit": 2}, headers=owner["headers"]).json()
    assert [m["content"] for m in latest["data"]] == ["two", "three"]
    assert latest["pagination"]["pages"] == 2


def test_legacy_message_routes_match(client, guest, conversation):
    r = client.post(
        "/api/messages", json={"conversation_id": conversation["id"], "content": "via legacy"}, headers=guest["headers"]
    )
    assert r.status_code == 201

    legacy = client.get("/api/messages", params={"conversation_id": conversation["id"]}, headers=guest["headers"])
    nested = client.get(f"/api/conversations/{conversation['id']}/messages", headers=guest["headers"])
    assert legacy.json() == nested.json()
    assert legacy.json()["data"][-1]["content"] == "via legacy"


def test_unread_count_and_mark_read(client, owner, guest, conversation):
    # the booking request itself is narrated on the client's behalf
    assert _unread(client, owner["headers"], conversation["id"]) == 1
    assert _unread(client, guest["headers"], conversation["id"]) == 0

    sent = _send(client, guest["headers"], conversation["id"], "Arriving at 6pm").json()["data"]
    assert _unread(client, owner["headers"], conversation["id"]) == 2

    r = client.put(f"/api/messages/{sent['id']}/read", headers=owner["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["is_read"] is True
    assert _unread(client, owner["headers"], conversation["id"]) == 1


def test_sender_marking_own_message_is_noop(client, owner, guest, conversation):
    sent = _send(client, guest["headers"], conversation["id"], "Hello").json()["data"]
    r = client.put(f"/api/messages/{sent['id']}/read", headers=guest["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["is_read"] is False
    assert _unread(client, owner["headers"], conversation["id"]) == 2


def test_mark_read_access(client, other_guest, admin, guest, conversation):
    sent = _send(client, guest["headers"], conversation["id"], "Hello").json()["data"]
    assert client.put(f"/api/messages/{sent['id']}/read", headers=other_guest["headers"]).status_code == 403
    r = client.put(f"/api/messages/{sent['id']}/read", headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["is_read"] is False
    assert client.put("/api/messages/missing/read", headers=admin["headers"]).status_code == 404


# ---------- FILES ----------

def test_upload_file_message(client, guest, conversation, supabase):
    r = client.post(
        f"/api/conversations/{conversation['id']}/upload-file",
        files={"file": ("passport scan (1).pdf", b"%PDF-1.4 fake", "application/pdf")},
        headers=guest["headers"],
    )
    assert r.status_code == 201
    message = r.json()["data"]
    assert message["file_name"] == "passport scan (1).pdf"
    assert message["file_size"] == len(b"%PDF-1.4 fake")
    assert message["content"] == "passport scan (1).pdf"

    [(bucket, path)] = list(supabase.objects)
    assert bucket == app_config.MESSAGE_FILES_BUCKET
    assert path.startswith(f"conversations/{conversation['id']}/{message['id']}-")
    assert path.endswith("-passport_scan__1_.pdf")
    assert message["file_url"].endswith(path)


def test_upload_file_with_caption(client, guest, conversation):
    r = client.post(
        f"/api/conversations/{conversation['id']}/upload-file",
        files={"file": ("plan.png", b"png-bytes", "image/png")},
        data={"caption": "Here is the floor plan"},
        headers=guest["headers"],
    )
    assert r.json()["data"]["content"] == "Here is the floor plan"


def test_upload_file_too_large(client, guest, conversation, monkeypatch):
    monkeypatch.setattr(app_config, "MAX_MESSAGE_FILE_BYTES", 8)
    r = client.post(
        f"/api/conversations/{conversation['id']}/upload-file",
        files={"file": ("big.bin", b"0123456789", "application/octet-stream")},
        headers=guest["headers"],
    )
    assert r.status_code == 400


def test_upload_file_blank_caption_stores_nothing(client, guest, conversation, supabase):
    r = client.post(
        f"/api/conversations/{conversation['id']}/upload-file",
        files={"file": ("plan.png", b"png-bytes", "image/png")},
        data={"caption": "   "},
        headers=guest["headers"],
    )
    assert r.status_code == 400
    assert supabase.objects == {}


# ---------- SYSTEM MESSAGES ----------

def test_system_message_copy():
    assert system_message_text("declined", "Villa Azur") == 'Votre réservation pour "Villa Azur" a été refusée.'
    assert system_message_text("accepted") == "Votre réservation a été acceptée."


def test_sanitize_file_name():
    assert sanitize_file_name("my file/../x.pdf") == "my_file_.._x.pdf"


def test_system_message_without_conversation_is_skipped(db_session, client, guest, owner, caplog):
    listing = create_property(client, owner["headers"])
    booking = models.Booking(
        property_id=listing["id"], client_id=guest["user"]["id"], start_date=date(2030, 1, 1),
        end_date=date(2030, 1, 2), nights=1, guests=1, total_price=100, status="pending",
    )
    db_session.add(booking)
    db_session.commit()
    chat = ChatService(db_session, CacheService(None))
    with caplog.at_level(logging.WARNING):
        assert chat.post_system_message(booking, "accepted") is None
    assert "No conversation" in caplog.text


def test_list_conversations_for_admin_by_service(db_session, cache, admin, conversation):
    chat = ChatService(db_session, cache)
    claims = TokenClaims(user_id=admin["user"]["id"], email="admin@example.com", role="admin")
    items, pagination = chat.list_conversations(claims)
    assert [c.id for c in items] == [conversation["id"]]
    assert pagination["total"] == 1

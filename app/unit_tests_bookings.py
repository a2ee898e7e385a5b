import logging
from datetime import date, timedelta

import pytest

import models_sqlalchemy as models
from booking_notifier import BookingNotifier
from booking_service import can_transition, quote
from chat_service import ChatService
from conftest import book, create_property, stay


@pytest.fixture()
def listing(client, owner):
    return create_property(client, owner["headers"], price_per_night=100)


def _days(offset):
    return (date.today() + timedelta(days=offset)).isoformat()


# ---------- CREATION ----------

def test_booking_price_and_status(client, guest, listing):
    start, end = stay(offset_days=10, nights=5)
    r = book(client, guest["headers"], listing["id"], start, end)
    assert r.status_code == 201
    booking = r.json()["data"]
    assert booking["nights"] == 5
    assert booking["total_price"] == 500
    assert booking["status"] == "pending"
    assert booking["client_id"] == guest["user"]["id"]
    assert booking["property"]["title"] == "Sea View Apartment"


def test_overlapping_booking_is_rejected(client, guest, other_guest, listing):
    assert book(client, guest["headers"], listing["id"], _days(10), _days(15)).status_code == 201
    r = book(client, other_guest["headers"], listing["id"], _days(12), _days(18))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "BUSINESS_RULE_ERROR"

    r = book(client, other_guest["headers"], listing["id"], _days(5), _days(20))
    assert r.status_code == 400


def test_back_to_back_bookings_are_allowed(client, guest, other_guest, listing):
    assert book(client, guest["headers"], listing["id"], _days(10), _days(15)).status_code == 201
    assert book(client, other_guest["headers"], listing["id"], _days(15), _days(17)).status_code == 201
    assert book(client, other_guest["headers"], listing["id"], _days(8), _days(10)).status_code == 201


def test_booking_date_validation(client, guest, listing):
    r = book(client, guest["headers"], listing["id"], _days(-2), _days(3))
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    r = book(client, guest["headers"], listing["id"], _days(5), _days(5))
    assert r.status_code == 400

    r = book(client, guest["headers"], listing["id"], _days(5), _days(7), guests=0)
    assert r.status_code == 400


def test_booking_unknown_property(client, guest):
    r = book(client, guest["headers"], "missing-property", _days(5), _days(7))
    assert r.status_code == 404


def test_only_clients_can_book(client, owner, listing):
    r = book(client, owner["headers"], listing["id"], _days(5), _days(7))
    assert r.status_code == 403


def test_blocked_dates_make_range_unavailable(client, owner, guest, listing):
    r = client.post(
        f"/api/properties/{listing['id']}/blocked-dates",
        json={"dates": [_days(12)]},
        headers=owner["headers"],
    )
    assert r.status_code == 200
    assert book(client, guest["headers"], listing["id"], _days(10), _days(15)).status_code == 400
    # checkout day is not occupied
    assert book(client, guest["headers"], listing["id"], _days(8), _days(12)).status_code == 201


# ---------- AVAILABILITY LEDGER ----------

def test_blocked_dates_drop_malformed_entries(client, owner, listing, db_session):
    r = client.post(
        f"/api/properties/{listing['id']}/blocked-dates",
        json={"dates": ["2024-13-40", "2024-06-01", "June 2nd", 20240603]},
        headers=owner["headers"],
    )
    assert r.status_code == 200
    assert r.json()["data"]["dates"] == ["2024-06-01"]
    stored = db_session.query(models.BlockedDate).all()
    assert [b.blocked_date.isoformat() for b in stored] == ["2024-06-01"]


def test_blocked_dates_tolerate_surrounding_whitespace(client, owner, listing):
    r = client.post(
        f"/api/properties/{listing['id']}/blocked-dates",
        json={"dates": [" 2024-06-01 ", "\t2024-06-02\n"]},
        headers=owner["headers"],
    )
    assert r.status_code == 200
    assert r.json()["data"]["dates"] == ["2024-06-01", "2024-06-02"]


def test_blocked_dates_are_idempotent(client, owner, listing):
    url = f"/api/properties/{listing['id']}/blocked-dates"
    client.post(url, json={"dates": ["2024-06-01", "2024-06-02"]}, headers=owner["headers"])
    client.post(url, json={"dates": ["2024-06-02", "2024-06-03"]}, headers=owner["headers"])
    r = client.get(url, headers=owner["headers"])
    assert r.json()["data"]["dates"] == ["2024-06-01", "2024-06-02", "2024-06-03"]

    client.request("DELETE", url, json={"dates": ["2024-06-02", "2024-07-01"]}, headers=owner["headers"])
    client.request("DELETE", url, json={"dates": ["2024-06-02"]}, headers=owner["headers"])
    r = client.get(url, headers=owner["headers"])
    assert r.json()["data"]["dates"] == ["2024-06-01", "2024-06-03"]


def test_blocked_dates_single_value_is_accepted(client, owner, listing):
    r = client.post(
        f"/api/properties/{listing['id']}/blocked-dates",
        json={"dates": "2024-06-05"},
        headers=owner["headers"],
    )
    assert r.json()["data"]["dates"] == ["2024-06-05"]


def test_blocked_dates_with_nothing_valid(client, owner, listing):
    r = client.post(
        f"/api/properties/{listing['id']}/blocked-dates",
        json={"dates": ["not-a-date"]},
        headers=owner["headers"],
    )
    assert r.status_code == 400


def test_blocked_dates_restricted_to_owner_or_admin(client, other_owner, admin, listing):
    url = f"/api/properties/{listing['id']}/blocked-dates"
    assert client.post(url, json={"dates": ["2024-06-01"]}, headers=other_owner["headers"]).status_code == 403
    assert client.post(url, json={"dates": ["2024-06-01"]}, headers=admin["headers"]).status_code == 200


# ---------- LIFECYCLE ----------

def test_transition_table():
    assert can_transition("pending", "accepted")
    assert can_transition("accepted", "cancelled")
    assert not can_transition("accepted", "declined")
    assert not can_transition("declined", "accepted")
    assert not can_transition("cancelled", "pending")
    assert quote(5, 100) == 500


def test_status_update_requires_property_ownership(client, guest, other_owner, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "accepted"}, headers=other_owner["headers"])
    assert r.status_code == 403

    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "accepted"}, headers=guest["headers"])
    assert r.status_code == 403


def test_status_update_rejects_unknown_status(client, owner, guest, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "cancelled"}, headers=owner["headers"])
    assert r.status_code == 400


def test_accept_then_cancel_rules(client, owner, guest, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "accepted"}, headers=owner["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "accepted"

    r = client.put(f"/api/bookings/{booking['id']}/cancel", headers=guest["headers"])
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "BUSINESS_RULE_ERROR"

    r = client.put(f"/api/bookings/{booking['id']}/cancel", headers=owner["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "cancelled"


def test_client_cancels_pending_booking(client, guest, other_guest, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    assert client.put(f"/api/bookings/{booking['id']}/cancel", headers=other_guest["headers"]).status_code == 403
    r = client.put(f"/api/bookings/{booking['id']}/cancel", headers=guest["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "cancelled"


def test_declined_is_terminal(client, owner, guest, admin, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    client.put(f"/api/bookings/{booking['id']}/status", json={"status": "declined"}, headers=owner["headers"])

    r = client.put(f"/api/bookings/{booking['id']}/cancel", headers=admin["headers"])
    assert r.status_code == 400
    r = client.put(f"/api/bookings/{booking['id']}/status", json={"status": "accepted"}, headers=owner["headers"])
    assert r.status_code == 400
    assert client.get(f"/api/bookings/{booking['id']}", headers=guest["headers"]).json()["data"]["status"] == "declined"


def test_cancelled_booking_frees_dates(client, guest, other_guest, listing):
    start, end = stay()
    booking = book(client, guest["headers"], listing["id"], start, end).json()["data"]
    client.put(f"/api/bookings/{booking['id']}/cancel", headers=guest["headers"])
    assert book(client, other_guest["headers"], listing["id"], start, end).status_code == 201


def test_booking_visibility(client, owner, other_owner, guest, other_guest, admin, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    url = f"/api/bookings/{booking['id']}"
    assert client.get(url, headers=guest["headers"]).status_code == 200
    assert client.get(url, headers=owner["headers"]).status_code == 200
    assert client.get(url, headers=admin["headers"]).status_code == 200
    assert client.get(url, headers=other_guest["headers"]).status_code == 403
    assert client.get(url, headers=other_owner["headers"]).status_code == 403

    assert len(client.get("/api/bookings", headers=guest["headers"]).json()["data"]) == 1
    assert len(client.get("/api/bookings", headers=owner["headers"]).json()["data"]) == 1
    assert client.get("/api/bookings", headers=other_guest["headers"]).json()["data"] == []
    assert client.get("/api/bookings", headers=other_owner["headers"]).json()["data"] == []


def test_property_calendar_lists_active_bookings(client, owner, guest, listing):
    first = book(client, guest["headers"], listing["id"], _days(10), _days(12)).json()["data"]
    second = book(client, guest["headers"], listing["id"], _days(20), _days(22)).json()["data"]
    client.put(f"/api/bookings/{second['id']}/cancel", headers=guest["headers"])

    r = client.get(f"/api/properties/{listing['id']}/bookings")
    assert r.status_code == 200
    assert [b["id"] for b in r.json()["data"]] == [first["id"]]


def test_calendar_cache_invalidated_on_booking(client, guest, listing):
    url = f"/api/properties/{listing['id']}/bookings"
    assert client.get(url).json()["data"] == []
    assert client.get(url).headers["X-Cache-Status"] == "HIT"
    book(client, guest["headers"], listing["id"], *stay())
    r = client.get(url)
    assert r.headers["X-Cache-Status"] == "MISS"
    assert len(r.json()["data"]) == 1


# ---------- CHAT SIDE EFFECTS ----------

def test_booking_creation_opens_conversation(client, owner, guest, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    conversations = client.get("/api/conversations", headers=guest["headers"]).json()["data"]
    assert len(conversations) == 1
    conversation = conversations[0]
    assert conversation["booking_id"] == booking["id"]
    assert conversation["owner_id"] == owner["user"]["id"]
    assert conversation["property_title"] == "Sea View Apartment"
    last = conversation["last_message"]
    assert last["message_type"] == "system"
    assert last["sender_id"] == guest["user"]["id"]
    assert last["content"].startswith('Une nouvelle réservation pour "Sea View Apartment"')


def test_status_change_posts_owner_message(client, owner, guest, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    client.put(f"/api/bookings/{booking['id']}/status", json={"status": "accepted"}, headers=owner["headers"])
    conversation = client.get("/api/conversations", headers=guest["headers"]).json()["data"][0]
    last = conversation["last_message"]
    assert last["sender_id"] == owner["user"]["id"]
    assert last["content"] == 'Votre réservation pour "Sea View Apartment" a été acceptée.'


def test_client_cancellation_is_attributed_to_client(client, guest, listing):
    booking = book(client, guest["headers"], listing["id"], *stay()).json()["data"]
    client.put(f"/api/bookings/{booking['id']}/cancel", headers=guest["headers"])
    conversation = client.get("/api/conversations", headers=guest["headers"]).json()["data"][0]
    assert conversation["last_message"]["sender_id"] == guest["user"]["id"]
    assert "annulée" in conversation["last_message"]["content"]


def test_notification_failure_does_not_affect_booking(client, guest, listing, monkeypatch):
    def explode(self, *args, **kwargs):
        raise RuntimeError("chat is down")

    monkeypatch.setattr(ChatService, "post_system_message", explode)
    r = book(client, guest["headers"], listing["id"], *stay())
    assert r.status_code == 201
    assert client.get(f"/api/bookings/{r.json()['data']['id']}", headers=guest["headers"]).status_code == 200


def test_notifier_logs_missing_booking(session_factory, cache, caplog):
    notifier = BookingNotifier(session_factory, lambda fn, *args: fn(*args), cache)
    with caplog.at_level(logging.WARNING):
        notifier.booking_created("no-such-booking")
    assert "no-such-booking" in caplog.text

from datetime import timedelta

import models_sqlalchemy as models
from auth_security import TokenClaims, create_access_token
from conftest import auth_headers, create_property, create_property_dict, make_image_bytes, register


# ---------- AUTH TESTS ----------

def test_register_returns_user_and_token(client):
    r = client.post(
        "/api/auth/register",
        json={"full_name": "  Gina Guest ", "email": "gina@example.com", "password": "secret123"},
    )
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    user = body["data"]["user"]
    assert user["full_name"] == "Gina Guest"
    assert user["role"] == "client"
    assert user["is_verified"] is False
    assert "password_hash" not in user
    assert body["data"]["token"]


def test_register_duplicate_email_is_rejected(client, db_session):
    register(client, email="dup@example.com")
    r = client.post(
        "/api/auth/register",
        json={"full_name": "Again", "email": "DUP@example.com", "password": "secret123"},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"
    assert db_session.query(models.User).count() == 1


def test_register_cannot_claim_admin_role(client):
    r = client.post(
        "/api/auth/register",
        json={"full_name": "Mallory", "email": "mallory@example.com", "password": "secret123", "role": "admin"},
    )
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_register_short_password(client):
    r = client.post(
        "/api/auth/register",
        json={"full_name": "Shorty", "email": "short@example.com", "password": "123"},
    )
    assert r.status_code == 400


def test_login_success_and_failures(client):
    register(client, email="login@example.com", password="right-pass")

    r = client.post("/api/auth/login", json={"email": "login@example.com", "password": "right-pass"})
    assert r.status_code == 200
    assert r.json()["data"]["user"]["email"] == "login@example.com"

    wrong = client.post("/api/auth/login", json={"email": "login@example.com", "password": "nope-nope"})
    unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "right-pass"})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"] == "Invalid credentials"


def test_me_requires_token(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"

    r = client.get("/api/auth/me", headers=auth_headers("not-a-jwt"))
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Invalid token"


def test_me_with_expired_token(client, guest):
    claims = TokenClaims(user_id=guest["user"]["id"], email="guest@example.com", role="client")
    token = create_access_token(claims, expires_in=timedelta(seconds=-5))
    r = client.get("/api/auth/me", headers=auth_headers(token))
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "Token expired"


def test_read_and_update_profile(client, guest):
    r = client.get("/api/auth/me", headers=guest["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["email"] == "guest@example.com"

    r = client.put(
        "/api/auth/me",
        json={"phone": "+33 6 12 34 56 78", "id_document_front_url": "https://docs.example.com/front.png"},
        headers=guest["headers"],
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["phone"] == "+33 6 12 34 56 78"
    assert data["id_document_front_url"] == "https://docs.example.com/front.png"
    assert data["full_name"] == "Gina Guest"


def test_logout(client, guest):
    r = client.post("/api/auth/logout", headers=guest["headers"])
    assert r.status_code == 200
    assert r.json()["message"] == "Logged out successfully"


# ---------- PROPERTY TESTS ----------

def test_create_and_get_property(client, owner):
    prop = create_property(client, owner["headers"])
    assert prop["owner_id"] == owner["user"]["id"]
    assert prop["amenities"] == ["wifi", "parking"]
    assert prop["image_urls"] == []
    assert prop["furnished"] is True

    r = client.get(f"/api/properties/{prop['id']}")
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "Sea View Apartment"


def test_create_property_accepts_json_amenities(client, owner):
    prop = create_property(client, owner["headers"], amenities='["pool", "garden"]')
    assert prop["amenities"] == ["pool", "garden"]


def test_client_cannot_create_property(client, guest):
    r = client.post("/api/properties", data=create_property_dict(), headers=guest["headers"])
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "FORBIDDEN"


def test_create_property_invalid_payload(client, owner):
    r = client.post("/api/properties", data=create_property_dict(type="castle"), headers=owner["headers"])
    assert r.status_code == 400
    r = client.post("/api/properties", data=create_property_dict(price_per_night="-3"), headers=owner["headers"])
    assert r.status_code == 400


def test_create_property_rejects_too_many_images(client, owner):
    image = make_image_bytes(50, 50)
    files = [("images", (f"p{i}.png", image, "image/png")) for i in range(11)]
    r = client.post("/api/properties", data=create_property_dict(), files=files, headers=owner["headers"])
    assert r.status_code == 400
    assert "10 images" in r.json()["error"]["message"]


def test_get_missing_property(client):
    r = client.get("/api/properties/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {
        "success": False,
        "error": {"message": "Property not found", "code": "NOT_FOUND", "statusCode": 404},
    }


def test_list_properties_filters_and_pagination(client, owner):
    create_property(client, owner["headers"], title="Nice flat", city="Nice", price_per_night=80)
    create_property(client, owner["headers"], title="Nice villa", city="Nice", type="villa", price_per_night=300)
    create_property(client, owner["headers"], title="Lyon loft", city="Lyon", price_per_night=120, furnished="false")

    r = client.get("/api/properties", params={"city": "nice"})
    assert r.status_code == 200
    assert {p["title"] for p in r.json()["data"]} == {"Nice flat", "Nice villa"}

    r = client.get("/api/properties", params={"type": "villa"})
    assert [p["title"] for p in r.json()["data"]] == ["Nice villa"]

    r = client.get("/api/properties", params={"priceMin": 100, "priceMax": 200})
    assert [p["title"] for p in r.json()["data"]] == ["Lyon loft"]

    r = client.get("/api/properties", params={"furnished": "false"})
    assert [p["title"] for p in r.json()["data"]] == ["Lyon loft"]

    r = client.get("/api/properties", params={"page": 2, "limit": 2})
    body = r.json()
    assert len(body["data"]) == 1
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}


def test_list_properties_empty_has_one_page(client):
    body = client.get("/api/properties").json()
    assert body["data"] == []
    assert body["pagination"]["pages"] == 1


def test_list_properties_rejects_oversized_limit(client):
    r = client.get("/api/properties", params={"limit": 500})
    assert r.status_code == 400


def test_property_list_is_cached_and_invalidated(client, owner):
    create_property(client, owner["headers"], title="First")
    r1 = client.get("/api/properties")
    r2 = client.get("/api/properties")
    assert r1.headers["X-Cache-Status"] == "MISS"
    assert r2.headers["X-Cache-Status"] == "HIT"
    assert r1.json() == r2.json()

    create_property(client, owner["headers"], title="Second")
    r3 = client.get("/api/properties")
    assert r3.headers["X-Cache-Status"] == "MISS"
    assert len(r3.json()["data"]) == 2


def test_owner_listing(client, owner, other_owner, guest):
    create_property(client, owner["headers"], title="Mine")
    create_property(client, other_owner["headers"], title="Theirs")
    r = client.get(f"/api/properties/owner/{owner['user']['id']}", headers=guest["headers"])
    assert r.status_code == 200
    assert [p["title"] for p in r.json()["data"]] == ["Mine"]
    assert client.get(f"/api/properties/owner/{owner['user']['id']}").status_code == 401


def test_update_property_permissions(client, owner, other_owner, admin):
    prop = create_property(client, owner["headers"])

    r = client.put(f"/api/properties/{prop['id']}", json={"title": "Hijacked"}, headers=other_owner["headers"])
    assert r.status_code == 403

    r = client.put(
        f"/api/properties/{prop['id']}",
        json={"title": "Renovated", "amenities": ["wifi", "sauna"]},
        headers=owner["headers"],
    )
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "Renovated"
    assert r.json()["data"]["amenities"] == ["wifi", "sauna"]
    assert r.json()["data"]["city"] == "Nice"

    r = client.put(f"/api/properties/{prop['id']}", json={"price_per_night": 150}, headers=admin["headers"])
    assert r.status_code == 200
    assert r.json()["data"]["price_per_night"] == 150


def test_update_refreshes_cached_detail(client, owner):
    prop = create_property(client, owner["headers"])
    client.get(f"/api/properties/{prop['id']}")
    client.put(f"/api/properties/{prop['id']}", json={"title": "Updated"}, headers=owner["headers"])
    r = client.get(f"/api/properties/{prop['id']}")
    assert r.headers["X-Cache-Status"] == "MISS"
    assert r.json()["data"]["title"] == "Updated"


def test_delete_property_removes_images(client, owner, supabase):
    prop = create_property(client, owner["headers"], images=[make_image_bytes()])
    assert len(supabase.objects) == 3

    r = client.delete(f"/api/properties/{prop['id']}", headers=owner["headers"])
    assert r.status_code == 200
    assert supabase.objects == {}
    assert len(supabase.removed) == 3
    assert client.get(f"/api/properties/{prop['id']}").status_code == 404


def test_delete_property_forbidden_for_other_owner(client, owner, other_owner):
    prop = create_property(client, owner["headers"])
    r = client.delete(f"/api/properties/{prop['id']}", headers=other_owner["headers"])
    assert r.status_code == 403


# ---------- PLATFORM TESTS ----------

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["uptime"] >= 0
    assert "timestamp" in body
    assert "X-Request-ID" in r.headers


def test_request_id_is_echoed(client):
    r = client.get("/", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"


def test_unknown_route_returns_envelope(client):
    r = client.get("/api/nowhere")
    assert r.status_code == 404
    error = r.json()["error"]
    assert error["code"] == "NOT_FOUND"
    assert "/api/nowhere" in error["message"]

from datetime import timedelta

import jwt
import pytest

import app_config
from app_errors import UnauthorizedException, ValidationException
from auth_security import TokenClaims, create_access_token, decode_access_token, hash_password, verify_password

CLAIMS = TokenClaims(user_id="user-1", email="user@example.com", role="owner")


def test_password_hash_roundtrip():
    hashed = hash_password("correct horse")
    assert hashed.startswith("$2b$10$")
    assert hashed != hash_password("correct horse")
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_password_over_72_bytes_is_rejected():
    with pytest.raises(ValidationException):
        hash_password("é" * 40)


def test_token_roundtrip():
    token = create_access_token(CLAIMS, secret="s3cret")
    assert decode_access_token(token, secret="s3cret") == CLAIMS
    payload = jwt.decode(token, "s3cret", algorithms=["HS256"])
    assert payload["userId"] == "user-1"
    assert payload["exp"] - payload["iat"] == 7 * 24 * 3600


def test_expired_token():
    token = create_access_token(CLAIMS, secret="s3cret", expires_in=timedelta(seconds=-1))
    with pytest.raises(UnauthorizedException, match="Token expired"):
        decode_access_token(token, secret="s3cret")


def test_tampered_token():
    token = create_access_token(CLAIMS, secret="s3cret")
    with pytest.raises(UnauthorizedException, match="Invalid token"):
        decode_access_token(token, secret="other")
    with pytest.raises(UnauthorizedException, match="Invalid token"):
        decode_access_token("abc.def.ghi", secret="s3cret")


def test_token_without_role_is_rejected():
    token = jwt.encode({"userId": "u", "exp": 9999999999}, "s3cret", algorithm="HS256")
    with pytest.raises(UnauthorizedException):
        decode_access_token(token, secret="s3cret")


@pytest.mark.parametrize(
    "value, expected",
    [("7d", timedelta(days=7)), ("12h", timedelta(hours=12)), ("30m", timedelta(minutes=30)), ("45", timedelta(seconds=45))],
)
def test_parse_duration(value, expected):
    assert app_config.parse_duration(value) == expected


def test_parse_duration_rejects_garbage():
    with pytest.raises(app_config.ConfigurationError):
        app_config.parse_duration("one week")


def test_validate_config_reports_missing(monkeypatch):
    monkeypatch.setattr(app_config, "JWT_SECRET", "")
    monkeypatch.setattr(app_config, "SUPABASE_URL", "")
    with pytest.raises(app_config.ConfigurationError, match="JWT_SECRET, SUPABASE_URL"):
        app_config.validate_config()


def test_role_guard(client, guest):
    r = client.put("/api/properties/any", json={"title": "x"}, headers=guest["headers"])
    assert r.status_code == 403

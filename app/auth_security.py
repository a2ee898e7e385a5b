"""
Password hashing and stateless session tokens.

Tokens are signed HS256 JWTs carrying userId, email and role. There is no
revocation list; logging out is left to the client.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import jwt
from bcrypt import checkpw, gensalt, hashpw

import app_config
from app_errors import UnauthorizedException, ValidationException

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10
BCRYPT_MAX_BYTES = 72


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    role: str


def hash_password(raw_password: str) -> str:
    encoded = raw_password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValidationException("Password must not exceed 72 bytes")
    return hashpw(encoded, gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(raw_password: str, password_hash: str) -> bool:
    encoded = raw_password.encode("utf-8")
    if not password_hash or len(encoded) > BCRYPT_MAX_BYTES:
        return False
    return checkpw(encoded, password_hash.encode("utf-8"))


def create_access_token(claims: TokenClaims, secret: str = None, expires_in=None) -> str:
    now = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else app_config.parse_duration(app_config.JWT_EXPIRES_IN)
    payload = {
        "userId": claims.user_id,
        "email": claims.email,
        "role": claims.role,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, secret or app_config.JWT_SECRET, algorithm=app_config.JWT_ALGORITHM)


def decode_access_token(token: str, secret: str = None) -> TokenClaims:
    try:
        payload = jwt.decode(
            token,
            secret or app_config.JWT_SECRET,
            algorithms=[app_config.JWT_ALGORITHM],
            options={"require": ["exp", "userId", "role"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedException("Token expired")
    except jwt.InvalidTokenError as exc:
        logger.debug("Rejected token: %s", exc)
        raise UnauthorizedException("Invalid token")
    return TokenClaims(user_id=payload["userId"], email=payload.get("email", ""), role=payload["role"])

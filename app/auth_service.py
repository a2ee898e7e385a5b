import logging
from typing import Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

import models_sqlalchemy as models
import models_pydantic as schemas
from app_errors import NotFoundException, UnauthorizedException, ValidationException
from auth_security import TokenClaims, create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)


def issue_token(user: models.User) -> str:
    return create_access_token(TokenClaims(user_id=user.id, email=user.email, role=user.role))


class AuthService:

    def __init__(self, db: Session):
        self.db = db

    def _find_by_email(self, email: str):
        return self.db.query(models.User).filter(func.lower(models.User.email) == email.lower()).first()

    def register(self, payload: schemas.RegisterRequest) -> Tuple[models.User, str]:
        if self._find_by_email(payload.email):
            raise ValidationException("Email already registered")
        user = models.User(
            full_name=payload.full_name,
            email=payload.email.lower(),
            phone=payload.phone,
            password_hash=hash_password(payload.password),
            role=payload.role,
            is_verified=False,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        logger.info("Registered %s account %s", user.role, user.id)
        return user, issue_token(user)

    def login(self, email: str, password: str) -> Tuple[models.User, str]:
        user = self._find_by_email(email)
        # same answer for unknown email and wrong password
        if not user or not verify_password(password, user.password_hash):
            raise UnauthorizedException("Invalid credentials")
        return user, issue_token(user)

    def get_user(self, user_id: str) -> models.User:
        user = self.db.query(models.User).filter(models.User.id == user_id).first()
        if not user:
            raise NotFoundException("User not found")
        return user

    def update_profile(self, user_id: str, payload: schemas.ProfileUpdate) -> models.User:
        user = self.get_user(user_id)
        for field, value in payload.model_dump(exclude_unset=True).items():
            if field == "full_name" and value is None:
                continue
            setattr(user, field, value)
        self.db.commit()
        self.db.refresh(user)
        return user

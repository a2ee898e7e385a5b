from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

import app_config
import db_session
from app_errors import ForbiddenException, UnauthorizedException
from auth_security import TokenClaims, decode_access_token
from auth_service import AuthService
from availability_service import AvailabilityService
from booking_notifier import BookingNotifier
from booking_service import BookingService
from cache_layer import CacheService
from chat_service import ChatService
from image_pipeline import ImagePipeline
from property_service import PropertyService
from storage_adapter import ObjectStorage, get_object_storage

bearer_scheme = HTTPBearer(auto_error=False)


# ---------- Infrastructure ----------
def get_session_factory():
    return db_session.get_session_factory()


def get_db(session_factory=Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def _shared_cache() -> CacheService:
    return CacheService.from_url(app_config.REDIS_URL)


def get_cache() -> CacheService:
    return _shared_cache()


def get_storage() -> ObjectStorage:
    return get_object_storage()


def get_image_pipeline(storage: ObjectStorage = Depends(get_storage)) -> ImagePipeline:
    return ImagePipeline(storage)


# ---------- Auth ----------
def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenClaims:
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("Authentication token required")
    return decode_access_token(credentials.credentials)


def require_role(*roles: str):
    def checker(user: TokenClaims = Depends(get_current_user)) -> TokenClaims:
        if user.role not in roles:
            raise ForbiddenException("Insufficient permissions for this action")
        return user
    return checker


# ---------- Services ----------
def get_auth_service(db: Session = Depends(get_db)) -> AuthService:
    return AuthService(db)


def get_property_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    images: ImagePipeline = Depends(get_image_pipeline),
) -> PropertyService:
    return PropertyService(db, cache, images)


def get_availability_service(
    db: Session = Depends(get_db),
    properties: PropertyService = Depends(get_property_service),
) -> AvailabilityService:
    return AvailabilityService(db, properties)


def get_booking_notifier(
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
    cache: CacheService = Depends(get_cache),
) -> BookingNotifier:
    return BookingNotifier(session_factory, background_tasks.add_task, cache)


def get_booking_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    availability: AvailabilityService = Depends(get_availability_service),
    notifier: BookingNotifier = Depends(get_booking_notifier),
) -> BookingService:
    return BookingService(db, cache, availability, notifier)


def get_chat_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    storage: ObjectStorage = Depends(get_storage),
) -> ChatService:
    return ChatService(db, cache, storage)

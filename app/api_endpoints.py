import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Query, Request, Response, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

import app_config
import models_pydantic as schemas
from api_dependencies import (
    get_auth_service, get_availability_service, get_booking_service, get_cache, get_chat_service,
    get_current_user, get_image_pipeline, get_property_service, require_role,
)
from api_responses import calculate_pagination, error_body, paginated_response, success_response
from app_errors import AppError, ValidationException
from app_logging import configure_logging
from auth_security import TokenClaims
from auth_service import AuthService
from availability_service import AvailabilityService
from booking_service import BookingService
from cache_layer import CacheService, conversations_cache_key, request_cache_key
from chat_service import ChatService
from image_pipeline import ImagePipeline
from property_service import PropertyService
from rate_limits import limiter

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app_config.validate_config()
    logger.info("Rental booking API starting")
    yield
    logger.info("Rental booking API stopped")


app = FastAPI(title="Rental Booking API", lifespan=lifespan)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=app_config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# ---------- Error Handlers ----------
def _validation_message(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form"))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts) or "Invalid request"


@app.exception_handler(AppError)
async def handle_app_error(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code, exc.status_code))


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=error_body(_validation_message(exc.errors()), "VALIDATION_ERROR", 400))


@app.exception_handler(ValidationError)
async def handle_payload_validation(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content=error_body(_validation_message(exc.errors()), "VALIDATION_ERROR", 400))


@app.exception_handler(RateLimitExceeded)
def handle_rate_limit(request: Request, exc: RateLimitExceeded):
    message = f"Too many requests, limit is {exc.detail}"
    return JSONResponse(status_code=429, content=error_body(message, "RATE_LIMITED", 429))


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Route {request.method} {request.url.path} not found"
    else:
        message = str(exc.detail)
    code = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}.get(
        exc.status_code, "HTTP_ERROR"
    )
    return JSONResponse(status_code=exc.status_code, content=error_body(message, code, exc.status_code))


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error", "INTERNAL_ERROR", 500))


def _cached(response: Response, cache: CacheService, key: str, ttl: int, loader):
    payload, hit = cache.get_or_load(key, ttl, loader)
    response.headers["X-Cache-Status"] = "HIT" if hit else "MISS"
    return payload


# ---------- Health Endpoints ----------
@app.get("/")
@limiter.exempt
def root():
    return {"message": "Rental Booking API is running"}


@app.get("/health")
@limiter.exempt
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
    }


# ---------- Auth Endpoints ----------
@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
@limiter.limit(app_config.AUTH_RATE_LIMIT)
def register(request: Request, payload: schemas.RegisterRequest, auth: AuthService = Depends(get_auth_service)):
    user, token = auth.register(payload)
    data = schemas.AuthResponse(user=schemas.UserResponse.model_validate(user), token=token)
    return success_response(data, "User registered successfully")


@app.post("/api/auth/login")
@limiter.limit(app_config.AUTH_RATE_LIMIT)
def login(request: Request, payload: schemas.LoginRequest, auth: AuthService = Depends(get_auth_service)):
    user, token = auth.login(payload.email, payload.password)
    data = schemas.AuthResponse(user=schemas.UserResponse.model_validate(user), token=token)
    return success_response(data, "Login successful")


@app.get("/api/auth/me")
def read_profile(user: TokenClaims = Depends(get_current_user), auth: AuthService = Depends(get_auth_service)):
    return success_response(schemas.UserResponse.model_validate(auth.get_user(user.user_id)))


@app.put("/api/auth/me")
def update_profile(
    payload: schemas.ProfileUpdate,
    user: TokenClaims = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    updated = auth.update_profile(user.user_id, payload)
    return success_response(schemas.UserResponse.model_validate(updated), "Profile updated")


@app.post("/api/auth/logout")
def logout(user: TokenClaims = Depends(get_current_user)):
    # tokens are stateless, the client discards its copy
    return success_response(None, "Logged out successfully")


# ---------- Property Endpoints ----------
def _parse_amenities(raw: Optional[str]) -> List[str]:
    if not raw or not raw.strip():
        return []
    if raw.strip().startswith("["):
        try:
            value = json.loads(raw)
        except ValueError:
            raise ValidationException("amenities must be a JSON array or a comma separated list")
        if not isinstance(value, list):
            raise ValidationException("amenities must be a JSON array or a comma separated list")
        return [str(v) for v in value]
    return schemas.comma_string_to_list(raw)


def _read_images(uploads: Optional[List[UploadFile]]) -> List[bytes]:
    uploads = [u for u in uploads or [] if u.filename]
    if len(uploads) > app_config.MAX_PROPERTY_IMAGES:
        raise ValidationException(f"At most {app_config.MAX_PROPERTY_IMAGES} images are allowed")
    payloads = []
    for upload in uploads:
        if not (upload.content_type or "").startswith("image/"):
            raise ValidationException(f"{upload.filename} is not an image")
        data = upload.file.read()
        if len(data) > app_config.MAX_IMAGE_BYTES:
            raise ValidationException(f"{upload.filename} exceeds the 10MB limit")
        payloads.append(data)
    return payloads


@app.get("/api/properties")
@limiter.limit(app_config.SEARCH_RATE_LIMIT)
def list_properties(
    request: Request,
    response: Response,
    city: Optional[str] = None,
    type: Optional[schemas.PropertyType] = None,
    furnished: Optional[bool] = None,
    price_min: Optional[float] = Query(None, alias="priceMin", ge=0),
    price_max: Optional[float] = Query(None, alias="priceMax", ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    properties: PropertyService = Depends(get_property_service),
    cache: CacheService = Depends(get_cache),
):
    def load():
        items, total = properties.list_properties(city, type, furnished, price_min, price_max, page, limit)
        return paginated_response(
            [schemas.PropertyResponse.model_validate(p) for p in items],
            calculate_pagination(page, limit, total),
        )

    key = request_cache_key(request.url.path, request.query_params)
    return _cached(response, cache, key, app_config.PROPERTY_LIST_TTL, load)


@app.get("/api/properties/owner/{owner_id}")
def list_owner_properties(
    owner_id: str,
    user: TokenClaims = Depends(get_current_user),
    properties: PropertyService = Depends(get_property_service),
):
    items = properties.list_by_owner(owner_id)
    return success_response([schemas.PropertyResponse.model_validate(p) for p in items])


@app.get("/api/properties/{property_id}")
def get_property(
    property_id: str,
    request: Request,
    response: Response,
    properties: PropertyService = Depends(get_property_service),
    cache: CacheService = Depends(get_cache),
):
    # a miss on an unknown id raises before anything is cached
    def load():
        return success_response(schemas.PropertyResponse.model_validate(properties.get_property(property_id)))

    key = request_cache_key(request.url.path, request.query_params)
    return _cached(response, cache, key, app_config.PROPERTY_DETAIL_TTL, load)


@app.post("/api/properties", status_code=status.HTTP_201_CREATED)
@limiter.limit(app_config.IMAGE_UPLOAD_RATE_LIMIT)
def create_property(
    request: Request,
    title: str = Form(...),
    type: str = Form(...),
    price_per_night: float = Form(...),
    address: str = Form(...),
    city: str = Form(...),
    description: Optional[str] = Form(None),
    furnished: bool = Form(False),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    room_count: Optional[int] = Form(None),
    amenities: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user: TokenClaims = Depends(require_role("owner", "admin")),
    properties: PropertyService = Depends(get_property_service),
):
    payload = schemas.PropertyCreate(
        title=title,
        description=description,
        type=type,
        furnished=furnished,
        price_per_night=price_per_night,
        address=address,
        city=city,
        latitude=latitude,
        longitude=longitude,
        room_count=room_count,
        amenities=_parse_amenities(amenities),
    )
    prop = properties.create_property(payload, user.user_id, _read_images(images))
    return success_response(schemas.PropertyResponse.model_validate(prop), "Property created successfully")


@app.put("/api/properties/{property_id}")
def update_property(
    property_id: str,
    payload: schemas.PropertyUpdate,
    user: TokenClaims = Depends(require_role("owner", "admin")),
    properties: PropertyService = Depends(get_property_service),
):
    prop = properties.update_property(property_id, payload, user)
    return success_response(schemas.PropertyResponse.model_validate(prop), "Property updated successfully")


@app.delete("/api/properties/{property_id}")
def delete_property(
    property_id: str,
    user: TokenClaims = Depends(require_role("owner", "admin")),
    properties: PropertyService = Depends(get_property_service),
):
    properties.delete_property(property_id, user)
    return success_response(None, "Property deleted successfully")


@app.get("/api/properties/{property_id}/bookings")
def property_calendar(
    property_id: str,
    request: Request,
    response: Response,
    availability: AvailabilityService = Depends(get_availability_service),
    cache: CacheService = Depends(get_cache),
):
    def load():
        bookings = availability.active_bookings(property_id)
        return success_response([schemas.CalendarBooking.model_validate(b) for b in bookings])

    key = request_cache_key(request.url.path, request.query_params)
    return _cached(response, cache, key, app_config.PROPERTY_BOOKINGS_TTL, load)


# ---------- Availability Endpoints ----------
@app.get("/api/properties/{property_id}/blocked-dates")
def get_blocked_dates(
    property_id: str,
    user: TokenClaims = Depends(require_role("owner", "admin")),
    availability: AvailabilityService = Depends(get_availability_service),
):
    return success_response({"dates": availability.get_blocked_dates(property_id, user)})


@app.post("/api/properties/{property_id}/blocked-dates")
def add_blocked_dates(
    property_id: str,
    payload: schemas.BlockedDatesRequest,
    user: TokenClaims = Depends(require_role("owner", "admin")),
    availability: AvailabilityService = Depends(get_availability_service),
):
    added = availability.add_blocked_dates(property_id, payload.dates, user)
    return success_response({"dates": added}, "Dates blocked")


@app.delete("/api/properties/{property_id}/blocked-dates")
def remove_blocked_dates(
    property_id: str,
    payload: schemas.BlockedDatesRequest,
    user: TokenClaims = Depends(require_role("owner", "admin")),
    availability: AvailabilityService = Depends(get_availability_service),
):
    removed = availability.remove_blocked_dates(property_id, payload.dates, user)
    return success_response({"dates": removed}, "Dates unblocked")


# ---------- Booking Endpoints ----------
@app.get("/api/bookings")
def list_bookings(user: TokenClaims = Depends(get_current_user), bookings: BookingService = Depends(get_booking_service)):
    return success_response([schemas.BookingResponse.model_validate(b) for b in bookings.list_bookings(user)])


@app.get("/api/bookings/{booking_id}")
def get_booking(
    booking_id: str,
    user: TokenClaims = Depends(get_current_user),
    bookings: BookingService = Depends(get_booking_service),
):
    return success_response(schemas.BookingResponse.model_validate(bookings.get_booking(booking_id, user)))


@app.post("/api/bookings", status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: schemas.BookingCreate,
    user: TokenClaims = Depends(require_role("client")),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.create_booking(payload, user)
    return success_response(schemas.BookingResponse.model_validate(booking), "Booking created successfully")


@app.put("/api/bookings/{booking_id}/status")
def update_booking_status(
    booking_id: str,
    payload: schemas.BookingStatusUpdate,
    user: TokenClaims = Depends(require_role("owner", "admin")),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.update_status(booking_id, payload.status, user)
    return success_response(schemas.BookingResponse.model_validate(booking), f"Booking {booking.status}")


@app.put("/api/bookings/{booking_id}/cancel")
def cancel_booking(
    booking_id: str,
    user: TokenClaims = Depends(get_current_user),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.cancel_booking(booking_id, user)
    return success_response(schemas.BookingResponse.model_validate(booking), "Booking cancelled")


# ---------- Conversation Endpoints ----------
@app.get("/api/conversations")
def list_conversations(
    response: Response,
    role: Optional[Literal["client", "owner"]] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
    cache: CacheService = Depends(get_cache),
):
    def load():
        conversations, pagination = chat.list_conversations(user, role, page, limit)
        return paginated_response(conversations, pagination)

    key = conversations_cache_key(user.user_id, role or user.role, page, limit)
    return _cached(response, cache, key, app_config.CONVERSATIONS_TTL, load)


@app.post("/api/conversations")
def open_conversation(
    payload: schemas.ConversationCreate,
    response: Response,
    user: TokenClaims = Depends(get_current_user),
    bookings: BookingService = Depends(get_booking_service),
    chat: ChatService = Depends(get_chat_service),
):
    booking = bookings.get_booking(payload.booking_id, user)
    conversation, created = chat.get_or_create_for_booking(booking)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return success_response(chat.describe(conversation, user.user_id))


@app.get("/api/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    conversation = chat.get_conversation(conversation_id, user)
    return success_response(chat.describe(conversation, user.user_id))


def _message_page(chat: ChatService, conversation_id: str, user: TokenClaims, page: int, limit: int):
    messages, pagination = chat.list_messages(conversation_id, user, page, limit)
    return paginated_response([schemas.MessageResponse.model_validate(m) for m in messages], pagination)


def _send(chat: ChatService, conversation_id: str, user: TokenClaims, content: str):
    message = chat.send_message(conversation_id, user, content)
    return success_response(schemas.MessageResponse.model_validate(message), "Message sent")


@app.get("/api/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return _message_page(chat, conversation_id, user, page, limit)


@app.post("/api/conversations/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
def send_message(
    conversation_id: str,
    payload: schemas.MessageCreate,
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return _send(chat, conversation_id, user, payload.content)


@app.get("/api/conversations/{conversation_id}/unread-count")
def unread_count(
    conversation_id: str,
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    chat.get_conversation(conversation_id, user)
    return success_response({"unread_count": chat.unread_count(conversation_id, user.user_id)})


@app.post("/api/conversations/{conversation_id}/upload-file", status_code=status.HTTP_201_CREATED)
def upload_message_file(
    conversation_id: str,
    file: UploadFile = File(...),
    caption: Optional[str] = Form(None),
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    message = chat.send_file_message(
        conversation_id, user, file.filename, file.content_type, file.file.read(), caption
    )
    return success_response(schemas.MessageResponse.model_validate(message), "File sent")


# ---------- Message Endpoints ----------
@app.get("/api/messages")
def list_messages_by_query(
    conversation_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return _message_page(chat, conversation_id, user, page, limit)


@app.post("/api/messages", status_code=status.HTTP_201_CREATED)
def send_message_by_body(
    payload: schemas.ConversationMessageCreate,
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    return _send(chat, payload.conversation_id, user, payload.content)


@app.put("/api/messages/{message_id}/read")
def mark_message_read(
    message_id: str,
    user: TokenClaims = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    message = chat.mark_read(message_id, user)
    return success_response(schemas.MessageResponse.model_validate(message))


# ---------- Image Endpoints ----------
@app.post("/api/images/upload")
@limiter.limit(app_config.IMAGE_UPLOAD_RATE_LIMIT)
def upload_image(
    request: Request,
    image: UploadFile = File(...),
    property_id: str = Form("temp", alias="propertyId"),
    user: TokenClaims = Depends(get_current_user),
    pipeline: ImagePipeline = Depends(get_image_pipeline),
):
    data = _read_images([image])
    if not data:
        raise ValidationException("An image file is required")
    variants = pipeline.upload_and_optimize(data[0], property_id)
    return success_response(schemas.OptimizedImages(**variants), "Image uploaded")


@app.get("/api/images/optimize")
def optimize_image(
    url: str = Query(..., min_length=1),
    width: Optional[int] = Query(None, ge=1),
    height: Optional[int] = Query(None, ge=1),
    format: Optional[str] = None,
):
    return success_response({"url": ImagePipeline.optimized_url(url, width, height, format)})


def main():
    configure_logging()
    try:
        app_config.validate_config()
    except app_config.ConfigurationError as e:
        logger.error("%s", e)
        sys.exit(1)
    uvicorn.run(app, host=app_config.HOST, port=app_config.PORT)


if __name__ == "__main__":
    main()

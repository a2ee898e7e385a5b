from typing import Any, List, Literal, Optional
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

Role = Literal["client", "owner", "admin"]
PropertyType = Literal["apartment", "villa"]
BookingStatus = Literal["pending", "accepted", "declined", "cancelled"]
MessageType = Literal["user", "system"]


def list_to_comma_string(lst):
    if lst is None:
        return None
    return ",".join([v.strip() for v in lst if v.strip()])


def comma_string_to_list(s):
    if s is None or s.strip() == "":
        return []
    return [v.strip() for v in s.split(",") if v.strip()]


# ---------- Users ----------
class RegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=150)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    phone: Optional[str] = Field(None, max_length=40)
    # admin accounts are provisioned directly, never self-registered
    role: Literal["client", "owner"] = "client"

    @field_validator("full_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=150)
    phone: Optional[str] = Field(None, max_length=40)
    id_document_front_url: Optional[str] = None
    id_document_back_url: Optional[str] = None


class UserSummary(BaseModel):
    id: str
    full_name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class UserResponse(UserSummary):
    phone: Optional[str] = None
    role: Role
    is_verified: bool
    id_document_front_url: Optional[str] = None
    id_document_back_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


# ---------- Properties ----------
class PropertyBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    type: PropertyType
    furnished: bool = False
    price_per_night: float = Field(..., gt=0)
    address: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    room_count: Optional[int] = Field(None, ge=1)
    amenities: List[str] = []

    @field_validator("amenities", mode="before")
    @classmethod
    def split_amenities(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return comma_string_to_list(v)
        return v


class PropertyCreate(PropertyBase):
    pass


class PropertyUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[PropertyType] = None
    furnished: Optional[bool] = None
    price_per_night: Optional[float] = Field(None, gt=0)
    address: Optional[str] = Field(None, min_length=1, max_length=255)
    city: Optional[str] = Field(None, min_length=1, max_length=100)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    room_count: Optional[int] = Field(None, ge=1)
    amenities: Optional[List[str]] = None


class PropertyResponse(PropertyBase):
    id: str
    owner_id: str
    image_urls: List[str] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PropertySummary(BaseModel):
    id: str
    title: str
    city: str
    image_urls: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class BlockedDatesRequest(BaseModel):
    # entries are checked one by one by the availability ledger
    dates: List[Any] = []

    @field_validator("dates", mode="before")
    @classmethod
    def wrap_single_date(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            return [v]
        return v


# ---------- Bookings ----------
class BookingCreate(BaseModel):
    property_id: str = Field(..., min_length=1)
    start_date: date
    end_date: date
    guests: int = Field(..., ge=1)
    message: Optional[str] = Field(None, max_length=2000)


class BookingStatusUpdate(BaseModel):
    status: Literal["accepted", "declined"]


class BookingResponse(BaseModel):
    id: str
    property_id: str
    client_id: str
    start_date: date
    end_date: date
    nights: int
    guests: int
    message: Optional[str] = None
    total_price: float
    status: BookingStatus
    created_at: datetime
    updated_at: datetime
    property: Optional[PropertySummary] = None

    model_config = ConfigDict(from_attributes=True)


class CalendarBooking(BaseModel):
    id: str
    start_date: date
    end_date: date
    status: BookingStatus

    model_config = ConfigDict(from_attributes=True)


# ---------- Chat ----------
class ConversationCreate(BaseModel):
    booking_id: str = Field(..., min_length=1)


class MessageCreate(BaseModel):
    content: str = Field(..., max_length=5000)


class ConversationMessageCreate(MessageCreate):
    conversation_id: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    is_read: bool
    message_type: MessageType
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime
    sender: Optional[UserSummary] = None

    model_config = ConfigDict(from_attributes=True)


class ConversationResponse(BaseModel):
    id: str
    booking_id: str
    client_id: str
    owner_id: str
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    client: Optional[UserSummary] = None
    owner: Optional[UserSummary] = None
    property_title: Optional[str] = None
    booking_start_date: Optional[date] = None
    unread_count: int = 0
    last_message: Optional[MessageResponse] = None


# ---------- Images ----------
class OptimizedImages(BaseModel):
    thumbnail: str
    medium: str
    large: str

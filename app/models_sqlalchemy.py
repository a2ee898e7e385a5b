import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

ROLES = ("client", "owner", "admin")
PROPERTY_TYPES = ("apartment", "villa")
BOOKING_STATUSES = ("pending", "accepted", "declined", "cancelled")
ACTIVE_BOOKING_STATUSES = ("pending", "accepted")
MESSAGE_TYPES = ("user", "system")


def new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=new_id)
    full_name = Column(String(150), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(40), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(10), nullable=False, default="client")
    is_verified = Column(Boolean, nullable=False, default=False)
    id_document_front_url = Column(Text, nullable=True)
    id_document_back_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    properties = relationship("Property", back_populates="owner", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="client", cascade="all, delete-orphan")


class Property(Base):
    __tablename__ = "properties"
    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(20), nullable=False)
    furnished = Column(Boolean, nullable=False, default=False)
    price_per_night = Column(Float, nullable=False)
    address = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    room_count = Column(Integer, nullable=True)
    image_urls = Column(JSON, nullable=False, default=list)
    amenities = Column(Text, nullable=True)  # comma-separated
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="properties")
    bookings = relationship("Booking", back_populates="property", cascade="all, delete-orphan")
    blocked_dates = relationship("BlockedDate", back_populates="property", cascade="all, delete-orphan")


class BlockedDate(Base):
    __tablename__ = "property_blocked_dates"
    id = Column(String(36), primary_key=True, default=new_id)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False)
    blocked_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    property = relationship("Property", back_populates="blocked_dates")

    __table_args__ = (
        UniqueConstraint("property_id", "blocked_date", name="uq_blocked_dates_property_date"),
    )


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String(36), primary_key=True, default=new_id)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False)
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)  # exclusive
    nights = Column(Integer, nullable=False)
    guests = Column(Integer, nullable=False)
    message = Column(Text, nullable=True)
    total_price = Column(Float, nullable=False)
    status = Column(String(10), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    property = relationship("Property", back_populates="bookings")
    client = relationship("User", back_populates="bookings")
    conversation = relationship(
        "Conversation", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_bookings_property_dates", "property_id", "start_date", "end_date"),
    )


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, unique=True)
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    booking = relationship("Booking", back_populates="conversation")
    client = relationship("User", foreign_keys=[client_id])
    owner = relationship("User", foreign_keys=[owner_id])
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")


class Message(Base):
    __tablename__ = "messages"
    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    message_type = Column(String(10), nullable=False, default="user")
    file_url = Column(Text, nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User")

    # Paginate messages per conversation in chronological order
    __table_args__ = (
        Index("ix_messages_conversation_created_at", "conversation_id", "created_at"),
    )

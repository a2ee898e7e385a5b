"""
One conversation per booking, between the booking's client and the owner of
the booked property. Messages are either typed by a participant or posted by
the booking lifecycle as system messages.
"""
import logging
import re
import time
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import app_config
import models_sqlalchemy as models
import models_pydantic as schemas
from api_responses import calculate_pagination
from app_errors import ForbiddenException, NotFoundException, ValidationException
from auth_security import TokenClaims
from cache_layer import CacheService
from storage_adapter import ObjectStorage

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000

# status -> (with property title, without)
SYSTEM_MESSAGES = {
    "pending": (
        'Une nouvelle réservation pour "{title}" a été créée et est en attente de confirmation.',
        "Une nouvelle réservation a été créée et est en attente de confirmation.",
    ),
    "accepted": (
        'Votre réservation pour "{title}" a été acceptée.',
        "Votre réservation a été acceptée.",
    ),
    "declined": (
        'Votre réservation pour "{title}" a été refusée.',
        "Votre réservation a été refusée.",
    ),
    "cancelled": (
        'La réservation pour "{title}" a été annulée.',
        "La réservation a été annulée.",
    ),
}


def system_message_text(status: str, property_title: Optional[str] = None) -> str:
    with_title, without_title = SYSTEM_MESSAGES[status]
    return with_title.format(title=property_title) if property_title else without_title


def sanitize_file_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.\-]", "_", name or "file")


def clean_content(content: str) -> str:
    content = (content or "").strip()
    if not content:
        raise ValidationException("Message content cannot be empty")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationException(f"Message content must be at most {MAX_MESSAGE_LENGTH} characters")
    return content


class ChatService:

    def __init__(self, db: Session, cache: CacheService, storage: Optional[ObjectStorage] = None):
        self.db = db
        self.cache = cache
        self.storage = storage

    # ---------- Conversations ----------

    def _load_conversation(self, conversation_id: str) -> models.Conversation:
        conversation = (
            self.db.query(models.Conversation).filter(models.Conversation.id == conversation_id).first()
        )
        if not conversation:
            raise NotFoundException("Conversation not found")
        return conversation

    @staticmethod
    def is_participant(conversation: models.Conversation, user_id: str) -> bool:
        return user_id in (conversation.client_id, conversation.owner_id)

    def get_conversation(self, conversation_id: str, actor: TokenClaims) -> models.Conversation:
        conversation = self._load_conversation(conversation_id)
        if actor.role != "admin" and not self.is_participant(conversation, actor.user_id):
            raise ForbiddenException("You are not a participant of this conversation")
        return conversation

    def list_conversations(
        self, actor: TokenClaims, role: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[schemas.ConversationResponse], dict]:
        role = role or actor.role
        query = self.db.query(models.Conversation)
        if role == "client":
            query = query.filter(models.Conversation.client_id == actor.user_id)
        elif role == "owner":
            query = query.filter(models.Conversation.owner_id == actor.user_id)
        elif actor.role != "admin":
            raise ForbiddenException("Only administrators can list every conversation")

        total = query.count()
        conversations = (
            query.order_by(
                models.Conversation.last_message_at.is_(None),
                models.Conversation.last_message_at.desc(),
                models.Conversation.created_at.desc(),
            )
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        details = [self.describe(c, actor.user_id) for c in conversations]
        return details, calculate_pagination(page, limit, total)

    def describe(self, conversation: models.Conversation, user_id: str) -> schemas.ConversationResponse:
        """Conversation plus participants, booking context, unread count and last message."""
        booking = conversation.booking
        last = (
            self.db.query(models.Message)
            .filter(models.Message.conversation_id == conversation.id)
            .order_by(models.Message.created_at.desc())
            .first()
        )
        return schemas.ConversationResponse(
            id=conversation.id,
            booking_id=conversation.booking_id,
            client_id=conversation.client_id,
            owner_id=conversation.owner_id,
            last_message_at=conversation.last_message_at,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            client=schemas.UserSummary.model_validate(conversation.client) if conversation.client else None,
            owner=schemas.UserSummary.model_validate(conversation.owner) if conversation.owner else None,
            property_title=booking.property.title if booking and booking.property else None,
            booking_start_date=booking.start_date if booking else None,
            unread_count=self.unread_count(conversation.id, user_id),
            last_message=schemas.MessageResponse.model_validate(last) if last else None,
        )

    def get_or_create_for_booking(self, booking: models.Booking) -> Tuple[models.Conversation, bool]:
        existing = (
            self.db.query(models.Conversation)
            .filter(models.Conversation.booking_id == booking.id)
            .first()
        )
        if existing:
            return existing, False

        conversation = models.Conversation(
            booking_id=booking.id,
            client_id=booking.client_id,
            owner_id=booking.property.owner_id,
        )
        self.db.add(conversation)
        try:
            self.db.commit()
        except IntegrityError:
            # a concurrent request created it first
            self.db.rollback()
            existing = (
                self.db.query(models.Conversation)
                .filter(models.Conversation.booking_id == booking.id)
                .first()
            )
            if existing is None:
                raise
            return existing, False

        self.db.refresh(conversation)
        self.cache.invalidate_conversations(conversation.client_id, conversation.owner_id)
        logger.info("Conversation %s created for booking %s", conversation.id, booking.id)
        return conversation, True

    # ---------- Messages ----------

    def list_messages(
        self, conversation_id: str, actor: TokenClaims, page: int = 1, limit: int = 50
    ) -> Tuple[List[models.Message], dict]:
        self.get_conversation(conversation_id, actor)
        query = self.db.query(models.Message).filter(models.Message.conversation_id == conversation_id)
        total = query.count()
        newest_first = (
            query.order_by(models.Message.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return list(reversed(newest_first)), calculate_pagination(page, limit, total)

    def _require_sender(self, conversation_id: str, actor: TokenClaims) -> models.Conversation:
        conversation = self._load_conversation(conversation_id)
        if not self.is_participant(conversation, actor.user_id):
            raise ForbiddenException("Only conversation participants can send messages")
        return conversation

    def _store_message(self, conversation: models.Conversation, message: models.Message) -> models.Message:
        self.db.add(message)
        self.db.flush()
        conversation.last_message_at = message.created_at
        self.db.commit()
        self.db.refresh(message)
        self.cache.invalidate_conversations(conversation.client_id, conversation.owner_id)
        return message

    def send_message(self, conversation_id: str, actor: TokenClaims, content: str) -> models.Message:
        conversation = self._require_sender(conversation_id, actor)
        message = models.Message(
            conversation_id=conversation.id,
            sender_id=actor.user_id,
            content=clean_content(content),
            message_type="user",
        )
        return self._store_message(conversation, message)

    def send_file_message(
        self,
        conversation_id: str,
        actor: TokenClaims,
        file_name: str,
        content_type: str,
        data: bytes,
        caption: Optional[str] = None,
    ) -> models.Message:
        conversation = self._require_sender(conversation_id, actor)
        if not data:
            raise ValidationException("Uploaded file is empty")
        if len(data) > app_config.MAX_MESSAGE_FILE_BYTES:
            raise ValidationException("File exceeds the 20MB limit")
        content = clean_content(caption or file_name or "file")

        message_id = models.new_id()
        path = "conversations/{}/{}-{}-{}".format(
            conversation.id, message_id, int(time.time() * 1000), sanitize_file_name(file_name)
        )
        url = self.storage.upload(
            app_config.MESSAGE_FILES_BUCKET, path, data, content_type or "application/octet-stream"
        )
        message = models.Message(
            id=message_id,
            conversation_id=conversation.id,
            sender_id=actor.user_id,
            content=content,
            message_type="user",
            file_url=url,
            file_name=file_name,
            file_size=len(data),
        )
        return self._store_message(conversation, message)

    def mark_read(self, message_id: str, actor: TokenClaims) -> models.Message:
        message = self.db.query(models.Message).filter(models.Message.id == message_id).first()
        if not message:
            raise NotFoundException("Message not found")
        conversation = message.conversation
        participant = self.is_participant(conversation, actor.user_id)
        if not participant and actor.role != "admin":
            raise ForbiddenException("You are not a participant of this conversation")
        # only the recipient flips the flag
        if participant and message.sender_id != actor.user_id and not message.is_read:
            message.is_read = True
            self.db.commit()
            self.cache.invalidate_conversations(actor.user_id)
        return message

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        return (
            self.db.query(func.count(models.Message.id))
            .filter(
                models.Message.conversation_id == conversation_id,
                models.Message.sender_id != user_id,
                models.Message.is_read.is_(False),
            )
            .scalar()
        )

    def post_system_message(
        self, booking: models.Booking, status: str, speaker_id: Optional[str] = None
    ) -> Optional[models.Message]:
        """Narrate a booking event in the booking's conversation.

        The message is attributed to the participant who is "speaking": the
        client for a new request, the owner for a decision, and whoever
        cancelled for a cancellation.
        """
        conversation = booking.conversation
        if conversation is None:
            logger.warning("No conversation for booking %s, skipping %s message", booking.id, status)
            return None
        title = booking.property.title if booking.property else None
        if speaker_id not in (conversation.client_id, conversation.owner_id):
            speaker_id = conversation.client_id if status == "pending" else conversation.owner_id
        message = models.Message(
            conversation_id=conversation.id,
            sender_id=speaker_id,
            content=system_message_text(status, title),
            message_type="system",
        )
        message = self._store_message(conversation, message)
        logger.info("System message (%s) posted in conversation %s", status, conversation.id)
        return message

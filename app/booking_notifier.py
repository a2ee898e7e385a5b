"""
Chat side effects of booking events, run after the response is sent.

Each job opens its own session. A failure is logged and dropped; the booking
write that triggered it is already committed and stays authoritative.
"""
import logging
from typing import Callable, Optional

import models_sqlalchemy as models
from cache_layer import CacheService
from chat_service import ChatService

logger = logging.getLogger(__name__)


class BookingNotifier:

    def __init__(self, session_factory, schedule: Callable, cache: CacheService):
        self.session_factory = session_factory
        self.schedule = schedule
        self.cache = cache

    def booking_created(self, booking_id: str) -> None:
        self.schedule(self._run, booking_id, "pending", None)

    def status_changed(self, booking_id: str, status: str, actor_id: Optional[str] = None) -> None:
        self.schedule(self._run, booking_id, status, actor_id)

    def _run(self, booking_id: str, status: str, actor_id: Optional[str]) -> None:
        db = self.session_factory()
        try:
            booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
            if booking is None:
                logger.warning("Booking %s vanished before its %s notification", booking_id, status)
                return
            chat = ChatService(db, self.cache)
            if status == "pending":
                chat.get_or_create_for_booking(booking)
                db.refresh(booking)
            chat.post_system_message(booking, status, actor_id)
        except Exception as e:
            db.rollback()
            logger.warning("Booking %s notification (%s) failed: %s", booking_id, status, e)
        finally:
            db.close()

"""
Booking lifecycle.

    pending  -> accepted | declined | cancelled
    accepted -> cancelled

declined and cancelled are terminal.
"""
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

import models_sqlalchemy as models
import models_pydantic as schemas
from app_errors import BusinessRuleException, ForbiddenException, NotFoundException, ValidationException
from auth_security import TokenClaims
from availability_service import AvailabilityService
from booking_notifier import BookingNotifier
from cache_layer import CacheService

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"accepted", "declined", "cancelled"},
    "accepted": {"cancelled"},
    "declined": set(),
    "cancelled": set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def quote(nights: int, price_per_night: float) -> float:
    return nights * price_per_night


class BookingService:

    def __init__(
        self,
        db: Session,
        cache: CacheService,
        availability: AvailabilityService,
        notifier: Optional[BookingNotifier] = None,
    ):
        self.db = db
        self.cache = cache
        self.availability = availability
        self.notifier = notifier

    def list_bookings(self, actor: TokenClaims) -> List[models.Booking]:
        query = self.db.query(models.Booking)
        if actor.role == "client":
            query = query.filter(models.Booking.client_id == actor.user_id)
        elif actor.role == "owner":
            query = query.join(models.Property).filter(models.Property.owner_id == actor.user_id)
        return query.order_by(models.Booking.created_at.desc()).all()

    def _load(self, booking_id: str) -> models.Booking:
        booking = self.db.query(models.Booking).filter(models.Booking.id == booking_id).first()
        if not booking:
            raise NotFoundException("Booking not found")
        return booking

    @staticmethod
    def _owns_property(booking: models.Booking, actor: TokenClaims) -> bool:
        return booking.property is not None and booking.property.owner_id == actor.user_id

    def get_booking(self, booking_id: str, actor: TokenClaims) -> models.Booking:
        booking = self._load(booking_id)
        if actor.role == "admin":
            return booking
        if booking.client_id != actor.user_id and not self._owns_property(booking, actor):
            raise ForbiddenException("You do not have access to this booking")
        return booking

    def create_booking(self, payload: schemas.BookingCreate, actor: TokenClaims) -> models.Booking:
        if payload.start_date < date.today():
            raise ValidationException("Start date cannot be in the past")
        if payload.end_date <= payload.start_date:
            raise ValidationException("End date must be after start date")

        # row lock serialises concurrent requests for the same property
        prop = (
            self.db.query(models.Property)
            .filter(models.Property.id == payload.property_id)
            .with_for_update()
            .first()
        )
        if not prop:
            raise NotFoundException("Property not found")

        if self.availability.has_overlap(prop.id, payload.start_date, payload.end_date):
            self.db.rollback()
            raise BusinessRuleException("Property is not available for the selected dates")

        nights = (payload.end_date - payload.start_date).days
        booking = models.Booking(
            property_id=prop.id,
            client_id=actor.user_id,
            start_date=payload.start_date,
            end_date=payload.end_date,
            nights=nights,
            guests=payload.guests,
            message=payload.message,
            total_price=quote(nights, prop.price_per_night),
            status="pending",
        )
        self.db.add(booking)
        self.db.commit()
        self.db.refresh(booking)
        logger.info("Booking %s created on property %s (%d nights)", booking.id, prop.id, nights)

        self.cache.invalidate_property_bookings(prop.id)
        if self.notifier:
            self.notifier.booking_created(booking.id)
        return booking

    def _apply(self, booking: models.Booking, target: str, actor: TokenClaims) -> models.Booking:
        if not can_transition(booking.status, target):
            raise BusinessRuleException(f"Cannot change a {booking.status} booking to {target}")
        booking.status = target
        self.db.commit()
        self.db.refresh(booking)
        logger.info("Booking %s is now %s (by %s)", booking.id, target, actor.user_id)

        self.cache.invalidate_property_bookings(booking.property_id)
        if self.notifier:
            self.notifier.status_changed(booking.id, target, actor.user_id)
        return booking

    def update_status(self, booking_id: str, status: str, actor: TokenClaims) -> models.Booking:
        if status not in ("accepted", "declined"):
            raise ValidationException("Status must be accepted or declined")
        booking = self._load(booking_id)
        if actor.role != "admin" and not self._owns_property(booking, actor):
            raise ForbiddenException("Only the property owner can update this booking")
        return self._apply(booking, status, actor)

    def cancel_booking(self, booking_id: str, actor: TokenClaims) -> models.Booking:
        booking = self._load(booking_id)
        if actor.role == "client":
            if booking.client_id != actor.user_id:
                raise ForbiddenException("You can only cancel your own bookings")
            if booking.status != "pending":
                raise BusinessRuleException("Only pending bookings can be cancelled")
        elif actor.role == "owner":
            if not self._owns_property(booking, actor):
                raise ForbiddenException("You can only cancel bookings on your own properties")
        elif actor.role != "admin":
            raise ForbiddenException("You cannot cancel this booking")
        return self._apply(booking, "cancelled", actor)

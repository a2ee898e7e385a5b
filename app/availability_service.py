"""
Availability ledger: owner-declared blocked dates plus active bookings.

A date range is always half-open, [start, end): a stay ending on a given day
leaves that day free for the next arrival.
"""
import logging
import re
from datetime import date
from typing import Iterable, List

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

import models_sqlalchemy as models
from app_errors import ValidationException
from auth_security import TokenClaims
from property_service import PropertyService

logger = logging.getLogger(__name__)

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DIALECT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def parse_blocked_dates(values: Iterable) -> List[date]:
    """Keep well-formed YYYY-MM-DD calendar dates, sorted and deduplicated."""
    parsed = set()
    for value in values or []:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if not ISO_DATE.match(value):
            continue
        try:
            parsed.add(date.fromisoformat(value))
        except ValueError:
            continue
    return sorted(parsed)


class AvailabilityService:

    def __init__(self, db: Session, properties: PropertyService):
        self.db = db
        self.properties = properties

    def get_blocked_dates(self, property_id: str, actor: TokenClaims) -> List[str]:
        prop = self.properties.get_property(property_id)
        self.properties.ensure_can_manage(prop, actor)
        rows = (
            self.db.query(models.BlockedDate.blocked_date)
            .filter(models.BlockedDate.property_id == property_id)
            .order_by(models.BlockedDate.blocked_date)
            .all()
        )
        return [row.blocked_date.isoformat() for row in rows]

    def add_blocked_dates(self, property_id: str, values, actor: TokenClaims) -> List[str]:
        prop = self.properties.get_property(property_id)
        self.properties.ensure_can_manage(prop, actor)
        dates = parse_blocked_dates(values)
        if not dates:
            raise ValidationException("No valid dates provided (expected YYYY-MM-DD)")

        rows = [
            {"id": models.new_id(), "property_id": property_id, "blocked_date": d, "created_at": models.utcnow()}
            for d in dates
        ]
        self._insert_ignoring_duplicates(rows)
        self.db.commit()
        logger.info("Blocked %d date(s) on property %s", len(dates), property_id)
        return [d.isoformat() for d in dates]

    def _insert_ignoring_duplicates(self, rows: List[dict]) -> None:
        dialect = self.db.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            existing = {
                row.blocked_date
                for row in self.db.query(models.BlockedDate.blocked_date).filter(
                    models.BlockedDate.property_id == rows[0]["property_id"]
                )
            }
            self.db.add_all(models.BlockedDate(**row) for row in rows if row["blocked_date"] not in existing)
            return
        stmt = insert(models.BlockedDate).values(rows).on_conflict_do_nothing(
            index_elements=["property_id", "blocked_date"]
        )
        self.db.execute(stmt)

    def remove_blocked_dates(self, property_id: str, values, actor: TokenClaims) -> List[str]:
        prop = self.properties.get_property(property_id)
        self.properties.ensure_can_manage(prop, actor)
        dates = parse_blocked_dates(values)
        if dates:
            (
                self.db.query(models.BlockedDate)
                .filter(
                    models.BlockedDate.property_id == property_id,
                    models.BlockedDate.blocked_date.in_(dates),
                )
                .delete(synchronize_session=False)
            )
            self.db.commit()
        return [d.isoformat() for d in dates]

    def has_blocked_dates(self, property_id: str, start: date, end: date) -> bool:
        return (
            self.db.query(models.BlockedDate.id)
            .filter(
                models.BlockedDate.property_id == property_id,
                models.BlockedDate.blocked_date >= start,
                models.BlockedDate.blocked_date < end,
            )
            .first()
            is not None
        )

    def has_active_booking(self, property_id: str, start: date, end: date) -> bool:
        query = self.db.query(models.Booking.id).filter(
            models.Booking.property_id == property_id,
            models.Booking.status.in_(models.ACTIVE_BOOKING_STATUSES),
            models.Booking.start_date < end,
            models.Booking.end_date > start,
        )
        return query.first() is not None

    def has_overlap(self, property_id: str, start: date, end: date) -> bool:
        return self.has_blocked_dates(property_id, start, end) or self.has_active_booking(property_id, start, end)

    def active_bookings(self, property_id: str) -> List[models.Booking]:
        self.properties.get_property(property_id)
        return (
            self.db.query(models.Booking)
            .filter(
                models.Booking.property_id == property_id,
                models.Booking.status.in_(models.ACTIVE_BOOKING_STATUSES),
            )
            .order_by(models.Booking.start_date)
            .all()
        )

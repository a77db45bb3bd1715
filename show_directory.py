"""Show Directory: show CRUD plus the read paths the allocator and API rely on."""

from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional
import logging
import uuid

from database_manager import DatabaseManager
from exceptions import NotFound, InvalidRequest, Internal
from models import Show, Booking, Hold, SeatAllocation, AllocationStatus
from show_locks import ShowLockRegistry

logger = logging.getLogger(__name__)


def parse_id(value, kind: str = "show") -> uuid.UUID:
    """Turn a path/body identifier into a UUID, treating garbage as missing."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFound(f"{kind} not found")


class ShowDirectory:

    def __init__(self, db: DatabaseManager, locks: ShowLockRegistry):
        self.db = db
        self.locks = locks

    def get_show(self, session, show_id, for_update: bool = False) -> Optional[Show]:
        """Load a show inside the caller's transaction, optionally row-locked."""
        query = session.query(Show).filter(Show.id == show_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def create_show(
        self,
        name: str,
        start_time: datetime,
        total_seats: int,
        ticket_price=None,
        poster_url: Optional[str] = None,
        trailer_url: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict:
        if not isinstance(name, str) or not name.strip():
            raise InvalidRequest("name must be a non-empty string")
        if not isinstance(start_time, datetime):
            raise InvalidRequest("start_time must be a timestamp")
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        if isinstance(total_seats, bool) or not isinstance(total_seats, int) or total_seats <= 0:
            raise InvalidRequest("total_seats must be a positive integer")
        price = None
        if ticket_price is not None:
            if isinstance(ticket_price, bool):
                raise InvalidRequest("ticket_price must be a number")
            try:
                price = Decimal(str(ticket_price))
            except InvalidOperation:
                raise InvalidRequest("ticket_price must be a number")
            if not price.is_finite() or price < 0:
                raise InvalidRequest("ticket_price must be a non-negative number")

        try:
            with self.db.get_session() as session:
                show = Show(
                    name=name.strip(),
                    start_time=start_time.astimezone(timezone.utc),
                    total_seats=total_seats,
                    available_seats=total_seats,
                    ticket_price=price,
                    poster_url=poster_url,
                    trailer_url=trailer_url,
                    description=description,
                )
                session.add(show)
        except SQLAlchemyError as e:
            raise Internal(f"failed to create show: {e}")

        logger.info(f"Created show {show.id} ({show.name}) with {total_seats} seats")
        return show.to_dict()

    def list_shows(self) -> List[Dict]:
        with self.db.get_session() as session:
            shows = session.query(Show).order_by(Show.start_time.asc()).all()
            return [show.to_dict() for show in shows]

    def fetch_show(self, show_id) -> Dict:
        show_uuid = parse_id(show_id)
        with self.db.get_session() as session:
            show = self.get_show(session, show_uuid)
            if show is None:
                raise NotFound("show not found")
            return show.to_dict()

    def delete_show(self, show_id) -> Dict:
        """Remove a show and everything that references it, children first."""
        show_uuid = parse_id(show_id)

        with self.locks.hold(show_uuid):
            try:
                with self.db.get_session() as session:
                    show = self.get_show(session, show_uuid, for_update=True)
                    if show is None:
                        raise NotFound("show not found")

                    allocations = session.query(SeatAllocation).filter(
                        SeatAllocation.show_id == show_uuid
                    ).delete(synchronize_session=False)
                    holds = session.query(Hold).filter(
                        Hold.show_id == show_uuid
                    ).delete(synchronize_session=False)
                    bookings = session.query(Booking).filter(
                        Booking.show_id == show_uuid
                    ).delete(synchronize_session=False)
                    session.delete(show)
            except SQLAlchemyError as e:
                raise Internal(f"failed to delete show {show_uuid}: {e}")

        self.locks.discard(show_uuid)
        logger.info(
            "Deleted show %s: %s allocations, %s holds, %s bookings removed",
            show_uuid, allocations, holds, bookings
        )
        return {
            "show_id": str(show_uuid),
            "allocations_deleted": allocations,
            "holds_deleted": holds,
            "bookings_deleted": bookings,
        }

    def allocated_seats(self, show_id) -> List[int]:
        """Ascending seat numbers owned by confirmed bookings."""
        show_uuid = parse_id(show_id)
        with self.db.get_session() as session:
            if self.get_show(session, show_uuid) is None:
                raise NotFound("show not found")
            rows = session.query(SeatAllocation.seat_number).filter(
                SeatAllocation.show_id == show_uuid,
                SeatAllocation.status == AllocationStatus.ALLOCATED
            ).order_by(SeatAllocation.seat_number.asc()).all()
            return [row.seat_number for row in rows]

    def bookings_for_show(self, show_id) -> List[Dict]:
        """All booking attempts for a show, newest first."""
        show_uuid = parse_id(show_id)
        with self.db.get_session() as session:
            if self.get_show(session, show_uuid) is None:
                raise NotFound("show not found")
            bookings = session.query(Booking).filter(
                Booking.show_id == show_uuid
            ).order_by(Booking.created_at.desc()).all()
            return [booking.to_dict() for booking in bookings]

"""Booking Allocator: atomic seat reservation, holds, release and the failure audit trail."""

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from database_manager import DatabaseManager
from exceptions import (
    BookingError, NotFound, InvalidRequest, InsufficientInventory,
    InvalidSeat, SeatConflict, Internal,
)
from models import Show, Booking, Hold, SeatAllocation, BookingStatus, AllocationStatus, utcnow
from show_directory import ShowDirectory, parse_id
from show_locks import ShowLockRegistry

logger = logging.getLogger(__name__)


def validate_seat_numbers(seat_numbers) -> List[int]:
    """Reject anything that is not a non-empty list of distinct integers."""
    if not isinstance(seat_numbers, (list, tuple)) or len(seat_numbers) == 0:
        raise InvalidRequest("seats must be a non-empty array of seat numbers")
    for seat in seat_numbers:
        if isinstance(seat, bool) or not isinstance(seat, int):
            raise InvalidRequest(f"seat numbers must be integers, got {seat!r}")
    if len(set(seat_numbers)) != len(seat_numbers):
        raise InvalidRequest("seats must not contain duplicates")
    return list(seat_numbers)


def validate_customer_name(customer_name) -> str:
    if not isinstance(customer_name, str) or not customer_name.strip():
        raise InvalidRequest("user_name must be a non-empty string")
    return customer_name.strip()


class BookingAllocator:
    """Serializes inventory changes per show and keeps the seat ledger consistent.

    Every mutating operation takes the show's in-process lock, then reads the
    show row with SELECT ... FOR UPDATE and performs its checks and writes in
    one transaction. The available_seats counter is only ever changed inside
    that transaction.
    """

    def __init__(
        self,
        db: DatabaseManager,
        directory: ShowDirectory,
        locks: ShowLockRegistry,
        clock=utcnow,
        default_hold_seconds: int = 600,
    ):
        self.db = db
        self.directory = directory
        self.locks = locks
        self.clock = clock
        self.default_hold_seconds = default_hold_seconds

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(self, show_id, customer_name, seat_numbers) -> Dict:
        """Allocate every requested seat to a new confirmed booking, or none of them."""
        show_uuid = parse_id(show_id)

        with self.locks.hold(show_uuid):
            try:
                booking = self._reserve_in_transaction(show_uuid, customer_name, seat_numbers)
            except (NotFound, InvalidRequest):
                raise
            except BookingError as e:
                logger.warning(f"Booking rejected for show {show_uuid}: {e.message}")
                self._record_failure(show_uuid, customer_name, seat_numbers, e.message)
                raise
            except IntegrityError:
                # Another writer committed an overlapping seat first
                conflict = self._conflicting_seats(show_uuid, seat_numbers)
                logger.warning(f"Booking rejected for show {show_uuid}: {conflict.message}")
                self._record_failure(show_uuid, customer_name, seat_numbers, conflict.message)
                raise conflict
            except SQLAlchemyError as e:
                logger.exception(f"Booking transaction failed for show {show_uuid}")
                self._record_failure(show_uuid, customer_name, seat_numbers, f"internal error: {e}")
                raise Internal(f"booking transaction failed: {e}")

        logger.info(
            f"Booking confirmed: show={show_uuid}, booking_id={booking.id}, seats={booking.seats}"
        )
        return booking.to_dict()

    def _reserve_in_transaction(self, show_uuid, customer_name, seat_numbers) -> Booking:
        now = self.clock()
        with self.db.get_session() as session:
            show = self.directory.get_show(session, show_uuid, for_update=True)
            if show is None:
                raise NotFound("show not found")

            seats = validate_seat_numbers(seat_numbers)
            customer_name = validate_customer_name(customer_name)

            self._purge_expired_holds(session, show, now)
            self._check_inventory(session, show, seats)

            booking = Booking(
                show_id=show.id,
                user_name=customer_name,
                seats=seats,
                status=BookingStatus.PENDING
            )
            session.add(booking)
            session.flush()

            session.add_all([
                SeatAllocation(
                    show_id=show.id,
                    seat_number=seat,
                    status=AllocationStatus.ALLOCATED,
                    booking_id=booking.id
                ) for seat in seats
            ])
            session.flush()

            show.available_seats -= len(seats)
            booking.status = BookingStatus.CONFIRMED

            # Transaction commits here
        return booking

    def _check_inventory(self, session, show: Show, seats: List[int]):
        """Capacity, seat bounds and conflicts, in that order."""
        if len(seats) > show.available_seats:
            raise InsufficientInventory(requested=len(seats), available=show.available_seats)

        for seat in seats:
            if seat < 1 or seat > show.total_seats:
                raise InvalidSeat(seat, show.total_seats)

        taken = session.query(SeatAllocation.seat_number, SeatAllocation.status).filter(
            SeatAllocation.show_id == show.id,
            SeatAllocation.seat_number.in_(seats)
        ).all()
        if taken:
            raise self._conflict_from_rows(taken, seats)

    @staticmethod
    def _conflict_from_rows(rows, fallback_seats) -> SeatConflict:
        if not rows:
            return SeatConflict(fallback_seats)
        return SeatConflict(
            [row.seat_number for row in rows],
            held=any(row.status == AllocationStatus.HELD for row in rows)
        )

    def _conflicting_seats(self, show_uuid, seat_numbers) -> SeatConflict:
        """Re-read the ledger after a constraint race to name the seats lost."""
        try:
            with self.db.get_session() as session:
                rows = session.query(SeatAllocation.seat_number, SeatAllocation.status).filter(
                    SeatAllocation.show_id == show_uuid,
                    SeatAllocation.seat_number.in_(list(seat_numbers))
                ).all()
        except Exception:
            logger.exception("Could not read conflicting seats")
            rows = []
        return self._conflict_from_rows(rows, seat_numbers)

    def _record_failure(self, show_uuid, customer_name, seat_numbers, reason: str):
        """Persist a FAILED booking outside the rolled-back transaction.

        Errors here are logged only; the caller re-raises the original error.
        """
        try:
            with self.db.get_session() as session:
                session.add(Booking(
                    show_id=show_uuid,
                    user_name=str(customer_name or ""),
                    seats=list(seat_numbers) if isinstance(seat_numbers, (list, tuple)) else [],
                    status=BookingStatus.FAILED,
                    failure_reason=reason
                ))
        except Exception:
            logger.exception(f"Error logging failed booking for show {show_uuid}")

    def get(self, booking_id) -> Dict:
        booking_uuid = parse_id(booking_id, "booking")
        with self.db.get_session() as session:
            booking = session.get(Booking, booking_uuid)
            if booking is None:
                raise NotFound("booking not found")
            return booking.to_dict()

    def release(self, booking_id, seat_numbers: Optional[List[int]] = None) -> Dict:
        """Give seats of a confirmed booking back to the show's inventory."""
        booking_uuid = parse_id(booking_id, "booking")
        if seat_numbers is not None:
            seat_numbers = validate_seat_numbers(seat_numbers)

        with self.db.get_session() as session:
            existing = session.get(Booking, booking_uuid)
            if existing is None:
                raise NotFound("booking not found")
            show_uuid = existing.show_id

        with self.locks.hold(show_uuid):
            try:
                with self.db.get_session() as session:
                    show = self.directory.get_show(session, show_uuid, for_update=True)
                    booking = session.query(Booking).filter(
                        Booking.id == booking_uuid
                    ).with_for_update().first()
                    if show is None or booking is None:
                        raise NotFound("booking not found")
                    if booking.status != BookingStatus.CONFIRMED:
                        raise InvalidRequest(
                            f"only confirmed bookings can release seats (status {booking.status.value})"
                        )

                    owned = list(booking.seats)
                    to_release = owned if seat_numbers is None else seat_numbers
                    if not to_release:
                        raise InvalidRequest("booking has no seats left to release")
                    for seat in to_release:
                        if seat not in owned:
                            raise InvalidSeat(
                                seat, message=f"Seat {seat} is not part of booking {booking_uuid}"
                            )

                    released = session.query(SeatAllocation).filter(
                        SeatAllocation.show_id == show_uuid,
                        SeatAllocation.booking_id == booking_uuid,
                        SeatAllocation.seat_number.in_(to_release),
                        SeatAllocation.status == AllocationStatus.ALLOCATED
                    ).delete(synchronize_session=False)
                    if released != len(to_release):
                        raise Internal(
                            f"ledger mismatch for booking {booking_uuid}: "
                            f"expected {len(to_release)} allocations, found {released}"
                        )

                    show.available_seats += released
                    release_set = set(to_release)
                    booking.seats = [seat for seat in owned if seat not in release_set]
            except SQLAlchemyError as e:
                logger.exception(f"Release failed for booking {booking_uuid}")
                raise Internal(f"release failed: {e}")

        logger.info(f"Released seats {sorted(to_release)} from booking {booking_uuid}")
        return booking.to_dict()

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    def hold_seats(self, show_id, customer_name, seat_numbers, hold_duration_sec: Optional[int] = None) -> Dict:
        """Place a time-limited claim on seats; it blocks others until confirmed, released or expired."""
        show_uuid = parse_id(show_id)
        duration = hold_duration_sec if hold_duration_sec is not None else self.default_hold_seconds

        with self.locks.hold(show_uuid):
            now = self.clock()
            expires_at = now + timedelta(seconds=duration)
            try:
                with self.db.get_session() as session:
                    show = self.directory.get_show(session, show_uuid, for_update=True)
                    if show is None:
                        raise NotFound("show not found")

                    seats = validate_seat_numbers(seat_numbers)
                    customer_name = validate_customer_name(customer_name)

                    self._purge_expired_holds(session, show, now)
                    self._check_inventory(session, show, seats)

                    hold = Hold(
                        show_id=show.id,
                        user_name=customer_name,
                        seats=seats,
                        expires_at=expires_at
                    )
                    session.add(hold)
                    session.flush()

                    session.add_all([
                        SeatAllocation(
                            show_id=show.id,
                            seat_number=seat,
                            status=AllocationStatus.HELD,
                            hold_id=hold.id,
                            expires_at=expires_at
                        ) for seat in seats
                    ])
                    session.flush()

                    show.available_seats -= len(seats)
            except IntegrityError:
                raise self._conflicting_seats(show_uuid, seat_numbers)
            except SQLAlchemyError as e:
                logger.exception(f"Hold transaction failed for show {show_uuid}")
                raise Internal(f"hold transaction failed: {e}")

        logger.info(f"Hold created: show={show_uuid}, hold_id={hold.id}, seats={seats}")
        result = hold.to_dict()
        result["expires_at"] = expires_at.isoformat()
        return result

    def confirm_hold(self, hold_id) -> Dict:
        """Promote a live hold to a confirmed booking; repeating the call returns the same booking."""
        hold_uuid = parse_id(hold_id, "hold")

        with self.db.get_session() as session:
            hold = session.get(Hold, hold_uuid)
            if hold is None:
                # The hold id is reused as the booking id
                booking = session.get(Booking, hold_uuid)
                if booking is not None and booking.status == BookingStatus.CONFIRMED:
                    return booking.to_dict()
                raise NotFound("hold not found or expired")
            show_uuid = hold.show_id

        request = None
        missing = False
        with self.locks.hold(show_uuid):
            now = self.clock()
            try:
                with self.db.get_session() as session:
                    show = self.directory.get_show(session, show_uuid, for_update=True)
                    if show is None:
                        raise NotFound("hold not found or expired")

                    self._purge_expired_holds(session, show, now)
                    hold = session.get(Hold, hold_uuid)

                    if hold is None:
                        booking = session.get(Booking, hold_uuid)
                        if booking is None:
                            # Commit the purge before reporting
                            missing = True
                    else:
                        request = (hold.user_name, list(hold.seats))
                        booking = Booking(
                            id=hold.id,
                            show_id=show.id,
                            user_name=hold.user_name,
                            seats=list(hold.seats),
                            status=BookingStatus.PENDING
                        )
                        session.add(booking)
                        session.flush()

                        promoted = session.query(SeatAllocation).filter(
                            SeatAllocation.show_id == show.id,
                            SeatAllocation.hold_id == hold.id,
                            SeatAllocation.status == AllocationStatus.HELD
                        ).update(
                            {
                                SeatAllocation.status: AllocationStatus.ALLOCATED,
                                SeatAllocation.booking_id: booking.id,
                                SeatAllocation.hold_id: None,
                                SeatAllocation.expires_at: None,
                            },
                            synchronize_session=False
                        )
                        if promoted != len(hold.seats):
                            raise Internal(
                                f"hold {hold_uuid} invalidated: expected {len(hold.seats)} held seats, found {promoted}"
                            )

                        session.delete(hold)
                        booking.status = BookingStatus.CONFIRMED
            except BookingError as e:
                if request is not None:
                    self._record_failure(show_uuid, request[0], request[1], e.message)
                raise
            except SQLAlchemyError as e:
                logger.exception(f"Confirming hold {hold_uuid} failed")
                if request is not None:
                    self._record_failure(show_uuid, request[0], request[1], f"internal error: {e}")
                raise Internal(f"confirming hold failed: {e}")

        if missing:
            raise NotFound("hold not found or expired")

        logger.info(f"Booking confirmed from hold: show={show_uuid}, booking_id={booking.id}")
        return booking.to_dict()

    def release_hold(self, hold_id) -> Dict:
        """Drop a hold early so its seats become available immediately."""
        hold_uuid = parse_id(hold_id, "hold")

        with self.db.get_session() as session:
            hold = session.get(Hold, hold_uuid)
            if hold is None:
                raise NotFound("hold not found")
            show_uuid = hold.show_id

        with self.locks.hold(show_uuid):
            try:
                with self.db.get_session() as session:
                    show = self.directory.get_show(session, show_uuid, for_update=True)
                    hold = session.get(Hold, hold_uuid)
                    if show is None or hold is None:
                        raise NotFound("hold not found")
                    released = self._drop_hold(session, show, hold)
            except SQLAlchemyError as e:
                logger.exception(f"Releasing hold {hold_uuid} failed")
                raise Internal(f"releasing hold failed: {e}")

        logger.info(f"Hold released: show={show_uuid}, hold_id={hold_uuid}")
        return {"hold_id": str(hold_uuid), "seats_released": released}

    def cleanup_expired_holds(self) -> int:
        """Find and purge holds whose expiry has passed, returning the number of seats freed."""
        now = self.clock()
        try:
            with self.db.get_session() as session:
                show_ids = [
                    row.show_id for row in session.query(Hold.show_id).filter(
                        Hold.expires_at <= now
                    ).distinct().all()
                ]
        except SQLAlchemyError:
            logger.exception("Cleanup expired holds: listing failed")
            return 0

        released = 0
        for show_uuid in show_ids:
            try:
                with self.locks.hold(show_uuid):
                    with self.db.get_session() as session:
                        show = self.directory.get_show(session, show_uuid, for_update=True)
                        if show is not None:
                            released += self._purge_expired_holds(session, show, now)
            except (SQLAlchemyError, Internal):
                logger.exception(f"Cleanup expired holds failed for show {show_uuid}")

        if released > 0:
            logger.info(f"Cleaned up {released} expired held seats across {len(show_ids)} shows")
        return released

    def _drop_hold(self, session, show: Show, hold: Hold) -> int:
        """Internal helper: free held seats and delete the hold within the active transaction."""
        released = session.query(SeatAllocation).filter(
            SeatAllocation.show_id == show.id,
            SeatAllocation.hold_id == hold.id,
            SeatAllocation.status == AllocationStatus.HELD
        ).delete(synchronize_session=False)
        session.delete(hold)
        show.available_seats += released
        session.flush()
        return released

    def _purge_expired_holds(self, session, show: Show, now: datetime) -> int:
        expired = session.query(Hold).filter(
            Hold.show_id == show.id,
            Hold.expires_at <= now
        ).all()

        released = 0
        for hold in expired:
            released += self._drop_hold(session, show, hold)
        if expired:
            logger.info(f"Expired {len(expired)} holds on show {show.id}, {released} seats returned")
        return released

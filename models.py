"""ORM model definitions describing the show, booking and seat allocation schema."""

from sqlalchemy import Column, String, Integer, Numeric, Text, DateTime, Enum, ForeignKey, Index, JSON, Uuid
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops the offset; everything is stored in UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class BookingStatus(str, enum.Enum):
    """Booking lifecycle: PENDING moves once to CONFIRMED or FAILED."""
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    FAILED = 'FAILED'


class AllocationStatus(str, enum.Enum):
    """State of a seat allocation row; absent row means the seat is available."""
    HELD = 'HELD'
    ALLOCATED = 'ALLOCATED'


class Show(Base):
    __tablename__ = 'shows'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)
    ticket_price = Column(Numeric(10, 2))
    poster_url = Column(Text)
    trailer_url = Column(Text)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    allocations = relationship('SeatAllocation', back_populates='show', passive_deletes=True)
    bookings = relationship('Booking', back_populates='show', passive_deletes=True)
    holds = relationship('Hold', back_populates='show', passive_deletes=True)

    __table_args__ = (
        Index('idx_shows_start_time', 'start_time'),
    )

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "start_time": _iso(self.start_time),
            "total_seats": self.total_seats,
            "available_seats": self.available_seats,
            "ticket_price": float(self.ticket_price) if self.ticket_price is not None else None,
            "poster_url": self.poster_url,
            "trailer_url": self.trailer_url,
            "description": self.description,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Booking(Base):
    __tablename__ = 'bookings'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    show_id = Column(Uuid, ForeignKey('shows.id', ondelete='CASCADE'), nullable=False)
    user_name = Column(String(255), nullable=False)
    seats = Column(JSON, nullable=False)
    status = Column(Enum(BookingStatus, name='booking_status_enum'),
                    default=BookingStatus.PENDING, nullable=False)
    failure_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    show = relationship('Show', back_populates='bookings')
    allocations = relationship('SeatAllocation', back_populates='booking')

    __table_args__ = (
        Index('idx_bookings_show_created', 'show_id', 'created_at'),
    )

    def to_dict(self):
        data = {
            "id": str(self.id),
            "show_id": str(self.show_id),
            "user_name": self.user_name,
            "seats": list(self.seats),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if self.status == BookingStatus.FAILED:
            data["failure_reason"] = self.failure_reason
        return data


class Hold(Base):
    __tablename__ = 'holds'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    show_id = Column(Uuid, ForeignKey('shows.id', ondelete='CASCADE'), nullable=False)
    user_name = Column(String(255), nullable=False)
    seats = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    show = relationship('Show', back_populates='holds')

    __table_args__ = (
        Index('idx_holds_expires', 'expires_at'),
        Index('idx_holds_show', 'show_id'),
    )

    def to_dict(self):
        return {
            "hold_id": str(self.id),
            "show_id": str(self.show_id),
            "user_name": self.user_name,
            "seats": list(self.seats),
            "expires_at": _iso(self.expires_at),
        }


class SeatAllocation(Base):
    """Inventory ledger; the (show_id, seat_number) key forbids double allocation."""
    __tablename__ = 'seat_allocations'

    show_id = Column(Uuid, ForeignKey('shows.id', ondelete='CASCADE'), primary_key=True)
    seat_number = Column(Integer, primary_key=True, autoincrement=False)

    status = Column(Enum(AllocationStatus, name='allocation_status_enum'), nullable=False)
    booking_id = Column(Uuid, ForeignKey('bookings.id', ondelete='CASCADE'))
    hold_id = Column(Uuid, ForeignKey('holds.id', ondelete='CASCADE'))
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    show = relationship('Show', back_populates='allocations')
    booking = relationship('Booking', back_populates='allocations')

    __table_args__ = (
        Index('idx_allocations_booking', 'booking_id'),
        Index('idx_allocations_hold_expires', 'expires_at',
              postgresql_where=status == AllocationStatus.HELD),
    )

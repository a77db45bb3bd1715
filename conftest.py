"""Shared pytest fixtures: an isolated SQLite-backed app per test."""

from datetime import datetime, timedelta, timezone
import pytest
import uuid

from app import create_app
from config import Config
from models import Show, Booking, SeatAllocation, BookingStatus, AllocationStatus


class FakeClock:
    """Controllable replacement for the allocator's wall clock."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def app(tmp_path):
    config = Config(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        START_HOLD_SWEEPER=False,
        SHOW_LOCK_TIMEOUT_SECONDS=10,
    )
    app = create_app(config)
    app.config['TESTING'] = True
    yield app
    app.extensions['database'].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return app.extensions['database']


@pytest.fixture
def directory(app):
    return app.extensions['show_directory']


@pytest.fixture
def allocator(app):
    return app.extensions['booking_allocator']


@pytest.fixture
def clock(allocator):
    fake = FakeClock()
    allocator.clock = fake
    return fake


@pytest.fixture
def make_show(directory):
    counter = {"n": 0}

    def _make_show(total_seats=10, name=None, start_time=None):
        counter["n"] += 1
        return directory.create_show(
            name=name or f"Show {counter['n']}",
            start_time=start_time or datetime(2030, 1, counter["n"], 19, 0, tzinfo=timezone.utc),
            total_seats=total_seats,
        )

    return _make_show


@pytest.fixture
def check_inventory(db):
    return lambda show_id: assert_inventory_consistent(db, show_id)


def assert_inventory_consistent(db, show_id):
    """available + confirmed + held == total, confirmed seat sets disjoint, ledger matches bookings."""
    with db.get_session() as session:
        show = session.get(Show, uuid.UUID(str(show_id)))
        confirmed = session.query(Booking).filter(
            Booking.show_id == show.id,
            Booking.status == BookingStatus.CONFIRMED
        ).all()
        allocations = session.query(SeatAllocation).filter(SeatAllocation.show_id == show.id).all()

        confirmed_seats = [seat for booking in confirmed for seat in booking.seats]
        held = [a for a in allocations if a.status == AllocationStatus.HELD]
        allocated = sorted(a.seat_number for a in allocations if a.status == AllocationStatus.ALLOCATED)

        assert len(confirmed_seats) == len(set(confirmed_seats))
        assert sorted(confirmed_seats) == allocated
        assert show.available_seats + len(confirmed_seats) + len(held) == show.total_seats
        assert 0 <= show.available_seats <= show.total_seats

        for booking in confirmed:
            owned = sorted(a.seat_number for a in allocations if a.booking_id == booking.id)
            assert owned == sorted(booking.seats)

"""Allocator tests: check order, all-or-nothing, audit trail, release and concurrency."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
import random
import threading
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from booking_allocator import BookingAllocator
from exceptions import (
    NotFound, InvalidRequest, InsufficientInventory, InvalidSeat, SeatConflict, Internal,
)
from models import Booking, SeatAllocation, BookingStatus, utcnow


def allocation_count(db, show_id):
    with db.get_session() as session:
        return session.query(SeatAllocation).filter(
            SeatAllocation.show_id == uuid.UUID(show_id)
        ).count()


def failed_bookings(db, show_id):
    with db.get_session() as session:
        return session.query(Booking).filter(
            Booking.show_id == uuid.UUID(show_id),
            Booking.status == BookingStatus.FAILED
        ).all()


# ============================================================================
# Basic reservation
# ============================================================================

def test_reserve_confirms_and_decrements_counter(allocator, directory, make_show, check_inventory):
    show = make_show(total_seats=10)

    booking = allocator.reserve(show["id"], "Alice", [3, 1, 2])

    assert booking["status"] == "CONFIRMED"
    assert booking["seats"] == [3, 1, 2]
    assert booking["user_name"] == "Alice"
    assert booking["show_id"] == show["id"]
    assert directory.fetch_show(show["id"])["available_seats"] == 7
    assert directory.allocated_seats(show["id"]) == [1, 2, 3]
    check_inventory(show["id"])


def test_get_returns_identical_results(allocator, make_show):
    show = make_show()
    booking = allocator.reserve(show["id"], "Alice", [1])

    first = allocator.get(booking["id"])
    second = allocator.get(booking["id"])

    assert first == second == booking


def test_get_unknown_booking(allocator):
    with pytest.raises(NotFound):
        allocator.get(str(uuid.uuid4()))
    with pytest.raises(NotFound):
        allocator.get("not-a-uuid")


# ============================================================================
# Validation order
# ============================================================================

def test_unknown_show_is_checked_first(allocator):
    with pytest.raises(NotFound):
        allocator.reserve(str(uuid.uuid4()), "Alice", [])
    with pytest.raises(NotFound):
        allocator.reserve("garbage", "Alice", [1])


@pytest.mark.parametrize("seats", [[], [1, 1], [True], ["1"], None])
def test_malformed_seat_lists(allocator, make_show, db, seats):
    show = make_show()

    with pytest.raises(InvalidRequest):
        allocator.reserve(show["id"], "Alice", seats)

    assert allocation_count(db, show["id"]) == 0


def test_duplicate_seats_rejected_before_capacity(allocator, make_show, db):
    # A request is an ordered set of seats; repeating one is malformed input
    show = make_show(total_seats=1)

    with pytest.raises(InvalidRequest) as exc:
        allocator.reserve(show["id"], "Bob", [1, 1])

    assert "duplicates" in exc.value.message
    assert failed_bookings(db, show["id"]) == []


def test_default_clock_is_shared_utc_helper(app):
    allocator = BookingAllocator(
        app.extensions['database'], app.extensions['show_directory'], app.extensions['booking_allocator'].locks
    )

    assert allocator.clock is utcnow
    assert allocator.clock().tzinfo is not None


def test_seat_bounds(allocator, directory, make_show, db):
    show = make_show(total_seats=5)

    with pytest.raises(InvalidSeat) as low:
        allocator.reserve(show["id"], "Alice", [0])
    assert low.value.seat == 0

    with pytest.raises(InvalidSeat) as high:
        allocator.reserve(show["id"], "Alice", [6])
    assert high.value.seat == 6

    # Capacity is checked before seat 6's validity
    with pytest.raises(InsufficientInventory) as capacity:
        allocator.reserve(show["id"], "Alice", [1, 2, 3, 4, 5, 6])
    assert capacity.value.requested == 6
    assert capacity.value.available == 5

    assert directory.fetch_show(show["id"])["available_seats"] == 5
    assert allocation_count(db, show["id"]) == 0


def test_conflict_names_every_conflicting_seat(allocator, directory, make_show, check_inventory):
    show = make_show(total_seats=10)
    allocator.reserve(show["id"], "Alice", [3, 4])

    with pytest.raises(SeatConflict) as conflict:
        allocator.reserve(show["id"], "Bob", [3, 4, 5])

    assert conflict.value.seats == [3, 4]
    assert "3" in conflict.value.message and "4" in conflict.value.message
    assert 5 not in directory.allocated_seats(show["id"])
    assert directory.fetch_show(show["id"])["available_seats"] == 8
    check_inventory(show["id"])


def test_insufficient_inventory_after_partial_sale(allocator, make_show):
    show = make_show(total_seats=3)
    allocator.reserve(show["id"], "Alice", [1, 2])

    with pytest.raises(InsufficientInventory) as exc:
        allocator.reserve(show["id"], "Bob", [2, 3])

    assert exc.value.available == 1


# ============================================================================
# Failure audit
# ============================================================================

def test_failed_attempts_are_persisted(allocator, directory, make_show, db):
    show = make_show(total_seats=5)
    allocator.reserve(show["id"], "Alice", [1])

    with pytest.raises(SeatConflict):
        allocator.reserve(show["id"], "Bob", [1, 2])
    with pytest.raises(InvalidSeat):
        allocator.reserve(show["id"], "Carol", [9])

    failed = failed_bookings(db, show["id"])
    assert sorted(b.user_name for b in failed) == ["Bob", "Carol"]
    bob = next(b for b in failed if b.user_name == "Bob")
    assert bob.seats == [1, 2]
    assert "already booked" in bob.failure_reason

    with db.get_session() as session:
        owned = session.query(SeatAllocation).filter(
            SeatAllocation.booking_id.in_([b.id for b in failed])
        ).count()
    assert owned == 0

    # Visible through the read paths too
    statuses = [b["status"] for b in directory.bookings_for_show(show["id"])]
    assert statuses.count("FAILED") == 2
    assert allocator.get(str(bob.id))["status"] == "FAILED"


def test_invalid_requests_leave_no_audit_row(allocator, make_show, db):
    show = make_show()

    with pytest.raises(InvalidRequest):
        allocator.reserve(show["id"], "Alice", [])

    assert failed_bookings(db, show["id"]) == []


@pytest.mark.parametrize("audit_error", [
    OperationalError("INSERT INTO bookings", {}, Exception("disk full")),
    OSError("audit log volume unavailable"),
    RuntimeError("session hook failed"),
])
@pytest.mark.parametrize("seats, expected", [
    ([1], SeatConflict),
    ([2, 3, 4, 5, 6], InsufficientInventory),
    ([9], InvalidSeat),
])
def test_audit_failure_does_not_mask_original_error(allocator, make_show, db, monkeypatch,
                                                     audit_error, seats, expected):
    show = make_show(total_seats=5)
    allocator.reserve(show["id"], "Alice", [1])

    original = db.get_session
    calls = {"n": 0}

    @contextmanager
    def flaky_session():
        calls["n"] += 1
        if calls["n"] > 1:
            raise audit_error
        with original() as session:
            yield session

    monkeypatch.setattr(db, "get_session", flaky_session)

    with pytest.raises(expected):
        allocator.reserve(show["id"], "Bob", seats)

    monkeypatch.setattr(db, "get_session", original)
    assert failed_bookings(db, show["id"]) == []
    assert allocation_count(db, show["id"]) == 1


# ============================================================================
# Release
# ============================================================================

def test_release_some_seats(allocator, directory, make_show, check_inventory):
    show = make_show(total_seats=10)
    booking = allocator.reserve(show["id"], "Alice", [1, 2, 3])

    updated = allocator.release(booking["id"], [2])

    assert updated["seats"] == [1, 3]
    assert updated["status"] == "CONFIRMED"
    assert directory.allocated_seats(show["id"]) == [1, 3]
    assert directory.fetch_show(show["id"])["available_seats"] == 8
    check_inventory(show["id"])

    # Released seat can be sold again
    allocator.reserve(show["id"], "Bob", [2])
    check_inventory(show["id"])


def test_release_all_seats(allocator, directory, make_show, check_inventory):
    show = make_show(total_seats=4)
    booking = allocator.reserve(show["id"], "Alice", [1, 2])

    updated = allocator.release(booking["id"])

    assert updated["seats"] == []
    assert directory.allocated_seats(show["id"]) == []
    assert directory.fetch_show(show["id"])["available_seats"] == 4
    check_inventory(show["id"])

    with pytest.raises(InvalidRequest):
        allocator.release(booking["id"])


def test_release_rejects_foreign_seats(allocator, make_show):
    show = make_show()
    alice = allocator.reserve(show["id"], "Alice", [1])
    allocator.reserve(show["id"], "Bob", [2])

    with pytest.raises(InvalidSeat):
        allocator.release(alice["id"], [2])


def test_release_requires_confirmed_booking(allocator, make_show, db):
    show = make_show()
    allocator.reserve(show["id"], "Alice", [1])
    with pytest.raises(SeatConflict):
        allocator.reserve(show["id"], "Bob", [1])
    failed = failed_bookings(db, show["id"])[0]

    with pytest.raises(InvalidRequest):
        allocator.release(str(failed.id))
    with pytest.raises(NotFound):
        allocator.release(str(uuid.uuid4()))


# ============================================================================
# Concurrency
# ============================================================================

def test_two_concurrent_requests_for_same_seat(allocator, directory, make_show, check_inventory):
    show = make_show(total_seats=2)
    barrier = threading.Barrier(2)

    def attempt(name):
        barrier.wait()
        try:
            return allocator.reserve(show["id"], name, [1])["status"]
        except SeatConflict:
            return "CONFLICT"

    with ThreadPoolExecutor(max_workers=2) as executor:
        outcomes = list(executor.map(attempt, ["Alice", "Bob"]))

    assert sorted(outcomes) == ["CONFIRMED", "CONFLICT"]
    assert directory.fetch_show(show["id"])["available_seats"] == 1
    check_inventory(show["id"])


def test_concurrent_load_never_double_sells(allocator, directory, make_show, check_inventory):
    show = make_show(total_seats=20)
    users = 40
    barrier = threading.Barrier(users)
    rng = random.Random(7)
    requests = [rng.sample(range(1, 21), rng.randint(1, 3)) for _ in range(users)]

    def attempt(index):
        barrier.wait()
        try:
            return allocator.reserve(show["id"], f"user-{index}", requests[index])
        except (SeatConflict, InsufficientInventory):
            return None

    with ThreadPoolExecutor(max_workers=users) as executor:
        results = list(executor.map(attempt, range(users)))

    confirmed = [r for r in results if r is not None]
    sold = [seat for booking in confirmed for seat in booking["seats"]]

    assert confirmed
    assert len(sold) == len(set(sold))
    assert directory.fetch_show(show["id"])["available_seats"] == 20 - len(sold)
    check_inventory(show["id"])


def test_locks_are_per_show(allocator, make_show):
    show_a = make_show()
    show_b = make_show()
    locks = allocator.locks

    assert locks.lock_for(show_a["id"]) is locks.lock_for(show_a["id"])
    assert locks.lock_for(show_a["id"]) is not locks.lock_for(show_b["id"])

    # Holding show A's lock must not block show B
    with locks.hold(show_a["id"]):
        booking = allocator.reserve(show_b["id"], "Alice", [1])
    assert booking["status"] == "CONFIRMED"


def test_lock_timeout_leaves_no_partial_state(allocator, directory, make_show, db):
    show = make_show(total_seats=5)
    allocator.locks.timeout = 0.05
    lock = allocator.locks.lock_for(show["id"])

    lock.acquire()
    try:
        with pytest.raises(Internal):
            allocator.reserve(show["id"], "Alice", [1])
    finally:
        lock.release()

    assert allocation_count(db, show["id"]) == 0
    assert directory.fetch_show(show["id"])["available_seats"] == 5

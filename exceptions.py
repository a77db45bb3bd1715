"""Error taxonomy shared by the allocator, the show directory and the HTTP layer."""


class BookingError(Exception):
    """Base class for every error surfaced to API callers."""

    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message}
        payload.update(self.details)
        return payload


class NotFound(BookingError):
    """Referenced show, booking or hold does not exist."""

    status_code = 404


class InvalidRequest(BookingError):
    """Malformed input such as missing fields or an empty seat list."""

    status_code = 400


class InsufficientInventory(BookingError):
    status_code = 400

    def __init__(self, requested, available):
        super().__init__(
            f"Not enough seats available. Available: {available}, Requested: {requested}",
            requested=requested,
            available=available,
        )
        self.requested = requested
        self.available = available


class InvalidSeat(BookingError):
    status_code = 400

    def __init__(self, seat, total_seats=None, message=None):
        if message is None:
            message = f"Invalid seat number: {seat}. Must be between 1 and {total_seats}"
        super().__init__(message, seat=seat)
        self.seat = seat


class SeatConflict(BookingError):
    """One or more requested seats are already allocated or held."""

    status_code = 409

    def __init__(self, seats, held=False):
        seats = sorted(seats)
        state = "booked or held" if held else "booked"
        super().__init__(
            f"Seats already {state}: {', '.join(str(s) for s in seats)}",
            conflicting_seats=seats,
        )
        self.seats = seats
        self.held = held


class Internal(BookingError):
    """Storage or transaction failure; callers may retry."""

    status_code = 500

    def to_dict(self):
        # Internal details stay in the server log
        return {"error": "internal error"}

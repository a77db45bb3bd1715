"""HTTP entrypoint for the show booking backend."""

from flask import Flask, Blueprint, current_app, request, jsonify
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import atexit
import logging
import threading

from booking_allocator import BookingAllocator
from config import Config
from database_manager import DatabaseManager
from exceptions import BookingError, InvalidRequest
from show_directory import ShowDirectory
from show_locks import ShowLockRegistry

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

MIN_HOLD_SECONDS = 60
MAX_HOLD_SECONDS = 1800


def _allocator() -> BookingAllocator:
    return current_app.extensions['booking_allocator']


def _directory() -> ShowDirectory:
    return current_app.extensions['show_directory']


# Request validation

def require_json_object(allow_empty: bool = False) -> Dict[str, Any]:
    """Ensure the request body is a JSON object before proceeding."""
    if allow_empty and not request.data:
        return {}

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest("request body must be a JSON object")
    return data


def validate_seats(seats: Any) -> List[int]:
    """Seats must be a non-empty array of distinct integers."""
    if not isinstance(seats, list) or len(seats) == 0:
        raise InvalidRequest("seats must be provided as a non-empty JSON array")

    for index, seat in enumerate(seats):
        # bool is an int subclass
        if isinstance(seat, bool) or not isinstance(seat, int):
            raise InvalidRequest("each seat must be an integer", index=index)

    if len(set(seats)) != len(seats):
        raise InvalidRequest("seats must not contain duplicates")

    return seats


def require_string(data: Dict[str, Any], field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{field} must be a non-empty string")
    return value.strip()


def optional_string(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"{field} must be a string")
    return value


def optional_url(data: Dict[str, Any], field: str) -> Optional[str]:
    value = optional_string(data, field)
    if value is None:
        return None
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidRequest(f"{field} must be a valid http(s) URL")
    return value


def parse_start_time(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest("start_time must be an ISO 8601 timestamp")
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise InvalidRequest("start_time must be an ISO 8601 timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_total_seats(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRequest("total_seats must be a positive integer")
    return value


def parse_ticket_price(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InvalidRequest("ticket_price must be a number")
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise InvalidRequest("ticket_price must be a number")
    if not price.is_finite() or price < 0:
        raise InvalidRequest("ticket_price must be a non-negative number")
    return price


def parse_hold_duration(data: Dict[str, Any], default: int) -> int:
    duration_raw = data.get('hold_duration_seconds', default)
    if isinstance(duration_raw, bool):  # Reject boolean masquerading as int
        raise InvalidRequest("hold_duration_seconds must be an integer between 60 and 1800 seconds")

    if isinstance(duration_raw, (int, float)):
        duration_int = int(duration_raw)
    elif isinstance(duration_raw, str) and duration_raw.isdigit():
        duration_int = int(duration_raw)
    else:
        raise InvalidRequest("hold_duration_seconds must be an integer between 60 and 1800 seconds")

    return max(MIN_HOLD_SECONDS, min(duration_int, MAX_HOLD_SECONDS))


# Error handling

@api.app_errorhandler(BookingError)
def handle_booking_error(error: BookingError):
    if error.status_code >= 500:
        logger.error(f"Request failed: {error.message}")
    return jsonify(error.to_dict()), error.status_code


@api.app_errorhandler(SQLAlchemyError)
def handle_database_error(error: SQLAlchemyError):
    logger.exception("Unhandled database error")
    return jsonify({"error": "internal error"}), 500


# Bookings

@api.route('/booking', methods=['POST'])
def create_booking():
    """Reserve specific seats for a customer."""
    data = require_json_object()

    if not data.get('show_id') or not data.get('user_name') or not isinstance(data.get('seats'), list):
        raise InvalidRequest("Missing required fields: show_id, user_name, seats (array)")

    show_id = require_string(data, 'show_id')
    user_name = require_string(data, 'user_name')
    seats = validate_seats(data.get('seats'))

    booking = _allocator().reserve(show_id, user_name, seats)
    return jsonify(booking), 201


@api.route('/booking/<booking_id>', methods=['GET'])
def get_booking(booking_id):
    return jsonify(_allocator().get(booking_id))


@api.route('/booking/<booking_id>/release', methods=['POST'])
def release_booking_seats(booking_id):
    """Return some or all seats of a confirmed booking to inventory."""
    data = require_json_object(allow_empty=True)
    seats = data.get('seats')
    if seats is not None:
        seats = validate_seats(seats)

    return jsonify(_allocator().release(booking_id, seats))


# Shows

@api.route('/admin/show', methods=['POST'])
def create_show():
    data = require_json_object()

    show = _directory().create_show(
        name=require_string(data, 'name'),
        start_time=parse_start_time(data.get('start_time')),
        total_seats=parse_total_seats(data.get('total_seats')),
        ticket_price=parse_ticket_price(data.get('ticket_price')),
        poster_url=optional_url(data, 'poster_url'),
        trailer_url=optional_url(data, 'trailer_url'),
        description=optional_string(data, 'description'),
    )
    return jsonify(show), 201


@api.route('/admin/show/<show_id>', methods=['DELETE'])
def delete_show(show_id):
    result = _directory().delete_show(show_id)
    return jsonify({"message": "show deleted", **result})


@api.route('/shows', methods=['GET'])
def list_shows():
    return jsonify(_directory().list_shows())


@api.route('/shows/<show_id>', methods=['GET'])
def get_show(show_id):
    return jsonify(_directory().fetch_show(show_id))


@api.route('/shows/<show_id>/allocated-seats', methods=['GET'])
def get_allocated_seats(show_id):
    return jsonify(_directory().allocated_seats(show_id))


@api.route('/shows/<show_id>/bookings', methods=['GET'])
def get_show_bookings(show_id):
    return jsonify(_directory().bookings_for_show(show_id))


# Holds

@api.route('/shows/<show_id>/hold', methods=['POST'])
def hold_seats(show_id):
    """Place a temporary hold on the requested seats."""
    data = require_json_object()

    user_name = require_string(data, 'user_name')
    seats = validate_seats(data.get('seats'))
    duration = parse_hold_duration(data, current_app.config['HOLD_DURATION_SECONDS'])

    hold = _allocator().hold_seats(show_id, user_name, seats, duration)
    return jsonify(hold), 201


@api.route('/holds/<hold_id>/confirm', methods=['POST'])
def confirm_hold(hold_id):
    """Convert an active hold into a confirmed booking."""
    return jsonify(_allocator().confirm_hold(hold_id))


@api.route('/holds/<hold_id>/release', methods=['POST'])
def release_hold(hold_id):
    """Release a hold early, making seats available immediately."""
    result = _allocator().release_hold(hold_id)
    return jsonify({"message": "hold released", **result})


@api.route('/health', methods=['GET'])
def health_check():
    """Expose the database connectivity and show count."""
    status = current_app.extensions['database'].health_check()
    return jsonify(status), 200 if status["status"] == "healthy" else 503


# Background hold expiry

def start_hold_sweeper(allocator: BookingAllocator, interval: float):
    """Periodically remove expired holds without blocking request threads."""
    stop_event = threading.Event()

    def background_cleanup():
        while not stop_event.is_set():
            try:
                cleaned = allocator.cleanup_expired_holds()
                if cleaned > 0:
                    logger.info(f"Background cleanup: {cleaned} held seats released")
            except Exception as e:
                logger.error(f"Background cleanup error: {e}")
            stop_event.wait(interval)
        logger.info("Hold sweeper terminated")

    thread = threading.Thread(target=background_cleanup, name="hold-sweeper", daemon=True)
    thread.start()
    return thread, stop_event


def create_app(config: Optional[Config] = None) -> Flask:
    config = config or Config()
    logging.basicConfig(level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO))

    app = Flask(__name__)
    app.config.from_object(config)
    CORS(app)

    db = DatabaseManager(config.DATABASE_URL)
    locks = ShowLockRegistry(timeout=config.SHOW_LOCK_TIMEOUT_SECONDS)
    directory = ShowDirectory(db, locks)
    allocator = BookingAllocator(
        db, directory, locks,
        default_hold_seconds=config.HOLD_DURATION_SECONDS
    )

    app.extensions['database'] = db
    app.extensions['show_directory'] = directory
    app.extensions['booking_allocator'] = allocator
    app.register_blueprint(api)

    if config.START_HOLD_SWEEPER:
        _, stop_event = start_hold_sweeper(allocator, config.HOLD_CLEANUP_INTERVAL_SECONDS)
        app.extensions['hold_sweeper_stop'] = stop_event
        atexit.register(stop_event.set)

    return app


if __name__ == '__main__':
    config = Config()
    app = create_app(config)

    logger.info("""
    ================================
    SHOW BOOKING SERVICE
    ================================
    Database: %s
    Concurrency: per-show lock + SELECT FOR UPDATE
    ================================
    """, app.extensions['database'].engine.url.render_as_string(hide_password=True))

    app.run(host="0.0.0.0", port=config.PORT, debug=False, threaded=True)

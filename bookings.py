import logging
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from database import StoreError, TableStore
from errors import FieldError, NotFoundError, TransitionError
from schemas import Booking

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "bookings"
DEFAULT_ROWS_PER_PAGE = 5

_UUID_V4 = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)


def is_valid_uuid(value: Optional[str]) -> bool:
    if not value or not isinstance(value, str):
        return False
    return bool(_UUID_V4.match(value))


def filter_bookings(bookings: List[Booking], query: str) -> List[Booking]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(bookings)
    return [
        b for b in bookings
        if any(needle in (field or "").lower() for field in (b.driver_name, b.pickup_location, b.drop_location))
    ]


def paginate(items: List[Booking], page: int = 0, rows_per_page: int = DEFAULT_ROWS_PER_PAGE) -> Tuple[List[Booking], int]:
    start = page * rows_per_page
    return items[start:start + rows_per_page], len(items)


class BookingService:
    def __init__(self, store: TableStore):
        self.store = store

    def list_for_user(self, user_id: str) -> List[Booking]:
        rows = self.store.select(BOOKINGS_TABLE, {"user_id": user_id}, order_by="created_at", descending=True)
        bookings = []
        for row in rows:
            try:
                bookings.append(Booking(**row))
            except ValidationError as e:
                logger.error("Skipping malformed booking %s: %s", row.get("id"), e)
        return bookings

    def get_for_user(self, booking_id: Optional[str], user_id: str) -> Booking:
        if not is_valid_uuid(booking_id):
            raise FieldError("id", "Invalid booking ID format")
        row = self.store.select_one(BOOKINGS_TABLE, {"id": booking_id, "user_id": user_id})
        if row is None:
            raise NotFoundError("Booking not found")
        return Booking(**row)

    def cancel(self, booking: Booking, user_id: str) -> Booking:
        """Cancel a confirmed booking; the returned copy reflects the stored row."""
        if booking.status != "Confirmed":
            raise TransitionError(f"Only confirmed bookings can be cancelled (status is {booking.status})")
        try:
            matched = self.store.update(BOOKINGS_TABLE, {"status": "Cancelled"}, {"id": booking.id, "user_id": user_id})
        except StoreError as e:
            logger.error("Error cancelling booking %s: %s", booking.id, e)
            raise
        if matched == 0:
            raise NotFoundError("Booking not found")
        logger.info("Booking %s cancelled", booking.id)
        return booking.model_copy(update={"status": "Cancelled"})

    def rate(self, booking: Booking, user_id: str, rating: int, review: Optional[str] = None) -> Booking:
        if booking.status != "Completed":
            raise TransitionError("Only completed bookings can be rated")
        if booking.rated:
            raise TransitionError("This booking has already been rated")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise FieldError("rating", "Rating must be between 1 and 5")
        patch = {"rating": rating, "review": review or "", "rated": True}
        try:
            matched = self.store.update(BOOKINGS_TABLE, patch, {"id": booking.id, "user_id": user_id})
        except StoreError as e:
            logger.error("Error submitting review for booking %s: %s", booking.id, e)
            raise
        if matched == 0:
            raise NotFoundError("Booking not found")
        return booking.model_copy(update=patch)

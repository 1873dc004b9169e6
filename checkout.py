"""
Checkout wizard

Steps run in a fixed order and every forward move is validated:

    SELECTING_DRIVER -> ENTERING_TRIP_DETAILS -> ENTERING_PAYMENT -> REVIEW_AND_CONFIRM

Submission is only possible from REVIEW_AND_CONFIRM and moves the wizard
through SUBMITTING to SUBMITTED. A failed submission leaves the wizard on the
review step so the caller can try again.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Callable, Optional

from pydantic import BaseModel

from database import StoreError, TableStore, isoformat, utcnow
from errors import FieldError
from schemas import Booking, Driver, PaymentDetails, TripDetails

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "bookings"
DURATION_CHOICES = (1, 2, 4, 6, 8, 12, 24)
DEFAULT_DURATION = 4
MIN_LEAD_TIME = timedelta(hours=1)
CASH_METHOD = "cod"
CARD_METHODS = ("credit_card", "debit_card")
REDIRECT_TO = "/bookings"
REDIRECT_DELAY_SECONDS = 3


class CheckoutStep(IntEnum):
    SELECTING_DRIVER = 0
    ENTERING_TRIP_DETAILS = 1
    ENTERING_PAYMENT = 2
    REVIEW_AND_CONFIRM = 3


class SubmitStatus(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"


class StepResult(BaseModel):
    ok: bool
    step: CheckoutStep
    field: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, step: CheckoutStep) -> "StepResult":
        return cls(ok=True, step=step)

    @classmethod
    def rejected(cls, step: CheckoutStep, field: Optional[str], message: str) -> "StepResult":
        return cls(ok=False, step=step, field=field, message=message)


class WizardUnavailable(Exception):
    """No valid driver to book; send the caller back to the catalog."""

    redirect_to = "/drivers"


class BookingSubmissionError(Exception):
    pass


def total_amount(driver: Driver, duration_hours: int) -> float:
    return driver.price * duration_hours


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def validate_trip(trip: TripDetails, now: datetime) -> Optional[FieldError]:
    if trip.pickup_datetime is None:
        return FieldError("pickup_datetime", "Please select pickup date and time")
    if _aware(trip.pickup_datetime) < _aware(now) + MIN_LEAD_TIME:
        return FieldError("pickup_datetime", "Pickup must be at least one hour from now")
    if not trip.pickup_location.strip():
        return FieldError("pickup_location", "Please enter pickup location")
    if not trip.drop_location.strip():
        return FieldError("drop_location", "Please enter drop location")
    return None


def validate_payment(payment: PaymentDetails) -> Optional[FieldError]:
    if payment.method in CARD_METHODS:
        for field in ("card_number", "card_name", "expiry_date", "cvv"):
            if not getattr(payment, field).strip():
                return FieldError(field, "Please fill in all card details")
    elif payment.method == "upi":
        if not payment.upi_id.strip():
            return FieldError("upi_id", "Please enter UPI ID")
    elif payment.method == "netbanking":
        if not payment.bank_name.strip():
            return FieldError("bank_name", "Please select your bank")
    return None


class CheckoutWizard:
    def __init__(
        self,
        driver: Optional[Driver],
        user_id: str,
        store: TableStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        if driver is None or not driver.is_valid():
            raise WizardUnavailable("Please select a driver first")
        self.driver = driver
        self.user_id = user_id
        self.store = store
        self.clock = clock
        self.step = CheckoutStep.SELECTING_DRIVER
        self.status = SubmitStatus.IDLE
        self.duration_hours = DEFAULT_DURATION
        self.trip = TripDetails()
        self.payment = PaymentDetails()
        self.error: Optional[str] = None
        self.booking: Optional[Booking] = None

    @property
    def total_amount(self) -> float:
        return total_amount(self.driver, self.duration_hours)

    @property
    def redirect_to(self) -> Optional[str]:
        return REDIRECT_TO if self.status == SubmitStatus.SUBMITTED else None

    def _editable(self):
        if self.status != SubmitStatus.IDLE:
            raise FieldError(None, "Booking has already been submitted")

    def set_duration(self, hours: int):
        self._editable()
        if hours not in DURATION_CHOICES:
            raise FieldError("duration_hours", f"Duration must be one of {', '.join(map(str, DURATION_CHOICES))} hours")
        self.duration_hours = hours

    def set_trip(self, trip: TripDetails):
        self._editable()
        self.trip = trip

    def set_payment(self, payment: PaymentDetails):
        self._editable()
        self.payment = payment

    def _reject(self, error: FieldError) -> StepResult:
        self.error = error.message
        return StepResult.rejected(self.step, error.field, error.message)

    def next(self) -> StepResult:
        if self.status != SubmitStatus.IDLE:
            return StepResult.rejected(self.step, None, "Booking has already been submitted")
        if self.step == CheckoutStep.REVIEW_AND_CONFIRM:
            return StepResult.rejected(self.step, None, "Confirm the booking to continue")

        error = None
        if self.step == CheckoutStep.ENTERING_TRIP_DETAILS:
            error = validate_trip(self.trip, self.clock())
        elif self.step == CheckoutStep.ENTERING_PAYMENT:
            error = validate_payment(self.payment)
        if error is not None:
            return self._reject(error)

        self.error = None
        self.step = CheckoutStep(self.step + 1)
        return StepResult.success(self.step)

    def back(self) -> StepResult:
        if self.status != SubmitStatus.IDLE:
            return StepResult.rejected(self.step, None, "Booking has already been submitted")
        if self.step == CheckoutStep.SELECTING_DRIVER:
            return StepResult.rejected(self.step, None, "Already at the first step")
        self.error = None
        self.step = CheckoutStep(self.step - 1)
        return StepResult.success(self.step)

    def submit(self) -> Booking:
        if self.step != CheckoutStep.REVIEW_AND_CONFIRM or self.status != SubmitStatus.IDLE:
            raise FieldError(None, "Booking can only be confirmed from the review step")
        now = self.clock()
        error = validate_trip(self.trip, now)
        if error is not None:
            self.error = error.message
            raise error

        self.status = SubmitStatus.SUBMITTING
        row = {
            "id": str(uuid.uuid4()),
            "user_id": self.user_id,
            "driver_id": self.driver.id,
            "driver_name": self.driver.name,
            "pickup_location": self.trip.pickup_location.strip(),
            "drop_location": self.trip.drop_location.strip(),
            "pickup_datetime": isoformat(self.trip.pickup_datetime),
            "duration_hours": self.duration_hours,
            "notes": self.trip.notes,
            "status": "Confirmed",
            "payment_method": self.payment.method,
            "payment_status": "Pending" if self.payment.method == CASH_METHOD else "Paid",
            "total_amount": self.total_amount,
            "rating": None,
            "review": None,
            "rated": False,
            "created_at": isoformat(now),
        }
        try:
            self.store.insert(BOOKINGS_TABLE, [row])
        except StoreError as e:
            logger.error("Error creating booking for driver %s: %s", self.driver.id, e)
            self.status = SubmitStatus.IDLE
            self.error = e.message or "An error occurred while processing your booking"
            raise BookingSubmissionError(self.error) from e

        self.booking = Booking(**row)
        self.status = SubmitStatus.SUBMITTED
        self.error = None
        logger.info("Booking %s confirmed for user %s", row["id"], self.user_id)
        return self.booking

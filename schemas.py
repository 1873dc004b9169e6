"""
Database Schemas for the Driver Booking marketplace

Each Pydantic model mirrors a row in one of the hosted tables.

Tables:
- auth_users      (Identity, owned by the auth service)
- user_profiles   (RiderProfile)
- driver_profiles (DriverProfile)
- drivers         (Driver, the browsable catalog)
- bookings        (Booking)
"""

import math
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

BookingStatus = Literal["Confirmed", "Cancelled", "Completed"]
PaymentStatus = Literal["Pending", "Paid"]
PaymentMethod = Literal["credit_card", "debit_card", "upi", "netbanking", "cod"]
DriverApplicationStatus = Literal["pending", "approved", "rejected"]

LICENSE_TYPES = (
    "Commercial Driver License (CDL)",
    "Light Commercial Vehicle (LCV)",
    "Heavy Commercial Vehicle (HCV)",
    "Public Service Vehicle (PSV)",
)
VEHICLE_TYPES = ("Sedan", "SUV", "Luxury Sedan", "Premium SUV", "Van")


class Identity(BaseModel):
    id: str
    email: str
    user_metadata: Dict[str, Any] = Field(default_factory=dict)
    app_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def provider(self) -> str:
        return self.app_metadata.get("provider", "email")


class Session(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: Identity


def _number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(number) else number


class Driver(BaseModel):
    id: Optional[str] = None
    name: str = "Unknown Driver"
    image: str = "/drivers/default.jpg"
    rating: float = Field(0, ge=0, le=5)
    experience: str = "0 years"
    location: str = "Unknown"
    vehicle: str = "Standard"
    status: str = "Unavailable"
    price: float = Field(0, ge=0, description="Hourly rate")
    description: Optional[str] = None

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "Driver":
        raw_id = data.get("id")
        return cls(
            id=str(raw_id) if raw_id not in (None, "") else None,
            name=data.get("name") or "Unknown Driver",
            image=data.get("image") or "/drivers/default.jpg",
            rating=min(max(_number(data.get("rating")), 0), 5),
            experience=data.get("experience") or "0 years",
            location=data.get("location") or "Unknown",
            vehicle=data.get("vehicle") or "Standard",
            status=data.get("status") or "Unavailable",
            price=max(_number(data.get("price")), 0),
            description=data.get("description"),
        )

    def is_valid(self) -> bool:
        return bool(self.id) and bool(self.name)


class RiderProfile(BaseModel):
    kind: Literal["rider"] = "rider"
    id: Optional[str] = None
    email: str
    full_name: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    avatar_url: str = ""
    # Set on rider rows of accounts that went through driver intake
    is_driver: bool = False
    persisted: bool = True


class DriverProfile(BaseModel):
    kind: Literal["driver"] = "driver"
    id: Optional[str] = None
    user_id: str
    email: str = ""
    full_name: str = ""
    phone_number: str = ""
    license_number: str = ""
    license_type: str = ""
    license_expiry_date: Optional[date] = None
    license_picture_url: Optional[str] = None
    years_of_experience: int = 0
    vehicle_type: str = ""
    previous_employment: str = ""
    languages_spoken: List[str] = Field(default_factory=list)
    status: DriverApplicationStatus = "pending"

    @property
    def is_driver(self) -> bool:
        return True


Profile = Annotated[Union[RiderProfile, DriverProfile], Field(discriminator="kind")]


class Booking(BaseModel):
    id: str
    user_id: str
    driver_id: str
    driver_name: str
    pickup_location: str
    drop_location: str
    pickup_datetime: datetime
    duration_hours: int = Field(..., gt=0)
    notes: str = ""
    status: BookingStatus = "Confirmed"
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    total_amount: float = Field(..., ge=0)
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = None
    rated: bool = False
    created_at: datetime


class TripDetails(BaseModel):
    pickup_datetime: Optional[datetime] = None
    pickup_location: str = ""
    drop_location: str = ""
    notes: str = ""


class PaymentDetails(BaseModel):
    method: PaymentMethod = "credit_card"
    card_number: str = ""
    card_name: str = ""
    expiry_date: str = ""
    cvv: str = ""
    upi_id: str = ""
    bank_name: str = ""


class DriverApplication(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    license_number: str = Field(..., min_length=1)
    license_type: Literal[LICENSE_TYPES]
    license_expiry_date: Optional[date] = None
    experience: str = Field("", description="Free text, e.g. '5' or '5+ years'")
    vehicle_type: Literal[VEHICLE_TYPES]
    previous_employment: str = ""
    languages: List[str] = Field(default_factory=list)
    email: Optional[str] = None


class UploadedDocument(BaseModel):
    filename: str
    content_type: Optional[str] = None
    data: bytes

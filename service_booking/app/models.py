"""
Data contracts for the booking state layer.

Upstream catalog payloads are parsed into these models so each cached entity
type carries an explicit shape. Unknown upstream fields are kept (``extra``).
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UpstreamModel(BaseModel):
    """Base for camelCase upstream payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Category(UpstreamModel):
    """Catalog category."""

    id: int
    name: str
    is_visible: bool = Field(default=True, alias="isVisible")


class Product(UpstreamModel):
    """Tour product summary or detail."""

    product_code: str = Field(alias="productCode")
    name: str
    short_description: Optional[str] = Field(default=None, alias="shortDescription")
    description: Optional[str] = None
    advertised_price: Optional[float] = Field(default=None, alias="advertisedPrice")
    product_type: Optional[str] = Field(default=None, alias="productType")
    status: Optional[str] = None
    quantity_required_min: Optional[int] = Field(default=None, alias="quantityRequiredMin")
    quantity_required_max: Optional[int] = Field(default=None, alias="quantityRequiredMax")
    location_address: Optional[Union[str, Dict[str, Any]]] = Field(default=None, alias="locationAddress")


class PickupLocation(UpstreamModel):
    """A pickup point offered for a product."""

    id: Optional[str] = None
    location_name: str = Field(alias="locationName")
    address: Optional[Union[str, Dict[str, Any]]] = None
    pickup_time: Optional[str] = Field(default=None, alias="pickupTime")
    minutes_prior: Optional[int] = Field(default=None, alias="minutesPrior")
    additional_instructions: Optional[str] = Field(default=None, alias="additionalInstructions")
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_upstream(cls, raw: Dict[str, Any]) -> "PickupLocation":
        """Accept both ``locationName`` (pickup list API) and ``name`` (session payloads)."""
        data = dict(raw)
        if "locationName" not in data and "name" in data:
            data["locationName"] = data.pop("name")
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        return cls.model_validate(data)


class AvailabilitySession(UpstreamModel):
    """A bookable session for a product."""

    id: Union[str, int]
    start_time_local: str = Field(alias="startTimeLocal")
    end_time_local: Optional[str] = Field(default=None, alias="endTimeLocal")
    seats_available: int = Field(default=0, alias="seatsAvailable")
    total_price: Optional[float] = Field(default=None, alias="totalPrice")
    pickup_id: Optional[str] = Field(default=None, alias="pickupId")


class PaymentType(str, Enum):
    """Payment instrument the customer chose."""
    CREDITCARD = "CREDITCARD"
    BANKTRANSFER = "BANKTRANSFER"
    CASH = "CASH"


class BookedProduct(UpstreamModel):
    code: str
    name: str
    description: Optional[str] = None


class BookedSession(UpstreamModel):
    id: str
    start_time: str = Field(alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    pickup_location: Optional[Any] = Field(default=None, alias="pickupLocation")


class Guest(UpstreamModel):
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    age: Optional[int] = None
    type: str = "ADULT"


class Contact(UpstreamModel):
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    email: str
    phone: Optional[str] = None
    country: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.strip()


class Pricing(UpstreamModel):
    base_price: Optional[float] = Field(default=None, alias="basePrice")
    session_price: Optional[float] = Field(default=None, alias="sessionPrice")
    subtotal: Optional[float] = None
    tax_and_fees: Optional[float] = Field(default=None, alias="taxAndFees")
    total: float = Field(ge=0)


class Payment(UpstreamModel):
    type: PaymentType = PaymentType.CREDITCARD
    method: Optional[str] = None


class BookingSubmission(UpstreamModel):
    """Booking form data captured before the payment redirect."""

    product: BookedProduct
    session: Optional[BookedSession] = None
    guests: List[Guest] = Field(default_factory=list)
    contact: Contact
    pricing: Pricing
    payment: Payment = Field(default_factory=Payment)


class BookingRegistration(BaseModel):
    """Body of the booking register route."""

    model_config = ConfigDict(populate_by_name=True)

    order_number: str = Field(alias="orderNumber", min_length=1)
    booking_data: BookingSubmission = Field(alias="bookingData")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class LoginRequest(BaseModel):
    """Credentials posted to the login route."""

    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str
    remember_me: bool = Field(default=False, alias="rememberMe")


class PickupSource(str, Enum):
    """Where a pickup resolution came from."""
    LOCAL_FILES = "local_files"
    REZDY_API = "rezdy_api"
    NONE = "none"


class PickupAccuracy(str, Enum):
    HIGH = "high"
    LOW = "low"

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PAID = "paid"
    DONE = "done"
    COMPLETED = "completed"


class BookingAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    PAY = "pay"
    MARK_DONE = "mark_done"
    COMPLETE = "complete"


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    provider_flag_claimed: bool = False
    loaded: bool = False


class ProfileFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_client_profile: bool = False
    has_provider_profile: bool = False


class RoleRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Literal["none", "client", "provider"]
    has_client_profile: bool
    has_provider_profile: bool


class RoleVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_client: bool = False
    is_provider: bool = False
    is_authenticated: bool = False
    is_verified: bool = False


class ClientProfileRequest(BaseModel):
    full_name: str
    phone: Optional[str] = None


class ProviderProfileRequest(BaseModel):
    full_name: str
    trade: str
    bio: str = ""


class ClientProfile(BaseModel):
    user_id: str
    full_name: str
    phone: Optional[str] = None
    created_at: str


class ProviderProfile(BaseModel):
    user_id: str
    full_name: str
    trade: str
    bio: str = ""
    created_at: str


class ProfileOverview(BaseModel):
    user_id: str
    client_profile: Optional[ClientProfile] = None
    provider_profile: Optional[ProviderProfile] = None


class ServiceCreateRequest(BaseModel):
    name: str
    category: str
    description: str = ""
    base_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class Service(BaseModel):
    id: str
    provider_id: str
    name: str
    category: str
    description: str = ""
    base_price: Decimal


class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Location(BaseModel):
    address: str
    coordinates: Optional[Coordinates] = None


class BookingCreateRequest(BaseModel):
    service_id: str
    description: str = ""
    location: Location
    scheduled_time: str


class Booking(BaseModel):
    id: str
    client_id: str
    provider_id: str
    service_id: str
    description: str = ""
    location: Location
    scheduled_time: str
    fee: Optional[Decimal] = None
    status: BookingStatus
    created_at: str
    updated_at: str
    version: int = 1

    @property
    def fee_cents(self) -> Optional[int]:
        if self.fee is None:
            return None
        return money_to_cents(self.fee)


class BookingTransitionRequest(BaseModel):
    action: BookingAction
    fee: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    expected_status: Optional[BookingStatus] = None


class BookingTransitionResult(BaseModel):
    booking: Booking
    applied: bool


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_user_id: str
    action: BookingAction
    from_status: BookingStatus
    to_status: BookingStatus
    created_at: str


class CheckoutRequest(BaseModel):
    booking_id: str
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)


class CheckoutSession(BaseModel):
    booking_id: str
    session_id: str
    checkout_url: str
    amount_cents: int
    created_at: str


class PaymentConfirmRequest(BaseModel):
    booking_id: str


class PaymentReconcileRequest(BaseModel):
    booking_id: str
    session_id: str


class PaymentMetadata(BaseModel):
    service_name: str = ""
    provider_name: str = ""


class GatewaySessionStatus(BaseModel):
    session_id: str
    booking_id: Optional[str] = None
    paid: bool
    amount_cents: int
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentRecord(BaseModel):
    booking_id: str
    gateway_session_id: str
    amount_cents: int
    status: Literal["paid"] = "paid"
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)
    source: Literal["confirmation", "webhook", "manual_reconciliation"]
    created_at: str


class ChatMessageCreate(BaseModel):
    message: str


class ChatMessage(BaseModel):
    id: str
    booking_id: str
    sender_id: str
    sender_name: str
    message: str
    created_at: str


class ChatThreadMetadata(BaseModel):
    booking_id: str
    last_message: Optional[ChatMessage] = None
    last_message_at: str
    unread_count: int = 0


class BookingSnapshot(BaseModel):
    service_name: str
    counterpart_name: str
    status: BookingStatus
    scheduled_time: str


class ChatThreadSummary(BaseModel):
    booking_id: str
    last_message: Optional[ChatMessage] = None
    last_message_at: str
    unread_count: int = 0
    booking: BookingSnapshot


class RecentThreadsView(BaseModel):
    threads: list[ChatThreadSummary]
    total_count: int


class ReviewCreateRequest(BaseModel):
    booking_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    issues: list[str] = Field(default_factory=list)
    detailed_feedback: str = ""


class Review(BaseModel):
    id: str
    booking_id: str
    service_id: str
    provider_id: str
    client_id: str
    rating: int
    comment: str = ""
    issues: list[str] = Field(default_factory=list)
    detailed_feedback: str = ""
    created_at: str


class ReviewListView(BaseModel):
    reviews: list[Review]
    total_count: int
    average_rating: Optional[float] = None


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "handyman-demo"
    provider_flag: bool = False


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    provider_flag: bool
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    provider_flag: bool
    verdict: RoleVerdict


class ApiError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    redirect_to: Optional[str] = None


class ApiResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[ApiError] = None


def ok(data: Any = None) -> ApiResponse:
    return ApiResponse(success=True, data=data)


CENT = Decimal("0.01")
MAX_CENTS = 2**63 - 1


def cents_to_money(cents: Optional[int]) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT)


def money_to_cents(amount: Decimal) -> int:
    """Convert a money amount to integer cents, rejecting sub-cent precision.

    Results must fit a signed 64-bit sqlite INTEGER.
    """
    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation as exc:
        raise ValueError("Amount is out of range") from exc
    if quantized != amount:
        raise ValueError("Amounts are limited to two decimal places")
    cents = int(quantized * 100)
    if abs(cents) > MAX_CENTS:
        raise ValueError("Amount is out of range")
    return cents

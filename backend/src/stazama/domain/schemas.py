"""Pydantic v2 schemas for API request/response validation.

``InspectionRequestRecord`` is the typed boundary for rows entering the
dashboard: enumerated columns are parsed into enums, and unknown values fall
back to a safe default instead of leaking arbitrary strings downstream.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stazama.domain.enums import RequestStatus, ServiceTier, UserRole

logger = logging.getLogger(__name__)

PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"


# ---------------------------------------------------------------------------
# Auth / profiles
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Schema for creating a new account. New accounts always start as 'user'."""

    email: str
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileResponse(BaseModel):
    """Schema for profile API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    role: UserRole = UserRole.USER
    created_at: Optional[datetime] = None

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value):
        return UserRole.parse(value)


class ProfileUpdate(BaseModel):
    """Owner-editable profile fields."""

    full_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    address: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: ProfileResponse


class RoleUpdateRequest(BaseModel):
    target_user_id: str
    new_role: UserRole


# ---------------------------------------------------------------------------
# Directory views
# ---------------------------------------------------------------------------


class AgentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None


class ClientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: Optional[datetime] = None


class UserWithRoleOut(ClientOut):
    role: UserRole = UserRole.USER

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value):
        return UserRole.parse(value)


# ---------------------------------------------------------------------------
# Inspection requests
# ---------------------------------------------------------------------------


class InspectionRequestCreate(BaseModel):
    """Customer-facing submission form, validated before any network call."""

    customer_name: str = Field(min_length=2, max_length=100)
    whatsapp: str = Field(pattern=PHONE_PATTERN)
    customer_address: Optional[str] = None
    store_name: str = Field(min_length=2, max_length=100)
    store_location: str = Field(min_length=5, max_length=200)
    product_details: str = Field(min_length=10, max_length=1000)
    service_tier: ServiceTier = ServiceTier.INSPECTION
    delivery_notes: Optional[str] = None
    payment_method: Optional[str] = None


class InspectionRequestInsert(InspectionRequestCreate):
    """Row as sent to the store: form fields plus client-generated identity."""

    tracking_id: str = Field(pattern=r"^STZ-[0-9A-Z]+-[0-9A-Z]+$")
    service_fee: Optional[float] = None
    user_id: Optional[str] = None


class TrackedOrderUpdate(BaseModel):
    """Fields a requester may edit by tracking code, without an account."""

    customer_name: str = Field(min_length=2)
    whatsapp: str = Field(pattern=PHONE_PATTERN)
    customer_address: Optional[str] = None
    store_name: str = Field(min_length=2)
    store_location: str = Field(min_length=5)
    product_details: str = Field(min_length=10)


class TrackingLookup(BaseModel):
    tracking_id: str = Field(min_length=1)


class TrackedOrderUpdateRequest(TrackingLookup):
    fields: TrackedOrderUpdate


class RequestPatch(BaseModel):
    """Mutable columns of an inspection request. Only set fields are written."""

    status: Optional[RequestStatus] = None
    assigned_agent_id: Optional[str] = None
    payment_received: Optional[bool] = None
    payment_method: Optional[str] = None
    service_fee: Optional[float] = None
    fee_notes: Optional[str] = None
    receipt_number: Optional[str] = None
    receipt_verification_code: Optional[str] = None
    receipt_issued_at: Optional[datetime] = None
    receipt_data: Optional[dict[str, Any]] = None


class InspectionRequestRecord(BaseModel):
    """Typed view of an ``inspection_requests`` row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tracking_id: Optional[str] = None
    customer_name: str
    whatsapp: str
    customer_address: Optional[str] = None
    store_name: str
    store_location: str
    product_details: str
    service_tier: ServiceTier = ServiceTier.INSPECTION
    service_fee: Optional[float] = None
    delivery_notes: Optional[str] = None
    payment_method: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    assigned_agent_id: Optional[str] = None
    payment_received: Optional[bool] = None
    receipt_number: Optional[str] = None
    receipt_verification_code: Optional[str] = None
    receipt_issued_at: Optional[datetime] = None
    receipt_data: Optional[dict[str, Any]] = None
    fee_notes: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value):
        if value is None or isinstance(value, RequestStatus):
            return value or RequestStatus.PENDING
        try:
            return RequestStatus(value)
        except ValueError:
            logger.warning("Unrecognized request status %r, treating as pending", value)
            return RequestStatus.PENDING

    @field_validator("service_tier", mode="before")
    @classmethod
    def _default_tier(cls, value):
        if value is None or isinstance(value, ServiceTier):
            return value or ServiceTier.INSPECTION
        try:
            return ServiceTier(value)
        except ValueError:
            logger.warning("Unrecognized service tier %r, treating as inspection", value)
            return ServiceTier.INSPECTION

    @property
    def is_paid(self) -> bool:
        return bool(self.payment_received)


# ---------------------------------------------------------------------------
# Telemetry ingest
# ---------------------------------------------------------------------------


class MetricIn(BaseModel):
    name: str
    value: float
    timestamp: float
    tags: Optional[dict[str, str]] = None


class ErrorIn(BaseModel):
    message: str
    stack: Optional[str] = None
    timestamp: float
    user_id: Optional[str] = None
    tags: Optional[dict[str, Any]] = None
    context: Optional[dict[str, Any]] = None


class MetricsBatch(BaseModel):
    metrics: list[MetricIn]


class ErrorsBatch(BaseModel):
    errors: list[ErrorIn]

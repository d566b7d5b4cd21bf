"""
Partner order payload and intake responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class Customer(StrictModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str | None = None
    child_star_sign: str | None = None


class Shipping(StrictModel):
    country: str = Field(..., min_length=2, max_length=2)
    address_line1: str = Field(..., min_length=1)
    address_line2: str | None = None
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    email_opt_in: bool = False
    sms_opt_in: bool = False


class ChildGender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    NON_BINARY = "non_binary"


class Child(StrictModel):
    first_name: str = Field(..., min_length=1)
    age: int = Field(..., ge=0, le=16)
    gender: ChildGender = ChildGender.NON_BINARY
    photo_asset_id: str | None = None


class SupportingCharacter(StrictModel):
    name: str = Field(..., min_length=1)
    relationship: str = Field(..., min_length=1)
    photo_asset_id: str | None = None


class Location(StrictModel):
    description: str = Field(..., min_length=1)
    photo_asset_id: str | None = None


class Brief(StrictModel):
    child: Child
    reading_level: str = Field(..., min_length=1)
    interests: list[str] = Field(default_factory=list)
    core_theme: str = Field(..., min_length=1)
    tone: str = Field(..., min_length=1)
    objective: str = Field(..., min_length=1)
    language: Literal["en-GB", "en-US", "fr-FR", "de-DE"] = "en-GB"
    sensitive_topics: list[str] | None = None
    dedication: str | None = None
    creator_code: str | None = None
    characters: list[SupportingCharacter] = Field(default_factory=list, max_length=5)
    locations: list[Location] = Field(default_factory=list, max_length=3)


class Upload(StrictModel):
    asset_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content_type: str = Field(..., min_length=1)
    size_bytes: int = Field(..., ge=0, le=MAX_UPLOAD_BYTES)
    url: HttpUrl
    usage: Literal["character", "location", "other"]


class Consents(StrictModel):
    marketing: bool = False
    child_image_usage: bool
    terms_version: str = Field(..., min_length=1)


class OrderPayload(StrictModel):
    """Version 1 of the partner order payload."""

    partner_order_ref: str | None = None
    product_sku: str = Field(..., min_length=1)
    currency: str = Field(..., min_length=3, max_length=3)
    allow_user_edit: bool = False
    customer: Customer
    shipping: Shipping
    brief: Brief
    uploads: list[Upload] = Field(default_factory=list)
    consents: Consents
    metadata: dict[str, Any] = Field(default_factory=dict)


class OrderAccepted(BaseModel):
    order_id: str
    status: Literal["queued"] = "queued"
    accepted_at: datetime


class OrderEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    payload: dict[str, Any] | None = None
    created_at: datetime | None = None


class OrderStatusOut(BaseModel):
    """Operator view of where an order is in the pipeline."""

    order_id: str
    order_number: str
    status: str
    story_status: str | None = None
    print_status: str | None = None
    print_metadata: dict[str, Any] | None = None
    events: list[OrderEventOut] = Field(default_factory=list)

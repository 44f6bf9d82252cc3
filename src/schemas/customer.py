"""Customer-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field, field_validator

from .base import BaseSchema, JSONAPICollectionResponse, JSONAPIResponse
from src.utils.validators import EmailValidator, PhoneValidator

CUSTOMER_TYPES = {"retail", "wholesale", "medical"}
CUSTOMER_STATUSES = {"active", "inactive", "blocked"}


class CustomerAttributes(BaseSchema):
    """Attributes for customer resource."""

    name: Optional[str] = Field(None, min_length=1, max_length=255, description="Customer or business name")
    email: Optional[str] = Field(None, max_length=255, description="Email address")
    phone: Optional[str] = Field(None, max_length=50, description="Phone number (E.164 or with country code)")
    customer_type: Optional[str] = Field(None, description="Type: retail, wholesale, medical")
    status: Optional[str] = Field(None, description="Status: active, inactive, blocked")
    notes: Optional[str] = Field(None, description="Free-form notes")
    additional_data: Optional[Dict[str, Any]] = Field(None, description="Extension fields")

    @field_validator("customer_type")
    @classmethod
    def validate_customer_type(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in CUSTOMER_TYPES:
            raise ValueError(f"Customer type must be one of: {sorted(CUSTOMER_TYPES)}")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in CUSTOMER_STATUSES:
            raise ValueError(f"Status must be one of: {sorted(CUSTOMER_STATUSES)}")
        return v

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        errors = EmailValidator.validate(v)
        if errors:
            raise ValueError(errors[0].message)
        return v.lower()

    @field_validator("phone")
    @classmethod
    def validate_phone_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        errors = PhoneValidator.validate(v)
        if errors:
            raise ValueError(errors[0].message)
        return PhoneValidator.format_international(v) or v


class CustomerCreateAttributes(CustomerAttributes):
    """Attributes accepted when creating a customer."""

    name: str = Field(min_length=1, max_length=255, description="Customer or business name")
    customer_type: str = Field("retail", description="Type: retail, wholesale, medical")
    status: str = Field("active", description="Status: active, inactive, blocked")
    tenant_id: Optional[UUID] = Field(
        None, description="Owning tenant; defaults to the X-Tenant-ID tenant"
    )


class CustomerCreateResource(BaseSchema):
    type: str = Field("customer", description="Resource type")
    attributes: CustomerCreateAttributes


class CustomerPatchResource(BaseSchema):
    type: str = Field("customer", description="Resource type")
    attributes: CustomerAttributes


class CustomerCreateRequest(BaseSchema):
    """Request schema for creating a customer."""

    data: CustomerCreateResource = Field(description="Customer data to create")


class CustomerPatchRequest(BaseSchema):
    """Request schema for patching a customer (partial update)."""

    data: CustomerPatchResource = Field(description="Customer fields to change")


class CustomerResourceAttributes(BaseSchema):
    tenant_id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    customer_type: str
    status: str
    notes: Optional[str] = None
    additional_data: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[UUID] = None
    updated_by: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CustomerResource(BaseSchema):
    """JSON:API resource for customer."""

    type: str = Field("customer", description="Resource type")
    id: UUID = Field(description="Customer UUID")
    attributes: CustomerResourceAttributes


class CustomerResponse(JSONAPIResponse):
    """Response schema for single customer."""

    data: CustomerResource = Field(description="Customer resource")


class CustomerCollectionResponse(JSONAPICollectionResponse):
    """Response schema for customer collection."""

    data: List[CustomerResource] = Field(description="Customer resources")

"""Base Pydantic schemas following JSON:API specification."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    class Config:
        from_attributes = True
        populate_by_name = True
        str_strip_whitespace = True
        validate_assignment = True


class PaginationMeta(BaseSchema):
    """Pagination metadata for collection responses."""

    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")
    total: int = Field(description="Total number of items")
    pages: int = Field(description="Total number of pages")

    @classmethod
    def build(cls, pagination: dict, total: int) -> "PaginationMeta":
        per_page = pagination["per_page"]
        return cls(
            page=pagination["page"],
            per_page=per_page,
            total=total,
            pages=(total + per_page - 1) // per_page,
        )


class JSONAPIError(BaseSchema):
    """JSON:API error object.

    Ledger rejections put the full operation result under ``meta.result`` so
    clients can read the current balance and cost without a second request.
    """

    status: str = Field(description="HTTP status code")
    code: str = Field(description="Application-specific error code, e.g. INSUFFICIENT_CREDITS")
    title: str = Field(description="Short, human-readable summary")
    detail: Optional[str] = Field(None, description="Human-readable explanation")
    source: Optional[Dict[str, str]] = Field(None, description="Request path the error refers to")
    meta: Optional[Dict[str, Any]] = Field(None, description="Additional metadata about the error")


class JSONAPIErrorResponse(BaseSchema):
    """JSON:API error response."""

    errors: List[JSONAPIError] = Field(description="Array of error objects")

    @classmethod
    def single(cls, status_code: int, code: str, title: str, detail: Optional[str] = None,
               pointer: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> "JSONAPIErrorResponse":
        return cls(errors=[JSONAPIError(
            status=str(status_code),
            code=code,
            title=title,
            detail=detail,
            source={"pointer": pointer} if pointer else None,
            meta=meta or None,
        )])


class JSONAPIResponse(BaseSchema):
    """Base JSON:API response for single resources."""

    data: Optional[Dict[str, Any]] = Field(None, description="Primary data")
    meta: Optional[Dict[str, Any]] = Field(None, description="Metadata")


class JSONAPICollectionResponse(BaseSchema):
    """Base JSON:API response for resource collections."""

    data: List[Dict[str, Any]] = Field(description="Primary data array")
    meta: Optional[Dict[str, Any]] = Field(None, description="Metadata")


def resource(resource_type: str, record_id: Any, attributes: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap a serialized row as a JSON:API resource object."""
    return {
        "type": resource_type,
        "id": str(record_id),
        "attributes": {k: v for k, v in attributes.items() if k != "id"},
    }


class HealthCheckResponse(BaseSchema):
    """Health check response schema."""

    status: str = Field(description="Service status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(description="Health check timestamp")
    version: str = Field(description="Service version")
    environment: str = Field(description="Environment name")

    dependencies: Dict[str, Dict[str, Any]] = Field(
        description="Dependency health status"
    )

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid_statuses = {"healthy", "degraded", "unhealthy"}
        if v not in valid_statuses:
            raise ValueError(f"Status must be one of: {valid_statuses}")
        return v

"""Validation utilities for tenant and customer data formats."""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import phonenumbers


@dataclass
class ValidationError:
    """Validation error details."""
    field: str
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class SlugValidator:
    """Validator for tenant slugs (URL-safe, DNS-label shaped)."""

    SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
    MIN_LENGTH = 3
    MAX_LENGTH = 63

    @classmethod
    def validate(cls, slug: Optional[str]) -> List[ValidationError]:
        """Validate slug length and character set."""
        errors = []

        if not slug:
            errors.append(ValidationError(
                field="slug",
                code="SLUG_REQUIRED",
                message="Slug is required"
            ))
            return errors

        if not cls.MIN_LENGTH <= len(slug) <= cls.MAX_LENGTH:
            errors.append(ValidationError(
                field="slug",
                code="INVALID_SLUG_LENGTH",
                message=f"Slug must be between {cls.MIN_LENGTH} and {cls.MAX_LENGTH} characters",
                details={"provided_length": len(slug)}
            ))

        if not cls.SLUG_PATTERN.match(slug):
            errors.append(ValidationError(
                field="slug",
                code="INVALID_SLUG_FORMAT",
                message="Slug may only contain lowercase letters, digits and inner hyphens",
                details={"provided": slug}
            ))

        return errors


class PhoneValidator:
    """Customer phone numbers; stored in international format."""

    @classmethod
    def _parse(cls, phone: str, region: Optional[str]) -> phonenumbers.PhoneNumber:
        return phonenumbers.parse(phone, region)

    @classmethod
    def validate(cls, phone: Optional[str], region: Optional[str] = None) -> List[ValidationError]:
        if not phone:
            return []
        try:
            parsed = cls._parse(phone, region)
        except phonenumbers.NumberParseException as e:
            return [ValidationError(
                field="phone",
                code="PHONE_PARSE_ERROR",
                message=f"Failed to parse phone number: {e}",
                details={"provided": phone},
            )]
        if not phonenumbers.is_valid_number(parsed):
            return [ValidationError(
                field="phone",
                code="INVALID_PHONE_NUMBER",
                message="Invalid phone number format",
                details={"provided": phone},
            )]
        return []

    @classmethod
    def format_international(cls, phone: str, region: Optional[str] = None) -> Optional[str]:
        """``+1 650-253-0000`` style, or None when the number is not valid."""
        try:
            parsed = cls._parse(phone, region)
        except phonenumbers.NumberParseException:
            return None
        if not phonenumbers.is_valid_number(parsed):
            return None
        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.INTERNATIONAL)


class EmailValidator:
    """Customer contact addresses."""

    EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
    MAX_LENGTH = 255

    @classmethod
    def validate(cls, email: Optional[str]) -> List[ValidationError]:
        if not email:
            return []
        errors = []
        if not cls.EMAIL_PATTERN.match(email):
            errors.append(ValidationError(
                field="email",
                code="INVALID_EMAIL_FORMAT",
                message="Invalid email address format",
                details={"provided": email},
            ))
        if len(email) > cls.MAX_LENGTH:
            errors.append(ValidationError(
                field="email",
                code="EMAIL_TOO_LONG",
                message=f"Email address too long (max {cls.MAX_LENGTH} characters)",
            ))
        return errors

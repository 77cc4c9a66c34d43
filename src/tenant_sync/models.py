"""Pydantic models for tenant specifications with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean hand-off to the reconcilers (disclaimer payload, header match,
   grant request)
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .collaborators import AccessRight
from .config import DEFAULT_EXCEPTION_HEADER_NAME, DEFAULT_EXCEPTION_HEADER_VALUE

# Deliberately loose: the directory is the authority on whether an address exists
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# RFC 7230 header field-name token
HEADER_NAME_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class FallbackAction(str, Enum):
    """What the transport does when a disclaimer cannot be inserted."""

    WRAP = "Wrap"
    IGNORE = "Ignore"
    REJECT = "Reject"


class DisclaimerConfig(BaseModel):
    """Disclaimer text applied by every rule shard."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    html: Annotated[str, Field(min_length=1)]
    location: str = "Prepend"
    fallback_action: FallbackAction = Field(FallbackAction.WRAP, alias="fallbackAction")

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        valid = {"Prepend", "Append"}
        if v not in valid:
            raise ValueError(f"location must be one of {valid}")
        return v

    def to_payload(self) -> dict[str, Any]:
        """Opaque payload stored on each shard; identical across shards."""
        return {
            "text": self.html,
            "location": self.location,
            "fallbackAction": self.fallback_action.value,
        }


class ExceptionRuleConfig(BaseModel):
    """Header condition of the exception rule."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    header_name: str = Field(DEFAULT_EXCEPTION_HEADER_NAME, alias="headerName")
    header_value: Annotated[str, Field(min_length=1, alias="headerValue")] = (
        DEFAULT_EXCEPTION_HEADER_VALUE
    )

    @field_validator("header_name")
    @classmethod
    def validate_header_name(cls, v: str) -> str:
        if not HEADER_NAME_PATTERN.match(v):
            raise ValueError(f"headerName is not a valid header field name: {v!r}")
        return v

    @property
    def header_match(self) -> tuple[str, str]:
        return (self.header_name, self.header_value)


class GrantRequest(BaseModel):
    """Delegated access that every qualifying mailbox must grant."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    grantee: str
    rights: Annotated[list[AccessRight], Field(min_length=1)]
    automap: bool = True

    @field_validator("grantee")
    @classmethod
    def validate_grantee(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError(f"grantee must be an email address: {v!r}")
        return v

    @field_validator("rights", mode="before")
    @classmethod
    def parse_rights(cls, v: Any) -> Any:
        if isinstance(v, (str, AccessRight)):
            v = [v]
        if not isinstance(v, (list, tuple)):
            raise ValueError("rights must be a right name or a list of right names")
        parsed: list[Any] = []
        for item in v:
            if isinstance(item, str) and not isinstance(item, AccessRight):
                right = AccessRight.parse(item)
                if right is None:
                    valid = [r.value for r in AccessRight]
                    raise ValueError(f"unknown right {item!r}, expected one of {valid}")
                item = right
            if item not in parsed:
                parsed.append(item)
        return parsed

    @property
    def right_set(self) -> frozenset[AccessRight]:
        return frozenset(self.rights)


class TenantSpec(BaseModel):
    """Everything a tenant run needs besides runtime configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    tenant_id: str | None = Field(None, alias="tenantId")
    disclaimer: DisclaimerConfig | None = None
    exception: ExceptionRuleConfig = Field(default_factory=ExceptionRuleConfig)
    roster: list[str] = Field(default_factory=list)
    roster_file: str | None = Field(None, alias="rosterFile")
    grant: GrantRequest | None = None

    @field_validator("roster", mode="before")
    @classmethod
    def clean_roster(cls, v: Any) -> Any:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("roster must be a list of display names")
        return [str(name).strip() for name in v if name is not None and str(name).strip()]

    @property
    def disclaimer_payload(self) -> dict[str, Any] | None:
        return self.disclaimer.to_payload() if self.disclaimer else None

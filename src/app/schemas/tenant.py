"""Pydantic schemas for tenant API endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TenantCreate(BaseModel):
    """Request schema for onboarding a field-service company."""

    slug: str = Field(
        ...,
        min_length=3,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        description="Unique tenant identifier; also names the tenant schema",
        examples=["acme-plumbing", "brightspark"],
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Company name shown to operators",
        examples=["Acme Plumbing", "Brightspark Electrical"],
    )


class TenantResponse(BaseModel):
    """Tenant registry row. Built from the Tenant ORM model or a provisioning result."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    schema_name: str
    is_active: bool = True
    created_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: object) -> object:
        return str(value) if isinstance(value, uuid.UUID) else value

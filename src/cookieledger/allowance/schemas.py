"""Pydantic schemas for allowance endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SelectionRequest(BaseModel):
    """Opaque ids of the resources to block while locked."""

    resources: list[str] = Field(default_factory=list, max_length=500)


class SelectionResponse(BaseModel):
    resources: list[str]

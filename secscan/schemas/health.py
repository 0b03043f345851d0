"""Pydantic schemas for health check responses."""

from typing import Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response body for the health check endpoint."""

    status: Literal["ok"] = Field(default="ok", description="Service status")
    environment: str = Field(description="Current app environment (e.g. dev, prod)")
    tools: dict[str, Literal["available", "missing"]] = Field(
        default_factory=dict,
        description="Whether each configured scanner binary resolves on PATH",
    )

"""Pydantic request/response schemas for the Box Inspector API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from boxinspector.ml.reducer import InferenceResult


class CheckResponse(BaseModel):
    """Inspection verdict for one uploaded image."""

    status: str = Field(description="Winning class label")
    confidence: str = Field(description="Winning probability as a percentage with 2 decimals, e.g. '90.00'")
    is_damaged: bool = Field(description="True when the label contains 'damaged' (case-insensitive)")

    @classmethod
    def from_result(cls, result: InferenceResult) -> CheckResponse:
        return cls(
            status=result.status,
            confidence=f"{result.confidence:.2f}",
            is_damaged=result.is_damaged,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    model_loaded: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Machine-readable error kind")
    detail: str

"""Pydantic request/response schemas for the Asclepius API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    result: str = Field(description="'<label> <confidence>%' or 'Error in classification: <cause>'")
    image_reference: str = Field(description="Reference the classified image was resolved through")
    filename: str | None = Field(default=None, description="Name of the uploaded image")
    is_error: bool = Field(description="True when result carries an error message")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    concurrent_requests: int
    queue_depth: int
    completed_requests: int
    failed_requests: int
    rejected_requests: int


class ModelInfo(BaseModel):
    """Information about the bundled model."""

    name: str
    task: str = Field(description="Model task, always 'image_classification'")
    status: str = Field(description="Model status: 'active' or 'unavailable'")
    labels: list[str]


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str

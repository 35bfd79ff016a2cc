"""Pydantic request/response schemas for the ClassifyX API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyResponse(BaseModel):
    """Predicted label for the bundled sample image."""

    label: str


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    index: int = Field(ge=0, description="Class index in the label list")
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    tags: list[ImageTag]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    ready: bool = Field(description="Whether model, labels and sample image are loaded")
    gpu: bool
    concurrent_requests: int
    queue_depth: int


class ModelInfoResponse(BaseModel):
    """Information about the configured model."""

    name: str
    loaded: bool
    label_count: int = Field(description="Number of labels, 0 until the model is loaded")
    source: str = Field(description="Resource directory or Hugging Face Hub repository")


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str

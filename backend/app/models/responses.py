"""
Request and response models for the AI endpoints.

These models define the HTTP surface; the engine's own models live in
app.services.ai.schema.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.services.ai.providers.formats import IMAGE_URL_PREFIXES
from app.services.ai.schema import Caller, ContentMetadata, DetectedIssue, Tier


class AnalyzeRequest(BaseModel):
    """POST /ai/analyze body."""
    caller: Caller
    issues: List[DetectedIssue] = Field(default_factory=list)
    metadata: Optional[ContentMetadata] = None
    tier: Optional[Tier] = Field(None, description="Explicit tier; omitted means classifier-selected")
    images: List[str] = Field(default_factory=list, description="Image http(s) URLs or base64 data URIs")

    @field_validator("images")
    @classmethod
    def images_are_urls(cls, value: List[str]) -> List[str]:
        for image in value:
            if not image.startswith(IMAGE_URL_PREFIXES):
                raise ValueError("images must be http(s) URLs or data URIs")
        return value


class ChatRequest(BaseModel):
    """POST /ai/chat body."""
    caller: Caller
    message: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    kind: str
    message: str
    details: Optional[Dict[str, Any]] = None

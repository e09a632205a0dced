"""Pydantic models for API requests and responses."""

from .responses import AnalyzeRequest, ChatRequest, ErrorResponse

__all__ = ["AnalyzeRequest", "ChatRequest", "ErrorResponse"]

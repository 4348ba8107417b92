"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    AdmissionStatus,
    ConversationMessage,
    HealthResponse,
    SpanResponse,
    TraceResponse,
    TurnRequest,
)

__all__ = [
    "AdmissionStatus",
    "ConversationMessage",
    "HealthResponse",
    "SpanResponse",
    "TraceResponse",
    "TurnRequest",
]

"""
Warden Input Schemas

Pydantic V2 request bodies for the session, telemetry and content endpoints.
The identity principal is not part of any body; it arrives from the
identity gateway as request headers.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidatorFunctionWrapHandler,
    field_validator,
)
from pydantic.alias_generators import to_camel

from core.schemas.events import SecurityEventType


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Session Payloads
# =============================================================================

class HeartbeatPayload(_Payload):
    """Sent roughly every 30s by an active viewer."""
    session_id: str = Field(..., min_length=1, description="Client-minted viewing session token")
    document_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("documentId", "pdfId", "document_id"),
        description="Document being viewed",
    )


class CheckSessionPayload(_Payload):
    session_id: str = Field(..., min_length=1, description="Session token to check")


class EndSessionPayload(_Payload):
    session_id: str = Field(..., min_length=1, description="Session token to end")


# =============================================================================
# Telemetry Payload
# =============================================================================

class LogEventPayload(_Payload):
    """
    A client-reported security event.

    Every field is optional and leniently parsed: unknown kinds become
    UNKNOWN, numeric ids are stringified, and a missing or unparseable
    client timestamp becomes None (the server time is used instead).
    Bodies that are not a JSON object are absorbed by the route.
    """
    type: SecurityEventType = Field(SecurityEventType.UNKNOWN, description="Event kind")
    session_id: Optional[str] = None
    document_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("documentId", "pdfId", "document_id"),
    )
    group_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific details")
    timestamp: Optional[datetime] = Field(None, description="Client-side event time")

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> SecurityEventType:
        return SecurityEventType.coerce(value)

    @field_validator("session_id", "document_id", "group_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value or None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return None

    @field_validator("details", mode="before")
    @classmethod
    def _coerce_details(cls, value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return {"value": value}
        return value

    @field_validator("timestamp", mode="wrap")
    @classmethod
    def _lenient_timestamp(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Optional[datetime]:
        try:
            return handler(value)
        except ValidationError:
            return None


# =============================================================================
# Content Payload
# =============================================================================

class SignedUrlPayload(_Payload):
    """Request for a short-lived content URL."""
    document_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("documentId", "pdfId", "document_id"),
    )
    object_id: str = Field(..., min_length=1, description="Stored object identifier at the CDN")

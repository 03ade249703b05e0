"""
Warden Security Event Schemas

The client-reported telemetry model: the closed set of event kinds, a typed
variant of the free-form `details` payload per kind, and the immutable
SecurityEvent record that is appended to the record store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# Event Kinds
# =============================================================================

class SecurityEventType(str, Enum):
    """Kinds of client-reported security events."""
    VIEW_START = "VIEW_START"
    VIEW_END = "VIEW_END"
    PAGE_TURN = "PAGE_TURN"
    PAGE_JUMP = "PAGE_JUMP"
    FOCUS_LOST = "FOCUS_LOST"
    DEVTOOLS_DETECTED = "DEVTOOLS_DETECTED"
    PRINTSCREEN_BLOCKED = "PRINTSCREEN_BLOCKED"
    KEYBOARD_BLOCKED = "KEYBOARD_BLOCKED"
    CLIPBOARD_BLOCKED = "CLIPBOARD_BLOCKED"
    PRINT_BLOCKED = "PRINT_BLOCKED"
    CONTEXT_MENU_BLOCKED = "CONTEXT_MENU_BLOCKED"
    SESSION_CONFLICT = "SESSION_CONFLICT"
    URL_GENERATED = "URL_GENERATED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def coerce(cls, value: Any) -> "SecurityEventType":
        """Map any reported kind onto the enum; unrecognised kinds become UNKNOWN."""
        if isinstance(value, cls):
            return value
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


# Kinds counted towards the lifetime screenshot-attempt total
SCREENSHOT_EVENT_TYPES = (
    SecurityEventType.PRINTSCREEN_BLOCKED,
    SecurityEventType.KEYBOARD_BLOCKED,
)


# =============================================================================
# Typed Details
# =============================================================================

class _Details(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class KeyboardBlockedDetails(_Details):
    """A blocked key combination. action="screenshot" marks a capture attempt."""
    action: Optional[str] = None
    key: Optional[str] = None


class PrintScreenDetails(_Details):
    key: Optional[str] = None


class DevToolsDetails(_Details):
    method: Optional[str] = None


class ViewStartDetails(_Details):
    document_id: Optional[str] = Field(None, validation_alias=AliasChoices("pdfId", "documentId", "document_id"))
    title: Optional[str] = None


class ViewEndDetails(_Details):
    document_id: Optional[str] = Field(None, validation_alias=AliasChoices("pdfId", "documentId", "document_id"))
    pages_viewed: Optional[int] = Field(None, validation_alias=AliasChoices("pagesViewed", "pages_viewed"))


class PageTurnDetails(_Details):
    from_page: Optional[int] = Field(None, validation_alias=AliasChoices("from", "from_page"))
    to_page: Optional[int] = Field(None, validation_alias=AliasChoices("to", "to_page"))


class PageJumpDetails(_Details):
    to_page: Optional[int] = Field(None, validation_alias=AliasChoices("to", "to_page"))


class SessionConflictDetails(_Details):
    existing_session: Optional[str] = Field(None, validation_alias=AliasChoices("existingSession", "existing_session"))
    new_session: Optional[str] = Field(None, validation_alias=AliasChoices("newSession", "new_session"))


class OpaqueDetails(BaseModel):
    """Details of an unknown kind or shape, kept verbatim."""
    data: Dict[str, Any] = Field(default_factory=dict)


EventDetails = Union[
    KeyboardBlockedDetails,
    PrintScreenDetails,
    DevToolsDetails,
    ViewStartDetails,
    ViewEndDetails,
    PageTurnDetails,
    PageJumpDetails,
    SessionConflictDetails,
    OpaqueDetails,
]

_DETAILS_BY_TYPE: Dict[SecurityEventType, Type[_Details]] = {
    SecurityEventType.KEYBOARD_BLOCKED: KeyboardBlockedDetails,
    SecurityEventType.PRINTSCREEN_BLOCKED: PrintScreenDetails,
    SecurityEventType.DEVTOOLS_DETECTED: DevToolsDetails,
    SecurityEventType.VIEW_START: ViewStartDetails,
    SecurityEventType.VIEW_END: ViewEndDetails,
    SecurityEventType.PAGE_TURN: PageTurnDetails,
    SecurityEventType.PAGE_JUMP: PageJumpDetails,
    SecurityEventType.SESSION_CONFLICT: SessionConflictDetails,
}


def parse_details(event_type: SecurityEventType, raw: Optional[Dict[str, Any]]) -> EventDetails:
    """Parse raw details into the variant for `event_type`, or an opaque blob."""
    raw = raw or {}
    model = _DETAILS_BY_TYPE.get(event_type)
    if model is None:
        return OpaqueDetails(data=raw)
    try:
        return model.model_validate(raw)
    except ValidationError:
        return OpaqueDetails(data=raw)


# =============================================================================
# Security Event (immutable record)
# =============================================================================

class SecurityEvent(BaseModel):
    """
    One client-reported event, as appended to the `security_events` table.

    Serialised with snake_case column names for storage and camelCase
    aliases on the HTTP surface.
    """
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    user_id: str
    user_email: Optional[str] = None
    type: SecurityEventType = SecurityEventType.UNKNOWN
    session_id: Optional[str] = None
    document_id: Optional[str] = None
    group_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    client_agent: Optional[str] = None
    client_address: Optional[str] = None
    timestamp: datetime
    server_timestamp: datetime

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> SecurityEventType:
        return SecurityEventType.coerce(value)

    @property
    def typed_details(self) -> EventDetails:
        return parse_details(self.type, self.details)

    @property
    def is_screenshot_attempt(self) -> bool:
        """PRINTSCREEN_BLOCKED, or KEYBOARD_BLOCKED whose action is a screenshot."""
        if self.type == SecurityEventType.PRINTSCREEN_BLOCKED:
            return True
        if self.type == SecurityEventType.KEYBOARD_BLOCKED:
            details = self.typed_details
            return isinstance(details, KeyboardBlockedDetails) and details.action == "screenshot"
        return False

    def to_record(self) -> Dict[str, Any]:
        """Row representation for the record store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> SecurityEvent:
        return cls.model_validate(row)

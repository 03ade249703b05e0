"""
Warden Core Schemas

Public exports for event, input and output Pydantic models.
"""

# Security events
from core.schemas.events import (
    SCREENSHOT_EVENT_TYPES,
    EventDetails,
    KeyboardBlockedDetails,
    OpaqueDetails,
    SecurityEvent,
    SecurityEventType,
    parse_details,
)

# Request bodies
from core.schemas.inputs import (
    CheckSessionPayload,
    EndSessionPayload,
    HeartbeatPayload,
    LogEventPayload,
    SignedUrlPayload,
)

# Responses
from core.schemas.outputs import (
    AlertType,
    CheckSessionResponse,
    Decision,
    EndSessionResponse,
    HeartbeatResponse,
    LogEventResponse,
    SignedUrlResponse,
)

__all__ = [
    # Events
    "SecurityEventType",
    "SecurityEvent",
    "EventDetails",
    "KeyboardBlockedDetails",
    "OpaqueDetails",
    "SCREENSHOT_EVENT_TYPES",
    "parse_details",
    # Input
    "HeartbeatPayload",
    "CheckSessionPayload",
    "EndSessionPayload",
    "LogEventPayload",
    "SignedUrlPayload",
    # Output
    "Decision",
    "AlertType",
    "HeartbeatResponse",
    "CheckSessionResponse",
    "EndSessionResponse",
    "LogEventResponse",
    "SignedUrlResponse",
]

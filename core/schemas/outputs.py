"""
Warden Output Schemas

Response bodies for the HTTP surface, plus the escalation decision enum
shared by the anomaly detector and the enforcer.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Enums
# =============================================================================

class Decision(str, Enum):
    """Escalation decision for a single evaluated event."""
    NONE = "NONE"
    WARN = "WARN"
    SUSPEND = "SUSPEND"


class AlertType(str, Enum):
    """Administrative-review alerts (never enforced automatically)."""
    REPEATED_DEVTOOLS = "REPEATED_DEVTOOLS"
    EXCESSIVE_VIEWS = "EXCESSIVE_VIEWS"


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Session Responses
# =============================================================================

class HeartbeatResponse(_Response):
    valid: bool = Field(..., description="False when another fresh session owns the user")
    message: str = Field(..., description="Human readable outcome")
    server_time: datetime = Field(..., description="Server clock at evaluation")


class CheckSessionResponse(_Response):
    valid: bool = True
    is_active: bool = Field(..., description="Whether the caller may keep viewing")
    message: str


class EndSessionResponse(_Response):
    ended: bool = True


# =============================================================================
# Telemetry / Content Responses
# =============================================================================

class LogEventResponse(_Response):
    logged: bool
    event_id: Optional[str] = None


class SignedUrlResponse(_Response):
    url: str
    generated_at: datetime
    expires_at: datetime

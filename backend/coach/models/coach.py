"""Models for coaching sessions, activity signals and proactive prompts.

ActivitySignal is the single most relevant recent-activity item used for
openers. ConcernFlag is a check-in pattern finding; only high-severity
flags turn into a ProactivePrompt.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ActivityType(str, Enum):
    """Kinds of recent activity an opener can reference."""

    COMPLETED_DATE = "completed_date"
    FLIRT_SENT = "flirt_sent"
    LOW_HEALTH = "low_health"
    MISSED_CHECKINS = "missed_checkins"
    NONE = "none"


class ConcernType(str, Enum):
    """Check-in pattern findings."""

    CONSECUTIVE_STRESS = "consecutive_stress"
    LOW_CONNECTION = "low_connection"
    CONNECTION_DROP = "connection_drop"
    LOW_ENGAGEMENT = "low_engagement"


class Severity(str, Enum):
    """Concern severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MessageRole(str, Enum):
    """Roles a stored coach message can have."""

    USER = "user"
    ASSISTANT = "assistant"


class SessionState(str, Enum):
    """Outcome of start-or-resume."""

    RESUMED = "resumed"
    STARTED = "started"


class ActivitySignal(BaseModel):
    """A derived, non-persisted recent-activity signal."""

    model_config = ConfigDict(frozen=True)

    type: ActivityType
    description: str = ""
    suggestion: str = ""

    @classmethod
    def none(cls) -> "ActivitySignal":
        """Signal used when nothing qualifies."""
        return cls(type=ActivityType.NONE)

    @property
    def is_none(self) -> bool:
        return self.type == ActivityType.NONE

    def to_dict(self) -> dict[str, Any]:
        """Serialize signal to dictionary."""
        return {
            "type": self.type.value,
            "description": self.description,
            "suggestion": self.suggestion,
        }


class ConcernFlag(BaseModel):
    """A severity-tagged check-in pattern finding.

    ``type`` stays a plain string so unrecognised finding types from the
    pattern analysis still flow through to the fallback prompt.
    """

    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity
    description: str = ""


class ProactivePrompt(BaseModel):
    """A suggested first message shown on the coach screen."""

    type: str
    message: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize prompt to dictionary."""
        return {"type": self.type, "message": self.message, "description": self.description}


# ---------------------------------------------------------------------------
# HTTP request / response bodies
# ---------------------------------------------------------------------------


class PostMessageRequest(BaseModel):
    """Request body for POST /coach/messages."""

    model_config = ConfigDict(populate_by_name=True)

    message: str | None = Field(None, description="User's message")
    conversation_id: str | None = Field(
        None, alias="conversationId", description="Existing conversation (created if absent)"
    )
    couple_id: str | None = Field(None, alias="coupleId", description="Couple the user belongs to")


class MessageResponse(BaseModel):
    """A single stored coach message."""

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: str


class PostMessageResponse(BaseModel):
    """Response for a successful coached turn."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    conversation_id: str = Field(..., alias="conversationId")
    message: MessageResponse
    messages_remaining: int | None = Field(None, alias="messagesRemaining")
    is_premium: bool = Field(False, alias="isPremium")

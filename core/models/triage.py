"""Triage (advisory conversation) models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TriageStateName(str, Enum):
    """Safety state of one advisory conversation."""

    EMERGENCY = "emergency"
    DIAGNOSTIC = "diagnostic"
    CATEGORY_1 = "category_1"
    ESCALATION_LOCKED = "escalation_locked"

    @property
    def caution(self) -> int:
        """Higher means more cautious."""
        return _CAUTION[self]


_CAUTION = {
    TriageStateName.CATEGORY_1: 0,
    TriageStateName.DIAGNOSTIC: 1,
    TriageStateName.ESCALATION_LOCKED: 2,
    TriageStateName.EMERGENCY: 3,
}


class EmergencyIndicator(str, Enum):
    """Hazards that force the emergency state."""

    UNCONTROLLED_WATER = "uncontrolled_water"
    GAS_ODOUR = "gas_odour"
    SEWAGE_BACKUP = "sewage_backup"
    WATER_NEAR_ELECTRICS = "water_near_electrics"
    STRUCTURAL_SAGGING = "structural_sagging"


class IssueType(str, Enum):
    """Structured intake issue type."""

    LEAK = "leak"
    CLOG = "clog"
    TOILET = "toilet"
    FAUCET = "faucet"
    LOW_PRESSURE = "low_pressure"
    NO_HOT_WATER = "no_hot_water"
    SMELL = "smell"
    OTHER = "other"


class IntakeData(BaseModel):
    """Structured intake captured before the conversation starts."""

    issue_type: IssueType
    when_started: str = Field(..., min_length=1)
    fields: dict[str, str | bool | int | float | None] = Field(default_factory=dict)
    photos: list[str] = Field(default_factory=list)


class TranscriptMessage(BaseModel):
    """One turn of the advisory conversation."""

    role: str
    content: str
    timestamp: datetime
    images: list[str] = Field(default_factory=list)


class EvidenceOverride(BaseModel):
    """
    New objective evidence that may lift an escalation lock.

    The lock is lifted only if cleared_risk_factors covers every lock reason.
    """

    evidence: str
    cleared_risk_factors: list[str] = Field(default_factory=list)


class ClassifierProposal(BaseModel):
    """Untrusted advice from the external classifier."""

    proposed_state: TriageStateName
    category: int | None = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    follow_up_questions: list[str] = Field(default_factory=list)
    response_text: str = ""
    emergency_indicators: list[EmergencyIndicator] = Field(default_factory=list)
    risk_indicators: list[str] = Field(default_factory=list)
    override: EvidenceOverride | None = None

    @field_validator("category")
    @classmethod
    def category_in_range(cls, value: int | None) -> int | None:
        if value is not None and value not in (1, 2, 3):
            raise ValueError("category must be 1, 2 or 3")
        return value


class ClassifierInput(BaseModel):
    """What the classifier sees for one exchange."""

    state: TriageStateName
    category: int | None
    intake: IntakeData
    window: list[TranscriptMessage]
    running_summary: str


class TriageState(BaseModel):
    """Per-conversation safety state. Ephemeral."""

    conversation_id: UUID
    user_id: UUID
    state: TriageStateName = TriageStateName.DIAGNOSTIC
    category: int | None = None
    running_summary: str = ""
    intake: IntakeData
    lock_reasons: list[str] = Field(default_factory=list)
    user_exchanges: int = 0
    transcript: list[TranscriptMessage] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TriageDecision(BaseModel):
    """Outcome of filtering one classifier proposal."""

    accepted: bool
    previous_state: TriageStateName
    state: TriageStateName
    category: int | None
    reason: str


class AdvisoryReply(BaseModel):
    """What the conversation returns to the client for one exchange."""

    conversation_id: UUID
    message: str
    state: TriageStateName
    category: int | None
    follow_up_questions: list[str]
    offer_provider: bool
    decision: TriageDecision
    metadata: dict[str, Any] = Field(default_factory=dict)

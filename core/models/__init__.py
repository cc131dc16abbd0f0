"""Core domain models."""

from core.models.request import Request, RequestCreate, RequestStatus, FLEXIBLE_SLOT
from core.models.engagement import (
    Engagement, EngagementUpdate, EngagementStatus, EngagementView, Party,
)
from core.models.change import ChangeSignal
from core.models.job_message import JobMessage, JobMessageCreate, MAX_MESSAGE_LENGTH
from core.models.triage import (
    TriageState, TriageStateName, TriageDecision, ClassifierInput, ClassifierProposal,
    EvidenceOverride, EmergencyIndicator, IntakeData, IssueType, TranscriptMessage,
    AdvisoryReply,
)

__all__ = [
    # Request
    "Request", "RequestCreate", "RequestStatus", "FLEXIBLE_SLOT",
    # Engagement
    "Engagement", "EngagementUpdate", "EngagementStatus", "EngagementView", "Party",
    # Change
    "ChangeSignal",
    # Job messages
    "JobMessage", "JobMessageCreate", "MAX_MESSAGE_LENGTH",
    # Triage
    "TriageState", "TriageStateName", "TriageDecision", "ClassifierInput",
    "ClassifierProposal", "EvidenceOverride", "EmergencyIndicator", "IntakeData",
    "IssueType", "TranscriptMessage", "AdvisoryReply",
]

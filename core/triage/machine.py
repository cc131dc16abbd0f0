"""
Triage state machine for advisory conversations.

The classifier only proposes. This machine decides, and it only ever lets a
conversation become less cautious on strong evidence:

    category_1 < diagnostic < escalation_locked < emergency

- Emergency indicators force emergency. Nothing leaves emergency.
- diagnostic -> category_1 needs category 1, no risk indicators and
  confidence >= CONFIDENCE_THRESHOLD. A category-1 proposal carrying risk
  indicators is coerced to escalation_locked.
- Any risk indicator or a category 2/3 proposal locks the conversation.
- Leaving escalation_locked needs an EvidenceOverride that clears every lock
  reason. The same override is needed to lower a category of 2 or 3.
"""

import logging
from dataclasses import dataclass

from core.models import (
    ClassifierProposal,
    TranscriptMessage,
    TriageDecision,
    TriageState,
    TriageStateName,
)
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentPolicy:
    """What the assistant may say in the current state."""

    repair_steps_allowed: bool
    offer_provider: bool
    instruction: str


_POLICIES = {
    TriageStateName.EMERGENCY: (
        False,
        "Emergency. Give only immediate safety actions (isolate water, gas or "
        "electricity, leave the area if unsafe) and urge an emergency call-out. "
        "No repair procedures.",
    ),
    TriageStateName.ESCALATION_LOCKED: (
        False,
        "Professional job. Explain why a plumber is needed and what to tell them. "
        "No repair procedures or step-by-step instructions.",
    ),
    TriageStateName.DIAGNOSTIC: (
        False,
        "Still diagnosing. Ask focused follow-up questions. "
        "No repair procedures until the issue is understood.",
    ),
    TriageStateName.CATEGORY_1: (
        True,
        "Simple DIY fix. Safe, basic repair steps are allowed. "
        "Say when to stop and call a plumber.",
    ),
}

_RESTATEMENTS = {
    TriageStateName.EMERGENCY: (
        "This needs urgent attention. If water is flowing, turn off the stopcock. "
        "If you can smell gas, leave the property and call the gas emergency line. "
        "Keep away from water near electrics. Please request an emergency plumber now."
    ),
    TriageStateName.ESCALATION_LOCKED: (
        "Based on what you've described, this needs a qualified plumber. "
        "I can't recommend a DIY repair here, but I can help you request a plumber."
    ),
    TriageStateName.DIAGNOSTIC: (
        "I need a little more information before I can suggest anything. "
        "Could you tell me more about the problem?"
    ),
    TriageStateName.CATEGORY_1: (
        "This looks like something you can safely sort out yourself. "
        "If anything changes or you're unsure, request a plumber."
    ),
}


class TriageStateMachine:
    """Safety filter over classifier proposals for one conversation."""

    CONFIDENCE_THRESHOLD = 0.7
    MIN_EXCHANGES_FOR_CTA = 3
    SUMMARY_LIMIT = 2000

    def __init__(self, state: TriageState):
        self.state = state

    @property
    def current(self) -> TriageStateName:
        return self.state.state

    # === Decisions ===

    def propose(self, proposal: ClassifierProposal) -> TriageDecision:
        """
        Filter one classifier proposal.

        Args:
            proposal: Untrusted classifier output

        Returns:
            TriageDecision; accepted is False when the machine did not take
            the proposed state as is (refused or coerced)
        """
        previous = self.current
        override_valid = self._override_clears_lock(proposal)

        if previous == TriageStateName.EMERGENCY:
            accepted = proposal.proposed_state == TriageStateName.EMERGENCY
            reason = "emergency is final for this conversation"
            return self._decide(previous, TriageStateName.EMERGENCY, 3, accepted, reason)

        if proposal.emergency_indicators or proposal.proposed_state == TriageStateName.EMERGENCY:
            indicators = ", ".join(i.value for i in proposal.emergency_indicators) or "classifier"
            self.state.lock_reasons = []
            return self._decide(
                previous, TriageStateName.EMERGENCY, 3,
                proposal.proposed_state == TriageStateName.EMERGENCY,
                f"emergency indicators: {indicators}",
            )

        target, reason = self._target_for(proposal)

        if previous == TriageStateName.ESCALATION_LOCKED and target.caution < previous.caution:
            if not override_valid:
                return self._decide(
                    previous, previous, self.state.category, False,
                    f"escalation lock held: {', '.join(self.state.lock_reasons)}",
                )
            logger.info(
                f"Conversation {self.state.conversation_id}: lock lifted by evidence "
                f"({proposal.override.evidence!r})"
            )
            self.state.lock_reasons = []
            reason = f"lock lifted by evidence; {reason}"

        category = self._next_category(proposal, target, override_valid)
        if target == TriageStateName.CATEGORY_1 and category != 1:
            target, reason = TriageStateName.DIAGNOSTIC, f"category {category} cannot be lowered without evidence"

        if target == TriageStateName.ESCALATION_LOCKED:
            self._add_lock_reasons(proposal, category)

        return self._decide(previous, target, category, target == proposal.proposed_state, reason)

    def record_exchange(self, user_text: str, reply_text: str, images: list[str] | None = None) -> None:
        """Append one user/assistant exchange and fold it into the running summary."""
        now = now_utc()
        self.state.transcript.append(
            TranscriptMessage(role="user", content=user_text, timestamp=now, images=images or [])
        )
        self.state.transcript.append(TranscriptMessage(role="assistant", content=reply_text, timestamp=now))
        self.state.user_exchanges += 1

        entry = f"User: {user_text}\nAssistant: {reply_text}"
        summary = f"{self.state.running_summary}\n{entry}" if self.state.running_summary else entry
        # Oldest text goes first
        self.state.running_summary = summary[-self.SUMMARY_LIMIT:]
        self.state.updated_at = now

    # === Policy ===

    def content_policy(self) -> ContentPolicy:
        repair_steps_allowed, instruction = _POLICIES[self.current]
        return ContentPolicy(
            repair_steps_allowed=repair_steps_allowed,
            offer_provider=self.should_offer_provider(),
            instruction=instruction,
        )

    def should_offer_provider(self) -> bool:
        """Whether the 'request a plumber' call-to-action is shown."""
        if self.current in (TriageStateName.EMERGENCY, TriageStateName.ESCALATION_LOCKED):
            return True
        return self.state.user_exchanges >= self.MIN_EXCHANGES_FOR_CTA

    def restatement(self) -> str:
        """Canned reply that restates the current state."""
        return _RESTATEMENTS[self.current]

    # === Private ===

    def _target_for(self, proposal: ClassifierProposal) -> tuple[TriageStateName, str]:
        proposed = proposal.proposed_state

        if proposal.risk_indicators:
            if proposed == TriageStateName.CATEGORY_1:
                return TriageStateName.ESCALATION_LOCKED, "category 1 proposal with risk indicators coerced to lock"
            return TriageStateName.ESCALATION_LOCKED, f"risk indicators: {', '.join(proposal.risk_indicators)}"

        if proposal.category in (2, 3):
            return TriageStateName.ESCALATION_LOCKED, f"category {proposal.category}"

        if proposed == TriageStateName.ESCALATION_LOCKED:
            return TriageStateName.ESCALATION_LOCKED, "classifier escalated"

        if proposed == TriageStateName.CATEGORY_1:
            if proposal.category != 1:
                return TriageStateName.DIAGNOSTIC, "category 1 proposal without category 1"
            if proposal.confidence < self.CONFIDENCE_THRESHOLD:
                return TriageStateName.DIAGNOSTIC, f"confidence {proposal.confidence:.2f} below threshold"
            return TriageStateName.CATEGORY_1, "simple fix confirmed"

        return TriageStateName.DIAGNOSTIC, "diagnosing"

    def _next_category(self, proposal: ClassifierProposal, target: TriageStateName, override_valid: bool) -> int | None:
        current = self.state.category
        proposed = proposal.category
        if target == TriageStateName.CATEGORY_1:
            proposed = 1

        if proposed is None:
            if override_valid and target != TriageStateName.ESCALATION_LOCKED:
                return None
            return current
        if current in (2, 3) and proposed < current and not override_valid:
            return current
        return proposed

    def _override_clears_lock(self, proposal: ClassifierProposal) -> bool:
        override = proposal.override
        if override is None or not override.evidence.strip():
            return False
        return set(self.state.lock_reasons) <= set(override.cleared_risk_factors)

    def _add_lock_reasons(self, proposal: ClassifierProposal, category: int | None) -> None:
        reasons = list(proposal.risk_indicators)
        if not reasons and not self.state.lock_reasons:
            reasons = [f"category_{category}" if category in (2, 3) else "classifier_escalation"]
        for reason in reasons:
            if reason not in self.state.lock_reasons:
                self.state.lock_reasons.append(reason)

    def _decide(
        self,
        previous: TriageStateName,
        target: TriageStateName,
        category: int | None,
        accepted: bool,
        reason: str,
    ) -> TriageDecision:
        self.state.state = target
        self.state.category = category
        self.state.updated_at = now_utc()

        if target != previous:
            logger.info(
                f"Conversation {self.state.conversation_id}: {previous.value} -> {target.value} ({reason})"
            )
        return TriageDecision(
            accepted=accepted,
            previous_state=previous,
            state=target,
            category=category,
            reason=reason,
        )

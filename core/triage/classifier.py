"""
LLM-backed triage classifier.

The model reads the intake, the recent messages and the running summary and
proposes a triage state. Its output is advice only: the state machine decides.
Anything unusable (API failure, unparseable or invalid JSON) becomes the
cautious fallback proposal: escalation_locked, category 3, confidence 0.
"""

import json
import logging
from typing import Any

from json_repair import repair_json
from pydantic import ValidationError

from clients.llm_client import LLMClient, LLMError
from core.models import (
    ClassifierInput,
    ClassifierProposal,
    EmergencyIndicator,
    TranscriptMessage,
    TriageState,
    TriageStateName,
)
from core.triage.intake import intake_summary

logger = logging.getLogger(__name__)

WINDOW_SIZE = 10

FALLBACK_RISK = "classifier_unavailable"
FALLBACK_MESSAGE = "Sorry, something went wrong. Please try again."


def build_classifier_input(state: TriageState, latest: TranscriptMessage | None = None) -> ClassifierInput:
    """
    The classifier sees the last WINDOW_SIZE messages plus the running summary.

    `latest` is the user message being answered, not yet in the transcript.
    """
    messages = state.transcript + [latest] if latest is not None else state.transcript
    return ClassifierInput(
        state=state.state,
        category=state.category,
        intake=state.intake,
        window=messages[-WINDOW_SIZE:],
        running_summary=state.running_summary,
    )


def fallback_proposal(reason: str = FALLBACK_RISK) -> ClassifierProposal:
    return ClassifierProposal(
        proposed_state=TriageStateName.ESCALATION_LOCKED,
        category=3,
        confidence=0.0,
        response_text=FALLBACK_MESSAGE,
        risk_indicators=[reason],
    )


class LLMTriageClassifier:
    """Classify an advisory conversation with an LLM."""

    SYSTEM_PROMPT = f"""You are the triage classifier for Plumberly, a UK plumbing marketplace.
A homeowner is describing a plumbing problem. Decide how safe it is for them to act alone,
and write the next assistant reply.

States:
- emergency: any of {", ".join(i.value for i in EmergencyIndicator)}
- diagnostic: not enough information yet; ask follow-up questions
- category_1: simple, safe DIY fix (category 1)
- escalation_locked: needs a professional (category 2 or 3)

Rules:
- List every risk you notice in risk_indicators (snake_case), even if minor.
- Only propose category_1 when you are confident and there is no risk.
- Never give repair steps unless proposing category_1.
- Use override only when the homeowner has given new objective evidence that clears
  earlier risks; list exactly which risk factors it clears.

IMPORTANT: Output raw JSON only. Do not wrap in code fences. Do not include any text before or after the JSON.

Output shape:
{{"proposed_state": "diagnostic", "category": null, "confidence": 0.5,
 "follow_up_questions": ["Where is the water coming from?"],
 "response_text": "Thanks, a couple of questions...",
 "emergency_indicators": [], "risk_indicators": [],
 "override": null}}
"""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    def classify(self, data: ClassifierInput) -> ClassifierProposal:
        """
        Propose a triage state for the next exchange.

        Never raises for model problems; those become the fallback proposal.
        """
        try:
            response = self.llm.generate(
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {"role": "user", "content": self._render_input(data)},
                ],
                thinking=False,
                temperature=0.2,
            )
        except LLMError as e:
            logger.error(f"Triage classifier call failed, using fallback: {e}")
            return fallback_proposal()

        parsed = self._parse_json_with_repair(response.content)
        if not parsed:
            logger.warning("Triage classifier returned no usable JSON, using fallback")
            return fallback_proposal()

        try:
            return ClassifierProposal.model_validate(parsed)
        except ValidationError as e:
            logger.warning(f"Triage classifier output failed validation, using fallback: {e}")
            return fallback_proposal()

    def _render_input(self, data: ClassifierInput) -> str:
        lines = [
            f"Current state: {data.state.value}",
            f"Current category: {data.category if data.category is not None else 'unknown'}",
            "",
            "Intake:",
            intake_summary(data.intake),
        ]
        if data.running_summary:
            lines += ["", "Conversation so far (summary):", data.running_summary]

        lines += ["", "Recent messages:"]
        for message in data.window:
            text = message.content
            if message.images:
                text += f" [{len(message.images)} image(s) attached]"
            lines.append(f"{message.role}: {text}")
        return "\n".join(lines)

    def _parse_json_with_repair(self, content: str) -> dict[str, Any]:
        """Parse JSON, repairing common LLM formatting errors. Empty dict if hopeless."""
        try:
            result = json.loads(content)
        except json.JSONDecodeError:
            try:
                result = json.loads(repair_json(content))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Could not parse or repair JSON: {e}")
                return {}

        if not isinstance(result, dict):
            logger.warning(f"Classifier JSON was not an object: {type(result)}")
            return {}
        return result

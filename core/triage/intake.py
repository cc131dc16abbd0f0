"""Text rendering of structured intake data."""

from core.models import IntakeData, IssueType

DISPLAY_NAMES = {
    IssueType.LEAK: "Water Leak",
    IssueType.CLOG: "Blocked Drain",
    IssueType.TOILET: "Toilet Issue",
    IssueType.FAUCET: "Faucet Problem",
    IssueType.LOW_PRESSURE: "Low Water Pressure",
    IssueType.NO_HOT_WATER: "No Hot Water",
    IssueType.SMELL: "Bad Smell",
    IssueType.OTHER: "Other Issue",
}


def issue_display_name(issue_type: IssueType) -> str:
    return DISPLAY_NAMES.get(issue_type, "Other Issue")


def _field_lines(intake: IntakeData) -> list[str]:
    lines = []
    for key, value in intake.fields.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "Yes" if value else "No"
        lines.append(f"{key.replace('_', ' ')}: {value}")
    return lines


def intake_summary(intake: IntakeData) -> str:
    """
    Multi-line summary shown to the classifier and at the top of the chat.

    Empty fields are skipped; booleans render as Yes/No.
    """
    lines = [
        f"Issue: {issue_display_name(intake.issue_type)}",
        f"Started: {intake.when_started}",
    ]
    lines.extend(_field_lines(intake))
    if intake.photos:
        lines.append(f"Photos: {len(intake.photos)} attached")
    return "\n".join(lines)


def intake_description(intake: IntakeData) -> str:
    """One-paragraph request description generated from the intake."""
    parts = [f"{issue_display_name(intake.issue_type)} - started {intake.when_started.lower()}."]
    parts.extend(_field_lines(intake))
    return " ".join(parts)

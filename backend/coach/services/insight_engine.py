"""Proactive prompt selection from check-in concern flags."""

from coach.models.coach import ConcernFlag, ConcernType, ProactivePrompt, Severity

PROMPT_TEMPLATES: dict[str, str] = {
    ConcernType.CONSECUTIVE_STRESS.value: (
        "I've been feeling stressed lately. Can you help me work through this?"
    ),
    ConcernType.LOW_CONNECTION.value: (
        "I want to feel more connected with my partner. Any suggestions?"
    ),
    ConcernType.CONNECTION_DROP.value: (
        "My connection with my partner has dropped recently. What can I do?"
    ),
    ConcernType.LOW_ENGAGEMENT.value: (
        "I haven't been checking in regularly. Can you help me stay consistent?"
    ),
}

FALLBACK_TEMPLATE = "I'd like to talk about how things are going."


def prompt_message(concern_type: str) -> str:
    """Canned first message for a concern type."""
    return PROMPT_TEMPLATES.get(concern_type, FALLBACK_TEMPLATE)


def select_prompt(flags: list[ConcernFlag]) -> ProactivePrompt | None:
    """Turn the first high-severity flag into a suggested message.

    Low and medium severities are ignored. Recomputed on every call, never
    cached.

    Args:
        flags: Concern flags in the order the analysis returned them.

    Returns:
        A ProactivePrompt, or None when no flag is high severity.
    """
    flag = next((f for f in flags if f.severity == Severity.HIGH), None)
    if flag is None:
        return None
    return ProactivePrompt(
        type=flag.type,
        message=prompt_message(flag.type),
        description=flag.description,
    )

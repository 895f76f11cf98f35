"""Coaching context assembly and system-prompt rendering.

``ContextBuilder.build`` is the only part that touches the data store. Every
read is best-effort: a failure is logged and the field falls back to a
neutral default, so a coached reply is never blocked by missing profile
data. Rendering and opener text are pure.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from coach.core.config import settings
from coach.db.supabase import SupabaseClient, display_name
from coach.models.coach import ActivitySignal, ActivityType
from coach.services.activity_signals import (
    MOOD_LABELS,
    checkin_streak,
    connection_value,
    detect_concerns,
    mood_value,
)
from coach.services.couple_history import AssessmentArea, AssessmentSummary, DateEntry, FlirtEntry

if TYPE_CHECKING:
    from coach.services.activity_signals import ActivitySignalReader
    from coach.services.couple_history import CoupleHistoryReader

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "the user"
DEFAULT_PARTNER_NAME = "their partner"

RECENT_RESPONSES_SHOWN = 3
RECENT_FLIRTS_SHOWN = 3
REVIEW_CHARS = 100

LOVE_LANGUAGE_LABELS: dict[str, str] = {
    "words": "Words of Affirmation",
    "time": "Quality Time",
    "acts": "Acts of Service",
    "gifts": "Receiving Gifts",
    "touch": "Physical Touch",
}

COACH_PERSONA = """You are a warm, practical relationship coach inside a couples app.
You are talking one-on-one with one partner of a couple. Keep replies short and
conversational (2-4 short paragraphs at most), ask one good question at a time,
and offer concrete, doable suggestions. Be supportive without taking sides
against their partner. Never diagnose; if someone describes abuse, self-harm or
a crisis, gently encourage them to reach out to a professional or local
emergency services.

Use the context below to personalise your coaching. Do not recite it back
verbatim or mention scores unless it helps the conversation."""


@dataclass(frozen=True)
class CheckinEntry:
    """One check-in as shown in the context."""

    date: str
    mood: str | None
    connection: int
    question: str | None = None
    answer: str | None = None


@dataclass(frozen=True)
class CheckinSummary:
    """Aggregates over a partner's recent check-ins."""

    total: int
    avg_mood: float
    avg_connection: float
    streak: int
    last_checkin_date: str | None = None
    concerns: tuple[str, ...] = ()
    recent: tuple[CheckinEntry, ...] = ()

    @property
    def avg_mood_label(self) -> str:
        return MOOD_LABELS.get(round(self.avg_mood), "okay")

    @classmethod
    def from_checkins(
        cls,
        checkins: list[dict[str, Any]],
        now: datetime | None = None,
    ) -> CheckinSummary | None:
        """Summarise raw check-in rows; None when there are none."""
        if not checkins:
            return None
        today = (now or datetime.now(UTC)).date()
        moods = [mood_value(c.get("mood")) for c in checkins]
        connections = [connection_value(c) for c in checkins]
        newest_first = sorted(checkins, key=lambda c: str(c["check_date"])[:10], reverse=True)
        return cls(
            total=len(checkins),
            avg_mood=round(sum(moods) / len(moods), 1),
            avg_connection=round(sum(connections) / len(connections), 1),
            streak=checkin_streak(checkins, today),
            last_checkin_date=str(newest_first[0]["check_date"])[:10],
            concerns=tuple(flag.description for flag in detect_concerns(checkins, today)),
            recent=tuple(
                CheckinEntry(
                    date=str(c["check_date"])[:10],
                    mood=c.get("mood"),
                    connection=connection_value(c),
                    question=c.get("question_text"),
                    answer=c.get("question_response"),
                )
                for c in newest_first[:RECENT_RESPONSES_SHOWN]
            ),
        )


@dataclass(frozen=True)
class CoachContext:
    """Everything the coach knows about the user and couple for one reply."""

    user_id: str
    couple_id: str
    user_name: str | None = None
    partner_name: str | None = None
    health_score: int | None = None
    recent_activity: ActivitySignal = field(default_factory=ActivitySignal.none)
    user_love_languages: tuple[str, ...] = ()
    partner_love_languages: tuple[str, ...] = ()
    user_love_language_ranking: tuple[str, ...] = ()
    partner_love_language_ranking: tuple[str, ...] = ()
    user_communication_style: str | None = None
    partner_communication_style: str | None = None
    user_conflict_style: str | None = None
    partner_profile_complete: bool = True
    checkins: CheckinSummary | None = None
    partner_checkins: CheckinSummary | None = None
    upcoming_date: DateEntry | None = None
    recent_dates: tuple[DateEntry, ...] = ()
    recent_flirts: tuple[FlirtEntry, ...] = ()
    timeline_memories: int = 0
    user_assessment: AssessmentSummary | None = None
    partner_assessment: AssessmentSummary | None = None

    @property
    def display_user_name(self) -> str:
        return self.user_name or DEFAULT_USER_NAME

    @property
    def display_partner_name(self) -> str:
        return self.partner_name or DEFAULT_PARTNER_NAME


def _love_languages(preferences: dict[str, Any] | None) -> tuple[str, ...]:
    if not preferences:
        return ()
    languages = []
    for key in ("love_language_primary", "love_language_secondary"):
        value = preferences.get(key)
        if value:
            languages.append(_love_language_label(value))
    return tuple(languages)


def _love_language_label(key: Any) -> str:
    return LOVE_LANGUAGE_LABELS.get(key, str(key))


def _ranking_labels(assessment: AssessmentSummary | None) -> tuple[str, ...]:
    if assessment is None:
        return ()
    return tuple(_love_language_label(key) for key in assessment.love_language_ranking)


def _communication_style(preferences: dict[str, Any] | None) -> str | None:
    if not preferences:
        return None
    value = preferences.get("communication_style")
    if not value:
        return None
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


class ContextBuilder:
    """Builds the coaching context for a user/couple pair."""

    def __init__(
        self,
        signal_reader: ActivitySignalReader,
        history_reader: CoupleHistoryReader,
    ) -> None:
        """Initialize the context builder.

        Args:
            signal_reader: Source of recent activity, health and check-ins.
            history_reader: Source of dates, flirts, timeline and assessments.
        """
        self.signals = signal_reader
        self.history = history_reader

    async def build(
        self,
        user_id: str,
        couple_id: str,
        now: datetime | None = None,
    ) -> CoachContext:
        """Gather everything the coach should know for one reply.

        Args:
            user_id: The user's ID.
            couple_id: The user's couple ID.
            now: Reference instant for recency windows.

        Returns:
            A CoachContext; any field that could not be read is left at its default.
        """
        now = now or datetime.now(UTC)
        log_extra = {"user_id": user_id, "couple_id": couple_id}

        async def best_effort(what: str, read: Awaitable[Any], default: Any = None) -> Any:
            try:
                return await read
            except Exception:
                logger.warning("Failed to fetch %s for context", what, extra=log_extra)
                return default

        user_name = display_name(
            await best_effort("user profile", SupabaseClient.get_profile(user_id))
        )
        if not user_name:
            user_name = await best_effort(
                "onboarding name", SupabaseClient.get_onboarding_name(user_id)
            )
        user_preferences = await best_effort(
            "user preferences", SupabaseClient.get_preferences(user_id)
        )
        partner_id = await best_effort("couple", SupabaseClient.get_partner_id(couple_id, user_id))

        partner_name = None
        partner_preferences = None
        partner_checkins = None
        partner_assessment = None
        if partner_id:
            partner_name = display_name(
                await best_effort("partner profile", SupabaseClient.get_profile(partner_id))
            )
            partner_preferences = await best_effort(
                "partner preferences", SupabaseClient.get_preferences(partner_id)
            )
            partner_rows = await best_effort(
                "partner check-ins",
                self.signals.recent_checkins(partner_id, settings.CONCERN_WINDOW_DAYS, now),
                [],
            )
            partner_checkins = CheckinSummary.from_checkins(partner_rows, now)
            partner_assessment = await best_effort(
                "partner assessment", self.history.latest_assessment(partner_id)
            )

        user_rows = await best_effort(
            "check-ins",
            self.signals.recent_checkins(user_id, settings.CONCERN_WINDOW_DAYS, now),
            [],
        )
        user_assessment = await best_effort("assessment", self.history.latest_assessment(user_id))

        return CoachContext(
            user_id=user_id,
            couple_id=couple_id,
            user_name=user_name,
            partner_name=partner_name,
            health_score=await best_effort("health score", self.signals.health_score(couple_id)),
            recent_activity=await self.signals.recent_activity(user_id, couple_id, now),
            user_love_languages=_love_languages(user_preferences),
            partner_love_languages=_love_languages(partner_preferences),
            user_love_language_ranking=_ranking_labels(user_assessment),
            partner_love_language_ranking=_ranking_labels(partner_assessment),
            user_communication_style=_communication_style(user_preferences),
            partner_communication_style=_communication_style(partner_preferences),
            user_conflict_style=(user_preferences or {}).get("conflict_style") or None,
            partner_profile_complete=partner_preferences is not None,
            checkins=CheckinSummary.from_checkins(user_rows, now),
            partner_checkins=partner_checkins,
            upcoming_date=await best_effort(
                "upcoming date", self.history.upcoming_date(couple_id, now)
            ),
            recent_dates=tuple(
                await best_effort("recent dates", self.history.recent_dates(couple_id, now), [])
            ),
            recent_flirts=tuple(
                await best_effort("flirts", self.history.recent_flirts(user_id, couple_id), [])
            ),
            timeline_memories=await best_effort(
                "timeline count", self.history.timeline_count(couple_id), 0
            ),
            user_assessment=user_assessment,
            partner_assessment=partner_assessment,
        )


def render(context: CoachContext, max_chars: int | None = None) -> str:
    """Format a context as plain text for the system prompt.

    Pure: the same context always renders to the same string. Sections
    appear in a fixed order and output is cut at a line boundary so it
    never exceeds ``max_chars``.
    """
    max_chars = max_chars or settings.MAX_CONTEXT_CHARS
    user = context.display_user_name
    partner = context.display_partner_name

    lines = ["ABOUT THIS COUPLE:", f"User you're coaching: {user}"]
    if context.user_name:
        lines.append(
            f'Always address this person by their first name "{context.user_name}" '
            'naturally in conversation, never as "the user".'
        )
    lines.extend(
        _preference_lines(
            user,
            context.user_love_languages,
            context.user_love_language_ranking,
            context.user_communication_style,
        )
    )
    if context.user_conflict_style:
        lines.append(f"{user}'s conflict style: {context.user_conflict_style}")

    lines.append("")
    lines.append(f"Partner: {partner}")
    if not context.partner_profile_complete and not context.partner_love_language_ranking:
        lines.append(f"({partner} hasn't completed their profile yet)")
    lines.extend(
        _preference_lines(
            partner,
            context.partner_love_languages,
            context.partner_love_language_ranking,
            context.partner_communication_style,
        )
    )

    if context.health_score is not None:
        lines.extend(["", f"Relationship health score: {context.health_score}/100"])

    for section in (
        _checkin_lines(context, user, partner),
        _date_lines(context),
        _flirt_lines(context),
        _timeline_lines(context),
        _assessment_lines(context, partner),
    ):
        if section:
            lines.append("")
            lines.extend(section)

    return _truncate_lines(lines, max_chars)


def _preference_lines(
    name: str,
    love_languages: tuple[str, ...],
    ranking: tuple[str, ...],
    style: str | None,
) -> list[str]:
    lines = []
    if ranking:
        ranked = ", ".join(f"{i}. {label}" for i, label in enumerate(ranking, start=1))
        lines.append(f"{name}'s love languages (ranked 1=primary): {ranked}")
    else:
        if love_languages:
            lines.append(f"{name}'s primary love language: {love_languages[0]}")
        if len(love_languages) > 1:
            lines.append(f"{name}'s secondary love language: {love_languages[1]}")
    if style:
        lines.append(f"{name}'s communication style: {style}")
    return lines


def _checkin_lines(context: CoachContext, user: str, partner: str) -> list[str]:
    summary = context.checkins
    if summary is None:
        return []
    lines = [
        f"Recent check-ins (last {summary.total} entries):",
        f"- {user}: avg mood {summary.avg_mood}/5 ({summary.avg_mood_label}), "
        f"avg connection {summary.avg_connection}/5",
        f"- Check-in streak: {summary.streak} day{'' if summary.streak == 1 else 's'}",
    ]
    if summary.last_checkin_date:
        lines.append(f"- Last checked in: {summary.last_checkin_date}")
    if summary.concerns:
        lines.append(f"- Concerns: {'; '.join(summary.concerns)}")
    if summary.recent:
        lines.append(f"Recent check-in responses from {user}:")
        for entry in summary.recent:
            line = f"  {entry.date}: mood={entry.mood or 'unknown'}, connection={entry.connection}/5"
            if entry.question and entry.answer:
                line += f'. Q: "{entry.question}" A: "{entry.answer}"'
            lines.append(line)
    partner_summary = context.partner_checkins
    if partner_summary is not None:
        lines.append(
            f"- {partner}: avg mood {partner_summary.avg_mood}/5, "
            f"avg connection {partner_summary.avg_connection}/5 ({partner_summary.total} entries)"
        )
    return lines


def _date_lines(context: CoachContext) -> list[str]:
    lines = []
    upcoming = context.upcoming_date
    if upcoming is not None:
        lines.append(
            f'Upcoming date: "{upcoming.title}" on {upcoming.when:%A, %b} {upcoming.when.day}'
        )
    if context.recent_dates:
        lines.append("Recent completed dates:")
        for entry in context.recent_dates:
            line = f'  - "{entry.title}" ({entry.when:%b} {entry.when.day})'
            if entry.rating:
                line += f", rated {entry.rating}/5"
            if entry.review:
                line += f': "{entry.review[:REVIEW_CHARS]}"'
            lines.append(line)
    return lines


def _flirt_lines(context: CoachContext) -> list[str]:
    if not context.recent_flirts:
        return []
    lines = ["Recent flirts:"]
    for flirt in context.recent_flirts[:RECENT_FLIRTS_SHOWN]:
        kind = flirt.type or "flirt"
        line = f"  - {flirt.direction} ({kind}) on {flirt.sent_at:%b} {flirt.sent_at.day}"
        if flirt.message:
            line += f': "{flirt.message}"'
        lines.append(line)
    return lines


def _timeline_lines(context: CoachContext) -> list[str]:
    if context.timeline_memories <= 0:
        return []
    return [f"Timeline memories saved: {context.timeline_memories}"]


def _area_text(area: AssessmentArea) -> str:
    text = f"{area.label} ({area.percentage:g}%"
    if area.headline:
        text += f', "{area.headline}"'
    return text + ")"


def _assessment_lines(context: CoachContext, partner: str) -> list[str]:
    lines = []
    assessment = context.user_assessment
    if assessment is not None:
        if assessment.overall_percentage is not None:
            lines.append(f"Relationship assessment overall: {assessment.overall_percentage:g}%")
        if assessment.weak_areas:
            weak = "; ".join(_area_text(a) for a in assessment.weak_areas)
            lines.append(f"Areas to work on: {weak}")
        if assessment.strong_areas:
            strong = "; ".join(_area_text(a) for a in assessment.strong_areas)
            lines.append(f"Strong areas: {strong}")
    partner_assessment = context.partner_assessment
    if partner_assessment is not None and partner_assessment.weak_areas:
        labels = ", ".join(a.label for a in partner_assessment.weak_areas)
        lines.append(f"{partner}'s areas to work on: {labels}")
    if partner_assessment is not None and partner_assessment.strong_areas:
        labels = ", ".join(a.label for a in partner_assessment.strong_areas)
        lines.append(f"{partner}'s strong areas: {labels}")
    return lines


def _truncate_lines(lines: list[str], max_chars: int) -> str:
    kept: list[str] = []
    length = 0
    for line in lines:
        added = len(line) + (1 if kept else 0)
        if length + added > max_chars:
            break
        kept.append(line)
        length += added
    return "\n".join(kept)


def _greeting(user_name: str | None) -> str:
    return f"Hey {user_name}! " if user_name else "Hey! "


def opener_text(signal: ActivitySignal, user_name: str | None = None) -> str:
    """Warm first message for a fresh session, keyed by the activity type."""
    greeting = _greeting(user_name)
    description = signal.description
    suggestion = signal.suggestion

    match signal.type:
        case ActivityType.COMPLETED_DATE:
            return (
                f"{greeting}Great to see you. By the way, I noticed {description}. "
                f"{suggestion} Of course, we can talk about anything on your mind. I'm here."
            )
        case ActivityType.FLIRT_SENT:
            return (
                f"{greeting}I noticed {description}, love to see those little sparks. "
                f"{suggestion} What's on your mind today?"
            )
        case ActivityType.LOW_HEALTH:
            return (
                f"{greeting}I'm glad you're here. {description}. "
                f"{suggestion} What would you like to talk about?"
            )
        case ActivityType.MISSED_CHECKINS:
            return (
                f"{greeting}{description}. {suggestion} "
                "No pressure, I'm just here whenever you need me."
            )
        case _:
            return f"{greeting}Good to see you. What's on your mind today?"


def opener_mention(signal: ActivitySignal) -> str:
    """One-time system-prompt note about recent activity; empty for no signal."""
    if signal.is_none or not signal.description:
        return ""
    mention = f"Recent activity you may mention once, briefly and naturally: {signal.description}."
    if signal.suggestion:
        mention = f"{mention} {signal.suggestion}"
    return mention


def system_prompt(context: CoachContext, include_opener: bool = False) -> str:
    """Persona preamble plus the rendered context.

    Args:
        context: The built context.
        include_opener: Add the recent-activity mention (first reply only).

    Returns:
        The system prompt text.
    """
    parts = [COACH_PERSONA, render(context)]
    if include_opener:
        mention = opener_mention(context.recent_activity)
        if mention:
            parts.append(mention)
    return "\n\n".join(parts)

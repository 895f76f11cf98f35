"""Shared couple history for the coaching context.

Reads what the couple has been doing together in the app: past and upcoming
dates, recent flirts, saved timeline memories and relationship assessment
results. Row parsing is pure so the rendered context stays deterministic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from supabase import Client

from coach.core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

SCHEDULED_STATUSES = ["planned", "accepted"]
PAST_DATE_STATUSES = ["planned", "accepted", "completed"]
RECENT_DATES_LIMIT = 3
RECENT_FLIRTS_LIMIT = 5
FLIRT_MESSAGE_CHARS = 80

# Tried in order; older installs use the second name
TIMELINE_TABLES = ("timeline_entries", "timeline_events")

WEAK_AREA_BELOW = 70
STRONG_AREA_FROM = 80

RELATIONSHIP_MODULE_LABELS: dict[str, str] = {
    "know_your_partner": "Know Your Partner",
    "love_expressions": "Love Expressions",
    "communication": "Communication",
    "attachment_security": "Attachment & Security",
    "shared_vision": "Shared Vision",
}


def _parse_ts(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class DateEntry:
    """A date night, past or upcoming."""

    title: str
    when: datetime
    rating: int | None = None
    review: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DateEntry:
        rating = row.get("rating")
        return cls(
            title=row.get("title") or "a date",
            when=_parse_ts(row["date_time"]),
            rating=int(rating) if rating else None,
            review=row.get("review") or row.get("reflection_notes") or None,
        )


@dataclass(frozen=True)
class FlirtEntry:
    """A flirt seen from the coached user's side."""

    direction: str
    type: str | None
    message: str | None
    sent_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any], user_id: str) -> FlirtEntry:
        message = row.get("message")
        return cls(
            direction="sent" if row.get("sender_id") == user_id else "received",
            type=row.get("type"),
            message=message[:FLIRT_MESSAGE_CHARS] if message else None,
            sent_at=_parse_ts(row["created_at"]),
        )


@dataclass(frozen=True)
class AssessmentArea:
    """One scored module of a relationship assessment."""

    label: str
    percentage: float
    headline: str | None = None


@dataclass(frozen=True)
class AssessmentSummary:
    """Latest completed relationship assessment of one partner."""

    overall_percentage: float | None = None
    weak_areas: tuple[AssessmentArea, ...] = ()
    strong_areas: tuple[AssessmentArea, ...] = ()
    love_language_ranking: tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AssessmentSummary:
        """Summarise an assessment row's ``results`` and ``answers``."""
        results = row.get("results") or {}
        answers = row.get("answers") or {}

        areas = []
        for module in results.get("modules") or []:
            percentage = module.get("percentage")
            if percentage is None:
                continue
            module_id = module.get("moduleId", "")
            areas.append(
                AssessmentArea(
                    label=RELATIONSHIP_MODULE_LABELS.get(module_id, module_id),
                    percentage=float(percentage),
                    headline=(module.get("insights") or {}).get("headline"),
                )
            )

        return cls(
            overall_percentage=results.get("overallPercentage"),
            weak_areas=tuple(
                sorted(
                    (a for a in areas if a.percentage < WEAK_AREA_BELOW),
                    key=lambda a: a.percentage,
                )
            ),
            strong_areas=tuple(a for a in areas if a.percentage >= STRONG_AREA_FROM),
            love_language_ranking=love_language_ranking(answers.get("le_1")),
        )


def love_language_ranking(ranks: Any) -> tuple[str, ...]:
    """Order love-language keys by their assessment rank (1 = primary).

    The assessment spells acts of service as ``service``; it is normalised
    to the ``acts`` key used by profile preferences.
    """
    if not isinstance(ranks, dict):
        return ()
    ranked = sorted(
        ((key, value) for key, value in ranks.items() if isinstance(value, int | float)),
        key=lambda item: item[1],
    )
    return tuple("acts" if key == "service" else key for key, _ in ranked)


class CoupleHistoryReader:
    """Reads a couple's shared activity for the coaching context."""

    def __init__(self, db_client: Client) -> None:
        """Initialize the reader.

        Args:
            db_client: Supabase client for database operations.
        """
        self.db = db_client

    async def recent_dates(self, couple_id: str, now: datetime | None = None) -> list[DateEntry]:
        """The couple's most recent past dates, newest first.

        Merges scheduled and completed ``date_plans`` with self-logged
        ``custom_dates``.

        Raises:
            PersistenceError: If either read fails.
        """
        now = now or datetime.now(UTC)
        try:
            plans = (
                self.db.table("date_plans")
                .select("title, date_time, status, rating, reflection_notes")
                .eq("couple_id", couple_id)
                .in_("status", PAST_DATE_STATUSES)
                .lt("date_time", now.isoformat())
                .order("date_time", desc=True)
                .limit(RECENT_DATES_LIMIT)
                .execute()
            )
            custom = (
                self.db.table("custom_dates")
                .select("title, date_time, rating, review")
                .eq("couple_id", couple_id)
                .lt("date_time", now.isoformat())
                .order("date_time", desc=True)
                .limit(RECENT_DATES_LIMIT)
                .execute()
            )
        except Exception as e:
            logger.exception("Error fetching recent dates", extra={"couple_id": couple_id})
            raise PersistenceError(f"Failed to fetch dates: {e}") from e

        entries = [DateEntry.from_row(row) for row in (plans.data or []) + (custom.data or [])]
        entries.sort(key=lambda d: d.when, reverse=True)
        return entries[:RECENT_DATES_LIMIT]

    async def upcoming_date(self, couple_id: str, now: datetime | None = None) -> DateEntry | None:
        """The couple's next scheduled date, if any.

        Raises:
            PersistenceError: If either read fails.
        """
        now = now or datetime.now(UTC)
        try:
            plans = (
                self.db.table("date_plans")
                .select("title, date_time, status")
                .eq("couple_id", couple_id)
                .in_("status", SCHEDULED_STATUSES)
                .gte("date_time", now.isoformat())
                .order("date_time", desc=False)
                .limit(1)
                .execute()
            )
            custom = (
                self.db.table("custom_dates")
                .select("title, date_time")
                .eq("couple_id", couple_id)
                .gte("date_time", now.isoformat())
                .order("date_time", desc=False)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception("Error fetching upcoming date", extra={"couple_id": couple_id})
            raise PersistenceError(f"Failed to fetch upcoming date: {e}") from e

        entries = [DateEntry.from_row(row) for row in (plans.data or []) + (custom.data or [])]
        return min(entries, key=lambda d: d.when) if entries else None

    async def recent_flirts(self, user_id: str, couple_id: str) -> list[FlirtEntry]:
        """The couple's latest flirts in either direction, newest first.

        Raises:
            PersistenceError: If the read fails.
        """
        try:
            result = (
                self.db.table("flirts")
                .select("sender_id, type, message, created_at")
                .eq("couple_id", couple_id)
                .order("created_at", desc=True)
                .limit(RECENT_FLIRTS_LIMIT)
                .execute()
            )
        except Exception as e:
            logger.exception("Error fetching flirts", extra={"couple_id": couple_id})
            raise PersistenceError(f"Failed to fetch flirts: {e}") from e

        return [FlirtEntry.from_row(row, user_id) for row in result.data or []]

    async def timeline_count(self, couple_id: str) -> int:
        """Number of timeline memories the couple has saved.

        Raises:
            PersistenceError: If no timeline table could be read.
        """
        for table in TIMELINE_TABLES:
            try:
                result = (
                    self.db.table(table)
                    .select("id", count="exact", head=True)
                    .eq("couple_id", couple_id)
                    .execute()
                )
            except Exception:
                logger.warning(
                    "Timeline count failed",
                    exc_info=True,
                    extra={"couple_id": couple_id, "table": table},
                )
                continue
            return result.count or 0
        raise PersistenceError("Failed to count timeline memories")

    async def latest_assessment(self, user_id: str) -> AssessmentSummary | None:
        """Summary of the user's latest completed relationship assessment.

        Raises:
            PersistenceError: If the read fails.
        """
        try:
            result = (
                self.db.table("relationship_assessments")
                .select("answers, results, completed_at")
                .eq("user_id", user_id)
                .not_.is_("completed_at", "null")
                .order("completed_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception("Error fetching assessment", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to fetch assessment: {e}") from e

        if not result.data:
            return None
        return AssessmentSummary.from_row(result.data[0])

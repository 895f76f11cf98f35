"""Activity signal reader: recent cross-feature activity for openers.

Derives the single most relevant recent-activity signal for a user/couple
pair and the check-in concern flags that drive proactive prompts. Signal
priority, first match wins:

1. a completed date with no reflection recorded yet
2. an affection message ("flirt") sent recently
3. a relationship-health score below the low threshold
4. a missed check-in streak

Each candidate read is best-effort: a failing query is logged and treated
as "no signal" so the opener never fails because one feature's table did.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from supabase import Client

from coach.core.config import settings
from coach.core.exceptions import PersistenceError
from coach.models.coach import ActivitySignal, ActivityType, ConcernFlag, ConcernType, Severity

logger = logging.getLogger(__name__)

# Higher is better; unknown moods count as "okay"
MOOD_VALUES: dict[str, int] = {
    "amazing": 5,
    "great": 5,
    "good": 4,
    "okay": 3,
    "down": 2,
    "stressed": 1,
    "struggling": 1,
}

MOOD_LABELS: dict[int, str] = {
    5: "great",
    4: "good",
    3: "okay",
    2: "down",
    1: "stressed",
}

NEUTRAL_CONNECTION = 3

# Concern detection thresholds
CONSECUTIVE_STRESS_DAYS = 3
LOW_CONNECTION_DAYS = 3
CONNECTION_DROP_POINTS = 2.0
HIGH_STRESS_DAYS = 5
HIGH_LOW_CONNECTION_DAYS = 5
HIGH_CONNECTION_DROP = 3.0


def mood_value(mood: str | None) -> int:
    """Map a mood string onto the 1-5 scale."""
    return MOOD_VALUES.get((mood or "").lower(), 3)


def connection_value(checkin: dict[str, Any]) -> int:
    """Connection score of a check-in; a missing score counts as neutral."""
    value = checkin.get("connection_score")
    return NEUTRAL_CONNECTION if value is None else int(value)


def _checkin_date(checkin: dict[str, Any]) -> date:
    return date.fromisoformat(str(checkin["check_date"])[:10])


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def detect_concerns(checkins: list[dict[str, Any]], today: date | None = None) -> list[ConcernFlag]:
    """Find worrying patterns in a window of check-ins.

    Args:
        checkins: Check-in rows with ``check_date``, ``mood`` and ``connection_score``.
        today: Reference day for the engagement check.

    Returns:
        Concern flags in a fixed order: stress, low connection, drop, engagement.
    """
    if not checkins:
        return []

    today = today or datetime.now(UTC).date()
    ordered = sorted(checkins, key=_checkin_date, reverse=True)
    concerns: list[ConcernFlag] = []

    consecutive_stress = 0
    for checkin in ordered:
        if mood_value(checkin.get("mood")) <= 2:
            consecutive_stress += 1
        else:
            break
    if consecutive_stress >= CONSECUTIVE_STRESS_DAYS:
        concerns.append(
            ConcernFlag(
                type=ConcernType.CONSECUTIVE_STRESS.value,
                severity=Severity.HIGH if consecutive_stress >= HIGH_STRESS_DAYS else Severity.MEDIUM,
                description=f"Stressed or down for {consecutive_stress} consecutive days",
            )
        )

    low_days = sum(1 for c in ordered[:7] if connection_value(c) < 3)
    if low_days >= LOW_CONNECTION_DAYS:
        concerns.append(
            ConcernFlag(
                type=ConcernType.LOW_CONNECTION.value,
                severity=Severity.HIGH if low_days >= HIGH_LOW_CONNECTION_DAYS else Severity.MEDIUM,
                description=f"Connection score below 3 for {low_days} of the last 7 days",
            )
        )

    if len(ordered) >= 6:
        recent_avg = _average([connection_value(c) for c in ordered[:3]])
        previous_avg = _average([connection_value(c) for c in ordered[3:6]])
        drop = previous_avg - recent_avg
        if drop >= CONNECTION_DROP_POINTS:
            concerns.append(
                ConcernFlag(
                    type=ConcernType.CONNECTION_DROP.value,
                    severity=Severity.HIGH if drop >= HIGH_CONNECTION_DROP else Severity.MEDIUM,
                    description=f"Connection dropped from {previous_avg:.1f} to {recent_avg:.1f}",
                )
            )

    oldest = _checkin_date(ordered[-1])
    expected_days = min(7, (today - oldest).days)
    if expected_days >= 5 and len(ordered) < expected_days * 0.5:
        concerns.append(
            ConcernFlag(
                type=ConcernType.LOW_ENGAGEMENT.value,
                severity=Severity.LOW,
                description=f"Only {len(ordered)} check-ins in the last {expected_days} days",
            )
        )

    return concerns


def checkin_streak(checkins: list[dict[str, Any]], today: date | None = None) -> int:
    """Consecutive check-in days ending today (0 if no check-in today)."""
    today = today or datetime.now(UTC).date()
    days = {_checkin_date(c) for c in checkins}
    streak = 0
    cursor = today
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def _days_ago_phrase(days: int) -> str:
    if days <= 0:
        return "today"
    if days == 1:
        return "yesterday"
    return f"{days} days ago"


def _parse_ts(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ActivitySignalReader:
    """Reads recent activity and check-in patterns for a user/couple pair."""

    def __init__(self, db_client: Client) -> None:
        """Initialize the reader.

        Args:
            db_client: Supabase client for database operations.
        """
        self.db = db_client

    async def recent_activity(
        self,
        user_id: str,
        couple_id: str,
        now: datetime | None = None,
    ) -> ActivitySignal:
        """Pick the single most relevant recent-activity signal.

        Args:
            user_id: The user's ID.
            couple_id: The user's couple ID.
            now: Reference instant for recency windows.

        Returns:
            The first qualifying signal by priority, or ``ActivitySignal.none()``.
        """
        now = now or datetime.now(UTC)
        candidates = (
            ("completed_date", lambda: self._completed_date_signal(couple_id, now)),
            ("flirt_sent", lambda: self._flirt_signal(user_id, couple_id, now)),
            ("low_health", lambda: self._low_health_signal(couple_id)),
            ("missed_checkins", lambda: self._missed_checkins_signal(user_id, now)),
        )
        for name, read in candidates:
            try:
                signal = await read()
            except Exception:
                logger.warning(
                    "Activity signal read failed: %s",
                    name,
                    exc_info=True,
                    extra={"user_id": user_id, "couple_id": couple_id},
                )
                continue
            if signal is not None:
                return signal
        return ActivitySignal.none()

    async def concern_flags(
        self,
        user_id: str,
        window_days: int | None = None,
        now: datetime | None = None,
    ) -> list[ConcernFlag]:
        """Concern flags from the user's recent check-ins.

        Returns an empty list if the check-ins cannot be read; proactive
        prompts are optional.
        """
        now = now or datetime.now(UTC)
        try:
            checkins = await self.recent_checkins(user_id, window_days, now)
        except PersistenceError:
            logger.warning("Skipping concern analysis", extra={"user_id": user_id})
            return []
        return detect_concerns(checkins, now.date())

    async def recent_checkins(
        self,
        user_id: str,
        window_days: int | None = None,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """The user's check-ins within the lookback window, oldest first.

        Raises:
            PersistenceError: If the read fails.
        """
        window_days = window_days or settings.CONCERN_WINDOW_DAYS
        now = now or datetime.now(UTC)
        start = (now.date() - timedelta(days=window_days)).isoformat()
        try:
            result = (
                self.db.table("daily_checkins")
                .select("check_date, mood, connection_score, question_text, question_response")
                .eq("user_id", user_id)
                .gte("check_date", start)
                .lte("check_date", now.date().isoformat())
                .order("check_date", desc=False)
                .execute()
            )
        except Exception as e:
            logger.exception("Error fetching check-ins", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to fetch check-ins: {e}") from e
        return list(result.data or [])

    async def health_score(self, couple_id: str) -> int | None:
        """Current relationship health score (0-100), if one was computed.

        Raises:
            PersistenceError: If the read fails.
        """
        try:
            result = (
                self.db.table("relationship_health")
                .select("overall_score")
                .eq("couple_id", couple_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.exception("Error fetching health score", extra={"couple_id": couple_id})
            raise PersistenceError(f"Failed to fetch health score: {e}") from e
        if result is None or not result.data:
            return None
        score = result.data.get("overall_score")
        return int(score) if score is not None else None

    async def _completed_date_signal(self, couple_id: str, now: datetime) -> ActivitySignal | None:
        since = now - timedelta(days=settings.COMPLETED_DATE_LOOKBACK_DAYS)
        result = (
            self.db.table("date_plans")
            .select("title, date_time, status, rating, reflection_notes")
            .eq("couple_id", couple_id)
            .eq("status", "completed")
            .gte("date_time", since.isoformat())
            .lte("date_time", now.isoformat())
            .order("date_time", desc=True)
            .limit(5)
            .execute()
        )
        for plan in result.data or []:
            if plan.get("rating") or plan.get("reflection_notes"):
                continue
            when = _parse_ts(plan["date_time"])
            return ActivitySignal(
                type=ActivityType.COMPLETED_DATE,
                description=f'you two went on "{plan.get("title") or "a date"}" on {when:%A, %B} {when.day}',
                suggestion="I'd love to hear how it went if you want to share.",
            )
        return None

    async def _flirt_signal(
        self,
        user_id: str,
        couple_id: str,
        now: datetime,
    ) -> ActivitySignal | None:
        since = now - timedelta(days=settings.FLIRT_RECENT_DAYS + 1)
        result = (
            self.db.table("flirts")
            .select("created_at")
            .eq("couple_id", couple_id)
            .eq("sender_id", user_id)
            .gte("created_at", since.isoformat())
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        days = (now.date() - _parse_ts(result.data[0]["created_at"]).date()).days
        if days > settings.FLIRT_RECENT_DAYS:
            return None
        return ActivitySignal(
            type=ActivityType.FLIRT_SENT,
            description=f"you sent a flirt {_days_ago_phrase(days)}",
            suggestion="Small gestures like that add up over time.",
        )

    async def _low_health_signal(self, couple_id: str) -> ActivitySignal | None:
        score = await self.health_score(couple_id)
        if score is None or score >= settings.LOW_HEALTH_THRESHOLD:
            return None
        return ActivitySignal(
            type=ActivityType.LOW_HEALTH,
            description=f"Your relationship health score is {score}/100",
            suggestion="It might be a good time to explore what's been going on.",
        )

    async def _missed_checkins_signal(self, user_id: str, now: datetime) -> ActivitySignal | None:
        result = (
            self.db.table("daily_checkins")
            .select("check_date")
            .eq("user_id", user_id)
            .order("check_date", desc=True)
            .limit(1)
            .execute()
        )
        if not result.data:
            return ActivitySignal(
                type=ActivityType.MISSED_CHECKINS,
                description="I haven't seen any check-ins from you yet",
                suggestion=(
                    "Starting a daily check-in habit is one of the best things "
                    "you can do for your relationship."
                ),
            )
        days = (now.date() - _checkin_date(result.data[0])).days
        if days < settings.MISSED_CHECKIN_DAYS:
            return None
        return ActivitySignal(
            type=ActivityType.MISSED_CHECKINS,
            description=f"It's been {days} days since your last check-in",
            suggestion="Getting back into daily check-ins can make a big difference, even a quick one.",
        )

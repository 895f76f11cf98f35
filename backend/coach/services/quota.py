"""Weekly free-tier message quota.

One counter row per (user, ISO week) in ``ai_weekly_usage``, keyed by the
Monday (UTC) that starts the week. Rows are created lazily on the first
committed message of the week and never updated once the week is over.

Enforcement is check-then-commit: ``check_limit`` runs before the LLM call
and ``commit`` only after a reply was obtained, so near-simultaneous requests
from one user can overshoot the cap slightly. Users are never charged for
failed provider calls.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from supabase import Client

from coach.core.config import settings
from coach.core.exceptions import PersistenceError, QuotaPersistenceError

logger = logging.getLogger(__name__)

USAGE_TABLE = "ai_weekly_usage"
INCREMENT_RPC = "increment_ai_weekly_usage"

# Postgres unique_violation
_UNIQUE_VIOLATION = "23505"


def week_start(now: datetime | None = None) -> date:
    """Return the Monday (UTC) that starts the week containing ``now``.

    Args:
        now: Reference instant; naive values are taken as UTC.

    Returns:
        The week-start date.
    """
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    today = now.astimezone(UTC).date()
    return today - timedelta(days=today.weekday())


class QuotaTracker:
    """Owns the weekly message-budget invariant for free-tier users."""

    def __init__(self, db_client: Client, limit: int | None = None) -> None:
        """Initialize the quota tracker.

        Args:
            db_client: Supabase client for database operations.
            limit: Weekly message limit (defaults to ``WEEKLY_FREE_MESSAGE_LIMIT``).
        """
        self.db = db_client
        self.limit = limit if limit is not None else settings.WEEKLY_FREE_MESSAGE_LIMIT

    async def current_count(self, user_id: str, now: datetime | None = None) -> int:
        """Read this week's committed message count.

        Args:
            user_id: The user's ID.
            now: Reference instant for the week key.

        Returns:
            The stored count, or 0 if no row exists yet.

        Raises:
            PersistenceError: If the read fails.
        """
        week_key = week_start(now).isoformat()
        try:
            result = (
                self.db.table(USAGE_TABLE)
                .select("message_count")
                .eq("user_id", user_id)
                .eq("week_start", week_key)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Failed to read weekly usage",
                extra={"user_id": user_id, "week_start": week_key},
            )
            raise PersistenceError(f"Failed to read weekly usage: {e}") from e

        if result is None or not result.data:
            return 0
        return int(result.data.get("message_count") or 0)

    async def get_remaining(
        self,
        user_id: str,
        is_premium: bool,
        now: datetime | None = None,
    ) -> int | None:
        """Messages left this week.

        Args:
            user_id: The user's ID.
            is_premium: Premium users are unlimited.
            now: Reference instant for the week key.

        Returns:
            None for premium users, otherwise ``max(0, limit - count)``.
        """
        if is_premium:
            return None
        count = await self.current_count(user_id, now)
        return max(0, self.limit - count)

    async def check_limit(self, user_id: str, now: datetime | None = None) -> bool:
        """Advisory pre-check; the increment happens later in ``commit``.

        Args:
            user_id: The user's ID.
            now: Reference instant for the week key.

        Returns:
            True if the user is still under the weekly limit.
        """
        count = await self.current_count(user_id, now)
        return count < self.limit

    async def commit(self, user_id: str, now: datetime | None = None) -> int:
        """Durably record one coached message for the current week.

        Tries an insert with ``message_count = 1``. If the row already exists
        (or the insert fails for any other reason) the increment is done
        server-side through the ``increment_ai_weekly_usage`` procedure, never
        as a client read-modify-write.

        Args:
            user_id: The user's ID.
            now: Reference instant for the week key.

        Returns:
            The post-increment count as stored.

        Raises:
            QuotaPersistenceError: If both the insert and the increment fail.
        """
        week_key = week_start(now).isoformat()
        log_extra = {"user_id": user_id, "week_start": week_key}

        try:
            result = (
                self.db.table(USAGE_TABLE)
                .insert({"user_id": user_id, "week_start": week_key, "message_count": 1})
                .execute()
            )
            if result.data:
                logger.debug("Weekly usage row created", extra=log_extra)
                return int(result.data[0].get("message_count", 1))
        except Exception as e:
            if _UNIQUE_VIOLATION not in str(e):
                logger.warning(
                    "Weekly usage insert failed, falling back to increment",
                    exc_info=True,
                    extra=log_extra,
                )

        try:
            response = self.db.rpc(
                INCREMENT_RPC,
                {"p_user_id": user_id, "p_week_start": week_key},
            ).execute()
            new_count = _rpc_count(response.data)
        except Exception as e:
            logger.exception("Weekly usage increment failed", extra=log_extra)
            raise QuotaPersistenceError(user_id, week_key) from e

        if new_count is None:
            logger.error("Weekly usage increment returned no count", extra=log_extra)
            raise QuotaPersistenceError(user_id, week_key)

        logger.debug("Weekly usage incremented", extra={**log_extra, "count": new_count})
        return new_count


def _rpc_count(data: Any) -> int | None:
    """Normalise the increment procedure's return value.

    PostgREST returns a bare scalar for ``RETURNS integer`` and a list of
    rows for ``RETURNS TABLE``/``SETOF``.
    """
    if isinstance(data, bool):
        return None
    if isinstance(data, int):
        return data
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        value = data.get("message_count")
        return int(value) if value is not None else None
    return None

"""Tests for the weekly message quota."""

import asyncio
from datetime import UTC, date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from coach.core.exceptions import PersistenceError, QuotaPersistenceError
from coach.services.quota import QuotaTracker, week_start

# 2026-10-19 is a Monday
MONDAY = datetime(2026, 10, 19, 0, 0, tzinfo=UTC)


def _usage_db(count: int | None) -> MagicMock:
    """Supabase mock whose usage row holds ``count`` (None for no row)."""
    db = MagicMock()
    result = MagicMock()
    result.data = None if count is None else {"message_count": count}
    (
        db.table.return_value.select.return_value.eq.return_value.eq.return_value
        .maybe_single.return_value.execute.return_value
    ) = result
    return db


class TestWeekStart:
    """Week-start key computation."""

    def test_every_day_of_the_week_maps_to_monday(self) -> None:
        for offset in range(7):
            now = MONDAY + timedelta(days=offset, hours=13)
            assert week_start(now) == date(2026, 10, 19)

    def test_sunday_just_before_midnight(self) -> None:
        assert week_start(datetime(2026, 10, 25, 23, 59, 59, tzinfo=UTC)) == date(2026, 10, 19)

    def test_seven_days_later_is_a_different_key(self) -> None:
        now = datetime(2026, 10, 21, 9, 30, tzinfo=UTC)
        assert week_start(now + timedelta(days=7)) == date(2026, 10, 26)
        assert week_start(now + timedelta(days=7)) != week_start(now)

    def test_naive_datetime_is_utc(self) -> None:
        assert week_start(datetime(2026, 10, 19, 0, 0)) == date(2026, 10, 19)

    def test_offset_aware_datetime_is_converted_to_utc(self) -> None:
        # Monday 01:00 at +05:00 is still Sunday in UTC
        now = datetime(2026, 10, 26, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        assert week_start(now) == date(2026, 10, 19)


class TestRemaining:
    """Remaining-message reads."""

    @pytest.mark.asyncio
    async def test_premium_is_unlimited_without_reading(self) -> None:
        db = MagicMock()
        tracker = QuotaTracker(db, limit=20)

        assert await tracker.get_remaining("user-1", is_premium=True) is None
        db.table.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("count", "expected"), [(0, 20), (1, 19), (19, 1), (20, 0), (27, 0)])
    async def test_remaining_is_limit_minus_count(self, count: int, expected: int) -> None:
        tracker = QuotaTracker(_usage_db(count), limit=20)
        assert await tracker.get_remaining("user-1", is_premium=False, now=MONDAY) == expected

    @pytest.mark.asyncio
    async def test_missing_row_counts_as_zero(self) -> None:
        tracker = QuotaTracker(_usage_db(None), limit=20)
        assert await tracker.current_count("user-1", MONDAY) == 0

    @pytest.mark.asyncio
    async def test_reads_current_week_key(self) -> None:
        db = _usage_db(3)
        tracker = QuotaTracker(db, limit=20)

        await tracker.current_count("user-1", MONDAY + timedelta(days=3))

        select = db.table.return_value.select.return_value
        select.eq.assert_called_once_with("user_id", "user-1")
        select.eq.return_value.eq.assert_called_once_with("week_start", "2026-10-19")
        db.table.assert_called_with("ai_weekly_usage")

    @pytest.mark.asyncio
    async def test_read_failure_raises_persistence_error(self) -> None:
        db = MagicMock()
        db.table.side_effect = Exception("connection reset")

        with pytest.raises(PersistenceError):
            await QuotaTracker(db).current_count("user-1")


class TestCheckLimit:
    """Advisory pre-check."""

    @pytest.mark.asyncio
    async def test_allows_below_limit(self) -> None:
        assert await QuotaTracker(_usage_db(19), limit=20).check_limit("user-1") is True

    @pytest.mark.asyncio
    async def test_blocks_at_limit(self) -> None:
        assert await QuotaTracker(_usage_db(20), limit=20).check_limit("user-1") is False


class TestCommit:
    """Durable increments."""

    @pytest.mark.asyncio
    async def test_first_message_of_week_inserts_row(self) -> None:
        db = MagicMock()
        db.table.return_value.insert.return_value.execute.return_value = MagicMock(
            data=[{"message_count": 1}]
        )

        count = await QuotaTracker(db).commit("user-1", MONDAY)

        assert count == 1
        db.table.return_value.insert.assert_called_once_with(
            {"user_id": "user-1", "week_start": "2026-10-19", "message_count": 1}
        )
        db.rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_existing_row_falls_back_to_atomic_increment(self) -> None:
        db = MagicMock()
        db.table.return_value.insert.return_value.execute.side_effect = Exception(
            "duplicate key value violates unique constraint (23505)"
        )
        db.rpc.return_value.execute.return_value = MagicMock(data=6)

        count = await QuotaTracker(db).commit("user-1", MONDAY)

        assert count == 6
        db.rpc.assert_called_once_with(
            "increment_ai_weekly_usage",
            {"p_user_id": "user-1", "p_week_start": "2026-10-19"},
        )

    @pytest.mark.asyncio
    async def test_increment_returning_rows_is_normalised(self) -> None:
        db = MagicMock()
        db.table.return_value.insert.return_value.execute.side_effect = Exception("23505")
        db.rpc.return_value.execute.return_value = MagicMock(data=[{"message_count": 4}])

        assert await QuotaTracker(db).commit("user-1", MONDAY) == 4

    @pytest.mark.asyncio
    async def test_both_paths_failing_raises_quota_persistence_error(self) -> None:
        db = MagicMock()
        db.table.return_value.insert.return_value.execute.side_effect = Exception("timeout")
        db.rpc.return_value.execute.side_effect = Exception("timeout")

        with pytest.raises(QuotaPersistenceError) as exc_info:
            await QuotaTracker(db).commit("user-1", MONDAY)

        assert exc_info.value.details["week_start"] == "2026-10-19"

    @pytest.mark.asyncio
    async def test_increment_without_count_raises_quota_persistence_error(self) -> None:
        db = MagicMock()
        db.table.return_value.insert.return_value.execute.side_effect = Exception("23505")
        db.rpc.return_value.execute.return_value = MagicMock(data=None)

        with pytest.raises(QuotaPersistenceError):
            await QuotaTracker(db).commit("user-1", MONDAY)


class _UsageQuery:
    """Query builder over the in-memory usage rows."""

    def __init__(self, store: "_UsageStore") -> None:
        self.store = store
        self.filters: dict[str, str] = {}
        self.row: dict | None = None

    def insert(self, row: dict) -> "_UsageQuery":
        self.row = row
        return self

    def select(self, *_columns: str) -> "_UsageQuery":
        return self

    def eq(self, column: str, value: str) -> "_UsageQuery":
        self.filters[column] = value
        return self

    def maybe_single(self) -> "_UsageQuery":
        return self

    def execute(self) -> MagicMock | None:
        if self.row is not None:
            key = (self.row["user_id"], self.row["week_start"])
            if key in self.store.rows:
                raise Exception(
                    'duplicate key value violates unique constraint "ai_weekly_usage_pkey" (23505)'
                )
            self.store.rows[key] = self.row["message_count"]
            return MagicMock(data=[dict(self.row)])
        key = (self.filters["user_id"], self.filters["week_start"])
        if key not in self.store.rows:
            return None
        return MagicMock(data={"message_count": self.store.rows[key]})


class _UsageStore:
    """Stateful stand-in for the usage table and its increment procedure."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], int] = {}

    def table(self, name: str) -> _UsageQuery:
        assert name == "ai_weekly_usage"
        return _UsageQuery(self)

    def rpc(self, name: str, params: dict) -> MagicMock:
        assert name == "increment_ai_weekly_usage"
        key = (params["p_user_id"], params["p_week_start"])
        self.rows[key] = self.rows.get(key, 0) + 1
        return MagicMock(execute=MagicMock(return_value=MagicMock(data=self.rows[key])))


class TestCommitAccounting:
    """Remaining messages track committed messages exactly."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("commits", [1, 19, 20, 25])
    async def test_remaining_after_concurrent_commits(self, commits: int) -> None:
        store = _UsageStore()
        tracker = QuotaTracker(store, limit=20)

        counts = await asyncio.gather(
            *(tracker.commit("user-1", MONDAY + timedelta(minutes=i)) for i in range(commits))
        )

        assert sorted(counts) == list(range(1, commits + 1))
        assert await tracker.get_remaining("user-1", is_premium=False, now=MONDAY) == max(
            0, 20 - commits
        )
        assert await tracker.check_limit("user-1", MONDAY) is (commits < 20)

    @pytest.mark.asyncio
    async def test_commits_are_counted_per_user_and_week(self) -> None:
        store = _UsageStore()
        tracker = QuotaTracker(store, limit=20)

        await asyncio.gather(
            tracker.commit("user-1", MONDAY),
            tracker.commit("user-1", MONDAY + timedelta(days=2)),
            tracker.commit("user-2", MONDAY),
            tracker.commit("user-1", MONDAY + timedelta(days=7)),
        )

        assert await tracker.get_remaining("user-1", False, MONDAY) == 18
        assert await tracker.get_remaining("user-2", False, MONDAY) == 19
        assert await tracker.get_remaining("user-1", False, MONDAY + timedelta(days=7)) == 19

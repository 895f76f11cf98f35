"""Tests for coaching context assembly and rendering."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from coach.core.exceptions import PersistenceError
from coach.models.coach import ActivitySignal, ActivityType
from coach.services.context_builder import (
    COACH_PERSONA,
    CheckinEntry,
    CheckinSummary,
    CoachContext,
    ContextBuilder,
    opener_mention,
    opener_text,
    render,
    system_prompt,
)
from coach.services.couple_history import AssessmentArea, AssessmentSummary, DateEntry, FlirtEntry

NOW = datetime(2026, 10, 19, 18, 0, tzinfo=UTC)

PROFILES = {
    "user-1": {"id": "user-1", "first_name": "Alex"},
    "user-2": {"id": "user-2", "display_name": "Sam"},
}
PREFERENCES = {
    "user-1": {"love_language_primary": "time", "love_language_secondary": "words"},
    "user-2": {"love_language_primary": "acts", "communication_style": ["direct", "warm"]},
}

LOW_HEALTH = ActivitySignal(
    type=ActivityType.LOW_HEALTH,
    description="Your relationship health score is 42/100",
    suggestion="It might be a good time to explore what's been going on.",
)


@pytest.fixture
def mock_supabase():
    """Mock SupabaseClient point reads."""
    with patch("coach.services.context_builder.SupabaseClient") as mock:
        mock.get_profile = AsyncMock(side_effect=lambda uid: PROFILES.get(uid))
        mock.get_preferences = AsyncMock(side_effect=lambda uid: PREFERENCES.get(uid))
        mock.get_partner_id = AsyncMock(return_value="user-2")
        mock.get_onboarding_name = AsyncMock(return_value=None)
        yield mock


@pytest.fixture
def signal_reader():
    """Mock ActivitySignalReader."""
    reader = MagicMock()
    reader.health_score = AsyncMock(return_value=42)
    reader.recent_checkins = AsyncMock(
        return_value=[
            {"check_date": "2026-10-19", "mood": "good", "connection_score": 4},
            {"check_date": "2026-10-18", "mood": "okay", "connection_score": 3},
        ]
    )
    reader.recent_activity = AsyncMock(return_value=LOW_HEALTH)
    return reader


@pytest.fixture
def history_reader():
    """Mock CoupleHistoryReader with no shared history."""
    reader = MagicMock()
    reader.upcoming_date = AsyncMock(return_value=None)
    reader.recent_dates = AsyncMock(return_value=[])
    reader.recent_flirts = AsyncMock(return_value=[])
    reader.timeline_count = AsyncMock(return_value=0)
    reader.latest_assessment = AsyncMock(return_value=None)
    return reader


class TestBuild:
    """Gathering context from the data store."""

    @pytest.mark.asyncio
    async def test_build_collects_everything(self, mock_supabase, signal_reader, history_reader) -> None:
        context = await ContextBuilder(signal_reader, history_reader).build("user-1", "couple-1", NOW)

        assert context.user_name == "Alex"
        assert context.partner_name == "Sam"
        assert context.health_score == 42
        assert context.recent_activity == LOW_HEALTH
        assert context.user_love_languages == ("Quality Time", "Words of Affirmation")
        assert context.partner_love_languages == ("Acts of Service",)
        assert context.partner_communication_style == "direct, warm"
        assert context.checkins is not None
        assert context.checkins.total == 2
        assert context.checkins.streak == 2

    @pytest.mark.asyncio
    async def test_build_tolerates_missing_data(self, mock_supabase, signal_reader, history_reader) -> None:
        mock_supabase.get_profile = AsyncMock(side_effect=PersistenceError("down"))
        mock_supabase.get_partner_id = AsyncMock(return_value=None)
        signal_reader.health_score = AsyncMock(return_value=None)
        signal_reader.recent_checkins = AsyncMock(side_effect=PersistenceError("down"))

        context = await ContextBuilder(signal_reader, history_reader).build("user-1", "couple-1", NOW)

        assert context.user_name is None
        assert context.partner_name is None
        assert context.health_score is None
        assert context.checkins is None
        rendered = render(context)
        assert "User you're coaching: the user" in rendered
        assert "Partner: their partner" in rendered
        assert "health score" not in rendered

    @pytest.mark.asyncio
    async def test_render_of_build_is_deterministic(self, mock_supabase, signal_reader, history_reader) -> None:
        builder = ContextBuilder(signal_reader, history_reader)

        first = render(await builder.build("user-1", "couple-1", NOW))
        second = render(await builder.build("user-1", "couple-1", NOW))

        assert first == second


class TestRender:
    """Plain-text rendering."""

    def test_render_includes_profile_sections(self) -> None:
        context = CoachContext(
            user_id="user-1",
            couple_id="couple-1",
            user_name="Alex",
            partner_name="Sam",
            health_score=72,
            user_love_languages=("Quality Time",),
            checkins=CheckinSummary(
                total=5, avg_mood=3.8, avg_connection=4.0, streak=1, last_checkin_date="2026-10-19"
            ),
        )

        rendered = render(context)

        assert rendered.startswith("ABOUT THIS COUPLE:\nUser you're coaching: Alex")
        assert 'first name "Alex"' in rendered
        assert "Alex's primary love language: Quality Time" in rendered
        assert "Relationship health score: 72/100" in rendered
        assert "avg mood 3.8/5 (good)" in rendered
        assert "Check-in streak: 1 day\n" in rendered

    def test_render_is_bounded_at_line_boundary(self) -> None:
        context = CoachContext(user_id="user-1", couple_id="couple-1", user_name="Alex")
        full = render(context, max_chars=10_000)

        capped = render(context, max_chars=60)

        assert len(capped) <= 60
        assert full.startswith(capped)
        assert full[len(capped)] == "\n"

    def test_recent_activity_is_not_rendered(self) -> None:
        context = CoachContext(user_id="user-1", couple_id="couple-1", recent_activity=LOW_HEALTH)
        assert "42/100" not in render(context)


class TestOpeners:
    """Opener templates."""

    def test_completed_date_opener(self) -> None:
        signal = ActivitySignal(
            type=ActivityType.COMPLETED_DATE,
            description='you two went on "Picnic" on Saturday, October 17',
            suggestion="I'd love to hear how it went if you want to share.",
        )

        text = opener_text(signal, "Alex")

        assert text.startswith('Hey Alex! Great to see you. By the way, I noticed you two went on "Picnic"')
        assert "I'd love to hear how it went" in text

    def test_flirt_opener(self) -> None:
        signal = ActivitySignal(type=ActivityType.FLIRT_SENT, description="you sent a flirt today")
        assert opener_text(signal, "Alex").startswith("Hey Alex! I noticed you sent a flirt today")

    def test_low_health_opener(self) -> None:
        text = opener_text(LOW_HEALTH, "Alex")
        assert text.startswith("Hey Alex! I'm glad you're here. Your relationship health score is 42/100.")
        assert text.endswith("What would you like to talk about?")

    def test_missed_checkins_opener_without_name(self) -> None:
        signal = ActivitySignal(
            type=ActivityType.MISSED_CHECKINS,
            description="It's been 5 days since your last check-in",
        )
        assert opener_text(signal).startswith("Hey! It's been 5 days since your last check-in.")

    def test_neutral_fallback(self) -> None:
        assert opener_text(ActivitySignal.none(), "Alex") == (
            "Hey Alex! Good to see you. What's on your mind today?"
        )
        assert opener_text(ActivitySignal.none()) == "Hey! Good to see you. What's on your mind today?"


class TestSystemPrompt:
    """System prompt assembly."""

    def test_opener_mention_only_on_request(self) -> None:
        context = CoachContext(user_id="user-1", couple_id="couple-1", recent_activity=LOW_HEALTH)

        with_mention = system_prompt(context, include_opener=True)
        without = system_prompt(context, include_opener=False)

        assert with_mention.startswith(COACH_PERSONA)
        assert opener_mention(LOW_HEALTH) in with_mention
        assert "42/100" not in without
        assert with_mention.count("42/100") == 1

    def test_no_mention_for_empty_signal(self) -> None:
        context = CoachContext(user_id="user-1", couple_id="couple-1")
        assert opener_mention(ActivitySignal.none()) == ""
        assert system_prompt(context, include_opener=True) == system_prompt(context)


def test_checkin_summary_from_rows() -> None:
    """Test averages, streak and last date are summarised."""
    today = NOW.date()
    rows = [
        {"check_date": (today - timedelta(days=d)).isoformat(), "mood": m, "connection_score": c}
        for d, m, c in [(0, "great", 5), (1, "down", 2), (3, "okay", None)]
    ]

    summary = CheckinSummary.from_checkins(rows, NOW)

    assert summary is not None
    assert summary.total == 3
    assert summary.avg_mood == 3.3
    assert summary.avg_connection == 3.3
    assert summary.streak == 2
    assert summary.last_checkin_date == today.isoformat()
    assert CheckinSummary.from_checkins([], NOW) is None


def test_zero_connection_score_is_kept() -> None:
    """Test a stored zero is averaged as zero, not as the neutral default."""
    rows = [{"check_date": NOW.date().isoformat(), "mood": "down", "connection_score": 0}]

    summary = CheckinSummary.from_checkins(rows, NOW)

    assert summary is not None
    assert summary.avg_connection == 0.0
    assert summary.recent[0].connection == 0


class TestSharedHistory:
    """Dates, flirts, timeline and assessments in the context."""

    @pytest.mark.asyncio
    async def test_build_collects_shared_history(
        self, mock_supabase, signal_reader, history_reader
    ) -> None:
        upcoming = DateEntry(title="Bowling", when=datetime(2026, 10, 23, 19, 0, tzinfo=UTC))
        picnic = DateEntry(title="Picnic", when=datetime(2026, 10, 17, 12, 0, tzinfo=UTC), rating=4)
        flirt = FlirtEntry(
            direction="sent",
            type="compliment",
            message="Thinking of you",
            sent_at=datetime(2026, 10, 18, 9, 0, tzinfo=UTC),
        )
        assessments = {
            "user-1": AssessmentSummary(love_language_ranking=("touch", "acts")),
            "user-2": AssessmentSummary(weak_areas=(AssessmentArea("Communication", 55.0),)),
        }
        history_reader.upcoming_date = AsyncMock(return_value=upcoming)
        history_reader.recent_dates = AsyncMock(return_value=[picnic])
        history_reader.recent_flirts = AsyncMock(return_value=[flirt])
        history_reader.timeline_count = AsyncMock(return_value=12)
        history_reader.latest_assessment = AsyncMock(side_effect=lambda uid: assessments.get(uid))

        context = await ContextBuilder(signal_reader, history_reader).build("user-1", "couple-1", NOW)

        assert context.upcoming_date == upcoming
        assert context.recent_dates == (picnic,)
        assert context.recent_flirts == (flirt,)
        assert context.timeline_memories == 12
        assert context.user_love_language_ranking == ("Physical Touch", "Acts of Service")
        assert context.partner_assessment == assessments["user-2"]
        assert context.partner_checkins is not None
        assert context.partner_checkins.total == 2
        history_reader.recent_flirts.assert_awaited_once_with("user-1", "couple-1")
        signal_reader.recent_checkins.assert_any_await("user-2", 7, NOW)

    @pytest.mark.asyncio
    async def test_history_failures_fall_back_to_defaults(
        self, mock_supabase, signal_reader, history_reader
    ) -> None:
        for name in ("upcoming_date", "recent_dates", "recent_flirts", "timeline_count", "latest_assessment"):
            setattr(history_reader, name, AsyncMock(side_effect=PersistenceError("down")))

        context = await ContextBuilder(signal_reader, history_reader).build("user-1", "couple-1", NOW)

        assert context.upcoming_date is None
        assert context.recent_dates == ()
        assert context.recent_flirts == ()
        assert context.timeline_memories == 0
        assert context.user_assessment is None
        assert context.partner_assessment is None
        assert context.user_name == "Alex"

    @pytest.mark.asyncio
    async def test_onboarding_name_used_when_profile_has_none(
        self, mock_supabase, signal_reader, history_reader
    ) -> None:
        mock_supabase.get_profile = AsyncMock(return_value={"id": "user-1"})
        mock_supabase.get_onboarding_name = AsyncMock(return_value="Jo")

        context = await ContextBuilder(signal_reader, history_reader).build("user-1", "couple-1", NOW)

        assert context.user_name == "Jo"
        mock_supabase.get_onboarding_name.assert_awaited_once_with("user-1")


FULL_CONTEXT = CoachContext(
    user_id="user-1",
    couple_id="couple-1",
    user_name="Alex",
    partner_name="Sam",
    health_score=72,
    user_love_language_ranking=("Quality Time", "Physical Touch"),
    user_conflict_style="avoidant",
    partner_profile_complete=False,
    checkins=CheckinSummary(
        total=2,
        avg_mood=4.0,
        avg_connection=4.0,
        streak=2,
        last_checkin_date="2026-10-19",
        recent=(
            CheckinEntry(
                date="2026-10-19",
                mood="good",
                connection=4,
                question="Best moment?",
                answer="Coffee together",
            ),
            CheckinEntry(date="2026-10-18", mood="okay", connection=0),
        ),
    ),
    partner_checkins=CheckinSummary(total=3, avg_mood=3.3, avg_connection=2.7, streak=0),
    upcoming_date=DateEntry(title="Bowling", when=datetime(2026, 10, 23, 19, 0, tzinfo=UTC)),
    recent_dates=(
        DateEntry(
            title="Picnic",
            when=datetime(2026, 10, 17, 12, 0, tzinfo=UTC),
            rating=4,
            review="Lovely afternoon",
        ),
    ),
    recent_flirts=(
        FlirtEntry(
            direction="received",
            type="compliment",
            message="You looked great today",
            sent_at=datetime(2026, 10, 18, 9, 0, tzinfo=UTC),
        ),
    ),
    timeline_memories=12,
    user_assessment=AssessmentSummary(
        overall_percentage=74.0,
        weak_areas=(AssessmentArea("Communication", 55.0, "Room to grow"),),
        strong_areas=(AssessmentArea("Shared Vision", 88.0),),
    ),
    partner_assessment=AssessmentSummary(weak_areas=(AssessmentArea("Attachment & Security", 60.0),)),
)


class TestRenderSections:
    """Full rendering with every optional section."""

    def test_sections_render_in_fixed_order(self) -> None:
        rendered = render(FULL_CONTEXT, max_chars=10_000)

        assert rendered == "\n".join(
            [
                "ABOUT THIS COUPLE:",
                "User you're coaching: Alex",
                'Always address this person by their first name "Alex" naturally in '
                'conversation, never as "the user".',
                "Alex's love languages (ranked 1=primary): 1. Quality Time, 2. Physical Touch",
                "Alex's conflict style: avoidant",
                "",
                "Partner: Sam",
                "(Sam hasn't completed their profile yet)",
                "",
                "Relationship health score: 72/100",
                "",
                "Recent check-ins (last 2 entries):",
                "- Alex: avg mood 4.0/5 (good), avg connection 4.0/5",
                "- Check-in streak: 2 days",
                "- Last checked in: 2026-10-19",
                "Recent check-in responses from Alex:",
                '  2026-10-19: mood=good, connection=4/5. Q: "Best moment?" A: "Coffee together"',
                "  2026-10-18: mood=okay, connection=0/5",
                "- Sam: avg mood 3.3/5, avg connection 2.7/5 (3 entries)",
                "",
                'Upcoming date: "Bowling" on Friday, Oct 23',
                "Recent completed dates:",
                '  - "Picnic" (Oct 17), rated 4/5: "Lovely afternoon"',
                "",
                "Recent flirts:",
                '  - received (compliment) on Oct 18: "You looked great today"',
                "",
                "Timeline memories saved: 12",
                "",
                "Relationship assessment overall: 74%",
                'Areas to work on: Communication (55%, "Room to grow")',
                "Strong areas: Shared Vision (88%)",
                "Sam's areas to work on: Attachment & Security",
            ]
        )

    def test_full_context_is_capped_at_line_boundary(self) -> None:
        full = render(FULL_CONTEXT, max_chars=10_000)

        capped = render(FULL_CONTEXT, max_chars=400)

        assert len(capped) <= 400
        assert full.startswith(capped)
        assert full[len(capped)] == "\n"
        assert "Timeline memories" not in capped

    def test_preference_love_languages_without_ranking(self) -> None:
        context = CoachContext(
            user_id="user-1",
            couple_id="couple-1",
            partner_name="Sam",
            partner_love_languages=("Acts of Service", "Receiving Gifts"),
            partner_communication_style="direct",
        )

        rendered = render(context)

        assert "Sam's primary love language: Acts of Service" in rendered
        assert "Sam's secondary love language: Receiving Gifts" in rendered
        assert "Sam's communication style: direct" in rendered
        assert "ranked" not in rendered

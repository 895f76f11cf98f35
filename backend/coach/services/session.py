"""Session orchestration for the solo coach.

Two entry points drive a user interaction:

- ``start_or_resume``: opening the coach screen. Resumes the latest fresh
  conversation (history + quota, no LLM call) or, when there is none,
  computes an opener without creating any rows.
- ``post_message``: one coached turn. Validates, checks quota, persists the
  user message, calls the LLM, persists the reply and only then commits
  quota usage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from coach.core.config import settings
from coach.core.exceptions import (
    LLMUnavailableError,
    NotFoundError,
    QuotaExceededError,
    QuotaPersistenceError,
    ValidationError,
)
from coach.core.llm import CoachLLMClient
from coach.db.supabase import SupabaseClient, display_name
from coach.models.coach import ActivitySignal, MessageRole, ProactivePrompt, SessionState
from coach.services.activity_signals import ActivitySignalReader
from coach.services.context_builder import ContextBuilder, opener_text, system_prompt
from coach.services.conversations import Conversation, ConversationStore, Message
from coach.services.couple_history import CoupleHistoryReader
from coach.services.insight_engine import select_prompt
from coach.services.quota import QuotaTracker

if TYPE_CHECKING:
    from supabase import Client

logger = logging.getLogger(__name__)


@dataclass
class QuotaStatus:
    """Remaining weekly messages; ``messages_remaining`` is None for premium."""

    messages_remaining: int | None
    is_premium: bool

    def to_dict(self) -> dict[str, Any]:
        return {"messagesRemaining": self.messages_remaining, "isPremium": self.is_premium}


@dataclass
class Opener:
    """Opener payload for a fresh session."""

    recent_activity: ActivitySignal
    user_name: str | None
    text: str
    proactive_prompt: ProactivePrompt | None
    quota: QuotaStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "recentActivity": None if self.recent_activity.is_none else self.recent_activity.to_dict(),
            "userName": self.user_name,
            "opener": self.text,
            "proactivePrompt": self.proactive_prompt.to_dict() if self.proactive_prompt else None,
            **self.quota.to_dict(),
        }


@dataclass
class SessionStart:
    """Result of start-or-resume."""

    state: SessionState
    quota: QuotaStatus
    conversation: Conversation | None = None
    messages: list[Message] = field(default_factory=list)
    opener: Opener | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.state == SessionState.RESUMED and self.conversation is not None:
            return {
                "state": self.state.value,
                "conversationId": self.conversation.id,
                "messages": [m.to_dict() for m in self.messages],
                **self.quota.to_dict(),
            }
        payload: dict[str, Any] = {"state": self.state.value, "conversationId": None}
        if self.opener is not None:
            payload.update(self.opener.to_dict())
        else:
            payload.update(self.quota.to_dict())
        return payload


@dataclass
class CoachReply:
    """Result of a successful coached turn."""

    conversation_id: str
    message: Message
    messages_remaining: int | None
    is_premium: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "conversationId": self.conversation_id,
            "message": self.message.to_dict(),
            "messagesRemaining": self.messages_remaining,
            "isPremium": self.is_premium,
        }


def llm_transcript(prior: list[Message], new_text: str) -> list[dict[str, str]]:
    """Build the provider transcript from prior history plus the new user turn.

    Leading assistant turns are dropped so the transcript starts with the
    user, and consecutive same-role turns (left behind by failed replies)
    are merged.
    """
    turns = [m.to_llm() for m in prior]
    while turns and turns[0]["role"] != MessageRole.USER.value:
        turns.pop(0)
    turns.append({"role": MessageRole.USER.value, "content": new_text})

    merged: list[dict[str, str]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {
                "role": turn["role"],
                "content": f"{merged[-1]['content']}\n\n{turn['content']}",
            }
        else:
            merged.append(dict(turn))
    return merged


class SessionOrchestrator:
    """Coordinates quota, conversations, context and the LLM for one user."""

    def __init__(
        self,
        db_client: Client,
        llm_client: CoachLLMClient | None = None,
        quota: QuotaTracker | None = None,
        conversations: ConversationStore | None = None,
        signals: ActivitySignalReader | None = None,
        context_builder: ContextBuilder | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            db_client: Supabase client shared by the default collaborators.
            llm_client: LLM client (a default ``CoachLLMClient`` if omitted).
            quota: Quota tracker override.
            conversations: Conversation store override.
            signals: Activity signal reader override.
            context_builder: Context builder override.
        """
        self.llm = llm_client or CoachLLMClient()
        self.quota = quota or QuotaTracker(db_client)
        self.conversations = conversations or ConversationStore(db_client)
        self.signals = signals or ActivitySignalReader(db_client)
        self.context_builder = context_builder or ContextBuilder(
            self.signals, CoupleHistoryReader(db_client)
        )

    async def quota_status(self, user_id: str, now: datetime | None = None) -> QuotaStatus:
        """Premium flag and remaining weekly messages for a user."""
        is_premium = await SupabaseClient.is_premium(user_id)
        remaining = await self.quota.get_remaining(user_id, is_premium, now)
        return QuotaStatus(messages_remaining=remaining, is_premium=is_premium)

    async def require_member(self, user_id: str, couple_id: str) -> None:
        """Ensure the user belongs to the couple.

        Raises:
            NotFoundError: If the couple is missing or the user is not a member.
        """
        if await SupabaseClient.get_couple_for_member(couple_id, user_id) is None:
            logger.warning(
                "Couple not found for user",
                extra={"user_id": user_id, "couple_id": couple_id},
            )
            raise NotFoundError(resource="Couple", resource_id=couple_id)

    async def start_or_resume(
        self,
        user_id: str,
        couple_id: str | None = None,
        now: datetime | None = None,
    ) -> SessionStart:
        """Resume the latest fresh conversation or prepare an opener.

        Never calls the LLM, consumes quota or creates rows.

        Args:
            user_id: The user's ID.
            couple_id: The user's couple ID, used for the opener.
            now: Reference instant.

        Returns:
            A resumed session with its messages, or a started one with an opener.

        Raises:
            NotFoundError: If a couple id is given and the user is not a member.
        """
        now = now or datetime.now(UTC)
        if couple_id:
            await self.require_member(user_id, couple_id)

        conversation = await self.conversations.find_resumable(user_id, now)

        if conversation is not None:
            messages = await self.conversations.all_messages(conversation.id)
            logger.info(
                "Resuming conversation",
                extra={
                    "user_id": user_id,
                    "conversation_id": conversation.id,
                    "message_count": len(messages),
                },
            )
            return SessionStart(
                state=SessionState.RESUMED,
                quota=await self.quota_status(user_id, now),
                conversation=conversation,
                messages=messages,
            )

        opener = await self._opener(user_id, couple_id, now)
        logger.info("Starting fresh session", extra={"user_id": user_id})
        return SessionStart(state=SessionState.STARTED, quota=opener.quota, opener=opener)

    async def get_opener(
        self,
        user_id: str,
        couple_id: str | None,
        now: datetime | None = None,
    ) -> Opener:
        """Warm opener, recent activity and proactive prompt for a fresh session.

        Raises:
            NotFoundError: If a couple id is given and the user is not a member.
        """
        now = now or datetime.now(UTC)
        if couple_id:
            await self.require_member(user_id, couple_id)
        return await self._opener(user_id, couple_id, now)

    async def _opener(self, user_id: str, couple_id: str | None, now: datetime) -> Opener:
        user_name = None
        try:
            user_name = display_name(await SupabaseClient.get_profile(user_id))
            if not user_name:
                user_name = await SupabaseClient.get_onboarding_name(user_id)
        except Exception:
            logger.warning("Failed to fetch user name for opener", extra={"user_id": user_id})

        signal = ActivitySignal.none()
        prompt = None
        if couple_id:
            signal = await self.signals.recent_activity(user_id, couple_id, now)
            flags = await self.signals.concern_flags(user_id, settings.CONCERN_WINDOW_DAYS, now)
            prompt = select_prompt(flags)

        return Opener(
            recent_activity=signal,
            user_name=user_name,
            text=opener_text(signal, user_name),
            proactive_prompt=prompt,
            quota=await self.quota_status(user_id, now),
        )

    async def post_message(
        self,
        user_id: str,
        message: str | None,
        couple_id: str | None,
        conversation_id: str | None = None,
        now: datetime | None = None,
    ) -> CoachReply:
        """Run one coached turn.

        Args:
            user_id: The user's ID.
            message: Free text from the user.
            couple_id: The user's couple ID.
            conversation_id: Existing conversation; a new one is created if None.
            now: Reference instant for quota and context windows.

        Returns:
            The persisted assistant reply with quota status.

        Raises:
            ValidationError: Empty message or missing couple id.
            LLMUnavailableError: LLM credential not configured.
            QuotaExceededError: Free-tier user at the weekly limit.
            NotFoundError: Couple or conversation does not belong to the user.
            PersistenceError: Conversation or message could not be saved.
            LLMCallError: Provider call failed or timed out.
        """
        text = (message or "").strip()
        if not text:
            raise ValidationError("Message is required", field="message")
        if not couple_id:
            raise ValidationError("Couple ID is required", field="coupleId")
        if not self.llm.is_configured:
            logger.error("LLM API key is not configured")
            raise LLMUnavailableError()

        now = now or datetime.now(UTC)
        log_extra: dict[str, Any] = {"user_id": user_id, "couple_id": couple_id}

        await self.require_member(user_id, couple_id)

        is_premium = await SupabaseClient.is_premium(user_id)
        if not is_premium and not await self.quota.check_limit(user_id, now):
            logger.info("Weekly message limit reached", extra=log_extra)
            raise QuotaExceededError(self.quota.limit)

        if conversation_id:
            conversation = await self.conversations.get_conversation(user_id, conversation_id)
            prior = await self.conversations.history(conversation.id, settings.HISTORY_WINDOW)
        else:
            conversation = await self.conversations.create_conversation(user_id, couple_id)
            prior = []
        log_extra["conversation_id"] = conversation.id

        await self.conversations.append_message(conversation.id, MessageRole.USER, text)

        context = await self.context_builder.build(user_id, couple_id, now)
        first_reply = not any(m.role == MessageRole.ASSISTANT for m in prior)
        prompt = system_prompt(context, include_opener=first_reply)

        reply_text = await self.llm.generate_reply(
            prompt,
            llm_transcript(prior, text),
            user_id=user_id,
        )

        reply = await self.conversations.append_message(
            conversation.id, MessageRole.ASSISTANT, reply_text
        )

        remaining = None
        if not is_premium:
            try:
                count = await self.quota.commit(user_id, now)
                remaining = max(0, self.quota.limit - count)
            except QuotaPersistenceError:
                logger.warning(
                    "Returning reply without quota status after commit failure",
                    extra=log_extra,
                )

        logger.info(
            "Coach reply delivered",
            extra={**log_extra, "messages_remaining": remaining, "is_premium": is_premium},
        )
        return CoachReply(
            conversation_id=conversation.id,
            message=reply,
            messages_remaining=remaining,
            is_premium=is_premium,
        )

    async def get_messages(self, user_id: str, conversation_id: str) -> dict[str, Any]:
        """All messages of an owned conversation plus quota status.

        Raises:
            NotFoundError: If the conversation is missing or not the user's.
        """
        conversation = await self.conversations.get_conversation(user_id, conversation_id)
        messages = await self.conversations.all_messages(conversation.id)
        status = await self.quota_status(user_id)
        return {"messages": [m.to_dict() for m in messages], **status.to_dict()}

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        """The user's most recently updated conversations."""
        return await self.conversations.list_conversations(user_id, settings.CONVERSATION_LIST_LIMIT)

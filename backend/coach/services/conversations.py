"""Conversation and message storage for solo coaching sessions.

Provides:
- Find the resumable conversation (24h staleness rule lives here only)
- Create conversations
- Append messages (bumps the conversation's updated_at)
- Ordered history reads, capped to the most recent N
- List a user's conversations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from supabase import Client

from coach.core.config import settings
from coach.core.exceptions import NotFoundError, PersistenceError
from coach.models.coach import MessageRole

logger = logging.getLogger(__name__)

CONVERSATIONS_TABLE = "ai_conversations"
MESSAGES_TABLE = "ai_messages"
SOLO_TYPE = "solo"


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        # Python < 3.11 fromisoformat rejects a trailing "Z"
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class Conversation:
    """A coaching conversation record."""

    id: str
    user_id: str
    couple_id: str | None
    type: str
    created_at: datetime
    updated_at: datetime

    def is_stale(self, now: datetime | None = None, window: timedelta | None = None) -> bool:
        """Whether more than the resume window has passed since the last update."""
        now = now or datetime.now(UTC)
        window = window or timedelta(hours=settings.RESUME_WINDOW_HOURS)
        return now - self.updated_at > window

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "couple_id": self.couple_id,
            "type": self.type,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        """Create Conversation from database record."""
        created_at = _parse_ts(data["created_at"])
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            couple_id=data.get("couple_id"),
            type=data.get("type", SOLO_TYPE),
            created_at=created_at,
            updated_at=_parse_ts(data.get("updated_at") or created_at),
        )


@dataclass(frozen=True)
class Message:
    """An immutable message in a conversation."""

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }

    def to_llm(self) -> dict[str, str]:
        """Shape expected by the Messages API."""
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create Message from database record."""
        return cls(
            id=str(data["id"]),
            conversation_id=data["conversation_id"],
            role=MessageRole(data["role"]),
            content=data["content"],
            created_at=_parse_ts(data["created_at"]),
        )


class ConversationStore:
    """Reads and writes coach conversations and their messages."""

    def __init__(self, db_client: Client) -> None:
        """Initialize the conversation store.

        Args:
            db_client: Supabase client for database operations.
        """
        self.db = db_client

    async def find_resumable(
        self,
        user_id: str,
        now: datetime | None = None,
    ) -> Conversation | None:
        """Most recently updated solo conversation, unless it has gone stale.

        A stale conversation is left untouched; callers start a new one.

        Args:
            user_id: The user's ID.
            now: Reference instant for the staleness check.

        Returns:
            The resumable Conversation, or None.

        Raises:
            PersistenceError: If the lookup fails.
        """
        try:
            result = (
                self.db.table(CONVERSATIONS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("type", SOLO_TYPE)
                .order("updated_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.exception("Failed to look up recent conversation", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to look up conversation: {e}") from e

        if not result.data:
            return None

        conversation = Conversation.from_dict(result.data[0])
        if conversation.is_stale(now):
            logger.info(
                "Most recent conversation is stale, not resuming",
                extra={
                    "user_id": user_id,
                    "conversation_id": conversation.id,
                    "updated_at": conversation.updated_at.isoformat(),
                },
            )
            return None
        return conversation

    async def get_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        """Fetch a conversation owned by the user.

        Raises:
            NotFoundError: If it does not exist or belongs to someone else.
            PersistenceError: If the lookup fails.
        """
        try:
            result = (
                self.db.table(CONVERSATIONS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("id", conversation_id)
                .maybe_single()
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Failed to fetch conversation",
                extra={"user_id": user_id, "conversation_id": conversation_id},
            )
            raise PersistenceError(f"Failed to fetch conversation: {e}") from e

        if result is None or not result.data:
            raise NotFoundError(resource="Conversation", resource_id=conversation_id)
        return Conversation.from_dict(result.data)

    async def create_conversation(self, user_id: str, couple_id: str) -> Conversation:
        """Insert a new solo conversation. Never reuses an existing row.

        Raises:
            PersistenceError: If the insert fails.
        """
        try:
            result = (
                self.db.table(CONVERSATIONS_TABLE)
                .insert({"user_id": user_id, "couple_id": couple_id, "type": SOLO_TYPE})
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error creating conversation",
                extra={"user_id": user_id, "couple_id": couple_id},
            )
            raise PersistenceError(f"Failed to create conversation: {e}") from e

        if not result.data:
            raise PersistenceError("Failed to create conversation")

        conversation = Conversation.from_dict(result.data[0])
        logger.info(
            "Conversation created",
            extra={"user_id": user_id, "conversation_id": conversation.id},
        )
        return conversation

    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        now: datetime | None = None,
    ) -> Message:
        """Append a message and bump the conversation's updated_at.

        The bump is conditional on the stored value being older, so
        updated_at never moves backwards under concurrent appends.

        A failed bump is logged and the stored message is still returned.

        Raises:
            PersistenceError: If the message insert fails.
        """
        created_at = (now or datetime.now(UTC)).isoformat()
        try:
            result = (
                self.db.table(MESSAGES_TABLE)
                .insert(
                    {
                        "conversation_id": conversation_id,
                        "role": role.value,
                        "content": content,
                        "created_at": created_at,
                    }
                )
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error saving message",
                extra={"conversation_id": conversation_id, "role": role.value},
            )
            raise PersistenceError(f"Failed to save message: {e}") from e

        if not result.data:
            raise PersistenceError("Failed to save message")
        message = Message.from_dict(result.data[0])

        try:
            (
                self.db.table(CONVERSATIONS_TABLE)
                .update({"updated_at": created_at})
                .eq("id", conversation_id)
                .lt("updated_at", created_at)
                .execute()
            )
        except Exception:
            logger.warning(
                "Failed to bump conversation updated_at",
                exc_info=True,
                extra={"conversation_id": conversation_id, "message_id": message.id},
            )

        return message

    async def history(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """The most recent ``limit`` messages, oldest first.

        Raises:
            PersistenceError: If the read fails.
        """
        if limit is None:
            limit = settings.HISTORY_WINDOW
        try:
            result = (
                self.db.table(MESSAGES_TABLE)
                .select("*")
                .eq("conversation_id", conversation_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error fetching conversation history",
                extra={"conversation_id": conversation_id},
            )
            raise PersistenceError(f"Failed to fetch history: {e}") from e

        # Rows arrive newest first; reverse before the stable sort so ties keep insert order
        messages = [Message.from_dict(row) for row in reversed(result.data or [])]
        return sorted(messages, key=lambda m: m.created_at)

    async def all_messages(self, conversation_id: str) -> list[Message]:
        """Every message of a conversation, oldest first.

        Raises:
            PersistenceError: If the read fails.
        """
        try:
            result = (
                self.db.table(MESSAGES_TABLE)
                .select("*")
                .eq("conversation_id", conversation_id)
                .order("created_at", desc=False)
                .execute()
            )
        except Exception as e:
            logger.exception(
                "Error fetching messages",
                extra={"conversation_id": conversation_id},
            )
            raise PersistenceError(f"Failed to fetch messages: {e}") from e

        messages = [Message.from_dict(row) for row in result.data or []]
        return sorted(messages, key=lambda m: m.created_at)

    async def list_conversations(
        self,
        user_id: str,
        limit: int | None = None,
    ) -> list[Conversation]:
        """The user's conversations, most recently updated first.

        Raises:
            PersistenceError: If the read fails.
        """
        if limit is None:
            limit = settings.CONVERSATION_LIST_LIMIT
        try:
            result = (
                self.db.table(CONVERSATIONS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("updated_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.exception("Error listing conversations", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to list conversations: {e}") from e

        return [Conversation.from_dict(row) for row in result.data or []]

"""Supabase client module for database operations."""

import logging
from typing import Any, cast

from supabase import Client, create_client

from coach.core.config import settings
from coach.core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Singleton Supabase client for backend operations."""

    _client: Client | None = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create the Supabase client singleton.

        Returns:
            Initialized Supabase client.

        Raises:
            PersistenceError: If client initialization fails.
        """
        if cls._client is None:
            try:
                cls._client = create_client(
                    settings.SUPABASE_URL,
                    settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
                )
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                logger.exception("Failed to initialize Supabase client")
                raise PersistenceError(f"Failed to initialize database connection: {e}") from e
        return cls._client

    @classmethod
    def reset_client(cls) -> None:
        """Reset the client singleton (useful for testing)."""
        cls._client = None

    @classmethod
    async def get_profile(cls, user_id: str) -> dict[str, Any] | None:
        """Fetch a user's basic profile row.

        Args:
            user_id: The user's UUID.

        Returns:
            Profile data, or None if the user has no profile row yet.

        Raises:
            PersistenceError: If the database operation fails.
        """
        try:
            client = cls.get_client()
            response = (
                client.table("profiles").select("*").eq("id", user_id).maybe_single().execute()
            )
            if response is None or response.data is None:
                return None
            return cast(dict[str, Any], response.data)
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("Error fetching profile", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to fetch profile: {e}") from e

    @classmethod
    async def get_preferences(cls, user_id: str) -> dict[str, Any] | None:
        """Fetch a user's relationship preferences (love languages, styles).

        Args:
            user_id: The user's UUID.

        Returns:
            Preferences row, or None if the user has not filled it in.

        Raises:
            PersistenceError: If the database operation fails.
        """
        try:
            client = cls.get_client()
            response = (
                client.table("user_profiles")
                .select("*")
                .eq("user_id", user_id)
                .maybe_single()
                .execute()
            )
            if response is None or response.data is None:
                return None
            return cast(dict[str, Any], response.data)
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("Error fetching preferences", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to fetch preferences: {e}") from e

    @classmethod
    async def is_premium(cls, user_id: str) -> bool:
        """Check the premium flag on a user's profile.

        Args:
            user_id: The user's UUID.

        Returns:
            True if the profile is flagged premium; False if not or no profile exists.

        Raises:
            PersistenceError: If the database operation fails.
        """
        profile = await cls.get_profile(user_id)
        return bool(profile and profile.get("is_premium"))

    @classmethod
    async def get_onboarding_name(cls, user_id: str) -> str | None:
        """First name captured during onboarding, for users without a profile name.

        Raises:
            PersistenceError: If the database operation fails.
        """
        try:
            client = cls.get_client()
            response = (
                client.table("onboarding_responses")
                .select("first_name, name")
                .eq("user_id", user_id)
                .maybe_single()
                .execute()
            )
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("Error fetching onboarding responses", extra={"user_id": user_id})
            raise PersistenceError(f"Failed to fetch onboarding responses: {e}") from e

        if response is None or not response.data:
            return None
        return display_name(response.data)

    @classmethod
    async def get_couple_for_member(cls, couple_id: str, user_id: str) -> dict[str, Any] | None:
        """Fetch a couple row only if the user is one of its two members.

        Args:
            couple_id: The couple's UUID.
            user_id: The user claiming membership.

        Returns:
            The couple row, or None if it does not exist or the user is not a member.

        Raises:
            PersistenceError: If the database operation fails.
        """
        try:
            client = cls.get_client()
            response = (
                client.table("couples")
                .select("id, user1_id, user2_id")
                .eq("id", couple_id)
                .or_(f"user1_id.eq.{user_id},user2_id.eq.{user_id}")
                .maybe_single()
                .execute()
            )
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception(
                "Error fetching couple",
                extra={"couple_id": couple_id, "user_id": user_id},
            )
            raise PersistenceError(f"Failed to fetch couple: {e}") from e

        couple = response.data if response is not None else None
        if not couple or user_id not in (couple.get("user1_id"), couple.get("user2_id")):
            return None
        return cast(dict[str, Any], couple)

    @classmethod
    async def get_partner_id(cls, couple_id: str, user_id: str) -> str | None:
        """Resolve the other member of a couple.

        Args:
            couple_id: The couple's UUID.
            user_id: The member whose partner is wanted.

        Returns:
            The partner's user id, or None if the couple is missing, unpaired,
            or the user is not a member.

        Raises:
            PersistenceError: If the database operation fails.
        """
        couple = await cls.get_couple_for_member(couple_id, user_id)
        if couple is None:
            return None
        if couple.get("user1_id") == user_id:
            return cast(str | None, couple.get("user2_id"))
        return cast(str | None, couple.get("user1_id"))


def display_name(profile: dict[str, Any] | None) -> str | None:
    """Pick the first populated name column from a profile row."""
    if not profile:
        return None
    for key in ("first_name", "display_name", "name"):
        value = profile.get(key)
        if value:
            return str(value)
    return None


# Convenience function for dependency injection
def get_supabase_client() -> Client:
    """Get Supabase client for FastAPI dependency injection.

    Returns:
        Supabase client instance.
    """
    return SupabaseClient.get_client()

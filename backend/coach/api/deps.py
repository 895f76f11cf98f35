"""FastAPI dependencies for authentication and common operations."""

import logging
from typing import Annotated, Any

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

from coach.core.exceptions import AuthenticationError
from coach.db.supabase import SupabaseClient, get_supabase_client
from coach.services.session import SessionOrchestrator

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Any:
    """Extract and validate the current user from the bearer token.

    Args:
        credentials: HTTP Bearer token credentials.

    Returns:
        Validated user object from Supabase.

    Raises:
        AuthenticationError: If the token is missing or invalid.
    """
    if credentials is None:
        logger.warning("AUTH: No credentials provided in request")
        raise AuthenticationError()

    try:
        client = SupabaseClient.get_client()
        response = client.auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning("AUTH: Token validation failed: %s", type(e).__name__)
        raise AuthenticationError() from e

    if response is None or response.user is None:
        logger.warning("AUTH: Token validation returned no user")
        raise AuthenticationError()

    return response.user


def get_session_orchestrator(
    db: Annotated[Client, Depends(get_supabase_client)],
) -> SessionOrchestrator:
    """Build a per-request session orchestrator over the shared client."""
    return SessionOrchestrator(db)


# Type aliases for dependency injection
CurrentUser = Annotated[Any, Depends(get_current_user)]
Orchestrator = Annotated[SessionOrchestrator, Depends(get_session_orchestrator)]

"""OAuth token validation and refresh for sync runs."""

import logging

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import OAuthTokens
from services.calendar_client.client import GoogleCalendarClient, TokenError

logger = logging.getLogger(__name__)


class TokenManager:
    """Keeps a user's calendar client supplied with a working access token."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        user_id: str
    ):
        self.client = client
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.user_id = user_id

    async def verify(self) -> bool:
        """Check the current access token with a lightweight authenticated call."""
        return await self.client.verify_token()

    async def refresh(self) -> OAuthTokens:
        """
        Exchange the refresh token for new credentials.

        Raises:
            TokenError: If there is no refresh token or Google rejects it
        """
        return await self.client.refresh_access_token()

    async def ensure_valid(self) -> OAuthTokens:
        """
        Make sure the client holds a valid token before any sync pass.

        Verifies once; on failure refreshes exactly once and persists the new
        credentials before returning them.

        Raises:
            TokenError: If the token is invalid and cannot be refreshed
        """
        if await self.verify():
            return self.client.tokens

        logger.warning(f"Access token for user {self.user_id} rejected, refreshing")
        tokens = await self.refresh()

        try:
            self.db_ops.store_tokens(self.user_id, tokens, self.encryption_service)
        except Exception as e:
            raise TokenError(f"Failed to persist refreshed credentials: {e}") from e

        logger.info(f"Refreshed and stored access token for user {self.user_id}")
        return tokens

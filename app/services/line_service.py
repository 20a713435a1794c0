"""
LINE Messaging API push client.

Sends text messages to LINE users through the push endpoint. Pushes are
throttled to ``max_requests_per_second`` across the process since the
Messaging API rate-limits per channel.
"""
import asyncio
import logging
import time
from typing import Optional, Union, List

import httpx

logger = logging.getLogger(__name__)


def is_valid_line_user_id(line_user_id: Optional[str]) -> bool:
    """LINE user ids are 'U' followed by 32 characters."""
    return isinstance(line_user_id, str) and line_user_id.startswith("U") and len(line_user_id) == 33


def mask_line_user_id(line_user_id: Optional[str]) -> str:
    return f"{line_user_id[:8]}..." if line_user_id else "-"


class LineService:
    """Push messages to LINE users."""

    def __init__(
        self,
        channel_access_token: str = "",
        api_base: str = "https://api.line.me/v2/bot/message",
        timeout: float = 5.0,
        max_requests_per_second: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.channel_access_token = channel_access_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.min_interval = 1.0 / max_requests_per_second if max_requests_per_second > 0 else 0.0
        self._client = client
        self._throttle_lock = asyncio.Lock()
        self._last_request_at = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self.channel_access_token)

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            wait = self._last_request_at + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def push_message(self, line_user_id: str, messages: Union[str, List[str]]) -> tuple:
        """
        Push one or more text messages to a LINE user.

        Returns:
            (success, error) where error is None on success
        """
        if not self.is_configured:
            logger.warning("LINE service not configured; skipping message send")
            return False, "not_configured"

        if not line_user_id:
            logger.warning("No LINE user id provided; skipping message send")
            return False, "no_user_id"

        if not is_valid_line_user_id(line_user_id):
            logger.error(f"Invalid LINE user id format: {mask_line_user_id(line_user_id)}")
            return False, "Invalid LINE user id format"

        texts = [messages] if isinstance(messages, str) else list(messages)
        payload = {
            "to": line_user_id,
            "messages": [{"type": "text", "text": text} for text in texts],
        }
        headers = {
            "Authorization": f"Bearer {self.channel_access_token}",
            "Content-Type": "application/json",
        }

        await self._throttle()
        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.api_base}/push", json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self.api_base}/push", json=payload, headers=headers, timeout=self.timeout
                    )
        except httpx.HTTPError as e:
            logger.error(f"LINE push to {mask_line_user_id(line_user_id)} failed: {e}")
            return False, str(e) or e.__class__.__name__

        if response.status_code == 200:
            logger.info(f"LINE message sent to {mask_line_user_id(line_user_id)}")
            return True, None

        logger.error(
            f"LINE push to {mask_line_user_id(line_user_id)} failed: "
            f"{response.status_code} {response.text}"
        )
        return False, f"HTTP {response.status_code}"


def get_line_service() -> LineService:
    """Get configured LINE service instance."""
    from app.config import settings

    return LineService(
        channel_access_token=settings.LINE_CHANNEL_ACCESS_TOKEN,
        api_base=settings.LINE_API_BASE,
        timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        max_requests_per_second=settings.LINE_MAX_REQUESTS_PER_SECOND,
    )

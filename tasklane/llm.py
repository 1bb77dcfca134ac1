"""Anthropic Messages API client used for task enhancement."""

import logging
from typing import Optional

from anthropic import APIError, AsyncAnthropic

from tasklane.errors import UpstreamFailure

logger = logging.getLogger(__name__)

TEMPERATURE = 0.3


class ModelClient:
    """Sends one system + user prompt pair and returns the reply text.

    The underlying ``AsyncAnthropic`` client is created on first use so a
    missing API key only matters once an enhancement is actually requested.

    Args:
        api_key: Anthropic API key, or None when not configured.
        model: Model name to call.
        client: Pre-built client (tests inject an ``AsyncMock``).
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._client = client

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise UpstreamFailure(
                    "ANTHROPIC_API_KEY environment variable is not set",
                    status_code=503,
                    error="Service Unavailable",
                )
            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        """Return the text of the model's reply (empty string if it sent none).

        Raises:
            UpstreamFailure: If the API key is missing or the API call fails.
        """
        client = self._get_client()
        try:
            message = await client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                temperature=TEMPERATURE,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIError as exc:
            logger.error("Model API error: %s", exc)
            raise UpstreamFailure(f"Model API error: {exc.message}") from exc

        text = ""
        for block in message.content:
            if hasattr(block, "text"):
                text = block.text
                break
        logger.info(
            "Model reply stop_reason=%s, length=%d", message.stop_reason, len(text)
        )
        return text

"""Vision model client for the checkout agent."""

import base64
import json
import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from stocksniper.config import settings

logger = logging.getLogger(__name__)


class VisionError(Exception):
    """The vision model returned nothing usable."""


def parse_json_reply(raw: str) -> Dict[str, Any]:
    """Parse a JSON object reply, tolerating markdown code fences."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as e:
        raise VisionError(f"Reply is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise VisionError("Reply is not a JSON object")
    return data


class VisionClient:
    """
    Screenshot + prompt -> JSON object.

    Constructed once per worker process and passed to the agent.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.vision_model
        self.calls = 0

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise VisionError("OpenAI API key not configured")
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def analyze(self, screenshot: bytes, prompt: str) -> Dict[str, Any]:
        """
        Ask the model about a PNG screenshot.

        Raises:
            VisionError: empty or non-JSON reply
        """
        client = self._get_client()
        image_b64 = base64.b64encode(screenshot).decode()

        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You inspect storefront screenshots and answer ONLY with a JSON object.",
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_b64}"}},
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=0,
            max_tokens=settings.vision_max_tokens,
            timeout=settings.vision_timeout_seconds,
        )
        self.calls += 1

        content = response.choices[0].message.content
        if not content:
            raise VisionError("Empty reply from vision model")
        result = parse_json_reply(content)
        logger.debug(f"Vision reply: {result}")
        return result

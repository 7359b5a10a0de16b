"""
AtlasCloud chat-completions client (OpenAI-compatible) for script analysis.

AtlasCloud does not accept a system role, so callers send a single user
message with the instructions inlined.
"""

import os
import logging
from typing import Optional

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

ATLASCLOUD_API_BASE = os.environ.get("ATLASCLOUD_API_BASE", "https://api.atlascloud.ai/v1")
ATLASCLOUD_MODEL = os.environ.get("ATLASCLOUD_MODEL", "openai/gpt-5.1-chat")
ANALYSIS_TIMEOUT_SECONDS = float(os.environ.get("ANALYSIS_TIMEOUT_SECONDS", "300"))


class AtlasCloudClient:

    def __init__(
        self,
        base_url: str = ATLASCLOUD_API_BASE,
        model: str = ATLASCLOUD_MODEL,
        timeout: float = ANALYSIS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.transport = transport

    async def chat_completion(self, api_key: str, prompt: str, **params) -> dict:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 1,
            "max_tokens": 64000,
            "repetition_penalty": 1.1,
        }
        body.update(params)

        logger.info(f"AtlasCloud request: model={body['model']}, prompt_chars={len(prompt)}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
                json=body,
            )

        if response.status_code != 200:
            raise ProviderError(
                f"AtlasCloud API Error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response.json()


def message_content(data: dict) -> Optional[str]:
    """Pull choices[0].message.content out of a completion, or None."""
    choices = (data or {}).get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    content = (choices[0].get("message") or {}).get("content")
    return content if isinstance(content, str) and content else None

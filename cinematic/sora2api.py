"""
Sora2API video generation client.

Every call takes the API key explicitly; rotation across keys is the
caller's job (see pipeline.failover). Sora2API answers HTTP 200 with an
envelope `{code, msg, data}` — a non-200 `code` is raised as ProviderError
with that code so quota errors (402/429) stay structured.

successFlag values on record-info:
  0 = generating, 1 = success, 2 = task creation failed, 3 = generation failed
"""

import os
import logging
from typing import Optional

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

SORA2API_BASE = os.environ.get("SORA2API_BASE", "https://api.sora2api.ai/api/v1/sora2api")
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "60"))

FLAG_GENERATING = 0
FLAG_SUCCESS = 1
FLAG_CREATE_FAILED = 2
FLAG_GENERATE_FAILED = 3


class Sora2APIClient:

    def __init__(
        self,
        base_url: str = SORA2API_BASE,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _unwrap(response: httpx.Response, label: str) -> dict:
        if response.status_code >= 400:
            raise ProviderError(f"{label}: {response.text[:500]}", status_code=response.status_code)

        body = response.json()
        code = body.get("code")
        if code != 200:
            raise ProviderError(body.get("msg") or f"{label}: code {code}", status_code=code)
        return body

    async def generate_video(
        self,
        api_key: str,
        prompt: str,
        aspect_ratio: str = "portrait",
        quality: str = "hd",
        image_urls: Optional[list[str]] = None,
    ) -> dict:
        """Start a render. Returns the full envelope; the task id is data.taskId."""
        payload = {
            "prompt": prompt,
            "aspectRatio": aspect_ratio,
            "quality": quality,
        }
        if image_urls:
            payload["imageUrls"] = image_urls

        logger.info(f"Sora2API generate: aspectRatio={aspect_ratio}, images={len(image_urls or [])}")

        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/generate",
                headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
                json=payload,
            )
        return self._unwrap(response, "Sora2API Error")

    async def get_task_status(self, api_key: str, task_id: str) -> dict:
        """Returns the `data` record: {taskId, successFlag, response, errorMessage}."""
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/record-info",
                headers={"Authorization": f"Bearer {api_key}"},
                params={"taskId": task_id},
            )
        body = self._unwrap(response, "Sora2API Status Check Error")
        return body.get("data") or {}

"""
Structured-extraction HTTP client.

Sends a prompt, optional file references and a JSON schema to the
extraction service and returns the structured result. Rate limiting
(HTTP 429) is surfaced as RateLimitedError so the retrying caller can tell
it apart from every other failure.
"""

import logging
from typing import Any, Protocol

import httpx

from utils.errors import DependencyError, RateLimitedError

logger = logging.getLogger(__name__)


class ExtractionCollaborator(Protocol):
    async def invoke(
        self,
        content: str,
        file_refs: list[str] | None,
        schema: dict[str, Any],
    ) -> dict[str, Any]:
        ...


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class StructuredExtractionClient:
    """Client for the schema-constrained extraction endpoint."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None = None,
        *,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = f"{api_base.rstrip('/')}/extract"
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = http_client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = http_client is None

    async def invoke(
        self,
        content: str,
        file_refs: list[str] | None,
        schema: dict[str, Any],
    ) -> dict[str, Any]:
        payload = {
            "prompt": content,
            "file_urls": file_refs or [],
            "response_json_schema": schema,
        }

        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise DependencyError(f"Extraction request failed: {e}") from e

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning("Extraction service rate limited", extra={"retry_after": retry_after})
            raise RateLimitedError("Extraction service rate limited", retry_after=retry_after)

        if response.is_error:
            raise DependencyError(
                f"Extraction service returned {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise DependencyError("Extraction service returned a non-JSON body") from e

        if not isinstance(body, dict):
            raise DependencyError("Extraction service returned an unexpected payload")

        return body

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

"""
Workflow collaborator clients.

The workflow service creates the dependent records (client, booking,
invoice) for a freshly persisted ticket in one call.
"""

import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from utils.errors import DependencyError, RateLimitedError
from utils.schemas import WorkflowResult

logger = logging.getLogger(__name__)

AUTO_PROCESS_TICKET = "auto_process_ticket"


class WorkflowCollaborator(Protocol):
    async def execute(self, workflow_type: str, trigger_data: dict[str, Any]) -> WorkflowResult:
        ...


class WorkflowClient:
    """HTTP client for the workflow execution endpoint."""

    def __init__(
        self,
        api_base: str,
        api_key: str | None = None,
        *,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = f"{api_base.rstrip('/')}/workflows/execute"
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = http_client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = http_client is None

    async def execute(self, workflow_type: str, trigger_data: dict[str, Any]) -> WorkflowResult:
        try:
            response = await self._client.post(
                self._url,
                json={"workflow_type": workflow_type, "trigger_data": trigger_data},
            )
        except httpx.HTTPError as e:
            raise DependencyError(f"Workflow request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError("Workflow service rate limited")

        if response.is_error:
            raise DependencyError(f"Workflow service returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise DependencyError("Workflow service returned a non-JSON body") from e

        data = body.get("data", body) if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise DependencyError("Workflow service returned an unexpected payload")
        records = data.get("created_records")
        if not isinstance(records, dict):
            records = {}

        ids = {
            key: str(records[key]) if records.get(key) is not None else None
            for key in ("client_id", "booking_id", "invoice_id")
        }

        try:
            return WorkflowResult(
                success=bool(data.get("success")),
                error=data.get("error"),
                **ids,
            )
        except ValidationError as e:
            raise DependencyError(f"Workflow service returned an invalid payload: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class UnconfiguredWorkflow:
    """Stand-in when no workflow endpoint is configured; forces the fallback path."""

    async def execute(self, workflow_type: str, trigger_data: dict[str, Any]) -> WorkflowResult:
        raise DependencyError("Workflow service is not configured")

"""Lifecycle Client - Resume paused business-entity transitions

The lifecycle manager owns entity state machines. When an approval completes
the engine asks it to replay the transition that was waiting on the approval.
"""
from typing import Any, Dict, Optional
import httpx

from ..domain.errors import LifecycleError
from ..utils.logger import get_correlation_id, get_logger

logger = get_logger(__name__)


class LifecycleManager:
    """Interface of the downstream lifecycle manager"""

    def transition(
        self,
        entity_name: str,
        entity_id: str,
        operation_code: str,
        ctx: Dict[str, Any]
    ) -> Dict[str, Any]:
        raise NotImplementedError


class HttpLifecycleManager(LifecycleManager):
    """
    Lifecycle manager reached over HTTP

    POSTs to ``{base_url}/api/v1/lifecycle/transition``.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def transition(
        self,
        entity_name: str,
        entity_id: str,
        operation_code: str,
        ctx: Dict[str, Any]
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        correlation_id: Optional[str] = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    f"{self.base_url}/api/v1/lifecycle/transition",
                    headers=headers,
                    json={
                        "entity_name": entity_name,
                        "entity_id": entity_id,
                        "operation_code": operation_code,
                        "ctx": ctx,
                    }
                )
        except httpx.HTTPError as e:
            logger.error(f"Lifecycle manager call failed: {e}")
            raise LifecycleError(
                f"Lifecycle manager unreachable: {e}",
                details={"entity_name": entity_name, "entity_id": entity_id}
            )

        if response.status_code >= 400:
            logger.error(f"Lifecycle manager error: {response.status_code} - {response.text}")
            raise LifecycleError(
                f"Lifecycle transition {operation_code} failed with {response.status_code}",
                details={"entity_name": entity_name, "entity_id": entity_id, "status": response.status_code}
            )

        if not response.content:
            return {}
        return response.json()

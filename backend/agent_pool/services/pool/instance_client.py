"""HTTP calls the pool makes against an instance's own `/pool/*` endpoints."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from agent_pool.core.logging import get_logger
from agent_pool.services.pool.errors import ProvisionError
from agent_pool.services.pool.status import ProbeResult

if TYPE_CHECKING:
    from agent_pool.core.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProvisionResponse:
    conversation_id: str | None
    invite_url: str | None
    joined: bool


class InstanceClient:
    """Liveness probes and claim-time provisioning calls."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._settings.pool_api_key}"}

    async def probe(self, url: str) -> ProbeResult | None:
        """Return the probe result, or None when the instance is unreachable."""
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.health_check_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    f"{url.rstrip('/')}/pool/health",
                    headers=self._headers(),
                )
        except httpx.HTTPError:
            return None
        if not response.is_success:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        return ProbeResult(ready=bool(isinstance(body, dict) and body.get("ready")))

    async def provision(
        self,
        url: str,
        *,
        agent_name: str,
        instructions: str,
        join_url: str | None,
    ) -> ProvisionResponse:
        payload: dict[str, Any] = {"agentName": agent_name, "instructions": instructions}
        if join_url:
            payload["joinUrl"] = join_url
        timeout = self._settings.provision_timeout_seconds
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                # Total deadline; httpx timeouts only bound each read or write.
                response = await asyncio.wait_for(
                    client.post(
                        f"{url.rstrip('/')}/pool/provision",
                        json=payload,
                        headers=self._headers(),
                    ),
                    timeout,
                )
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise ProvisionError("provision request timed out") from exc
        except httpx.TransportError as exc:
            raise ProvisionError(f"provision request failed: {exc.__class__.__name__}") from exc

        if not response.is_success:
            raise ProvisionError(
                f"provision failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProvisionError("provision returned non-JSON body") from exc
        if not isinstance(body, dict) or body.get("ok") is False:
            error = body.get("error") if isinstance(body, dict) else None
            raise ProvisionError(
                f"provision rejected: {error or 'unknown error'}",
                status_code=response.status_code,
                body=str(error) if error else None,
            )
        return ProvisionResponse(
            conversation_id=body.get("conversationId"),
            invite_url=body.get("inviteUrl"),
            joined=bool(body.get("joined")),
        )

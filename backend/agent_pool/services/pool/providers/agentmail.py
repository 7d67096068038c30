"""Per-instance email inboxes from AgentMail."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from agent_pool.core.logging import get_logger
from agent_pool.services.pool.errors import ProviderError
from agent_pool.services.pool.providers.base import (
    InventoryItem,
    ProviderHttp,
    ProvisionedResource,
    ResourceProvider,
    ToolKind,
    instance_id_from_name,
    is_retryable_status,
    json_body,
)

if TYPE_CHECKING:
    import httpx

    from agent_pool.core.config import Settings

logger = get_logger(__name__)
PROVIDER = "agentmail"
CREATE_ATTEMPTS = 3
DISPLAY_NAME = "Convos Agent"


class AgentMailInboxProvider(ResourceProvider):
    kind = ToolKind.AGENTMAIL
    label = "AgentMail"
    env_key = "AGENTMAIL_INBOX_ID"
    mode = "per-instance-inbox"
    setting_name = "AGENTMAIL_API_KEY"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff_seconds: float = 2.0,
    ) -> None:
        self._settings = settings
        self._retry_backoff_seconds = retry_backoff_seconds
        self._http = ProviderHttp(
            PROVIDER,
            base_url=settings.agentmail_api_url,
            api_key=settings.agentmail_api_key,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self._settings.agentmail_api_key)

    async def create(
        self,
        instance_id: str,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> ProvisionedResource:
        del options
        client_id = f"{self._settings.instance_name_prefix}{instance_id}"
        payload: dict[str, Any] = {
            "username": client_id,
            "display_name": DISPLAY_NAME,
            "client_id": client_id,
        }
        if self._settings.agentmail_domain:
            payload["domain"] = self._settings.agentmail_domain

        last_error = ProviderError(PROVIDER, "inbox creation not attempted")
        for attempt in range(1, CREATE_ATTEMPTS + 1):
            try:
                response = await self._http.request("POST", "/inboxes", json=payload)
            except ProviderError as exc:
                last_error = exc
            else:
                inbox_id = json_body(response).get("inbox_id")
                if inbox_id:
                    logger.info(
                        "pool.provider.agentmail.inbox_created",
                        extra={"instance_id": instance_id, "inbox_id": inbox_id},
                    )
                    return ProvisionedResource(
                        kind=self.kind,
                        resource_id=str(inbox_id),
                        env={self.env_key: str(inbox_id)},
                    )
                last_error = ProviderError(
                    PROVIDER,
                    f"inbox creation failed: {response.status_code}",
                    status_code=response.status_code,
                    retryable=is_retryable_status(response.status_code),
                )
            if not last_error.retryable or attempt == CREATE_ATTEMPTS:
                break
            logger.warning(
                "pool.provider.agentmail.create_retry",
                extra={
                    "instance_id": instance_id,
                    "attempt": attempt,
                    "status_code": last_error.status_code,
                },
            )
            await asyncio.sleep(self._retry_backoff_seconds * attempt)
        raise last_error

    async def destroy(self, resource_id: str) -> bool:
        if not self.is_configured() or not resource_id:
            return False
        try:
            response = await self._http.request("DELETE", f"/inboxes/{resource_id}")
        except ProviderError as exc:
            logger.warning(
                "pool.provider.agentmail.delete_failed",
                extra={"inbox_id": resource_id, "error": str(exc)},
            )
            return False
        if response.is_success:
            logger.info("pool.provider.agentmail.inbox_deleted", extra={"inbox_id": resource_id})
            return True
        logger.warning(
            "pool.provider.agentmail.delete_rejected",
            extra={"inbox_id": resource_id, "status_code": response.status_code},
        )
        return False

    async def list_inventory(self) -> list[InventoryItem]:
        prefix = self._settings.instance_name_prefix
        items: list[InventoryItem] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"limit": 100}
            if page_token:
                params["page_token"] = page_token
            response = await self._http.request("GET", "/inboxes", params=params)
            if not response.is_success:
                raise ProviderError(
                    PROVIDER,
                    f"list inboxes failed: {response.status_code}",
                    status_code=response.status_code,
                    retryable=is_retryable_status(response.status_code),
                )
            body = json_body(response)
            for inbox in body.get("inboxes") or body.get("data") or []:
                if not isinstance(inbox, dict):
                    continue
                inbox_id = inbox.get("inbox_id")
                client_id = inbox.get("client_id")
                managed = isinstance(client_id, str) and client_id.startswith(prefix)
                if not managed and isinstance(inbox_id, str):
                    managed = inbox_id.startswith(prefix)
                if not inbox_id or not managed:
                    continue
                items.append(
                    InventoryItem(
                        resource_id=str(inbox_id),
                        label=str(inbox_id),
                        instance_id=instance_id_from_name(
                            client_id
                            if isinstance(client_id, str)
                            else str(inbox_id).split("@", 1)[0],
                            prefix,
                        ),
                    ),
                )
            page_token = body.get("next_page_token")
            if not page_token:
                return items

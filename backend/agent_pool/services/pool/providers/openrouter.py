"""Per-instance LLM credential keys issued through the OpenRouter management API."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
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
PROVIDER = "openrouter"


@dataclass(frozen=True)
class CreditsSummary:
    total_credits: float
    total_usage: float


@dataclass(frozen=True)
class KeyUsage:
    key_hash: str
    name: str
    usage: float
    limit: float | None


class OpenRouterKeyProvider(ResourceProvider):
    """Keys are named `<prefix><instance_id>` so they can be found without a DB row."""

    kind = ToolKind.OPENROUTER
    label = "OpenRouter"
    env_key = "OPENROUTER_API_KEY"
    mode = "per-instance-key"
    setting_name = "OPENROUTER_MANAGEMENT_KEY"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._http = ProviderHttp(
            PROVIDER,
            base_url=settings.openrouter_api_url,
            api_key=settings.openrouter_management_key,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self._settings.openrouter_management_key)

    def key_name(self, instance_id: str) -> str:
        return f"{self._settings.instance_name_prefix}{instance_id}"

    async def create(
        self,
        instance_id: str,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> ProvisionedResource:
        limit = (options or {}).get("limit", self._settings.openrouter_key_limit)
        name = self.key_name(instance_id)
        response = await self._http.request(
            "POST",
            "/keys",
            json={
                "name": name,
                "limit": limit,
                "limit_reset": self._settings.openrouter_key_limit_reset,
            },
        )
        body = json_body(response)
        key = body.get("key")
        key_hash = (body.get("data") or {}).get("hash")
        if not key or not key_hash:
            raise ProviderError(
                PROVIDER,
                f"key creation failed: {response.status_code}",
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        logger.info(
            "pool.provider.openrouter.key_created",
            extra={"instance_id": instance_id, "key_hash": key_hash},
        )
        return ProvisionedResource(
            kind=self.kind,
            resource_id=key_hash,
            env={self.env_key: key},
            meta={"limit": limit},
        )

    async def destroy(self, resource_id: str) -> bool:
        if not self.is_configured() or not resource_id:
            return False
        try:
            response = await self._http.request("DELETE", f"/keys/{resource_id}")
        except ProviderError as exc:
            logger.warning(
                "pool.provider.openrouter.delete_failed",
                extra={"key_hash": resource_id, "error": str(exc)},
            )
            return False
        if response.is_success:
            logger.info("pool.provider.openrouter.key_deleted", extra={"key_hash": resource_id})
            return True
        logger.warning(
            "pool.provider.openrouter.delete_rejected",
            extra={"key_hash": resource_id, "status_code": response.status_code},
        )
        return False

    async def _list_keys(self) -> list[dict[str, Any]]:
        response = await self._http.request("GET", "/keys")
        if not response.is_success:
            raise ProviderError(
                PROVIDER,
                f"list keys failed: {response.status_code}",
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        data = json_body(response).get("data") or []
        return [item for item in data if isinstance(item, dict)]

    async def list_inventory(self) -> list[InventoryItem]:
        prefix = self._settings.instance_name_prefix
        items: list[InventoryItem] = []
        for key in await self._list_keys():
            name = key.get("name")
            key_hash = key.get("hash")
            if not key_hash or not isinstance(name, str) or not name.startswith(prefix):
                continue
            items.append(
                InventoryItem(
                    resource_id=key_hash,
                    label=name,
                    instance_id=instance_id_from_name(name, prefix),
                ),
            )
        return items

    async def find_by_instance(self, instance_id: str) -> str | None:
        if not self.is_configured():
            return None
        name = self.key_name(instance_id)
        try:
            keys = await self._list_keys()
        except ProviderError as exc:
            logger.warning(
                "pool.provider.openrouter.lookup_failed",
                extra={"instance_id": instance_id, "error": str(exc)},
            )
            return None
        for key in keys:
            if key.get("name") == name and key.get("hash"):
                return str(key["hash"])
        return None

    async def credits(self) -> CreditsSummary:
        response = await self._http.request("GET", "/credits")
        if not response.is_success:
            raise ProviderError(
                PROVIDER,
                f"credits request failed: {response.status_code}",
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        data = json_body(response).get("data") or {}
        return CreditsSummary(
            total_credits=float(data.get("total_credits") or 0),
            total_usage=float(data.get("total_usage") or 0),
        )

    async def key_usage(self) -> list[KeyUsage]:
        """Spend per pool key, for the operator dashboard."""
        prefix = self._settings.instance_name_prefix
        usage: list[KeyUsage] = []
        for key in await self._list_keys():
            name = key.get("name")
            if not key.get("hash") or not isinstance(name, str) or not name.startswith(prefix):
                continue
            limit = key.get("limit")
            usage.append(
                KeyUsage(
                    key_hash=str(key["hash"]),
                    name=name,
                    usage=float(key.get("usage") or 0),
                    limit=float(limit) if limit is not None else None,
                ),
            )
        return usage

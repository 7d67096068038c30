"""Resource provider interface, shared HTTP plumbing, and the typed registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from agent_pool.core.logging import get_logger
from agent_pool.services.pool.errors import ProviderError, UnknownToolError

if TYPE_CHECKING:
    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker

logger = get_logger(__name__)


class ToolKind(str, Enum):
    """Attachable resource kinds; at most one of each per instance."""

    OPENROUTER = "openrouter"
    AGENTMAIL = "agentmail"
    TELNYX = "telnyx"

    @classmethod
    def parse(cls, value: str) -> ToolKind:
        try:
            return cls(value)
        except ValueError as exc:
            raise UnknownToolError(value) from exc


@dataclass(frozen=True)
class ProvisionedResource:
    """What a provider hands back after creating a resource for an instance."""

    kind: ToolKind
    resource_id: str
    env: dict[str, str]
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def env_key(self) -> str:
        return next(iter(self.env))

    @property
    def env_value(self) -> str:
        return self.env[self.env_key]


@dataclass(frozen=True)
class InventoryItem:
    """One live resource as listed by its provider."""

    resource_id: str
    label: str
    instance_id: str | None = None


def instance_id_from_name(name: str | None, prefix: str) -> str | None:
    """Recover the instance id from a provider-side `<prefix><id>` name."""
    if not name or not name.startswith(prefix):
        return None
    instance_id = name[len(prefix) :]
    return instance_id or None


class ProviderHttp:
    """Small httpx wrapper that maps network faults to `ProviderError`."""

    def __init__(
        self,
        provider: str,
        *,
        base_url: str,
        api_key: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self.client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                self.provider,
                f"{method} {path} timed out",
                retryable=True,
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                self.provider,
                f"{method} {path} failed: {exc.__class__.__name__}",
                retryable=True,
            ) from exc


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class ResourceProvider(ABC):
    """One external resource kind that can be created and destroyed per instance."""

    kind: ToolKind
    label: str
    env_key: str
    extra_env_keys: tuple[str, ...] = ()
    mode: str
    setting_name: str

    @property
    def env_keys(self) -> tuple[str, ...]:
        return (self.env_key, *self.extra_env_keys)

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for this provider are present."""

    @abstractmethod
    async def create(
        self,
        instance_id: str,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> ProvisionedResource:
        """Create the resource for `instance_id`; raises `ProviderError` on failure."""

    @abstractmethod
    async def destroy(self, resource_id: str) -> bool:
        """Destroy (or release) a resource. Returns False instead of raising."""

    @abstractmethod
    async def list_inventory(self) -> list[InventoryItem]:
        """List every live resource this provider manages for the pool."""

    async def find_by_instance(self, instance_id: str) -> str | None:
        """Look up a resource id by instance naming convention, if supported."""
        del instance_id
        return None


class ProviderRegistry(Mapping[ToolKind, ResourceProvider]):
    """Immutable kind -> provider mapping built once at startup."""

    def __init__(self, providers: Mapping[ToolKind, ResourceProvider]) -> None:
        for kind, provider in providers.items():
            if provider.kind is not kind:
                msg = f"provider registered under {kind.value} reports kind {provider.kind.value}"
                raise ValueError(msg)
        self._providers = dict(providers)

    def __getitem__(self, kind: ToolKind) -> ResourceProvider:
        return self._providers[kind]

    def __iter__(self) -> Iterator[ToolKind]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def configured(self, kinds: list[ToolKind] | None = None) -> list[ResourceProvider]:
        wanted = kinds if kinds is not None else list(self._providers)
        return [
            self._providers[kind]
            for kind in wanted
            if kind in self._providers and self._providers[kind].is_configured()
        ]


def build_provider_registry(
    settings: Settings,
    session_maker: SessionMaker,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Construct one provider per tool kind from settings."""
    from agent_pool.services.pool.providers.agentmail import AgentMailInboxProvider
    from agent_pool.services.pool.providers.openrouter import OpenRouterKeyProvider
    from agent_pool.services.pool.providers.telnyx import TelnyxPhoneProvider

    return ProviderRegistry(
        {
            ToolKind.OPENROUTER: OpenRouterKeyProvider(settings, transport=transport),
            ToolKind.AGENTMAIL: AgentMailInboxProvider(settings, transport=transport),
            ToolKind.TELNYX: TelnyxPhoneProvider(
                settings,
                session_maker,
                transport=transport,
            ),
        },
    )

"""Railway GraphQL client for the compute services that host pool instances.

Thin wrapper only: every method maps to one or two GraphQL operations and
raises `ComputeProviderError` on failure. Pool decisions live elsewhere.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from agent_pool.core.logging import get_logger
from agent_pool.services.pool.errors import ComputeProviderError

if TYPE_CHECKING:
    from agent_pool.core.config import Settings

logger = get_logger(__name__)
GQL_ATTEMPTS = 3
VOLUME_ATTEMPTS = 3

_SERVICE_CREATE = """
mutation($input: ServiceCreateInput!) {
  serviceCreate(input: $input) { id }
}
"""
_SERVICE_INSTANCE_UPDATE = """
mutation($serviceId: String!, $environmentId: String!, $input: ServiceInstanceUpdateInput!) {
  serviceInstanceUpdate(serviceId: $serviceId, environmentId: $environmentId, input: $input)
}
"""
_ENVIRONMENT_PATCH = """
mutation($environmentId: String!, $patch: EnvironmentConfig!, $commitMessage: String) {
  environmentPatchCommit(
    environmentId: $environmentId
    patch: $patch
    commitMessage: $commitMessage
  )
}
"""
_VARIABLES_UPSERT = """
mutation($input: VariableCollectionUpsertInput!) {
  variableCollectionUpsert(input: $input)
}
"""
_DOMAIN_CREATE = """
mutation($input: ServiceDomainCreateInput!) {
  serviceDomainCreate(input: $input) { domain }
}
"""
_VOLUME_CREATE = """
mutation($input: VolumeCreateInput!) {
  volumeCreate(input: $input) { id name }
}
"""
_VOLUME_DELETE = """
mutation($volumeId: String!) { volumeDelete(volumeId: $volumeId) }
"""
_SERVICE_DELETE = """
mutation($id: String!) { serviceDelete(id: $id) }
"""
_LATEST_DEPLOYMENT = """
query($id: String!) {
  service(id: $id) { deployments(first: 1) { edges { node { id } } } }
}
"""
_DEPLOYMENT_REDEPLOY = """
mutation($id: String!, $environmentId: String!) {
  deploymentRedeploy(id: $id, environmentId: $environmentId)
}
"""
_PROJECT_VOLUMES = """
query($id: String!) {
  project(id: $id) {
    volumes {
      edges { node { id volumeInstances { edges { node { serviceId } } } } }
    }
  }
}
"""
_PROJECT_SERVICES = """
query($id: String!) {
  project(id: $id) {
    services(first: 500) {
      edges {
        node {
          id
          name
          createdAt
          serviceInstances {
            edges {
              node {
                environmentId
                domains { serviceDomains { domain } customDomains { domain } }
                source { image }
              }
            }
          }
          deployments(first: 1) { edges { node { id status } } }
        }
      }
    }
  }
}
"""


@dataclass(frozen=True)
class ListedService:
    """One compute service as reported by a project listing."""

    service_id: str
    name: str
    project_id: str
    created_at: str | None
    environment_ids: tuple[str, ...]
    deploy_status: str | None
    domain: str | None
    image: str | None


def _edges(node: Any, *path: str) -> list[dict[str, Any]]:
    current = node
    for key in path:
        if not isinstance(current, dict):
            return []
        current = current.get(key)
    if not isinstance(current, dict):
        return []
    return [edge["node"] for edge in current.get("edges") or [] if isinstance(edge, dict)]


def _parse_listed_service(
    node: dict[str, Any],
    *,
    project_id: str,
    environment_id: str | None,
) -> ListedService:
    instances = _edges(node, "serviceInstances")
    mine = instances[0] if instances else None
    if environment_id:
        mine = next((si for si in instances if si.get("environmentId") == environment_id), None)
    domains = (mine or {}).get("domains") or {}
    custom = domains.get("customDomains") or []
    generated = domains.get("serviceDomains") or []
    domain = (custom[0] if custom else generated[0] if generated else {}).get("domain")
    deployments = _edges(node, "deployments")
    return ListedService(
        service_id=str(node["id"]),
        name=str(node.get("name") or ""),
        project_id=project_id,
        created_at=node.get("createdAt"),
        environment_ids=tuple(str(si.get("environmentId")) for si in instances),
        deploy_status=deployments[0].get("status") if deployments else None,
        domain=domain,
        image=((mine or {}).get("source") or {}).get("image"),
    )


class RailwayClient:
    """Authenticated GraphQL calls against the compute provider."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff_seconds: float = 2.0,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._retry_backoff_seconds = retry_backoff_seconds

    def is_configured(self) -> bool:
        return bool(self._settings.railway_api_token)

    async def _gql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.is_configured():
            raise ComputeProviderError("RAILWAY_API_TOKEN not set")
        payload = {"query": query, "variables": variables or {}}
        headers = {"Authorization": f"Bearer {self._settings.railway_api_token}"}
        for attempt in range(1, GQL_ATTEMPTS + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self._settings.compute_timeout_seconds,
                    transport=self._transport,
                ) as client:
                    response = await client.post(
                        self._settings.railway_api_url,
                        json=payload,
                        headers=headers,
                    )
            except httpx.TimeoutException as exc:
                raise ComputeProviderError("request timed out", retryable=True) from exc
            except httpx.TransportError as exc:
                raise ComputeProviderError(
                    f"request failed: {exc.__class__.__name__}",
                    retryable=True,
                ) from exc

            if response.status_code == 429 and attempt < GQL_ATTEMPTS:
                delay = self._retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "pool.compute.rate_limited",
                    extra={"attempt": attempt, "delay_seconds": delay},
                )
                await asyncio.sleep(delay)
                continue
            try:
                body = response.json()
            except ValueError as exc:
                raise ComputeProviderError(
                    f"non-JSON response: {response.status_code}",
                    status_code=response.status_code,
                    retryable=response.status_code == 429 or response.status_code >= 500,
                ) from exc
            if not isinstance(body, dict):
                raise ComputeProviderError("malformed response", status_code=response.status_code)
            if body.get("errors"):
                raise ComputeProviderError(
                    f"GraphQL errors: {body['errors']}",
                    status_code=response.status_code,
                    retryable=response.status_code >= 500,
                )
            return body.get("data") or {}
        raise ComputeProviderError("rate limited after retries", status_code=429, retryable=True)

    async def create_service(
        self,
        name: str,
        variables: dict[str, str],
        *,
        project_id: str,
        environment_id: str,
    ) -> str:
        """Create a service with image, limits and variables set before its first deploy."""
        data = await self._gql(
            _SERVICE_CREATE,
            {"input": {"projectId": project_id, "environmentId": environment_id, "name": name}},
        )
        service_id = str(data["serviceCreate"]["id"])
        try:
            await self._gql(
                _SERVICE_INSTANCE_UPDATE,
                {
                    "serviceId": service_id,
                    "environmentId": environment_id,
                    "input": {
                        "startCommand": self._settings.railway_start_command,
                        "source": {"image": self._settings.railway_runtime_image},
                    },
                },
            )
        except ComputeProviderError as exc:
            logger.warning(
                "pool.compute.configure_failed",
                extra={"service_id": service_id, "error": str(exc)},
            )
        await self.set_resource_limits(service_id, environment_id=environment_id)
        if variables:
            await self.upsert_variables(
                service_id,
                variables,
                project_id=project_id,
                environment_id=environment_id,
                skip_deploys=True,
            )
        return service_id

    async def set_resource_limits(self, service_id: str, *, environment_id: str) -> None:
        cpu = self._settings.railway_cpu_limit
        memory_gb = self._settings.railway_memory_gb
        patch = {
            "services": {
                service_id: {
                    "deploy": {
                        "limitOverride": {
                            "containers": {
                                "cpu": cpu,
                                "memoryBytes": memory_gb * 1024 * 1024 * 1024,
                            },
                        },
                    },
                },
            },
        }
        try:
            await self._gql(
                _ENVIRONMENT_PATCH,
                {
                    "environmentId": environment_id,
                    "patch": patch,
                    "commitMessage": f"Set resource limits: {cpu} vCPU, {memory_gb} GB RAM",
                },
            )
        except ComputeProviderError as exc:
            logger.warning(
                "pool.compute.limits_failed",
                extra={"service_id": service_id, "error": str(exc)},
            )

    async def upsert_variables(
        self,
        service_id: str,
        variables: dict[str, str],
        *,
        project_id: str,
        environment_id: str,
        skip_deploys: bool = False,
    ) -> None:
        await self._gql(
            _VARIABLES_UPSERT,
            {
                "input": {
                    "projectId": project_id,
                    "environmentId": environment_id,
                    "serviceId": service_id,
                    "variables": variables,
                    "skipDeploys": skip_deploys,
                },
            },
        )

    async def create_domain(self, service_id: str, *, environment_id: str) -> str:
        data = await self._gql(
            _DOMAIN_CREATE,
            {"input": {"serviceId": service_id, "environmentId": environment_id}},
        )
        return str(data["serviceDomainCreate"]["domain"])

    async def redeploy_service(self, service_id: str, *, environment_id: str) -> None:
        data = await self._gql(_LATEST_DEPLOYMENT, {"id": service_id})
        deployments = _edges(data.get("service"), "deployments")
        if not deployments:
            raise ComputeProviderError(f"no deployment found to redeploy for {service_id}")
        await self._gql(
            _DEPLOYMENT_REDEPLOY,
            {"id": deployments[0]["id"], "environmentId": environment_id},
        )

    async def ensure_volume(
        self,
        service_id: str,
        *,
        project_id: str,
        environment_id: str,
    ) -> str | None:
        """Best-effort volume creation; returns the volume id or None."""
        for attempt in range(1, VOLUME_ATTEMPTS + 1):
            try:
                data = await self._gql(
                    _VOLUME_CREATE,
                    {
                        "input": {
                            "projectId": project_id,
                            "serviceId": service_id,
                            "mountPath": self._settings.railway_volume_mount_path,
                            "environmentId": environment_id,
                        },
                    },
                )
                return str(data["volumeCreate"]["id"])
            except ComputeProviderError as exc:
                logger.warning(
                    "pool.compute.volume_create_failed",
                    extra={"service_id": service_id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < VOLUME_ATTEMPTS:
                    await asyncio.sleep(self._retry_backoff_seconds)
        return None

    async def volumes_by_service(self, project_id: str) -> dict[str, list[str]]:
        data = await self._gql(_PROJECT_VOLUMES, {"id": project_id})
        mapping: dict[str, list[str]] = {}
        for volume in _edges(data.get("project"), "volumes"):
            for attachment in _edges(volume, "volumeInstances"):
                service_id = attachment.get("serviceId")
                if service_id:
                    mapping.setdefault(str(service_id), []).append(str(volume["id"]))
        return mapping

    async def delete_volume(self, volume_id: str) -> bool:
        for attempt in range(1, VOLUME_ATTEMPTS + 1):
            try:
                await self._gql(_VOLUME_DELETE, {"volumeId": volume_id})
                return True
            except ComputeProviderError as exc:
                logger.warning(
                    "pool.compute.volume_delete_failed",
                    extra={"volume_id": volume_id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < VOLUME_ATTEMPTS:
                    await asyncio.sleep(self._retry_backoff_seconds * attempt)
        return False

    async def delete_service(self, service_id: str) -> None:
        await self._gql(_SERVICE_DELETE, {"id": service_id})

    async def list_project_services(
        self,
        project_id: str,
        *,
        environment_id: str | None = None,
    ) -> list[ListedService]:
        data = await self._gql(_PROJECT_SERVICES, {"id": project_id})
        project = data.get("project")
        if not isinstance(project, dict):
            raise ComputeProviderError(f"project {project_id} not found")
        return [
            _parse_listed_service(node, project_id=project_id, environment_id=environment_id)
            for node in _edges(project, "services")
        ]

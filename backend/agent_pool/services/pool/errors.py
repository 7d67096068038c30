"""Exception taxonomy shared by pool services and mapped to HTTP at the API edge."""

from __future__ import annotations

import re
from enum import Enum


class ProviderError(Exception):
    """An outbound provider call failed.

    `retryable` marks rate limits, timeouts, network faults and 5xx responses.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class ComputeProviderError(ProviderError):
    """The compute/orchestration API rejected or failed a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__("railway", message, status_code=status_code, retryable=retryable)


class InstanceNotFoundError(LookupError):
    """No infra/instance row exists for the requested id."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Instance {instance_id} not found")
        self.instance_id = instance_id


class ResourceAlreadyProvisionedError(Exception):
    def __init__(self, instance_id: str, tool_id: str) -> None:
        super().__init__(f"Tool {tool_id} already provisioned for {instance_id}")


class UnknownToolError(ValueError):
    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Unknown tool: {tool_id}")


class ToolNotConfiguredError(Exception):
    def __init__(self, tool_id: str, setting_name: str) -> None:
        super().__init__(f"{setting_name} not configured for tool {tool_id}")
        self.tool_id = tool_id


class DismissRefusedError(Exception):
    """A crashed instance is still bound to an agent and must be killed instead."""


class ClaimFailureKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


_PERMANENT_SIGNATURES = re.compile(
    r"already (bound|joined|provisioned|claimed)",
    re.IGNORECASE,
)


class ProvisionError(Exception):
    """The instance's provisioning endpoint rejected or failed a claim."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def classify_provision_error(exc: BaseException) -> ClaimFailureKind:
    """Decide whether a failed claim should crash the instance or release it.

    Binding conflicts (HTTP 409 or an "already bound/joined" body) mean the
    runtime will refuse every future attempt. Everything else, including
    timeouts, network faults and 5xx responses, is treated as transient.
    """
    if isinstance(exc, ProvisionError):
        if exc.status_code == 409:
            return ClaimFailureKind.PERMANENT
        text = f"{exc} {exc.body or ''}"
        if _PERMANENT_SIGNATURES.search(text):
            return ClaimFailureKind.PERMANENT
    return ClaimFailureKind.TRANSIENT

"""SMS phone numbers from Telnyx, recycled through an internal number pool.

Numbers are expensive to buy and slow to propagate, so released numbers go
back to `phone_number_pool` instead of being deleted upstream. A new number
is purchased only when no pooled number is available.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from sqlalchemy import update
from sqlmodel import col, select

from agent_pool.core.logging import get_logger
from agent_pool.models.phone_numbers import PHONE_ASSIGNED, PHONE_AVAILABLE, PhoneNumberPoolEntry
from agent_pool.services.pool.errors import ProviderError
from agent_pool.services.pool.providers.base import (
    InventoryItem,
    ProviderHttp,
    ProvisionedResource,
    ResourceProvider,
    ToolKind,
    is_retryable_status,
    json_body,
)

if TYPE_CHECKING:
    import httpx

    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker

logger = get_logger(__name__)
PROVIDER = "telnyx"
PURCHASE_ATTEMPTS = 5
ASSIGN_ATTEMPTS = 5
SEARCH_BATCH_SIZE = 5
MESSAGING_PROFILE_NAME = "convos-sms"


class PurchaseOutcome(str, Enum):
    PURCHASED = "purchased"
    NUMBER_TAKEN = "number_taken"
    RETRYABLE = "retryable"
    FATAL = "fatal"


def classify_purchase_response(response: httpx.Response) -> PurchaseOutcome:
    """Classify a number-order response for the purchase retry loop."""
    if response.is_success:
        return PurchaseOutcome.PURCHASED
    if response.status_code in {409, 422}:
        return PurchaseOutcome.NUMBER_TAKEN
    if is_retryable_status(response.status_code):
        return PurchaseOutcome.RETRYABLE
    return PurchaseOutcome.FATAL


class TelnyxPhoneProvider(ResourceProvider):
    kind = ToolKind.TELNYX
    label = "Telnyx"
    env_key = "TELNYX_PHONE_NUMBER"
    extra_env_keys = ("TELNYX_MESSAGING_PROFILE_ID",)
    mode = "per-instance-phone"
    setting_name = "TELNYX_API_KEY"

    def __init__(
        self,
        settings: Settings,
        session_maker: SessionMaker,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff_seconds: float = 2.0,
    ) -> None:
        self._settings = settings
        self._session_maker = session_maker
        self._retry_backoff_seconds = retry_backoff_seconds
        self._http = ProviderHttp(
            PROVIDER,
            base_url=settings.telnyx_api_url,
            api_key=settings.telnyx_api_key,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self._settings.telnyx_api_key)

    async def create(
        self,
        instance_id: str,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> ProvisionedResource:
        del options
        pooled = await self._claim_pooled_number(instance_id)
        if pooled is not None:
            phone_number, profile_id = pooled
            logger.info(
                "pool.provider.telnyx.reused_number",
                extra={"instance_id": instance_id, "phone_number": phone_number},
            )
            return self._resource(phone_number, profile_id)

        phone_number = await self._purchase_number()
        profile_id = await self._messaging_profile_id()
        await self._assign_to_profile(phone_number, profile_id)
        async with self._session_maker() as session:
            session.add(
                PhoneNumberPoolEntry(
                    phone_number=phone_number,
                    messaging_profile_id=profile_id,
                    status=PHONE_ASSIGNED,
                    instance_id=instance_id,
                ),
            )
            await session.commit()
        logger.info(
            "pool.provider.telnyx.purchased_number",
            extra={"instance_id": instance_id, "phone_number": phone_number},
        )
        return self._resource(phone_number, profile_id)

    def _resource(self, phone_number: str, profile_id: str) -> ProvisionedResource:
        return ProvisionedResource(
            kind=self.kind,
            resource_id=phone_number,
            env={
                self.env_key: phone_number,
                "TELNYX_MESSAGING_PROFILE_ID": profile_id,
            },
            meta={"messagingProfileId": profile_id},
        )

    async def _claim_pooled_number(self, instance_id: str) -> tuple[str, str] | None:
        candidate = (
            select(col(PhoneNumberPoolEntry.id))
            .where(col(PhoneNumberPoolEntry.status) == PHONE_AVAILABLE)
            .order_by(col(PhoneNumberPoolEntry.id).asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        statement = (
            update(PhoneNumberPoolEntry)
            .where(col(PhoneNumberPoolEntry.id) == candidate)
            .where(col(PhoneNumberPoolEntry.status) == PHONE_AVAILABLE)
            .values(status=PHONE_ASSIGNED, instance_id=instance_id)
            .returning(
                col(PhoneNumberPoolEntry.phone_number),
                col(PhoneNumberPoolEntry.messaging_profile_id),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_maker() as session:
            row = (await session.exec(statement)).first()
            await session.commit()
        if row is None:
            return None
        return str(row[0]), str(row[1])

    async def _search_candidates(self, exclude: set[str]) -> list[str]:
        response = await self._http.request(
            "GET",
            "/available_phone_numbers",
            params={
                "filter[country_code]": self._settings.telnyx_country_code,
                "filter[features][]": "sms",
                "filter[limit]": SEARCH_BATCH_SIZE,
            },
        )
        if not response.is_success:
            raise ProviderError(
                PROVIDER,
                f"number search failed: {response.status_code}",
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        numbers = [
            str(item["phone_number"])
            for item in json_body(response).get("data") or []
            if isinstance(item, dict) and item.get("phone_number")
        ]
        return [number for number in numbers if number not in exclude]

    async def _purchase_number(self) -> str:
        """Buy one number, re-searching when a candidate is taken first."""
        taken: set[str] = set()
        candidates: list[str] = []
        for attempt in range(1, PURCHASE_ATTEMPTS + 1):
            if not candidates:
                candidates = await self._search_candidates(taken)
                if not candidates:
                    raise ProviderError(PROVIDER, "no available phone numbers found")
            candidate = candidates.pop(0)
            try:
                response = await self._http.request(
                    "POST",
                    "/number_orders",
                    json={"phone_numbers": [{"phone_number": candidate}]},
                )
            except ProviderError as exc:
                if attempt == PURCHASE_ATTEMPTS:
                    raise
                logger.warning(
                    "pool.provider.telnyx.purchase_retry",
                    extra={"attempt": attempt, "error": str(exc)},
                )
                candidates.insert(0, candidate)
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue

            outcome = classify_purchase_response(response)
            if outcome is PurchaseOutcome.PURCHASED:
                orders = (json_body(response).get("data") or {}).get("phone_numbers") or []
                purchased = orders[0].get("phone_number") if orders else None
                return str(purchased or candidate)
            if outcome is PurchaseOutcome.NUMBER_TAKEN:
                logger.info(
                    "pool.provider.telnyx.number_taken",
                    extra={"attempt": attempt, "phone_number": candidate},
                )
                taken.add(candidate)
                continue
            if outcome is PurchaseOutcome.RETRYABLE and attempt < PURCHASE_ATTEMPTS:
                logger.warning(
                    "pool.provider.telnyx.purchase_retry",
                    extra={"attempt": attempt, "status_code": response.status_code},
                )
                candidates.insert(0, candidate)
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue
            raise ProviderError(
                PROVIDER,
                f"number purchase failed: {response.status_code}",
                status_code=response.status_code,
                retryable=outcome is PurchaseOutcome.RETRYABLE,
            )
        raise ProviderError(PROVIDER, "number purchase exhausted attempts", retryable=True)

    async def _messaging_profile_id(self) -> str:
        if self._settings.telnyx_messaging_profile_id:
            return self._settings.telnyx_messaging_profile_id

        listing = await self._http.request("GET", "/messaging_profiles", params={"page[size]": 1})
        existing = (json_body(listing).get("data") or [{}])[0].get("id")
        if existing:
            return str(existing)

        created = await self._http.request(
            "POST",
            "/messaging_profiles",
            json={"name": MESSAGING_PROFILE_NAME, "whitelisted_destinations": ["US"]},
        )
        profile_id = (json_body(created).get("data") or {}).get("id")
        if not profile_id:
            raise ProviderError(
                PROVIDER,
                f"messaging profile creation failed: {created.status_code}",
                status_code=created.status_code,
            )
        logger.info("pool.provider.telnyx.profile_created", extra={"profile_id": profile_id})
        return str(profile_id)

    async def _assign_to_profile(self, phone_number: str, profile_id: str) -> None:
        # Freshly purchased numbers 404 until the order propagates.
        path = f"/phone_numbers/{quote(phone_number, safe='')}/messaging"
        for attempt in range(1, ASSIGN_ATTEMPTS + 1):
            response = await self._http.request(
                "PATCH",
                path,
                json={"messaging_profile_id": profile_id},
            )
            if response.is_success:
                return
            if response.status_code == 404 and attempt < ASSIGN_ATTEMPTS:
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue
            raise ProviderError(
                PROVIDER,
                f"messaging profile assignment failed: {response.status_code}",
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )

    async def destroy(self, resource_id: str) -> bool:
        """Release the number back to the pool; the upstream number is kept."""
        if not resource_id:
            return False
        statement = (
            update(PhoneNumberPoolEntry)
            .where(col(PhoneNumberPoolEntry.phone_number) == resource_id)
            .values(status=PHONE_AVAILABLE, instance_id=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session_maker() as session:
            result = await session.exec(statement)
            await session.commit()
        if result.rowcount:
            logger.info("pool.provider.telnyx.released", extra={"phone_number": resource_id})
            return True
        logger.warning("pool.provider.telnyx.release_missing", extra={"phone_number": resource_id})
        return False

    async def list_inventory(self) -> list[InventoryItem]:
        statement = select(PhoneNumberPoolEntry).where(
            col(PhoneNumberPoolEntry.status) == PHONE_ASSIGNED,
        )
        async with self._session_maker() as session:
            entries = list(await session.exec(statement))
        return [
            InventoryItem(
                resource_id=entry.phone_number,
                label=entry.phone_number,
                instance_id=entry.instance_id,
            )
            for entry in entries
        ]

    async def find_by_instance(self, instance_id: str) -> str | None:
        statement = select(col(PhoneNumberPoolEntry.phone_number)).where(
            col(PhoneNumberPoolEntry.instance_id) == instance_id,
            col(PhoneNumberPoolEntry.status) == PHONE_ASSIGNED,
        )
        async with self._session_maker() as session:
            return (await session.exec(statement)).first()

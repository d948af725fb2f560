"""Service catalog with a TTL cache over the upstream panel's service list.

Markup is applied once per refresh. Reads never fail because the upstream is
down: the last good snapshot is served, or the static curated list when no
refresh has ever succeeded. Orders snapshot the rate they were charged, so a
stale catalog never affects a payment already in flight.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from getfame.common.errors import NotFoundError
from getfame.common.logging import logger
from getfame.common.metrics import catalog_fallback_served_total
from getfame.common.money import round2
from getfame.services.catalog.curated import (
    CURATED_SERVICES,
    FALLBACK_MAX_QUANTITY,
    FALLBACK_MIN_QUANTITY,
)


class Service(BaseModel):
    """Customer-facing service with markup applied."""

    id: int
    name: str
    platform: str
    type: str
    description: str = ""
    min_quantity: int
    max_quantity: int
    public_rate: Decimal
    # Upstream cost per 1000; None for the static fallback list.
    source_rate: Decimal | None = None
    refill: bool = False


Fetcher = Callable[[], Awaitable[list[dict[str, Any]]]]


class ServiceCatalog:
    """Lazy, lock-coalesced cache of curated services."""

    def __init__(
        self,
        fetch: Fetcher,
        margin: Decimal,
        fallback_rate: Decimal,
        ttl_seconds: float = 300,
        retry_interval_seconds: float = 30,
        curated: dict[int, dict[str, str]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        service_name: str = "storefront",
    ) -> None:
        self._fetch = fetch
        self.margin = Decimal(margin)
        self.fallback_rate = round2(Decimal(fallback_rate))
        self.ttl_seconds = ttl_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.curated = CURATED_SERVICES if curated is None else curated
        self._clock = clock
        self.service_name = service_name
        self._snapshot: list[Service] | None = None
        self._fetched_at = 0.0
        self._failed_at: float | None = None
        self._lock = asyncio.Lock()

    async def list_services(self, platform: str | None = None) -> list[Service]:
        services = await self._current()
        if platform is None:
            return list(services)
        wanted = platform.lower()
        return [service for service in services if service.platform == wanted]

    async def get_service(self, service_id: int) -> Service:
        for service in await self._current():
            if service.id == int(service_id):
                return service
        raise NotFoundError(f"service {service_id} not found")

    def invalidate(self) -> None:
        """Drop the snapshot; the next read refreshes from upstream."""

        self._snapshot = None
        self._fetched_at = 0.0
        self._failed_at = None

    def _is_fresh(self) -> bool:
        return self._snapshot is not None and self._clock() - self._fetched_at < self.ttl_seconds

    def _in_retry_cooldown(self) -> bool:
        return self._failed_at is not None and self._clock() - self._failed_at < self.retry_interval_seconds

    async def _current(self) -> list[Service]:
        if self._is_fresh():
            return self._snapshot
        async with self._lock:
            # Another reader may have refreshed while we waited.
            if self._is_fresh():
                return self._snapshot
            if not self._in_retry_cooldown():
                try:
                    services = self._build(await self._fetch())
                except Exception as exc:
                    self._failed_at = self._clock()
                    logger.warning("catalog_refresh_failed error=%s", exc)
                else:
                    self._snapshot = services
                    self._fetched_at = self._clock()
                    self._failed_at = None
                    logger.info("catalog_refreshed services=%s", len(services))
                    return services
            if self._snapshot is not None:
                catalog_fallback_served_total.labels(service=self.service_name, source="stale").inc()
                return self._snapshot
            catalog_fallback_served_total.labels(service=self.service_name, source="static").inc()
            return self._static_fallback()

    def _build(self, raw: list[dict[str, Any]]) -> list[Service]:
        """Filter the upstream list to curated ids and apply markup."""

        if not isinstance(raw, list):
            raise ValueError("upstream service list malformed")
        services = []
        for item in raw:
            service_id = int(item["service"])
            info = self.curated.get(service_id)
            if info is None:
                continue
            source_rate = Decimal(str(item["rate"]))
            services.append(
                Service(
                    id=service_id,
                    name=info["name"],
                    platform=info["platform"],
                    type=info["type"],
                    description=info.get("description", ""),
                    min_quantity=int(item["min"]),
                    max_quantity=int(item["max"]),
                    public_rate=round2(source_rate * self.margin),
                    source_rate=source_rate,
                    refill=bool(item.get("refill", False)),
                )
            )
        if not services:
            raise ValueError("upstream service list contains no curated services")
        return services

    def _static_fallback(self) -> list[Service]:
        return [
            Service(
                id=service_id,
                name=info["name"],
                platform=info["platform"],
                type=info["type"],
                description=info.get("description", ""),
                min_quantity=FALLBACK_MIN_QUANTITY,
                max_quantity=FALLBACK_MAX_QUANTITY,
                public_rate=self.fallback_rate,
            )
            for service_id, info in self.curated.items()
        ]

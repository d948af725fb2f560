"""Client for the upstream provisioning panel (`key` + `action` JSON API).

Every call runs under an explicit timeout and maps failures onto the upstream
error taxonomy the dispatcher retries on:

* `httpx.TimeoutException` -> `UpstreamTimeout` (outcome unknown)
* transport errors, 5xx, 429, unparseable bodies -> `TransientUpstreamError`
* other 4xx and `{"error": "..."}` bodies -> `PermanentUpstreamError`

For `add`, a lost response (read-side transport error, unparseable body,
accepted without an order id) raises `UpstreamOutcomeUnknown`: the order may
exist upstream.
"""

from typing import Any

import httpx
from pydantic import BaseModel

from getfame.common.errors import (
    PermanentUpstreamError,
    TransientUpstreamError,
    UpstreamOutcomeUnknown,
    UpstreamTimeout,
)
from getfame.common.logging import logger

# Error texts the panel returns when a reference or order id matches nothing.
_NOT_FOUND_MARKERS = ("not found", "incorrect order", "no order")

# Raised before the request left this process.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.LocalProtocolError, httpx.ProxyError, httpx.UnsupportedProtocol)


class UpstreamStatus(BaseModel):
    """Progress of one upstream order."""

    upstream_order_id: str
    status: str
    remains: int | None = None
    start_count: int | None = None
    charge: str | None = None


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ProvisioningClient:
    """Async wrapper over the panel API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def _request(self, action: str, executes: bool = False, **params: Any) -> Any:
        """POST one action.

        With `executes`, failures after the request may have been sent raise
        `UpstreamOutcomeUnknown` instead of a plain transient error.
        """

        body = {"key": self.api_key, "action": action, **params}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = await client.post(self.base_url, json=body)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"{action} timed out after {self.timeout_seconds}s") from exc
        except _NOT_SENT_ERRORS as exc:
            raise TransientUpstreamError(f"{action} transport error: {exc}") from exc
        except httpx.TransportError as exc:
            if executes:
                raise UpstreamOutcomeUnknown(f"{action} response lost: {exc}") from exc
            raise TransientUpstreamError(f"{action} transport error: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientUpstreamError(f"{action} failed with status={resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentUpstreamError(f"{action} rejected with status={resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            if executes:
                raise UpstreamOutcomeUnknown(f"{action} returned a malformed body") from exc
            raise TransientUpstreamError(f"{action} returned a malformed body") from exc
        if isinstance(data, dict) and data.get("error"):
            logger.warning("provisioning_api_error action=%s error=%s", action, data["error"])
            raise PermanentUpstreamError(str(data["error"]))
        return data

    async def list_services(self) -> list[dict[str, Any]]:
        data = await self._request("services")
        if not isinstance(data, list):
            raise TransientUpstreamError("services returned a non-list body")
        return data

    async def balance(self) -> dict[str, Any]:
        return await self._request("balance")

    async def add_order(self, service_id: int, link: str, quantity: int, reference: str) -> str:
        """Place one order upstream and return its upstream order id.

        `reference` is our order id; it lets `find_by_reference` tell whether
        a timed-out call was executed.
        """

        data = await self._request(
            "add",
            executes=True,
            service=service_id,
            link=link,
            quantity=quantity,
            reference=reference,
        )
        upstream_order_id = data.get("order") if isinstance(data, dict) else None
        if upstream_order_id in (None, ""):
            raise UpstreamOutcomeUnknown("add accepted without an order id")
        return str(upstream_order_id)

    async def order_status(self, upstream_order_id: str) -> UpstreamStatus:
        data = await self._request("status", order=upstream_order_id)
        return self._status_from(upstream_order_id, data)

    async def find_by_reference(self, reference: str) -> UpstreamStatus | None:
        """Look up an order by our reference; None when upstream never created it."""

        try:
            data = await self._request("status", reference=reference)
        except PermanentUpstreamError as exc:
            if any(marker in str(exc).lower() for marker in _NOT_FOUND_MARKERS):
                return None
            raise
        upstream_order_id = data.get("order") if isinstance(data, dict) else None
        if upstream_order_id in (None, ""):
            return None
        return self._status_from(str(upstream_order_id), data)

    @staticmethod
    def _status_from(upstream_order_id: str, data: Any) -> UpstreamStatus:
        if not isinstance(data, dict) or "status" not in data:
            raise TransientUpstreamError("status returned a malformed body")
        return UpstreamStatus(
            upstream_order_id=str(upstream_order_id),
            status=str(data["status"]),
            remains=_optional_int(data.get("remains")),
            start_count=_optional_int(data.get("start_count")),
            charge=None if data.get("charge") is None else str(data["charge"]),
        )

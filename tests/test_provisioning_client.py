"""ProvisioningClient request shape and error classification."""

import json

import httpx
import pytest

from getfame.common.errors import (
    PermanentUpstreamError,
    TransientUpstreamError,
    UpstreamOutcomeUnknown,
    UpstreamTimeout,
)
from getfame.services.provisioning.client import ProvisioningClient

PANEL = "https://panel.test/api/v2"


def _client(handler) -> ProvisioningClient:
    return ProvisioningClient(PANEL, "panel-key", timeout_seconds=2.0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_add_order_sends_key_action_and_reference():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"order": 23501})

    upstream_id = await _client(handler).add_order(5951, "https://instagram.com/x", 5000, reference="O1")

    assert upstream_id == "23501"
    assert seen == {
        "key": "panel-key",
        "action": "add",
        "service": 5951,
        "link": "https://instagram.com/x",
        "quantity": 5000,
        "reference": "O1",
    }


@pytest.mark.asyncio
async def test_error_body_is_permanent():
    def handler(request):
        return httpx.Response(200, json={"error": "Incorrect link"})

    with pytest.raises(PermanentUpstreamError, match="Incorrect link"):
        await _client(handler).add_order(1, "https://x.test/a", 100, reference="O1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="maintenance"),
        httpx.Response(429, text="slow down"),
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json={"status": "ok"}),
    ],
)
async def test_transient_responses(response):
    with pytest.raises(TransientUpstreamError):
        await _client(lambda request: response).add_order(1, "https://x.test/a", 100, reference="O1")


@pytest.mark.asyncio
async def test_client_errors_are_permanent():
    with pytest.raises(PermanentUpstreamError):
        await _client(lambda request: httpx.Response(401, text="bad key")).balance()


@pytest.mark.asyncio
async def test_timeout_is_its_own_kind():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(UpstreamTimeout):
        await _client(handler).add_order(1, "https://x.test/a", 100, reference="O1")


@pytest.mark.asyncio
async def test_connection_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientUpstreamError) as exc_info:
        await _client(handler).list_services()
    assert not isinstance(exc_info.value, UpstreamTimeout)


@pytest.mark.asyncio
async def test_order_status_parses_progress():
    def handler(request):
        assert json.loads(request.content)["order"] == "23501"
        return httpx.Response(
            200,
            json={"charge": "0.27819", "start_count": "3572", "status": "Partial", "remains": "157", "currency": "USD"},
        )

    status = await _client(handler).order_status("23501")

    assert status.status == "Partial"
    assert status.remains == 157
    assert status.start_count == 3572
    assert status.charge == "0.27819"


@pytest.mark.asyncio
async def test_find_by_reference():
    def found(request):
        assert json.loads(request.content)["reference"] == "O1"
        return httpx.Response(200, json={"order": 777, "status": "In progress"})

    def missing(request):
        return httpx.Response(200, json={"error": "Order not found"})

    def broken(request):
        return httpx.Response(502, text="bad gateway")

    status = await _client(found).find_by_reference("O1")
    assert status.upstream_order_id == "777"
    assert await _client(missing).find_by_reference("O1") is None
    with pytest.raises(TransientUpstreamError):
        await _client(broken).find_by_reference("O1")


@pytest.mark.asyncio
async def test_list_services_requires_a_list():
    services = [{"service": 1, "rate": "0.9", "min": "10", "max": "100"}]

    assert await _client(lambda request: httpx.Response(200, json=services)).list_services() == services
    with pytest.raises(TransientUpstreamError):
        await _client(lambda request: httpx.Response(200, json={"services": []})).list_services()


def _reset(request):
    raise httpx.ReadError("connection reset", request=request)


def _disconnected(request):
    raise httpx.RemoteProtocolError("server disconnected without sending a response", request=request)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [
        _reset,
        _disconnected,
        lambda request: httpx.Response(200, text="<html>gateway</html>"),
        lambda request: httpx.Response(200, json={"status": "ok"}),
    ],
)
async def test_lost_add_response_has_unknown_outcome(handler):
    with pytest.raises(UpstreamOutcomeUnknown):
        await _client(handler).add_order(1, "https://x.test/a", 100, reference="O1")


@pytest.mark.asyncio
async def test_add_that_never_left_is_plain_transient():
    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    for handler in (refused, lambda request: httpx.Response(503, text="maintenance")):
        with pytest.raises(TransientUpstreamError) as exc_info:
            await _client(handler).add_order(1, "https://x.test/a", 100, reference="O1")
        assert not isinstance(exc_info.value, UpstreamOutcomeUnknown)


@pytest.mark.asyncio
async def test_lost_response_on_reads_is_plain_transient():
    with pytest.raises(TransientUpstreamError) as exc_info:
        await _client(_reset).list_services()
    assert not isinstance(exc_info.value, UpstreamOutcomeUnknown)

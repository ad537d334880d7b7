from typing import List

import httpx
import pytest

from hotel_tv_core.pms import (
    AUTHENTICATION_FAILED,
    CONNECTION_REFUSED,
    DEFAULT_SERVER_INFO,
    ERROR_MESSAGES,
    FORBIDDEN,
    SERVER_ERROR,
    TIMEOUT,
    PmsClient,
    PmsCredentials,
    PmsError,
    RoomSnapshot,
)

CREDENTIALS = PmsCredentials(base_url="https://pms.example.test", api_key="key-123")


def _client(handler) -> PmsClient:
    return PmsClient(CREDENTIALS, timeout=5, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_room_reads_guest_and_folio() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        assert request.headers["Authorization"] == "Bearer key-123"
        if request.url.path.endswith("/guest"):
            return httpx.Response(
                200,
                json={
                    "guest_name": "A. Smith",
                    "check_in": "2026-03-14T14:00:00Z",
                    "check_out": "2026-03-15T11:00:00Z",
                },
            )
        return httpx.Response(
            200,
            json={"charges": [{"description": "Room service", "amount": "24.50"}]},
        )

    async with _client(handler) as client:
        snapshot = await client.fetch_room("101")

    assert seen == ["/api/v1/rooms/101/guest", "/api/v1/rooms/101/folio"]
    assert snapshot.guest is not None
    assert snapshot.guest.guest_name == "A. Smith"
    assert snapshot.guest.check_in == "2026-03-14 14:00:00.000000"
    assert snapshot.bills[0].label == "Room service"
    assert snapshot.bills[0].amount == 24.5
    assert RoomSnapshot.from_dict(snapshot.to_dict()) == snapshot


@pytest.mark.asyncio
async def test_missing_guest_skips_folio() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(404)

    async with _client(handler) as client:
        snapshot = await client.fetch_room("102")

    assert seen == ["/api/v1/rooms/102/guest"]
    assert snapshot.guest is None
    assert snapshot.bills == ()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "category"),
    [(401, AUTHENTICATION_FAILED), (403, FORBIDDEN), (500, SERVER_ERROR), (503, SERVER_ERROR)],
)
async def test_http_failures_are_classified(status_code: int, category: str) -> None:
    async with _client(lambda request: httpx.Response(status_code)) as client:
        with pytest.raises(PmsError) as excinfo:
            await client.fetch_room("101")
    assert excinfo.value.category == category
    assert excinfo.value.message == ERROR_MESSAGES[category]
    assert excinfo.value.status_code == status_code


@pytest.mark.asyncio
async def test_transport_failures_are_classified() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(refuse) as client:
        with pytest.raises(PmsError) as refused:
            await client.server_info()
    async with _client(stall) as client:
        with pytest.raises(PmsError) as stalled:
            await client.fetch_room("101")

    assert refused.value.category == CONNECTION_REFUSED
    assert stalled.value.category == TIMEOUT


@pytest.mark.asyncio
async def test_server_info_reports_pms_details() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/hotels"
        return httpx.Response(200, json={"hotels": []}, headers={"x-response-time": "12ms"})

    async with _client(handler) as client:
        info = await client.server_info()

    assert info["status"] == 200
    assert info["responseTime"] == "12ms"
    assert info["serverInfo"] == DEFAULT_SERVER_INFO


def test_credentials_require_url_and_key() -> None:
    with pytest.raises(ValueError):
        PmsCredentials.from_mapping({"base_url": "https://pms.example.test"})
    creds = PmsCredentials.from_mapping({"base_url": " https://x ", "api_key": "k", "username": ""})
    assert creds.base_url == "https://x"
    assert creds.username is None

"""
Tests for the HTTP user context client.
"""

import httpx
import pytest

from dialler.calls.user_context import HttpUserContextProvider
from dialler.shared.exceptions import NotFoundError, UserContextUnavailableError
from dialler.shared.logging import correlation_id_var

CONTEXT_BODY = {
    "user_id": 12,
    "first_name": "Sam",
    "last_name": "Taylor",
    "email": "sam@example.com",
    "phone_number": "+447700900123",
    "claims": [
        {
            "id": 501,
            "type": "vehicle_finance",
            "status": "awaiting_documents",
            "lender": "Northwind",
            "requirements": [{"id": "r1", "type": "ID_DOCUMENT", "status": "missing"}],
        }
    ],
}


def _provider(handler) -> HttpUserContextProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpUserContextProvider(base_url="http://users.test/", client=client)


class TestHttpUserContextProvider:
    async def test_parses_context(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=CONTEXT_BODY)

        context = await _provider(handler).get_user_context(12)

        assert str(seen[0].url) == "http://users.test/users/12/call-context"
        assert context.first_name == "Sam"
        assert context.claims[0].lender == "Northwind"
        assert context.claims[0].requirements[0].type == "ID_DOCUMENT"

    async def test_forwards_correlation_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=CONTEXT_BODY)

        token = correlation_id_var.set("corr-123")
        try:
            await _provider(handler).get_user_context(12)
        finally:
            correlation_id_var.reset(token)

        assert seen[0].headers["X-Correlation-ID"] == "corr-123"

    async def test_unknown_user(self) -> None:
        provider = _provider(lambda request: httpx.Response(404, json={"detail": "nope"}))
        with pytest.raises(NotFoundError):
            await provider.get_user_context(12)

    async def test_server_error(self) -> None:
        provider = _provider(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(UserContextUnavailableError) as exc_info:
            await provider.get_user_context(12)
        assert exc_info.value.details["status_code"] == 502

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UserContextUnavailableError):
            await _provider(handler).get_user_context(12)

    @pytest.mark.parametrize("body", [b"not json", b'{"user_id": 12}'])
    async def test_malformed_body(self, body: bytes) -> None:
        provider = _provider(lambda request: httpx.Response(200, content=body))
        with pytest.raises(UserContextUnavailableError):
            await provider.get_user_context(12)

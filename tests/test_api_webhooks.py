"""
Integration tests for POST /hooks/{provider}/{token}
"""
import json

import pytest
from httpx import AsyncClient

from hookgate.domain.entities import HandlerDefinition, ProviderConfig
from tests.conftest import SECRET, TOKEN, make_body, signed_headers

URL = f"/hooks/acme/{TOKEN}"


class TestReceiveWebhook:
    """Inbound webhook endpoint"""

    @pytest.mark.integration
    async def test_received_then_duplicate(self, test_client: AsyncClient, definition_source, execution_store):
        definition_source.add(HandlerDefinition(provider="acme", event_type="order.*", handler="audit"))
        body = make_body("evt_1", "order.created")

        first = await test_client.post(URL, content=body, headers=signed_headers(body))
        second = await test_client.post(URL, content=body, headers=signed_headers(body))

        assert first.status_code == 201
        assert first.json()["status"] == "received"
        assert second.status_code == 200
        assert second.json() == {"id": first.json()["id"], "status": "duplicate"}
        assert len(await execution_store.list_for_event(first.json()["id"])) == 1

    @pytest.mark.integration
    async def test_correlation_id_propagates(self, test_client: AsyncClient, event_store):
        body = make_body("evt_corr")
        headers = {**signed_headers(body), "X-Correlation-ID": "corr1234"}

        response = await test_client.post(URL, content=body, headers=headers)

        assert response.headers["X-Correlation-ID"] == "corr1234"
        event = await event_store.get(response.json()["id"])
        assert event.metadata["correlation_id"] == "corr1234"

    @pytest.mark.integration
    async def test_unknown_provider(self, test_client: AsyncClient):
        response = await test_client.post("/hooks/nobody/whatever", content=b"{}")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_1002"

    @pytest.mark.integration
    async def test_wrong_token(self, test_client: AsyncClient):
        body = make_body()
        response = await test_client.post("/hooks/acme/wrong", content=body, headers=signed_headers(body))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ERR_2001"

    @pytest.mark.integration
    async def test_bad_signature(self, test_client: AsyncClient):
        body = make_body()
        response = await test_client.post(URL, content=body, headers=signed_headers(body, secret="nope"))
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "ERR_2002"
        assert error["details"]["reason"] == "signature_mismatch"

    @pytest.mark.integration
    async def test_invalid_json(self, test_client: AsyncClient):
        body = b"{not json"
        response = await test_client.post(URL, content=body, headers=signed_headers(body))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2004"

    @pytest.mark.integration
    async def test_declared_length_too_large(self, test_client: AsyncClient):
        body = json.dumps({"id": "evt_big", "blob": "x" * 2000}).encode()
        response = await test_client.post(URL, content=body, headers=signed_headers(body))
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "ERR_2003"

    @pytest.mark.integration
    async def test_streamed_body_too_large(self, test_client: AsyncClient):
        """No Content-Length: the read stops one byte past the limit"""
        async def chunks():
            for _ in range(5):
                yield b"x" * 500

        response = await test_client.post(URL, content=chunks())
        assert response.status_code == 413

    @pytest.mark.integration
    async def test_rate_limited_with_retry_after(self, test_client: AsyncClient, provider_store):
        provider_store.add(ProviderConfig(
            name="tiny", token="tok", signing_secret=SECRET,
            rate_limit_requests=1, rate_limit_period_seconds=60,
        ))
        body = make_body("evt_rl")

        first = await test_client.post("/hooks/tiny/tok", content=body, headers=signed_headers(body))
        second = await test_client.post("/hooks/tiny/tok", content=body, headers=signed_headers(body))

        assert first.status_code == 201
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "60"

    @pytest.mark.integration
    async def test_inactive_provider(self, test_client: AsyncClient, provider_store):
        provider_store.add(ProviderConfig(name="old", token="tok", signing_secret=SECRET, active=False))
        response = await test_client.post("/hooks/old/tok", content=b"{}")
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_unknown_verifier_is_server_error(self, test_client: AsyncClient, provider_store):
        provider_store.add(ProviderConfig(name="odd", token="tok", signing_secret=SECRET, verifier="bogus"))
        body = make_body("evt_odd")
        response = await test_client.post("/hooks/odd/tok", content=body, headers=signed_headers(body))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "ERR_2007"
        assert response.json()["error"]["details"] == {"provider": "odd", "verifier": "bogus"}


class TestHealth:

    @pytest.mark.integration
    async def test_health(self, test_client: AsyncClient):
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

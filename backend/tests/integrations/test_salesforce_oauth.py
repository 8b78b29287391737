"""Tests for the Salesforce OAuth client and flow state machine."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from fieldintel.core.exceptions import OAuthExchangeError, OAuthFlowError
from fieldintel.integrations.oauth import OAuthFlow, OAuthFlowStep, SalesforceOAuthClient, TokenSet

TOKEN_RESPONSE = {
    "access_token": "00Dxx0000001gPL!AQ4AQFakeAccessTokenValue",
    "refresh_token": "5Aep861TSESvWeug_FakeRefresh",
    "instance_url": "https://acme.my.salesforce.com",
    "id": "https://login.salesforce.com/id/00Dxx0000001gPLEAY/005xx000001SwiUAAS",
    "issued_at": "1760000000000",
    "signature": "sig",
}

IDENTITY_RESPONSE = {
    "user_id": "005xx000001SwiUAAS",
    "organization_id": "00Dxx0000001gPLEAY",
    "display_name": "Sam Rep",
    "email": "sam@acme.com",
}


def _client(pipeline_config, handler) -> SalesforceOAuthClient:
    return SalesforceOAuthClient(pipeline_config, transport=httpx.MockTransport(handler))


class TestOAuthFlow:
    def test_happy_path(self) -> None:
        flow = OAuthFlow()
        for step in (
            OAuthFlowStep.AUTHORIZING,
            OAuthFlowStep.CALLBACK_RECEIVED,
            OAuthFlowStep.VERIFIED,
            OAuthFlowStep.EXCHANGED,
            OAuthFlowStep.CONNECTED,
        ):
            flow.advance(step)
        assert flow.step is OAuthFlowStep.CONNECTED
        assert flow.history[0] is OAuthFlowStep.IDLE

    def test_skipping_a_step_raises(self) -> None:
        flow = OAuthFlow.resume(OAuthFlowStep.AUTHORIZING)
        with pytest.raises(OAuthFlowError):
            flow.advance(OAuthFlowStep.EXCHANGED)

    def test_any_step_may_fail(self) -> None:
        flow = OAuthFlow.resume(OAuthFlowStep.VERIFIED)
        flow.advance(OAuthFlowStep.ERROR)
        assert flow.step is OAuthFlowStep.ERROR

        flow = OAuthFlow.resume(OAuthFlowStep.CALLBACK_RECEIVED)
        flow.fail("nonce mismatch")
        assert flow.error == "nonce mismatch"

    def test_error_is_terminal(self) -> None:
        flow = OAuthFlow()
        flow.fail("boom")
        with pytest.raises(OAuthFlowError):
            flow.advance(OAuthFlowStep.AUTHORIZING)


class TestTokenSet:
    def test_requires_access_token_and_instance_url(self) -> None:
        with pytest.raises(OAuthExchangeError):
            TokenSet.from_response({"access_token": "x"})

    def test_repr_hides_tokens(self) -> None:
        tokens = TokenSet.from_response(TOKEN_RESPONSE)
        assert TOKEN_RESPONSE["access_token"] not in repr(tokens)
        assert TOKEN_RESPONSE["refresh_token"] not in repr(tokens)
        assert tokens.id_url == TOKEN_RESPONSE["id"]


class TestSalesforceOAuthClient:
    def test_authorization_url(self, pipeline_config) -> None:
        client = SalesforceOAuthClient(pipeline_config)
        url = client.authorization_url("state-blob", "challenge-value", "https://app/cb")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.netloc == "login.salesforce.com"
        assert parsed.path == "/services/oauth2/authorize"
        assert params["response_type"] == ["code"]
        assert params["client_id"] == ["test-client-id"]
        assert params["state"] == ["state-blob"]
        assert params["code_challenge"] == ["challenge-value"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["prompt"] == ["login"]
        assert "client_secret" not in params

    @pytest.mark.asyncio
    async def test_exchange_code_posts_verifier_and_secret(self, pipeline_config) -> None:
        seen: dict[str, list[str]] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/services/oauth2/token"
            seen.update(parse_qs(request.content.decode()))
            return httpx.Response(200, json=TOKEN_RESPONSE)

        tokens = await _client(pipeline_config, handler).exchange_code(
            "auth-code", "v" * 64, "https://app/cb"
        )

        assert seen["grant_type"] == ["authorization_code"]
        assert seen["code_verifier"] == ["v" * 64]
        assert seen["client_secret"] == ["test-client-secret-value"]
        assert tokens.instance_url == "https://acme.my.salesforce.com"

    @pytest.mark.asyncio
    async def test_exchange_error_carries_provider_body(self, pipeline_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "invalid code verifier"},
            )

        with pytest.raises(OAuthExchangeError) as exc_info:
            await _client(pipeline_config, handler).exchange_code("c", "v" * 64, "https://app/cb")

        assert exc_info.value.message == "invalid code verifier"
        assert exc_info.value.provider_error["error"] == "invalid_grant"
        assert exc_info.value.details["provider_status"] == 400

    @pytest.mark.asyncio
    async def test_exchange_network_failure(self, pipeline_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(OAuthExchangeError, match="unreachable"):
            await _client(pipeline_config, handler).exchange_code("c", "v" * 64, "https://app/cb")

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token(self, pipeline_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = parse_qs(request.content.decode())
            assert body["grant_type"] == ["refresh_token"]
            return httpx.Response(
                200,
                json={"access_token": "new-access-token-value", "instance_url": "https://acme.my.salesforce.com"},
            )

        tokens = await _client(pipeline_config, handler).refresh("original-refresh")
        assert tokens.access_token == "new-access-token-value"
        assert tokens.refresh_token == "original-refresh"

    @pytest.mark.asyncio
    async def test_fetch_identity_uses_bearer(self, pipeline_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == f"Bearer {TOKEN_RESPONSE['access_token']}"
            return httpx.Response(200, json=IDENTITY_RESPONSE)

        identity = await _client(pipeline_config, handler).fetch_identity(
            TokenSet.from_response(TOKEN_RESPONSE)
        )
        assert identity["display_name"] == "Sam Rep"

    @pytest.mark.asyncio
    async def test_fetch_identity_without_url(self, pipeline_config) -> None:
        tokens = TokenSet(access_token="a", instance_url="https://x")
        with pytest.raises(OAuthExchangeError):
            await SalesforceOAuthClient(pipeline_config).fetch_identity(tokens)

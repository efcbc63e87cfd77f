"""
FCM Gateway Verification

Tests that:
1. build_fcm_message carries notification, data, and platform blocks
2. FCM error responses are classified into invalid-token / transient / unknown
3. The OAuth assertion is RS256-signed and the access token is cached
4. send_one returns the message id and raises TokenRejectedError on refusal
5. send_batch returns one positional result per token
6. Credential rejections, network errors, missing or unusable
   credentials, and unreadable responses raise GatewayError
7. load_service_account reads inline JSON or a file

Run with: pytest tests/test_fcm_gateway.py -v
"""

import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.core.exceptions import GatewayError, TokenRejectedError
from app.models.notifications import ErrorClass, PushEnvelope
from app.services.gateways.fcm import (
    FCM_SCOPE,
    FcmGateway,
    _parse_error_code,
    build_fcm_message,
    classify_fcm_error,
    load_service_account,
)


# ---------------------------------------------------------------------------
# Test credentials
# ---------------------------------------------------------------------------

_RSA_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_RSA_PEM = _RSA_KEY.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
).decode()

SERVICE_ACCOUNT = {
    "project_id": "pushfan-test",
    "client_email": "push@pushfan-test.iam.gserviceaccount.com",
    "private_key": _RSA_PEM,
    "private_key_id": "key-1",
    "token_uri": "https://oauth2.googleapis.com/token",
}

ENVELOPE = PushEnvelope(title="New job", body="A plumbing job near you")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _response(status_code: int, body: dict | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body or {}
    response.text = json.dumps(body or {})
    return response


def _fcm_error(status: str, error_code: str | None = None) -> dict:
    details = []
    if error_code:
        details.append({
            "@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError",
            "errorCode": error_code,
        })
    return {"error": {"code": 400, "status": status, "details": details}}


def _mock_client(post) -> AsyncMock:
    client = AsyncMock()
    client.post = post
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _gateway_with_cached_token() -> FcmGateway:
    gateway = FcmGateway(service_account=SERVICE_ACCOUNT, max_concurrency=2)
    gateway._access_token = "cached-access-token"
    gateway._access_token_expires_at = time.time() + 3600
    return gateway


# ===================================================================
# Message builder and classification
# ===================================================================

class TestBuildFcmMessage:

    def test_contains_notification_and_data(self):
        message = build_fcm_message("tok-1", ENVELOPE, {"job_id": "9"})

        assert message["token"] == "tok-1"
        assert message["notification"] == {"title": "New job", "body": "A plumbing job near you"}
        assert message["data"] == {"job_id": "9"}

    def test_image_is_attached(self):
        envelope = PushEnvelope(title="T", body="B", image_url="https://img.example.com/a.png")
        message = build_fcm_message("tok-1", envelope, {})
        assert message["notification"]["image"] == "https://img.example.com/a.png"

    def test_platform_blocks(self):
        message = build_fcm_message("tok-1", ENVELOPE, {}, channel_id="jobs")

        assert message["android"]["priority"] == "high"
        assert message["android"]["notification"]["channel_id"] == "jobs"
        assert message["apns"]["payload"]["aps"]["sound"] == "default"
        assert message["apns"]["payload"]["aps"]["badge"] == 1


class TestClassifyFcmError:

    @pytest.mark.parametrize("status,code,expected", [
        (404, "UNREGISTERED", ErrorClass.INVALID_TOKEN),
        (400, "INVALID_ARGUMENT", ErrorClass.INVALID_TOKEN),
        (403, "SENDER_ID_MISMATCH", ErrorClass.INVALID_TOKEN),
        (404, None, ErrorClass.INVALID_TOKEN),
        (503, "UNAVAILABLE", ErrorClass.TRANSIENT),
        (429, "QUOTA_EXCEEDED", ErrorClass.TRANSIENT),
        (500, None, ErrorClass.TRANSIENT),
        (400, "THIRD_PARTY_AUTH_ERROR", ErrorClass.UNKNOWN),
    ])
    def test_classification(self, status, code, expected):
        assert classify_fcm_error(status, code) == expected

    def test_error_code_prefers_fcm_detail(self):
        response = _response(404, _fcm_error("NOT_FOUND", "UNREGISTERED"))
        assert _parse_error_code(response) == "UNREGISTERED"

    def test_error_code_falls_back_to_status(self):
        response = _response(400, _fcm_error("INVALID_ARGUMENT"))
        assert _parse_error_code(response) == "INVALID_ARGUMENT"

    def test_unparseable_body(self):
        response = _response(502)
        response.json.side_effect = ValueError("not json")
        assert _parse_error_code(response) is None


# ===================================================================
# Service account and OAuth
# ===================================================================

class TestServiceAccount:

    def test_inline_json(self):
        with patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", json.dumps(SERVICE_ACCOUNT)):
            assert load_service_account()["project_id"] == "pushfan-test"

    def test_file_path(self, tmp_path):
        path = tmp_path / "service-account.json"
        path.write_text(json.dumps(SERVICE_ACCOUNT))
        with patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", ""), \
             patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT_PATH", str(path)):
            assert load_service_account()["client_email"] == SERVICE_ACCOUNT["client_email"]

    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", "")
    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT_PATH", "")
    def test_missing_credentials(self):
        with pytest.raises(RuntimeError, match="not configured"):
            load_service_account()

    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", "")
    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT_PATH", "/nonexistent/sa.json")
    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_service_account()

    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", '{"project_id": "x"}')
    def test_incomplete_account(self):
        with pytest.raises(RuntimeError, match="client_email"):
            load_service_account()


class TestAccessToken:

    @pytest.mark.asyncio
    async def test_assertion_is_rs256_and_token_is_cached(self):
        gateway = FcmGateway(service_account=SERVICE_ACCOUNT)
        post = AsyncMock(return_value=_response(200, {"access_token": "ya29.abc", "expires_in": 3600}))
        client = _mock_client(post)

        first = await gateway._get_access_token(client)
        second = await gateway._get_access_token(client)

        assert first == second == "ya29.abc"
        post.assert_called_once()

        assertion = post.call_args.kwargs["data"]["assertion"]
        assert jwt.get_unverified_header(assertion)["alg"] == "RS256"
        claims = jwt.decode(
            assertion,
            _RSA_KEY.public_key(),
            algorithms=["RS256"],
            audience=SERVICE_ACCOUNT["token_uri"],
        )
        assert claims["iss"] == SERVICE_ACCOUNT["client_email"]
        assert claims["scope"] == FCM_SCOPE

    @pytest.mark.asyncio
    async def test_failed_exchange_raises_gateway_error(self):
        gateway = FcmGateway(service_account=SERVICE_ACCOUNT)
        client = _mock_client(AsyncMock(return_value=_response(400, {"error": "invalid_grant"})))

        with pytest.raises(GatewayError, match="authentication failed"):
            await gateway._get_access_token(client)

    @pytest.mark.asyncio
    async def test_exchange_without_access_token_is_a_gateway_error(self):
        gateway = FcmGateway(service_account=SERVICE_ACCOUNT)
        client = _mock_client(AsyncMock(return_value=_response(200, {"token_type": "Bearer"})))

        with pytest.raises(GatewayError, match="unusable response"):
            await gateway._get_access_token(client)

    @pytest.mark.asyncio
    async def test_bad_private_key_is_a_gateway_error(self):
        gateway = FcmGateway(service_account={**SERVICE_ACCOUNT, "private_key": "not-a-pem"})
        post = AsyncMock()

        with pytest.raises(GatewayError, match="Could not sign"):
            await gateway._get_access_token(_mock_client(post))

        post.assert_not_called()


class TestUnconfiguredGateway:

    @pytest.mark.asyncio
    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", "")
    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT_PATH", "")
    async def test_send_one_without_credentials_is_a_gateway_error(self):
        post = AsyncMock()

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(GatewayError, match="FCM credentials unavailable"):
                await FcmGateway().send_one("tok-1", ENVELOPE, {})

        post.assert_not_called()

    @pytest.mark.asyncio
    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT", "")
    @patch("app.services.gateways.fcm.FIREBASE_SERVICE_ACCOUNT_PATH", "/nonexistent/sa.json")
    async def test_send_batch_with_missing_file_is_a_gateway_error(self):
        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(AsyncMock())):
            with pytest.raises(GatewayError, match="not found"):
                await FcmGateway().send_batch(["tok-a", "tok-b"], ENVELOPE, {})


# ===================================================================
# Delivery
# ===================================================================

class TestSendOne:

    @pytest.mark.asyncio
    async def test_success_returns_message_id(self):
        gateway = _gateway_with_cached_token()
        post = AsyncMock(return_value=_response(200, {"name": "projects/pushfan-test/messages/1"}))

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            message_id = await gateway.send_one("tok-1", ENVELOPE, {"job_id": "9"})

        assert message_id == "projects/pushfan-test/messages/1"
        url = post.call_args.args[0]
        assert url.endswith("/projects/pushfan-test/messages:send")
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer cached-access-token"
        assert post.call_args.kwargs["json"]["message"]["token"] == "tok-1"

    @pytest.mark.asyncio
    async def test_unregistered_token_is_rejected(self):
        gateway = _gateway_with_cached_token()
        post = AsyncMock(return_value=_response(404, _fcm_error("NOT_FOUND", "UNREGISTERED")))

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(TokenRejectedError) as excinfo:
                await gateway.send_one("tok-1", ENVELOPE, {})

        assert excinfo.value.error_code == "UNREGISTERED"
        assert excinfo.value.error_class == ErrorClass.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_credential_rejection_is_a_gateway_error(self):
        gateway = _gateway_with_cached_token()
        post = AsyncMock(return_value=_response(401, _fcm_error("UNAUTHENTICATED")))

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(GatewayError, match="credentials"):
                await gateway.send_one("tok-1", ENVELOPE, {})

        assert gateway._access_token is None

    @pytest.mark.asyncio
    async def test_network_error_is_a_gateway_error(self):
        gateway = _gateway_with_cached_token()
        post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(GatewayError, match="unreachable"):
                await gateway.send_one("tok-1", ENVELOPE, {})

    @pytest.mark.asyncio
    async def test_timeout_is_a_gateway_error(self):
        gateway = _gateway_with_cached_token()
        post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(GatewayError, match="timed out"):
                await gateway.send_one("tok-1", ENVELOPE, {})

    @pytest.mark.asyncio
    async def test_unreadable_success_body_is_a_gateway_error(self):
        gateway = _gateway_with_cached_token()
        response = _response(200)
        response.json.side_effect = ValueError("Expecting value")
        post = AsyncMock(return_value=response)

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(GatewayError, match="unreadable response"):
                await gateway.send_one("tok-1", ENVELOPE, {})


class TestSendBatch:

    @pytest.mark.asyncio
    async def test_results_follow_input_order(self):
        gateway = _gateway_with_cached_token()

        async def post(url, json=None, headers=None):
            token = json["message"]["token"]
            if token == "tok-b":
                return _response(404, _fcm_error("NOT_FOUND", "UNREGISTERED"))
            if token == "tok-c":
                return _response(503, _fcm_error("UNAVAILABLE"))
            return _response(200, {"name": f"msg-{token}"})

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            batch = await gateway.send_batch(["tok-a", "tok-b", "tok-c"], ENVELOPE, {})

        assert batch.success_count == 1
        assert batch.failure_count == 2
        results = batch.per_token_results
        assert results[0].success and results[0].message_id == "msg-tok-a"
        assert results[1].error_class == ErrorClass.INVALID_TOKEN
        assert results[2].error_class == ErrorClass.TRANSIENT

    @pytest.mark.asyncio
    async def test_transport_failure_fails_the_batch(self):
        gateway = _gateway_with_cached_token()

        async def post(url, json=None, headers=None):
            if json["message"]["token"] == "tok-b":
                raise httpx.ConnectError("reset")
            return _response(200, {"name": "ok"})

        with patch("app.services.gateways.base.httpx.AsyncClient", return_value=_mock_client(post)):
            with pytest.raises(GatewayError):
                await gateway.send_batch(["tok-a", "tok-b"], ENVELOPE, {})

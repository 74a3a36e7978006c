"""
Broadcast Controller Tests
==========================

Tests for OAuth handling and the broadcast lifecycle against a mocked
provider (httpx.MockTransport).
"""

import json
import time

import httpx
import pytest
import pytest_asyncio

from printstreamer.orchestrator.stream import StreamController
from printstreamer.youtube.controller import (
    AuthError,
    BroadcastController,
    BroadcastLifecycle,
    ProviderError,
)
from printstreamer.youtube.ratelimit import ApiRateLimiter
from printstreamer.youtube.tokens import OAuthCredential, TokenStore


API_BASE = "https://yt.test/v3"
TOKEN_URL = "https://oauth.test/token"


def provider_error(status: int, reason: str) -> httpx.Response:
    return httpx.Response(status, json={
        "error": {"code": status, "message": reason, "errors": [{"reason": reason}]},
    })


class FakeProvider:
    """Minimal stateful provider behind a MockTransport."""

    def __init__(self):
        self.lifecycle = "ready"
        self.stream_status = "active"
        self.transition_reply = None
        self.live_reply = None
        self.goes_live = True
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))

        if str(request.url).startswith(TOKEN_URL):
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
        if request.method == "GET" and path.endswith("/liveBroadcasts"):
            return httpx.Response(200, json={
                "items": [{"id": "b1", "status": {"lifeCycleStatus": self.lifecycle, "privacyStatus": "unlisted"}}],
            })
        if request.method == "GET" and path.endswith("/liveStreams"):
            return httpx.Response(200, json={"items": [{"id": "s1", "status": {"streamStatus": self.stream_status}}]})
        if path.endswith("/liveBroadcasts/transition"):
            status = request.url.params["broadcastStatus"]
            if status == "live" and self.live_reply is not None:
                return self.live_reply
            if status == "live" and self.goes_live:
                self.lifecycle = "live"
            elif status == "complete":
                self.lifecycle = "complete"
            if self.transition_reply is not None:
                return self.transition_reply
            return httpx.Response(200, json={"id": "b1", "status": {"lifeCycleStatus": self.lifecycle}})
        if request.method == "POST" and path.endswith("/liveBroadcasts"):
            return httpx.Response(200, json={"id": "b1"})
        if request.method == "POST" and path.endswith("/liveStreams"):
            return httpx.Response(200, json={
                "id": "s1",
                "cdn": {"ingestionInfo": {
                    "ingestionAddress": "rtmp://ingest.test/live2",
                    "streamName": "secret-key",
                }},
            })
        if path.endswith("/liveBroadcasts/bind") or path.endswith("/videos"):
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"error": {"message": f"unexpected {request.method} {path}"}})

    def count(self, method: str, suffix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.endswith(suffix))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def youtube_config(settings):
    config = settings.youtube
    config.oauth.client_id = "client"
    config.oauth.client_secret = "secret"
    config.live_broadcast.transition_max_wait_seconds = 5.0
    config.live_broadcast.ingestion_timeout_seconds = 1.0
    return config


@pytest_asyncio.fixture
async def controller(youtube_config, provider, token_file):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    controller = BroadcastController(
        youtube_config,
        client,
        ApiRateLimiter(enabled=False),
        TokenStore(str(token_file)),
        api_base=API_BASE,
        upload_base=API_BASE,
        token_url=TOKEN_URL,
    )
    yield controller
    await controller.close()
    await client.aclose()


class TestTransition:
    """Tests for transition_when_ready() and end_broadcast()."""

    @pytest.mark.asyncio
    async def test_redundant_transition_counts_as_live(self, controller, provider):
        """Verify redundantTransition followed by a live lifecycle is success."""
        controller.state.broadcast_id = "b1"
        controller.state.stream_id = "s1"
        controller.state.lifecycle = BroadcastLifecycle.BOUND
        provider.transition_reply = provider_error(403, "redundantTransition")

        assert await controller.transition_when_ready("b1") is True

        assert controller.state.lifecycle == BroadcastLifecycle.LIVE
        assert provider.count("POST", "/liveBroadcasts/transition") == 1

    @pytest.mark.asyncio
    async def test_already_live_skips_transition(self, controller, provider):
        """Verify no transition is sent when the broadcast is already live."""
        controller.state.broadcast_id = "b1"
        provider.lifecycle = "live"

        assert await controller.transition_when_ready("b1") is True
        assert provider.count("POST", "/liveBroadcasts/transition") == 0

    @pytest.mark.asyncio
    async def test_permanent_error_stops_retrying(self, controller, provider):
        """Verify a quota error fails immediately."""
        controller.state.broadcast_id = "b1"
        controller.state.stream_id = "s1"
        provider.transition_reply = provider_error(403, "quotaExceeded")
        provider.goes_live = False

        assert await controller.transition_when_ready("b1") is False
        assert controller.state.lifecycle == BroadcastLifecycle.ERROR
        assert "quotaExceeded" in controller.state.last_error

    @pytest.mark.asyncio
    async def test_end_broadcast_tolerates_redundant(self, controller, provider):
        """Verify ending an already ended broadcast counts as ended."""
        controller.state.broadcast_id = "b1"
        controller.state.lifecycle = BroadcastLifecycle.LIVE
        provider.transition_reply = provider_error(403, "redundantTransition")

        assert await controller.end_broadcast() is True
        assert controller.state.lifecycle == BroadcastLifecycle.ENDED


class FakePublisher:
    """Records publisher starts and stops."""

    def __init__(self):
        self.on_failure = None
        self.running = False
        self.urls = []

    async def start(self, url):
        self.urls.append(url)
        self.running = True

    async def stop(self):
        self.running = False


class TestStreamController:
    """Tests for StreamController.start_broadcast()."""

    @pytest.mark.asyncio
    async def test_failed_go_live_ends_broadcast(self, controller, provider):
        """Verify a broadcast that cannot go live is ended on the provider."""
        provider.live_reply = provider_error(403, "quotaExceeded")
        publisher = FakePublisher()
        stream = StreamController(controller, publisher)

        result = await stream.start_broadcast("benchy")

        assert result.success is False
        assert "quotaExceeded" in result.message
        assert publisher.urls and not publisher.running
        assert provider.lifecycle == "complete"
        assert controller.state.lifecycle == BroadcastLifecycle.ENDED

    @pytest.mark.asyncio
    async def test_failed_go_live_survives_end_error(self, controller, provider):
        """Verify an end failure after a failed go-live still reports the go-live error."""
        provider.transition_reply = provider_error(403, "quotaExceeded")
        provider.goes_live = False
        stream = StreamController(controller, FakePublisher())

        result = await stream.start_broadcast("benchy")

        assert result.success is False
        assert "quotaExceeded" in result.message
        assert provider.lifecycle == "complete"
        assert controller.state.lifecycle == BroadcastLifecycle.ERROR


class TestCreateBroadcast:
    """Tests for create_broadcast()."""

    @pytest.mark.asyncio
    async def test_create_and_bind(self, controller, provider):
        """Verify broadcast, stream and binding produce an RTMP target."""
        info = await controller.create_broadcast("benchy.gcode")

        assert info.broadcast_id == "b1"
        assert info.rtmp_url == "rtmp://ingest.test/live2/secret-key"
        assert controller.state.lifecycle == BroadcastLifecycle.BOUND
        assert controller.active
        assert provider.count("POST", "/liveBroadcasts/bind") == 1

    @pytest.mark.asyncio
    async def test_existing_broadcast_reused(self, controller, provider):
        """Verify a second create returns the active broadcast."""
        await controller.create_broadcast("benchy.gcode")
        await controller.create_broadcast("benchy.gcode")

        assert provider.count("POST", "/liveBroadcasts") == 1

    @pytest.mark.asyncio
    async def test_invalid_privacy(self, controller):
        """Verify unknown privacy values are rejected before any call."""
        with pytest.raises(ValueError):
            await controller.update_privacy("secret")


class TestAuthentication:
    """Tests for authenticate() and token refresh."""

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self, settings, provider, tmp_path):
        """Verify authentication refuses to run without client credentials."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(provider)) as client:
            controller = BroadcastController(
                settings.youtube, client, ApiRateLimiter(), TokenStore(str(tmp_path / "t.json")),
            )
            with pytest.raises(AuthError):
                await controller.authenticate()

    @pytest.mark.asyncio
    async def test_stored_token_used(self, controller, provider):
        """Verify a fresh stored token needs no token request."""
        await controller.authenticate()

        assert controller.authenticated
        assert provider.count("POST", "/token") == 0

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_saved(self, controller, provider, token_file):
        """Verify an expired token is refreshed and persisted."""
        token_file.write_text(json.dumps({
            "access_token": "old",
            "refresh_token": "keep-me",
            "expires_in": 3600,
            "issued_at": time.time() - 7200,
        }))

        await controller.authenticate()

        saved = json.loads(token_file.read_text())
        assert saved["access_token"] == "fresh"
        assert saved["refresh_token"] == "keep-me"
        assert provider.count("POST", "/token") == 1


class TestErrors:
    """Tests for ProviderError parsing."""

    def test_reason_parsed(self):
        """Verify the first error reason is extracted."""
        response = provider_error(403, "redundantTransition")
        error = ProviderError.from_response(response, "Transition")

        assert error.reason == "redundantTransition"
        assert error.status_code == 403
        assert error.retryable

    def test_oauth_error_shape(self):
        """Verify token endpoint errors keep their code."""
        response = httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad"})
        error = ProviderError.from_response(response, "Token request")

        assert error.reason == "invalid_grant"
        assert "Bad" in str(error)

    def test_quota_not_retryable(self):
        """Verify quota errors are permanent."""
        assert not ProviderError("x", status_code=403, reason="quotaExceeded").retryable
        assert ProviderError("x", status_code=503).retryable

    def test_credential_expiry(self):
        """Verify the expiry skew."""
        credential = OAuthCredential(access_token="a", expires_in=30, issued_at=time.time())

        assert credential.is_expired(skew=60)
        assert not credential.is_expired(skew=0)

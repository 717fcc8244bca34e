"""
Unit tests for the YouTube provider against a mocked HTTP transport.
"""

import json
from pathlib import Path

import httpx
import pytest

from printstreamer.broadcast.token_store import OAuthToken, TokenStore
from printstreamer.broadcast.youtube import YouTubeProvider
from printstreamer.config import YouTubeConfig
from printstreamer.streaming.error_handler import ErrorKind, ProviderError


def _api_error(status: int, reason: str) -> httpx.Response:
    return httpx.Response(
        status,
        json={"error": {"code": status, "message": reason, "errors": [{"reason": reason}]}},
    )


class FakeYouTube:
    """Routes requests to canned responses and records them."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_error = "invalid_grant"
        self.lifecycle = "ready"
        self.stream_status = "active"
        self.transition_response: httpx.Response | None = None
        self.playlists: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "oauth2.googleapis.com":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": self.token_error})
            return httpx.Response(200, json={"access_token": "fresh-access", "expires_in": 3600})

        if path.endswith("/liveBroadcasts/transition"):
            return self.transition_response or httpx.Response(200, json={"id": request.url.params["id"]})
        if path.endswith("/liveBroadcasts/bind"):
            return httpx.Response(200, json={"id": request.url.params["id"]})
        if path.endswith("/liveBroadcasts") and request.method == "POST":
            return httpx.Response(200, json={"id": "bcast-1"})
        if path.endswith("/liveBroadcasts"):
            status = {"privacyStatus": "unlisted", "lifeCycleStatus": self.lifecycle}
            return httpx.Response(200, json={"items": [{"id": request.url.params["id"], "status": status}]})
        if path.endswith("/liveStreams") and request.method == "POST":
            cdn = {"ingestionInfo": {"ingestionAddress": "rtmp://a.rtmp.youtube.com/live2", "streamName": "sk-1"}}
            return httpx.Response(200, json={"id": "stream-1", "cdn": cdn})
        if path.endswith("/liveStreams"):
            return httpx.Response(200, json={"items": [{"status": {"streamStatus": self.stream_status}}]})
        if path.endswith("/videos") and request.method == "PUT":
            return httpx.Response(200, json={})
        if path.endswith("/playlists") and request.method == "GET":
            return httpx.Response(200, json={"items": self.playlists})
        if path.endswith("/playlists"):
            return httpx.Response(200, json={"id": "pl-new"})
        if path.endswith("/playlistItems"):
            return httpx.Response(200, json={"id": "item-1"})
        return httpx.Response(404, json={"error": {"message": "not found"}})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def api() -> FakeYouTube:
    return FakeYouTube()


@pytest.fixture
def token_file(temp_dir: Path) -> Path:
    path = temp_dir / "token.json"
    TokenStore(str(path)).save(OAuthToken(access_token="stale", refresh_token="refresh-1"))
    return path


def _provider(api: FakeYouTube, token_file: Path, **config) -> YouTubeProvider:
    yt = YouTubeConfig(client_id="cid", client_secret="secret", token_file=str(token_file), **config)
    return YouTubeProvider(yt, transport=httpx.MockTransport(api))


@pytest.mark.unit
class TestAuthentication:
    """Tests for the refresh-token flow."""

    @pytest.mark.asyncio
    async def test_refresh_persists_token(self, api, token_file):
        provider = _provider(api, token_file)

        assert await provider.authenticate() is True

        saved = json.loads(token_file.read_text())
        assert saved["access_token"] == "fresh-access"
        assert saved["refresh_token"] == "refresh-1"
        await provider.close()

    @pytest.mark.asyncio
    async def test_missing_token_file(self, api, temp_dir):
        provider = _provider(api, temp_dir / "none.json")

        assert await provider.authenticate() is False
        assert api.requests == []
        await provider.close()

    @pytest.mark.asyncio
    async def test_rejected_refresh(self, api, token_file):
        api.token_status = 400
        provider = _provider(api, token_file)

        assert await provider.authenticate() is False
        await provider.close()

    @pytest.mark.asyncio
    async def test_unauthorized_client_fallback_is_opt_in(self, api, token_file):
        api.token_status = 401
        api.token_error = "unauthorized_client"

        strict = _provider(api, token_file)
        assert await strict.authenticate() is False
        await strict.close()

        lenient = _provider(api, token_file, allow_access_token_fallback=True)
        assert await lenient.authenticate() is True
        await lenient.close()

    def test_refresh_delay(self, api, token_file):
        provider = _provider(api, token_file)
        assert provider.next_refresh_delay() == 300.0


@pytest.mark.unit
class TestBroadcasts:
    """Tests for broadcast creation and lifecycle calls."""

    @pytest.mark.asyncio
    async def test_create_broadcast_binds_stream(self, api, token_file):
        provider = _provider(api, token_file)

        info = await provider.create_broadcast("My print", privacy="unlisted")

        assert info.broadcast_id == "bcast-1"
        assert info.stream_id == "stream-1"
        assert info.rtmp_url == "rtmp://a.rtmp.youtube.com/live2"
        assert info.stream_key == "sk-1"
        assert "/youtube/v3/liveBroadcasts/bind" in api.paths()
        auth_headers = {r.headers.get("Authorization") for r in api.requests if r.url.host != "oauth2.googleapis.com"}
        assert auth_headers == {"Bearer fresh-access"}
        await provider.close()

    @pytest.mark.asyncio
    async def test_wait_for_ingestion(self, api, token_file):
        provider = _provider(api, token_file, ingestion_poll_seconds=0.01)

        assert await provider.wait_for_ingestion("stream-1", timeout=0.5) is True

        api.stream_status = "inactive"
        assert await provider.wait_for_ingestion("stream-1", timeout=0.05) is False
        assert await provider.wait_for_ingestion(None) is False
        await provider.close()

    @pytest.mark.asyncio
    async def test_transition_when_already_live(self, api, token_file):
        api.lifecycle = "live"
        provider = _provider(api, token_file)

        assert await provider.transition_to_live("bcast-1") is True
        assert not any(p.endswith("/transition") for p in api.paths())
        await provider.close()

    @pytest.mark.asyncio
    async def test_redundant_transition_is_success(self, api, token_file):
        api.transition_response = _api_error(403, "redundantTransition")
        provider = _provider(api, token_file)

        assert await provider.transition_to_live("bcast-1") is True
        await provider.close()

    @pytest.mark.asyncio
    async def test_invalid_transition_is_retryable(self, api, token_file):
        api.transition_response = _api_error(403, "invalidTransition")
        provider = _provider(api, token_file)

        with pytest.raises(ProviderError) as exc_info:
            await provider.transition_to_live("bcast-1")

        assert exc_info.value.kind == ErrorKind.REMOTE_RETRYABLE
        await provider.close()

    @pytest.mark.asyncio
    async def test_forbidden_is_fatal(self, api, token_file):
        api.transition_response = _api_error(403, "forbidden")
        provider = _provider(api, token_file)

        with pytest.raises(ProviderError) as exc_info:
            await provider.transition_to_live("bcast-1")

        assert exc_info.value.kind == ErrorKind.REMOTE_FATAL
        await provider.close()

    @pytest.mark.asyncio
    async def test_end_broadcast_already_complete(self, api, token_file):
        api.transition_response = _api_error(403, "invalidTransition")
        provider = _provider(api, token_file)

        assert await provider.end_broadcast("bcast-1") is True
        await provider.close()


@pytest.mark.unit
class TestPlaylists:

    @pytest.mark.asyncio
    async def test_existing_playlist_matched_by_name(self, api, token_file):
        api.playlists = [{"id": "pl-1", "snippet": {"title": "Prints"}}]
        provider = _provider(api, token_file)

        assert await provider.ensure_playlist("prints") == "pl-1"
        await provider.close()

    @pytest.mark.asyncio
    async def test_playlist_created_when_missing(self, api, token_file):
        provider = _provider(api, token_file)

        assert await provider.ensure_playlist("Prints") == "pl-new"
        assert await provider.add_to_playlist("pl-new", "bcast-1") is True
        await provider.close()

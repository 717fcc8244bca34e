"""
YouTube Live provider.

Implements BroadcastProvider over the YouTube Data API v3 REST endpoints
using httpx. Handles the OAuth refresh-token flow, token persistence and a
background refresh loop.
"""

import asyncio
import logging
import os
import time
from typing import Any, AsyncIterator, Optional

import httpx

from printstreamer.broadcast.provider import BroadcastInfo, BroadcastProvider
from printstreamer.broadcast.token_store import OAuthToken, TokenStore
from printstreamer.config import YouTubeConfig
from printstreamer.streaming.error_handler import (
    AuthenticationError,
    ErrorKind,
    ProviderError,
)

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
API_BASE = "https://www.googleapis.com/youtube/v3"
UPLOAD_BASE = "https://www.googleapis.com/upload/youtube/v3"

LIVE_LIFECYCLES = {"live", "liveStarting"}
UPLOAD_CHUNK_SIZE = 1024 * 1024


class YouTubeProvider(BroadcastProvider):
    """
    YouTube Data API client.

    Usage:
        provider = YouTubeProvider(config.youtube)
        if await provider.authenticate():
            info = await provider.create_broadcast("My print")
    """

    name = "youtube"

    def __init__(
        self,
        config: Optional[YouTubeConfig] = None,
        token_store: Optional[TokenStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or YouTubeConfig()
        self.token_store = token_store or TokenStore(self.config.token_file)
        self._client = httpx.AsyncClient(timeout=self.config.request_timeout, transport=transport)

        self._token: Optional[OAuthToken] = None
        self._expires_at: Optional[float] = None
        self._access_only = False
        self._auth_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None and bool(self._token.access_token)

    # ==================== Authentication ====================

    async def authenticate(self) -> bool:
        """
        Load the stored token and refresh it when needed.

        Returns False when no usable credentials exist; errors are logged
        without token values.
        """
        try:
            await self._ensure_token()
            return True
        except AuthenticationError as e:
            logger.warning(f"YouTube authentication failed: {e}")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"YouTube authentication request failed: {e}")
            return False

    async def refresh_access_token(self) -> OAuthToken:
        """
        Exchange the refresh token for a new access token and persist both.

        Raises:
            AuthenticationError: When the refresh is rejected.
        """
        async with self._auth_lock:
            return await self._refresh_locked()

    async def start_refresh_loop(self) -> None:
        """Keep the access token fresh in the background."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def close(self) -> None:
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        await self._client.aclose()

    def next_refresh_delay(self) -> float:
        """Seconds until the next proactive refresh."""
        expires_in = self._token.expires_in if self._token else None
        if not expires_in:
            return 300.0
        return max(30.0, expires_in / 2)

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.next_refresh_delay())
                if self._access_only:
                    continue
                await self.refresh_access_token()
                logger.debug("YouTube access token refreshed")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"YouTube token refresh failed: {e}")
                try:
                    await asyncio.sleep(30)
                except asyncio.CancelledError:
                    break

    async def _ensure_token(self) -> str:
        async with self._auth_lock:
            if self._token is None:
                self._token = self.token_store.load()
                if self._token is None:
                    raise AuthenticationError(f"No token file at {self.token_store.path}")

            if self._access_only:
                return self._token.access_token

            expired = self._expires_at is None or time.monotonic() >= self._expires_at - 60
            if self._token.access_token and not expired:
                return self._token.access_token

            if not self._token.refresh_token:
                if self._token.access_token:
                    return self._token.access_token
                raise AuthenticationError("Token file has no refresh token")

            token = await self._refresh_locked()
            return token.access_token

    async def _refresh_locked(self) -> OAuthToken:
        if self._token is None:
            self._token = self.token_store.load()
        if self._token is None or not self._token.refresh_token:
            raise AuthenticationError("No refresh token available")

        response = await self._client.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": self._token.refresh_token,
            },
        )

        if response.status_code != 200:
            error = _oauth_error(response)
            if (
                error == "unauthorized_client"
                and self.config.allow_access_token_fallback
                and self._token.access_token
            ):
                logger.warning("Refresh rejected with unauthorized_client, using stored access token only")
                self._access_only = True
                return self._token
            raise AuthenticationError(f"Token refresh failed ({response.status_code}: {error})", reason=error)

        data = response.json()
        token = OAuthToken(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token") or self._token.refresh_token,
            expires_in=data.get("expires_in"),
            scope=data.get("scope") or self._token.scope,
            token_type=data.get("token_type") or "Bearer",
        )
        self._token = token
        self._expires_at = time.monotonic() + token.expires_in if token.expires_in else None
        self.token_store.save(token)
        return token

    # ==================== HTTP Helpers ====================

    async def _request(
        self,
        method: str,
        url: str,
        retry_auth: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        access_token = await self._ensure_token()
        headers = dict(kwargs.pop("headers", {}) or {})
        headers["Authorization"] = f"Bearer {access_token}"

        response = await self._client.request(method, url, headers=headers, **kwargs)

        if response.status_code == 401 and retry_auth and not self._access_only:
            logger.info("YouTube API returned 401, refreshing token")
            async with self._auth_lock:
                self._expires_at = None
                await self._refresh_locked()
            return await self._request(method, url, retry_auth=False, headers=headers, **kwargs)

        if response.status_code >= 400:
            raise _provider_error(response)
        return response

    async def _api(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, f"{API_BASE}{path}", **kwargs)
        if not response.content:
            return {}
        return response.json()

    # ==================== Broadcasts ====================

    async def create_broadcast(
        self,
        title: str,
        description: str = "",
        privacy: str = "unlisted",
        category_id: str = "28",
    ) -> BroadcastInfo:
        broadcast = await self._api(
            "POST",
            "/liveBroadcasts",
            params={"part": "snippet,status,contentDetails"},
            json={
                "snippet": {
                    "title": title,
                    "description": description,
                    "scheduledStartTime": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                },
                "status": {"privacyStatus": privacy, "selfDeclaredMadeForKids": False},
                "contentDetails": {"enableAutoStart": True, "enableAutoStop": True},
            },
        )
        broadcast_id = broadcast["id"]

        stream = await self._api(
            "POST",
            "/liveStreams",
            params={"part": "snippet,cdn,contentDetails"},
            json={
                "snippet": {"title": f"{title} stream"},
                "cdn": {"ingestionType": "rtmp", "resolution": "variable", "frameRate": "variable"},
            },
        )
        stream_id = stream["id"]
        ingestion = stream.get("cdn", {}).get("ingestionInfo", {})

        await self._api(
            "POST",
            "/liveBroadcasts/bind",
            params={"id": broadcast_id, "part": "id,contentDetails", "streamId": stream_id},
        )

        await self._set_category(broadcast_id, title, description, category_id)

        info = BroadcastInfo(
            broadcast_id=broadcast_id,
            rtmp_url=ingestion.get("ingestionAddress", ""),
            stream_key=ingestion.get("streamName", ""),
            stream_id=stream_id,
        )
        logger.info(f"Created YouTube broadcast {broadcast_id} bound to stream {stream_id}")
        return info

    async def _set_category(self, video_id: str, title: str, description: str, category_id: str) -> None:
        try:
            await self._api(
                "PUT",
                "/videos",
                params={"part": "snippet"},
                json={
                    "id": video_id,
                    "snippet": {"title": title, "description": description, "categoryId": category_id},
                },
            )
        except ProviderError as e:
            logger.debug(f"Could not set category on {video_id}: {e}")

    async def _get_broadcast(self, broadcast_id: str) -> Optional[dict[str, Any]]:
        data = await self._api(
            "GET",
            "/liveBroadcasts",
            params={"part": "status,contentDetails", "id": broadcast_id},
        )
        items = data.get("items") or []
        return items[0] if items else None

    async def get_broadcast_privacy(self, broadcast_id: str) -> Optional[str]:
        broadcast = await self._get_broadcast(broadcast_id)
        if broadcast is None:
            return None
        return broadcast.get("status", {}).get("privacyStatus")

    async def get_lifecycle_status(self, broadcast_id: str) -> Optional[str]:
        broadcast = await self._get_broadcast(broadcast_id)
        if broadcast is None:
            return None
        return broadcast.get("status", {}).get("lifeCycleStatus")

    async def get_stream_status(self, stream_id: str) -> Optional[str]:
        data = await self._api("GET", "/liveStreams", params={"part": "status", "id": stream_id})
        items = data.get("items") or []
        if not items:
            return None
        return items[0].get("status", {}).get("streamStatus")

    async def wait_for_ingestion(self, stream_id: Optional[str], timeout: float = 30.0) -> bool:
        if not stream_id:
            return False
        deadline = time.monotonic() + timeout
        while True:
            try:
                status = await self.get_stream_status(stream_id)
                if status == "active":
                    return True
                logger.debug(f"Stream {stream_id} status: {status}")
            except ProviderError as e:
                if not e.is_retryable:
                    raise
                logger.debug(f"Stream status check failed: {e}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.config.ingestion_poll_seconds, remaining))

    async def transition_to_live(self, broadcast_id: str) -> bool:
        lifecycle = await self.get_lifecycle_status(broadcast_id)
        if lifecycle in LIVE_LIFECYCLES:
            logger.info(f"Broadcast {broadcast_id} already {lifecycle}")
            return True

        try:
            await self._api(
                "POST",
                "/liveBroadcasts/transition",
                params={"broadcastStatus": "live", "id": broadcast_id, "part": "status"},
            )
        except ProviderError as e:
            if e.reason == "redundantTransition":
                return True
            if e.reason == "invalidTransition":
                lifecycle = await self.get_lifecycle_status(broadcast_id)
                if lifecycle in LIVE_LIFECYCLES:
                    return True
                raise ProviderError(
                    f"Broadcast {broadcast_id} cannot go live yet ({lifecycle})",
                    kind=ErrorKind.REMOTE_RETRYABLE,
                    status_code=e.status_code,
                    reason=e.reason,
                ) from e
            raise

        logger.info(f"Broadcast {broadcast_id} transitioned to live")
        return True

    async def end_broadcast(self, broadcast_id: str) -> bool:
        try:
            await self._api(
                "POST",
                "/liveBroadcasts/transition",
                params={"broadcastStatus": "complete", "id": broadcast_id, "part": "status"},
            )
        except ProviderError as e:
            if e.reason in ("redundantTransition", "invalidTransition"):
                logger.info(f"Broadcast {broadcast_id} already ended ({e.reason})")
                return True
            raise
        logger.info(f"Broadcast {broadcast_id} ended")
        return True

    # ==================== Videos & Playlists ====================

    async def upload_video(self, path: str, title: str, description: str = "") -> Optional[str]:
        size = os.path.getsize(path)
        start = await self._request(
            "POST",
            f"{UPLOAD_BASE}/videos",
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                "X-Upload-Content-Type": "video/mp4",
                "X-Upload-Content-Length": str(size),
            },
            json={
                "snippet": {
                    "title": title[:100],
                    "description": description,
                    "categoryId": self.config.category_id,
                },
                "status": {"privacyStatus": self.config.privacy},
            },
        )
        location = start.headers.get("Location")
        if not location:
            raise ProviderError("Upload session has no location", kind=ErrorKind.REMOTE_RETRYABLE)

        response = await self._request(
            "PUT",
            location,
            headers={"Content-Type": "video/mp4", "Content-Length": str(size)},
            content=_iter_file(path),
            timeout=None,
        )
        video_id = response.json().get("id")
        logger.info(f"Uploaded {os.path.basename(path)} as video {video_id}")
        return video_id

    async def set_thumbnail(self, video_id: str, image: bytes) -> bool:
        await self._request(
            "POST",
            f"{UPLOAD_BASE}/thumbnails/set",
            params={"videoId": video_id},
            headers={"Content-Type": "image/jpeg"},
            content=image,
        )
        return True

    async def ensure_playlist(self, name: str, privacy: str = "unlisted") -> Optional[str]:
        page_token: Optional[str] = None
        while True:
            params = {"part": "snippet", "mine": "true", "maxResults": "50"}
            if page_token:
                params["pageToken"] = page_token
            data = await self._api("GET", "/playlists", params=params)
            for item in data.get("items") or []:
                if item.get("snippet", {}).get("title", "").lower() == name.lower():
                    return item["id"]
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        created = await self._api(
            "POST",
            "/playlists",
            params={"part": "snippet,status"},
            json={"snippet": {"title": name}, "status": {"privacyStatus": privacy}},
        )
        logger.info(f"Created playlist '{name}' ({created.get('id')})")
        return created.get("id")

    async def add_to_playlist(self, playlist_id: str, video_id: str) -> bool:
        await self._api(
            "POST",
            "/playlistItems",
            params={"part": "snippet"},
            json={
                "snippet": {
                    "playlistId": playlist_id,
                    "resourceId": {"kind": "youtube#video", "videoId": video_id},
                }
            },
        )
        return True


async def _iter_file(path: str) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while True:
            data = f.read(UPLOAD_CHUNK_SIZE)
            if not data:
                break
            yield data


def _oauth_error(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data)
    return str(data)


def _provider_error(response: httpx.Response) -> ProviderError:
    """Build a ProviderError from a Google API error body."""
    reason: Optional[str] = None
    message = response.text[:500]
    try:
        body = response.json()
        error = body.get("error", {}) if isinstance(body, dict) else {}
        if isinstance(error, dict):
            message = error.get("message", message)
            errors = error.get("errors") or []
            if errors:
                reason = errors[0].get("reason")
    except ValueError:
        pass

    status = response.status_code
    if reason == "redundantTransition" or status >= 500 or status == 429:
        kind = ErrorKind.REMOTE_RETRYABLE
    elif status == 401:
        kind = ErrorKind.AUTH_FAILED
    elif reason in ("invalidTransition", "errorStreamInactive"):
        kind = ErrorKind.REMOTE_RETRYABLE
    else:
        kind = ErrorKind.REMOTE_FATAL

    return ProviderError(f"YouTube API {status} ({reason}): {message}", kind=kind, status_code=status, reason=reason)

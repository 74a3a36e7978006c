"""
Broadcast Controller
====================

State machine over the YouTube Live REST API.

Lifecycle (one broadcast per controller):

    none -> created -> bound -> awaiting_ingest -> live -> ending -> ended
    any state -> error on a non-retryable provider error

Every API call goes through the ApiRateLimiter. OAuth tokens are kept in
a TokenStore and refreshed in the background at half their lifetime
(floor 30 s).

Design Rules:
    - Provider failures raise ProviderError with the HTTP status and the
      provider reason preserved
    - redundantTransition / invalidTransition count as success when the
      lifecycle query confirms live or liveStarting
    - transition_when_ready returns True iff the lifecycle ends at LIVE
"""

import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx

from printstreamer.config import YouTubeConfig
from printstreamer.youtube.ratelimit import ApiRateLimiter
from printstreamer.youtube.tokens import OAuthCredential, TokenStore


logger = logging.getLogger(__name__)


API_BASE = "https://www.googleapis.com/youtube/v3"
UPLOAD_BASE = "https://www.googleapis.com/upload/youtube/v3"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPES = ("https://www.googleapis.com/auth/youtube",)

VALID_PRIVACY = ("public", "unlisted", "private")
LIVE_LIFECYCLES = ("live", "liveStarting")
TOLERATED_TRANSITION_REASONS = ("redundantTransition", "invalidTransition")
PERMANENT_REASONS = ("quotaExceeded", "dailyLimitExceeded", "forbidden", "insufficientPermissions")

ATTRIBUTION = "Streamed with PrintStreamer"
CODE_FILE = Path("data") / "youtube_oauth_code.txt"
CODE_WAIT_SECONDS = 300.0
INGEST_POLL_SECONDS = 2.0
REFRESH_FLOOR_SECONDS = 30.0


# =============================================================================
# Errors and state
# =============================================================================

class ProviderError(Exception):
    """
    A provider API call failed.

    Attributes:
        status_code: HTTP status of the failed call
        reason: Provider reason code (e.g. redundantTransition, quotaExceeded)
    """

    def __init__(self, message: str, status_code: Optional[int] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason

    @property
    def retryable(self) -> bool:
        if self.reason in PERMANENT_REASONS:
            return False
        if self.status_code is None or self.status_code >= 500 or self.status_code == 429:
            return True
        return self.reason in TOLERATED_TRANSITION_REASONS or self.reason == "errorStreamInactive"

    @classmethod
    def from_response(cls, response: httpx.Response, action: str) -> "ProviderError":
        reason = None
        message = response.text[:300]
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            message = error.get("message") or message
            errors = error.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                reason = errors[0].get("reason")
        elif isinstance(error, str):
            reason = error
            if isinstance(body, dict):
                message = body.get("error_description") or error
        return cls(
            f"{action} failed ({response.status_code}{', ' + reason if reason else ''}): {message}",
            status_code=response.status_code,
            reason=reason,
        )


class AuthError(Exception):
    """Credentials are missing or were rejected."""
    pass


class BroadcastLifecycle(str, Enum):
    NONE = "none"
    CREATED = "created"
    BOUND = "bound"
    AWAITING_INGEST = "awaiting_ingest"
    LIVE = "live"
    ENDING = "ending"
    ENDED = "ended"
    ERROR = "error"


ACTIVE_LIFECYCLES = (
    BroadcastLifecycle.CREATED,
    BroadcastLifecycle.BOUND,
    BroadcastLifecycle.AWAITING_INGEST,
    BroadcastLifecycle.LIVE,
)


@dataclass
class BroadcastState:
    broadcast_id: Optional[str] = None
    stream_id: Optional[str] = None
    ingest_url: Optional[str] = None
    stream_key: Optional[str] = None
    lifecycle: BroadcastLifecycle = BroadcastLifecycle.NONE
    last_error: Optional[str] = None
    privacy: Optional[str] = None
    created_at: Optional[float] = None

    @property
    def rtmp_url(self) -> Optional[str]:
        if not self.ingest_url or not self.stream_key:
            return None
        return f"{self.ingest_url.rstrip('/')}/{self.stream_key}"

    def to_dict(self) -> dict:
        return {
            "broadcast_id": self.broadcast_id,
            "stream_id": self.stream_id,
            "lifecycle": self.lifecycle.value,
            "last_error": self.last_error,
            "privacy": self.privacy,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class BroadcastInfo:
    broadcast_id: str
    stream_id: str
    ingest_url: str
    stream_key: str

    @property
    def rtmp_url(self) -> str:
        return f"{self.ingest_url.rstrip('/')}/{self.stream_key}"


CodePrompt = Callable[[str], Awaitable[Optional[str]]]


def _first_item(body: dict) -> Optional[dict]:
    items = body.get("items") if isinstance(body, dict) else None
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


# =============================================================================
# Controller
# =============================================================================

class BroadcastController:
    """
    Owns OAuth, the current broadcast and every provider call.

    Example:
        controller = BroadcastController(settings.youtube, http, limiter, store)
        await controller.authenticate()
        info = await controller.create_broadcast("benchy.gcode")
        publisher.start(info.rtmp_url)
        ok = await controller.transition_when_ready(info.broadcast_id)
    """

    def __init__(
        self,
        config: YouTubeConfig,
        client: httpx.AsyncClient,
        limiter: ApiRateLimiter,
        token_store: TokenStore,
        code_prompt: Optional[CodePrompt] = None,
        api_base: str = API_BASE,
        upload_base: str = UPLOAD_BASE,
        token_url: str = TOKEN_URL,
    ) -> None:
        self.config = config
        self.limiter = limiter
        self.token_store = token_store
        self.code_prompt = code_prompt
        self.api_base = api_base.rstrip("/")
        self.upload_base = upload_base.rstrip("/")
        self.token_url = token_url

        self.state = BroadcastState()
        self.refresh_disabled = False

        self._client = client
        self._credential: Optional[OAuthCredential] = None
        self._auth_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def authenticated(self) -> bool:
        return self._credential is not None and not self._credential.is_expired(skew=0)

    @property
    def active(self) -> bool:
        return self.state.lifecycle in ACTIVE_LIFECYCLES and self.state.broadcast_id is not None

    def _set_lifecycle(self, lifecycle: BroadcastLifecycle, error: Optional[str] = None) -> None:
        if lifecycle != self.state.lifecycle:
            logger.info(f"Broadcast lifecycle {self.state.lifecycle.value} -> {lifecycle.value}")
        self.state.lifecycle = lifecycle
        if error is not None:
            self.state.last_error = error

    # =========================================================================
    # OAuth
    # =========================================================================

    def authorization_url(self) -> str:
        oauth = self.config.oauth
        params = {
            "client_id": oauth.client_id or "",
            "redirect_uri": oauth.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def authenticate(self) -> None:
        """
        Make sure a usable access token is available.

        Order: in-memory credential, token file, configured refresh token,
        interactive code exchange.

        Raises:
            AuthError: When no credential can be obtained or it is rejected
        """
        async with self._auth_lock:
            if self._credential is not None and not self._credential.is_expired():
                return

            oauth = self.config.oauth
            if not oauth.client_id or not oauth.client_secret:
                raise AuthError("YouTube OAuth client id/secret are not configured")

            credential = self._credential or self.token_store.load()
            if credential is None and oauth.refresh_token:
                credential = OAuthCredential(refresh_token=oauth.refresh_token, expires_in=0)

            if credential is not None and credential.is_expired():
                if credential.refresh_token and not self.refresh_disabled:
                    credential = await self._refresh(credential)
                elif credential.access_token and not credential.is_expired(skew=0):
                    pass
                else:
                    credential = None

            if credential is None:
                code = await self._obtain_auth_code()
                credential = await self._exchange_code(code)

            self._credential = credential
            await self.token_store.save(credential)
            logger.info("YouTube authentication ready")
            self._ensure_refresh_loop()

    async def _token_request(self, data: dict) -> dict:
        try:
            response = await self._client.post(self.token_url, data=data, timeout=30.0)
        except httpx.HTTPError as e:
            raise AuthError(f"Token endpoint unreachable: {e}") from e
        if response.status_code >= 400:
            error = ProviderError.from_response(response, "Token request")
            raise AuthError(str(error)) from error
        return response.json()

    async def _exchange_code(self, code: str) -> OAuthCredential:
        oauth = self.config.oauth
        body = await self._token_request({
            "code": code.strip(),
            "client_id": oauth.client_id,
            "client_secret": oauth.client_secret,
            "redirect_uri": oauth.redirect_uri,
            "grant_type": "authorization_code",
        })
        credential = OAuthCredential.from_token_response(body)
        if not credential.refresh_token:
            logger.warning("Token response carried no refresh token; re-consent will be needed")
        return credential

    async def _refresh(self, credential: OAuthCredential) -> OAuthCredential:
        oauth = self.config.oauth
        try:
            body = await self._token_request({
                "refresh_token": credential.refresh_token,
                "client_id": oauth.client_id,
                "client_secret": oauth.client_secret,
                "grant_type": "refresh_token",
            })
        except AuthError as e:
            if "unauthorized_client" in str(e) and credential.access_token and not credential.is_expired(skew=0):
                self.refresh_disabled = True
                logger.warning(
                    "Refresh rejected (unauthorized_client); using the current access token "
                    "until it expires"
                )
                return credential
            raise
        refreshed = OAuthCredential.from_token_response(body, previous=credential)
        logger.info("YouTube access token refreshed")
        return refreshed

    async def refresh_now(self) -> None:
        async with self._auth_lock:
            if self._credential is None or not self._credential.refresh_token:
                raise AuthError("No refresh token available")
            self._credential = await self._refresh(self._credential)
            await self.token_store.save(self._credential)

    def _ensure_refresh_loop(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop(), name="youtube_token_refresh")

    async def _refresh_loop(self) -> None:
        while not self.refresh_disabled:
            credential = self._credential
            if credential is None:
                return
            await asyncio.sleep(max(REFRESH_FLOOR_SECONDS, credential.expires_in / 2.0))
            try:
                await self.refresh_now()
            except AuthError as e:
                logger.warning(f"Background token refresh failed: {e}")

    async def _obtain_auth_code(self) -> str:
        oauth = self.config.oauth
        if oauth.auth_code:
            return oauth.auth_code
        env_code = os.environ.get("YOUTUBE_OAUTH_CODE")
        if env_code:
            return env_code
        if oauth.auth_code_file and Path(oauth.auth_code_file).is_file():
            code = Path(oauth.auth_code_file).read_text(encoding="utf-8").strip()
            if code:
                return code

        url = self.authorization_url()
        logger.warning(f"YouTube authorization required. Open this URL and grant access:\n{url}")
        await self._open_browser(url)

        if self.code_prompt is not None:
            code = await self.code_prompt(url)
            if code:
                return code
        elif sys.stdin is not None and sys.stdin.isatty():
            code = await asyncio.to_thread(input, "Paste the authorization code: ")
            if code.strip():
                return code.strip()

        logger.warning(f"Waiting up to {CODE_WAIT_SECONDS / 60:.0f} min for a code in {CODE_FILE}")
        deadline = time.monotonic() + CODE_WAIT_SECONDS
        while time.monotonic() < deadline:
            if CODE_FILE.is_file():
                code = CODE_FILE.read_text(encoding="utf-8").strip()
                if code:
                    CODE_FILE.unlink()
                    return code
            await asyncio.sleep(2.0)
        raise AuthError("Timed out waiting for an authorization code")

    async def _open_browser(self, url: str) -> None:
        if not os.environ.get("DISPLAY") and not os.environ.get("WAYLAND_DISPLAY"):
            return
        try:
            process = await asyncio.create_subprocess_exec(
                "xdg-open", url,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await process.wait()
        except OSError as e:
            logger.debug(f"Could not launch a browser: {e}")

    # =========================================================================
    # Transport
    # =========================================================================

    async def _send(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        if self._credential is None or self._credential.is_expired():
            await self.authenticate()

        extra_headers = kwargs.pop("headers", None) or {}
        for attempt in range(2):
            headers = {**extra_headers, "Authorization": f"Bearer {self._credential.access_token}"}
            try:
                response = await self._client.request(method, url, headers=headers, timeout=60.0, **kwargs)
            except httpx.HTTPError as e:
                raise ProviderError(f"{action} failed: {e}") from e
            if response.status_code == 401 and attempt == 0 and not self.refresh_disabled:
                logger.info(f"{action} got 401, refreshing token")
                await self.refresh_now()
                continue
            if response.status_code >= 400:
                raise ProviderError.from_response(response, action)
            return response
        raise ProviderError(f"{action} failed after token refresh", status_code=401)

    async def _api(
        self,
        method: str,
        path: str,
        action: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        cache_key: Optional[str] = None,
    ) -> dict:
        url = f"{self.api_base}/{path}"

        async def call() -> dict:
            response = await self._send(method, url, action, params=params, json=json)
            return response.json() if response.content else {}

        return await self.limiter.execute(call, cache_key=cache_key)

    # =========================================================================
    # Broadcast lifecycle
    # =========================================================================

    def reset(self) -> None:
        """Forget the current broadcast so a new one can be created."""
        self.state = BroadcastState()

    def _title(self, job_name: Optional[str]) -> str:
        title = self.config.live_broadcast.title
        if job_name:
            stem = Path(job_name).stem
            if stem:
                title = f"{title} - {stem}"
        return title[:100]

    def _description(self, job_name: Optional[str]) -> str:
        parts = [self.config.live_broadcast.description.strip(), ATTRIBUTION]
        if job_name:
            parts.append(f"Printing: {job_name}")
        return "\n\n".join(p for p in parts if p)

    async def create_broadcast(self, job_name: Optional[str] = None) -> BroadcastInfo:
        """
        Insert a broadcast and a stream and bind them.

        Returns the current broadcast when one is already active.

        Raises:
            ProviderError: With the provider status/reason on failure
        """
        if self.active and self.state.rtmp_url:
            logger.info(f"Broadcast {self.state.broadcast_id} already active")
            return BroadcastInfo(
                self.state.broadcast_id, self.state.stream_id, self.state.ingest_url, self.state.stream_key
            )

        live = self.config.live_broadcast
        title = self._title(job_name)
        self.reset()
        try:
            broadcast = await self._api(
                "POST", "liveBroadcasts", "Create broadcast",
                params={"part": "snippet,status,contentDetails"},
                json={
                    "snippet": {
                        "title": title,
                        "description": self._description(job_name),
                        "scheduledStartTime": _utc_now_iso(),
                    },
                    "status": {"privacyStatus": live.privacy, "selfDeclaredMadeForKids": False},
                    "contentDetails": {"enableAutoStart": False, "enableAutoStop": False},
                },
            )
            self.state.broadcast_id = broadcast["id"]
            self.state.privacy = live.privacy
            self.state.created_at = time.time()
            self._set_lifecycle(BroadcastLifecycle.CREATED)
            logger.info(f"Created broadcast {broadcast['id']}: {title}")

            stream = await self._api(
                "POST", "liveStreams", "Create stream",
                params={"part": "snippet,cdn,contentDetails,status"},
                json={
                    "snippet": {"title": f"{title} stream"},
                    "cdn": {"frameRate": "variable", "resolution": "variable", "ingestionType": "rtmp"},
                    "contentDetails": {"isReusable": False},
                },
            )
            ingestion = stream.get("cdn", {}).get("ingestionInfo", {})
            self.state.stream_id = stream["id"]
            self.state.ingest_url = ingestion.get("ingestionAddress")
            self.state.stream_key = ingestion.get("streamName")

            await self._api(
                "POST", "liveBroadcasts/bind", "Bind broadcast",
                params={"id": self.state.broadcast_id, "part": "id,contentDetails", "streamId": self.state.stream_id},
            )
            self._set_lifecycle(BroadcastLifecycle.BOUND)
        except ProviderError as e:
            self._set_lifecycle(BroadcastLifecycle.ERROR, str(e))
            raise
        except KeyError as e:
            error = ProviderError(f"Provider response missing {e}")
            self._set_lifecycle(BroadcastLifecycle.ERROR, str(error))
            raise error from e

        if not self.state.rtmp_url:
            error = ProviderError("Stream resource carried no ingestion info")
            self._set_lifecycle(BroadcastLifecycle.ERROR, str(error))
            raise error

        await self._set_category(self.state.broadcast_id, title, live.category_id)
        return BroadcastInfo(
            self.state.broadcast_id, self.state.stream_id, self.state.ingest_url, self.state.stream_key
        )

    async def _set_category(self, video_id: str, title: str, category_id: str) -> None:
        try:
            await self._api(
                "PUT", "videos", "Set category",
                params={"part": "snippet"},
                json={"id": video_id, "snippet": {"title": title, "categoryId": category_id}},
            )
        except ProviderError as e:
            logger.warning(f"Could not set category on {video_id}: {e}")

    async def get_stream_status(self, stream_id: Optional[str] = None) -> Optional[str]:
        stream_id = stream_id or self.state.stream_id
        if not stream_id:
            return None
        body = await self._api(
            "GET", "liveStreams", "Get stream status",
            params={"part": "status", "id": stream_id},
        )
        item = _first_item(body)
        return item.get("status", {}).get("streamStatus") if item else None

    async def get_lifecycle(self, broadcast_id: Optional[str] = None) -> Optional[str]:
        broadcast_id = broadcast_id or self.state.broadcast_id
        if not broadcast_id:
            return None
        body = await self._api(
            "GET", "liveBroadcasts", "Get broadcast status",
            params={"part": "id,status", "id": broadcast_id},
        )
        item = _first_item(body)
        return item.get("status", {}).get("lifeCycleStatus") if item else None

    async def wait_for_ingestion(self, stream_id: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """Poll the stream status every ~2 s until it is active."""
        timeout = self.config.live_broadcast.ingestion_timeout_seconds if timeout is None else timeout
        if self.state.lifecycle == BroadcastLifecycle.BOUND:
            self._set_lifecycle(BroadcastLifecycle.AWAITING_INGEST)
        status = await self.limiter.poll_until(
            lambda: self.get_stream_status(stream_id),
            lambda value: value == "active",
            timeout=timeout,
            interval=INGEST_POLL_SECONDS,
            context="ingestion",
            retry_on=(ProviderError,),
        )
        return status == "active"

    async def transition(self, broadcast_id: str, status: str) -> dict:
        return await self._api(
            "POST", "liveBroadcasts/transition", f"Transition to {status}",
            params={"broadcastStatus": status, "id": broadcast_id, "part": "id,status"},
        )

    async def _confirm_live(self, broadcast_id: str) -> bool:
        try:
            lifecycle = await self.get_lifecycle(broadcast_id)
        except ProviderError as e:
            logger.warning(f"Lifecycle query failed: {e}")
            return False
        return lifecycle in LIVE_LIFECYCLES

    async def transition_when_ready(
        self,
        broadcast_id: Optional[str] = None,
        max_wait: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> bool:
        """
        Wait for ingestion, then transition to live with linear backoff.

        Returns:
            True iff the broadcast ended up live (lifecycle LIVE).
        """
        live = self.config.live_broadcast
        broadcast_id = broadcast_id or self.state.broadcast_id
        max_wait = live.transition_max_wait_seconds if max_wait is None else max_wait
        max_attempts = live.transition_max_attempts if max_attempts is None else max_attempts
        if not broadcast_id:
            return False

        deadline = time.monotonic() + max_wait
        if await self._confirm_live(broadcast_id):
            self._set_lifecycle(BroadcastLifecycle.LIVE)
            return True

        ingest_budget = min(live.ingestion_timeout_seconds, max(deadline - time.monotonic(), 0))
        if not await self.wait_for_ingestion(timeout=ingest_budget):
            logger.warning("Ingestion not active yet; attempting the transition anyway")

        attempt = 0
        while attempt < max_attempts and time.monotonic() < deadline:
            attempt += 1
            try:
                if await self._confirm_live(broadcast_id):
                    self._set_lifecycle(BroadcastLifecycle.LIVE)
                    return True
                result = await self.transition(broadcast_id, "live")
                lifecycle = result.get("status", {}).get("lifeCycleStatus")
                logger.info(f"Transition succeeded (lifecycle={lifecycle})")
                self._set_lifecycle(BroadcastLifecycle.LIVE)
                return True
            except ProviderError as e:
                logger.warning(f"Transition attempt {attempt}/{max_attempts} failed: {e}")
                if e.reason in TOLERATED_TRANSITION_REASONS and await self._confirm_live(broadcast_id):
                    logger.info(f"{e.reason} with lifecycle live; treating as success")
                    self._set_lifecycle(BroadcastLifecycle.LIVE)
                    return True
                if not e.retryable:
                    self._set_lifecycle(BroadcastLifecycle.ERROR, str(e))
                    return False
                self.state.last_error = str(e)

            remaining = deadline - time.monotonic()
            if attempt < max_attempts and remaining > 0:
                await asyncio.sleep(min(2.0 * attempt, remaining))

        self._set_lifecycle(
            BroadcastLifecycle.ERROR,
            f"Broadcast did not go live after {attempt} attempt(s)",
        )
        return False

    async def end_broadcast(self, broadcast_id: Optional[str] = None) -> bool:
        broadcast_id = broadcast_id or self.state.broadcast_id
        if not broadcast_id:
            return False
        self._set_lifecycle(BroadcastLifecycle.ENDING)
        try:
            await self.transition(broadcast_id, "complete")
        except ProviderError as e:
            if e.reason in TOLERATED_TRANSITION_REASONS:
                logger.info(f"End broadcast returned {e.reason}; treating as ended")
            else:
                self._set_lifecycle(BroadcastLifecycle.ERROR, str(e))
                raise
        self._set_lifecycle(BroadcastLifecycle.ENDED)
        logger.info(f"Broadcast {broadcast_id} ended")
        return True

    # =========================================================================
    # Single calls
    # =========================================================================

    async def get_privacy(self, broadcast_id: Optional[str] = None) -> Optional[str]:
        broadcast_id = broadcast_id or self.state.broadcast_id
        if not broadcast_id:
            return None
        body = await self._api(
            "GET", "liveBroadcasts", "Get privacy",
            params={"part": "status", "id": broadcast_id},
            cache_key=f"privacy:{broadcast_id}",
        )
        item = _first_item(body)
        privacy = item.get("status", {}).get("privacyStatus") if item else None
        if privacy:
            self.state.privacy = privacy
        return privacy

    async def update_privacy(self, privacy: str, broadcast_id: Optional[str] = None) -> str:
        if privacy not in VALID_PRIVACY:
            raise ValueError(f"privacy must be one of {', '.join(VALID_PRIVACY)}")
        broadcast_id = broadcast_id or self.state.broadcast_id
        if not broadcast_id:
            raise ProviderError("No active broadcast")
        await self._api(
            "PUT", "liveBroadcasts", "Update privacy",
            params={"part": "status"},
            json={
                "id": broadcast_id,
                "status": {"privacyStatus": privacy, "selfDeclaredMadeForKids": False},
            },
        )
        self.limiter.clear_cache()
        self.state.privacy = privacy
        logger.info(f"Broadcast {broadcast_id} privacy set to {privacy}")
        return privacy

    async def send_chat_message(self, text: str, broadcast_id: Optional[str] = None) -> dict:
        broadcast_id = broadcast_id or self.state.broadcast_id
        if not broadcast_id:
            raise ProviderError("No active broadcast")
        body = await self._api(
            "GET", "liveBroadcasts", "Get chat id",
            params={"part": "snippet", "id": broadcast_id},
            cache_key=f"chat:{broadcast_id}",
        )
        item = _first_item(body)
        chat_id = item.get("snippet", {}).get("liveChatId") if item else None
        if not chat_id:
            raise ProviderError("Broadcast has no live chat")
        return await self._api(
            "POST", "liveChat/messages", "Send chat message",
            params={"part": "snippet"},
            json={
                "snippet": {
                    "liveChatId": chat_id,
                    "type": "textMessageEvent",
                    "textMessageDetails": {"messageText": text[:200]},
                }
            },
        )

    async def set_thumbnail(self, video_id: str, jpeg: bytes) -> None:
        url = f"{self.upload_base}/thumbnails/set"

        async def call() -> None:
            await self._send(
                "POST", url, "Set thumbnail",
                params={"videoId": video_id},
                content=jpeg,
                headers={"Content-Type": "image/jpeg"},
            )

        await self.limiter.execute(call)
        logger.info(f"Thumbnail set on {video_id}")

    async def upload_video(
        self,
        path: str,
        title: str,
        description: str = "",
        privacy: str = "unlisted",
        category_id: str = "28",
    ) -> str:
        """
        Resumable upload of a video file.

        Returns:
            The new video id.
        """
        data = await asyncio.to_thread(Path(path).read_bytes)
        metadata = {
            "snippet": {"title": title[:100], "description": description, "categoryId": category_id},
            "status": {"privacyStatus": privacy, "selfDeclaredMadeForKids": False},
        }

        async def start() -> str:
            response = await self._send(
                "POST", f"{self.upload_base}/videos", "Start upload",
                params={"uploadType": "resumable", "part": "snippet,status"},
                json=metadata,
                headers={
                    "X-Upload-Content-Type": "video/mp4",
                    "X-Upload-Content-Length": str(len(data)),
                },
            )
            location = response.headers.get("location")
            if not location:
                raise ProviderError("Upload session has no location")
            return location

        async def send(location: str) -> dict:
            response = await self._send(
                "PUT", location, "Upload video",
                content=data,
                headers={"Content-Type": "video/mp4"},
            )
            return response.json()

        location = await self.limiter.execute(start)
        body = await self.limiter.execute(lambda: send(location))
        video_id = body.get("id")
        if not video_id:
            raise ProviderError("Upload response carried no video id")
        logger.info(f"Uploaded {path} as video {video_id}")
        return video_id

    async def ensure_playlist(self, name: str, privacy: str = "unlisted") -> str:
        """Find a playlist by title (case-insensitive) or create it."""
        page_token = None
        while True:
            params = {"part": "snippet", "mine": "true", "maxResults": 50}
            if page_token:
                params["pageToken"] = page_token
            body = await self._api("GET", "playlists", "List playlists", params=params)
            for item in body.get("items", []):
                if item.get("snippet", {}).get("title", "").lower() == name.lower():
                    return item["id"]
            page_token = body.get("nextPageToken")
            if not page_token:
                break

        created = await self._api(
            "POST", "playlists", "Create playlist",
            params={"part": "snippet,status"},
            json={"snippet": {"title": name}, "status": {"privacyStatus": privacy}},
        )
        logger.info(f"Created playlist '{name}' ({created['id']})")
        return created["id"]

    async def add_video_to_playlist(self, playlist_id: str, video_id: str) -> None:
        await self._api(
            "POST", "playlistItems", "Add to playlist",
            params={"part": "snippet"},
            json={
                "snippet": {
                    "playlistId": playlist_id,
                    "resourceId": {"kind": "youtube#video", "videoId": video_id},
                }
            },
        )
        logger.info(f"Added {video_id} to playlist {playlist_id}")

    async def add_to_configured_playlist(self, video_id: str) -> bool:
        playlist = self.config.playlist
        if not playlist.name:
            return False
        try:
            playlist_id = await self.ensure_playlist(playlist.name, playlist.privacy)
            await self.add_video_to_playlist(playlist_id, video_id)
        except ProviderError as e:
            logger.warning(f"Could not add {video_id} to playlist '{playlist.name}': {e}")
            return False
        return True

    async def upload_timelapse(self, path: str, job_name: str) -> str:
        upload = self.config.timelapse_upload
        stem = Path(job_name).stem or job_name
        return await self.upload_video(
            path,
            title=f"{self.config.live_broadcast.title} - {stem} - Timelapse",
            description=f"Timelapse of {job_name}\n\n{ATTRIBUTION}",
            privacy=upload.privacy,
            category_id=upload.category_id,
        )

    async def describe_resources(self, broadcast_id: Optional[str] = None) -> dict:
        broadcast_id = broadcast_id or self.state.broadcast_id
        result = {"state": self.state.to_dict(), "broadcast": None, "stream": None}
        if broadcast_id:
            body = await self._api(
                "GET", "liveBroadcasts", "Describe broadcast",
                params={"part": "id,snippet,contentDetails,status", "id": broadcast_id},
            )
            result["broadcast"] = _first_item(body)
        if self.state.stream_id:
            body = await self._api(
                "GET", "liveStreams", "Describe stream",
                params={"part": "id,snippet,cdn,status", "id": self.state.stream_id},
            )
            result["stream"] = _first_item(body)
        return result

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

"""
YouTube Module
==============

Live broadcast provider access.

    - BroadcastController: OAuth and the broadcast lifecycle
    - ApiRateLimiter: throttle, cache and bounded polling for API calls
    - TokenStore: atomic single-file OAuth credential store
"""

from printstreamer.youtube.controller import (
    AuthError,
    BroadcastController,
    BroadcastInfo,
    BroadcastLifecycle,
    BroadcastState,
    ProviderError,
)
from printstreamer.youtube.ratelimit import ApiRateLimiter
from printstreamer.youtube.tokens import OAuthCredential, TokenStore


__all__ = [
    "ApiRateLimiter",
    "AuthError",
    "BroadcastController",
    "BroadcastInfo",
    "BroadcastLifecycle",
    "BroadcastState",
    "OAuthCredential",
    "ProviderError",
    "TokenStore",
]

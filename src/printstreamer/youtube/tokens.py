"""
OAuth Token Store
=================

Single-file persistence for the provider OAuth credential.

Design Rules:
    - One credential per store; no multiplexing of principals
    - Writes go to a unique temp file, are fsynced, then os.replace()d
      over the target, so a reader only ever sees a complete file
    - Writes are serialized by an asyncio.Lock
"""

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


@dataclass
class OAuthCredential:
    """
    Attributes:
        access_token: Bearer token for API calls
        refresh_token: Long-lived token used to mint access tokens
        expires_in: Access token lifetime in seconds, from issued_at
        issued_at: Epoch seconds when the access token was obtained
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: float = 0.0
    scope: Optional[str] = None
    token_type: str = "Bearer"
    issued_at: float = field(default_factory=time.time)

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def is_expired(self, skew: float = 60.0) -> bool:
        return not self.access_token or time.time() >= self.expires_at - skew

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OAuthCredential":
        return cls(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_in=float(data.get("expires_in") or 0),
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
            issued_at=float(data.get("issued_at") or 0),
        )

    @classmethod
    def from_token_response(
        cls, body: dict, previous: Optional["OAuthCredential"] = None
    ) -> "OAuthCredential":
        """Build from a token endpoint response, keeping the old refresh token if omitted."""
        return cls(
            access_token=body.get("access_token"),
            refresh_token=body.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_in=float(body.get("expires_in") or 3600),
            scope=body.get("scope") or (previous.scope if previous else None),
            token_type=body.get("token_type") or "Bearer",
            issued_at=time.time(),
        )


class TokenStore:
    """
    Atomic JSON file holding one OAuthCredential.

    Example:
        store = TokenStore("youtube_token.json")
        credential = store.load()
        await store.save(credential)
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def load(self) -> Optional[OAuthCredential]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable token file {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed token file {self.path}")
            return None
        return OAuthCredential.from_dict(data)

    async def save(self, credential: OAuthCredential) -> None:
        async with self._lock:
            self._write(credential)
        logger.debug(f"Saved OAuth credential to {self.path}")

    def _write(self, credential: OAuthCredential) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(credential.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        finally:
            if tmp.exists():
                tmp.unlink()

    async def clear(self) -> None:
        async with self._lock:
            if self.path.exists():
                self.path.unlink()

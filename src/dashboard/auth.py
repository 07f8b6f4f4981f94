from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import defaultdict
from typing import Any

from fastapi import Header, HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class APIKeyAuth:
    """Guard for admin and workflow-engine routes.

    Keys are held as SHA-256 hashes. Disabled when no keys are configured
    (development mode).
    """

    def __init__(self, allowed_keys: list[str] | None = None) -> None:
        self._hashes: list[str] = [self._hash(k.strip()) for k in (allowed_keys or []) if k.strip()]
        self._enabled = bool(self._hashes)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def _hash(key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()

    def validate(self, api_key: str | None) -> bool:
        if not self._enabled:
            return True
        if not api_key:
            return False
        candidate = self._hash(api_key)
        return any(hmac.compare_digest(candidate, known) for known in self._hashes)

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self._enabled:
            return None
        if not self.validate(api_key):
            logger.warning("Rejected request with invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key",
            )
        return api_key


async def current_user_id(x_user_id: int = Header(alias="X-User-Id", gt=0)) -> int:
    """Owning user for dashboard routes; session handling lives in front of this service."""
    return x_user_id


class RateLimiter:
    """In-memory sliding-window rate limiter per client IP."""

    def __init__(self, requests_per_minute: int = 60) -> None:
        self.rpm = requests_per_minute
        self._windows: dict[str, list[float]] = defaultdict(list)
        self._enabled = requests_per_minute > 0
        self._last_sweep = 0.0

    def _cleanup(self, key: str, now: float) -> None:
        cutoff = now - 60.0
        recent = [t for t in self._windows.get(key, ()) if t > cutoff]
        if recent:
            self._windows[key] = recent
        else:
            self._windows.pop(key, None)

    def _sweep(self, now: float) -> None:
        # idle clients never call check again, so their windows are dropped here
        for key in list(self._windows):
            self._cleanup(key, now)
        self._last_sweep = now

    def check(self, client_ip: str, now: float | None = None) -> bool:
        if not self._enabled:
            return True
        if now is None:
            now = time.monotonic()
        if now - self._last_sweep >= 60.0:
            self._sweep(now)
        else:
            self._cleanup(client_ip, now)
        if len(self._windows[client_ip]) >= self.rpm:
            return False
        self._windows[client_ip].append(now)
        return True

    async def middleware(self, request: Request, call_next: Any) -> Any:
        if not self._enabled:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self.check(client_ip):
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
            )
        return await call_next(request)

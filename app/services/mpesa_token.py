# FILE: app/services/mpesa_token.py
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

# fetch() -> (access_token, expires_in_seconds)
TokenFetcher = Callable[[], Tuple[str, int]]


class AccessTokenCache:
    """
    OAuth token holder shared by every outbound gateway call.

    get_token() is single-flight: when the cached token is missing or inside
    the safety margin, exactly one caller performs the exchange while the
    others wait on the lock and then reuse its result.
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        safety_margin: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._margin = int(safety_margin)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def _fresh(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - self._margin:
            return self._token
        return None

    def get_token(self) -> str:
        token = self._fresh()
        if token:
            return token

        with self._lock:
            # another thread may have refreshed while we waited
            token = self._fresh()
            if token:
                return token

            new_token, expires_in = self._fetch()
            self._token = new_token
            self._expires_at = self._clock() + int(expires_in)
            logger.info("M-Pesa access token refreshed (expires in %ss)",
                        expires_in)
            return new_token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

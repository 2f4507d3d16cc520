from __future__ import annotations

import time
from threading import Lock
from typing import Callable

import httpx


_DEFAULT_TIMEOUT_SECONDS = 5.0


class SNSCertificateError(Exception):
    """Raised when an SNS signing certificate cannot be downloaded."""


def fetch_signing_certificate(url: str, *, timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS) -> bytes:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        raise SNSCertificateError(f"SNS certificate connectivity error: {exc}") from exc
    if response.status_code >= 400:
        raise SNSCertificateError(f"SNS certificate fetch failed: HTTP {response.status_code}")
    if not response.content:
        raise SNSCertificateError("SNS certificate fetch returned an empty body")
    return response.content


class SigningCertificateFetcher:
    """Downloads SNS signing certificates, optionally caching the raw bytes.

    Only certificate bytes are cached. Callers still validate the certificate
    URL's scheme and host before every lookup.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        cache_ttl_seconds: int = 0,
        fetch: Callable[..., bytes] = fetch_signing_certificate,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = max(0, int(cache_ttl_seconds or 0))
        self._fetch = fetch
        self._clock = clock
        self._lock = Lock()
        self._cache: dict[str, tuple[float, bytes]] = {}

    def __call__(self, url: str) -> bytes:
        if self.cache_ttl_seconds == 0:
            return self._fetch(url, timeout_seconds=self.timeout_seconds)

        now = self._clock()
        with self._lock:
            cached = self._cache.get(url)
        if cached and now - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        certificate = self._fetch(url, timeout_seconds=self.timeout_seconds)
        with self._lock:
            self._cache[url] = (now, certificate)
        return certificate

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

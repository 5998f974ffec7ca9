"""Shared httpx plumbing for talking to the completion service."""

from __future__ import annotations

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

# Throttled or briefly unavailable upstream; anything else >= 400 is final.
RETRY_STATUS = frozenset({429, 502, 503, 504})


class RetryableStatusError(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def completion_timeout(read_s: float = 120.0) -> httpx.Timeout:
    return httpx.Timeout(connect=10.0, read=read_s, write=20.0, pool=10.0)


class HttpClientFactory:
    """Creates shared httpx clients.

    Keep one client per completion adapter; do not create per-request.
    """

    @staticmethod
    def client(
        base_url: str,
        *,
        api_key: str | None = None,
        read_timeout_s: float = 120.0,
        max_connections: int = 16,
    ) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        return httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=completion_timeout(read_timeout_s),
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max(1, max_connections // 2)),
            follow_redirects=True,
        )


TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError, RetryableStatusError)


def transient_retry(attempts: int = 5, *, max_wait_s: float = 10.0):
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=0.5, max=max_wait_s),
        retry=retry_if_exception_type(TransientHttpError),
    )

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Type

import aiohttp
from aiolimiter import AsyncLimiter

from prbuilder.errors import (
    AuthError,
    NotFoundError,
    ProviderError,
    RejectedError,
    TransientError,
)
from prbuilder.metric import record_api_call

logger = logging.getLogger("prbuilder")

RETRYABLE_STATUS = frozenset({408, 429})


def error_for_status(
    status: int,
    message: str,
    *,
    transient: Type[TransientError],
    client_error: Type[ProviderError] = RejectedError,
) -> ProviderError:
    """
    Map an unsuccessful HTTP status to the provider error taxonomy.
    ``transient`` picks the retryable flavour for the caller (fetch or
    trigger); ``client_error`` covers the remaining 4xx statuses.
    """
    if status >= 500 or status in RETRYABLE_STATUS:
        return transient(message, status_code=status)
    if status in (401, 403):
        return AuthError(message, status_code=status)
    if status == 404:
        return NotFoundError(message, status_code=status)
    return client_error(message, status_code=status)


class JsonClient:
    provider: str
    call_count: int

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        provider: str,
        username: str,
        password: str,
        limiter: Optional[AsyncLimiter] = None,
        timeout: float = 30.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.auth = aiohttp.BasicAuth(username, password)
        self.limiter = limiter or AsyncLimiter(10, 1)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.call_count = 0

    async def request(
        self,
        method: str,
        path: str,
        *,
        transient: Type[TransientError],
        client_error: Type[ProviderError] = RejectedError,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        expect_body: bool = True,
    ) -> Any:
        url = f"{self.base_url}{path}"
        self.call_count += 1
        record_api_call(self.provider, path)
        logger.debug("%s %s %s", self.provider, method, url)
        try:
            async with self.limiter:
                async with self.session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    auth=self.auth,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                ) as response:
                    if response.status >= 400:
                        text = await response.text()
                        raise error_for_status(
                            response.status,
                            f"{method} {url} returned {response.status}: {text[:200]}",
                            transient=transient,
                            client_error=client_error,
                        )
                    if not expect_body or response.status == 204:
                        return None
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise transient(f"{method} {url} failed: {e!r}") from e

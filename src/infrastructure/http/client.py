from __future__ import annotations

import ssl

import aiohttp
import certifi

from shared.constants import HTTP_USER_AGENT


def make_ssl_context(*, verify: bool = True) -> ssl.SSLContext | bool:
    """SSL context with certifi's CA bundle; ``False`` disables verification."""
    if not verify:
        return False
    return ssl.create_default_context(cafile=certifi.where())


def make_http_session(
    *,
    concurrency: int | None = None,
    user_agent: str = HTTP_USER_AGENT,
    verify_ssl: bool = True,
) -> aiohttp.ClientSession:
    """Create the shared session used by tile fetchers.

    Args:
        concurrency: Connection pool limit; ``None`` keeps aiohttp's default.
        user_agent: Value of the User-Agent header sent with every request.
        verify_ssl: Verify server certificates against certifi's bundle.
    """
    # SSL context with certifi certificates
    connector_kwargs: dict = {'ssl': make_ssl_context(verify=verify_ssl)}
    if concurrency is not None:
        connector_kwargs['limit'] = max(1, concurrency)
    connector = aiohttp.TCPConnector(**connector_kwargs)
    return aiohttp.ClientSession(
        connector=connector,
        headers={'User-Agent': user_agent},
    )

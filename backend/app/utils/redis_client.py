"""Redis client factory with TLS handling for hosted providers."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Build a client from a redis:// or rediss:// URL.

    Upstash only accepts TLS, so plain redis:// URLs pointing there are
    upgraded. Hosted TLS endpoints use certificates the worker images do not
    trust, hence verification is turned off for rediss:// connections.
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if url.startswith("rediss://"):
        connection_kwargs = getattr(client.connection_pool, "connection_kwargs", None)
        if connection_kwargs is not None:
            connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client

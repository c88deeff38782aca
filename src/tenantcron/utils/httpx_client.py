"""httpx AsyncClient factory for outbound collaborator calls.

A `transport` can be injected (httpx.MockTransport in tests) so clients are
exercised without network access.
"""

from __future__ import annotations

from typing import Any, Optional, Union

import httpx

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


def make_async_client(
    *,
    timeout: Union[float, httpx.Timeout] = DEFAULT_TIMEOUT,
    headers: Optional[dict[str, str]] = None,
    base_url: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    base_kwargs: dict[str, Any] = {
        "timeout": timeout,
        "follow_redirects": False,
        **kwargs,
    }
    if headers is not None:
        base_kwargs["headers"] = headers
    if base_url:
        base_kwargs["base_url"] = base_url
    if transport is not None:
        base_kwargs["transport"] = transport
    return httpx.AsyncClient(**base_kwargs)

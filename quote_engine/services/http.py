"""HTTP session helpers shared by rate sources."""

import aiohttp


def create_session(timeout: float = 10.0) -> aiohttp.ClientSession:
    """Create the aiohttp session used for rate source requests.

    Args:
        timeout: Total request timeout in seconds; individual sources pass
            tighter per-request timeouts.

    Returns:
        aiohttp.ClientSession: Configured HTTP session.
    """
    connector = aiohttp.TCPConnector(limit=100, limit_per_host=10)
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    headers = {
        "User-Agent": "quote-engine/0.1",
        "Accept": "application/json, application/xml;q=0.9, */*;q=0.8",
    }
    return aiohttp.ClientSession(connector=connector, timeout=client_timeout, headers=headers)

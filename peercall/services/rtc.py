"""Network traversal configuration handed to call clients.

Only a single STUN server is supported; media never falls back to a TURN relay.
"""
from __future__ import annotations

from ..core import config
from ..schemas.rtc import IceServer


def ice_servers() -> list[IceServer]:
    """Return the configured ICE servers, empty when STUN is disabled."""

    url = config.settings.stun_server_url.strip()
    if not url:
        return []
    return [IceServer(urls=[url])]


def ice_server_urls() -> list[str]:
    return [url for server in ice_servers() for url in server.urls]

"""
Remote asset fetching for container builders.

The builders never reach the network on their own; they receive a fetcher
(or None) from the caller.
"""

import logging
from typing import Optional, Protocol
from urllib.parse import urlparse

import httpx

from cardsmith.config.models import RemoteAssetConfig

from .errors import AssetFetchError

logger = logging.getLogger(__name__)


class AssetFetcher(Protocol):
    """Anything that turns a remote URI into bytes or raises AssetFetchError."""

    def fetch(self, uri: str) -> bytes:
        ...


class HttpAssetFetcher:
    """
    Synchronous HTTP fetcher backed by httpx.

    Enforces the configured schemes and a maximum download size.
    """

    def __init__(
        self,
        config: Optional[RemoteAssetConfig] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        """
        Initialize fetcher.

        Args:
            config: Remote asset settings (defaults when omitted)
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.config = config or RemoteAssetConfig()
        self.client = httpx.Client(
            timeout=self.config.timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent},
            transport=transport,
        )

    def __enter__(self) -> "HttpAssetFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    def fetch(self, uri: str) -> bytes:
        """
        Download an asset.

        Raises:
            AssetFetchError: disallowed scheme, HTTP error, timeout or oversize body
        """
        scheme = urlparse(uri).scheme.lower()
        if scheme not in self.config.allowed_schemes:
            raise AssetFetchError(uri, f"scheme '{scheme}' is not allowed")

        limit = self.config.max_bytes
        try:
            with self.client.stream("GET", uri) as response:
                response.raise_for_status()
                chunks = []
                received = 0
                for chunk in response.iter_bytes():
                    received += len(chunk)
                    if received > limit:
                        raise AssetFetchError(uri, f"response exceeds {limit} bytes")
                    chunks.append(chunk)
        except httpx.HTTPStatusError as e:
            raise AssetFetchError(uri, f"HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise AssetFetchError(uri, "request timed out") from e
        except httpx.HTTPError as e:
            raise AssetFetchError(uri, str(e) or type(e).__name__) from e

        logger.debug(f"Fetched {received} bytes from {uri}")
        return b"".join(chunks)


def build_fetcher(config: RemoteAssetConfig) -> Optional[HttpAssetFetcher]:
    """Fetcher for the given settings, or None when remote fetching is off."""
    if not config.enabled:
        return None
    return HttpAssetFetcher(config)
